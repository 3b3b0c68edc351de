from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from .structures import ReplyNode, UnrepliedDetail

CAST_URL_BASE = "https://farcaster.xyz"
UNKNOWN_USERNAME = "(unknown)"


def time_ago(then: datetime, now: datetime | None = None) -> str:
    """Compact relative age, truncated to the largest whole unit."""
    now = now or datetime.now(timezone.utc)
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}min ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def flatten_replies(nodes: Iterable[ReplyNode]) -> list[ReplyNode]:
    flat: list[ReplyNode] = []
    for node in nodes:
        flat.append(node)
        flat.extend(node.descendants())
    return flat


def count_replies(node: ReplyNode) -> int:
    return sum(1 for _ in node.descendants())


def cast_url(username: str, cast_hash: str, base: str = CAST_URL_BASE) -> str:
    return f"{base.rstrip('/')}/{username or 'unknown'}/{cast_hash}"


def project_detail(
    node: ReplyNode,
    root: ReplyNode,
    now: datetime | None = None,
    base_url: str = CAST_URL_BASE,
) -> UnrepliedDetail:
    author = node.cast.author
    username = author.username or UNKNOWN_USERNAME
    return UnrepliedDetail(
        cast_hash=node.hash,
        author_fid=author.fid or 0,
        username=username,
        avatar_url=author.pfp_url,
        text=node.cast.text,
        timestamp=int(node.cast.timestamp.timestamp() * 1000),
        time_ago=time_ago(node.cast.timestamp, now),
        cast_url=cast_url(author.username, node.hash, base_url),
        embeds=[dict(e) for e in node.cast.embeds],
        original_cast_hash=root.hash,
        original_cast_text=root.cast.text,
        original_author_username=root.cast.author.username or "unknown",
        reply_count=count_replies(node),
    )


def project_details(
    nodes: Iterable[ReplyNode],
    root: ReplyNode,
    now: datetime | None = None,
    base_url: str = CAST_URL_BASE,
) -> list[UnrepliedDetail]:
    now = now or datetime.now(timezone.utc)
    return [project_detail(node, root, now, base_url) for node in nodes]
