from __future__ import annotations

import json
import re
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import Any, Literal, Mapping
from urllib.parse import urlparse

from .exceptions import APISchemaError
from .structures import Author, Cast, ReplyNode

UTC = timezone.utc
FARCASTER_EPOCH = datetime(2021, 1, 1, tzinfo=UTC)

# Epoch values above this are milliseconds (1e11 s is the year 5138).
_MS_THRESHOLD = 100_000_000_000
_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")

_IMAGE_EXT = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif", ".svg"}
_VIDEO_EXT = {".mp4", ".mov", ".webm", ".m3u8"}

EmbedKind = Literal["cast", "image", "video", "link"]


def normalize_timestamp(raw: Any) -> datetime:
    """Coerce an upstream timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), epoch numbers in seconds
    or milliseconds, numeric strings and ISO-8601 strings.
    """
    if isinstance(raw, datetime):
        return raw.replace(tzinfo=UTC) if raw.tzinfo is None else raw.astimezone(UTC)

    if isinstance(raw, bool):
        raise APISchemaError(f"invalid timestamp: {raw!r}")

    if isinstance(raw, (int, float)):
        seconds = raw / 1000 if abs(raw) >= _MS_THRESHOLD else raw
        return datetime.fromtimestamp(seconds, tz=UTC)

    if isinstance(raw, str):
        value = raw.strip()
        if _NUMERIC_RE.match(value):
            return normalize_timestamp(float(value))
        if value.endswith(("Z", "z")):
            value = value[:-1] + "+00:00"
        try:
            return normalize_timestamp(datetime.fromisoformat(value))
        except ValueError as e:
            raise APISchemaError(f"unknown timestamp format: {raw}") from e

    raise APISchemaError(f"invalid timestamp: {raw!r}")


def farcaster_time(seconds: int | float) -> datetime:
    return FARCASTER_EPOCH + timedelta(seconds=seconds)


def _as_fid(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _embeds(raw: Any) -> list[dict[str, Any]]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(raw, list):
        return []
    return [dict(e) for e in raw if isinstance(e, Mapping)]


def parse_author(raw: Mapping[str, Any]) -> Author:
    pfp = raw.get("pfp")
    return Author(
        fid=_as_fid(raw.get("fid")),
        username=raw.get("username") or "",
        pfp_url=raw.get("pfp_url") or (pfp.get("url") if isinstance(pfp, Mapping) else None) or "",
    )


def parse_cast(raw: Mapping[str, Any]) -> Cast:
    """Parse a cast object from the Neynar v2 API."""
    hash_ = raw.get("hash")
    if not hash_:
        raise APISchemaError("cast missing hash")

    ts = raw.get("timestamp")
    if ts is None:
        raise APISchemaError(f"cast {hash_} missing timestamp")

    author = raw.get("author")
    return Cast(
        hash=str(hash_),
        author=parse_author(author if isinstance(author, Mapping) else {}),
        text=raw.get("text") or "",
        timestamp=normalize_timestamp(ts),
        parent_hash=raw.get("parent_hash") or None,
        embeds=_embeds(raw.get("embeds")),
        raw=dict(raw),
    )


def parse_conversation(raw: Mapping[str, Any]) -> ReplyNode:
    """Build the nested tree from a ``cast/conversation`` response."""
    convo = raw.get("conversation") or {}
    root = convo.get("cast") if isinstance(convo, Mapping) else None
    if not isinstance(root, Mapping):
        raise APISchemaError("conversation missing cast")
    return _conversation_node(root)


def _conversation_node(raw: Mapping[str, Any]) -> ReplyNode:
    node = ReplyNode(cast=parse_cast(raw))
    for child in raw.get("direct_replies") or []:
        if isinstance(child, Mapping):
            node.children.append(_conversation_node(child))
    return node


def parse_hub_message(raw: Mapping[str, Any]) -> Cast:
    """Parse a CastAdd message as returned by the hub HTTP API."""
    hash_ = raw.get("hash")
    if not hash_:
        raise APISchemaError("hub message missing hash")

    data = raw.get("data") or {}
    kind = data.get("type")
    if kind and kind != "MESSAGE_TYPE_CAST_ADD":
        raise APISchemaError(f"unexpected hub message type: {kind}")

    ts = data.get("timestamp")
    if ts is None:
        raise APISchemaError(f"hub message {hash_} missing timestamp")

    body = data.get("castAddBody") or {}
    parent = body.get("parentCastId") or {}
    return Cast(
        hash=str(hash_),
        author=Author(fid=_as_fid(data.get("fid"))),
        text=body.get("text") or "",
        timestamp=farcaster_time(ts),
        parent_hash=parent.get("hash") or None,
        embeds=_embeds(body.get("embeds")),
        raw=dict(raw),
    )


def parse_replica_row(row: Mapping[str, Any]) -> Cast:
    """Parse a row of the read-replica ``casts`` table."""
    hash_ = row.get("hash")
    if not hash_:
        raise APISchemaError("row missing hash")

    ts = row.get("timestamp")
    if ts is None:
        raise APISchemaError(f"row {hash_} missing timestamp")

    parent = row.get("parent_hash") or row.get("parent_cast_hash") or row.get("parentCastHash")
    return Cast(
        hash=str(hash_),
        author=Author(
            fid=_as_fid(row.get("fid")),
            username=row.get("username") or "",
            pfp_url=row.get("pfp_url") or "",
        ),
        text=row.get("text") or "",
        timestamp=normalize_timestamp(ts),
        parent_hash=parent or None,
        embeds=_embeds(row.get("embeds")),
        raw=dict(row),
    )


def extract_next_cursor(raw_page: Mapping[str, Any]) -> str | None:
    nxt = raw_page.get("next")
    if isinstance(nxt, Mapping):
        cursor = nxt.get("cursor")
        return str(cursor) if cursor else None
    return None


def extract_page_token(raw_page: Mapping[str, Any]) -> str | None:
    token = raw_page.get("nextPageToken")
    return str(token) if token else None


def classify_embed(embed: Mapping[str, Any]) -> EmbedKind:
    if "castId" in embed or "cast_id" in embed or "cast" in embed:
        return "cast"

    metadata = embed.get("metadata") or {}
    content_type = str(metadata.get("content_type") or "") if isinstance(metadata, Mapping) else ""
    if content_type.startswith("image/"):
        return "image"
    if content_type.startswith("video/") or "mpegurl" in content_type.lower():
        return "video"

    url = embed.get("url")
    if isinstance(url, str) and url:
        suffix = PurePosixPath(urlparse(url).path).suffix.lower()
        if suffix in _IMAGE_EXT:
            return "image"
        if suffix in _VIDEO_EXT:
            return "video"
    return "link"
