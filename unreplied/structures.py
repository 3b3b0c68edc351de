from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

DayFilter = Literal["all", "today", "3days", "7days"]
DAY_FILTERS: tuple[str, ...] = ("all", "today", "3days", "7days")


# --- Core data models ---


@dataclass(frozen=True)
class CastRef:
    fid: int
    hash: str


@dataclass
class Author:
    fid: int | None
    username: str = ""
    pfp_url: str = ""


@dataclass
class Cast:
    hash: str
    author: Author
    text: str
    timestamp: datetime
    parent_hash: str | None = None
    embeds: list[dict[str, Any]] = field(default_factory=list)
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def author_fid(self) -> int | None:
        return self.author.fid

    @property
    def ref(self) -> CastRef:
        return CastRef(fid=self.author.fid or 0, hash=self.hash)


@dataclass
class ReplyNode:
    cast: Cast
    children: list[ReplyNode] = field(default_factory=list)

    @property
    def hash(self) -> str:
        return self.cast.hash

    @property
    def author_fid(self) -> int | None:
        return self.cast.author.fid

    @property
    def parent_hash(self) -> str | None:
        return self.cast.parent_hash

    def descendants(self) -> Iterator[ReplyNode]:
        """Pre-order walk of every node below this one."""
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass
class ConversationTree:
    root: ReplyNode
    truncated: bool = False
    failed_branches: int = 0

    @property
    def size(self) -> int:
        return 1 + sum(1 for _ in self.root.descendants())


@dataclass
class UnrepliedDetail:
    cast_hash: str
    author_fid: int
    username: str
    avatar_url: str
    text: str
    timestamp: int
    time_ago: str
    cast_url: str
    embeds: list[dict[str, Any]]
    original_cast_hash: str
    original_cast_text: str
    original_author_username: str
    reply_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "castHash": self.cast_hash,
            "authorFid": self.author_fid,
            "username": self.username,
            "avatarUrl": self.avatar_url,
            "text": self.text,
            "timestamp": self.timestamp,
            "timeAgo": self.time_ago,
            "castUrl": self.cast_url,
            "embeds": [dict(e) for e in self.embeds],
            "originalCastHash": self.original_cast_hash,
            "originalCastText": self.original_cast_text,
            "originalAuthorUsername": self.original_author_username,
            "replyCount": self.reply_count,
        }


@dataclass
class ListingPage:
    casts: list[Cast]
    next_cursor: str | None = None


@dataclass
class PageResult:
    details: list[UnrepliedDetail]
    next_cursor: str | None = None

    @property
    def unreplied_count(self) -> int:
        return len(self.details)

    @property
    def message(self) -> str:
        # Always says "today", whatever the day filter.
        return f"You have {self.unreplied_count} unreplied comments today."

    def to_dict(self) -> dict[str, Any]:
        return {
            "unrepliedCount": self.unreplied_count,
            "unrepliedDetails": [d.to_dict() for d in self.details],
            "message": self.message,
            "nextCursor": self.next_cursor,
        }


@dataclass
class PageState:
    fid: int | None = None
    day_filter: str = "today"
    accumulated: list[UnrepliedDetail] = field(default_factory=list)
    cursor: str | None = None
    has_more: bool = False
    is_loading: bool = False
    is_loading_more: bool = False
    generation: int = 0
    error: str | None = None

    @property
    def hashes(self) -> set[str]:
        return {d.cast_hash for d in self.accumulated}
