from __future__ import annotations

import dataclasses
import logging
import re
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from .exceptions import InvalidInputError, UnrepliedException, map_exception_to_status
from .projector import CAST_URL_BASE, UNKNOWN_USERNAME, cast_url, flatten_replies, project_details
from .resolver import resolve_unreplied
from .sources import CastListing
from .structures import (
    DAY_FILTERS,
    Author,
    Cast,
    CastRef,
    ConversationTree,
    PageResult,
    PageState,
    UnrepliedDetail,
)
from .ui import EventKind, NullSink, ProgressSink, UIEvent
from .walker import TreeWalker

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 25
MAX_LIMIT = 100
DEFAULT_CACHE_TTL = 300.0

_DAY_WINDOWS: dict[str, timedelta] = {
    "today": timedelta(days=1),
    "3days": timedelta(days=3),
    "7days": timedelta(days=7),
}
_CURSOR_RE = re.compile(r"^[\x21-\x7e]{1,512}$")

ProfileLookup = Callable[[Iterable[int]], Mapping[int, Author]]


# --- input validation ---


def parse_fid(raw: Any) -> int:
    if raw is None or raw == "":
        raise InvalidInputError("FID parameter is required")
    if isinstance(raw, bool):
        raise InvalidInputError(f"invalid fid: {raw!r}")
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw.isdigit():
            raise InvalidInputError(f"invalid fid: {raw!r}")
    try:
        fid = int(raw)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"invalid fid: {raw!r}") from e
    if fid <= 0:
        raise InvalidInputError(f"invalid fid: {raw!r}")
    return fid


def parse_limit(raw: Any) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"invalid limit: {raw!r}") from e
    if not 1 <= limit <= MAX_LIMIT:
        raise InvalidInputError(f"limit must be between 1 and {MAX_LIMIT}")
    return limit


def parse_cursor(raw: Any) -> str | None:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str) or not _CURSOR_RE.match(raw):
        raise InvalidInputError("malformed cursor")
    return raw


def day_filter_cutoff(day_filter: str, now: datetime) -> datetime | None:
    if day_filter not in DAY_FILTERS:
        raise InvalidInputError(f"invalid dayFilter: {day_filter!r}")
    window = _DAY_WINDOWS.get(day_filter)
    return now - window if window else None


def dedupe_details(details: Iterable[UnrepliedDetail], seen: set[str] | None = None) -> list[UnrepliedDetail]:
    seen = set() if seen is None else seen
    unique: list[UnrepliedDetail] = []
    for d in details:
        if d.cast_hash in seen:
            continue
        seen.add(d.cast_hash)
        unique.append(d)
    return unique


# --- cache ---


class TreeCache:
    """Reply trees by root hash, kept for ``ttl`` seconds."""

    def __init__(self, ttl: float = DEFAULT_CACHE_TTL, max_entries: int = 1024):
        self.ttl = ttl
        self.max_entries = max(1, max_entries)
        self._entries: dict[str, tuple[float, ConversationTree]] = {}
        self._lock = threading.Lock()

        # Injectable for testing
        self._now = time.monotonic

    def get(self, key: str) -> ConversationTree | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, tree = entry
            if self._now() - stored_at >= self.ttl:
                del self._entries[key]
                return None
            return tree

    def put(self, key: str, tree: ConversationTree) -> None:
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = (self._now(), tree)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# --- service ---


class UnrepliedService:
    """One page of unreplied replies for an account.

    Lists the account's root casts, walks each reply tree, resolves the
    branches still waiting on the account and projects them, in listing order.
    """

    def __init__(
        self,
        listing: CastListing,
        walker: TreeWalker,
        *,
        cache: TreeCache | None = None,
        profiles: ProfileLookup | None = None,
        cast_url_base: str = CAST_URL_BASE,
        progress: ProgressSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.listing = listing
        self.walker = walker
        self.cache = cache
        self.profiles = profiles
        self.cast_url_base = cast_url_base
        self._sink: ProgressSink = progress or NullSink()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _safe_emit(self, event: UIEvent) -> None:
        try:
            self._sink.emit(event)
        except Exception:
            logger.debug("sink.emit failed", exc_info=True)

    def fetch_page(
        self,
        fid: Any,
        limit: Any = DEFAULT_LIMIT,
        cursor: Any = None,
        day_filter: str = "today",
        *,
        fresh: bool = False,
    ) -> PageResult:
        fid = parse_fid(fid)
        limit = parse_limit(limit)
        cursor = parse_cursor(cursor)
        now = self._clock()
        since = day_filter_cutoff(day_filter, now)

        self._safe_emit(UIEvent(kind=EventKind.PAGE_START, fid=fid))
        page = self.listing.list_casts_by_author(fid, limit, cursor, since)

        details: list[UnrepliedDetail] = []
        seen: set[str] = set()
        total = len(page.casts)
        for done, cast in enumerate(page.casts, 1):
            if cast.author_fid is not None and cast.author_fid != fid:
                logger.debug("skipping %s: authored by %s", cast.hash, cast.author_fid)
                continue
            tree = self._tree(cast, fresh)
            nodes = resolve_unreplied(tree.root, fid)
            details.extend(dedupe_details(project_details(nodes, tree.root, now, self.cast_url_base), seen))
            self._safe_emit(UIEvent(kind=EventKind.ROOT_DONE, fid=fid, roots_done=done, roots_total=total))

        details = self._enrich(details)
        self._safe_emit(UIEvent(kind=EventKind.PAGE_DONE, fid=fid, unreplied=len(details)))
        return PageResult(details=details, next_cursor=page.next_cursor)

    def inspect_conversation(self, ref: CastRef) -> dict[str, Any]:
        """Every reply under one cast plus the ones still waiting on its author."""
        tree = self.walker.walk(ref)
        author_fid = tree.root.author_fid
        replies = flatten_replies(tree.root.children)
        unreplied = resolve_unreplied(tree.root, author_fid)
        now = self._clock()
        return {
            "root": tree.root.hash,
            "replies": [d.to_dict() for d in project_details(replies, tree.root, now, self.cast_url_base)],
            "replyCount": len(replies),
            "unrepliedReplies": [d.to_dict() for d in project_details(unreplied, tree.root, now, self.cast_url_base)],
            "unrepliedCount": len(unreplied),
            "truncated": tree.truncated,
        }

    def _tree(self, cast: Cast, fresh: bool) -> ConversationTree:
        if self.cache is not None and not fresh:
            if (cached := self.cache.get(cast.hash)) is not None:
                logger.debug("tree cache hit: %s", cast.hash)
                return cached

        tree = self.walker.walk_cast(cast)
        if self.cache is not None and not tree.failed_branches:
            self.cache.put(cast.hash, tree)
        return tree

    def _enrich(self, details: list[UnrepliedDetail]) -> list[UnrepliedDetail]:
        if not self.profiles or not details:
            return details
        missing = {d.author_fid for d in details if d.author_fid and d.username == UNKNOWN_USERNAME}
        if not missing:
            return details
        self._safe_emit(UIEvent(kind=EventKind.STAGE, message="Resolving profiles"))
        try:
            found = self.profiles(sorted(missing))
        except Exception as e:
            logger.warning("profile lookup failed: %s", e)
            return details

        enriched: list[UnrepliedDetail] = []
        for d in details:
            author = found.get(d.author_fid)
            if d.username == UNKNOWN_USERNAME and author and author.username:
                d = dataclasses.replace(
                    d,
                    username=author.username,
                    avatar_url=d.avatar_url or author.pfp_url,
                    cast_url=cast_url(author.username, d.cast_hash, self.cast_url_base),
                )
            enriched.append(d)
        return enriched


def fetch_unreplied_page(
    service: UnrepliedService,
    fid: Any,
    limit: Any = DEFAULT_LIMIT,
    cursor: Any = None,
    day_filter: str = "today",
) -> tuple[int, dict[str, Any]]:
    """Status code and JSON body for one page request; never raises."""
    try:
        result = service.fetch_page(fid, limit, cursor, day_filter)
    except UnrepliedException as e:
        status = map_exception_to_status(e)
        if status >= 500:
            logger.error("page request failed: %s", e)
        return status, {"error": str(e)}
    except Exception as e:
        logger.exception("page request failed")
        return 500, {"error": "Internal server error", "message": str(e)}
    return 200, result.to_dict()


# --- session pagination ---


class PaginationCoordinator:
    """Owns the PageState of one session.

    ``load_next_page`` is dropped, not queued, while any load is in flight.
    Every load records the generation it started under and commits only if
    that generation is still current, so a ``refresh`` or a new first page
    silently supersedes older in-flight loads.
    """

    def __init__(self, service: UnrepliedService, *, limit: int = DEFAULT_LIMIT):
        self.service = service
        self.limit = limit
        self._state = PageState()
        self._lock = threading.Lock()

    @property
    def state(self) -> PageState:
        with self._lock:
            return dataclasses.replace(self._state, accumulated=list(self._state.accumulated))

    def load_first_page(self, fid: Any, day_filter: str = "today") -> bool:
        with self._lock:
            gen = self._state.generation + 1
            self._state = PageState(day_filter=day_filter, generation=gen, is_loading=True)
        try:
            fid = parse_fid(fid)
        except InvalidInputError as e:
            with self._lock:
                if self._state.generation == gen:
                    self._state.is_loading = False
                    self._state.error = str(e)
            return False

        with self._lock:
            if self._state.generation != gen:
                return False
            self._state.fid = fid

        result, error = self._fetch(fid, None, day_filter, fresh=False)
        with self._lock:
            if self._state.generation != gen:
                return False
            return self._commit_replace(result, error)

    def load_next_page(self) -> bool:
        with self._lock:
            s = self._state
            if not s.has_more or s.is_loading_more or s.is_loading or s.fid is None:
                return False
            s.is_loading_more = True
            gen, fid, cursor, day_filter = s.generation, s.fid, s.cursor, s.day_filter

        result, error = self._fetch(fid, cursor, day_filter, fresh=False)
        with self._lock:
            s = self._state
            if s.generation != gen:
                return False
            s.is_loading_more = False
            if result is None:
                s.error = error
                s.has_more = False
                return False
            s.accumulated.extend(dedupe_details(result.details, s.hashes))
            s.cursor = result.next_cursor
            s.has_more = result.next_cursor is not None
            s.error = None
            return True

    def refresh(self) -> bool:
        with self._lock:
            s = self._state
            if s.fid is None:
                return False
            s.generation += 1
            s.is_loading = True
            s.is_loading_more = False
            gen, fid, day_filter = s.generation, s.fid, s.day_filter

        result, error = self._fetch(fid, None, day_filter, fresh=True)
        with self._lock:
            if self._state.generation != gen:
                return False
            return self._commit_replace(result, error)

    def _commit_replace(self, result: PageResult | None, error: str | None) -> bool:
        s = self._state
        s.is_loading = False
        if result is None:
            # Keep whatever was shown before; stop auto-loading.
            s.error = error
            s.has_more = False
            return False
        s.accumulated = dedupe_details(result.details)
        s.cursor = result.next_cursor
        s.has_more = result.next_cursor is not None
        s.error = None
        return True

    def _fetch(
        self, fid: int, cursor: str | None, day_filter: str, *, fresh: bool
    ) -> tuple[PageResult | None, str | None]:
        try:
            return self.service.fetch_page(fid, self.limit, cursor, day_filter, fresh=fresh), None
        except UnrepliedException as e:
            logger.warning("page load failed for fid %s: %s", fid, e)
            return None, str(e)
        except Exception as e:
            logger.exception("page load failed for fid %s", fid)
            return None, str(e) or "Failed to load conversations"
