"""Upstream adapters behind two small capabilities.

``ConversationSource`` answers "what is this cast" and "what are its direct
replies"; ``CastListing`` pages through the root casts of one account. The
walker and coordinator only ever talk to these protocols, so the hub API, the
Neynar search index and the read replica are interchangeable.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .adapter import parse_conversation, parse_hub_message, parse_replica_row
from .context import NeynarContext
from .exceptions import APISchemaError, NotFoundError
from .structures import Cast, CastRef, ListingPage, ReplyNode

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationSource(Protocol):
    def fetch_cast(self, ref: CastRef) -> Cast: ...
    def fetch_direct_replies(self, ref: CastRef, limit: int) -> list[Cast]: ...


@runtime_checkable
class CastListing(Protocol):
    def list_casts_by_author(
        self,
        fid: int,
        limit: int,
        cursor: str | None = None,
        since: datetime | None = None,
    ) -> ListingPage: ...


@runtime_checkable
class ReadReplicaRepository(Protocol):
    def get_cast_by_hash(self, hash_: str) -> Mapping[str, Any] | None: ...
    def get_replies_to_cast(self, hash_: str, limit: int) -> Sequence[Mapping[str, Any]]: ...
    def get_casts_by_author(
        self, fid: int, limit: int, cursor: str | None = None
    ) -> tuple[Sequence[Mapping[str, Any]], str | None]: ...


def _window(casts: list[Cast], since: datetime | None) -> tuple[list[Cast], bool]:
    """Keep root casts newer than ``since``; report whether the window ran out.

    Listings are newest first, so the first cast older than the cutoff ends it.
    """
    kept: list[Cast] = []
    for cast in casts:
        if since is not None and cast.timestamp < since:
            return kept, True
        if cast.parent_hash is None:
            kept.append(cast)
    return kept, False


def _listing_page(casts: list[Cast], cursor: str | None, since: datetime | None) -> ListingPage:
    kept, exhausted = _window(casts, since)
    return ListingPage(casts=kept, next_cursor=None if exhausted else cursor)


# --- Neynar search index ---


class NeynarCastListing:
    def __init__(self, context: NeynarContext):
        self.context = context

    def list_casts_by_author(
        self,
        fid: int,
        limit: int,
        cursor: str | None = None,
        since: datetime | None = None,
    ) -> ListingPage:
        casts, next_cursor = self.context.fetch_casts_for_user(fid, limit, cursor)
        return _listing_page(casts, next_cursor, since)


class NeynarConversationSource:
    """Direct replies from the ``cast/conversation`` endpoint.

    One call returns ``reply_depth`` levels; the deeper levels are kept and
    served to the next lookups without another request.
    """

    MAX_PREFETCHED = 10_000

    def __init__(self, context: NeynarContext, reply_depth: int = 2, limit: int = 50):
        self.context = context
        self.reply_depth = max(1, reply_depth)
        self.limit = limit
        self._prefetched: dict[str, list[Cast]] = {}
        self._lock = threading.Lock()

    def fetch_cast(self, ref: CastRef) -> Cast:
        return self.context.lookup_cast(ref.hash)

    def fetch_direct_replies(self, ref: CastRef, limit: int) -> list[Cast]:
        with self._lock:
            cached = self._prefetched.pop(ref.hash, None)
        if cached is not None:
            return cached[:limit]

        data = self.context.lookup_cast_conversation(
            ref.hash, reply_depth=self.reply_depth, limit=min(limit, self.limit)
        )
        tree = parse_conversation(data)
        self._index(tree.children, depth=1)
        return [child.cast for child in tree.children][:limit]

    def _index(self, nodes: list[ReplyNode], depth: int) -> None:
        if depth >= self.reply_depth:
            return
        with self._lock:
            # Entries left behind by depth-capped walks would otherwise pile up.
            if len(self._prefetched) > self.MAX_PREFETCHED:
                self._prefetched.clear()
            for node in nodes:
                self._prefetched[node.hash] = [c.cast for c in node.children]
        for node in nodes:
            self._index(node.children, depth + 1)


# --- hub ---


class HubCastListing:
    def __init__(self, context: NeynarContext):
        self.context = context

    def list_casts_by_author(
        self,
        fid: int,
        limit: int,
        cursor: str | None = None,
        since: datetime | None = None,
    ) -> ListingPage:
        messages, token = self.context.hub_casts_by_fid(fid, page_size=limit, page_token=cursor)
        casts: list[Cast] = []
        for m in messages:
            try:
                casts.append(parse_hub_message(m))
            except APISchemaError as e:
                logger.debug("skipping hub message: %s", e)
        return _listing_page(casts, token, since)


class HubConversationSource:
    def __init__(self, context: NeynarContext, page_size: int = 25):
        self.context = context
        self.page_size = page_size

    def fetch_cast(self, ref: CastRef) -> Cast:
        return parse_hub_message(self.context.hub_cast_by_id(ref.fid, ref.hash))

    def fetch_direct_replies(self, ref: CastRef, limit: int) -> list[Cast]:
        messages = self.context.hub_casts_by_parent(ref.fid, ref.hash, page_size=min(limit, self.page_size))
        replies: list[Cast] = []
        for m in messages:
            try:
                replies.append(parse_hub_message(m))
            except APISchemaError as e:
                logger.debug("skipping hub message: %s", e)
        return replies[:limit]


# --- read replica ---


class ReadReplicaCastListing:
    def __init__(self, repository: ReadReplicaRepository):
        self.repository = repository

    def list_casts_by_author(
        self,
        fid: int,
        limit: int,
        cursor: str | None = None,
        since: datetime | None = None,
    ) -> ListingPage:
        rows, next_cursor = self.repository.get_casts_by_author(fid, limit, cursor)
        return _listing_page([parse_replica_row(r) for r in rows], next_cursor, since)


class ReadReplicaConversationSource:
    def __init__(self, repository: ReadReplicaRepository):
        self.repository = repository

    def fetch_cast(self, ref: CastRef) -> Cast:
        row = self.repository.get_cast_by_hash(ref.hash)
        if row is None:
            raise NotFoundError(f"cast not found: {ref.hash}")
        return parse_replica_row(row)

    def fetch_direct_replies(self, ref: CastRef, limit: int) -> list[Cast]:
        return [parse_replica_row(r) for r in self.repository.get_replies_to_cast(ref.hash, limit)]
