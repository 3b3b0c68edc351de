from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from unreplied.adapter import FARCASTER_EPOCH
from unreplied.exceptions import NotFoundError
from unreplied.sources import (
    CastListing,
    ConversationSource,
    HubCastListing,
    HubConversationSource,
    NeynarCastListing,
    NeynarConversationSource,
    ReadReplicaCastListing,
    ReadReplicaConversationSource,
    ReadReplicaRepository,
)
from unreplied.structures import Author, Cast, CastRef

UTC = timezone.utc
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def make_cast(hash_: str, age: timedelta, fid: int = 123, parent_hash: str | None = None) -> Cast:
    return Cast(hash=hash_, author=Author(fid=fid), text=hash_, timestamp=NOW - age, parent_hash=parent_hash)


def api_cast(hash_: str, fid: int = 123, replies: list[dict] | None = None) -> dict:
    return {
        "hash": hash_,
        "author": {"fid": fid, "username": f"user{fid}"},
        "text": hash_,
        "timestamp": "2024-06-01T10:00:00Z",
        "direct_replies": replies or [],
    }


def hub_message(hash_: str, fid: int, seconds: int, parent: str | None = None) -> dict:
    body: dict = {"text": hash_, "embeds": []}
    if parent:
        body["parentCastId"] = {"fid": 1, "hash": parent}
    return {
        "hash": hash_,
        "data": {"type": "MESSAGE_TYPE_CAST_ADD", "fid": fid, "timestamp": seconds, "castAddBody": body},
    }


class FakeContext:
    """Records calls and serves canned payloads in place of NeynarContext."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.feed: tuple[list[Cast], str | None] = ([], None)
        self.conversations: dict[str, dict] = {}
        self.hub_messages: tuple[list[dict], str | None] = ([], None)
        self.hub_replies: dict[str, list[dict]] = {}

    def fetch_casts_for_user(self, fid, limit, cursor=None, include_replies=False):
        self.calls.append(("feed", fid, limit, cursor))
        return self.feed

    def lookup_cast(self, hash_):
        self.calls.append(("lookup", hash_))
        return make_cast(hash_, timedelta(hours=1))

    def lookup_cast_conversation(self, hash_, reply_depth=1, limit=50):
        self.calls.append(("conversation", hash_, reply_depth, limit))
        return {"conversation": {"cast": self.conversations[hash_]}}

    def hub_casts_by_fid(self, fid, page_size=25, page_token=None):
        self.calls.append(("by_fid", fid, page_size, page_token))
        return self.hub_messages

    def hub_casts_by_parent(self, fid, hash_, page_size=25):
        self.calls.append(("by_parent", fid, hash_, page_size))
        return self.hub_replies.get(hash_, [])

    def hub_cast_by_id(self, fid, hash_):
        self.calls.append(("by_id", fid, hash_))
        return hub_message(hash_, fid, 100_000_000)


class FakeRepository:
    def __init__(self, rows: list[dict]):
        self.rows = {r["hash"]: r for r in rows}
        self.calls: list[tuple] = []

    def get_cast_by_hash(self, hash_):
        return self.rows.get(hash_)

    def get_replies_to_cast(self, hash_, limit):
        self.calls.append(("replies", hash_, limit))
        return [r for r in self.rows.values() if r.get("parent_hash") == hash_][:limit]

    def get_casts_by_author(self, fid, limit, cursor=None):
        self.calls.append(("by_author", fid, limit, cursor))
        rows = [r for r in self.rows.values() if r["fid"] == fid]
        return rows[:limit], "next" if len(rows) > limit else None


class TestProtocols:
    def test_adapters_satisfy_protocols(self):
        ctx = FakeContext()
        repo = FakeRepository([])
        assert isinstance(repo, ReadReplicaRepository)
        for listing in (NeynarCastListing(ctx), HubCastListing(ctx), ReadReplicaCastListing(repo)):
            assert isinstance(listing, CastListing)
        for source in (NeynarConversationSource(ctx), HubConversationSource(ctx), ReadReplicaConversationSource(repo)):
            assert isinstance(source, ConversationSource)


class TestNeynarListing:
    def test_passes_cursor_through(self):
        ctx = FakeContext()
        ctx.feed = ([make_cast("0xa", timedelta(hours=1))], "c2")
        page = NeynarCastListing(ctx).list_casts_by_author(123, 10, "c1")
        assert [c.hash for c in page.casts] == ["0xa"]
        assert page.next_cursor == "c2"
        assert ctx.calls == [("feed", 123, 10, "c1")]

    def test_drops_replies_from_listing(self):
        ctx = FakeContext()
        ctx.feed = ([make_cast("0xa", timedelta(hours=1)), make_cast("0xr", timedelta(hours=2), parent_hash="0xz")], "c2")
        page = NeynarCastListing(ctx).list_casts_by_author(123, 10)
        assert [c.hash for c in page.casts] == ["0xa"]
        assert page.next_cursor == "c2"

    def test_window_stops_at_first_old_cast(self):
        ctx = FakeContext()
        ctx.feed = (
            [
                make_cast("0xa", timedelta(hours=1)),
                make_cast("0xb", timedelta(hours=30)),
                make_cast("0xc", timedelta(hours=2)),
            ],
            "c2",
        )
        page = NeynarCastListing(ctx).list_casts_by_author(123, 10, since=NOW - timedelta(days=1))
        assert [c.hash for c in page.casts] == ["0xa"]
        assert page.next_cursor is None

    def test_window_not_reached_keeps_cursor(self):
        ctx = FakeContext()
        ctx.feed = ([make_cast("0xa", timedelta(hours=1))], "c2")
        page = NeynarCastListing(ctx).list_casts_by_author(123, 10, since=NOW - timedelta(days=1))
        assert page.next_cursor == "c2"


class TestNeynarConversationSource:
    def test_direct_replies(self):
        ctx = FakeContext()
        ctx.conversations["0xroot"] = api_cast("0xroot", replies=[api_cast("0x1", 456), api_cast("0x2", 789)])
        replies = NeynarConversationSource(ctx, reply_depth=1).fetch_direct_replies(CastRef(123, "0xroot"), 10)
        assert [c.hash for c in replies] == ["0x1", "0x2"]

    def test_limit_applied(self):
        ctx = FakeContext()
        ctx.conversations["0xroot"] = api_cast("0xroot", replies=[api_cast(f"0x{i}", 456) for i in range(5)])
        replies = NeynarConversationSource(ctx, limit=50).fetch_direct_replies(CastRef(123, "0xroot"), 3)
        assert len(replies) == 3
        assert ctx.calls[0] == ("conversation", "0xroot", 2, 3)

    def test_deeper_levels_served_without_request(self):
        ctx = FakeContext()
        ctx.conversations["0xroot"] = api_cast(
            "0xroot", replies=[api_cast("0x1", 456, replies=[api_cast("0x11", 123)])]
        )
        source = NeynarConversationSource(ctx, reply_depth=2)
        source.fetch_direct_replies(CastRef(123, "0xroot"), 10)
        nested = source.fetch_direct_replies(CastRef(456, "0x1"), 10)
        assert [c.hash for c in nested] == ["0x11"]
        assert [c[0] for c in ctx.calls] == ["conversation"]

    def test_prefetched_entry_used_once(self):
        ctx = FakeContext()
        ctx.conversations["0xroot"] = api_cast("0xroot", replies=[api_cast("0x1", 456)])
        ctx.conversations["0x1"] = api_cast("0x1", 456)
        source = NeynarConversationSource(ctx, reply_depth=2)
        source.fetch_direct_replies(CastRef(123, "0xroot"), 10)
        assert source.fetch_direct_replies(CastRef(456, "0x1"), 10) == []
        source.fetch_direct_replies(CastRef(456, "0x1"), 10)
        assert [c[1] for c in ctx.calls] == ["0xroot", "0x1"]

    def test_fetch_cast(self):
        ctx = FakeContext()
        assert NeynarConversationSource(ctx).fetch_cast(CastRef(123, "0xroot")).hash == "0xroot"


class TestHubAdapters:
    def test_listing_converts_hub_time(self):
        ctx = FakeContext()
        seconds = int((NOW - FARCASTER_EPOCH).total_seconds()) - 60
        ctx.hub_messages = ([hub_message("0xa", 123, seconds)], "tok")
        page = HubCastListing(ctx).list_casts_by_author(123, 10, "prev")
        assert page.casts[0].timestamp == NOW - timedelta(seconds=60)
        assert page.next_cursor == "tok"
        assert ctx.calls == [("by_fid", 123, 10, "prev")]

    def test_listing_skips_non_cast_messages(self):
        ctx = FakeContext()
        seconds = int((NOW - FARCASTER_EPOCH).total_seconds())
        other = {"hash": "0xdel", "data": {"type": "MESSAGE_TYPE_CAST_REMOVE", "fid": 123, "timestamp": seconds}}
        ctx.hub_messages = ([other, hub_message("0xa", 123, seconds)], None)
        page = HubCastListing(ctx).list_casts_by_author(123, 10)
        assert [c.hash for c in page.casts] == ["0xa"]

    def test_listing_filters_replies_and_window(self):
        ctx = FakeContext()
        fresh = int((NOW - FARCASTER_EPOCH).total_seconds()) - 60
        stale = fresh - 4 * 86400
        ctx.hub_messages = (
            [
                hub_message("0xa", 123, fresh),
                hub_message("0xr", 123, fresh, parent="0xz"),
                hub_message("0xold", 123, stale),
            ],
            "tok",
        )
        page = HubCastListing(ctx).list_casts_by_author(123, 10, since=NOW - timedelta(days=3))
        assert [c.hash for c in page.casts] == ["0xa"]
        assert page.next_cursor is None

    def test_direct_replies(self):
        ctx = FakeContext()
        ctx.hub_replies["0xroot"] = [hub_message("0x1", 456, 100_000_000, parent="0xroot")]
        replies = HubConversationSource(ctx, page_size=5).fetch_direct_replies(CastRef(123, "0xroot"), 26)
        assert replies[0].parent_hash == "0xroot"
        assert replies[0].author_fid == 456
        assert ctx.calls == [("by_parent", 123, "0xroot", 5)]

    def test_direct_replies_skip_non_cast_messages(self):
        ctx = FakeContext()
        removed = {"hash": "0xdel", "data": {"type": "MESSAGE_TYPE_CAST_REMOVE", "fid": 456, "timestamp": 100_000_000}}
        ctx.hub_replies["0xroot"] = [removed, hub_message("0x1", 456, 100_000_000, parent="0xroot")]
        replies = HubConversationSource(ctx).fetch_direct_replies(CastRef(123, "0xroot"), 26)
        assert [c.hash for c in replies] == ["0x1"]

    def test_fetch_cast(self):
        ctx = FakeContext()
        cast = HubConversationSource(ctx).fetch_cast(CastRef(7, "0xroot"))
        assert cast.hash == "0xroot"
        assert cast.author_fid == 7


class TestReadReplicaAdapters:
    @pytest.fixture
    def repo(self) -> FakeRepository:
        return FakeRepository([
            {"hash": "0xroot", "fid": 123, "text": "gm", "timestamp": "2024-06-01T10:00:00Z"},
            {"hash": "0x1", "fid": 456, "text": "hi", "timestamp": "2024-06-01T10:05:00Z", "parent_hash": "0xroot"},
            {"hash": "0x2", "fid": 789, "text": "yo", "timestamp": "2024-06-01T10:06:00Z", "parent_hash": "0xroot"},
        ])

    def test_fetch_cast(self, repo):
        cast = ReadReplicaConversationSource(repo).fetch_cast(CastRef(123, "0xroot"))
        assert cast.text == "gm"

    def test_fetch_missing_cast(self, repo):
        with pytest.raises(NotFoundError):
            ReadReplicaConversationSource(repo).fetch_cast(CastRef(123, "0xnope"))

    def test_direct_replies(self, repo):
        replies = ReadReplicaConversationSource(repo).fetch_direct_replies(CastRef(123, "0xroot"), 1)
        assert [c.hash for c in replies] == ["0x1"]
        assert repo.calls == [("replies", "0xroot", 1)]

    def test_listing_only_roots(self, repo):
        page = ReadReplicaCastListing(repo).list_casts_by_author(456, 10)
        assert page.casts == []
        page = ReadReplicaCastListing(repo).list_casts_by_author(123, 10)
        assert [c.hash for c in page.casts] == ["0xroot"]
        assert page.next_cursor is None
