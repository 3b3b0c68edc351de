from __future__ import annotations

import itertools
from datetime import datetime, timezone

from hypothesis import given
from hypothesis import strategies as st

from unreplied.resolver import has_author_reply, resolve_unreplied
from unreplied.structures import Author, Cast, ReplyNode

AUTHOR = 1


def node(hash_: str, fid: int | None, *children: ReplyNode) -> ReplyNode:
    cast = Cast(hash=hash_, author=Author(fid=fid), text=hash_, timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc))
    return ReplyNode(cast=cast, children=list(children))


def hashes(nodes: list[ReplyNode]) -> list[str]:
    return [n.hash for n in nodes]


class TestHasAuthorReply:
    def test_self(self):
        assert has_author_reply(node("a", AUTHOR), AUTHOR)

    def test_deep_descendant(self):
        tree = node("a", 2, node("b", 3, node("c", AUTHOR)))
        assert has_author_reply(tree, AUTHOR)

    def test_absent(self):
        assert not has_author_reply(node("a", 2, node("b", 3)), AUTHOR)

    def test_unknown_author_never_matches(self):
        assert not has_author_reply(node("a", None), None)


class TestResolveUnreplied:
    def test_no_replies(self):
        assert resolve_unreplied(node("cast1", AUTHOR), AUTHOR) == []

    def test_single_reply_from_other(self):
        root = node("cast1", AUTHOR, node("reply1", 123))
        assert hashes(resolve_unreplied(root, AUTHOR)) == ["reply1"]

    def test_author_answered_branch(self):
        root = node("cast1", AUTHOR, node("reply1", 123, node("reply2", AUTHOR)))
        assert resolve_unreplied(root, AUTHOR) == []

    def test_candidate_stands_for_whole_branch(self):
        root = node("cast1", AUTHOR, node("reply1", 123, node("reply1a", 456, node("reply1b", 789))))
        assert hashes(resolve_unreplied(root, AUTHOR)) == ["reply1"]

    def test_author_touch_anywhere_covers_top(self):
        root = node("cast1", AUTHOR, node("r1", 2, node("r2", 3, node("r3", AUTHOR))))
        assert resolve_unreplied(root, AUTHOR) == []

    def test_new_reply_below_author_answer(self):
        root = node("cast1", AUTHOR, node("r1", 2, node("a1", AUTHOR, node("r2", 3))))
        assert hashes(resolve_unreplied(root, AUTHOR)) == ["r2"]

    def test_sibling_of_author_answer_surfaces(self):
        root = node("cast1", AUTHOR, node("r1", 2, node("a1", AUTHOR), node("r2", 3)))
        assert hashes(resolve_unreplied(root, AUTHOR)) == ["r2"]

    def test_author_own_reply_children_checked(self):
        root = node("cast1", AUTHOR, node("self", AUTHOR, node("r1", 2), node("r2", 3, node("a", AUTHOR))))
        assert hashes(resolve_unreplied(root, AUTHOR)) == ["r1"]

    def test_order_follows_children(self):
        root = node("cast1", AUTHOR, node("z", 2), node("covered", 3, node("x", AUTHOR)), node("a", 4))
        assert hashes(resolve_unreplied(root, AUTHOR)) == ["z", "a"]

    def test_unknown_author_reply_is_candidate(self):
        root = node("cast1", AUTHOR, node("anon", None))
        assert hashes(resolve_unreplied(root, AUTHOR)) == ["anon"]

    def test_unknown_root_author(self):
        root = node("cast1", None, node("r1", 2, node("r2", 3)))
        assert hashes(resolve_unreplied(root, None)) == ["r1"]


# --- properties ---

_shapes = st.recursive(
    st.tuples(st.sampled_from([AUTHOR, 2, 3, 4]), st.just(())),
    lambda children: st.tuples(st.sampled_from([AUTHOR, 2, 3, 4]), st.lists(children, max_size=4).map(tuple)),
    max_leaves=30,
)


def build(shape, counter=None) -> ReplyNode:
    counter = counter if counter is not None else itertools.count()
    fid, children = shape
    return node(f"h{next(counter)}", fid, *(build(c, counter) for c in children))


def subtree_hashes(n: ReplyNode) -> set[str]:
    return {d.hash for d in n.descendants()}


@given(st.lists(_shapes, max_size=5))
def test_never_emits_author(shapes):
    root = build((AUTHOR, tuple(shapes)))
    assert all(n.author_fid != AUTHOR for n in resolve_unreplied(root, AUTHOR))


@given(st.lists(_shapes, max_size=5))
def test_emitted_subtrees_untouched_by_author(shapes):
    root = build((AUTHOR, tuple(shapes)))
    for n in resolve_unreplied(root, AUTHOR):
        assert not has_author_reply(n, AUTHOR)


@given(st.lists(_shapes, max_size=5))
def test_no_descendant_of_candidate_emitted(shapes):
    root = build((AUTHOR, tuple(shapes)))
    emitted = resolve_unreplied(root, AUTHOR)
    emitted_hashes = set(hashes(emitted))
    assert len(emitted_hashes) == len(emitted)
    for n in emitted:
        assert not subtree_hashes(n) & emitted_hashes


@given(st.lists(_shapes, max_size=5))
def test_every_waiting_reply_is_represented(shapes):
    root = build((AUTHOR, tuple(shapes)))
    emitted = resolve_unreplied(root, AUTHOR)
    covered = set(hashes(emitted))
    for n in emitted:
        covered |= subtree_hashes(n)
    for n in root.descendants():
        if n.author_fid != AUTHOR and not has_author_reply(n, AUTHOR):
            assert n.hash in covered


@given(st.lists(_shapes, max_size=5))
def test_resolution_is_stable(shapes):
    root = build((AUTHOR, tuple(shapes)))
    assert hashes(resolve_unreplied(root, AUTHOR)) == hashes(resolve_unreplied(root, AUTHOR))
