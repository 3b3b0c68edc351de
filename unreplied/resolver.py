"""Decide which branches of a reply tree still wait on the original author.

Walking down from the root, the first reply in a branch whose subtree holds
nothing by the author stands for that whole branch. A subtree the author did
touch is not emitted, but its children are examined again as branch points of
their own, so later replies by others below the author's answer still show up.
"""
from __future__ import annotations

from .structures import ReplyNode


def has_author_reply(node: ReplyNode, author_fid: int | None) -> bool:
    if author_fid is None:
        return False
    if node.author_fid == author_fid:
        return True
    return any(has_author_reply(child, author_fid) for child in node.children)


def resolve_unreplied(root: ReplyNode, author_fid: int | None) -> list[ReplyNode]:
    unreplied: list[ReplyNode] = []

    def visit(parent: ReplyNode) -> None:
        for reply in parent.children:
            if reply.author_fid != author_fid and not has_author_reply(reply, author_fid):
                unreplied.append(reply)
                continue
            visit(reply)

    visit(root)
    return unreplied
