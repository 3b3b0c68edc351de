from __future__ import annotations

import dataclasses
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from .sources import ConversationSource
from .structures import Cast, CastRef, ConversationTree, ReplyNode

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 5
DEFAULT_MAX_FANOUT = 25
DEFAULT_MAX_NODES = 500
DEFAULT_MAX_WORKERS = 8
_POLL_INTERVAL = 0.05


class TreeWalker:
    """Materialise the reply tree under a cast, one level at a time.

    Each level's reply lookups fan out over a bounded thread pool and are
    joined before the next level starts. Depth, fan-out and total size are
    capped. ``ConversationTree.truncated`` means a cap was reached: for the
    depth cap that is any node left unexplored at ``max_depth``, whether or not
    it has replies, since finding out would take the lookups the cap saves.

    A lookup that fails leaves that node without children and is counted in
    ``failed_branches`` instead of failing the walk. Each lookup is bounded by
    its source's own request timeout; ``branch_timeout`` adds an optional
    wall-clock limit per lookup, counted from when a worker picks it up, so
    branches still queued behind busy workers never expire.
    """

    def __init__(
        self,
        source: ConversationSource,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_fanout: int = DEFAULT_MAX_FANOUT,
        max_nodes: int = DEFAULT_MAX_NODES,
        max_workers: int = DEFAULT_MAX_WORKERS,
        branch_timeout: float | None = None,
    ):
        self.source = source
        self.max_depth = max(0, max_depth)
        self.max_fanout = max(1, max_fanout)
        self.max_nodes = max(1, max_nodes)
        self.max_workers = max(1, max_workers)
        self.branch_timeout = branch_timeout

        # Injectable for testing
        self._now = time.monotonic

    def walk(self, ref: CastRef) -> ConversationTree:
        """Fetch the cast behind ``ref`` and walk its replies.

        Raises NotFoundError (or any upstream error) if the root itself
        cannot be fetched.
        """
        return self.walk_cast(self.source.fetch_cast(ref))

    def walk_cast(self, cast: Cast) -> ConversationTree:
        tree = ConversationTree(root=ReplyNode(cast=cast))
        seen = {cast.hash}
        frontier = [tree.root]
        depth = 0

        exe = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="walker")
        try:
            while frontier:
                if depth >= self.max_depth:
                    tree.truncated = True
                    break
                replies = self._fetch_level(exe, frontier, tree)
                frontier = self._attach(frontier, replies, tree, seen)
                depth += 1
        finally:
            # Abandoned lookups keep running until their own request timeout.
            exe.shutdown(wait=False, cancel_futures=True)
        return tree

    def _lookup(self, ref: CastRef, started: dict[int, float], i: int) -> list[Cast]:
        started[i] = self._now()
        # One extra reply tells us whether the fan-out cap cut anything off.
        return self.source.fetch_direct_replies(ref, self.max_fanout + 1)

    def _fetch_level(
        self,
        exe: ThreadPoolExecutor,
        frontier: list[ReplyNode],
        tree: ConversationTree,
    ) -> dict[int, list[Cast]]:
        started: dict[int, float] = {}
        futures: dict[Future, int] = {
            exe.submit(self._lookup, node.cast.ref, started, i): i
            for i, node in enumerate(frontier)
        }
        results: dict[int, list[Cast]] = {}

        pending = set(futures)
        poll = None if self.branch_timeout is None else min(self.branch_timeout, _POLL_INTERVAL)
        while pending:
            done, pending = wait(pending, timeout=poll, return_when=FIRST_COMPLETED)
            for f in done:
                self._collect(f, futures[f], frontier, tree, results)
            if self.branch_timeout is not None:
                pending -= self._expire(pending, futures, started, frontier, tree, results)
        return results

    def _expire(
        self,
        pending: set[Future],
        futures: dict[Future, int],
        started: dict[int, float],
        frontier: list[ReplyNode],
        tree: ConversationTree,
        results: dict[int, list[Cast]],
    ) -> set[Future]:
        now = self._now()
        expired: set[Future] = set()
        for f in pending:
            i = futures[f]
            t0 = started.get(i)
            if t0 is None or now - t0 < self.branch_timeout:
                continue
            expired.add(f)
            tree.failed_branches += 1
            results[i] = []
            logger.warning("replies for %s timed out, treating as none", frontier[i].hash)
        return expired

    @staticmethod
    def _collect(
        f: Future,
        i: int,
        frontier: list[ReplyNode],
        tree: ConversationTree,
        results: dict[int, list[Cast]],
    ) -> None:
        try:
            results[i] = list(f.result())
        except Exception as e:
            tree.failed_branches += 1
            results[i] = []
            logger.warning("replies for %s unavailable, treating as none: %s", frontier[i].hash, e)

    def _attach(
        self,
        frontier: list[ReplyNode],
        replies: dict[int, list[Cast]],
        tree: ConversationTree,
        seen: set[str],
    ) -> list[ReplyNode]:
        next_frontier: list[ReplyNode] = []
        count = len(seen)

        for i, node in enumerate(frontier):
            casts = replies.get(i, [])
            if len(casts) > self.max_fanout:
                casts = casts[:self.max_fanout]
                tree.truncated = True

            for cast in casts:
                if cast.hash in seen:
                    logger.debug("skipping repeated cast %s", cast.hash)
                    continue
                if cast.parent_hash is None:
                    cast = dataclasses.replace(cast, parent_hash=node.hash)
                elif cast.parent_hash != node.hash:
                    logger.debug("skipping %s: parent %s != %s", cast.hash, cast.parent_hash, node.hash)
                    continue
                if count >= self.max_nodes:
                    tree.truncated = True
                    return next_frontier

                child = ReplyNode(cast=cast)
                node.children.append(child)
                next_frontier.append(child)
                seen.add(cast.hash)
                count += 1

        return next_frontier
