from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from rich.console import Console
from rich.table import Table

from .adapter import classify_embed
from .context import DEFAULT_TIMEOUT, NeynarContext
from .coordinator import DEFAULT_LIMIT, MAX_LIMIT, PaginationCoordinator, TreeCache, UnrepliedService, parse_fid
from .exceptions import UnrepliedException, map_exception_to_exit_code
from .sources import HubCastListing, HubConversationSource, NeynarCastListing, NeynarConversationSource
from .structures import DAY_FILTERS, CastRef, PageResult
from .ui import NullSink, ProgressSink, RichSink
from .walker import DEFAULT_MAX_DEPTH, DEFAULT_MAX_FANOUT, DEFAULT_MAX_WORKERS, TreeWalker

_TEXT_WIDTH = 60


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="unreplied", description="List replies you have not answered yet.")
    parser.add_argument("fid", help="Account FID (cast author FID with --conversation)")

    parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Root casts per page")
    parser.add_argument("--cursor", help="Continue from a cursor printed by an earlier run")
    parser.add_argument("--day-filter", choices=DAY_FILTERS, default="today")
    parser.add_argument("--pages", type=int, default=1, help="Number of pages to load")
    parser.add_argument("--conversation", metavar="HASH", help="Inspect a single conversation")

    parser.add_argument("--source", choices=("api", "hub"), default="api")
    parser.add_argument("--api-key", help="Neynar API key (default: $NEYNAR_API_KEY)")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Per-request timeout in seconds")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH)
    parser.add_argument("--max-fanout", type=int, default=DEFAULT_MAX_FANOUT)
    parser.add_argument("--workers", type=int, default=DEFAULT_MAX_WORKERS)

    parser.add_argument("--json", action="store_true", help="Print the raw response body")
    parser.add_argument("-v", "--verbose", action="store_true")

    args = parser.parse_args(argv)

    if not 1 <= args.limit <= MAX_LIMIT:
        parser.error(f"--limit must be between 1 and {MAX_LIMIT}")
    if args.pages < 1:
        parser.error("--pages must be >= 1")
    if args.cursor and args.pages > 1:
        parser.error("--cursor cannot be combined with --pages")
    if args.timeout <= 0:
        parser.error("--timeout must be > 0")
    if args.max_depth < 1 or args.max_fanout < 1 or args.workers < 1:
        parser.error("--max-depth, --max-fanout and --workers must be >= 1")

    return args


def build_service(args: argparse.Namespace, context: NeynarContext, sink: ProgressSink) -> UnrepliedService:
    if args.source == "hub":
        listing: Any = HubCastListing(context)
        source: Any = HubConversationSource(context, page_size=args.max_fanout + 1)
        profiles = context.fetch_bulk_users if context.api_key else None
    else:
        listing = NeynarCastListing(context)
        source = NeynarConversationSource(context)
        profiles = None

    walker = TreeWalker(
        source,
        max_depth=args.max_depth,
        max_fanout=args.max_fanout,
        max_workers=args.workers,
    )
    return UnrepliedService(listing, walker, cache=TreeCache(), profiles=profiles, progress=sink)


def render_page(console: Console, result: PageResult) -> None:
    table = Table(title=result.message, show_lines=False)
    table.add_column("From")
    table.add_column("Age", justify="right")
    table.add_column("Reply")
    table.add_column("Replies", justify="right")
    table.add_column("Embeds")
    table.add_column("On")

    for d in result.details:
        text = d.text.replace("\n", " ")
        if len(text) > _TEXT_WIDTH:
            text = text[:_TEXT_WIDTH - 1] + "…"
        kinds = ", ".join(classify_embed(e) for e in d.embeds)
        table.add_row(f"@{d.username}", d.time_ago, text, str(d.reply_count), kinds, d.original_cast_hash[:10])

    console.print(table)
    if result.next_cursor:
        console.print(f"next cursor: {result.next_cursor}")


def _load_pages(service: UnrepliedService, fid: int, args: argparse.Namespace) -> PageResult:
    if args.pages == 1:
        return service.fetch_page(fid, args.limit, args.cursor, args.day_filter)

    coordinator = PaginationCoordinator(service, limit=args.limit)
    coordinator.load_first_page(fid, args.day_filter)
    for _ in range(args.pages - 1):
        if not coordinator.load_next_page():
            break

    state = coordinator.state
    if state.error and not state.accumulated:
        raise UnrepliedException(state.error)
    if state.error:
        logging.getLogger(__name__).warning("stopped early: %s", state.error)
    return PageResult(details=state.accumulated, next_cursor=state.cursor)


def main(argv: list[str] | None = None) -> int:
    sink: NullSink | RichSink | None = None

    try:
        args = parse_args(argv)
        level = logging.DEBUG if args.verbose else logging.WARNING

        console = Console()
        err_console = Console(stderr=True)
        if sys.stderr.isatty():
            from rich.logging import RichHandler

            sink = RichSink(err_console)
            logging.basicConfig(
                handlers=[RichHandler(console=err_console, show_path=False)],
                level=level,
                format="%(message)s",
            )
        else:
            sink = NullSink()
            logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

        overrides: dict[str, Any] = {"request_timeout": args.timeout}
        if args.api_key:
            overrides["api_key"] = args.api_key
        context = NeynarContext.from_env(**overrides)
        service = build_service(args, context, sink)

        fid = parse_fid(args.fid)
        if args.conversation:
            body = service.inspect_conversation(CastRef(fid=fid, hash=args.conversation))
            sink.close()
            console.print_json(json.dumps(body, ensure_ascii=False))
            return 0

        result = _load_pages(service, fid, args)
        sink.close()
        if args.json:
            console.print_json(json.dumps(result.to_dict(), ensure_ascii=False))
        else:
            render_page(console, result)
        return 0

    except KeyboardInterrupt:
        return map_exception_to_exit_code(KeyboardInterrupt())
    except SystemExit as exc:
        code = exc.code if isinstance(exc.code, int) else 2
        return 0 if code == 0 else 2
    except UnrepliedException as exc:
        print(f"error: {exc}", file=sys.stderr)
        return map_exception_to_exit_code(exc)
    except BaseException as exc:
        logging.getLogger(__name__).debug("unexpected failure", exc_info=True)
        return map_exception_to_exit_code(exc)
    finally:
        if sink is not None:
            sink.close()


if __name__ == "__main__":
    sys.exit(main())
