from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    STAGE = "stage"
    PAGE_START = "page_start"
    ROOT_DONE = "root_done"
    PAGE_DONE = "page_done"


@dataclass(slots=True)
class UIEvent:
    kind: EventKind
    message: str | None = None
    fid: int | None = None
    roots_done: int | None = None
    roots_total: int | None = None
    unreplied: int | None = None


@runtime_checkable
class ProgressSink(Protocol):
    def emit(self, event: UIEvent) -> None: ...
    def close(self) -> None: ...


class NullSink:
    def emit(self, event: UIEvent) -> None:
        pass

    def close(self) -> None:
        pass


class RichSink:
    def __init__(self, console: Console) -> None:
        self._console = console
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            console=console,
            transient=True,
        )
        self._task_id = self._progress.add_task("Starting...", total=None)
        self._progress.start()

    def emit(self, event: UIEvent) -> None:
        try:
            self._handle(event)
        except Exception:
            logger.debug("RichSink.emit failed", exc_info=True)

    def close(self) -> None:
        try:
            self._progress.stop()
        except Exception:
            logger.debug("RichSink.close failed", exc_info=True)

    def _handle(self, event: UIEvent) -> None:
        kind = event.kind
        if kind == EventKind.STAGE:
            self._progress.update(self._task_id, description=escape(event.message or ""))
        elif kind == EventKind.PAGE_START:
            self._progress.update(self._task_id, description=f"Listing casts for fid {event.fid}")
        elif kind == EventKind.ROOT_DONE:
            self._progress.update(
                self._task_id,
                description=f"Walking conversations {event.roots_done}/{event.roots_total}",
            )
        elif kind == EventKind.PAGE_DONE:
            self._progress.update(self._task_id, description="")
            self._console.print(f"[green]✓[/green] fid {event.fid}: {event.unreplied} unreplied")
