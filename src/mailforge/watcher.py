"""File watcher and incremental rebuild.

Architecture:
- subscribe(): watchdog Observer whose events are handed to the event loop
  through an asyncio.Queue (ChangeStream)
- ChangeStream.batches(): coalesces bursts of events into one batch
- Watcher: classifies each batch, runs the union of the rebuild plans
  once, then signals a single reload

Rebuild plans per change class:
    page      compile-pages, inline
    template  invalidate cache, compile-pages, inline
    style     compile-styles, compile-pages, inline
    image     process-images
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Iterable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from mailforge.exceptions import CleanError
from mailforge.source import is_archived

log = logging.getLogger(__name__)

DEFAULT_WINDOW = 0.3


class ChangeClass(str, Enum):
    PAGE = "page"
    TEMPLATE = "template"
    STYLE = "style"
    IMAGE = "image"


PLANS: dict[ChangeClass, tuple[str, ...]] = {
    ChangeClass.PAGE: ("compile-pages", "inline"),
    ChangeClass.TEMPLATE: ("compile-pages", "inline"),
    ChangeClass.STYLE: ("compile-styles", "compile-pages", "inline"),
    ChangeClass.IMAGE: ("process-images",),
}

# directory under the project -> change class
SOURCE_CLASSES: dict[tuple[str, ...], ChangeClass] = {
    ("pages",): ChangeClass.PAGE,
    ("layouts",): ChangeClass.TEMPLATE,
    ("partials",): ChangeClass.TEMPLATE,
    ("helpers",): ChangeClass.TEMPLATE,
    ("assets", "scss"): ChangeClass.STYLE,
    ("assets", "img"): ChangeClass.IMAGE,
}


@dataclass(frozen=True)
class ChangeEvent:
    path: Path
    change: ChangeClass
    kind: str = "modified"


RawEvent = tuple[Path, str]


def classify(path: Path, source_dir: Path, library_dirs: Iterable[Path] = ()) -> ChangeClass | None:
    """Change class of a path, or None if it does not affect the build."""
    for library in library_dirs:
        if path.is_relative_to(library):
            return ChangeClass.STYLE

    if not path.is_relative_to(source_dir):
        return None
    parts = path.relative_to(source_dir).parts

    for prefix, change in SOURCE_CLASSES.items():
        if parts[: len(prefix)] != prefix or len(parts) <= len(prefix):
            continue
        logical = "/".join(parts[len(prefix):])
        if change in (ChangeClass.PAGE, ChangeClass.IMAGE) and is_archived(logical):
            return None
        return change
    return None


def plan(events: Iterable[ChangeEvent]) -> tuple[set[str], bool]:
    """Union of the rebuild plans, and whether the template cache is stale."""
    tasks: set[str] = set()
    invalidate = False
    for event in events:
        tasks.update(PLANS[event.change])
        if event.change == ChangeClass.TEMPLATE:
            invalidate = True
    return tasks, invalidate


class _QueueHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[RawEvent]):
        super().__init__()
        self.loop = loop
        self.queue = queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed", "closed_no_write"):
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        for raw in paths:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            self.loop.call_soon_threadsafe(self.queue.put_nowait, (Path(raw), event.event_type))


class ChangeStream:
    """Infinite stream of file events; closing it ends the subscription."""

    def __init__(self, queue: asyncio.Queue[RawEvent] | None = None, observer=None):
        self.queue: asyncio.Queue[RawEvent] = queue or asyncio.Queue()
        self.observer = observer

    def put(self, path: Path, kind: str = "modified") -> None:
        self.queue.put_nowait((path, kind))

    async def batches(self, window: float = DEFAULT_WINDOW) -> AsyncIterator[list[RawEvent]]:
        """Yield events grouped by bursts separated by `window` seconds of quiet."""
        while True:
            batch = [await self.queue.get()]
            while True:
                try:
                    batch.append(await asyncio.wait_for(self.queue.get(), window))
                except asyncio.TimeoutError:
                    break
            yield batch

    def close(self) -> None:
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None


def subscribe(roots: Iterable[Path]) -> ChangeStream:
    """Start watching roots recursively. Must be called from the event loop."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[RawEvent] = asyncio.Queue()
    handler = _QueueHandler(loop, queue)
    observer = Observer()
    for root in roots:
        if root.is_dir():
            observer.schedule(handler, str(root), recursive=True)
            log.debug(f"Watching {root}")
    observer.start()
    return ChangeStream(queue, observer)


class Watcher:
    """Runs incremental rebuilds for coalesced file changes.

    Args:
        source_dir: Project source directory.
        library_dirs: Shared stylesheet directories.
        run: Runs a set of task names (dependencies outside the set are
            considered satisfied).
        invalidate: Drops the template cache.
        reload: Signals preview clients.
        window: Coalescing window in seconds.
        stream: Event source; defaults to a watchdog subscription.
    """

    def __init__(
        self,
        source_dir: Path,
        library_dirs: Iterable[Path],
        run: Callable[[set[str]], Awaitable[object]],
        invalidate: Callable[[], None],
        reload: Callable[[], None],
        window: float = DEFAULT_WINDOW,
        stream: ChangeStream | None = None,
    ):
        self.source_dir = source_dir.resolve()
        self.library_dirs = [p.resolve() for p in library_dirs]
        self.run = run
        self.invalidate = invalidate
        self.reload = reload
        self.window = window
        self.stream = stream
        self.rebuilds = 0

    def events(self, batch: Iterable[RawEvent]) -> list[ChangeEvent]:
        events: list[ChangeEvent] = []
        for path, kind in batch:
            change = classify(path.resolve(), self.source_dir, self.library_dirs)
            if change is not None:
                events.append(ChangeEvent(path, change, kind))
        return events

    async def handle(self, batch: list[RawEvent]) -> bool:
        """Rebuild for one batch. Returns True if a reload was signalled."""
        events = self.events(batch)
        if not events:
            return False

        tasks, invalidate = plan(events)
        changed = sorted({e.change.value for e in events})
        log.info(f"{len(events)} change(s) ({', '.join(changed)}): running {', '.join(sorted(tasks))}")

        if invalidate:
            self.invalidate()
        try:
            await self.run(tasks)
        except CleanError:
            raise
        except Exception as e:
            log.error(f"Rebuild failed: {e}")
            return False

        self.rebuilds += 1
        self.reload()
        return True

    async def run_forever(self) -> None:
        stream = self.stream or subscribe([self.source_dir, *self.library_dirs])
        try:
            async for batch in stream.batches(self.window):
                await self.handle(batch)
        finally:
            stream.close()
