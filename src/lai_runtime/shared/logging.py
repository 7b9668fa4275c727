"""Logging setup and per-command event collection.

Library modules log through the standard ``logging`` module as usual. On top
of that, an application can install an EventCollector with
``collector_context``: model state changes, download milestones, generation
outcomes and every ``@log_operation`` call are then recorded in order, with
timings, and the CLI prints them after the command finishes.
"""

from __future__ import annotations

import functools
import inspect
import logging
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Iterator

from logging.handlers import RotatingFileHandler
from rich.console import Console
from rich.markup import escape
from rich.table import Table


class EventCategory(Enum):
    MODEL = auto()
    DOWNLOAD = auto()
    GENERATION = auto()
    SYSTEM = auto()


class EventLevel(Enum):
    INFO = auto()
    DETAIL = auto()
    TRACE = auto()


@dataclass(frozen=True)
class Event:
    category: EventCategory
    level: EventLevel
    message: str
    offset_ms: float
    data: dict[str, Any] = field(default_factory=dict)
    duration_ms: float | None = None
    depth: int = 0


class EventCollector:
    """Ordered record of what happened during one command."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self._origin = time.perf_counter()
        self._depth = 0

    def _offset_ms(self) -> float:
        return (time.perf_counter() - self._origin) * 1000

    def emit(
        self,
        category: EventCategory,
        message: str,
        level: EventLevel = EventLevel.INFO,
        **data: Any,
    ) -> Event:
        event = Event(
            category=category,
            level=level,
            message=message,
            offset_ms=self._offset_ms(),
            data=data,
            depth=self._depth,
        )
        self.events.append(event)
        return event

    @contextmanager
    def operation(self, category: EventCategory, name: str, **data: Any) -> Iterator[None]:
        """Record ``name`` as started, then completed or failed with its duration."""
        self.emit(category, f"{name} started", level=EventLevel.DETAIL, **data)
        start = time.perf_counter()
        self._depth += 1
        outcome = "failed"
        try:
            yield
            outcome = "completed"
        finally:
            self._depth -= 1
            self.events.append(
                Event(
                    category=category,
                    level=EventLevel.INFO,
                    message=f"{name} {outcome}",
                    offset_ms=self._offset_ms(),
                    data=data,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    depth=self._depth,
                )
            )

    def of(self, category: EventCategory) -> list[Event]:
        return [e for e in self.events if e.category is category]

    def clear(self) -> None:
        self.events.clear()
        self._origin = time.perf_counter()


class EventRenderer:
    """Prints a collector as a table (--verbose) or into the debug log (--debug)."""

    def __init__(self, console: Console, verbose: bool = False, debug: bool = False) -> None:
        self.console = console
        self.verbose = verbose
        self.debug = debug
        self._logger = logging.getLogger("lai_runtime.events")

    def render_flow(self, collector: EventCollector) -> None:
        if self.debug:
            self._log_events(collector.events)
        if self.verbose and collector.events:
            self.console.print(self._table(collector.events))

    @staticmethod
    def _table(events: list[Event]) -> Table:
        table = Table(title="Session flow", title_style="dim", box=None, pad_edge=False)
        table.add_column("+ms", justify="right", style="dim")
        table.add_column("Area", style="cyan")
        table.add_column("Event")
        table.add_column("Took", justify="right", style="green")

        for event in events:
            if event.level is EventLevel.TRACE:
                continue
            message = "  " * event.depth + escape(event.message)
            if event.data:
                details = ", ".join(f"{k}={v}" for k, v in event.data.items())
                message += f" [dim]{escape(details)}[/dim]"
            took = f"{event.duration_ms:.0f}ms" if event.duration_ms is not None else ""
            table.add_row(f"{event.offset_ms:.0f}", event.category.name.lower(), message, took)
        return table

    def _log_events(self, events: list[Event]) -> None:
        for event in events:
            extra = f" {event.data}" if event.data else ""
            if event.duration_ms is not None:
                extra += f" ({event.duration_ms:.2f}ms)"
            self._logger.debug(f"+{event.offset_ms:.1f}ms [{event.category.name}] {event.message}{extra}")


def _console_handler(level: int) -> logging.Handler:
    from rich.logging import RichHandler

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        show_time=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setLevel(level)
    return handler


def _debug_file_handler(log_dir: str) -> logging.Handler | None:
    log_path = os.path.join(log_dir, "lai.debug.log")
    try:
        os.makedirs(log_dir, exist_ok=True)
        handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"[lai] Failed to open debug log file: {log_path} ({exc})", file=sys.stderr)
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(threadName)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    return handler


class LogConfig:
    """Logging setup for the ``lai`` CLI.

    - default: warnings and errors only
    - --verbose: INFO from lai_runtime plus the event table
    - --debug: everything at DEBUG into $LAI_LOG_DIR/lai.debug.log (default
      ``.logs``), INFO on the console
    """

    NOISY_LOGGERS: tuple[str, ...] = (
        "httpx",
        "httpcore",
        "llama_cpp",
        "PIL",
        "asyncio",
    )

    @classmethod
    def configure(cls, *, verbose: bool = False, debug: bool = False) -> None:
        root = logging.getLogger()
        root.handlers.clear()

        console_level = logging.INFO if (verbose or debug) else logging.WARNING
        root.addHandler(_console_handler(console_level))
        root.setLevel(logging.DEBUG if debug else console_level)

        if debug:
            file_handler = _debug_file_handler(os.getenv("LAI_LOG_DIR", ".logs"))
            if file_handler is not None:
                root.addHandler(file_handler)

        for name in cls.NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    @classmethod
    def get_renderer(cls, console: Console, *, verbose: bool, debug: bool) -> EventRenderer:
        return EventRenderer(console=console, verbose=verbose, debug=debug)

    @classmethod
    def new_collector(cls) -> EventCollector:
        return EventCollector()


_collector_context = threading.local()


def _get_current_collector() -> EventCollector | None:
    return getattr(_collector_context, "collector", None)


def set_current_collector(collector: EventCollector | None) -> None:
    _collector_context.collector = collector


@contextmanager
def collector_context(collector: EventCollector) -> Iterator[EventCollector]:
    old = _get_current_collector()
    set_current_collector(collector)
    try:
        yield collector
    finally:
        set_current_collector(old)


def emit_event(category: EventCategory, message: str, level: EventLevel = EventLevel.INFO, **data: Any) -> None:
    """Record an event on this thread's collector, if one is installed."""
    collector = _get_current_collector()
    if collector is not None:
        collector.emit(category, message, level=level, **data)


def log_operation(category: EventCategory, name: str | None = None):
    """Time a sync or async callable as an operation on the current collector."""

    def decorator(func):
        op_name = name or func.__name__

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                collector = _get_current_collector()
                if collector is None:
                    return await func(*args, **kwargs)
                with collector.operation(category, op_name):
                    return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            collector = _get_current_collector()
            if collector is None:
                return func(*args, **kwargs)
            with collector.operation(category, op_name):
                return func(*args, **kwargs)

        return wrapper

    return decorator
