"""Structured logging, lifecycle events and console reporting."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, TextIO

EventLevel = Literal["begin", "info", "warn", "error", "verbose", "complete", "all_complete"]
ConsoleChannel = Literal["disabled", "error", "info", "verbose"]


@dataclass(frozen=True, slots=True)
class BuildEvent:
    level: EventLevel
    message: str
    scope: str | None = None
    stage: str | None = None
    extra: dict[str, Any] | None = None

    @property
    def is_global(self) -> bool:
        return self.scope is None

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "level": self.level,
            "scope": self.scope,
            "stage": self.stage,
            "message": self.message,
        }
        if self.extra is not None:
            record["extra"] = self.extra
        return record


Listener = Callable[[BuildEvent], None]


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)
    _listeners: list[Listener] = field(default_factory=list, repr=False)

    def log(
        self,
        *,
        level: EventLevel,
        message: str,
        scope: str | None = None,
        stage: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> BuildEvent:
        event = BuildEvent(level=level, message=message, scope=scope, stage=stage, extra=extra)
        self.emit(event)
        return event

    def emit(self, event: BuildEvent) -> None:
        self.records.append(event.to_record())
        for listener in tuple(self._listeners):
            listener(event)

    def info(self, message: str, *, stage: str | None = None) -> None:
        self.log(level="info", message=message, stage=stage)

    def warn(self, message: str, *, stage: str | None = None) -> None:
        self.log(level="warn", message=message, stage=stage)

    def error(self, message: str, *, stage: str | None = None) -> None:
        self.log(level="error", message=message, stage=stage)

    def verbose(self, message: str, *, stage: str | None = None) -> None:
        self.log(level="verbose", message=message, stage=stage)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def records_for_scope(self, scope: str | None) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("scope") == scope]

    def records_for_level(self, level: EventLevel) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("level") == level]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path


_CHANNEL_LEVELS: dict[ConsoleChannel, frozenset[EventLevel]] = {
    "disabled": frozenset(),
    "error": frozenset({"error", "warn"}),
    "info": frozenset({"error", "warn", "info", "begin", "complete", "all_complete"}),
    "verbose": frozenset(
        {"error", "warn", "info", "begin", "complete", "all_complete", "verbose"}
    ),
}

# level -> (label, ansi colour)
_STYLES: dict[EventLevel, tuple[str, str]] = {
    "begin": ("INFO", "34"),
    "complete": ("INFO", "32"),
    "all_complete": ("INFO", "32"),
    "info": ("INFO", "36"),
    "warn": ("WARN", "33"),
    "error": ("ERROR", "31"),
    "verbose": ("VERBOSE", "35"),
}


@dataclass(slots=True)
class ConsoleReporter:
    """Print events as ``[LEVEL][timestamp] message`` lines."""

    channel: ConsoleChannel = "verbose"
    include_scoped: bool = False
    stream: TextIO | None = None

    def __call__(self, event: BuildEvent) -> None:
        if event.level not in _CHANNEL_LEVELS[self.channel]:
            return
        if not event.is_global and not self.include_scoped:
            return
        label, colour = _STYLES[event.level]
        stamp = datetime.now(timezone.utc).isoformat()
        prefix = f"[{event.scope}] " if event.scope else ""
        print(
            f"\x1b[{colour}m[{label}][{stamp}] {prefix}{event.message}\x1b[0m",
            file=self.stream or sys.stdout,
        )
