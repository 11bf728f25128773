"""
gitchat.events

Append-only JSONL event writer for turn replay and observability sinks.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from .time_utils import now_ms


class EventSink(Protocol):
    def emit_event(self, event: Dict[str, Any], *, span_id: str | None = None) -> None:
        ...


class CallbackSink:
    """Forwards selected event types to a plain callable."""

    def __init__(self, callback: Callable[[Dict[str, Any]], None], types: Optional[set[str]] = None):
        self.callback = callback
        self.types = types

    def emit_event(self, event: Dict[str, Any], *, span_id: str | None = None) -> None:
        if self.types is None or event.get("type") in self.types:
            self.callback(event)


class EventLogger:
    def __init__(self, path: str | Path | None = None, sinks: List[EventSink] | None = None):
        self.path = Path(path) if path else None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._sinks = list(sinks or [])

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def log(self, event_type: str, payload: Dict[str, Any], *, span_id: str | None = None) -> None:
        event: Dict[str, Any] = {
            "ts_ms": now_ms(),
            "type": event_type,
            "payload": payload,
        }
        if span_id is not None:
            event["span_id"] = span_id
        self._write(event)
        for sink in list(self._sinks):
            try:
                sink.emit_event(event, span_id=span_id)
            except Exception:  # noqa: BLE001
                # Never allow observability sinks to change loop behavior.
                continue

    def begin_span(self, span_id: str, *, name: str, inputs: Dict[str, Any] | None = None) -> None:
        self.log("span_begin", {"name": name, "inputs": inputs or {}}, span_id=span_id)

    def end_span(self, span_id: str, *, outputs: Dict[str, Any] | None = None) -> None:
        self.log("span_end", {"outputs": outputs or {}}, span_id=span_id)

    def _write(self, event: Dict[str, Any]) -> None:
        if self.path is None:
            return
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, ensure_ascii=True, default=str) + "\n")


def read_events(path: str | Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with Path(path).open("r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if line:
                events.append(json.loads(line))
    return events
