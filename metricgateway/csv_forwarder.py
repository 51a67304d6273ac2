"""Forwarder that writes datapoints, events and spans to a file, one per line."""

from __future__ import annotations

import json
import os
import threading
from typing import Any, Callable, TextIO

from .filtering import FilteredForwarder, FilterObj
from .protocol import Datapoint, Event, Span

_SPAN_KEYS = {
    "trace_id": "traceId",
    "id": "id",
    "name": "name",
    "parent_id": "parentId",
    "kind": "kind",
    "timestamp": "timestamp",
    "duration": "duration",
    "debug": "debug",
    "shared": "shared",
    "local_endpoint": "localEndpoint",
    "remote_endpoint": "remoteEndpoint",
    "annotations": "annotations",
    "tags": "tags",
}
_REQUIRED_SPAN_KEYS = {"trace_id", "id"}


def _span_json(span: Span) -> str:
    body = {
        key: getattr(span, attr)
        for attr, key in _SPAN_KEYS.items()
        if attr in _REQUIRED_SPAN_KEYS or getattr(span, attr) is not None
    }
    return json.dumps(body)


def _write(file: TextIO, text: str) -> int:
    return file.write(text)


class CsvForwarder(FilteredForwarder):
    """Appends the string form of everything it receives to a file."""

    def __init__(
        self,
        filename: str | os.PathLike[str] = "datapoints.csv",
        filters: FilterObj | None = None,
        write_string: Callable[[TextIO, str], Any] | None = None,
    ) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._write_string = write_string or _write
        self.total_datapoints_forwarded = 0
        self.total_events_forwarded = 0
        self.total_spans_forwarded = 0
        self.started = False
        try:
            fd = os.open(filename, os.O_WRONLY | os.O_TRUNC | os.O_CREAT, 0o600)
        except OSError as exc:
            raise OSError(exc.errno, f"cannot open file {filename}: {exc.strerror}") from exc
        self._file = os.fdopen(fd, "w", encoding="utf-8")
        try:
            self.setup(filters)
        except Exception:
            self._file.close()
            raise

    def __enter__(self) -> CsvForwarder:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _write_lines(self, lines: list[str], kind: str) -> None:
        for line in lines:
            try:
                self._write_string(self._file, line + "\n")
            except Exception as exc:
                raise OSError(f"cannot write {kind} to file: {exc}") from exc
        self._file.flush()
        os.fsync(self._file.fileno())

    def add_datapoints(self, points: list[Datapoint]) -> None:
        points = self.filter_datapoints(points)
        with self._lock:
            self.total_datapoints_forwarded += len(points)
            self._write_lines([str(dp) for dp in points], "datapoint")

    def add_events(self, events: list[Event]) -> None:
        with self._lock:
            self.total_events_forwarded += len(events)
            self._write_lines([str(e) for e in events], "event")

    def add_spans(self, spans: list[Span]) -> None:
        with self._lock:
            self.total_spans_forwarded += len(spans)
            self._write_lines([_span_json(s) for s in spans], "span")

    def pipeline(self) -> int:
        """Always 0: nothing is buffered."""
        return 0

    def startup_finished(self) -> None:
        """Record that the gateway has finished starting."""
        self.started = True

    def debug_endpoints(self) -> dict[str, Any]:
        return {}

    def datapoints(self) -> list[Datapoint]:
        return self.get_filtered_datapoints()

    def close(self) -> None:
        with self._lock:
            self._file.close()