"""Fan datapoints, events and spans out to several sinks."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .protocol import Datapoint, Event, Span, cumulative, raise_errors

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class DemuxStats:
    late_dps: int = 0
    future_dps: int = 0
    late_events: int = 0
    future_events: int = 0
    late_spans: int = 0
    future_spans: int = 0


@dataclass
class Demultiplexer:
    """Sends everything it receives to each configured sink, counting late and future items."""

    datapoint_sinks: list[Any] = field(default_factory=list)
    event_sinks: list[Any] = field(default_factory=list)
    trace_sinks: list[Any] = field(default_factory=list)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    late_duration: timedelta | None = None
    future_duration: timedelta | None = None
    stats: DemuxStats = field(default_factory=DemuxStats, init=False)

    def _classify(self, when: datetime, now: datetime) -> str | None:
        if self.future_duration is not None and when > now + self.future_duration:
            return "future"
        if self.late_duration is not None and when < now - self.late_duration:
            return "late"
        return None

    def _check_times(self, items, timestamp_of, name_of, kind: str, stat: str) -> None:
        if self.future_duration is None and self.late_duration is None:
            return
        now = datetime.now(timezone.utc)
        for item in items:
            when = timestamp_of(item)
            if when is None:
                continue
            verdict = self._classify(when, now)
            if verdict == "future":
                self.stats.__dict__[f"future_{stat}"] += 1
                self.logger.warning("%s received too far into the future: %s (delta %s)",
                                    kind, name_of(item), when - now)
            elif verdict == "late":
                self.stats.__dict__[f"late_{stat}"] += 1
                self.logger.warning("%s received too far into the past: %s (delta %s)",
                                    kind, name_of(item), now - when)

    @staticmethod
    def _send(sinks, method: str, items) -> None:
        errors: list[Exception] = []
        for sink in sinks:
            try:
                getattr(sink, method)(items)
            except Exception as exc:  # collected and re-raised together
                errors.append(exc)
        raise_errors(errors, f"{method} failed on {len(errors)} sinks")

    def add_datapoints(self, points: list[Datapoint]) -> None:
        if not points:
            return
        self._check_times(points, lambda d: d.timestamp, str, "datapoint", "dps")
        self._send(self.datapoint_sinks, "add_datapoints", points)

    def add_events(self, events: list[Event]) -> None:
        if not events:
            return
        self._check_times(events, lambda e: e.timestamp, str, "event", "events")
        self._send(self.event_sinks, "add_events", events)

    def add_spans(self, spans: list[Span]) -> None:
        """Each sink but the last gets its own copy so tags can be changed safely."""
        if not spans:
            return
        self._check_times(
            spans,
            lambda s: None if s.timestamp is None else _EPOCH + timedelta(microseconds=s.timestamp),
            lambda s: s.id,
            "trace",
            "spans",
        )
        errors: list[Exception] = []
        last = len(self.trace_sinks) - 1
        for i, sink in enumerate(self.trace_sinks):
            to_send = spans if i == last else _deep_copy_spans(spans)
            try:
                sink.add_spans(to_send)
            except Exception as exc:
                errors.append(exc)
        raise_errors(errors, f"add_spans failed on {len(errors)} sinks")

    def datapoints(self) -> list[Datapoint]:
        dps: list[Datapoint] = []
        if self.future_duration is not None:
            dps += [
                cumulative("future.count", {"type": "datapoint"}, self.stats.future_dps),
                cumulative("future.count", {"type": "event"}, self.stats.future_events),
                cumulative("future.count", {"type": "spans"}, self.stats.future_spans),
            ]
        if self.late_duration is not None:
            dps += [
                cumulative("late.count", {"type": "datapoint"}, self.stats.late_dps),
                cumulative("late.count", {"type": "event"}, self.stats.late_events),
                cumulative("late.count", {"type": "spans"}, self.stats.late_spans),
            ]
        return dps


def _deep_copy_spans(spans: list[Span]) -> list[Span]:
    return [dataclasses.replace(s, tags=dict(s.tags or {})) for s in spans]