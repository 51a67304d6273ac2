"""Core data model and shared protocol helpers for the gateway."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterable, NamedTuple


class MetricType(IntEnum):
    """Kinds of metric a datapoint can carry."""

    GAUGE = 0
    COUNT = 1
    ENUM = 2
    COUNTER = 3
    RATE = 4
    TIMESTAMP = 5


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Datapoint:
    """A single measurement of a metric with its dimensions."""

    metric: str
    dimensions: dict[str, str] = field(default_factory=dict)
    value: int | float = 0
    metric_type: MetricType = MetricType.GAUGE
    timestamp: datetime = field(default_factory=_now)
    meta: dict[Any, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"DP[{self.metric}\t{self.dimensions}\t{self.value}\t"
            f"{self.metric_type.name}\t{self.timestamp.isoformat()}]"
        )


@dataclass
class Event:
    """A discrete occurrence with properties rather than a value."""

    event_type: str
    category: str = "USER_DEFINED"
    dimensions: dict[str, str] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)

    def __str__(self) -> str:
        return (
            f"E[{self.event_type}\t{self.dimensions}\t{self.properties}\t"
            f"{self.category}\t{self.timestamp.isoformat()}]"
        )


@dataclass
class Span:
    """A trace span; ``timestamp`` and ``duration`` are in microseconds."""

    trace_id: str = ""
    id: str = ""
    name: str | None = None
    parent_id: str | None = None
    kind: str | None = None
    timestamp: int | None = None
    duration: int | None = None
    debug: bool | None = None
    shared: bool | None = None
    local_endpoint: dict[str, Any] | None = None
    remote_endpoint: dict[str, Any] | None = None
    annotations: list[Any] | None = None
    tags: dict[str, str] | None = None


def cumulative(metric: str, dimensions: dict[str, str] | None, value: int | float) -> Datapoint:
    """Build a cumulative counter datapoint stamped with the current time."""
    return Datapoint(metric, dict(dimensions or {}), value, MetricType.COUNTER)


def gauge(metric: str, dimensions: dict[str, str] | None, value: int | float) -> Datapoint:
    """Build a gauge datapoint stamped with the current time."""
    return Datapoint(metric, dict(dimensions or {}), value, MetricType.GAUGE)


def listener_dims(name: str, typ: str) -> dict[str, str]:
    """Common stat dimensions for listener protocols."""
    return {"location": "listener", "name": name, "type": typ}


def forwarder_dims(name: str, typ: str) -> dict[str, str]:
    """Common stat dimensions for forwarder protocols."""
    return {"location": "forwarder", "name": name, "type": typ}


def raise_errors(errors: Iterable[BaseException | None], message: str) -> None:
    """Raise the collected errors: nothing if none, the error itself if one, a group otherwise."""
    found = [e for e in errors if e is not None]
    if not found:
        return
    if len(found) == 1:
        raise found[0]
    raise ExceptionGroup(message, [e for e in found if isinstance(e, Exception)])


class UneventfulForwarder:
    """Turns a datapoint-only forwarder into a full forwarder that drops events and spans."""

    def __init__(self, forwarder: Any) -> None:
        self.forwarder = forwarder
        self.dropped_events = 0
        self.dropped_spans = 0
        self.started = False

    def add_datapoints(self, points: list[Datapoint]) -> None:
        self.forwarder.add_datapoints(points)

    def add_events(self, events: list[Event] | None) -> None:
        """Drop the events, counting how many were discarded."""
        self.dropped_events += len(events or ())

    def add_spans(self, spans: list[Span] | None) -> None:
        """Drop the spans, counting how many were discarded."""
        self.dropped_spans += len(spans or ())

    def pipeline(self) -> int:
        return 0

    def startup_finished(self) -> None:
        """Record that the gateway has finished starting."""
        self.started = True

    def debug_endpoints(self) -> dict[str, Any]:
        return {}

    def datapoints(self) -> list[Datapoint]:
        return self.forwarder.datapoints()

    def close(self) -> None:
        self.forwarder.close()


class HealthResponse(NamedTuple):
    status: int
    headers: dict[str, str]
    body: bytes


class CloseableHealthCheck:
    """Health check that answers 200 until closed, then 404 asking the client to disconnect."""

    def __init__(self) -> None:
        self._health_lock = threading.Lock()
        self._health_closed = False
        self._total_health_checks = 0

    def close_health_check(self) -> None:
        with self._health_lock:
            self._health_closed = True

    def health_datapoints(self) -> list[Datapoint]:
        with self._health_lock:
            total = self._total_health_checks
        return [cumulative("total_health_checks", None, total)]

    def health_check_response(self) -> HealthResponse:
        """Count a health check and return the response it should get."""
        with self._health_lock:
            self._total_health_checks += 1
            closed = self._health_closed
        if closed:
            return HealthResponse(404, {"Connection": "Close"}, b"graceful shutdown")
        return HealthResponse(200, {}, b"OK")