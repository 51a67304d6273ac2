"""A sink stage that stamps fixed tags onto every span."""

from __future__ import annotations

from typing import Any

from .protocol import Datapoint, Event, Span


class AdditionalSpanTags:
    """Adds configured tags to each span, then passes everything on to the next sink."""

    def __init__(self, tags: dict[str, str], next_sink: Any) -> None:
        self.tags = tags
        self.next_sink = next_sink

    def add_datapoints(self, points: list[Datapoint]) -> Any:
        return self.next_sink.add_datapoints(points)

    def add_events(self, events: list[Event]) -> Any:
        return self.next_sink.add_events(events)

    def add_spans(self, spans: list[Span]) -> Any:
        for span in spans:
            if span.tags is None:
                span.tags = {}
            span.tags.update(self.tags)
        return self.next_sink.add_spans(spans)