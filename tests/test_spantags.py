import pytest

from metricgateway.protocol import Datapoint, Event, Span
from metricgateway.spantags import AdditionalSpanTags


class End:
    def __init__(self):
        self.spans = []
        self.points = []
        self.events = []

    def add_spans(self, spans):
        self.spans.extend(spans)

    def add_datapoints(self, points):
        self.points.extend(points)

    def add_events(self, events):
        self.events.extend(events)


@pytest.mark.parametrize(
    "tags, input_tags, expected",
    [
        ({"tagKey": "tagValue"}, {}, {"tagKey": "tagValue"}),
        ({"tagKey": "tagValue"}, None, {"tagKey": "tagValue"}),
        (
            {"tagKey": "tagValue", "secondTag": "secondValue"},
            None,
            {"tagKey": "tagValue", "secondTag": "secondValue"},
        ),
        (
            {"tagKey": "tagValue"},
            {"existingKey": "existingValue"},
            {"existingKey": "existingValue", "tagKey": "tagValue"},
        ),
        ({"tagKey": "tagValue"}, {"tagKey": "wrongValue"}, {"tagKey": "tagValue"}),
    ],
)
def test_additional_tags(tags, input_tags, expected):
    end = End()
    span = Span(tags=input_tags)
    AdditionalSpanTags(tags, end).add_spans([span])
    assert span.tags == expected
    assert end.spans == [span]


def test_passthroughs():
    end = End()
    at = AdditionalSpanTags({}, end)
    dp, ev = Datapoint("m"), Event("e")
    at.add_datapoints([dp])
    at.add_events([ev])
    assert end.points == [dp]
    assert end.events == [ev]