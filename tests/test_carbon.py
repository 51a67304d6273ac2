from datetime import datetime, timedelta, timezone

import pytest

from metricgateway.carbon import InvalidCarbonLine, native_carbon_line, new_carbon_datapoint
from metricgateway.deconstructors import DeconstructorError, MetricDeconstructor, load
from metricgateway.protocol import Datapoint, MetricType

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def unix_nanos(ts):
    return (ts - EPOCH) // timedelta(microseconds=1) * 1000


class FailingDeconstructor(MetricDeconstructor):
    def parse(self, original_metric):
        raise DeconstructorError("error parsing")


@pytest.mark.parametrize(
    "line, value, timestamp",
    [
        ("hello 3 3", 3, 3000000000),
        ("hello 3.3 3", 3.3, 3000000000),
        ("hello 3 1519398226.544148", 3, 1519398226544000000),
        ("hello 3.3 1519398226.544148", 3.3, 1519398226544000000),
    ],
)
def test_valid_lines(line, value, timestamp):
    dp = new_carbon_datapoint(line, load("", ""))
    assert dp.metric == "hello"
    assert dp.value == value
    assert type(dp.value) is type(value)
    assert dp.metric_type == MetricType.GAUGE
    assert unix_nanos(dp.timestamp) == timestamp


@pytest.mark.parametrize("line", ["INVALIDLINE", "hello 3 bob", "hello bob 3"])
def test_invalid_lines(line):
    with pytest.raises(InvalidCarbonLine):
        new_carbon_datapoint(line, load("", ""))


def test_deconstructor_error_propagates():
    with pytest.raises(DeconstructorError, match="error parsing"):
        new_carbon_datapoint("hello 3 3", FailingDeconstructor())


def test_native_line_round_trip():
    dp = new_carbon_datapoint("hello 3.3 3", load("", ""))
    assert dp.value == 3.3
    assert native_carbon_line(dp) == "hello 3.3 3"


def test_native_line_absent_for_other_datapoints():
    assert native_carbon_line(Datapoint("hello")) is None


def test_deconstructor_dimensions_used():
    dp = new_carbon_datapoint("original.metric[host:bob] 3 3", load("commakeys", ""))
    assert dp.metric == "original.metric"
    assert dp.dimensions == {"host": "bob"}