import math
import struct
import time
import urllib.error
import urllib.request

import pytest

from metricgateway.prometheus import (
    Decoder,
    Label,
    PrometheusListener,
    Sample,
    TimeSeries,
    get_metric_type,
    parse_write_request,
    snappy_decode,
)
from metricgateway.protocol import MetricType


class RecordingSink:
    def __init__(self):
        self.points = []

    def add_datapoints(self, points):
        self.points.extend(points)

    def add_events(self, events):
        pass


class FailingSink:
    def add_datapoints(self, points):
        raise RuntimeError("nope")

    def add_events(self, events):
        raise RuntimeError("nope")


def _varint(number):
    number &= (1 << 64) - 1
    out = bytearray()
    while number >= 0x80:
        out.append((number & 0x7F) | 0x80)
        number >>= 7
    out.append(number)
    return bytes(out)


def _delimited(field_number, payload):
    return _varint(field_number << 3 | 2) + _varint(len(payload)) + payload


def _encode_label(label):
    return _delimited(1, label.name.encode()) + _delimited(2, label.value.encode())


def _encode_sample(sample):
    return (
        _varint(1 << 3 | 1)
        + struct.pack("<d", sample.value)
        + _varint(2 << 3)
        + _varint(sample.timestamp)
    )


def _encode_request(series):
    body = b""
    for ts in series:
        inner = b"".join(_delimited(1, _encode_label(l)) for l in ts.labels)
        inner += b"".join(_delimited(2, _encode_sample(s)) for s in ts.samples)
        body += _delimited(1, inner)
    return body


def _snappy_literal(data):
    out = bytearray(_varint(len(data)))
    for start in range(0, len(data), 256):
        chunk = data[start:start + 256]
        if len(chunk) <= 60:
            out.append((len(chunk) - 1) << 2)
        else:
            out += bytes([60 << 2, len(chunk) - 1])
        out += chunk
    return bytes(out)


def _write_request():
    return [
        TimeSeries(
            labels=[
                Label("key", "value"),
                Label("__name__", "process_cpu_seconds_total"),
            ],
            samples=[Sample(1.0, int(time.time()) * 1000)],
        )
    ]


def _payload(series=None):
    return _snappy_literal(_encode_request(series if series is not None else _write_request()))


def _request(listener, path, body=None, content_type=None, method="GET"):
    host, port = listener.address()
    headers = {"Content-Type": content_type} if content_type else {}
    req = urllib.request.Request(
        f"http://{host}:{port}{path}", data=body, headers=headers, method=method
    )
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status, resp.read()
    except urllib.error.HTTPError as err:
        return err.code, err.read()


def _post(listener, body):
    return _request(listener, "/write", body, "application/x-protobuf", "POST")


@pytest.fixture
def served():
    sink = RecordingSink()
    with PrometheusListener(sink, listen_addr="127.0.0.1:0") as listener:
        yield listener, sink


def test_metric_types():
    assert get_metric_type("im_a_counter_bucket") == MetricType.COUNTER
    assert get_metric_type("im_a_counter_count") == MetricType.COUNTER
    assert get_metric_type("process_cpu_seconds_total") == MetricType.COUNTER
    assert get_metric_type("everything_else") == MetricType.GAUGE


def test_bad_listen_address():
    with pytest.raises(OSError):
        PrometheusListener(RecordingSink(), listen_addr="127.0.0.1:99999999r")


def test_snappy_literal_and_copy():
    assert snappy_decode(_snappy_literal(b"hello world")) == b"hello world"
    assert snappy_decode(bytes([8, 4]) + b"ab" + bytes([9, 2])) == b"abababab"


@pytest.mark.parametrize(
    "data",
    [b"", bytes([5, 4]) + b"ab", bytes([8, 9, 2]), bytes([2, 0xF0])],
)
def test_snappy_corrupt_input(data):
    with pytest.raises(ValueError):
        snappy_decode(data)


def test_write_request_round_trip():
    series = [
        TimeSeries([Label("__name__", "up"), Label("job", "node")], [Sample(1.5, -3), Sample(2.0, 7)])
    ]
    assert parse_write_request(_encode_request(series)) == series


def test_write_request_rejects_garbage():
    with pytest.raises(ValueError):
        parse_write_request(b"blarg")


def test_health_check(served):
    listener, _ = served
    assert _request(listener, "/healthz") == (200, b"OK")


def test_receive_datapoints(served):
    listener, sink = served
    status, _ = _post(listener, _payload())
    assert status == 200
    assert len(sink.points) == 1
    dp = sink.points[0]
    assert dp.metric == "process_cpu_seconds_total"
    assert dp.dimensions == {"key": "value"}
    assert dp.metric_type == MetricType.COUNTER
    assert dp.value == 1


def test_is_a_collector(served):
    listener, _ = served
    names = {dp.metric for dp in listener.datapoints()}
    assert {
        "prometheus.invalid_requests",
        "prometheus.total_NAN_samples",
        "prometheus.total_bad_datapoints",
        "total_health_checks",
    } <= names


def test_nan_samples_are_skipped():
    decoder = Decoder(RecordingSink())
    ts = _write_request()[0]
    ts.samples[0].value = math.nan
    assert decoder.get_datapoints(ts) == []
    assert decoder.total_nans == 1


def test_float_conversion():
    decoder = Decoder(RecordingSink())
    ts = _write_request()[0]
    ts.samples[0].value = 1.71245
    dps = decoder.get_datapoints(ts)
    assert len(dps) == 1
    assert dps[0].value == 1.71245
    assert isinstance(dps[0].value, float)


def test_nil_data_is_bad_request(served):
    listener, _ = served
    status, _ = _post(listener, b"")
    assert status == 400
    assert listener.decoder.total_errors == 1


def test_bad_read_all(served):
    listener, _ = served

    def failing_read(stream):
        raise OSError("nope")

    listener.decoder.read_all = failing_read
    status, body = _post(listener, _payload())
    assert status == 500
    assert b"nope" in body


def test_bad_data(served):
    listener, _ = served
    status, _ = _post(listener, _snappy_literal(b"blarg"))
    assert status == 400


def test_count_bad_datapoint(served):
    listener, sink = served
    series = _write_request()
    series[0].labels = []
    status, _ = _post(listener, _payload(series))
    assert status == 200
    assert listener.decoder.total_bad_datapoints == 1
    assert sink.points == []


def test_sink_error(served):
    listener, _ = served
    listener.decoder.sink = FailingSink()
    status, _ = _post(listener, _payload())
    assert status == 500


def test_decoder_handle_direct():
    sink = RecordingSink()
    decoder = Decoder(sink)
    assert decoder.handle(_payload()) == (200, b"")
    assert len(sink.points) == 1
    counts = {dp.metric: dp.value for dp in decoder.datapoints()}
    assert counts["request_time.ns.count"] == 1
    assert counts["drain_size.sum"] == 1


def test_wrong_content_type_not_routed(served):
    listener, sink = served
    status, _ = _request(listener, "/write", _payload(), "application/json", "POST")
    assert status == 404
    assert sink.points == []