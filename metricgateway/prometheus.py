"""HTTP listener for Prometheus remote-write requests."""

from __future__ import annotations

import io
import logging
import math
import socket
import struct
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, BinaryIO, Callable, Iterator, Mapping
from urllib.parse import urlsplit

from .protocol import CloseableHealthCheck, Datapoint, MetricType, cumulative

METRIC_NAME_LABEL = "__name__"
PROTOBUF_CONTENT_TYPE = "application/x-protobuf"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INT64_LIMIT = 2**63
_log = logging.getLogger(__name__)


@dataclass
class Label:
    name: str = ""
    value: str = ""


@dataclass
class Sample:
    value: float = 0.0
    timestamp: int = 0


@dataclass
class TimeSeries:
    labels: list[Label] = field(default_factory=list)
    samples: list[Sample] = field(default_factory=list)


def get_metric_type(metric: str) -> MetricType:
    """Infer the metric type from Prometheus naming conventions."""
    if metric.endswith(("_total", "_bucket", "_count")):
        return MetricType.COUNTER
    return MetricType.GAUGE


def _read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if byte < 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            raise ValueError("varint overflows 64 bits")


def _take(data: bytes, pos: int, count: int) -> tuple[bytes, int]:
    if pos + count > len(data):
        raise ValueError("snappy: corrupt input")
    return data[pos:pos + count], pos + count


def snappy_decode(data: bytes) -> bytes:
    """Decode a snappy block (not the framed stream format)."""
    data = bytes(data)
    try:
        length, pos = _read_uvarint(data, 0)
    except ValueError as exc:
        raise ValueError("snappy: corrupt input") from exc
    if length > 0xFFFFFFFF:
        raise ValueError("snappy: decoded block is too large")
    out = bytearray()
    while pos < len(data):
        tag = data[pos]
        pos += 1
        kind = tag & 3
        if kind == 0:
            count = tag >> 2
            if count >= 60:
                raw, pos = _take(data, pos, count - 59)
                count = int.from_bytes(raw, "little")
            literal, pos = _take(data, pos, count + 1)
            out += literal
        else:
            if kind == 1:
                count = 4 + ((tag >> 2) & 7)
                raw, pos = _take(data, pos, 1)
                offset = ((tag & 0xE0) << 3) | raw[0]
            else:
                count = 1 + (tag >> 2)
                raw, pos = _take(data, pos, 2 if kind == 2 else 4)
                offset = int.from_bytes(raw, "little")
            if offset == 0 or offset > len(out):
                raise ValueError("snappy: corrupt input")
            source = bytes(out[len(out) - offset:])
            out += (source * (count // offset + 1))[:count]
        if len(out) > length:
            raise ValueError("snappy: corrupt input")
    if len(out) != length:
        raise ValueError("snappy: corrupt input")
    return bytes(out)


def _fields(data: bytes) -> Iterator[tuple[int, int, Any]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_uvarint(data, pos)
        number, wire = key >> 3, key & 7
        if number == 0:
            raise ValueError("proto: illegal field number 0")
        if wire == 0:
            value, pos = _read_uvarint(data, pos)
        elif wire == 1:
            value, pos = _proto_take(data, pos, 8)
        elif wire == 2:
            size, pos = _read_uvarint(data, pos)
            value, pos = _proto_take(data, pos, size)
        elif wire == 5:
            value, pos = _proto_take(data, pos, 4)
        else:
            raise ValueError(f"proto: unsupported wire type {wire}")
        yield number, wire, value


def _proto_take(data: bytes, pos: int, count: int) -> tuple[bytes, int]:
    if pos + count > len(data):
        raise ValueError("proto: unexpected end of data")
    return data[pos:pos + count], pos + count


def _expect(number: int, wire: int, wanted: int) -> None:
    if wire != wanted:
        raise ValueError(f"proto: field {number} has wire type {wire}, wanted {wanted}")


def _text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError("proto: invalid UTF-8 string") from exc


def _parse_label(data: bytes) -> Label:
    label = Label()
    for number, wire, value in _fields(data):
        if number == 1:
            _expect(number, wire, 2)
            label.name = _text(value)
        elif number == 2:
            _expect(number, wire, 2)
            label.value = _text(value)
    return label


def _parse_sample(data: bytes) -> Sample:
    sample = Sample()
    for number, wire, value in _fields(data):
        if number == 1:
            _expect(number, wire, 1)
            (sample.value,) = struct.unpack("<d", value)
        elif number == 2:
            _expect(number, wire, 0)
            sample.timestamp = value - 2**64 if value >= _INT64_LIMIT else value
    return sample


def _parse_time_series(data: bytes) -> TimeSeries:
    series = TimeSeries()
    for number, wire, value in _fields(data):
        if number == 1:
            _expect(number, wire, 2)
            series.labels.append(_parse_label(value))
        elif number == 2:
            _expect(number, wire, 2)
            series.samples.append(_parse_sample(value))
    return series


def parse_write_request(data: bytes) -> list[TimeSeries]:
    """Decode the time series of a protobuf remote-write request."""
    series: list[TimeSeries] = []
    for number, wire, value in _fields(bytes(data)):
        if number == 1:
            _expect(number, wire, 2)
            series.append(_parse_time_series(value))
    return series


def _number(value: float) -> int | float:
    if math.isfinite(value) and -_INT64_LIMIT <= value < _INT64_LIMIT and value == int(value):
        return int(value)
    return value


def _read_all(stream: BinaryIO) -> bytes:
    return stream.read()


class _RollingBucket:
    """Running count, sum and sum of squares of observed values."""

    def __init__(self, metric: str, dimensions: dict[str, str]) -> None:
        self.metric = metric
        self.dimensions = dimensions
        self._lock = threading.Lock()
        self._count = 0
        self._sum = 0.0
        self._sum_squares = 0.0

    def add(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            self._sum_squares += value * value

    def datapoints(self) -> list[Datapoint]:
        with self._lock:
            count, total, squares = self._count, self._sum, self._sum_squares
        return [
            cumulative(f"{self.metric}.count", self.dimensions, count),
            cumulative(f"{self.metric}.sum", self.dimensions, total),
            cumulative(f"{self.metric}.sumsquare", self.dimensions, squares),
        ]


class Decoder:
    """Turns remote-write payloads into datapoints and sends them to a sink."""

    def __init__(self, sink: Any) -> None:
        self.sink = sink
        self.read_all: Callable[[BinaryIO], bytes] = _read_all
        self.bucket = _RollingBucket(
            "request_time.ns", {"endpoint": "prometheus", "direction": "listener"}
        )
        self.drain_size = _RollingBucket(
            "drain_size", {"direction": "forwarder", "destination": "signalfx"}
        )
        self._lock = threading.Lock()
        self.total_errors = 0
        self.total_nans = 0
        self.total_bad_datapoints = 0

    def get_datapoints(self, ts: TimeSeries) -> list[Datapoint]:
        """Datapoints for one series; series without a name and NaN samples are counted and skipped."""
        dimensions = {label.name: label.value for label in ts.labels}
        metric = dimensions.pop(METRIC_NAME_LABEL, "")
        if not metric:
            with self._lock:
                self.total_bad_datapoints += len(ts.samples)
            return []
        metric_type = get_metric_type(metric)
        points = []
        for sample in ts.samples:
            if math.isnan(sample.value):
                with self._lock:
                    self.total_nans += 1
                continue
            timestamp = _EPOCH + timedelta(milliseconds=sample.timestamp)
            points.append(
                Datapoint(metric, dict(dimensions), _number(sample.value), metric_type, timestamp)
            )
        return points

    def _fail(self, status: int, exc: BaseException) -> tuple[int, bytes]:
        with self._lock:
            self.total_errors += 1
        _log.warning("prometheus write request failed: %s", exc)
        return status, f"{exc}\n".encode()

    def _handle(self, body: bytes | BinaryIO) -> tuple[int, bytes]:
        stream = io.BytesIO(body) if isinstance(body, (bytes, bytearray)) else body
        try:
            compressed = self.read_all(stream)
        except Exception as exc:
            return self._fail(500, exc)
        try:
            series = parse_write_request(snappy_decode(compressed))
            points = [dp for ts in series for dp in self.get_datapoints(ts)]
        except (ValueError, OverflowError) as exc:
            return self._fail(400, exc)
        self.drain_size.add(len(points))
        if points:
            try:
                self.sink.add_datapoints(points)
            except Exception as exc:
                return self._fail(500, exc)
        return 200, b""

    def handle(self, body: bytes | BinaryIO) -> tuple[int, bytes]:
        """Process a request body and return the HTTP status and response body."""
        start = time.monotonic_ns()
        try:
            return self._handle(body)
        finally:
            self.bucket.add(time.monotonic_ns() - start)

    def datapoints(self) -> list[Datapoint]:
        with self._lock:
            errors, nans, bad = self.total_errors, self.total_nans, self.total_bad_datapoints
        return [
            *self.bucket.datapoints(),
            *self.drain_size.datapoints(),
            cumulative("prometheus.invalid_requests", None, errors),
            cumulative("prometheus.total_NAN_samples", None, nans),
            cumulative("prometheus.total_bad_datapoints", None, bad),
        ]


class _Server(ThreadingHTTPServer):
    daemon_threads = True


class _Server6(_Server):
    address_family = socket.AF_INET6


def _split_addr(listen_addr: str) -> tuple[str, int]:
    host, sep, port_text = listen_addr.rpartition(":")
    valid = sep and (not port_text or (port_text.isascii() and port_text.isdigit()))
    if not valid or int(port_text or 0) > 65535:
        raise OSError(f"cannot listen to addr {listen_addr}: invalid port {port_text!r}")
    return host.strip("[]"), int(port_text or 0)


def _make_handler(listener: PrometheusListener, request_timeout: float | None) -> type:
    class Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"
        timeout = request_timeout

        def _dispatch(self) -> None:
            path = urlsplit(self.path).path
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = 0
            body = self.rfile.read(length) if length > 0 else b""
            status, headers, payload = listener._respond(self.command, path, self.headers, body)
            self.send_response(status)
            for key, value in headers.items():
                self.send_header(key, value)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        do_GET = do_POST = do_PUT = do_DELETE = _dispatch

        def log_message(self, format: str, *args: Any) -> None:
            _log.debug(format, *args)

    return Handler


class PrometheusListener(CloseableHealthCheck):
    """Serves Prometheus remote-write requests over HTTP."""

    def __init__(
        self,
        sink: Any,
        listen_addr: str = "127.0.0.1:1234",
        listen_path: str = "/write",
        timeout: float | None = 30.0,
        health_check: str = "/healthz",
    ) -> None:
        super().__init__()
        self.decoder = Decoder(sink)
        self.listen_path = listen_path
        self.health_check = health_check
        host, port = _split_addr(listen_addr)
        server_class = _Server6 if ":" in host else _Server
        try:
            self._server = server_class((host, port), _make_handler(self, timeout or None))
        except OSError as exc:
            raise OSError(f"cannot listen to addr {listen_addr}: {exc}") from exc
        self._closed = False
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="prometheus-http", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> PrometheusListener:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _respond(
        self, method: str, path: str, headers: Mapping[str, str], body: bytes
    ) -> tuple[int, dict[str, str], bytes]:
        if path == self.health_check:
            response = self.health_check_response()
            return response.status, response.headers, response.body
        if (
            path == self.listen_path
            and method == "POST"
            and headers.get("Content-Type") == PROTOBUF_CONTENT_TYPE
        ):
            status, payload = self.decoder.handle(body)
            return status, {}, payload
        return 404, {}, b"404 page not found"

    def address(self) -> tuple[str, int]:
        """The host and port the listener is bound to."""
        host, port = self._server.server_address[:2]
        return host, port

    def datapoints(self) -> list[Datapoint]:
        return self.decoder.datapoints() + self.health_datapoints()

    def close(self) -> None:
        """Stop serving and release the socket."""
        if self._closed:
            return
        self._closed = True
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()