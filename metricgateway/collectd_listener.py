"""HTTP listener that accepts collectd write_http JSON posts."""

from __future__ import annotations

import gzip
import logging
import socket
import threading
import zlib
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Mapping
from urllib.parse import parse_qs, urlsplit

from .collectd import JSONWriteFormat, new_datapoint, new_event, parse_write_body
from .protocol import CloseableHealthCheck, Datapoint, Event, cumulative, raise_errors

SFX_DIM_QUERY_PARAM_PREFIX = "sfxdim_"
JSON_CONTENT_TYPES = ("application/json", "application/json; charset=UTF-8")

_log = logging.getLogger(__name__)


def _datapoints_of(point: JSONWriteFormat, defaults: dict[str, str]) -> list[Datapoint]:
    dsnames = point.dsnames or []
    dstypes = point.dstypes or []
    values = point.values or []
    return [
        new_datapoint(point, index, defaults)
        for index in range(len(dsnames))
        if index < len(dstypes) and index < len(values) and values[index] is not None
    ]


def _event_of(point: JSONWriteFormat, defaults: dict[str, str]) -> Event | None:
    if point.time is not None and point.severity is not None and point.message is not None:
        return new_event(point, defaults)
    return None


class JSONDecoder:
    """Decodes collectd's JSON format and sends the result to a sink."""

    def __init__(self, sink: Any) -> None:
        self.sink = sink
        self._lock = threading.Lock()
        self.total_errors = 0
        self.total_blank_dims = 0

    def _default_dims(self, query: str) -> dict[str, str]:
        dims: dict[str, str] = {}
        for key, values in parse_qs(query, keep_blank_values=True).items():
            if not key.startswith(SFX_DIM_QUERY_PARAM_PREFIX):
                continue
            value = values[0]
            if not value:
                with self._lock:
                    self.total_blank_dims += 1
                continue
            dims[key[len(SFX_DIM_QUERY_PARAM_PREFIX):]] = value
        return dims

    def read(self, body: bytes | str, query: str = "") -> None:
        """Decode ``body`` and forward it; ``sfxdim_*`` query parameters become default dimensions."""
        defaults = self._default_dims(query)
        points: list[Datapoint] = []
        events: list[Event] = []
        for entry in parse_write_body(body):
            event = _event_of(entry, defaults)
            if event is None:
                points.extend(_datapoints_of(entry, defaults))
            else:
                events.append(event)

        errors: list[BaseException] = []
        if points:
            try:
                self.sink.add_datapoints(points)
            except Exception as exc:
                errors.append(exc)
        if events:
            try:
                self.sink.add_events(events)
            except Exception as exc:
                errors.append(exc)
        raise_errors(errors, "cannot forward collectd data")

    def handle(self, body: bytes | str, query: str = "") -> tuple[int, bytes]:
        """Process a request body and return the HTTP status and response body."""
        try:
            self.read(body, query)
        except Exception as exc:
            with self._lock:
                self.total_errors += 1
            return 400, f"Unable to decode json: {exc}".encode()
        return 200, b'"OK"'

    def datapoints(self) -> list[Datapoint]:
        with self._lock:
            blank, errors = self.total_blank_dims, self.total_errors
        return [
            cumulative("total_blank_dims", None, blank),
            cumulative("invalid_collectd_json", None, errors),
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


def _make_handler(listener: CollectdListener, request_timeout: float | None) -> type:
    class Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"
        timeout = request_timeout

        def _dispatch(self) -> None:
            url = urlsplit(self.path)
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = 0
            body = self.rfile.read(length) if length > 0 else b""
            status, headers, payload = listener._respond(
                self.command, url.path, url.query, self.headers, body
            )
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


class CollectdListener(CloseableHealthCheck):
    """Serves collectd JSON posts over HTTP and forwards them to a sink."""

    def __init__(
        self,
        sink: Any,
        listen_addr: str = "127.0.0.1:8081",
        listen_path: str = "/post-collectd",
        timeout: float | None = 30.0,
        health_check: str = "/healthz",
    ) -> None:
        super().__init__()
        self.decoder = JSONDecoder(sink)
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
            target=self._server.serve_forever, name="collectd-http", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> CollectdListener:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _respond(
        self, method: str, path: str, query: str, headers: Mapping[str, str], body: bytes
    ) -> tuple[int, dict[str, str], bytes]:
        if path == self.health_check:
            response = self.health_check_response()
            return response.status, response.headers, response.body
        if path == self.listen_path and method == "POST":
            content_type = headers.get("Content-Type")
            if content_type in JSON_CONTENT_TYPES:
                if (headers.get("Content-Encoding") or "").lower() == "gzip":
                    try:
                        body = gzip.decompress(body)
                    except (OSError, EOFError, zlib.error) as exc:
                        return 400, {}, f"cannot decompress body: {exc}".encode()
                status, payload = self.decoder.handle(body, query)
                return status, {}, payload
            if content_type is not None:
                return 415, {}, b"invalid content type"
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