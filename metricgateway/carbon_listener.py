"""Listen for carbon plaintext lines over TCP or UDP and pass them on as datapoints."""

from __future__ import annotations

import logging
import select
import socket
import threading
from dataclasses import dataclass
from typing import Any

from .carbon import InvalidCarbonLine, new_carbon_datapoint
from .deconstructors import (
    DeconstructorError,
    IdentityMetricDeconstructor,
    MetricDeconstructor,
)
from .protocol import CloseableHealthCheck, Datapoint, cumulative, gauge

TCP = "tcp"
UDP = "udp"

_MAX_UDP_PAYLOAD = 65507
_log = logging.getLogger(__name__)


@dataclass
class _Stats:
    total_datapoints: int = 0
    idle_timeouts: int = 0
    retried_listen_errors: int = 0
    total_eof_closes: int = 0
    invalid_datapoints: int = 0
    total_connections: int = 0
    active_connections: int = 0


def _seconds_or_none(seconds: float | None) -> float | None:
    return seconds if seconds is not None and seconds > 0 else None


def _resolve(listen_addr: str) -> tuple[int, tuple[str, int]]:
    host, sep, port_text = listen_addr.rpartition(":")
    if not sep:
        raise OSError(f"cannot listen to addr {listen_addr}: missing port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if port_text and not port_text.isdigit():
        raise OSError(f"cannot listen to addr {listen_addr}: invalid port {port_text!r}")
    port = int(port_text or 0)
    if port > 65535:
        raise OSError(f"cannot listen to addr {listen_addr}: invalid port {port}")
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return family, (host, port)


class CarbonListener(CloseableHealthCheck):
    """Accepts carbon lines and forwards each one to ``sink`` as a datapoint."""

    def __init__(
        self,
        sink: Any,
        listen_addr: str = "127.0.0.1:2003",
        protocol: str = TCP,
        connection_timeout: float | None = 30.0,
        server_accept_deadline: float | None = 1.0,
        deconstructor: MetricDeconstructor | None = None,
    ) -> None:
        super().__init__()
        self.sink = sink
        self.deconstructor = deconstructor or IdentityMetricDeconstructor()
        self.connection_timeout = connection_timeout
        self.server_accept_deadline = server_accept_deadline
        self.stats = _Stats()
        self._lock = threading.Lock()
        self._stop = threading.Event()

        self.protocol = protocol.lower()
        if self.protocol == UDP:
            kind, loop = socket.SOCK_DGRAM, self._listen_udp
        elif self.protocol == TCP:
            kind, loop = socket.SOCK_STREAM, self._listen_tcp
        else:
            raise ValueError(
                f"specified protocol '{protocol}' not recognized. '{UDP}' or '{TCP}' only please"
            )

        family, address = _resolve(listen_addr)
        sock = socket.socket(family, kind)
        try:
            sock.bind(address)
            if kind == socket.SOCK_STREAM:
                sock.listen()
        except OSError as exc:
            sock.close()
            raise OSError(f"cannot listen to addr {listen_addr}: {exc}") from exc
        self._sock = sock
        self._wake_r, self._wake_w = socket.socketpair()
        self._thread = threading.Thread(target=loop, name=f"carbon-{self.protocol}", daemon=True)
        self._thread.start()

    def __enter__(self) -> CarbonListener:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def address(self) -> tuple[str, int]:
        """The host and port the listener is bound to."""
        host, port = self._sock.getsockname()[:2]
        return host, port

    def datapoints(self) -> list[Datapoint]:
        with self._lock:
            stats = _Stats(**vars(self.stats))
        return [
            cumulative("invalid_datapoints", None, stats.invalid_datapoints),
            cumulative("total_connections", None, stats.total_connections),
            gauge("active_connections", None, stats.active_connections),
            cumulative("idle_timeouts", None, stats.idle_timeouts),
            cumulative("retry_listen_errors", None, stats.retried_listen_errors),
        ]

    def close(self) -> None:
        """Stop listening and wait for the listening loop to finish."""
        if self._stop.is_set():
            return
        self._stop.set()
        try:
            self._wake_w.send(b"x")
        except OSError:
            pass
        self._thread.join()
        self._sock.close()
        self._wake_r.close()
        self._wake_w.close()

    def _bump(self, name: str, delta: int = 1) -> None:
        with self._lock:
            setattr(self.stats, name, getattr(self.stats, name) + delta)

    def _wait(self, timeout: float | None) -> bool | None:
        """True when the socket is readable, False on timeout, None once stopping."""
        try:
            ready, _, _ = select.select([self._sock, self._wake_r], [], [], timeout)
        except (OSError, ValueError):
            return None
        if self._stop.is_set():
            return None
        return bool(ready)

    def _ingest(self, raw: bytes, peer: Any) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            dp = new_carbon_datapoint(line, self.deconstructor)
        except (InvalidCarbonLine, DeconstructorError) as exc:
            self._bump("invalid_datapoints")
            _log.warning("data from %s on a carbon port is not carbon data: %r (%s)",
                         peer, line, exc)
            raise
        try:
            self.sink.add_datapoints([dp])
        except Exception:
            _log.exception("sink rejected carbon datapoint from %s", peer)
        self._bump("total_datapoints")

    def _listen_tcp(self) -> None:
        try:
            while True:
                ready = self._wait(_seconds_or_none(self.server_accept_deadline))
                if ready is None:
                    return
                if not ready:
                    self._bump("retried_listen_errors")
                    continue
                try:
                    conn, peer = self._sock.accept()
                except (BlockingIOError, InterruptedError, TimeoutError):
                    self._bump("retried_listen_errors")
                    continue
                except OSError as exc:
                    _log.error("unable to accept a socket connection: %s", exc)
                    return
                threading.Thread(
                    target=self._handle_tcp, args=(conn, peer), daemon=True
                ).start()
        finally:
            _log.info("stop listening carbon TCP")

    def _handle_tcp(self, conn: socket.socket, peer: Any) -> None:
        with self._lock:
            self.stats.total_connections += 1
            self.stats.active_connections += 1
        try:
            with conn, conn.makefile("rb") as reader:
                while True:
                    conn.settimeout(_seconds_or_none(self.connection_timeout))
                    try:
                        raw = reader.readline()
                    except OSError as exc:
                        self._bump("idle_timeouts")
                        _log.info("carbon connection from %s ended (idle connections time out): %s",
                                  peer, exc)
                        return
                    raw = raw or b""
                    self._ingest(raw, peer)
                    if not raw.endswith(b"\n"):
                        self._bump("total_eof_closes")
                        return
        except (InvalidCarbonLine, DeconstructorError):
            return
        finally:
            self._bump("active_connections", -1)

    def _listen_udp(self) -> None:
        try:
            while True:
                ready = self._wait(_seconds_or_none(self.connection_timeout))
                if ready is None:
                    return
                if not ready:
                    self._bump("idle_timeouts")
                    continue
                try:
                    data, peer = self._sock.recvfrom(_MAX_UDP_PAYLOAD)
                except (BlockingIOError, InterruptedError, TimeoutError):
                    self._bump("idle_timeouts")
                    continue
                except OSError as exc:
                    _log.error("unable to read from the udp socket: %s", exc)
                    return
                if data:
                    threading.Thread(
                        target=self._handle_udp, args=(data, peer), daemon=True
                    ).start()
        finally:
            _log.info("stop listening carbon UDP")

    def _handle_udp(self, data: bytes, peer: Any) -> None:
        with self._lock:
            self.stats.total_connections += 1
            self.stats.active_connections += 1
        try:
            for raw in data.split(b"\n"):
                self._ingest(raw, peer)
            self._bump("total_eof_closes")
        except (InvalidCarbonLine, DeconstructorError):
            return
        finally:
            self._bump("active_connections", -1)