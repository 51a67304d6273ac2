"""Forward datapoints to a carbon endpoint over pooled TCP connections."""

from __future__ import annotations

import socket
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from .carbon import native_carbon_line
from .filtering import FilteredForwarder, FilterObj
from .protocol import Datapoint, cumulative, raise_errors

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_POOL_DIMS = {"struct": "connPool"}


class ConnPool:
    """A stack of idle connections that can be reused."""

    def __init__(self) -> None:
        self._conns: list[Any] = []
        self._lock = threading.Lock()
        self._reused = 0
        self._returned = 0

    def get(self) -> Any | None:
        """Take the most recently returned connection, or None if the pool is empty."""
        with self._lock:
            if not self._conns:
                return None
            self._reused += 1
            return self._conns.pop()

    def put(self, conn: Any) -> None:
        """Return a live connection to the pool."""
        with self._lock:
            self._returned += 1
            self._conns.append(conn)

    def datapoints(self) -> list[Datapoint]:
        with self._lock:
            reused, returned = self._reused, self._returned
        return [
            cumulative("reused_connections", _POOL_DIMS, reused),
            cumulative("returned_connections", _POOL_DIMS, returned),
        ]

    def close(self) -> None:
        """Close and drop every pooled connection."""
        with self._lock:
            conns, self._conns = self._conns, []
        errors: list[BaseException] = []
        for conn in conns:
            try:
                conn.close()
            except Exception as exc:
                errors.append(exc)
        raise_errors(errors, "cannot close pooled connections")


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _format_value(value: int | float) -> str:
    if isinstance(value, float):
        return format(Decimal(repr(value)), "f")
    return str(value)


def _unix_seconds(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int((ts - _EPOCH).total_seconds())


class CarbonForwarder(FilteredForwarder):
    """Writes datapoints as carbon lines, reusing open connections."""

    def __init__(
        self,
        host: str,
        port: int = 2003,
        timeout: float | None = 30.0,
        filters: FilterObj | None = None,
        dimension_order: list[str] | None = None,
        idle_connection_pool_size: int = 5,
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.address = _join_host_port(host, port)
        self.timeout = timeout
        self.dimension_order = list(dimension_order or [])
        # Capacity hint only; the pool keeps every connection handed back to it.
        self.idle_connection_pool_size = idle_connection_pool_size
        self.pool = ConnPool()
        try:
            conn = socket.create_connection((host, port), timeout=timeout or None)
        except OSError as exc:
            raise ConnectionError(f"cannot dial address {self.address}: {exc}") from exc
        try:
            self.setup(filters)
        except Exception:
            conn.close()
            raise
        self.pool.put(conn)

    def _dial(self) -> socket.socket:
        try:
            return socket.create_connection((self.host, self.port), timeout=self.timeout or None)
        except OSError as exc:
            raise ConnectionError(f"cannot dial {self.address}: {exc}") from exc

    def _ordered_dimensions(self, dims: dict[str, str]) -> list[str]:
        ordered = [key for key in self.dimension_order if key in dims]
        ordered += sorted(key for key in dims if key not in ordered)
        return ordered

    def _graphite_name(self, dp: Datapoint) -> str:
        dims = dp.dimensions or {}
        return ".".join([*(dims[key] for key in self._ordered_dimensions(dims)), dp.metric])

    def _apply_timeout(self, conn: Any, deadline: float | None) -> None:
        limits = []
        if self.timeout:
            limits.append(self.timeout)
        if deadline is not None:
            limits.append(deadline - time.monotonic())
        if not limits:
            return
        remaining = min(limits)
        if remaining <= 0:
            raise TimeoutError("carbon connection deadline exceeded")
        conn.settimeout(remaining)

    def _render(self, points: list[Datapoint]) -> bytes:
        lines = []
        for dp in points:
            native = native_carbon_line(dp)
            if native is not None:
                lines.append(native)
            else:
                lines.append(
                    f"{self._graphite_name(dp)} {_format_value(dp.value)} "
                    f"{_unix_seconds(dp.timestamp)}"
                )
        return "".join(line + "\n" for line in lines).encode()

    def add_datapoints(self, points: list[Datapoint], deadline: float | None = None) -> None:
        """Send the points; ``deadline`` is a ``time.monotonic()`` instant to finish by."""
        conn = self.pool.get()
        if conn is None:
            conn = self._dial()
        try:
            self._apply_timeout(conn, deadline)
            points = self.filter_datapoints(points)
            if points:
                conn.sendall(self._render(points))
        except Exception as exc:
            errors: list[BaseException] = [exc]
            try:
                conn.close()
            except Exception as close_exc:
                errors.append(close_exc)
            raise_errors(errors, "cannot write to carbon connection")
        self.pool.put(conn)

    def datapoints(self) -> list[Datapoint]:
        return self.pool.datapoints() + self.get_filtered_datapoints()

    def close(self) -> None:
        self.pool.close()