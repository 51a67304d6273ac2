"""Turn collectd write_http JSON into datapoints and events."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from .protocol import Datapoint, Event, MetricType

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INT64_LIMIT = 2**63

_DS_TYPE_TO_METRIC_TYPE = {
    "gauge": MetricType.GAUGE,
    "derive": MetricType.COUNTER,
    "counter": MetricType.COUNTER,
    "absolute": MetricType.COUNT,
}


def _optional_str(obj: dict[str, Any], key: str) -> str | None:
    value = obj.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"collectd field {key} must be a string, not {value!r}")
    return value


def _as_float(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"collectd field {key} must be a number, not {value!r}")
    return float(value)


def _optional_float(obj: dict[str, Any], key: str) -> float | None:
    value = obj.get(key)
    return None if value is None else _as_float(value, key)


def _optional_list(obj: dict[str, Any], key: str) -> list[Any] | None:
    value = obj.get(key)
    if value is not None and not isinstance(value, list):
        raise ValueError(f"collectd field {key} must be a list, not {value!r}")
    return value


def _str_list(obj: dict[str, Any], key: str) -> list[str | None] | None:
    items = _optional_list(obj, key)
    if items is None:
        return None
    for item in items:
        if item is not None and not isinstance(item, str):
            raise ValueError(f"collectd field {key} must hold strings, not {item!r}")
    return list(items)


def _float_list(obj: dict[str, Any], key: str) -> list[float | None] | None:
    items = _optional_list(obj, key)
    if items is None:
        return None
    return [None if item is None else _as_float(item, key) for item in items]


@dataclass
class JSONWriteFormat:
    """One entry of collectd's write_http JSON body: a value list or a notification."""

    dsnames: list[str | None] | None = None
    dstypes: list[str | None] | None = None
    host: str | None = None
    interval: float | None = None
    plugin: str | None = None
    plugin_instance: str | None = None
    time: float | None = None
    type_name: str | None = None
    type_instance: str | None = None
    values: list[float | None] | None = None
    message: str | None = None
    meta: dict[str, Any] | None = None
    severity: str | None = None

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> JSONWriteFormat:
        """Build from a decoded JSON object; raises ValueError on mistyped fields."""
        meta = obj.get("meta")
        if meta is not None and not isinstance(meta, dict):
            raise ValueError(f"collectd field meta must be an object, not {meta!r}")
        return cls(
            dsnames=_str_list(obj, "dsnames"),
            dstypes=_str_list(obj, "dstypes"),
            host=_optional_str(obj, "host"),
            interval=_optional_float(obj, "interval"),
            plugin=_optional_str(obj, "plugin"),
            plugin_instance=_optional_str(obj, "plugin_instance"),
            time=_optional_float(obj, "time"),
            type_name=_optional_str(obj, "type"),
            type_instance=_optional_str(obj, "type_instance"),
            values=_float_list(obj, "values"),
            message=_optional_str(obj, "message"),
            meta=dict(meta) if meta else None,
            severity=_optional_str(obj, "severity"),
        )


def parse_write_body(data: bytes | str) -> list[JSONWriteFormat]:
    """Decode a full write_http POST body; null entries are dropped."""
    decoded = json.loads(data)
    if decoded is None:
        return []
    if not isinstance(decoded, list):
        raise ValueError("collectd body must be a JSON array")
    formats = []
    for entry in decoded:
        if entry is None:
            continue
        if not isinstance(entry, dict):
            raise ValueError(f"collectd entry must be an object, not {entry!r}")
        formats.append(JSONWriteFormat.from_json(entry))
    return formats


def metric_type_from_ds_type(dstype: str | None) -> MetricType:
    """Map a collectd data-source type onto a metric type, defaulting to gauge."""
    if dstype is None:
        return MetricType.GAUGE
    return _DS_TYPE_TO_METRIC_TYPE.get(dstype, MetricType.GAUGE)


def get_dimensions_from_name(val: str) -> tuple[str, dict[str, str] | None]:
    """Split ``name[k=v,f=x]rest`` into ``namerest`` and its dimensions.

    Anything that does not fit the pattern leaves the name unchanged with no dimensions.
    """
    left, bracket, rest = val.partition("[")
    if not bracket:
        return val, None
    inner, closing, rest = rest.partition("]")
    if not closing:
        return val, None
    found: dict[str, str] = {}
    for piece in inner.split(","):
        key, equals, value = piece.partition("=")
        if not equals or "=" in value:
            return val, None
        found[key] = value
    return left + rest, found


def _add_if_set(dimensions: dict[str, str], key: str, value: str | None) -> None:
    if value:
        dimensions[key] = value


def _add_missing(dimensions: dict[str, str], extra: dict[str, str] | None) -> None:
    for key, value in (extra or {}).items():
        if key not in dimensions and value:
            dimensions[key] = value


def parse_name_for_dimensions(dimensions: dict[str, str], key: str, val: str | None) -> None:
    """Add the dimensions embedded in ``val`` (keeping existing ones) and ``key`` itself."""
    if val is None:
        return
    instance_name, extra = get_dimensions_from_name(val)
    _add_missing(dimensions, extra)
    _add_if_set(dimensions, key, instance_name)


def _reasonable_metric_name(
    point: JSONWriteFormat, index: int, dimensions: dict[str, str]
) -> tuple[str, bool]:
    parts = [point.type_name] if point.type_name else []
    if point.type_instance:
        instance_name, extra = get_dimensions_from_name(point.type_instance)
        if instance_name:
            parts.append(instance_name)
        _add_missing(dimensions, extra)
    dsnames = point.dsnames or []
    used_dsname = False
    if len(dsnames) > 1 and dsnames[index]:
        parts.append(dsnames[index])
        used_dsname = True
    return ".".join(parts), used_dsname


def _timestamp(point: JSONWriteFormat) -> datetime:
    if point.time is None:
        raise ValueError("collectd entry has no time")
    nanos = int(1e9 * point.time)
    return _EPOCH + timedelta(microseconds=nanos // 1000)


def _number(value: float) -> int | float:
    if math.isfinite(value) and -_INT64_LIMIT <= value < _INT64_LIMIT and value == int(value):
        return int(value)
    return value


def new_datapoint(
    point: JSONWriteFormat, index: int, default_dimensions: dict[str, str]
) -> Datapoint:
    """Datapoint for value ``index`` of ``point``; the point's dimensions win over the defaults."""
    dstype = point.dstypes[index] if point.dstypes else None
    value = point.values[index] if point.values else None
    if value is None:
        raise ValueError(f"collectd entry has no value at index {index}")
    dsname = point.dsnames[index] if point.dsnames else None

    dimensions = dict(default_dimensions)
    metric_type = metric_type_from_ds_type(dstype)
    metric_name, used_dsname = _reasonable_metric_name(point, index, dimensions)
    _add_if_set(dimensions, "plugin", point.plugin)
    parse_name_for_dimensions(dimensions, "plugin_instance", point.plugin_instance)
    parse_name_for_dimensions(dimensions, "host", point.host)
    if not used_dsname:
        _add_if_set(dimensions, "dsname", dsname)
    return Datapoint(metric_name, dimensions, _number(value), metric_type, _timestamp(point))


def new_event(point: JSONWriteFormat, default_dimensions: dict[str, str]) -> Event:
    """Event for a collectd notification; meta entries take precedence as properties."""
    dimensions = dict(default_dimensions)
    event_type, _ = _reasonable_metric_name(point, 0, dimensions)
    _add_if_set(dimensions, "plugin", point.plugin)
    parse_name_for_dimensions(dimensions, "plugin_instance", point.plugin_instance)
    parse_name_for_dimensions(dimensions, "host", point.host)

    meta = point.meta or {}
    properties: dict[str, Any] = dict(meta)
    if "severity" not in meta and point.severity is not None:
        properties["severity"] = point.severity
    if "message" not in meta and point.message is not None:
        properties["message"] = point.message
    return Event(event_type, "COLLECTD", dimensions, properties, _timestamp(point))