"""Parse carbon (graphite plaintext) lines into datapoints."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from enum import Enum

from .deconstructors import MetricDeconstructor
from .protocol import Datapoint

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class _Meta(Enum):
    CARBON_NATIVE = 0


class InvalidCarbonLine(ValueError):
    """Raised when a line is not a valid carbon plaintext line."""


def native_carbon_line(dp: Datapoint) -> str | None:
    """The carbon line a datapoint was parsed from, or None if it did not come from carbon."""
    line = dp.meta.get(_Meta.CARBON_NATIVE)
    return line if isinstance(line, str) else None


def _parse_float(text: str) -> float:
    if text != text.strip() or "_" in text:
        raise ValueError(f"invalid number {text!r}")
    return float(text)


def _parse_value(text: str, line: str) -> int | float:
    if _INT_RE.fullmatch(text):
        number = int(text)
        if _INT64_MIN <= number <= _INT64_MAX:
            return number
    try:
        return _parse_float(text)
    except ValueError as exc:
        raise InvalidCarbonLine(f"unable to parse carbon metric value on line {line}") from exc


def _parse_timestamp(text: str, line: str) -> datetime:
    try:
        seconds = _parse_float(text)
        millis = int(seconds * 1000)
        return _EPOCH + timedelta(milliseconds=millis)
    except (ValueError, OverflowError) as exc:
        raise InvalidCarbonLine(f"invalid carbon metric time on input line {line}") from exc


def new_carbon_datapoint(line: str, deconstructor: MetricDeconstructor) -> Datapoint:
    """Build a datapoint from ``metric value time``, remembering the original line."""
    parts = line.split(" ", 2)
    if len(parts) != 3:
        raise InvalidCarbonLine(
            f"pickle format is not supported: invalid carbon input line: {line}"
        )
    original_name, value_text, time_text = parts
    metric, metric_type, dimensions = deconstructor.parse(original_name)
    timestamp = _parse_timestamp(time_text, line)
    value = _parse_value(value_text, line)
    return Datapoint(
        metric,
        dimensions,
        value,
        metric_type,
        timestamp,
        meta={_Meta.CARBON_NATIVE: line},
    )