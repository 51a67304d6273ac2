"""Deconstruct metric names with configured regular expressions."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from .deconstructors import (
    NAME_TO_TYPE,
    DeconstructorError,
    MetricDeconstructor,
    ParsedMetric,
    load,
)
from .protocol import MetricType

_METRIC_GROUP_PREFIX = "sf_metric"

_JSON_TYPE_NAMES = {str: "string", int: "number", float: "number", bool: "bool",
                    list: "array", dict: "object"}


def _json_type_name(value: Any) -> str:
    return _JSON_TYPE_NAMES.get(type(value), type(value).__name__)


def _field(obj: dict[str, Any], key: str, expected: type, default: Any) -> Any:
    value = obj.get(key)
    if value is None:
        return default
    if not isinstance(value, expected) or isinstance(value, bool) and expected is not bool:
        raise DeconstructorError(
            f"cannot unmarshal {_json_type_name(value)} into field {key} "
            f"of type {_JSON_TYPE_NAMES[expected]}"
        )
    return value


def _string_map(obj: dict[str, Any], key: str) -> dict[str, str]:
    mapping = _field(obj, key, dict, {})
    for name, value in mapping.items():
        if not isinstance(value, str):
            raise DeconstructorError(
                f"cannot unmarshal {_json_type_name(value)} into field {key}.{name} of type string"
            )
    return dict(mapping)


@dataclass
class RegexRule:
    """One expression; groups named ``sf_metric*`` build the name, the others are dimensions."""

    regex: str
    metric_name: str = ""
    additional_dimensions: dict[str, str] = field(default_factory=dict)
    metric_type: MetricType = MetricType.GAUGE
    compiled: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        try:
            self.compiled = re.compile(self.regex)
        except re.error as exc:
            raise DeconstructorError(f"error parsing regexp {self.regex!r}: {exc}") from exc


@dataclass
class RegexDeconstructor(MetricDeconstructor):
    """Tries each rule in order and falls back to another deconstructor."""

    rules: list[RegexRule]
    fallback: MetricDeconstructor
    dimensions: dict[str, str] = field(default_factory=dict)

    def parse(self, original_metric: str) -> ParsedMetric:
        for rule in self.rules:
            match = rule.compiled.search(original_metric)
            if match is None:
                continue
            names = {index: name for name, index in rule.compiled.groupindex.items()}
            dimensions: dict[str, str] = {}
            name_pieces: dict[str, str] = {}
            for index in range(1, rule.compiled.groups + 1):
                name = names.get(index, "")
                value = match.group(index) or ""
                if name.startswith(_METRIC_GROUP_PREFIX):
                    name_pieces[name] = value
                else:
                    dimensions[name] = value
            dimensions.update(rule.additional_dimensions)
            metric_name = rule.metric_name + "".join(
                name_pieces[piece] for piece in sorted(name_pieces)
            )
            return ParsedMetric(metric_name or original_metric, rule.metric_type, dimensions)
        return self.fallback.parse(original_metric)


def _rule_from_json(raw: Any) -> RegexRule:
    if not isinstance(raw, dict):
        raise DeconstructorError(
            f"cannot unmarshal {_json_type_name(raw)} into field MetricRules of type object"
        )
    regex = _field(raw, "Regex", str, "")
    metric_name = _field(raw, "MetricName", str, "")
    additional = _string_map(raw, "AdditionalDimensions")
    type_name = _field(raw, "MetricType", str, "")
    metric_type = MetricType.GAUGE
    if type_name:
        if type_name not in NAME_TO_TYPE:
            raise DeconstructorError(f"cannot parse configured MetricType of {type_name}")
        metric_type = NAME_TO_TYPE[type_name]
    return RegexRule(regex, metric_name, additional, metric_type)


def regex_json_loader(config: dict[str, Any]) -> RegexDeconstructor:
    """Build a regex deconstructor from a JSON-style configuration object."""
    try:
        data = json.loads(json.dumps(config))
    except (TypeError, ValueError) as exc:
        raise DeconstructorError(f"cannot encode configuration: {exc}") from exc
    if not isinstance(data, dict):
        raise DeconstructorError(
            f"cannot unmarshal {_json_type_name(data)} into configuration of type object"
        )
    rules = [_rule_from_json(raw) for raw in _field(data, "MetricRules", list, [])]
    dimensions = _string_map(data, "Dimensions")
    fallback_name = _field(data, "FallbackDeconstructor", str, "")
    fallback_config = _field(data, "FallbackDeconstructorConfig", str, "")
    fallback = load(fallback_name, fallback_config)
    return RegexDeconstructor(rules, fallback, dimensions)