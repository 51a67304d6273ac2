"""Deconstruct metric names by splitting them on a delimiter and mapping each piece."""

from __future__ import annotations

import json
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


class TypeRuleNotDefined(DeconstructorError):
    """A type rule was configured without a metric type."""

    def __init__(self, message: str = "a TypeRule is defined without a type") -> None:
        super().__init__(message)


class TypeRuleIllDefined(DeconstructorError):
    """A type rule was configured with neither a prefix nor a suffix."""

    def __init__(
        self, message: str = "a TypeRule is defined with neither StartsWith or EndsWith"
    ) -> None:
        super().__init__(message)


@dataclass(frozen=True)
class _AnyTerm:
    def match(self, term: str) -> bool:
        return True


@dataclass(frozen=True)
class _IsTerm:
    term: str

    def match(self, term: str) -> bool:
        return term == self.term


@dataclass(frozen=True)
class _NotTerm:
    term: str

    def match(self, term: str) -> bool:
        return term != self.term


@dataclass(frozen=True)
class _OneOf:
    options: tuple[_IsTerm | _NotTerm, ...]

    def match(self, term: str) -> bool:
        return any(option.match(term) for option in self.options)


_Matcher = _AnyTerm | _OneOf
_ANY = _AnyTerm()


@dataclass
class _Syntax:
    """The special strings of a delimiter configuration and its global dimensions."""

    or_delimiter: str = "|"
    delimiter: str = "."
    globbing: str = "*"
    ignore: str = "-"
    not_delimiter: str = "!"
    metric_identifier: str = "%"
    dimensions: dict[str, str] = field(default_factory=dict)

    def verify(self) -> None:
        options = [
            self.or_delimiter,
            self.delimiter,
            self.globbing,
            self.ignore,
            self.metric_identifier,
            self.not_delimiter,
        ]
        for option in options:
            if options.count(option) > 1:
                raise DeconstructorError(
                    f"overridden option cannot be the same as another: {option}"
                )

    def matcher(self, term: str) -> _Matcher:
        if term == self.globbing:
            return _ANY
        return _OneOf(
            tuple(
                _NotTerm(option[1:])
                if option[:1] == self.not_delimiter
                else _IsTerm(option)
                for option in term.split(self.or_delimiter)
            )
        )


@dataclass
class TypeRule:
    """Assigns a metric type to lines with a given prefix and/or suffix."""

    metric_type: MetricType | None
    starts_with: str = ""
    ends_with: str = ""

    def __post_init__(self) -> None:
        if self.metric_type is None:
            raise TypeRuleNotDefined()
        if not self.starts_with and not self.ends_with:
            raise TypeRuleIllDefined()

    def extract_type(self, line: str) -> MetricType | None:
        """The rule's type if the line matches every configured affix, else None."""
        starts = not self.starts_with or line.startswith(self.starts_with)
        ends = not self.ends_with or line.endswith(self.ends_with)
        return self.metric_type if starts and ends else None


@dataclass
class DelimiterRule:
    """Maps the pieces of a metric name onto dimensions and the metric itself."""

    syntax: _Syntax
    dimensions_map: str
    metric_path: str = ""
    metric_name: str = ""
    metric_type: MetricType | None = None
    additional_dimensions: dict[str, str] = field(default_factory=dict)
    use_count: int = field(default=0, init=False)
    path_parts: list[_Matcher] = field(init=False, repr=False)
    dimension_parts: list[str] = field(init=False)

    def __post_init__(self) -> None:
        syntax = self.syntax
        self.dimension_parts = self.dimensions_map.split(syntax.delimiter)
        path: list[_Matcher] = (
            [syntax.matcher(term) for term in self.metric_path.split(syntax.delimiter)]
            if self.metric_path
            else []
        )
        path += [_ANY] * (len(self.dimension_parts) - len(path))
        self.path_parts = path
        if len(path) != len(self.dimension_parts):
            raise DeconstructorError(
                f"the MetricPath {self.metric_path} has {len(path)} terms but "
                f"DimensionsMap {self.dimensions_map} has {len(self.dimension_parts)}"
            )
        if syntax.metric_identifier not in self.dimension_parts and not self.metric_name:
            raise DeconstructorError(
                "the DimensionsMap does not have a metric specified; use "
                f"{syntax.metric_identifier} to specify the metric name override MetricName"
            )

    def extract_dimensions(self, metric_pieces: list[str]) -> tuple[str, dict[str, str]]:
        """Return the metric name and dimensions; the name is empty when the path does not match."""
        self.use_count += 1
        syntax = self.syntax
        metric = [self.metric_name] if self.metric_name else []
        grouped: dict[str, list[str]] = {}
        for matcher, dimension, piece in zip(self.path_parts, self.dimension_parts, metric_pieces):
            if not matcher.match(piece):
                metric, grouped = [], {}
                break
            if dimension == syntax.ignore:
                continue
            if dimension == syntax.metric_identifier:
                metric.append(piece)
            else:
                grouped.setdefault(dimension, []).append(piece)
        dimensions = {key: syntax.delimiter.join(values) for key, values in grouped.items()}
        for key, value in self.additional_dimensions.items():
            dimensions.setdefault(key, value)
        for key, value in syntax.dimensions.items():
            dimensions.setdefault(key, value)
        return syntax.delimiter.join(metric), dimensions


@dataclass
class DelimiterDeconstructor(MetricDeconstructor):
    """Tries the rules whose length matches the metric, then falls back."""

    syntax: _Syntax
    rules: list[DelimiterRule]
    fallback: MetricDeconstructor
    type_rules: list[TypeRule] = field(default_factory=list)
    rules_by_length: dict[int, list[DelimiterRule]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.rules_by_length = {}
        for rule in self.rules:
            self.rules_by_length.setdefault(len(rule.path_parts), []).append(rule)

    def _metric_type(self, rule: DelimiterRule, line: str) -> MetricType:
        if rule.metric_type is not None:
            return rule.metric_type
        for type_rule in self.type_rules:
            found = type_rule.extract_type(line)
            if found is not None:
                return found
        return MetricType.GAUGE

    def parse(self, original_metric: str) -> ParsedMetric:
        pieces = original_metric.split(self.syntax.delimiter)
        for rule in self.rules_by_length.get(len(pieces), []):
            metric_name, dimensions = rule.extract_dimensions(pieces)
            if metric_name:
                return ParsedMetric(
                    metric_name, self._metric_type(rule, original_metric), dimensions
                )
        return self.fallback.parse(original_metric)


_KINDS = {bool: "bool", int: "number", float: "number", str: "string", list: "array", dict: "object"}


def _kind(value: Any) -> str:
    return _KINDS.get(type(value), type(value).__name__)


def _get(obj: dict[str, Any], key: str, expected: type, default: Any) -> Any:
    value = obj.get(key)
    if value is None:
        return default
    if not isinstance(value, expected) or (isinstance(value, bool) and expected is not bool):
        raise DeconstructorError(
            f"cannot unmarshal {_kind(value)} into field {key} of type {_KINDS[expected]}"
        )
    return value


def _string_map(obj: dict[str, Any], key: str) -> dict[str, str]:
    mapping = _get(obj, key, dict, {})
    for name, value in mapping.items():
        if not isinstance(value, str):
            raise DeconstructorError(
                f"cannot unmarshal {_kind(value)} into field {key}.{name} of type string"
            )
    return dict(mapping)


def _objects(obj: dict[str, Any], key: str) -> list[dict[str, Any]]:
    items = _get(obj, key, list, [])
    for item in items:
        if not isinstance(item, dict):
            raise DeconstructorError(
                f"cannot unmarshal {_kind(item)} into field {key} of type object"
            )
    return items


def _resolve_type(name: str) -> MetricType | None:
    if not name:
        return None
    if name not in NAME_TO_TYPE:
        raise DeconstructorError(f"cannot parse configured MetricType of {name}")
    return NAME_TO_TYPE[name]


def delimiter_json_loader(config: dict[str, Any]) -> DelimiterDeconstructor:
    """Build a delimiter deconstructor from a JSON-style configuration object."""
    try:
        data = json.loads(json.dumps(config))
    except (TypeError, ValueError) as exc:
        raise DeconstructorError(f"cannot encode configuration: {exc}") from exc
    if not isinstance(data, dict):
        raise DeconstructorError(f"cannot unmarshal {_kind(data)} into configuration of type object")

    syntax = _Syntax(
        or_delimiter=_get(data, "OrDelimiter", str, "") or "|",
        delimiter=_get(data, "Delimiter", str, "") or ".",
        globbing=_get(data, "Globbing", str, "") or "*",
        ignore=_get(data, "IgnoreDimension", str, "") or "-",
        not_delimiter=_get(data, "NotDelimiter", str, "") or "!",
        metric_identifier=_get(data, "MetricIdentifier", str, "") or "%",
        dimensions=_string_map(data, "Dimensions"),
    )
    type_specs = [
        (
            _get(raw, "MetricType", str, ""),
            _get(raw, "StartsWith", str, ""),
            _get(raw, "EndsWith", str, ""),
        )
        for raw in _objects(data, "TypeRules")
    ]
    rule_specs = [
        (
            _get(raw, "MetricPath", str, ""),
            _get(raw, "DimensionsMap", str, ""),
            _get(raw, "MetricName", str, ""),
            _get(raw, "MetricType", str, ""),
            _string_map(raw, "Dimensions"),
        )
        for raw in _objects(data, "MetricRules")
    ]
    fallback_name = _get(data, "FallbackDeconstructor", str, "")
    fallback_config = _get(data, "FallbackDeconstructorConfig", str, "")

    syntax.verify()
    type_rules = [
        TypeRule(_resolve_type(type_name), starts, ends) for type_name, starts, ends in type_specs
    ]
    rules: list[DelimiterRule] = []
    for path, dimensions_map, metric_name, type_name, extra in rule_specs:
        rule = DelimiterRule(
            syntax, dimensions_map, path, metric_name, additional_dimensions=extra
        )
        rule.metric_type = _resolve_type(type_name)
        rules.append(rule)
    fallback = load(fallback_name, fallback_config)
    return DelimiterDeconstructor(syntax, rules, fallback, type_rules)