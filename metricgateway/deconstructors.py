"""Turn flat metric names into a metric, a metric type and dimensions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, NamedTuple

from .protocol import MetricType

NAME_TO_TYPE: dict[str, MetricType] = {
    "gauge": MetricType.GAUGE,
    "count": MetricType.COUNT,
    "cumulative_counter": MetricType.COUNTER,
}


class DeconstructorError(Exception):
    """Raised when a deconstructor cannot be built or cannot parse a metric."""


class ParsedMetric(NamedTuple):
    metric: str
    metric_type: MetricType
    dimensions: dict[str, str]


class MetricDeconstructor(ABC):
    """Splits one metric name into the dimensions it represents."""

    @abstractmethod
    def parse(self, original_metric: str) -> ParsedMetric:
        """Return the new metric name, its type and its dimensions."""


class IdentityMetricDeconstructor(MetricDeconstructor):
    """Keeps the name as it is: a gauge with no dimensions."""

    def parse(self, original_metric: str) -> ParsedMetric:
        return ParsedMetric(original_metric, MetricType.GAUGE, {})


class NilDeconstructor(MetricDeconstructor):
    """Rejects every metric."""

    def parse(self, original_metric: str) -> ParsedMetric:
        raise DeconstructorError("nilDeconstructor always returns an error")


@dataclass(frozen=True)
class CommaKeysDeconstructor(MetricDeconstructor):
    """Reads dimensions written as ``name[key:value,key:value]rest``."""

    colon_in_key: bool = False
    metric_type_dim: str = ""

    def _type_from_dims(self, dims: dict[str, str]) -> MetricType:
        if self.metric_type_dim and self.metric_type_dim in dims:
            type_name = dims.pop(self.metric_type_dim)
            return NAME_TO_TYPE.get(type_name.lower(), MetricType.GAUGE)
        return MetricType.GAUGE

    def parse(self, original_metric: str) -> ParsedMetric:
        unchanged = ParsedMetric(original_metric, MetricType.GAUGE, {})
        head, found, tail = original_metric.partition("[")
        if not found or not head or not tail:
            return unchanged
        end = tail.rfind("]")
        if end == -1:
            return unchanged
        new_metric = head + tail[end + 1:]
        dimensions: dict[str, str] = {}
        for tag in tail[:end].split(","):
            split_at = tag.rfind(":") if self.colon_in_key else tag.find(":")
            if split_at == -1:
                continue
            dimensions[tag[:split_at]] = tag[split_at + 1:]
        metric_type = self._type_from_dims(dimensions)
        return ParsedMetric(new_metric, metric_type, dimensions)


def comma_keys_loader(options: str) -> CommaKeysDeconstructor:
    """Build a comma-keys deconstructor from ``coloninkey`` and ``mtypedim:<dim>`` options."""
    colon_in_key = False
    metric_type_dim = ""
    for option in options.split(","):
        if not option:
            continue
        if option == "coloninkey":
            colon_in_key = True
            continue
        keyed = option.split(":")
        if len(keyed) == 2 and keyed[0] == "mtypedim":
            metric_type_dim = keyed[1]
            continue
        raise DeconstructorError(f"unknown commakeys deconstructor parameter {options}")
    return CommaKeysDeconstructor(colon_in_key, metric_type_dim)


_LOADERS: dict[str, Callable[[str], MetricDeconstructor]] = {
    "": lambda options: IdentityMetricDeconstructor(),
    "identity": lambda options: IdentityMetricDeconstructor(),
    "datadog": comma_keys_loader,
    "commakeys": comma_keys_loader,
    "nil": lambda options: NilDeconstructor(),
}


def load(name: str, options: str) -> MetricDeconstructor:
    """Load the deconstructor registered under ``name`` with the given options."""
    loader = _LOADERS.get(name)
    if loader is None:
        raise DeconstructorError(f"unable to load metric deconstructor by the name of {name}")
    return loader(options)