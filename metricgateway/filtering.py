"""Allow/deny filtering of datapoints by metric name."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field

from .protocol import Datapoint, cumulative


@dataclass
class FilterObj:
    """Regular expressions that allow or deny metric names."""

    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)


class FilteredForwarder:
    """Holds compiled filters and counts how many datapoints they dropped."""

    def __init__(self) -> None:
        self._allow: list[re.Pattern[str]] = []
        self._deny: list[re.Pattern[str]] = []
        self._filter_lock = threading.Lock()
        self.filtered_datapoints = 0

    def setup(self, filters: FilterObj | None) -> None:
        """Compile the filters; raises ``re.error`` for a bad expression."""
        if filters is None:
            return
        allow = [re.compile(a) for a in filters.allow]
        deny = [re.compile(d) for d in filters.deny]
        self._allow = allow
        self._deny = deny

    def filter_metric_name(self, metric_name: str) -> bool:
        """True if the name matches an allow rule, or there are none and no deny rule matches."""
        if any(a.search(metric_name) for a in self._allow):
            return True
        if self._allow:
            return False
        return not any(d.search(metric_name) for d in self._deny)

    def filter_datapoints(self, datapoints: list[Datapoint]) -> list[Datapoint]:
        valid = [d for d in datapoints if self.filter_metric_name(d.metric)]
        with self._filter_lock:
            self.filtered_datapoints += len(datapoints) - len(valid)
        return valid

    def get_filtered_datapoints(self) -> list[Datapoint]:
        with self._filter_lock:
            total = self.filtered_datapoints
        return [cumulative("filtered_by_forwarder", None, total)]