"""Load a metric deconstructor described by a JSON-style configuration object."""

from __future__ import annotations

from typing import Any, Callable

from .deconstructors import DeconstructorError, MetricDeconstructor
from .delimiter_deconstructor import delimiter_json_loader
from .regex_deconstructor import regex_json_loader

_JSON_LOADERS: dict[str, Callable[[dict[str, Any]], MetricDeconstructor]] = {
    "delimiter": delimiter_json_loader,
    "regex": regex_json_loader,
}


def load_json(name: str, options: dict[str, Any]) -> MetricDeconstructor:
    """Load the JSON-configured deconstructor registered under ``name``."""
    loader = _JSON_LOADERS.get(name)
    if loader is None:
        raise DeconstructorError(
            f"unable to load from json metric deconstructor by the name of {name}"
        )
    return loader(options)