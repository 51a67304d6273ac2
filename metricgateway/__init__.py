"""Listeners, forwarders, filters and metric-name deconstructors for a metrics gateway."""

__version__ = "0.1.0"