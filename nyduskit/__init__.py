"""Persistent records, liveness monitoring, metrics and registry access for a container image snapshotter."""

__version__ = "0.1.0"