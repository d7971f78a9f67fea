"""Fleet status reporting."""

from pyfleet.status.reporter import FleetStatusReporter

__all__ = ["FleetStatusReporter"]
