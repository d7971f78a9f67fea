"""Cloud job channel."""

from pyfleet.jobs.channel import CloudJobChannel

__all__ = ["CloudJobChannel"]
