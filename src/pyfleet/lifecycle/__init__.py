"""Per-component lifecycle state machine and hook execution."""

from pyfleet.lifecycle.hooks import Hook, ProcessSupervisor, SubprocessSupervisor, resolve_hook, script_for
from pyfleet.lifecycle.state_machine import ComponentLifecycle

__all__ = [
    "ComponentLifecycle",
    "Hook",
    "ProcessSupervisor",
    "SubprocessSupervisor",
    "resolve_hook",
    "script_for",
]
