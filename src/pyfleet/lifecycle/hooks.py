"""Lifecycle hook resolution and the process supervisor.

All component kinds share one hook set (install, startup, run,
shutdown, bootstrap).  The kind only decides where a hook comes from:

* ``external-process`` - a shell script under the component's
  ``lifecycle`` config, executed by the :class:`ProcessSupervisor`
* ``built-in`` / ``plugin`` - an async callable registered on the
  context under the component's name
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from pyfleet._constants import LIFECYCLE_KEY
from pyfleet.models.component import ComponentKind, LifecycleStep

if TYPE_CHECKING:
    from pyfleet.context import FleetContext
    from pyfleet.registry import Component

_logger = logging.getLogger(__name__)

Hook = Callable[[], Awaitable[int | None]]
"""A resolved lifecycle hook; returns an exit code (``None`` means success)."""


class ProcessSupervisor(Protocol):
    """Executes lifecycle scripts and reports their exit code."""

    async def run(self, component: str, step: LifecycleStep, script: str) -> int: ...


def script_for(config: Mapping[str, Any], step: LifecycleStep) -> str | None:
    """Script declared for *step*, accepting both ``step: "cmd"`` and ``step: {script: "cmd"}``."""
    lifecycle = config.get(LIFECYCLE_KEY)
    if not isinstance(lifecycle, Mapping):
        return None
    value = lifecycle.get(step.value)
    if isinstance(value, Mapping):
        value = value.get("script")
    if not isinstance(value, str) or not value.strip():
        return None
    return value


def resolve_hook(context: FleetContext, component: Component, step: LifecycleStep) -> Hook | None:
    """Return the hook for *step*, or ``None`` when the component declares none."""
    if component.kind == ComponentKind.EXTERNAL_PROCESS:
        script = script_for(context.config_store.service(component.name), step)
        if script is None:
            return None
        return functools.partial(context.supervisor.run, component.name, step, script)
    if component.kind in (ComponentKind.BUILTIN, ComponentKind.PLUGIN):
        return context.builtin_hooks.get(component.name, {}).get(step)
    return None


class SubprocessSupervisor:
    """Runs lifecycle scripts through the shell.

    Each component gets its own execution slot, so at most one script
    per component runs at a time and a slow component never holds up
    another.  Cancelling :meth:`run` kills the process.
    """

    def __init__(self, *, cwd: str | None = None, env: Mapping[str, str] | None = None) -> None:
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._slots: dict[str, asyncio.Semaphore] = {}

    def _slot(self, component: str) -> asyncio.Semaphore:
        slot = self._slots.get(component)
        if slot is None:
            slot = asyncio.Semaphore(1)
            self._slots[component] = slot
        return slot

    async def run(self, component: str, step: LifecycleStep, script: str) -> int:
        env = dict(self._env if self._env is not None else os.environ)
        env["FLEET_COMPONENT_NAME"] = component
        env["FLEET_LIFECYCLE_STEP"] = step.value

        async with self._slot(component):
            _logger.debug("Running %s.%s: %s", component, step, script)
            proc = await asyncio.create_subprocess_shell(
                script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self._cwd,
                env=env,
            )
            try:
                output, _ = await proc.communicate()
            except asyncio.CancelledError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
                raise

        for line in output.decode("utf-8", errors="replace").splitlines():
            _logger.debug("[%s.%s] %s", component, step, line)
        code = proc.returncode if proc.returncode is not None else -1
        _logger.debug("%s.%s exited with code %d", component, step, code)
        return code
