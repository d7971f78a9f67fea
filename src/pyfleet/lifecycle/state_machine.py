"""Per-component lifecycle state machine.

::

    NEW --install--> INSTALLED --hard deps RUNNING/FINISHED--> STARTING --healthy--> RUNNING
    RUNNING --stop--> STOPPING --> FINISHED
    RUNNING --run step exits 0--> FINISHED
    STARTING/RUNNING --failure--> ERRORED --retry--> STARTING   (install failures retry install)
    ERRORED --retries exhausted--> BROKEN
    FINISHED/NEW/BROKEN --bootstrap--> BOOTSTRAPPING --> NEW

Step failures are contained here: they become ``ERRORED``/``BROKEN``
transitions and are never raised to the caller.  Everything outside
this module observes a component only through its state.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pyfleet.config_store import bootstrap_required
from pyfleet.exceptions import ComponentLifecycleError
from pyfleet.lifecycle.hooks import Hook, resolve_hook
from pyfleet.models.component import LifecycleState, LifecycleStep

if TYPE_CHECKING:
    from pyfleet.context import FleetContext
    from pyfleet.registry import Component

_logger = logging.getLogger(__name__)

_S = LifecycleState

_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    _S.NEW: frozenset({_S.INSTALLED, _S.ERRORED, _S.BOOTSTRAPPING}),
    _S.INSTALLED: frozenset({_S.STARTING, _S.STOPPING, _S.BOOTSTRAPPING, _S.NEW}),
    _S.STARTING: frozenset({_S.RUNNING, _S.ERRORED, _S.STOPPING}),
    _S.RUNNING: frozenset({_S.FINISHED, _S.STOPPING, _S.ERRORED}),
    _S.STOPPING: frozenset({_S.FINISHED}),
    _S.FINISHED: frozenset({_S.INSTALLED, _S.BOOTSTRAPPING, _S.NEW}),
    _S.ERRORED: frozenset({_S.BROKEN, _S.STARTING, _S.INSTALLED, _S.STOPPING, _S.BOOTSTRAPPING, _S.NEW}),
    _S.BROKEN: frozenset({_S.NEW, _S.BOOTSTRAPPING}),
    _S.BOOTSTRAPPING: frozenset({_S.NEW, _S.ERRORED}),
}

_FLOW_EXIT_STATES = frozenset({_S.RUNNING, _S.FINISHED, _S.BROKEN, _S.STOPPING, _S.BOOTSTRAPPING})


class ComponentLifecycle:
    """Drives one component through its lifecycle.

    The component's own :attr:`lock` is held while a step executes and
    while the registry mutates the component's metadata.  Dependency
    states are read without taking the dependency's lock.
    """

    def __init__(self, component: Component, context: FleetContext) -> None:
        self.component = component
        self._context = context
        self.lock = asyncio.Lock()
        self.error_count = 0
        self._installed = False
        self._stop_requested = False
        self._deps_changed = asyncio.Event()
        self._start_task: asyncio.Task[None] | None = None
        self._run_task: asyncio.Task[bool] | None = None
        self._recover_task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"ComponentLifecycle({self.name!r}, state={self.state})"

    @property
    def name(self) -> str:
        return self.component.name

    @property
    def state(self) -> LifecycleState:
        return self.component.state

    # ------------------------------------------------------------------
    # Bootstrap detection
    # ------------------------------------------------------------------

    def current_config(self) -> dict[str, Any]:
        """Currently applied configuration subtree of this component."""
        return self._context.config_store.service(self.name)

    def is_bootstrap_required(self, new_config: Mapping[str, Any]) -> bool:
        """Whether applying *new_config* needs a full bootstrap cycle.

        True only when *new_config* declares a non-empty bootstrap step
        under its lifecycle namespace and either its version differs from
        the applied one or the bootstrap step itself changed.
        """
        return bootstrap_required(self.current_config(), new_config)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_start(self) -> asyncio.Task[None]:
        """Ask the component to reach ``RUNNING`` (or ``FINISHED``).

        Returns the task driving the start; the transition to
        ``STARTING`` happens only once all hard dependencies are
        ``RUNNING`` or ``FINISHED``.
        """
        task = self._start_task
        if task is not None and not task.done():
            return task
        self._stop_requested = False
        self._cancel_recovery()
        self._start_task = asyncio.get_running_loop().create_task(self._start_flow(), name=f"start:{self.name}")
        return self._start_task

    def request_stop(self) -> asyncio.Task[None]:
        """Ask the component to stop; see :meth:`stop`."""
        return asyncio.get_running_loop().create_task(self.stop(), name=f"stop:{self.name}")

    def notify_dependency_state_changed(self, dependency: str, state: LifecycleState) -> None:
        """Re-evaluate readiness after *dependency* moved to *state*."""
        _logger.debug("%s notified: dependency %s is %s", self.name, dependency, state)
        self._deps_changed.set()

    async def stop(self) -> None:
        """Stop the component and wait until it is ``FINISHED``.

        A step that is already executing runs to completion first; a
        long-running ``run`` step is terminated.  Components that never
        got past ``NEW`` (or are ``BROKEN``/``FINISHED``) are left as is.
        """
        self._stop_requested = True
        self._deps_changed.set()
        self._cancel_recovery()
        task = self._start_task
        if task is not None and not task.done():
            await asyncio.wait({task})

        async with self.lock:
            await self._cancel_run_task()
            if self.state not in (_S.INSTALLED, _S.STARTING, _S.RUNNING, _S.ERRORED):
                return
            self._set_state(_S.STOPPING)
            try:
                await self._execute(LifecycleStep.SHUTDOWN, timeout=self._context.config.shutdown_timeout)
            except ComponentLifecycleError as exc:
                _logger.warning("Shutdown of %s failed: %s", self.name, exc)
            self._set_state(_S.FINISHED)

    async def reset(self) -> None:
        """Return the component to ``NEW`` so it reinstalls on next start.

        A component that is still live is stopped first, so its shutdown
        step runs.
        """
        if self.state not in (_S.NEW, _S.FINISHED, _S.BROKEN):
            await self.stop()
        async with self.lock:
            await self._cancel_run_task()
            self._installed = False
            self.error_count = 0
            self._set_state(_S.NEW)

    async def bootstrap(self) -> bool:
        """Run the bootstrap step; ends in ``NEW`` on success.

        Failures are retried like any other step; when the retry budget is
        exhausted the component becomes ``BROKEN`` and ``False`` is
        returned.
        """
        config = self._context.config
        async with self.lock:
            await self._cancel_run_task()
            while True:
                self._set_state(_S.BOOTSTRAPPING)
                try:
                    await self._execute(LifecycleStep.BOOTSTRAP, timeout=config.startup_timeout)
                except ComponentLifecycleError as exc:
                    _logger.warning("Bootstrap of %s failed: %s", self.name, exc)
                    self._set_state(_S.ERRORED)
                    if self._record_failure():
                        return False
                    await asyncio.sleep(config.component_retry_delay)
                    continue
                self._installed = False
                self.error_count = 0
                self._set_state(_S.NEW)
                return True

    async def close(self) -> None:
        """Cancel every background task owned by this lifecycle."""
        self._stop_requested = True
        self._deps_changed.set()
        self._cancel_recovery()
        for task in (self._start_task, self._run_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def hard_dependencies_satisfied(self) -> bool:
        registry = self._context.registry
        for dependency in self.component.hard_dependencies:
            state = registry.state_of(dependency)
            if state is None or not state.satisfies_dependency:
                return False
        return True

    def soft_dependencies_settled(self) -> bool:
        registry = self._context.registry
        for dependency in self.component.soft_dependencies:
            state = registry.state_of(dependency)
            if state is not None and not (state.is_terminal or registry.is_blocked(dependency)):
                return False
        return True

    @property
    def is_ready(self) -> bool:
        """Running (or finished) with every soft dependency settled."""
        return self.state.satisfies_dependency and self.soft_dependencies_settled()

    # ------------------------------------------------------------------
    # Start flow
    # ------------------------------------------------------------------

    async def _start_flow(self) -> None:
        config = self._context.config
        async with self.lock:
            if self.state == _S.FINISHED:
                self._set_state(_S.INSTALLED if self._installed else _S.NEW)

        while not self._stop_requested:
            if self.state in _FLOW_EXIT_STATES:
                return
            if not self._installed:
                async with self.lock:
                    if self._stop_requested:
                        return
                    ok = await self._install()
            else:
                if not self.hard_dependencies_satisfied():
                    await self._wait_for_dependencies()
                    continue
                async with self.lock:
                    # Re-check under our own lock; the dependency may have moved on.
                    if self._stop_requested or not self.hard_dependencies_satisfied():
                        continue
                    ok = await self._startup()
            if not ok:
                if self._record_failure():
                    return
                await asyncio.sleep(config.component_retry_delay)

    async def _wait_for_dependencies(self) -> None:
        self._deps_changed.clear()
        if self._stop_requested or self.hard_dependencies_satisfied():
            return
        _logger.debug("%s waiting for hard dependencies %s", self.name, sorted(self.component.hard_dependencies))
        await self._deps_changed.wait()

    async def _install(self) -> bool:
        try:
            await self._execute(LifecycleStep.INSTALL)
        except ComponentLifecycleError as exc:
            _logger.warning("Install of %s failed: %s", self.name, exc)
            self._set_state(_S.ERRORED)
            return False
        self._installed = True
        self.component.applied_version = self.component.desired_version
        self._set_state(_S.INSTALLED)
        return True

    async def _startup(self) -> bool:
        config = self._context.config
        self._set_state(_S.STARTING)
        try:
            if await self._execute(LifecycleStep.STARTUP, timeout=config.startup_timeout):
                self._set_state(_S.RUNNING)
                return True

            hook = resolve_hook(self._context, self.component, LifecycleStep.RUN)
            if hook is None:
                self._set_state(_S.RUNNING)
                return True

            run_task = asyncio.get_running_loop().create_task(
                self._execute_hook(hook, LifecycleStep.RUN), name=f"run:{self.name}"
            )
            self._run_task = run_task
            done, _ = await asyncio.wait({run_task}, timeout=config.startup_health_window)
            if run_task in done:
                self._run_task = None
                run_task.result()
                self._set_state(_S.RUNNING)
                self._set_state(_S.FINISHED)
                return True
            run_task.add_done_callback(self._on_run_exit)
            self._set_state(_S.RUNNING)
            return True
        except ComponentLifecycleError as exc:
            _logger.warning("Startup of %s failed: %s", self.name, exc)
            self._set_state(_S.ERRORED)
            return False

    def _on_run_exit(self, task: asyncio.Task[bool]) -> None:
        if self._run_task is task:
            self._run_task = None
        if task.cancelled() or self._stop_requested or self.state != _S.RUNNING:
            return
        exc = task.exception()
        if exc is None:
            self._set_state(_S.FINISHED)
            return
        _logger.warning("%s failed while running: %s", self.name, exc)
        self._set_state(_S.ERRORED)
        if self._record_failure():
            return
        self._recover_task = asyncio.get_running_loop().create_task(
            self._restart_after_failure(), name=f"recover:{self.name}"
        )

    async def _restart_after_failure(self) -> None:
        await asyncio.sleep(self._context.config.component_retry_delay)
        if not self._stop_requested and self.state == _S.ERRORED:
            self._recover_task = None
            self.request_start()

    def _record_failure(self) -> bool:
        """Count a failed attempt; return ``True`` once the component is ``BROKEN``."""
        self.error_count += 1
        limit = self._context.config.component_retry_limit
        if self.error_count >= limit:
            _logger.error("%s is BROKEN after %d failed attempt(s)", self.name, self.error_count)
            self._set_state(_S.BROKEN)
            return True
        _logger.info("%s will retry (%d/%d)", self.name, self.error_count, limit)
        return False

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def _execute(self, step: LifecycleStep, *, timeout: float | None = None) -> bool:
        """Run *step* if declared; return whether it was declared.

        Raises :class:`ComponentLifecycleError` on non-zero exit, timeout
        or supervisor failure.
        """
        hook = resolve_hook(self._context, self.component, step)
        if hook is None:
            return False
        return await self._execute_hook(hook, step, timeout=timeout)

    async def _execute_hook(self, hook: Hook, step: LifecycleStep, *, timeout: float | None = None) -> bool:
        try:
            if timeout is not None and timeout > 0:
                code = await asyncio.wait_for(hook(), timeout)
            else:
                code = await hook()
        except TimeoutError as exc:
            raise ComponentLifecycleError(
                f"{self.name}.{step} timed out after {timeout}s", component=self.name, step=step
            ) from exc
        except ComponentLifecycleError:
            raise
        except Exception as exc:
            raise ComponentLifecycleError(
                f"{self.name}.{step} could not be executed: {exc}", component=self.name, step=step
            ) from exc
        if code not in (None, 0):
            raise ComponentLifecycleError(
                f"{self.name}.{step} exited with code {code}", component=self.name, step=step
            )
        return True

    async def _cancel_run_task(self) -> None:
        task = self._run_task
        self._run_task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, ComponentLifecycleError):
            await task

    def _cancel_recovery(self) -> None:
        task = self._recover_task
        self._recover_task = None
        if task is not None and not task.done():
            task.cancel()

    def _set_state(self, new: LifecycleState) -> None:
        old = self.component.state
        if old == new:
            return
        if new not in _TRANSITIONS[old]:
            _logger.warning("Unexpected transition for %s: %s -> %s", self.name, old, new)
        self.component.state = new
        _logger.debug("%s: %s -> %s", self.name, old, new)
        self._context.registry.on_state_changed(self.component, old, new)
