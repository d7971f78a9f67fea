"""FIFO deployment queue with replacement and cancellation."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from pyfleet.models.deployment import Deployment, DeploymentStatus

_logger = logging.getLogger(__name__)


class DeploymentQueue:
    """Ordered queue of pending deployments.

    Offering a deployment whose id is already queued replaces the queued
    one in place, keeping its position.  A deployment whose document
    carries ``cancels`` is a cancellation request and is never queued
    itself: it flags the target (queued or in flight) instead.
    """

    def __init__(self) -> None:
        self._pending: deque[Deployment] = deque()
        self._available = asyncio.Event()
        self._in_progress: Deployment | None = None

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def in_progress(self) -> Deployment | None:
        return self._in_progress

    def ids(self) -> list[str]:
        return [d.deployment_id for d in self._pending]

    def offer(self, deployment: Deployment) -> bool:
        """Enqueue *deployment*; return whether the queue changed."""
        target = deployment.document.cancels
        if target is not None:
            return self._cancel(target, deployment)

        in_flight = self._in_progress
        if in_flight is not None and in_flight.deployment_id == deployment.deployment_id:
            _logger.info("Ignoring duplicate of in-flight deployment %s", deployment.deployment_id)
            return False

        for index, queued in enumerate(self._pending):
            if queued.deployment_id == deployment.deployment_id:
                self._pending[index] = deployment
                queued.finish(DeploymentStatus.CANCELLED, {"reason": "superseded"})
                _logger.info("Replaced queued deployment %s", deployment.deployment_id)
                return True

        self._pending.append(deployment)
        _logger.debug("Queued deployment %s (%d pending)", deployment.deployment_id, len(self._pending))
        self._available.set()
        return True

    def _cancel(self, target: str, request: Deployment) -> bool:
        request.finish(DeploymentStatus.SUCCEEDED, {"cancelled": target})
        in_flight = self._in_progress
        if in_flight is not None and in_flight.deployment_id == target:
            in_flight.request_cancel()
            _logger.info("Cancellation requested for in-flight deployment %s", target)
            return True
        for queued in self._pending:
            if queued.deployment_id == target:
                queued.request_cancel()
                _logger.info("Cancellation requested for queued deployment %s", target)
                return True
        _logger.info("Cancellation for unknown deployment %s ignored", target)
        return False

    async def get(self) -> Deployment:
        """Wait for and pop the oldest pending deployment."""
        while not self._pending:
            self._available.clear()
            await self._available.wait()
        return self._pending.popleft()

    def mark_in_progress(self, deployment: Deployment) -> None:
        self._in_progress = deployment

    def mark_done(self, deployment: Deployment) -> None:
        if self._in_progress is deployment:
            self._in_progress = None
