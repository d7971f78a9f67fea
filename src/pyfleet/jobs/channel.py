"""Cloud job channel: job notifications in, job status updates out."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from pyfleet._constants import (
    JOBS_NOTIFY_TOPIC,
    JOBS_UPDATE_ACCEPTED_TOPIC,
    JOBS_UPDATE_REJECTED_TOPIC,
    JOBS_UPDATE_TOPIC,
    job_id_from_topic,
)
from pyfleet._redact import redact_for_log
from pyfleet._retry import retry_transient
from pyfleet.exceptions import (
    FleetTransportError,
    JobDocumentError,
    JobUpdateRejectedError,
    PublishTimeoutError,
)
from pyfleet.models.deployment import Deployment, DeploymentStatus, DeploymentType, DesiredState
from pyfleet.models.jobs import JobDocument, JobNotification, JobOperation, JobStatus, JobStatusUpdate
from pyfleet.state.events import DeploymentEvent, DeploymentPhase

if TYPE_CHECKING:
    from pyfleet._mqtt import PubSub
    from pyfleet._transport import DocumentFetcher
    from pyfleet.context import FleetContext
    from pyfleet.state.bus import Subscription

_logger = logging.getLogger(__name__)

_COMPLETION_STATUS: dict[DeploymentStatus, JobStatus] = {
    DeploymentStatus.SUCCEEDED: JobStatus.SUCCEEDED,
    DeploymentStatus.FAILED: JobStatus.FAILED,
    DeploymentStatus.CANCELLED: JobStatus.FAILED,
}

_FINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.REJECTED})


class CloudJobChannel:
    """Turns job notifications into cloud-job deployments and reports their outcome.

    Network callbacks only parse the topic and schedule work; fetching,
    validation and queueing happen in tasks on the event loop.

    Status updates are delivered at least once: the acceptance waiter is
    registered before the publish is issued, and a publish that is not
    accepted within ``publish_ack_timeout`` is retried per
    ``publish_retry``.  Updates for one job are published in order.
    """

    def __init__(
        self,
        context: FleetContext,
        pubsub: PubSub,
        fetcher: DocumentFetcher,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._context = context
        self._config = context.config
        self._pubsub = pubsub
        self._fetcher = fetcher
        self._sleep = sleep
        thing = self._config.thing_name
        self._notify_topic = JOBS_NOTIFY_TOPIC.format(thing=thing)
        self._reply_topics = (
            JOBS_UPDATE_ACCEPTED_TOPIC.format(thing=thing),
            JOBS_UPDATE_REJECTED_TOPIC.format(thing=thing),
        )
        self._waiters: dict[str, asyncio.Future[bool]] = {}
        self._job_locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._subscription: Subscription[DeploymentEvent] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._subscription is not None:
            return
        for topic in self._reply_topics:
            self._pubsub.subscribe(topic, self._on_update_reply)
        self._pubsub.subscribe(self._notify_topic, self._on_notification)
        self._subscription = self._context.deployment_events.subscribe(self._on_deployment_event)
        _logger.debug("Job channel listening on %s", self._notify_topic)

    async def stop(self) -> None:
        if self._subscription is None:
            return
        self._subscription.unsubscribe()
        self._subscription = None
        self._pubsub.unsubscribe(self._notify_topic)
        for topic in self._reply_topics:
            self._pubsub.unsubscribe(topic)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for waiter in self._waiters.values():
            waiter.cancel()
        self._waiters.clear()

    async def join(self) -> None:
        """Wait until every scheduled notification and status task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_notification(self, topic: str, payload: bytes) -> None:
        _logger.debug("Job notification on %s (%d bytes)", topic, len(payload))
        self._spawn(self.handle_notification(payload), name="job-notification")

    async def handle_notification(self, payload: bytes | str) -> Deployment | None:
        """Fetch, validate and queue the job described by *payload*.

        Returns the queued deployment, or ``None`` when the job was
        rejected or its document could not be fetched.
        """
        try:
            raw = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError):
            _logger.warning("Dropping job notification that is not JSON")
            return None
        if isinstance(raw, dict) and isinstance(raw.get("execution"), dict):
            # notify-next wraps the job in an "execution" object
            raw = raw["execution"]
        if not isinstance(raw, dict):
            _logger.warning("Dropping job notification that is not a JSON object")
            return None
        _logger.debug("Job notification: %s", redact_for_log(raw))

        try:
            notification = JobNotification.model_validate(raw)
        except ValidationError as exc:
            job_id = raw.get("jobId")
            _logger.warning("Malformed job notification %s: %s", job_id, exc.errors()[:1])
            if isinstance(job_id, str) and job_id:
                await self.publish_status(job_id, JobStatus.REJECTED, {"reason": "malformed notification"})
            return None

        job_id = notification.job_id
        if notification.operation == JobOperation.CANCEL:
            _logger.info("Job %s cancellation received", job_id)
            cancel = Deployment.create(
                DesiredState(cancels=job_id),
                deployment_type=DeploymentType.CLOUD_JOB,
                deployment_id=f"{job_id}:cancel",
            )
            self._context.queue.offer(cancel)
            return cancel

        if not notification.document_location:
            _logger.warning("Job %s has no document location", job_id)
            await self.publish_status(job_id, JobStatus.REJECTED, {"reason": "missing documentLocation"})
            return None

        try:
            document = await self.fetch_document(job_id, notification.document_location)
        except JobDocumentError as exc:
            _logger.warning("Job %s rejected: %s", job_id, exc)
            await self.publish_status(
                job_id, JobStatus.REJECTED, {"reason": "malformed job document", "message": str(exc)}
            )
            return None
        except FleetTransportError as exc:
            _logger.warning("Job %s document could not be fetched: %s", job_id, exc)
            await self.publish_status(
                job_id, JobStatus.FAILED, {"reason": "document fetch failed", "message": str(exc)}
            )
            return None

        deployment = Deployment.create(
            document.to_desired_state(),
            deployment_type=DeploymentType.CLOUD_JOB,
            deployment_id=job_id,
        )
        if self._context.queue.offer(deployment):
            _logger.info("Job %s queued as deployment", job_id)
        return deployment

    async def fetch_document(self, job_id: str, location: str) -> JobDocument:
        """Fetch and validate the job document, retrying transient failures.

        Raises
        ------
        JobDocumentError
            If the document is malformed or belongs to another job.
        FleetTransportError
            If every fetch attempt failed or timed out.
        """
        timeout = self._config.job_fetch_timeout

        async def _attempt() -> dict[str, Any]:
            try:
                return await asyncio.wait_for(self._fetcher.fetch(location), timeout)
            except TimeoutError as exc:
                raise FleetTransportError(f"job document fetch timed out after {timeout}s") from exc

        raw = await retry_transient(
            _attempt,
            self._config.transient_retry,
            what=f"Fetching job document for {job_id}",
            sleep=self._sleep,
        )
        try:
            document = JobDocument.model_validate(raw)
        except ValidationError as exc:
            raise JobDocumentError(f"invalid job document: {exc.errors()[:1]}", job_id=job_id) from exc
        if document.job_id != job_id:
            raise JobDocumentError(f"job document is for {document.job_id}, expected {job_id}", job_id=job_id)
        return document

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _on_deployment_event(self, event: DeploymentEvent) -> None:
        if event.deployment_type != DeploymentType.CLOUD_JOB:
            return
        if event.phase == DeploymentPhase.STARTED:
            status, details = JobStatus.IN_PROGRESS, None
        else:
            status = _COMPLETION_STATUS.get(event.status, JobStatus.FAILED)
            details = dict(event.status_details) or None
        self._spawn(self.publish_status(event.deployment_id, status, details), name=f"job-status:{event.deployment_id}")

    async def publish_status(self, job_id: str, status: JobStatus, details: dict[str, str] | None = None) -> bool:
        """Publish a status update and wait for it to be accepted.

        Returns ``True`` once accepted; ``False`` when it was rejected or
        every attempt went unacknowledged.
        """
        update = JobStatusUpdate(job_id=job_id, status=status, status_details=details)
        lock = self._job_locks.setdefault(job_id, asyncio.Lock())
        async with lock:
            try:
                await retry_transient(
                    lambda: self._publish_once(update),
                    self._config.publish_retry,
                    what=f"Job {job_id} status {status}",
                    sleep=self._sleep,
                )
            except JobUpdateRejectedError as exc:
                _logger.warning("%s", exc)
                return False
            except FleetTransportError:
                _logger.error("Job %s status %s was never acknowledged", job_id, status)
                return False
        if status in _FINAL_STATUSES and not lock.locked():
            self._job_locks.pop(job_id, None)
        _logger.info("Job %s status %s accepted", job_id, status)
        return True

    async def _publish_once(self, update: JobStatusUpdate) -> None:
        job_id = update.job_id
        topic = JOBS_UPDATE_TOPIC.format(thing=self._config.thing_name, job_id=job_id)
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._waiters[job_id] = waiter
        try:
            await self._pubsub.publish(topic, update.to_payload(), qos=1)
            try:
                async with asyncio.timeout(self._config.publish_ack_timeout):
                    accepted = await waiter
            except TimeoutError as exc:
                raise PublishTimeoutError(
                    f"no acknowledgement for job {job_id} status {update.status} "
                    f"within {self._config.publish_ack_timeout}s",
                    endpoint=topic,
                ) from exc
        finally:
            if self._waiters.get(job_id) is waiter:
                del self._waiters[job_id]
        if not accepted:
            raise JobUpdateRejectedError(f"job {job_id} status {update.status} was rejected", job_id=job_id)

    def _on_update_reply(self, topic: str, payload: bytes) -> None:
        job_id = job_id_from_topic(topic)
        if job_id is None:
            return
        waiter = self._waiters.get(job_id)
        if waiter is None or waiter.done():
            _logger.debug("Unmatched job update reply on %s", topic)
            return
        waiter.set_result(topic.endswith("/accepted"))
