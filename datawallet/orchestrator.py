"""Drives tasks from an inbound message to a completed, attested data wallet.

Ingestion runs inline: parse, validate, allocate and request authorization.
Everything after authorization runs on a bounded pool of finalize workers
fed by a queue; a finalize job resumes from whatever state the task has
recorded, so a stalled task can be re-driven.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from .allocator import WalletAllocator
from .authorization import AuthorizationBroker
from .config import WorkerConfig
from .errors import (
    ContentIntegrityError,
    DataWalletError,
    FinalizeCancelled,
    InvalidTransitionError,
    PublishError,
    RetrievalError,
    ValidationError,
)
from .interfaces import Notifier
from .ledger import LedgerAttestor
from .models import (
    AuthorizationSummary,
    ContentArtifact,
    ContentVerification,
    ProcessingTask,
    StepOutcome,
    TaskState,
    VerificationOutcome,
)
from .parser import MimeParser, NormalizedMessage
from .state_machine import Actor, fail, record_step, transition
from .task_store import TaskStore
from .validator import Validator
from .verifier import ContentPublisher, compute_content_hash

logger = structlog.get_logger()

FINALIZE_STATES = (
    TaskState.AUTHORIZED,
    TaskState.PROCESSING,
    TaskState.PUBLISHING,
    TaskState.ATTESTING,
)

Step = Callable[[ProcessingTask], Awaitable[ProcessingTask]]


class TaskOrchestrator:
    def __init__(
        self,
        *,
        store: TaskStore,
        validator: Validator,
        allocator: WalletAllocator,
        broker: AuthorizationBroker,
        publisher: ContentPublisher,
        attestor: LedgerAttestor,
        notifier: Notifier,
        worker_config: WorkerConfig,
    ) -> None:
        self._store = store
        self._validator = validator
        self._allocator = allocator
        self._broker = broker
        self._publisher = publisher
        self._attestor = attestor
        self._notifier = notifier
        self._worker_config = worker_config
        self._parser = MimeParser()

        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=worker_config.queue_size)
        self._scheduled: set[str] = set()
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._payloads: dict[str, list[bytes]] = {}
        self._steps: dict[TaskState, Step] = {
            TaskState.AUTHORIZED: self._start_processing,
            TaskState.PROCESSING: self._prepare_artifacts,
            TaskState.PUBLISHING: self._publish_artifacts,
            TaskState.ATTESTING: self._attest,
        }

        broker.set_on_authorized(self.enqueue)

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def broker(self) -> AuthorizationBroker:
        return self._broker

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_raw(self, raw_bytes: bytes, *, source_id: str | None = None) -> ProcessingTask:
        """Parse raw RFC 822 bytes and ingest the result.

        A message that cannot be parsed still gets a task, which fails
        straight from ``RECEIVED``.
        """
        try:
            message = self._parser.parse(raw_bytes, source_id=source_id)
        except (ValueError, LookupError) as exc:
            task = await self._store.create(ProcessingTask())
            logger.warning("message_unparseable", task_id=task.task_id, error=str(exc))
            return await self._store.update(
                task.task_id, lambda t: fail(t, f"ParseError: {exc}")
            )
        return await self.ingest(message)

    async def ingest(self, message: NormalizedMessage) -> ProcessingTask:
        """Create a task for *message* and carry it to ``PENDING_AUTHORIZATION``.

        Validation failures end the task in ``FAILED`` and are returned,
        not raised.
        """
        task = await self._store.create(ProcessingTask(message_id=message.message_id))
        task_id = task.task_id

        with structlog.contextvars.bound_contextvars(task_id=task_id):
            logger.info("message_ingested", message_id=message.message_id, sender=message.sender)
            try:
                return await self._ingest(task_id, message)
            except DataWalletError as exc:
                return await self._fail(task_id, exc.describe())
            except Exception as exc:
                logger.exception("ingest_failed_unexpectedly")
                await self._fail(task_id, f"InternalError: {exc}")
                raise

    async def _ingest(self, task_id: str, message: NormalizedMessage) -> ProcessingTask:
        await self._store.update(
            task_id,
            lambda t: transition(
                t,
                TaskState.VALIDATING,
                actor=Actor.PARSER,
                message=f"parsed message from {message.sender} with {len(message.attachments)} attachment(s)",
            ),
        )

        try:
            result = self._validator.validate(message)
        except ValidationError as exc:
            return await self._fail(task_id, exc.describe())

        def _validated(t: ProcessingTask) -> ProcessingTask:
            for warning in result.warnings:
                t = record_step(t, "authenticity", StepOutcome.WARNING, warning)
            return transition(
                t,
                TaskState.CREATING,
                actor=Actor.VALIDATOR,
                message=f"owner {result.owner_identity}, authenticity {result.authenticity.score}/3",
                owner_identity=result.owner_identity,
            )

        await self._store.update(task_id, _validated)

        plan = self._allocator.allocate(task_id, result.owner_identity, message)
        self._payloads[task_id] = plan.payloads
        task = await self._store.update(
            task_id,
            lambda t: transition(
                t,
                TaskState.PENDING_AUTHORIZATION,
                actor=Actor.ALLOCATOR,
                message=f"{len(plan.artifacts)} artifact(s), estimated {plan.cost.total} credits",
                artifacts=plan.artifacts,
                estimated_cost=plan.cost.total,
            ),
        )

        request = await self._broker.issue(
            task_id,
            result.owner_identity,
            AuthorizationSummary(
                subject=plan.subject,
                sender=plan.sender,
                attachment_count=plan.attachment_count,
                estimated_cost=plan.cost.total,
            ),
        )
        await self._notify(self._notifier.send_authorization_request, request)
        return task

    # ------------------------------------------------------------------
    # Finalize queue
    # ------------------------------------------------------------------

    async def enqueue(self, task_id: str) -> bool:
        """Schedule finalization of *task_id* without waiting for queue space.

        Returns False when the queue is full; the task keeps its recorded
        state and the periodic re-drive schedules it once workers catch up.
        """
        if task_id in self._scheduled:
            return True
        try:
            self._queue.put_nowait(task_id)
        except asyncio.QueueFull:
            logger.warning("finalize_queue_full", task_id=task_id, depth=self._queue.qsize())
            return False
        self._scheduled.add(task_id)
        self._cancel_events.setdefault(task_id, asyncio.Event())
        logger.debug("finalize_enqueued", task_id=task_id, depth=self._queue.qsize())
        return True

    async def run_workers(self, shutdown_event: asyncio.Event) -> None:
        """Run the finalize worker pool and the periodic re-drive until *shutdown_event* is set."""
        count = self._worker_config.finalize_workers
        logger.info("finalize_workers_started", workers=count)
        async with asyncio.TaskGroup() as tg:
            for index in range(count):
                tg.create_task(self._worker(index, shutdown_event))
            tg.create_task(self._run_redrive_loop(shutdown_event))
        logger.info("finalize_workers_stopped")

    async def _run_redrive_loop(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            await self.redrive_stalled()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._worker_config.redrive_interval_seconds)

    async def _worker(self, index: int, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                task_id = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except TimeoutError:
                continue
            try:
                await self.finalize(task_id, shutdown_event)
            except Exception:
                logger.exception("finalize_worker_error", worker=index, task_id=task_id)
            finally:
                self._scheduled.discard(task_id)
                self._queue.task_done()

    async def finalize(
        self,
        task_id: str,
        shutdown_event: asyncio.Event | None = None,
    ) -> ProcessingTask:
        """Run the remaining finalize steps of *task_id* from its recorded state.

        Returns when the task is terminal, or earlier if *shutdown_event* is
        set, in which case the task keeps its current state.
        """
        cancel_event = self._cancel_events.setdefault(task_id, asyncio.Event())
        with structlog.contextvars.bound_contextvars(task_id=task_id):
            task = await self._store.get(task_id)
            if task.state not in FINALIZE_STATES:
                logger.warning("finalize_skipped", state=task.state.value)
                return task

            try:
                while not task.state.is_terminal:
                    if shutdown_event is not None and shutdown_event.is_set():
                        logger.info("finalize_interrupted", state=task.state.value)
                        return task
                    if cancel_event.is_set():
                        raise FinalizeCancelled(f"cancelled while {task.state.value}")
                    task = await self._steps[task.state](task)
            except DataWalletError as exc:
                task = await self._fail(task_id, exc.describe())
            except Exception as exc:
                logger.exception("finalize_failed_unexpectedly", state=task.state.value)
                task = await self._fail(task_id, f"InternalError: {exc}")

            self._cancel_events.pop(task_id, None)
            if task.state == TaskState.COMPLETED:
                self._payloads.pop(task_id, None)
                await self._notify(self._notifier.send_completion, task)
            return task

    # ------------------------------------------------------------------
    # Finalize steps
    # ------------------------------------------------------------------

    async def _start_processing(self, task: ProcessingTask) -> ProcessingTask:
        return await self._store.update(
            task.task_id,
            lambda t: transition(t, TaskState.PROCESSING, actor=Actor.FINALIZER, message="finalization started"),
        )

    async def _prepare_artifacts(self, task: ProcessingTask) -> ProcessingTask:
        payloads = self._payloads_for(task)
        for artifact, payload in zip(task.artifacts, payloads, strict=True):
            actual = compute_content_hash(payload)
            if actual != artifact.content_hash:
                raise ContentIntegrityError(
                    f"payload of {artifact.name} changed after allocation",
                    expected=artifact.content_hash,
                    actual=actual,
                )
        return await self._store.update(
            task.task_id,
            lambda t: transition(
                t,
                TaskState.PUBLISHING,
                actor=Actor.FINALIZER,
                message=f"{len(payloads)} artifact(s) ready for publishing",
            ),
        )

    async def _publish_artifacts(self, task: ProcessingTask) -> ProcessingTask:
        payloads = self._payloads_for(task)
        cancel_event = self._cancel_events.get(task.task_id)

        for index, payload in enumerate(payloads):
            if cancel_event is not None and cancel_event.is_set():
                raise FinalizeCancelled("cancelled while publishing")
            artifact = task.artifacts[index]

            if artifact.locator is None:
                published = await self._publisher.publish_artifact(
                    artifact,
                    payload,
                    metadata={
                        "taskId": task.task_id,
                        "role": artifact.role.value,
                        "contentHash": artifact.content_hash,
                        "owner": task.owner_identity or "",
                    },
                )
                task = await self._store.update(
                    task.task_id,
                    lambda t: record_step(
                        _with_artifact(t, index, published),
                        "publish",
                        StepOutcome.COMPLETED,
                        f"{published.name} -> {published.locator}",
                    ),
                )
                artifact = published

            if artifact.verification == VerificationOutcome.VERIFIED:
                continue
            if artifact.locator is None:
                raise PublishError(f"{artifact.name}: no locator recorded after publishing")
            try:
                await self._publisher.check(artifact.locator, artifact.content_hash)
            except ContentIntegrityError as exc:
                mismatched = artifact.model_copy(update={"verification": VerificationOutcome.MISMATCHED})
                await self._store.update(
                    task.task_id,
                    lambda t: record_step(
                        _with_artifact(t, index, mismatched),
                        "verify",
                        StepOutcome.FAILED,
                        f"{artifact.name} mismatched",
                        error=exc.describe(),
                    ),
                )
                raise
            verified = artifact.model_copy(update={"verification": VerificationOutcome.VERIFIED})
            task = await self._store.update(
                task.task_id,
                lambda t: record_step(
                    _with_artifact(t, index, verified),
                    "verify",
                    StepOutcome.COMPLETED,
                    f"{artifact.name} verified",
                ),
            )

        return await self._store.update(
            task.task_id,
            lambda t: transition(
                t,
                TaskState.ATTESTING,
                actor=Actor.FINALIZER,
                message=f"{len(t.artifact_locators)} artifact(s) published and verified",
            ),
        )

    async def _attest(self, task: ProcessingTask) -> ProcessingTask:
        email_locator = task.artifact_locators[0]
        record = await self._attestor.attest(task.task_id, email_locator)
        return await self._store.update(
            task.task_id,
            lambda t: transition(
                t,
                TaskState.COMPLETED,
                actor=Actor.FINALIZER,
                message=f"attested on {record.network} in {record.tx_ref}",
                attestation=record,
                actual_cost=t.estimated_cost,
            ),
        )

    def _payloads_for(self, task: ProcessingTask) -> list[bytes]:
        payloads = self._payloads.get(task.task_id)
        if payloads is None or len(payloads) != len(task.artifacts):
            raise DataWalletError(f"artifact content for {task.task_id} is no longer available")
        return payloads

    # ------------------------------------------------------------------
    # Cancellation, re-drive and queries
    # ------------------------------------------------------------------

    async def cancel(self, task_id: str, reason: str = "cancelled by operator") -> ProcessingTask:
        """Cancel a task.

        Tasks waiting for authorization become ``CANCELLED``.  Tasks being
        finalized are stopped at the next step boundary and end ``FAILED``.
        """
        task = await self._store.get(task_id)
        if task.state == TaskState.PENDING_AUTHORIZATION:
            task = await self._broker.cancel(task_id, reason)
            self._payloads.pop(task_id, None)
            return task
        if task.state in FINALIZE_STATES:
            self._cancel_events.setdefault(task_id, asyncio.Event()).set()
            logger.info("finalize_cancel_requested", task_id=task_id, state=task.state.value)
            return task
        raise InvalidTransitionError(f"{task_id}: cannot cancel a task that is {task.state.value}")

    async def redrive_stalled(self) -> list[str]:
        """Re-queue every task sitting in a finalize state without a scheduled job.

        Stops early when the queue fills up; the rest are picked up on a
        later pass.
        """
        requeued: list[str] = []
        for state in FINALIZE_STATES:
            for task in await self._store.list_by_state(state):
                if task.task_id in self._scheduled:
                    continue
                if not await self.enqueue(task.task_id):
                    break
                requeued.append(task.task_id)
        if requeued:
            logger.info("stalled_tasks_requeued", count=len(requeued))
        return requeued

    async def verify_task(self, task_id: str) -> list[ContentVerification]:
        """Re-verify every published artifact of *task_id* and report its pin status."""
        task = await self._store.get(task_id)
        results: list[ContentVerification] = []
        for artifact in task.artifacts:
            if artifact.locator is None:
                continue
            try:
                result = await self._publisher.verify(artifact.locator, artifact.content_hash)
            except RetrievalError as exc:
                result = ContentVerification(
                    locator=artifact.locator,
                    content_verified=False,
                    expected_hash=artifact.content_hash,
                    error=exc.describe(),
                )
            try:
                pinned: bool | None = await self._publisher.is_pinned(artifact.locator)
            except RetrievalError as exc:
                logger.warning("pin_status_unavailable", task_id=task_id, locator=artifact.locator, error=str(exc))
                pinned = None
            results.append(result.model_copy(update={"pinned": pinned}))
        return results

    async def statistics(self) -> dict[str, Any]:
        return {
            "tasks": await self._store.statistics(),
            "queue_depth": self._queue.qsize(),
            "scheduled": len(self._scheduled),
            "pending_authorizations": self._broker.pending_count,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fail(self, task_id: str, cause: str) -> ProcessingTask:
        task = await self._store.update(task_id, lambda t: fail(t, cause))
        self._payloads.pop(task_id, None)
        await self._notify(self._notifier.send_failure, task, cause)
        return task

    async def _notify(self, send: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await send(*args)
        except Exception as exc:
            logger.warning("notification_failed", notification=send.__name__, error=str(exc))


def _with_artifact(task: ProcessingTask, index: int, artifact: ContentArtifact) -> ProcessingTask:
    artifacts = list(task.artifacts)
    artifacts[index] = artifact
    return task.model_copy(update={"artifacts": artifacts})
