"""Task state graph and the only functions allowed to move a task along it."""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import Any

import structlog

from .errors import InvalidTransitionError
from .models import ProcessingLogEntry, ProcessingTask, StepOutcome, TaskState, utcnow

logger = structlog.get_logger()


class Actor(str, Enum):
    """Pipeline component that owns a state."""

    PARSER = "parser"
    VALIDATOR = "validator"
    ALLOCATOR = "allocator"
    BROKER = "authorization_broker"
    FINALIZER = "finalizer"


FORWARD: dict[TaskState, TaskState] = {
    TaskState.RECEIVED: TaskState.VALIDATING,
    TaskState.VALIDATING: TaskState.CREATING,
    TaskState.CREATING: TaskState.PENDING_AUTHORIZATION,
    TaskState.PENDING_AUTHORIZATION: TaskState.AUTHORIZED,
    TaskState.AUTHORIZED: TaskState.PROCESSING,
    TaskState.PROCESSING: TaskState.PUBLISHING,
    TaskState.PUBLISHING: TaskState.ATTESTING,
    TaskState.ATTESTING: TaskState.COMPLETED,
}

OWNER: dict[TaskState, Actor] = {
    TaskState.RECEIVED: Actor.PARSER,
    TaskState.VALIDATING: Actor.VALIDATOR,
    TaskState.CREATING: Actor.ALLOCATOR,
    TaskState.PENDING_AUTHORIZATION: Actor.BROKER,
    TaskState.AUTHORIZED: Actor.FINALIZER,
    TaskState.PROCESSING: Actor.FINALIZER,
    TaskState.PUBLISHING: Actor.FINALIZER,
    TaskState.ATTESTING: Actor.FINALIZER,
}

STATE_STEP_PREFIX = "state:"


def allowed_targets(state: TaskState) -> frozenset[TaskState]:
    """States reachable from *state* in a single transition."""
    if state.is_terminal:
        return frozenset()
    targets = {FORWARD[state], TaskState.FAILED}
    if state == TaskState.PENDING_AUTHORIZATION:
        targets.add(TaskState.CANCELLED)
    return frozenset(targets)


def is_valid_path(states: Sequence[TaskState]) -> bool:
    """True if *states* starts at ``RECEIVED`` and every step is a legal transition."""
    if not states or states[0] != TaskState.RECEIVED:
        return False
    return all(nxt in allowed_targets(cur) for cur, nxt in zip(states, states[1:]))


def transition(
    task: ProcessingTask,
    target: TaskState,
    *,
    actor: Actor,
    message: str = "",
    error: str | None = None,
    **updates: Any,
) -> ProcessingTask:
    """Return a copy of *task* moved to *target* with a log entry appended.

    Raises :class:`InvalidTransitionError` if the graph does not allow the
    move, if *actor* does not own the current state, or if a move to
    ``FAILED`` has no cause.
    """
    current = task.state
    if target not in allowed_targets(current):
        raise InvalidTransitionError(f"{task.task_id}: {current.value} -> {target.value} is not allowed")
    if OWNER[current] != actor:
        raise InvalidTransitionError(
            f"{task.task_id}: {actor.value} cannot advance a task in {current.value}"
        )
    if target == TaskState.FAILED and not error:
        raise InvalidTransitionError(f"{task.task_id}: failing a task requires a cause")

    entry = ProcessingLogEntry(
        step=f"{STATE_STEP_PREFIX}{target.value}",
        outcome=StepOutcome.FAILED if target == TaskState.FAILED else StepOutcome.COMPLETED,
        message=message,
        error=error,
    )
    changes: dict[str, Any] = {
        "state": target,
        "processing_log": [*task.processing_log, entry],
        **updates,
    }
    if target == TaskState.FAILED:
        changes["error"] = error
    if target == TaskState.COMPLETED:
        changes.setdefault("completed_at", utcnow())

    logger.info(
        "task_transition",
        task_id=task.task_id,
        from_state=current.value,
        to_state=target.value,
        actor=actor.value,
        error=error,
    )
    return task.model_copy(update=changes)


def record_step(
    task: ProcessingTask,
    step: str,
    outcome: StepOutcome,
    message: str = "",
    *,
    error: str | None = None,
) -> ProcessingTask:
    """Return a copy of *task* with a non-transition log entry appended."""
    if step.startswith(STATE_STEP_PREFIX):
        raise ValueError(f"step name {step!r} is reserved for state transitions")
    entry = ProcessingLogEntry(step=step, outcome=outcome, message=message, error=error)
    logger.info("task_step", task_id=task.task_id, step=step, outcome=outcome.value, detail=message)
    return task.model_copy(update={"processing_log": [*task.processing_log, entry]})


def fail(task: ProcessingTask, cause: str, *, message: str = "") -> ProcessingTask:
    """Move *task* to ``FAILED`` on behalf of the component owning its current state."""
    if task.state.is_terminal:
        raise InvalidTransitionError(f"{task.task_id}: already {task.state.value}")
    return transition(
        task,
        TaskState.FAILED,
        actor=OWNER[task.state],
        message=message or cause,
        error=cause,
    )
