"""Keyed store of :class:`ProcessingTask` records."""

from __future__ import annotations

import abc
import asyncio
from collections import Counter
from collections.abc import Callable

from .errors import DuplicateTaskError, NotFoundError
from .models import ProcessingTask, TaskState


class TaskStore(abc.ABC):
    """Single source of truth for task state.

    Implementations must make every write a whole-record replacement and
    hand out snapshots, so a caller can never observe or produce a
    partially updated task.
    """

    @abc.abstractmethod
    async def create(self, task: ProcessingTask) -> ProcessingTask:
        """Insert a new task; raise :class:`DuplicateTaskError` if the identity exists."""

    @abc.abstractmethod
    async def upsert(self, task: ProcessingTask) -> ProcessingTask:
        """Atomically add or replace the task."""

    @abc.abstractmethod
    async def update(
        self,
        task_id: str,
        change: Callable[[ProcessingTask], ProcessingTask],
    ) -> ProcessingTask:
        """Apply *change* to the current record and store its result atomically.

        Raises :class:`NotFoundError` for unknown tasks.  Exceptions raised by
        *change* propagate and leave the stored record untouched.
        """

    @abc.abstractmethod
    async def find(self, task_id: str) -> ProcessingTask | None:
        """Return a snapshot of the task, or ``None``."""

    async def get(self, task_id: str) -> ProcessingTask:
        """Return a snapshot of the task or raise :class:`NotFoundError`."""
        task = await self.find(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    @abc.abstractmethod
    async def list_for_owner(self, identity: str) -> list[ProcessingTask]:
        """Tasks owned by *identity*, newest first."""

    @abc.abstractmethod
    async def list_by_state(self, state: TaskState) -> list[ProcessingTask]:
        """Tasks currently in *state*, oldest first."""

    @abc.abstractmethod
    async def statistics(self) -> dict[str, int]:
        """Task counts per state plus a ``total``."""


class InMemoryTaskStore(TaskStore):
    """Process-local store guarded by an :class:`asyncio.Lock`.

    Records are deep-copied on the way in and on the way out.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, ProcessingTask] = {}
        self._lock = asyncio.Lock()

    async def create(self, task: ProcessingTask) -> ProcessingTask:
        async with self._lock:
            if task.task_id in self._tasks:
                raise DuplicateTaskError(f"task {task.task_id} already exists")
            self._tasks[task.task_id] = task.model_copy(deep=True)
            return task.model_copy(deep=True)

    async def upsert(self, task: ProcessingTask) -> ProcessingTask:
        async with self._lock:
            self._tasks[task.task_id] = task.model_copy(deep=True)
            return task.model_copy(deep=True)

    async def update(
        self,
        task_id: str,
        change: Callable[[ProcessingTask], ProcessingTask],
    ) -> ProcessingTask:
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFoundError(task_id)
            updated = change(current.model_copy(deep=True))
            if updated.task_id != task_id:
                raise ValueError(f"task identity is immutable ({task_id} -> {updated.task_id})")
            self._tasks[task_id] = updated.model_copy(deep=True)
            return updated.model_copy(deep=True)

    async def find(self, task_id: str) -> ProcessingTask | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task is not None else None

    async def list_for_owner(self, identity: str) -> list[ProcessingTask]:
        wanted = identity.lower()
        async with self._lock:
            owned = [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if t.owner_identity is not None and t.owner_identity.lower() == wanted
            ]
        return sorted(owned, key=lambda t: t.created_at, reverse=True)

    async def list_by_state(self, state: TaskState) -> list[ProcessingTask]:
        async with self._lock:
            matching = [t.model_copy(deep=True) for t in self._tasks.values() if t.state == state]
        return sorted(matching, key=lambda t: t.created_at)

    async def statistics(self) -> dict[str, int]:
        async with self._lock:
            counts = Counter(t.state.value for t in self._tasks.values())
            total = len(self._tasks)
        stats = {state.value: counts.get(state.value, 0) for state in TaskState}
        stats["total"] = total
        return stats
