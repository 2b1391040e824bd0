"""SendGate core engine - task lifecycle operations."""

import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sendgate.config import Settings, settings as default_settings
from sendgate.db.repositories import TaskRepository
from sendgate.errors import (
    ConflictError,
    DuplicateKeyError,
    IllegalStateTransition,
    InvalidTransitionError,
    TaskNotFound,
)
from sendgate.models import Task, TaskStatus
from sendgate.observability.metrics import metrics
from sendgate.utils.time import utc_now

logger = logging.getLogger(__name__)

STALLED_ERROR_CODE = "STALLED"

# Timestamp column stamped when a task enters each status
_ENTRY_TIMESTAMPS: dict[TaskStatus, str] = {
    TaskStatus.TRIGGERED: "triggered_at",
    TaskStatus.RUNNING: "started_at",
    TaskStatus.COMPLETED: "completed_at",
    TaskStatus.FAILED: "completed_at",
    TaskStatus.CANCELLED: "completed_at",
}


class TaskEngine:
    """Core engine implementing the task lifecycle."""

    def __init__(self, session: AsyncSession, config: Optional[Settings] = None):
        self.session = session
        self.config = config or default_settings
        self.tasks = TaskRepository(session)

    async def create_task(
        self,
        tenant_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        task_name: str,
        max_attempts: int = 3,
        scheduled_for=None,
        related_type: str | None = None,
        related_id: str | None = None,
    ) -> tuple[Task, bool]:
        """
        Create a pending task, or return the task already holding the key.

        Returns ``(task, created)``. A second create with the same key is a
        retrieval, not a failure. Raises ConflictError when the key belongs to
        another tenant or the winning row cannot be read back.
        """
        try:
            task = await self.tasks.insert(
                tenant_id=tenant_id,
                idempotency_key=idempotency_key,
                task_name=task_name,
                payload=payload,
                max_attempts=max_attempts,
                scheduled_for=scheduled_for,
                related_type=related_type,
                related_id=related_id,
            )
        except DuplicateKeyError:
            existing = await self.tasks.get_by_idempotency_key(idempotency_key)
            if existing is None:
                raise ConflictError(idempotency_key, "winning task not visible")
            if existing.tenant_id != tenant_id:
                raise ConflictError(idempotency_key, "key is held by another tenant")
            metrics.inc_counter("tasks.create.deduplicated")
            logger.info(
                f"Idempotent create resolved to existing task {existing.id} "
                f"(key={idempotency_key})"
            )
            return existing, False

        metrics.inc_counter("tasks.create.inserted")
        logger.info(f"Created task {task.id} ({task.task_name}) for tenant {tenant_id}")
        return task, True

    async def transition(
        self,
        tenant_id: str,
        task_id: str,
        from_expected: TaskStatus,
        to: TaskStatus,
        run_id: str | None = None,
        output: dict[str, Any] | None = None,
        error_message: str | None = None,
        error_code: str | None = None,
    ) -> Task:
        """
        Move a task from ``from_expected`` to ``to`` with compare-and-swap.

        The legality check runs before storage is touched: a successful swap
        implies the current status equals ``from_expected``, so checking the
        pair is checking the current status.
        """
        if not from_expected.can_transition_to(to):
            metrics.inc_counter("tasks.transition.illegal")
            raise IllegalStateTransition(from_expected.value, to.value)

        values: dict[str, Any] = {_ENTRY_TIMESTAMPS[to]: utc_now()}
        if run_id is not None:
            values["run_id"] = run_id
        if output is not None:
            values["output"] = output
        if error_message is not None:
            values["error_message"] = error_message
        if error_code is not None:
            values["error_code"] = error_code

        won = await self.tasks.compare_and_set_status(
            tenant_id=tenant_id,
            task_id=task_id,
            expected=from_expected,
            new_status=to,
            values=values,
            increment_attempt=to == TaskStatus.TRIGGERED,
        )

        current = await self.tasks.get(tenant_id, task_id)
        if current is None:
            raise TaskNotFound(task_id)
        if not won:
            metrics.inc_counter("tasks.transition.conflict")
            raise InvalidTransitionError(task_id, from_expected.value, current.status.value)

        metrics.inc_counter(f"tasks.transition.{to.value}")
        logger.info(f"Task {task_id} {from_expected.value} -> {to.value}")
        return current

    async def get(self, tenant_id: str, task_id: str) -> Task:
        """Get a task or raise TaskNotFound."""
        task = await self.tasks.get(tenant_id, task_id)
        if not task:
            raise TaskNotFound(task_id)
        return task

    async def list_by_status(
        self,
        tenant_id: str,
        status: TaskStatus,
        limit: int | None = None,
    ) -> list[Task]:
        """List a tenant's tasks in one status."""
        if limit is None:
            limit = self.config.default_list_limit
        limit = max(1, min(limit, self.config.max_list_limit))
        return await self.tasks.list_by_status(tenant_id, status, limit)

    async def find_stalled(
        self,
        older_than_seconds: int | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """Triggered/running tasks (all tenants) with no update within the threshold."""
        threshold = (
            self.config.stall_after_seconds if older_than_seconds is None else older_than_seconds
        )
        cutoff = utc_now() - timedelta(seconds=threshold)
        return await self.tasks.list_stalled(
            statuses={TaskStatus.TRIGGERED, TaskStatus.RUNNING},
            updated_before=cutoff,
            limit=limit or self.config.stall_sweep_batch_size,
        )

    async def fail_stalled(
        self,
        batch_size: int | None = None,
        older_than_seconds: int | None = None,
    ) -> int:
        """
        Fail stalled tasks so their owners can re-trigger under a new key.

        Uses the same compare-and-swap as ``transition``; a task that moved
        on since it was listed is left alone.
        """
        stalled = await self.find_stalled(older_than_seconds, batch_size)
        failed = 0
        for task in stalled:
            try:
                await self.transition(
                    tenant_id=task.tenant_id,
                    task_id=task.id,
                    from_expected=task.status,
                    to=TaskStatus.FAILED,
                    error_message=f"No progress since {task.updated_at.isoformat()}",
                    error_code=STALLED_ERROR_CODE,
                )
                failed += 1
            except InvalidTransitionError as e:
                logger.info(f"Skipping stalled task {task.id}: {e.message}")
        if failed:
            metrics.inc_counter("tasks.stalled.failed", failed)
        return failed

    async def status_counts(self, tenant_id: str) -> dict[str, int]:
        """Count a tenant's tasks per status (all statuses present, zero-filled)."""
        counts = await self.tasks.count_by_status(tenant_id)
        return {status.value: counts.get(status.value, 0) for status in TaskStatus}
