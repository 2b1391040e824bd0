"""Task model - one unit of tenant-scoped background work."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from sendgate.models.enums import TaskStatus


class Task(BaseModel):
    """Tracked background task (newsletter send/trigger work)."""

    # Identity
    id: str
    tenant_id: str
    idempotency_key: str

    # What to run
    task_name: str
    payload: dict[str, Any] = Field(default_factory=dict)

    # Status
    status: TaskStatus = TaskStatus.PENDING

    # External runner linkage
    run_id: Optional[str] = None

    # Attempts
    attempt_count: int = 0
    max_attempts: int = 3
    last_attempt_at: Optional[datetime] = None

    # Scheduling
    scheduled_for: Optional[datetime] = None

    # Result
    output: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    # Related record (e.g. related_type="newsletter")
    related_type: Optional[str] = None
    related_id: Optional[str] = None

    # Timestamps
    triggered_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def is_terminal(self) -> bool:
        """Check if task is in a terminal state."""
        return self.status.is_terminal()

    def can_transition_to(self, new_status: TaskStatus) -> bool:
        """Check if transition to new status is valid per state machine."""
        return self.status.can_transition_to(new_status)
