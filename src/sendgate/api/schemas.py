"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from sendgate.models import (
    EventType,
    NewsletterEvent,
    NewsletterSend,
    NewsletterStats,
    SendStatus,
    Task,
    TaskStatus,
)


# ============================================================================
# Tasks
# ============================================================================


class CreateTaskRequest(BaseModel):
    """Create task request."""

    idempotency_key: str = Field(..., min_length=1, description="Caller-chosen dedupe key")
    task_name: str = Field(..., min_length=1, description="Task to run")
    payload: dict[str, Any] = Field(default_factory=dict, description="Task payload")
    max_attempts: int = Field(3, ge=1, description="Max trigger attempts")
    scheduled_for: Optional[datetime] = Field(None, description="Earliest run time")
    related_type: Optional[str] = Field(None, description="Related record kind, e.g. newsletter")
    related_id: Optional[str] = Field(None, description="Related record id")


class CreateTaskResponse(BaseModel):
    """Create task response. ``created`` is false when the key already existed."""

    task: Task
    created: bool


class TransitionRequest(BaseModel):
    """Compare-and-swap status change."""

    from_status: TaskStatus = Field(..., description="Status the caller believes the task holds")
    to_status: TaskStatus = Field(..., description="Requested status")
    run_id: Optional[str] = None
    output: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None


class ListTasksResponse(BaseModel):
    tasks: list[Task]
    count: int


# ============================================================================
# Tracking
# ============================================================================


class InitNewsletterRequest(BaseModel):
    total_recipients: int = Field(..., ge=0)


class TrackSendRequest(BaseModel):
    """One recipient's dispatch result."""

    group_uuid: str
    recipient_email: str = Field(..., min_length=3)
    status: SendStatus = SendStatus.SENT
    recipient_id: Optional[str] = None
    recipient_name: Optional[str] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class TrackSendResponse(BaseModel):
    send_id: str
    created: bool


class TrackEventRequest(BaseModel):
    """Provider webhook event, already parsed."""

    recipient_email: str = Field(..., min_length=3)
    event_type: EventType
    provider_message_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    occurred_at: Optional[datetime] = None


class TrackEventResponse(BaseModel):
    event_id: str
    created: bool


class CompleteNewsletterRequest(BaseModel):
    sent_count: int = Field(..., ge=0)
    failed_count: int = Field(..., ge=0)


class ListNewslettersResponse(BaseModel):
    newsletters: list[NewsletterStats]
    count: int


class ListSendsResponse(BaseModel):
    sends: list[NewsletterSend]
    count: int


class ListEventsResponse(BaseModel):
    events: list[NewsletterEvent]
    count: int


class WebhookResponse(BaseModel):
    """Acknowledgement of a provider webhook. ``recorded`` is empty when nothing matched."""

    received: bool = True
    recorded: list[TrackEventResponse] = Field(default_factory=list)


# ============================================================================
# Trajectory & operations
# ============================================================================


class TrajectoryResponse(BaseModel):
    send_id: str
    events: list[NewsletterEvent]


class HealthResponse(BaseModel):
    status: str
    version: str
