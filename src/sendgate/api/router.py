"""REST API router."""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sendgate import __version__
from sendgate.api.deps import get_db_session, get_tenant_id
from sendgate.api.schemas import (
    CompleteNewsletterRequest,
    CreateTaskRequest,
    CreateTaskResponse,
    HealthResponse,
    InitNewsletterRequest,
    ListEventsResponse,
    ListNewslettersResponse,
    ListSendsResponse,
    ListTasksResponse,
    TrackEventRequest,
    TrackEventResponse,
    TrackSendRequest,
    TrackSendResponse,
    TrajectoryResponse,
    TransitionRequest,
    WebhookResponse,
)
from sendgate.engine import (
    ConflictError,
    ExportService,
    IllegalStateTransition,
    InvalidCursorError,
    InvalidTransitionError,
    NewsletterNotFound,
    TaskEngine,
    TaskNotFound,
    TrackingEngine,
)
from sendgate.models import (
    EmailProvider,
    EventType,
    ExportCollection,
    ExportPage,
    NewsletterStats,
    SendStatus,
    StatusBreakdown,
    Task,
    TaskStatus,
)
from sendgate.observability.metrics import metrics

router = APIRouter(prefix="/v1")


# ============================================================================
# Health & Metrics
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.get("/metrics")
async def get_metrics(prefix: Optional[str] = Query(None)):
    """In-process counters, gauges and histograms."""
    return metrics.snapshot(prefix)


# ============================================================================
# Tasks
# ============================================================================


@router.post("/tasks", response_model=CreateTaskResponse)
async def create_task(
    request: CreateTaskRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Create a task, or return the one already holding the idempotency key."""
    engine = TaskEngine(session)

    try:
        task, created = await engine.create_task(
            tenant_id=tenant_id,
            idempotency_key=request.idempotency_key,
            payload=request.payload,
            task_name=request.task_name,
            max_attempts=request.max_attempts,
            scheduled_for=request.scheduled_for,
            related_type=request.related_type,
            related_id=request.related_id,
        )
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)

    return CreateTaskResponse(task=task, created=created)


@router.get("/tasks/counts")
async def task_status_counts(
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
) -> dict[str, int]:
    """Number of tasks per status."""
    return await TaskEngine(session).status_counts(tenant_id)


@router.get("/tasks/{task_id}", response_model=Task)
async def get_task(
    task_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Get a task by ID."""
    engine = TaskEngine(session)

    try:
        return await engine.get(tenant_id, task_id)
    except TaskNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/tasks", response_model=ListTasksResponse)
async def list_tasks(
    status: TaskStatus = Query(...),
    limit: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """List tasks in one status, oldest first."""
    engine = TaskEngine(session)
    tasks = await engine.list_by_status(tenant_id, status, limit)
    return ListTasksResponse(tasks=tasks, count=len(tasks))


@router.post("/tasks/{task_id}/transition", response_model=Task)
async def transition_task(
    task_id: str,
    request: TransitionRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Compare-and-swap a task's status."""
    engine = TaskEngine(session)

    try:
        return await engine.transition(
            tenant_id=tenant_id,
            task_id=task_id,
            from_expected=request.from_status,
            to=request.to_status,
            run_id=request.run_id,
            output=request.output,
            error_message=request.error_message,
            error_code=request.error_code,
        )
    except IllegalStateTransition as e:
        raise HTTPException(status_code=400, detail=e.message)
    except TaskNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=409,
            detail={
                "message": e.message,
                "expected_status": e.expected_status,
                "current_status": e.current_status,
            },
        )


# ============================================================================
# Export
# ============================================================================


@router.get("/export/{collection}", response_model=ExportPage)
async def export_collection(
    collection: ExportCollection,
    cursor: Optional[str] = Query(None),
    limit: Optional[float] = Query(None),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """
    Next page of sends, events or stats.

    Any numeric ``limit`` is accepted and clamped. Pass ``next_cursor`` back
    until ``is_done`` is true.
    """
    service = ExportService(session)

    try:
        return await service.export_page(tenant_id, collection, cursor=cursor, limit=limit)
    except InvalidCursorError as e:
        raise HTTPException(status_code=400, detail=e.message)


# ============================================================================
# Trajectory
# ============================================================================


@router.get("/sends/{send_id}/trajectory", response_model=TrajectoryResponse)
async def send_trajectory(
    send_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Chronological events of one send. Unknown sends return an empty list."""
    events = await TrackingEngine(session).get_trajectory(tenant_id, send_id)
    return TrajectoryResponse(send_id=send_id, events=events)


# ============================================================================
# Newsletter tracking
# ============================================================================


@router.post("/newsletters/{newsletter_id}/init", response_model=NewsletterStats)
async def init_newsletter(
    newsletter_id: str,
    request: InitNewsletterRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Start (or restart) tracking a campaign."""
    return await TrackingEngine(session).init_newsletter(
        tenant_id, newsletter_id, request.total_recipients
    )


@router.post("/newsletters/{newsletter_id}/sends", response_model=TrackSendResponse)
async def track_send(
    newsletter_id: str,
    request: TrackSendRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Record one recipient's dispatch."""
    send, created = await TrackingEngine(session).record_send(
        tenant_id=tenant_id,
        newsletter_id=newsletter_id,
        group_uuid=request.group_uuid,
        recipient_email=request.recipient_email,
        status=request.status,
        recipient_id=request.recipient_id,
        recipient_name=request.recipient_name,
        provider_message_id=request.provider_message_id,
        error=request.error,
    )
    return TrackSendResponse(send_id=send.send_id, created=created)


@router.post("/newsletters/{newsletter_id}/events", response_model=TrackEventResponse)
async def track_event(
    newsletter_id: str,
    request: TrackEventRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Record a provider event."""
    event, created = await TrackingEngine(session).record_event(
        tenant_id=tenant_id,
        newsletter_id=newsletter_id,
        recipient_email=request.recipient_email,
        event_type=request.event_type,
        provider_message_id=request.provider_message_id,
        metadata=request.metadata,
        occurred_at=request.occurred_at,
    )
    return TrackEventResponse(event_id=event.event_id, created=created)


@router.post("/newsletters/{newsletter_id}/complete", response_model=NewsletterStats)
async def complete_newsletter(
    newsletter_id: str,
    request: CompleteNewsletterRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Mark a campaign completed."""
    try:
        return await TrackingEngine(session).complete_newsletter(
            tenant_id, newsletter_id, request.sent_count, request.failed_count
        )
    except NewsletterNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/newsletters/{newsletter_id}/stats", response_model=NewsletterStats)
async def newsletter_stats(
    newsletter_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        return await TrackingEngine(session).get_stats(tenant_id, newsletter_id)
    except NewsletterNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/newsletters/{newsletter_id}/breakdown", response_model=StatusBreakdown)
async def newsletter_breakdown(
    newsletter_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Status counts and rates for charting."""
    try:
        return await TrackingEngine(session).status_breakdown(tenant_id, newsletter_id)
    except NewsletterNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/newsletters", response_model=ListNewslettersResponse)
async def list_newsletters(
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Stats of every tracked newsletter."""
    newsletters = await TrackingEngine(session).list_tenant_stats(tenant_id)
    return ListNewslettersResponse(newsletters=newsletters, count=len(newsletters))


@router.get("/newsletters/{newsletter_id}/sends", response_model=ListSendsResponse)
async def list_newsletter_sends(
    newsletter_id: str,
    status: Optional[SendStatus] = Query(None),
    limit: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Sends of one newsletter, newest first."""
    sends = await TrackingEngine(session).list_sends(tenant_id, newsletter_id, status, limit)
    return ListSendsResponse(sends=sends, count=len(sends))


@router.get("/newsletters/{newsletter_id}/events", response_model=ListEventsResponse)
async def list_newsletter_events(
    newsletter_id: str,
    event_type: Optional[EventType] = Query(None),
    limit: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """Live event feed of one newsletter, newest first."""
    events = await TrackingEngine(session).list_events(tenant_id, newsletter_id, event_type, limit)
    return ListEventsResponse(events=events, count=len(events))


# ============================================================================
# Provider webhooks
# ============================================================================


@router.post("/webhooks/{provider}", response_model=WebhookResponse)
async def provider_webhook(
    provider: EmailProvider,
    payload: dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: str = Depends(get_tenant_id),
):
    """
    Ingest a Resend, Postmark or AhaSend webhook.

    Always acknowledged so the provider does not retry events that are
    deliberately ignored.
    """
    recorded = await TrackingEngine(session).ingest_provider_event(tenant_id, provider, payload)
    return WebhookResponse(
        recorded=[
            TrackEventResponse(event_id=event.event_id, created=created)
            for event, created in recorded
        ]
    )
