"""Database repositories for SendGate entities."""

from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from sendgate.db.tables import (
    ONE_TIME_EVENT_COLUMNS,
    ONE_TIME_EVENT_WHERE,
    NewsletterEventTable,
    NewsletterSendTable,
    NewsletterStatsTable,
    TaskTable,
)
from sendgate.errors import DuplicateKeyError
from sendgate.models import (
    CampaignStatus,
    EventType,
    ExportCollection,
    NewsletterEvent,
    NewsletterSend,
    NewsletterStats,
    SendStatus,
    Task,
    TaskStatus,
    normalize_status,
)
from sendgate.utils.time import utc_now

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _dialect_insert(session: AsyncSession, table):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect = session.get_bind().dialect.name
    try:
        return _DIALECT_INSERTS[dialect](table)
    except KeyError:
        raise RuntimeError(f"Unsupported database dialect: {dialect}") from None


class TaskRepository:
    """Repository for task operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(
        self,
        tenant_id: str,
        idempotency_key: str,
        task_name: str,
        payload: dict[str, Any],
        max_attempts: int = 3,
        scheduled_for: datetime | None = None,
        related_type: str | None = None,
        related_id: str | None = None,
    ) -> Task:
        """
        Insert a pending task.

        A single INSERT ... ON CONFLICT DO NOTHING on the idempotency key, so
        two racing creators never both insert. Raises DuplicateKeyError when
        the key is already taken.
        """
        now = utc_now()
        values = {
            "id": str(uuid4()),
            "tenant_id": tenant_id,
            "idempotency_key": idempotency_key,
            "task_name": task_name,
            "payload": payload,
            "status": TaskStatus.PENDING.value,
            "attempt_count": 0,
            "max_attempts": max_attempts,
            "scheduled_for": scheduled_for,
            "related_type": related_type,
            "related_id": related_id,
            "created_at": now,
            "updated_at": now,
        }

        stmt = (
            _dialect_insert(self.session, TaskTable)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(TaskTable.id)
        )
        result = await self.session.execute(stmt)
        inserted_id = result.scalar_one_or_none()
        if inserted_id is None:
            raise DuplicateKeyError(idempotency_key)

        task = await self.get(tenant_id, inserted_id)
        if task is None:
            raise RuntimeError(f"Inserted task {inserted_id} could not be read back")
        return task

    async def get(self, tenant_id: str, task_id: str) -> Task | None:
        """Get a task by ID."""
        result = await self.session.execute(
            select(TaskTable)
            .where(
                TaskTable.tenant_id == tenant_id,
                TaskTable.id == task_id,
            )
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def get_by_idempotency_key(self, idempotency_key: str) -> Task | None:
        """Get task by idempotency key (keys are unique store-wide)."""
        result = await self.session.execute(
            select(TaskTable)
            .where(TaskTable.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def compare_and_set_status(
        self,
        tenant_id: str,
        task_id: str,
        expected: TaskStatus,
        new_status: TaskStatus,
        values: dict[str, Any] | None = None,
        increment_attempt: bool = False,
    ) -> bool:
        """
        Set status only if the row currently holds ``expected``.

        Returns True if this call won the update.
        """
        now = utc_now()
        update_values: dict[str, Any] = {
            "status": new_status.value,
            "updated_at": now,
        }
        if values:
            update_values.update(values)
        if increment_attempt:
            update_values["attempt_count"] = TaskTable.attempt_count + 1
            update_values["last_attempt_at"] = now

        result = await self.session.execute(
            update(TaskTable)
            .where(
                TaskTable.tenant_id == tenant_id,
                TaskTable.id == task_id,
                TaskTable.status == expected.value,
            )
            .values(**update_values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_by_status(
        self,
        tenant_id: str,
        status: TaskStatus,
        limit: int = 50,
    ) -> list[Task]:
        """List a tenant's tasks in one status, oldest first."""
        result = await self.session.execute(
            select(TaskTable)
            .where(
                TaskTable.tenant_id == tenant_id,
                TaskTable.status == status.value,
            )
            .order_by(TaskTable.created_at.asc(), TaskTable.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def list_stalled(
        self,
        statuses: set[TaskStatus],
        updated_before: datetime,
        limit: int,
    ) -> list[Task]:
        """List active tasks (any tenant) whose last update is older than the cutoff."""
        result = await self.session.execute(
            select(TaskTable)
            .where(
                TaskTable.status.in_([s.value for s in statuses]),
                TaskTable.updated_at < updated_before,
            )
            .order_by(TaskTable.updated_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def count_by_status(self, tenant_id: str) -> dict[str, int]:
        """Count a tenant's tasks per status."""
        result = await self.session.execute(
            select(TaskTable.status, func.count())
            .where(TaskTable.tenant_id == tenant_id)
            .group_by(TaskTable.status)
        )
        return {status: count for status, count in result.all()}

    def _row_to_model(self, row: TaskTable) -> Task:
        """Convert database row to model."""
        return Task(
            id=row.id,
            tenant_id=row.tenant_id,
            idempotency_key=row.idempotency_key,
            task_name=row.task_name,
            payload=row.payload or {},
            status=normalize_status(row.status),
            run_id=row.run_id,
            attempt_count=row.attempt_count,
            max_attempts=row.max_attempts,
            last_attempt_at=row.last_attempt_at,
            scheduled_for=row.scheduled_for,
            output=row.output,
            error_message=row.error_message,
            error_code=row.error_code,
            related_type=row.related_type,
            related_id=row.related_id,
            triggered_at=row.triggered_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


def _send_to_model(row: NewsletterSendTable) -> NewsletterSend:
    return NewsletterSend(
        seq=row.seq,
        send_id=row.send_id,
        tenant_id=row.tenant_id,
        newsletter_id=row.newsletter_id,
        group_uuid=row.group_uuid,
        recipient_email=row.recipient_email,
        recipient_id=row.recipient_id,
        recipient_name=row.recipient_name,
        provider_message_id=row.provider_message_id,
        status=SendStatus(row.status),
        error=row.error,
        sent_at=row.sent_at,
        delivered_at=row.delivered_at,
        first_opened_at=row.first_opened_at,
        last_opened_at=row.last_opened_at,
        first_clicked_at=row.first_clicked_at,
        open_count=row.open_count,
        click_count=row.click_count,
        created_at=row.created_at,
    )


def _event_to_model(row: NewsletterEventTable) -> NewsletterEvent:
    return NewsletterEvent(
        seq=row.seq,
        event_id=row.event_id,
        tenant_id=row.tenant_id,
        newsletter_id=row.newsletter_id,
        send_id=row.send_id,
        recipient_email=row.recipient_email,
        event_type=EventType(row.event_type),
        provider_message_id=row.provider_message_id,
        metadata=row.event_metadata,
        occurred_at=row.occurred_at,
    )


def _stats_to_model(row: NewsletterStatsTable) -> NewsletterStats:
    return NewsletterStats(
        seq=row.seq,
        stats_id=row.stats_id,
        tenant_id=row.tenant_id,
        newsletter_id=row.newsletter_id,
        status=CampaignStatus(row.status),
        total_recipients=row.total_recipients,
        queued=row.queued,
        sent=row.sent,
        delivered=row.delivered,
        opened=row.opened,
        unique_opens=row.unique_opens,
        clicked=row.clicked,
        unique_clicks=row.unique_clicks,
        bounced=row.bounced,
        complained=row.complained,
        failed=row.failed,
        unsubscribed=row.unsubscribed,
        started_at=row.started_at,
        completed_at=row.completed_at,
        last_event_at=row.last_event_at,
        created_at=row.created_at,
    )


class SendRepository:
    """Repository for newsletter sends."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        tenant_id: str,
        newsletter_id: str,
        group_uuid: str,
        recipient_email: str,
        status: SendStatus,
        recipient_id: str | None = None,
        recipient_name: str | None = None,
        provider_message_id: str | None = None,
        error: str | None = None,
    ) -> NewsletterSend | None:
        """
        Insert a send unless the recipient is already tracked for this newsletter.

        Returns None when a concurrent writer got there first.
        """
        now = utc_now()
        send_id = str(uuid4())
        stmt = (
            _dialect_insert(self.session, NewsletterSendTable)
            .values(
                send_id=send_id,
                tenant_id=tenant_id,
                newsletter_id=newsletter_id,
                group_uuid=group_uuid,
                recipient_email=recipient_email,
                recipient_id=recipient_id,
                recipient_name=recipient_name,
                provider_message_id=provider_message_id,
                status=status.value,
                error=error,
                sent_at=now if status == SendStatus.SENT else None,
                open_count=0,
                click_count=0,
                created_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["tenant_id", "newsletter_id", "recipient_email"]
            )
            .returning(NewsletterSendTable.send_id)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            return None
        return await self.get(tenant_id, send_id)

    async def get(self, tenant_id: str, send_id: str) -> NewsletterSend | None:
        result = await self.session.execute(
            select(NewsletterSendTable)
            .where(
                NewsletterSendTable.tenant_id == tenant_id,
                NewsletterSendTable.send_id == send_id,
            )
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _send_to_model(row) if row else None

    async def get_by_recipient(
        self, tenant_id: str, newsletter_id: str, recipient_email: str
    ) -> NewsletterSend | None:
        result = await self.session.execute(
            select(NewsletterSendTable)
            .where(
                NewsletterSendTable.tenant_id == tenant_id,
                NewsletterSendTable.newsletter_id == newsletter_id,
                NewsletterSendTable.recipient_email == recipient_email,
            )
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _send_to_model(row) if row else None

    async def get_by_provider_message_id(
        self, tenant_id: str, provider_message_id: str
    ) -> NewsletterSend | None:
        result = await self.session.execute(
            select(NewsletterSendTable)
            .where(
                NewsletterSendTable.tenant_id == tenant_id,
                NewsletterSendTable.provider_message_id == provider_message_id,
            )
            .order_by(NewsletterSendTable.seq.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _send_to_model(row) if row else None

    async def latest_by_recipient_email(
        self, tenant_id: str, recipient_email: str
    ) -> NewsletterSend | None:
        """Most recent send to an address across all of the tenant's newsletters."""
        result = await self.session.execute(
            select(NewsletterSendTable)
            .where(
                NewsletterSendTable.tenant_id == tenant_id,
                NewsletterSendTable.recipient_email == recipient_email,
            )
            .order_by(NewsletterSendTable.seq.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _send_to_model(row) if row else None

    async def list_for_newsletter(
        self,
        tenant_id: str,
        newsletter_id: str,
        status: SendStatus | None = None,
        limit: int = 50,
    ) -> list[NewsletterSend]:
        """Sends of one newsletter, newest first."""
        query = select(NewsletterSendTable).where(
            NewsletterSendTable.tenant_id == tenant_id,
            NewsletterSendTable.newsletter_id == newsletter_id,
        )
        if status is not None:
            query = query.where(NewsletterSendTable.status == status.value)
        result = await self.session.execute(
            query.order_by(NewsletterSendTable.seq.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [_send_to_model(r) for r in result.scalars().all()]

    async def update(self, tenant_id: str, send_id: str, values: dict[str, Any]) -> None:
        """Patch a send. ``seq`` is never part of the patch."""
        if not values:
            return
        await self.session.execute(
            update(NewsletterSendTable)
            .where(
                NewsletterSendTable.tenant_id == tenant_id,
                NewsletterSendTable.send_id == send_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )


class EventRepository:
    """Repository for newsletter events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        tenant_id: str,
        newsletter_id: str,
        recipient_email: str,
        event_type: EventType,
        occurred_at: datetime,
        send_id: str | None = None,
        provider_message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> NewsletterEvent | None:
        """
        Append an event.

        One-time event types are guarded by a partial unique index; returns
        None when an identical one-time event already exists.
        """
        table = NewsletterEventTable.__table__
        event_id = str(uuid4())
        stmt = _dialect_insert(self.session, table).values(
            {
                "event_id": event_id,
                "tenant_id": tenant_id,
                "newsletter_id": newsletter_id,
                "send_id": send_id,
                "recipient_email": recipient_email,
                "event_type": event_type.value,
                "provider_message_id": provider_message_id,
                "metadata": metadata,
                "occurred_at": occurred_at,
            }
        )
        if event_type.is_one_time():
            stmt = stmt.on_conflict_do_nothing(
                index_elements=ONE_TIME_EVENT_COLUMNS,
                index_where=ONE_TIME_EVENT_WHERE,
            )
        result = await self.session.execute(stmt.returning(table.c.event_id))
        if result.scalar_one_or_none() is None:
            return None
        return await self.get(tenant_id, event_id)

    async def get(self, tenant_id: str, event_id: str) -> NewsletterEvent | None:
        result = await self.session.execute(
            select(NewsletterEventTable).where(
                NewsletterEventTable.tenant_id == tenant_id,
                NewsletterEventTable.event_id == event_id,
            )
        )
        row = result.scalar_one_or_none()
        return _event_to_model(row) if row else None

    async def find_existing(
        self,
        tenant_id: str,
        newsletter_id: str,
        recipient_email: str,
        event_type: EventType,
        provider_message_id: str | None = None,
    ) -> NewsletterEvent | None:
        """Find an already-recorded event, by provider message first, then by recipient."""
        if provider_message_id:
            result = await self.session.execute(
                select(NewsletterEventTable)
                .where(
                    NewsletterEventTable.tenant_id == tenant_id,
                    NewsletterEventTable.provider_message_id == provider_message_id,
                    NewsletterEventTable.event_type == event_type.value,
                )
                .order_by(NewsletterEventTable.seq.asc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row:
                return _event_to_model(row)

        result = await self.session.execute(
            select(NewsletterEventTable)
            .where(
                NewsletterEventTable.tenant_id == tenant_id,
                NewsletterEventTable.newsletter_id == newsletter_id,
                NewsletterEventTable.recipient_email == recipient_email,
                NewsletterEventTable.event_type == event_type.value,
            )
            .order_by(NewsletterEventTable.seq.asc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _event_to_model(row) if row else None

    async def list_for_newsletter(
        self,
        tenant_id: str,
        newsletter_id: str,
        event_type: EventType | None = None,
        limit: int = 50,
    ) -> list[NewsletterEvent]:
        """Live event feed of one newsletter, newest first."""
        query = select(NewsletterEventTable).where(
            NewsletterEventTable.tenant_id == tenant_id,
            NewsletterEventTable.newsletter_id == newsletter_id,
        )
        if event_type is not None:
            query = query.where(NewsletterEventTable.event_type == event_type.value)
        result = await self.session.execute(
            query.order_by(NewsletterEventTable.seq.desc()).limit(limit)
        )
        return [_event_to_model(r) for r in result.scalars().all()]

    async def list_for_send(self, tenant_id: str, send_id: str) -> list[NewsletterEvent]:
        """Events of one send by occurrence time, insertion order breaking ties."""
        result = await self.session.execute(
            select(NewsletterEventTable)
            .where(
                NewsletterEventTable.tenant_id == tenant_id,
                NewsletterEventTable.send_id == send_id,
            )
            .order_by(
                NewsletterEventTable.occurred_at.asc(),
                NewsletterEventTable.seq.asc(),
            )
        )
        return [_event_to_model(r) for r in result.scalars().all()]


class StatsRepository:
    """Repository for aggregated newsletter stats."""

    COUNTERS = (
        "queued",
        "sent",
        "delivered",
        "opened",
        "unique_opens",
        "clicked",
        "unique_clicks",
        "bounced",
        "complained",
        "failed",
        "unsubscribed",
    )

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: str, newsletter_id: str) -> NewsletterStats | None:
        result = await self.session.execute(
            select(NewsletterStatsTable)
            .where(
                NewsletterStatsTable.tenant_id == tenant_id,
                NewsletterStatsTable.newsletter_id == newsletter_id,
            )
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _stats_to_model(row) if row else None

    async def create(
        self, tenant_id: str, newsletter_id: str, total_recipients: int
    ) -> NewsletterStats | None:
        """Insert the stats row; None if the newsletter is already tracked."""
        now = utc_now()
        stmt = (
            _dialect_insert(self.session, NewsletterStatsTable)
            .values(
                stats_id=str(uuid4()),
                tenant_id=tenant_id,
                newsletter_id=newsletter_id,
                status=CampaignStatus.SENDING.value,
                total_recipients=total_recipients,
                queued=total_recipients,
                started_at=now,
                created_at=now,
                **{c: 0 for c in self.COUNTERS if c != "queued"},
            )
            .on_conflict_do_nothing(index_elements=["tenant_id", "newsletter_id"])
            .returning(NewsletterStatsTable.stats_id)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            return None
        return await self.get(tenant_id, newsletter_id)

    async def list_for_tenant(self, tenant_id: str) -> list[NewsletterStats]:
        """Every tracked newsletter of a tenant, in the order tracking started."""
        result = await self.session.execute(
            select(NewsletterStatsTable)
            .where(NewsletterStatsTable.tenant_id == tenant_id)
            .order_by(NewsletterStatsTable.seq.asc())
            .execution_options(populate_existing=True)
        )
        return [_stats_to_model(r) for r in result.scalars().all()]

    async def update(self, tenant_id: str, newsletter_id: str, values: dict[str, Any]) -> None:
        await self.session.execute(
            update(NewsletterStatsTable)
            .where(
                NewsletterStatsTable.tenant_id == tenant_id,
                NewsletterStatsTable.newsletter_id == newsletter_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def increment(
        self,
        tenant_id: str,
        newsletter_id: str,
        counters: dict[str, int],
        decrement_queued: bool = False,
    ) -> None:
        """Atomically bump counters in SQL; queued never drops below zero."""
        values: dict[str, Any] = {"last_event_at": utc_now()}
        for name, amount in counters.items():
            if name not in self.COUNTERS:
                raise ValueError(f"Unknown stats counter: {name}")
            column = getattr(NewsletterStatsTable, name)
            values[name] = column + amount
        if decrement_queued:
            values["queued"] = case(
                (NewsletterStatsTable.queued > 0, NewsletterStatsTable.queued - 1),
                else_=0,
            )
        await self.update(tenant_id, newsletter_id, values)


_EXPORT_SOURCES: dict[ExportCollection, tuple[Any, Callable[[Any], Any]]] = {
    ExportCollection.SENDS: (NewsletterSendTable, _send_to_model),
    ExportCollection.EVENTS: (NewsletterEventTable, _event_to_model),
    ExportCollection.STATS: (NewsletterStatsTable, _stats_to_model),
}


class ExportRepository:
    """Keyset reads over the exportable collections."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def page_after(
        self,
        collection: ExportCollection,
        tenant_id: str,
        after_seq: int,
        limit: int,
    ) -> list[Any]:
        """Return up to ``limit`` records with ``seq > after_seq``, ascending."""
        table, to_model = _EXPORT_SOURCES[collection]
        result = await self.session.execute(
            select(table)
            .where(table.tenant_id == tenant_id, table.seq > after_seq)
            .order_by(table.seq.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [to_model(r) for r in result.scalars().all()]
