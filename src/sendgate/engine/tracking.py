"""Newsletter tracking - send/event ingestion, stats projection, trajectories."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sendgate.config import Settings, settings as default_settings
from sendgate.db.repositories import EventRepository, SendRepository, StatsRepository
from sendgate.engine.webhooks import normalize_provider_event
from sendgate.errors import NewsletterNotFound
from sendgate.models import (
    CampaignStatus,
    EmailProvider,
    EventType,
    NewsletterEvent,
    NewsletterSend,
    NewsletterStats,
    SendStatus,
    StatusBreakdown,
)
from sendgate.observability.metrics import metrics
from sendgate.utils.time import utc_now

logger = logging.getLogger(__name__)

# Event recorded alongside a freshly tracked send
_SEND_STATUS_EVENTS: dict[SendStatus, EventType] = {
    SendStatus.SENT: EventType.SENT,
    SendStatus.FAILED: EventType.FAILED,
}

# Stats counter bumped for each event type
_EVENT_COUNTERS: dict[EventType, str] = {
    EventType.DELIVERED: "delivered",
    EventType.OPENED: "opened",
    EventType.CLICKED: "clicked",
    EventType.BOUNCED: "bounced",
    EventType.COMPLAINED: "complained",
    EventType.UNSUBSCRIBED: "unsubscribed",
    EventType.FAILED: "failed",
}


def _rate(numerator: int, denominator: int) -> str:
    if denominator <= 0:
        return "0"
    return f"{numerator / denominator * 100:.1f}"


class TrackingEngine:
    """Records newsletter sends and provider events into the exportable collections."""

    def __init__(self, session: AsyncSession, config: Optional[Settings] = None):
        self.session = session
        self.config = config or default_settings
        self.sends = SendRepository(session)
        self.events = EventRepository(session)
        self.stats = StatsRepository(session)

    async def init_newsletter(
        self,
        tenant_id: str,
        newsletter_id: str,
        total_recipients: int,
    ) -> NewsletterStats:
        """
        Start tracking a campaign.

        Re-initializing resets every counter so a re-send behaves like a
        fresh send. The stats row keeps its export position.
        """
        existing = await self.stats.get(tenant_id, newsletter_id)
        if existing is None:
            created = await self.stats.create(tenant_id, newsletter_id, total_recipients)
            if created is not None:
                logger.info(
                    f"Tracking newsletter {newsletter_id} ({total_recipients} recipients)"
                )
                return created
            # A concurrent init created the row first; reset it like a re-send

        now = utc_now()
        values: dict[str, Any] = {c: 0 for c in StatsRepository.COUNTERS}
        values.update(
            status=CampaignStatus.SENDING.value,
            total_recipients=total_recipients,
            queued=total_recipients,
            started_at=now,
            completed_at=None,
            last_event_at=now,
        )
        await self.stats.update(tenant_id, newsletter_id, values)
        logger.info(f"Re-initialized tracking for newsletter {newsletter_id}")
        return await self.stats.get(tenant_id, newsletter_id)

    async def record_send(
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
    ) -> tuple[NewsletterSend, bool]:
        """
        Track one recipient's email. Idempotent per newsletter and recipient.

        Returns ``(send, created)``. A retry only fills in a provider message
        id the first attempt did not have.
        """
        existing = await self.sends.get_by_recipient(tenant_id, newsletter_id, recipient_email)
        if existing is None:
            send = await self.sends.create(
                tenant_id=tenant_id,
                newsletter_id=newsletter_id,
                group_uuid=group_uuid,
                recipient_email=recipient_email,
                status=status,
                recipient_id=recipient_id,
                recipient_name=recipient_name,
                provider_message_id=provider_message_id,
                error=error,
            )
            if send is not None:
                await self._record_dispatch(send, status)
                return send, True
            # Lost the insert to a concurrent retry of the same send
            existing = await self.sends.get_by_recipient(
                tenant_id, newsletter_id, recipient_email
            )

        if provider_message_id and not existing.provider_message_id:
            await self.sends.update(
                tenant_id, existing.send_id, {"provider_message_id": provider_message_id}
            )
            existing = await self.sends.get(tenant_id, existing.send_id)
        return existing, False

    async def _record_dispatch(self, send: NewsletterSend, status: SendStatus) -> None:
        """Dispatch event and stats counters for a freshly tracked send."""
        await self.events.create(
            tenant_id=send.tenant_id,
            newsletter_id=send.newsletter_id,
            send_id=send.send_id,
            recipient_email=send.recipient_email,
            event_type=_SEND_STATUS_EVENTS.get(status, EventType.QUEUED),
            provider_message_id=send.provider_message_id,
            occurred_at=send.created_at,
        )

        if status in (SendStatus.SENT, SendStatus.FAILED):
            await self.stats.increment(
                send.tenant_id,
                send.newsletter_id,
                {status.value: 1},
                decrement_queued=True,
            )

        metrics.inc_counter("tracking.sends.recorded")

    async def record_event(
        self,
        tenant_id: str,
        newsletter_id: str,
        recipient_email: str,
        event_type: EventType,
        provider_message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> tuple[NewsletterEvent, bool]:
        """
        Record a provider event and project it onto the send and the stats.

        One-time events (delivered, bounced, ...) are deduplicated; opens and
        clicks may repeat. Returns ``(event, created)``.
        """
        if event_type.is_one_time():
            existing = await self.events.find_existing(
                tenant_id,
                newsletter_id,
                recipient_email,
                event_type,
                provider_message_id,
            )
            if existing:
                metrics.inc_counter("tracking.events.deduplicated")
                return existing, False

        send = None
        if provider_message_id:
            send = await self.sends.get_by_provider_message_id(tenant_id, provider_message_id)
        if send is None:
            send = await self.sends.get_by_recipient(tenant_id, newsletter_id, recipient_email)

        event = await self.events.create(
            tenant_id=tenant_id,
            newsletter_id=newsletter_id,
            send_id=send.send_id if send else None,
            recipient_email=recipient_email,
            event_type=event_type,
            provider_message_id=provider_message_id,
            metadata=metadata,
            occurred_at=occurred_at or utc_now(),
        )
        if event is None:
            # A concurrent delivery of the same one-time event won
            metrics.inc_counter("tracking.events.deduplicated")
            existing = await self.events.find_existing(
                tenant_id, newsletter_id, recipient_email, event_type
            )
            return existing, False

        if send:
            await self._project_onto_send(tenant_id, send, event, metadata)
        await self._project_onto_stats(tenant_id, newsletter_id, send, event_type)

        metrics.inc_counter(f"tracking.events.{event_type.value}")
        return event, True

    async def ingest_provider_event(
        self,
        tenant_id: str,
        provider: EmailProvider,
        payload: dict[str, Any],
    ) -> list[tuple[NewsletterEvent, bool]]:
        """
        Record a raw provider webhook.

        The send is found by provider message id, falling back to the most
        recent send to the recipient. Untracked event types and unmatched
        sends record nothing. Returns the ``(event, created)`` pairs recorded.
        """
        parsed = normalize_provider_event(provider, payload)
        if parsed is None:
            metrics.inc_counter(f"tracking.webhooks.{provider.value}.ignored")
            return []

        send = None
        if parsed.provider_message_id:
            send = await self.sends.get_by_provider_message_id(
                tenant_id, parsed.provider_message_id
            )
        if send is None:
            send = await self.sends.latest_by_recipient_email(tenant_id, parsed.recipient_email)
        if send is None:
            logger.info(
                f"No tracked send for {provider.value} message "
                f"{parsed.provider_message_id} ({parsed.recipient_email})"
            )
            metrics.inc_counter(f"tracking.webhooks.{provider.value}.unmatched")
            return []

        recorded = []
        if parsed.implies_sent:
            recorded.append(
                await self.record_event(
                    tenant_id,
                    send.newsletter_id,
                    parsed.recipient_email,
                    EventType.SENT,
                    provider_message_id=parsed.provider_message_id,
                    metadata={**(parsed.metadata or {}), "synthetic": True},
                )
            )
        recorded.append(
            await self.record_event(
                tenant_id,
                send.newsletter_id,
                parsed.recipient_email,
                parsed.event_type,
                provider_message_id=parsed.provider_message_id,
                metadata=parsed.metadata,
            )
        )
        metrics.inc_counter(f"tracking.webhooks.{provider.value}.recorded")
        return recorded

    async def _project_onto_send(
        self,
        tenant_id: str,
        send: NewsletterSend,
        event: NewsletterEvent,
        metadata: dict[str, Any] | None,
    ) -> None:
        at = event.occurred_at
        updates: dict[str, Any] = {}

        if event.event_type == EventType.DELIVERED:
            updates["status"] = SendStatus.DELIVERED.value
            updates["delivered_at"] = at
        elif event.event_type == EventType.OPENED:
            # A click already implies an open; keep the stronger status
            if send.status != SendStatus.CLICKED:
                updates["status"] = SendStatus.OPENED.value
            updates["open_count"] = send.open_count + 1
            if not send.first_opened_at:
                updates["first_opened_at"] = at
            updates["last_opened_at"] = at
        elif event.event_type == EventType.CLICKED:
            updates["status"] = SendStatus.CLICKED.value
            updates["click_count"] = send.click_count + 1
            if not send.first_clicked_at:
                updates["first_clicked_at"] = at
            if not send.first_opened_at:
                updates["first_opened_at"] = at
                updates["last_opened_at"] = at
                updates["open_count"] = send.open_count + 1
        elif event.event_type == EventType.BOUNCED:
            updates["status"] = SendStatus.BOUNCED.value
        elif event.event_type == EventType.COMPLAINED:
            updates["status"] = SendStatus.COMPLAINED.value
        elif event.event_type == EventType.FAILED:
            updates["status"] = SendStatus.FAILED.value
            updates["error"] = (metadata or {}).get("error") or "Unknown error"
        elif event.event_type == EventType.SENT:
            updates["status"] = SendStatus.SENT.value
            if not send.sent_at:
                updates["sent_at"] = at

        await self.sends.update(tenant_id, send.send_id, updates)

    async def _project_onto_stats(
        self,
        tenant_id: str,
        newsletter_id: str,
        send: NewsletterSend | None,
        event_type: EventType,
    ) -> None:
        if await self.stats.get(tenant_id, newsletter_id) is None:
            return

        counters: dict[str, int] = {}
        counter = _EVENT_COUNTERS.get(event_type)
        if counter:
            counters[counter] = 1

        first_open = send is not None and not send.first_opened_at
        if event_type == EventType.OPENED and first_open:
            counters["unique_opens"] = 1
        elif event_type == EventType.CLICKED:
            if send is not None and not send.first_clicked_at:
                counters["unique_clicks"] = 1
            # First interaction via a click also counts as an open
            if first_open:
                counters["opened"] = counters.get("opened", 0) + 1
                counters["unique_opens"] = 1

        await self.stats.increment(tenant_id, newsletter_id, counters)

    async def complete_newsletter(
        self,
        tenant_id: str,
        newsletter_id: str,
        sent_count: int,
        failed_count: int,
    ) -> NewsletterStats:
        """Mark a campaign completed with its final sent/failed totals."""
        if await self.stats.get(tenant_id, newsletter_id) is None:
            raise NewsletterNotFound(newsletter_id)
        now = utc_now()
        await self.stats.update(
            tenant_id,
            newsletter_id,
            {
                "status": CampaignStatus.COMPLETED.value,
                "sent": sent_count,
                "failed": failed_count,
                "queued": 0,
                "completed_at": now,
                "last_event_at": now,
            },
        )
        logger.info(
            f"Newsletter {newsletter_id} completed (sent={sent_count}, failed={failed_count})"
        )
        return await self.stats.get(tenant_id, newsletter_id)

    async def get_stats(self, tenant_id: str, newsletter_id: str) -> NewsletterStats:
        stats = await self.stats.get(tenant_id, newsletter_id)
        if stats is None:
            raise NewsletterNotFound(newsletter_id)
        return stats

    async def list_tenant_stats(self, tenant_id: str) -> list[NewsletterStats]:
        """Stats of every newsletter the tenant tracks."""
        return await self.stats.list_for_tenant(tenant_id)

    def _list_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.config.default_list_limit
        return max(1, min(limit, self.config.max_list_limit))

    async def list_sends(
        self,
        tenant_id: str,
        newsletter_id: str,
        status: SendStatus | None = None,
        limit: int | None = None,
    ) -> list[NewsletterSend]:
        """A newsletter's sends, newest first, optionally in one status."""
        return await self.sends.list_for_newsletter(
            tenant_id, newsletter_id, status, self._list_limit(limit)
        )

    async def list_events(
        self,
        tenant_id: str,
        newsletter_id: str,
        event_type: EventType | None = None,
        limit: int | None = None,
    ) -> list[NewsletterEvent]:
        """A newsletter's live event feed, newest first."""
        return await self.events.list_for_newsletter(
            tenant_id, newsletter_id, event_type, self._list_limit(limit)
        )

    async def status_breakdown(self, tenant_id: str, newsletter_id: str) -> StatusBreakdown:
        """Counts and percentage rates for one campaign."""
        stats = await self.get_stats(tenant_id, newsletter_id)
        return StatusBreakdown(
            newsletter_id=newsletter_id,
            total=stats.total_recipients,
            breakdown={
                "queued": stats.queued,
                "sent": stats.sent,
                "delivered": stats.delivered,
                "opened": stats.unique_opens,
                "clicked": stats.unique_clicks,
                "bounced": stats.bounced,
                "complained": stats.complained,
                "failed": stats.failed,
                "unsubscribed": stats.unsubscribed,
            },
            rates={
                "delivery_rate": _rate(stats.delivered, stats.sent),
                "open_rate": _rate(stats.unique_opens, stats.delivered),
                "click_rate": _rate(stats.unique_clicks, stats.delivered),
                "bounce_rate": _rate(stats.bounced, stats.sent),
            },
        )

    async def get_trajectory(self, tenant_id: str, send_id: str) -> list[NewsletterEvent]:
        """
        Ordered event history of one send.

        Sorted by ``occurred_at`` with insertion order breaking ties, so late
        arrivals land in their true position. Unknown sends yield ``[]``.
        """
        return await self.events.list_for_send(tenant_id, send_id)
