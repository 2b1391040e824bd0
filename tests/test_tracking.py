"""
Newsletter tracking tests: send idempotence, event dedupe, stats projection.
"""

import asyncio

import pytest

from sendgate.db.repositories import EventRepository, SendRepository, StatsRepository
from sendgate.engine import NewsletterNotFound, TrackingEngine
from sendgate.models import CampaignStatus, EventType, SendStatus
from sendgate.observability.metrics import metrics
from sendgate.utils.time import utc_now

from support import TENANT, requires_postgres

NEWSLETTER = "nl-1"


async def _init(db, total: int = 2, newsletter_id: str = NEWSLETTER):
    async with db.session() as session:
        return await TrackingEngine(session).init_newsletter(TENANT, newsletter_id, total)


async def _send(db, email: str, provider_message_id=None, status=SendStatus.SENT):
    async with db.session() as session:
        return await TrackingEngine(session).record_send(
            tenant_id=TENANT,
            newsletter_id=NEWSLETTER,
            group_uuid="group-1",
            recipient_email=email,
            status=status,
            provider_message_id=provider_message_id,
        )


async def _event(db, email: str, event_type: EventType, metadata=None):
    async with db.session() as session:
        return await TrackingEngine(session).record_event(
            TENANT, NEWSLETTER, email, event_type, provider_message_id=f"msg-{email}", metadata=metadata
        )


async def _stats(db):
    async with db.session() as session:
        return await TrackingEngine(session).get_stats(TENANT, NEWSLETTER)


async def _get_send(db, send_id: str):
    async with db.session() as session:
        return await TrackingEngine(session).sends.get(TENANT, send_id)


async def test_init_newsletter(db):
    stats = await _init(db, total=25)

    assert stats.status == CampaignStatus.SENDING
    assert stats.total_recipients == 25
    assert stats.queued == 25
    assert stats.sent == 0
    assert stats.started_at is not None


async def test_record_send_is_idempotent(db):
    await _init(db)
    first, created = await _send(db, "a@example.com")
    retry, created_again = await _send(db, "a@example.com", provider_message_id="msg-a@example.com")

    assert created is True
    assert created_again is False
    assert retry.send_id == first.send_id
    assert first.provider_message_id is None
    assert retry.provider_message_id == "msg-a@example.com"

    stats = await _stats(db)
    assert stats.sent == 1
    assert stats.queued == 1
    assert metrics.counter_value("tracking.sends.recorded") == 1


async def test_failed_send_counts_as_failed(db):
    await _init(db)
    send, _ = await _send(db, "a@example.com", status=SendStatus.FAILED)

    assert send.status == SendStatus.FAILED
    stats = await _stats(db)
    assert stats.failed == 1
    assert stats.sent == 0


async def test_one_time_events_are_deduplicated(db):
    await _init(db)
    send, _ = await _send(db, "a@example.com", provider_message_id="msg-a@example.com")

    first, created = await _event(db, "a@example.com", EventType.DELIVERED)
    again, created_again = await _event(db, "a@example.com", EventType.DELIVERED)

    assert created is True
    assert created_again is False
    assert again.event_id == first.event_id
    assert first.send_id == send.send_id
    assert (await _stats(db)).delivered == 1
    assert (await _get_send(db, send.send_id)).status == SendStatus.DELIVERED
    assert metrics.counter_value("tracking.events.deduplicated") == 1


async def test_repeated_opens_count_once_as_unique(db):
    await _init(db)
    send, _ = await _send(db, "a@example.com", provider_message_id="msg-a@example.com")

    await _event(db, "a@example.com", EventType.OPENED)
    _, created = await _event(db, "a@example.com", EventType.OPENED)

    assert created is True
    stats = await _stats(db)
    assert stats.opened == 2
    assert stats.unique_opens == 1

    stored = await _get_send(db, send.send_id)
    assert stored.open_count == 2
    assert stored.first_opened_at is not None
    assert stored.status == SendStatus.OPENED


async def test_click_without_open_counts_as_open(db):
    await _init(db)
    send, _ = await _send(db, "a@example.com", provider_message_id="msg-a@example.com")

    await _event(db, "a@example.com", EventType.CLICKED)

    stats = await _stats(db)
    assert stats.clicked == 1
    assert stats.unique_clicks == 1
    assert stats.opened == 1
    assert stats.unique_opens == 1

    stored = await _get_send(db, send.send_id)
    assert stored.status == SendStatus.CLICKED
    assert stored.open_count == 1
    assert stored.click_count == 1

    # A later open keeps the click status and is not a new unique open
    await _event(db, "a@example.com", EventType.OPENED)
    assert (await _get_send(db, send.send_id)).status == SendStatus.CLICKED
    assert (await _stats(db)).unique_opens == 1


async def test_failed_event_records_error(db):
    await _init(db)
    send, _ = await _send(db, "a@example.com", provider_message_id="msg-a@example.com")

    await _event(db, "a@example.com", EventType.FAILED, metadata={"error": "mailbox full"})

    stored = await _get_send(db, send.send_id)
    assert stored.status == SendStatus.FAILED
    assert stored.error == "mailbox full"


async def test_status_breakdown_rates(db):
    await _init(db)
    await _send(db, "a@example.com", provider_message_id="msg-a@example.com")
    await _send(db, "b@example.com", provider_message_id="msg-b@example.com")
    await _event(db, "a@example.com", EventType.DELIVERED)
    await _event(db, "b@example.com", EventType.DELIVERED)
    await _event(db, "a@example.com", EventType.OPENED)

    async with db.session() as session:
        breakdown = await TrackingEngine(session).status_breakdown(TENANT, NEWSLETTER)

    assert breakdown.total == 2
    assert breakdown.breakdown["sent"] == 2
    assert breakdown.breakdown["opened"] == 1
    assert breakdown.rates["delivery_rate"] == "100.0"
    assert breakdown.rates["open_rate"] == "50.0"
    assert breakdown.rates["click_rate"] == "0.0"


async def test_breakdown_without_sends_has_zero_rates(db):
    await _init(db)

    async with db.session() as session:
        breakdown = await TrackingEngine(session).status_breakdown(TENANT, NEWSLETTER)

    assert set(breakdown.rates.values()) == {"0"}


async def test_complete_newsletter(db):
    await _init(db, total=3)

    async with db.session() as session:
        stats = await TrackingEngine(session).complete_newsletter(TENANT, NEWSLETTER, 2, 1)

    assert stats.status == CampaignStatus.COMPLETED
    assert stats.sent == 2
    assert stats.failed == 1
    assert stats.queued == 0
    assert stats.completed_at is not None


async def test_unknown_newsletter(db):
    async with db.session() as session:
        tracking = TrackingEngine(session)
        with pytest.raises(NewsletterNotFound):
            await tracking.complete_newsletter(TENANT, "missing", 1, 0)
        with pytest.raises(NewsletterNotFound):
            await tracking.get_stats(TENANT, "missing")


async def test_reinit_resets_counters_and_keeps_position(db):
    first = await _init(db, total=2)
    await _send(db, "a@example.com")

    again = await _init(db, total=5)

    assert again.seq == first.seq
    assert again.stats_id == first.stats_id
    assert again.total_recipients == 5
    assert again.queued == 5
    assert again.sent == 0


async def test_duplicate_inserts_are_ignored(session):
    sends = SendRepository(session)
    events = EventRepository(session)
    stats = StatsRepository(session)
    kwargs = dict(
        tenant_id=TENANT,
        newsletter_id=NEWSLETTER,
        group_uuid="group-1",
        recipient_email="a@example.com",
        status=SendStatus.SENT,
    )

    assert await sends.create(**kwargs) is not None
    assert await sends.create(**kwargs) is None

    assert await stats.create(TENANT, NEWSLETTER, 3) is not None
    assert await stats.create(TENANT, NEWSLETTER, 3) is None

    at = utc_now()
    delivered = dict(
        tenant_id=TENANT,
        newsletter_id=NEWSLETTER,
        recipient_email="a@example.com",
        event_type=EventType.DELIVERED,
        occurred_at=at,
    )
    assert await events.create(**delivered) is not None
    assert await events.create(**delivered) is None

    opened = dict(delivered, event_type=EventType.OPENED)
    assert await events.create(**opened) is not None
    assert await events.create(**opened) is not None


async def test_send_tracked_by_a_concurrent_retry_is_reused(db, monkeypatch):
    await _init(db)
    winner, _ = await _send(db, "a@example.com")

    async with db.session() as session:
        tracking = TrackingEngine(session)
        lookup = tracking.sends.get_by_recipient
        calls = []

        # First lookup misses, as if the other retry had not committed yet
        async def stale_lookup(*args):
            calls.append(args)
            if len(calls) == 1:
                return None
            return await lookup(*args)

        monkeypatch.setattr(tracking.sends, "get_by_recipient", stale_lookup)
        send, created = await tracking.record_send(
            tenant_id=TENANT,
            newsletter_id=NEWSLETTER,
            group_uuid="group-1",
            recipient_email="a@example.com",
            status=SendStatus.SENT,
            provider_message_id="msg-late",
        )

    assert created is False
    assert send.send_id == winner.send_id
    assert send.provider_message_id == "msg-late"
    assert (await _stats(db)).sent == 1


async def test_concurrent_init_keeps_one_stats_row(db, monkeypatch):
    await _init(db, total=2)

    async with db.session() as session:
        tracking = TrackingEngine(session)

        async def missing(*args):
            return None

        monkeypatch.setattr(tracking.stats, "get", missing)
        await tracking.init_newsletter(TENANT, NEWSLETTER, 7)

    stats = await _stats(db)
    assert stats.total_recipients == 7
    assert stats.queued == 7


@requires_postgres
async def test_racing_send_retries_resolve_to_one_send(db):
    await _init(db, total=1)

    results = await asyncio.gather(
        *[_send(db, "race@example.com", provider_message_id="msg-race") for _ in range(6)]
    )

    assert len({send.send_id for send, _ in results}) == 1
    assert [created for _, created in results].count(True) == 1
    assert (await _stats(db)).sent == 1


@requires_postgres
async def test_racing_one_time_events_record_once(db):
    await _init(db)
    await _send(db, "race@example.com", provider_message_id="msg-race@example.com")

    results = await asyncio.gather(
        *[_event(db, "race@example.com", EventType.DELIVERED) for _ in range(6)]
    )

    assert len({event.event_id for event, _ in results}) == 1
    assert [created for _, created in results].count(True) == 1
    assert (await _stats(db)).delivered == 1


async def test_list_tenant_stats(db):
    await _init(db, newsletter_id="nl-1")
    await _init(db, newsletter_id="nl-2")

    async with db.session() as session:
        stats = await TrackingEngine(session).list_tenant_stats(TENANT)
        other = await TrackingEngine(session).list_tenant_stats("tenant-b")

    assert [s.newsletter_id for s in stats] == ["nl-1", "nl-2"]
    assert other == []


async def test_list_sends_newest_first_with_status_filter(db):
    await _init(db, total=3)
    await _send(db, "a@example.com")
    await _send(db, "b@example.com", status=SendStatus.FAILED)
    await _send(db, "c@example.com")

    async with db.session() as session:
        tracking = TrackingEngine(session)
        everything = await tracking.list_sends(TENANT, NEWSLETTER)
        sent = await tracking.list_sends(TENANT, NEWSLETTER, status=SendStatus.SENT)
        newest = await tracking.list_sends(TENANT, NEWSLETTER, limit=1)
        clamped = await tracking.list_sends(TENANT, NEWSLETTER, limit=0)

    assert [s.recipient_email for s in everything] == [
        "c@example.com",
        "b@example.com",
        "a@example.com",
    ]
    assert [s.recipient_email for s in sent] == ["c@example.com", "a@example.com"]
    assert [s.recipient_email for s in newest] == ["c@example.com"]
    assert len(clamped) == 1


async def test_list_events_newest_first_with_type_filter(db):
    await _init(db)
    await _send(db, "a@example.com", provider_message_id="msg-a@example.com")
    await _event(db, "a@example.com", EventType.DELIVERED)
    await _event(db, "a@example.com", EventType.OPENED)

    async with db.session() as session:
        tracking = TrackingEngine(session)
        feed = await tracking.list_events(TENANT, NEWSLETTER)
        opens = await tracking.list_events(TENANT, NEWSLETTER, event_type=EventType.OPENED)

    assert [e.event_type for e in feed] == [EventType.OPENED, EventType.DELIVERED, EventType.SENT]
    assert [e.event_type for e in opens] == [EventType.OPENED]


async def test_list_limit_defaults_to_configured_value(db, config):
    await _init(db, total=25)
    for n in range(25):
        await _send(db, f"r{n}@example.com")

    async with db.session() as session:
        sends = await TrackingEngine(session, config).list_sends(TENANT, NEWSLETTER)

    assert len(sends) == config.default_list_limit
