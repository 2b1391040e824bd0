"""
Provider webhook tests: payload normalization and ingestion into tracking.
"""

import pytest
from sqlalchemy import delete

from sendgate.db.tables import NewsletterEventTable
from sendgate.engine import TrackingEngine
from sendgate.engine.webhooks import extract_recipient_email, normalize_provider_event
from sendgate.models import EmailProvider, EventType, SendStatus
from sendgate.observability.metrics import metrics

from support import OTHER_TENANT, TENANT

NEWSLETTER = "nl-hooks"


def _resend(event_type: str, **data):
    return {"type": event_type, "data": {"email_id": "re-1", "to": ["a@example.com"], **data}}


def _ahasend(event_type: str, **data):
    return {"type": event_type, "data": {"id": "aha-1", "recipient": "a@example.com", **data}}


@pytest.mark.parametrize(
    "provider,payload,expected",
    [
        (EmailProvider.RESEND, _resend("email.delivered"), EventType.DELIVERED),
        (EmailProvider.RESEND, _resend("email.suppressed"), EventType.SUPPRESSED),
        (
            EmailProvider.POSTMARK,
            {"RecordType": "SpamComplaint", "MessageID": "pm-1", "Email": "a@example.com"},
            EventType.COMPLAINED,
        ),
        (EmailProvider.AHASEND, _ahasend("message.reception"), EventType.SENT),
        (EmailProvider.AHASEND, _ahasend("suppression.created"), EventType.SUPPRESSED),
    ],
)
def test_event_types_are_normalized(provider, payload, expected):
    event = normalize_provider_event(provider, payload)

    assert event.event_type == expected
    assert event.recipient_email == "a@example.com"
    assert event.implies_sent is False


@pytest.mark.parametrize(
    "provider,payload",
    [
        (EmailProvider.RESEND, _resend("email.delivery_delayed")),
        (EmailProvider.POSTMARK, {"RecordType": "SubscriptionChange", "Email": "a@example.com"}),
        (EmailProvider.AHASEND, _ahasend("message.deferred")),
        (EmailProvider.AHASEND, _ahasend("message.transient_error")),
        (EmailProvider.AHASEND, {"type": ["message.delivered"], "data": {}}),
        (EmailProvider.RESEND, {"type": "email.opened", "data": {"to": []}}),
        (EmailProvider.AHASEND, {"type": "message.opened", "data": "not-an-object"}),
    ],
)
def test_untracked_or_unaddressed_payloads_are_ignored(provider, payload):
    assert normalize_provider_event(provider, payload) is None


def test_ahasend_engagement_implies_sent():
    for raw in ("message.delivered", "message.opened", "message.clicked"):
        assert normalize_provider_event(EmailProvider.AHASEND, _ahasend(raw)).implies_sent

    assert not normalize_provider_event(
        EmailProvider.AHASEND, _ahasend("message.bounced")
    ).implies_sent


def test_recipient_extraction_shapes():
    assert extract_recipient_email({"to": ["x@example.com"]}) == "x@example.com"
    assert extract_recipient_email({"to": [{"email": "y@example.com"}]}) == "y@example.com"
    assert extract_recipient_email({"to": "z@example.com"}) == "z@example.com"
    assert extract_recipient_email({"Recipient": "r@example.com"}) == "r@example.com"
    assert extract_recipient_email({"to": [42]}) is None


def test_metadata_is_collected():
    resend = normalize_provider_event(
        EmailProvider.RESEND,
        _resend(
            "email.clicked",
            click={"link": "https://example.com/a"},
            tags={"trackingId": "t-1", "groupUUID": "g-1"},
        ),
    )
    assert resend.metadata["link"] == "https://example.com/a"
    assert resend.metadata["tracking_id"] == "t-1"
    assert resend.metadata["group_uuid"] == "g-1"

    postmark = normalize_provider_event(
        EmailProvider.POSTMARK,
        {"RecordType": "Open", "MessageID": "pm-1", "Recipient": "a@example.com", "UserAgent": "UA"},
    )
    assert postmark.provider_message_id == "pm-1"
    assert postmark.metadata == {"user_agent": "UA"}

    aha = normalize_provider_event(
        EmailProvider.AHASEND, _ahasend("message.bounced", reason="mailbox full", ignored="x")
    )
    assert aha.metadata == {"reason": "mailbox full"}


async def _track(db, email: str, provider_message_id=None, newsletter_id=NEWSLETTER):
    async with db.session() as session:
        tracking = TrackingEngine(session)
        await tracking.init_newsletter(TENANT, newsletter_id, 1)
        send, _ = await tracking.record_send(
            tenant_id=TENANT,
            newsletter_id=newsletter_id,
            group_uuid="group-1",
            recipient_email=email,
            status=SendStatus.SENT,
            provider_message_id=provider_message_id,
        )
        return send


async def _ingest(db, provider, payload, tenant_id=TENANT):
    async with db.session() as session:
        return await TrackingEngine(session).ingest_provider_event(tenant_id, provider, payload)


async def _trajectory(db, send_id):
    async with db.session() as session:
        return await TrackingEngine(session).get_trajectory(TENANT, send_id)


async def test_ahasend_delivery_records_implied_sent_first(db):
    send = await _track(db, "a@example.com", provider_message_id="aha-1")

    recorded = await _ingest(db, EmailProvider.AHASEND, _ahasend("message.delivered"))

    # The dispatch already logged "sent", so the implied one is a duplicate
    assert [(e.event_type, created) for e, created in recorded] == [
        (EventType.SENT, False),
        (EventType.DELIVERED, True),
    ]
    events = await _trajectory(db, send.send_id)
    assert [e.event_type for e in events] == [EventType.SENT, EventType.DELIVERED]


async def test_ahasend_open_without_prior_sent_event(db):
    send = await _track(db, "a@example.com", provider_message_id="aha-1")
    async with db.session() as session:
        # A send tracked as queued has no "sent" event yet
        await TrackingEngine(session).sends.update(
            TENANT, send.send_id, {"status": SendStatus.QUEUED.value}
        )
        await session.execute(delete(NewsletterEventTable))

    recorded = await _ingest(db, EmailProvider.AHASEND, _ahasend("message.opened"))

    assert [(e.event_type, created) for e, created in recorded] == [
        (EventType.SENT, True),
        (EventType.OPENED, True),
    ]
    assert recorded[0][0].metadata["synthetic"] is True
    assert "synthetic" not in (recorded[1][0].metadata or {})


async def test_resend_event_falls_back_to_latest_send_for_recipient(db):
    await _track(db, "a@example.com", newsletter_id="nl-old")
    latest = await _track(db, "a@example.com", newsletter_id="nl-new")

    recorded = await _ingest(
        db, EmailProvider.RESEND, _resend("email.opened", email_id="unknown-id")
    )

    assert len(recorded) == 1
    event, created = recorded[0]
    assert created is True
    assert event.newsletter_id == "nl-new"
    assert event.send_id == latest.send_id


async def test_postmark_bounce_updates_send(db):
    send = await _track(db, "a@example.com", provider_message_id="pm-1")

    await _ingest(
        db,
        EmailProvider.POSTMARK,
        {"RecordType": "Bounce", "MessageID": "pm-1", "Email": "a@example.com"},
    )

    async with db.session() as session:
        stored = await TrackingEngine(session).sends.get(TENANT, send.send_id)
        stats = await TrackingEngine(session).get_stats(TENANT, NEWSLETTER)
    assert stored.status == SendStatus.BOUNCED
    assert stats.bounced == 1


async def test_suppressed_event_is_recorded_without_counters(db):
    send = await _track(db, "a@example.com", provider_message_id="re-1")

    recorded = await _ingest(db, EmailProvider.RESEND, _resend("email.suppressed"))

    assert recorded[0][0].event_type == EventType.SUPPRESSED
    async with db.session() as session:
        stored = await TrackingEngine(session).sends.get(TENANT, send.send_id)
    assert stored.status == SendStatus.SENT


async def test_unmatched_or_untracked_webhooks_record_nothing(db):
    await _track(db, "a@example.com", provider_message_id="re-1")

    assert await _ingest(db, EmailProvider.RESEND, _resend("email.opened"), OTHER_TENANT) == []
    assert await _ingest(db, EmailProvider.AHASEND, _ahasend("message.deferred")) == []
    assert metrics.counter_value("tracking.webhooks.resend.unmatched") == 1
    assert metrics.counter_value("tracking.webhooks.ahasend.ignored") == 1
