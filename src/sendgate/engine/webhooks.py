"""
Provider webhook normalization.

Resend, Postmark and AhaSend each describe the same email lifecycle in their
own payload shape. These helpers turn a raw payload into one ProviderEvent
(or None when the event is not tracked) so the tracking engine only ever
sees normalized event types.
"""

import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel

from sendgate.models import EmailProvider, EventType

logger = logging.getLogger(__name__)

RESEND_EVENT_TYPES: dict[str, EventType] = {
    "email.sent": EventType.SENT,
    "email.delivered": EventType.DELIVERED,
    "email.bounced": EventType.BOUNCED,
    "email.complained": EventType.COMPLAINED,
    "email.opened": EventType.OPENED,
    "email.clicked": EventType.CLICKED,
    "email.suppressed": EventType.SUPPRESSED,
}

POSTMARK_EVENT_TYPES: dict[str, EventType] = {
    "Sent": EventType.SENT,
    "Delivered": EventType.DELIVERED,
    "Bounce": EventType.BOUNCED,
    "SpamComplaint": EventType.COMPLAINED,
    "Open": EventType.OPENED,
    "Click": EventType.CLICKED,
}

AHASEND_EVENT_TYPES: dict[str, EventType] = {
    "message.reception": EventType.SENT,
    "message.delivered": EventType.DELIVERED,
    "message.opened": EventType.OPENED,
    "message.clicked": EventType.CLICKED,
    "message.bounced": EventType.BOUNCED,
    "message.failed": EventType.FAILED,
    "message.suppressed": EventType.SUPPRESSED,
    "suppression.created": EventType.SUPPRESSED,
}

# Retries still in flight at the provider; the final outcome arrives later
AHASEND_DEFERRED_TYPES = frozenset({"message.deferred", "message.transient_error"})

# AhaSend has no "sent" event of its own, so these imply one
_IMPLIES_SENT = frozenset({EventType.DELIVERED, EventType.OPENED, EventType.CLICKED})


class ProviderEvent(BaseModel):
    """A provider webhook reduced to the fields tracking needs."""

    provider: EmailProvider
    event_type: EventType
    recipient_email: str
    provider_message_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    implies_sent: bool = False


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def extract_recipient_email(data: dict[str, Any]) -> str | None:
    """Find the recipient address in the shapes providers use for it."""
    to = data.get("to")
    if isinstance(to, list) and to:
        first = to[0]
        if isinstance(first, dict):
            first = first.get("email")
        if _text(first):
            return first
    if _text(to):
        return to
    for key in ("email", "Email", "Recipient"):
        if _text(data.get(key)):
            return data[key]
    return None


def build_metadata(data: dict[str, Any]) -> dict[str, Any] | None:
    """Keep the engagement details worth storing from a Resend or Postmark payload."""
    meta: dict[str, Any] = {}
    user_agent = data.get("user_agent") or data.get("UserAgent")
    if user_agent:
        meta["user_agent"] = user_agent
    ip_address = data.get("ip_address") or data.get("IPAddress")
    if ip_address:
        meta["ip_address"] = ip_address
    link = data.get("link") or _as_dict(data.get("click")).get("link")
    if link:
        meta["link"] = link
    if data.get("Geo"):
        meta["geo"] = data["Geo"]

    suppressed = data.get("suppressed")
    if isinstance(suppressed, dict):
        meta["message"] = suppressed.get("message")
        meta["type"] = suppressed.get("type")

    tags = data.get("tags")
    if isinstance(tags, dict) and tags:
        meta["tags"] = tags
        if tags.get("trackingId"):
            meta["tracking_id"] = tags["trackingId"]
        if tags.get("groupUUID"):
            meta["group_uuid"] = tags["groupUUID"]

    return meta or None


_AHASEND_METADATA_FIELDS = (
    "from",
    "subject",
    "message_id_header",
    "account_id",
    "event",
    "reason",
    "sending_domain",
)


def build_ahasend_metadata(data: dict[str, Any]) -> dict[str, Any] | None:
    meta = {field: data[field] for field in _AHASEND_METADATA_FIELDS if data.get(field)}
    return meta or None


def _parse_resend(payload: dict[str, Any]) -> ProviderEvent | None:
    raw_type = _text(payload.get("type"))
    event_type = RESEND_EVENT_TYPES.get(raw_type)
    if event_type is None:
        logger.info(f"Unhandled Resend event type: {raw_type}")
        return None

    data = _as_dict(payload.get("data"))
    recipient = extract_recipient_email(data)
    if not recipient:
        logger.error("Could not extract recipient email from Resend webhook")
        return None

    return ProviderEvent(
        provider=EmailProvider.RESEND,
        event_type=event_type,
        recipient_email=recipient,
        provider_message_id=_text(data.get("email_id")) or _text(data.get("id")),
        metadata=build_metadata(data),
    )


def _parse_postmark(payload: dict[str, Any]) -> ProviderEvent | None:
    raw_type = _text(payload.get("RecordType"))
    event_type = POSTMARK_EVENT_TYPES.get(raw_type)
    if event_type is None:
        logger.info(f"Unhandled Postmark event type: {raw_type}")
        return None

    recipient = extract_recipient_email(payload)
    if not recipient:
        logger.error("Could not extract recipient email from Postmark webhook")
        return None

    return ProviderEvent(
        provider=EmailProvider.POSTMARK,
        event_type=event_type,
        recipient_email=recipient,
        provider_message_id=_text(payload.get("MessageID")) or _text(payload.get("id")),
        metadata=build_metadata(payload),
    )


def _parse_ahasend(payload: dict[str, Any]) -> ProviderEvent | None:
    raw_type = _text(payload.get("type"))
    if raw_type in AHASEND_DEFERRED_TYPES:
        logger.info(f"Skipping deferred AhaSend event: {raw_type}")
        return None
    event_type = AHASEND_EVENT_TYPES.get(raw_type)
    if event_type is None:
        logger.info(f"Unhandled AhaSend event type: {raw_type}")
        return None

    data = _as_dict(payload.get("data"))
    recipient = _text(data.get("recipient"))
    if not recipient:
        logger.error("Could not extract recipient email from AhaSend webhook")
        return None

    return ProviderEvent(
        provider=EmailProvider.AHASEND,
        event_type=event_type,
        recipient_email=recipient,
        provider_message_id=_text(data.get("id")),
        metadata=build_ahasend_metadata(data),
        implies_sent=event_type in _IMPLIES_SENT,
    )


_PARSERS: dict[EmailProvider, Callable[[dict[str, Any]], Optional[ProviderEvent]]] = {
    EmailProvider.RESEND: _parse_resend,
    EmailProvider.POSTMARK: _parse_postmark,
    EmailProvider.AHASEND: _parse_ahasend,
}


def normalize_provider_event(
    provider: EmailProvider, payload: dict[str, Any]
) -> ProviderEvent | None:
    """
    Normalize one webhook payload.

    Returns None for event types that are not tracked (including AhaSend's
    deferred retries) and for payloads without a recipient address.
    """
    return _PARSERS[provider](payload)
