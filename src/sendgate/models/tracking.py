"""Newsletter tracking records: sends, events, and aggregated stats."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from sendgate.models.enums import CampaignStatus, EventType, SendStatus


class NewsletterSend(BaseModel):
    """One email dispatched to one recipient as part of a newsletter."""

    seq: int
    send_id: str
    tenant_id: str
    newsletter_id: str
    group_uuid: str
    recipient_email: str
    recipient_id: Optional[str] = None
    recipient_name: Optional[str] = None
    provider_message_id: Optional[str] = None
    status: SendStatus
    error: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    first_opened_at: Optional[datetime] = None
    last_opened_at: Optional[datetime] = None
    first_clicked_at: Optional[datetime] = None
    open_count: int = 0
    click_count: int = 0
    created_at: datetime


class NewsletterEvent(BaseModel):
    """A single provider or dispatch event for a send."""

    seq: int
    event_id: str
    tenant_id: str
    newsletter_id: str
    send_id: Optional[str] = None
    recipient_email: str
    event_type: EventType
    provider_message_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    occurred_at: datetime


class NewsletterStats(BaseModel):
    """Aggregated counters for one newsletter campaign."""

    seq: int
    stats_id: str
    tenant_id: str
    newsletter_id: str
    status: CampaignStatus
    total_recipients: int = 0
    queued: int = 0
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    unique_opens: int = 0
    clicked: int = 0
    unique_clicks: int = 0
    bounced: int = 0
    complained: int = 0
    failed: int = 0
    unsubscribed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    created_at: datetime


class StatusBreakdown(BaseModel):
    """Status counts and rates for charting a campaign."""

    newsletter_id: str
    total: int
    breakdown: dict[str, int] = Field(default_factory=dict)
    rates: dict[str, str] = Field(default_factory=dict)
