"""SendGate data models."""

from sendgate.models.enums import (
    LEGACY_STATUS_MAP,
    CampaignStatus,
    EmailProvider,
    EventType,
    ExportCollection,
    SendStatus,
    TaskStatus,
    allowed_transitions,
    normalize_status,
)
from sendgate.models.export import ExportCursor, ExportPage
from sendgate.models.task import Task
from sendgate.models.tracking import (
    NewsletterEvent,
    NewsletterSend,
    NewsletterStats,
    StatusBreakdown,
)

__all__ = [
    "LEGACY_STATUS_MAP",
    "CampaignStatus",
    "EmailProvider",
    "EventType",
    "ExportCollection",
    "ExportCursor",
    "ExportPage",
    "NewsletterEvent",
    "NewsletterSend",
    "NewsletterStats",
    "SendStatus",
    "StatusBreakdown",
    "Task",
    "TaskStatus",
    "allowed_transitions",
    "normalize_status",
]
