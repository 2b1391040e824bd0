"""SendGate database layer."""

from sendgate.db.base import Base, Database
from sendgate.db.tables import (
    NewsletterEventTable,
    NewsletterSendTable,
    NewsletterStatsTable,
    TaskTable,
)

__all__ = [
    "Base",
    "Database",
    "NewsletterEventTable",
    "NewsletterSendTable",
    "NewsletterStatsTable",
    "TaskTable",
]
