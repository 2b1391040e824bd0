"""SendGate engine - task state machine, export, and tracking operations."""

from sendgate.engine.core import TaskEngine
from sendgate.engine.export import ExportService, clamp_page_limit
from sendgate.engine.tracking import TrackingEngine
from sendgate.errors import (
    ConflictError,
    DuplicateKeyError,
    IllegalStateTransition,
    InvalidCursorError,
    InvalidTransitionError,
    MigrationStepError,
    NewsletterNotFound,
    SendGateError,
    TaskNotFound,
)

__all__ = [
    "ConflictError",
    "DuplicateKeyError",
    "ExportService",
    "IllegalStateTransition",
    "InvalidCursorError",
    "InvalidTransitionError",
    "MigrationStepError",
    "NewsletterNotFound",
    "SendGateError",
    "TaskEngine",
    "TaskNotFound",
    "TrackingEngine",
    "clamp_page_limit",
]
