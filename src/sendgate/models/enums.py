"""SendGate enumerations and the task status state machine."""

from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    PENDING = "pending"
    TRIGGERED = "triggered"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def terminal_states(cls) -> set["TaskStatus"]:
        """Return terminal states."""
        return {cls.COMPLETED, cls.FAILED, cls.CANCELLED}

    @classmethod
    def active_states(cls) -> set["TaskStatus"]:
        """Return states that still expect work to happen."""
        return {cls.PENDING, cls.TRIGGERED, cls.RUNNING}

    def is_terminal(self) -> bool:
        """Check if status is terminal."""
        return self in self.terminal_states()

    def can_transition_to(self, new_status: "TaskStatus") -> bool:
        """Check if transition to new status is valid per state machine."""
        return new_status in VALID_TRANSITIONS[self]


VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.TRIGGERED, TaskStatus.CANCELLED}),
    TaskStatus.TRIGGERED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Status values written by the inngest_events generation of the tasks table.
LEGACY_STATUS_MAP: dict[str, TaskStatus] = {
    "sent": TaskStatus.TRIGGERED,
    "processing": TaskStatus.RUNNING,
}


def allowed_transitions(status: TaskStatus) -> frozenset[TaskStatus]:
    """Return the statuses reachable in one step from ``status``."""
    return VALID_TRANSITIONS[status]


def normalize_status(value: str) -> TaskStatus:
    """Map a stored status value, legacy or current, onto TaskStatus."""
    if value in LEGACY_STATUS_MAP:
        return LEGACY_STATUS_MAP[value]
    return TaskStatus(value)


class ExportCollection(str, Enum):
    """Append-mostly collections exposed through the export API."""

    SENDS = "sends"
    EVENTS = "events"
    STATS = "stats"


class SendStatus(str, Enum):
    """Delivery status of a single newsletter send."""

    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"
    COMPLAINED = "complained"


class EventType(str, Enum):
    """Tracked email event types."""

    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    UNSUBSCRIBED = "unsubscribed"
    FAILED = "failed"
    SUPPRESSED = "suppressed"

    @classmethod
    def one_time_types(cls) -> set["EventType"]:
        """Event types recorded at most once per message."""
        return {
            cls.SENT,
            cls.DELIVERED,
            cls.BOUNCED,
            cls.COMPLAINED,
            cls.FAILED,
            cls.UNSUBSCRIBED,
        }

    def is_one_time(self) -> bool:
        return self in self.one_time_types()


class CampaignStatus(str, Enum):
    """Aggregate status of a newsletter campaign."""

    SENDING = "sending"
    SENT = "sent"
    COMPLETED = "completed"


class EmailProvider(str, Enum):
    """Email providers whose webhooks are accepted."""

    RESEND = "resend"
    POSTMARK = "postmark"
    AHASEND = "ahasend"
