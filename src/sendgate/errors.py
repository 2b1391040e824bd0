"""SendGate errors."""


class SendGateError(Exception):
    """Base error for SendGate operations."""

    def __init__(self, message: str, code: str = "SENDGATE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class TaskNotFound(SendGateError):
    """Task does not exist for this tenant."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", "TASK_NOT_FOUND")
        self.task_id = task_id


class DuplicateKeyError(SendGateError):
    """
    Idempotency key already exists.

    Raised by the repository and resolved by the engine, which returns the
    existing task instead of surfacing a failure.
    """

    def __init__(self, idempotency_key: str):
        super().__init__(
            f"Idempotency key already exists: {idempotency_key}",
            "DUPLICATE_KEY",
        )
        self.idempotency_key = idempotency_key


class ConflictError(SendGateError):
    """Concurrent create could not be resolved to a single task."""

    def __init__(self, idempotency_key: str, reason: str):
        super().__init__(
            f"Conflicting create for idempotency key {idempotency_key}: {reason}",
            "CONFLICT",
        )
        self.idempotency_key = idempotency_key
        self.reason = reason


class InvalidTransitionError(SendGateError):
    """Task status did not match the caller's expected source status."""

    def __init__(self, task_id: str, expected_status: str, current_status: str):
        super().__init__(
            f"Task {task_id} is {current_status}, expected {expected_status}",
            "INVALID_TRANSITION",
        )
        self.task_id = task_id
        self.expected_status = expected_status
        self.current_status = current_status


class IllegalStateTransition(SendGateError):
    """Requested status is not reachable from the source status."""

    def __init__(self, current_status: str, requested_status: str):
        super().__init__(
            f"Illegal transition from {current_status} to {requested_status}",
            "ILLEGAL_STATE_TRANSITION",
        )
        self.current_status = current_status
        self.requested_status = requested_status


class InvalidCursorError(SendGateError):
    """Export cursor was not issued by this service for this collection."""

    def __init__(self, reason: str):
        super().__init__(f"Invalid export cursor: {reason}", "INVALID_CURSOR")
        self.reason = reason


class NewsletterNotFound(SendGateError):
    """No stats row exists for the newsletter."""

    def __init__(self, newsletter_id: str):
        super().__init__(f"Newsletter not found: {newsletter_id}", "NEWSLETTER_NOT_FOUND")
        self.newsletter_id = newsletter_id


class MigrationStepError(SendGateError):
    """A reconciliation step failed; the run was aborted."""

    def __init__(self, step: str, cause: BaseException | str):
        super().__init__(f"Migration step {step} failed: {cause}", "MIGRATION_STEP_FAILED")
        self.step = step
        self.cause = cause


class LegacySchemaError(SendGateError):
    """The store still holds the pre-rename tasks table; reconcile must run first."""

    def __init__(self, table: str):
        super().__init__(
            f"Legacy table {table} is present; run sendgate-reconcile before starting",
            "LEGACY_SCHEMA",
        )
        self.table = table
