"""SendGate - newsletter task tracking, export, and schema reconciliation."""

__version__ = "0.1.0"
