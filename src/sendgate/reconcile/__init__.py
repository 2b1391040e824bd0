"""Schema reconciliation for the tasks table (legacy inngest_events generation)."""

from sendgate.reconcile.ops import SchemaOps
from sendgate.reconcile.runner import MigrationEngine, MigrationReport, PlannedStep
from sendgate.reconcile.steps import Step, default_steps

__all__ = [
    "MigrationEngine",
    "MigrationReport",
    "PlannedStep",
    "SchemaOps",
    "Step",
    "default_steps",
]
