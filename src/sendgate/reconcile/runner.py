"""Migration/recovery engine - drives a store from any partial state to the current schema."""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from sendgate.db import ddl
from sendgate.errors import MigrationStepError
from sendgate.models import TaskStatus
from sendgate.observability.metrics import metrics
from sendgate.reconcile.ops import SchemaOps
from sendgate.reconcile.steps import Step, default_steps

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    """Outcome of one reconciliation run."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    rows_remapped: int = 0
    status_values: list[str] = field(default_factory=list)

    @property
    def unknown_status_values(self) -> list[str]:
        """Stored status values outside the current status set."""
        allowed = {s.value for s in TaskStatus}
        return [v for v in self.status_values if v not in allowed]

    @property
    def converged(self) -> bool:
        return not self.unknown_status_values

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["unknown_status_values"] = self.unknown_status_values
        data["converged"] = self.converged
        return data


@dataclass
class PlannedStep:
    name: str
    state: str  # "applied", "pending" or "blocked"


class MigrationEngine:
    """
    Runs the reconciliation steps in order.

    Every step checks the live schema before acting and runs in its own
    transaction, so re-running after a failure resumes where the last run
    stopped. The first failing step aborts the run with MigrationStepError.
    """

    def __init__(self, ops: SchemaOps, steps: Optional[list[Step]] = None):
        self.ops = ops
        self.steps = steps if steps is not None else default_steps()

    async def run(self) -> MigrationReport:
        report = MigrationReport()

        for step in self.steps:
            try:
                async with self.ops.step():
                    if await step.is_applied(self.ops):
                        report.skipped.append(step.name)
                        logger.debug(f"Step {step.name} already applied")
                        continue
                    report.rows_remapped += await step.apply(self.ops)
            except MigrationStepError as e:
                metrics.inc_counter("reconcile.steps.failed")
                logger.error(e.message)
                raise
            except Exception as e:
                metrics.inc_counter("reconcile.steps.failed")
                logger.error(f"Step {step.name} failed: {e}", exc_info=True)
                raise MigrationStepError(step.name, e) from e

            report.applied.append(step.name)
            metrics.inc_counter("reconcile.steps.applied")
            logger.info(f"Applied step {step.name}")

        async with self.ops.step():
            report.status_values = await self.ops.distinct_values(ddl.TASKS_TABLE, "status")

        if not report.converged:
            logger.warning(f"Unrecognized task statuses remain: {report.unknown_status_values}")
        logger.info(
            f"Reconciliation finished: applied={len(report.applied)} "
            f"skipped={len(report.skipped)} rows_remapped={report.rows_remapped}"
        )
        return report

    async def plan(self) -> list[PlannedStep]:
        """
        Dry run: report which steps a run would apply, without changing anything.

        Steps after a pending structural step cannot be inspected yet and are
        reported as blocked.
        """
        planned: list[PlannedStep] = []
        blocked = False
        for step in self.steps:
            if blocked:
                planned.append(PlannedStep(step.name, "blocked"))
                continue
            async with self.ops.step():
                applied = await step.is_applied(self.ops)
            planned.append(PlannedStep(step.name, "applied" if applied else "pending"))
            if not applied and step.structural:
                blocked = True
        return planned
