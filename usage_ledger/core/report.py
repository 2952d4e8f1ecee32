"""
Usage report generation.

Builds a point-in-time report of billed sessions over a time window.
Generation is read-only: it never writes usage rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .clock import Clock, SystemClock
from .compiler import InvalidSession, instances_to_usage_records
from .pricing import WorkspacePricer
from usage_ledger.storage.models import WorkspaceInstanceUsage, ensure_utc
from usage_ledger.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


@dataclass
class UsageReport:
    """Usage of all instances active within [from_, to) as of generation_time.

    `to` is best-effort: instances overlapping the window are billed up to
    the generation time, not up to `to`.
    """
    generation_time: datetime
    from_: datetime
    to: datetime
    usage_records: List[WorkspaceInstanceUsage] = field(default_factory=list)
    invalid_sessions: List[InvalidSession] = field(default_factory=list)

    @property
    def total_credits(self) -> float:
        return sum(record.credits_used for record in self.usage_records)


class ReportGenerator:
    """Generates usage reports from instances in the repository."""

    def __init__(
        self,
        repository: UsageRepository,
        pricer: WorkspacePricer,
        clock: Optional[Clock] = None,
    ):
        self.repository = repository
        self.pricer = pricer
        self.clock = clock or SystemClock()

    def generate_usage_report(self, from_: datetime, to: datetime) -> UsageReport:
        """Generate a report for instances overlapping [from_, to).

        Running instances are billed until now, so credits reflect the cost
        as of generation time.
        """
        now = ensure_utc(self.clock.now())
        from_, to = ensure_utc(from_), ensure_utc(to)

        instances = self.repository.find_workspace_instances_in_range(from_, to)
        logger.info("Generating usage report for %d instances in [%s, %s)", len(instances), from_, to)

        compiled = instances_to_usage_records(instances, self.pricer, now)
        if compiled.invalid_sessions:
            logger.warning(
                "Skipped %d invalid sessions: %s",
                len(compiled.invalid_sessions),
                ", ".join(s.instance_id for s in compiled.invalid_sessions),
            )

        return UsageReport(
            generation_time=now,
            from_=from_,
            to=to,
            usage_records=compiled.records,
            invalid_sessions=compiled.invalid_sessions,
        )
