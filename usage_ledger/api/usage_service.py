"""
Usage service.

Transport-independent implementation of the usage API: billing queries,
report generation and ledger reconciliation over a repository.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..core.billing_query import (
    BilledUsagePage,
    Ordering,
    PaginatedRequest,
    PaginatedResponse,
    list_billed_sessions,
    list_usage_entries,
    validate_time_range,
)
from ..core.clock import Clock, SystemClock
from ..core.errors import InvalidArgumentError, NotFoundError
from ..core.pricing import WorkspacePricer
from ..core.reconciler import reconcile_usage_with_ledger
from ..core.report import ReportGenerator, UsageReport
from ..storage.models import CostCenter, Usage, ensure_utc, truncate_to_millis
from ..storage.repository import UsageRepository

logger = logging.getLogger(__name__)


@dataclass
class ListUsageResponse:
    usage_entries: List[Usage] = field(default_factory=list)
    pagination: Optional[PaginatedResponse] = None
    # Credits the attribution had consumed at the start and end of the period
    credit_balance_at_start: float = 0.0
    credit_balance_at_end: float = 0.0


@dataclass
class ReconcileUsageResponse:
    report_id: str
    report: UsageReport


@dataclass(frozen=True)
class ReconcileUsageWithLedgerResponse:
    inserted: int
    updated: int


class UsageService:
    """Usage API over a repository, a pricer and a clock."""

    def __init__(
        self,
        repository: UsageRepository,
        pricer: Optional[WorkspacePricer] = None,
        clock: Optional[Clock] = None,
        report_generator: Optional[ReportGenerator] = None,
    ):
        self.repository = repository
        self.pricer = pricer or WorkspacePricer()
        self.clock = clock or SystemClock()
        self.report_generator = report_generator or ReportGenerator(repository, self.pricer, self.clock)

    def list_billed_usage(
        self,
        attribution_id: str,
        from_: datetime,
        to: datetime,
        order: Ordering = Ordering.DESCENDING,
        pagination: Optional[PaginatedRequest] = None,
    ) -> BilledUsagePage:
        """List billed sessions that started within [from_, to).

        Raises:
            InvalidArgumentError: If the range is inverted or longer than 31 days
        """
        from_, to = ensure_utc(from_), ensure_utc(to)
        validate_time_range(from_, to)
        sessions = self.repository.find_billed_sessions(attribution_id, from_, to)
        return list_billed_sessions(sessions, order, pagination)

    def list_usage(
        self,
        attribution_id: str,
        from_: datetime,
        to: datetime,
        order: Ordering = Ordering.DESCENDING,
        pagination: Optional[PaginatedRequest] = None,
    ) -> ListUsageResponse:
        """List ledger entries effective within [from_, to), drafts included.

        Raises:
            InvalidArgumentError: If the range is inverted or longer than 31 days
        """
        from_, to = ensure_utc(from_), ensure_utc(to)
        validate_time_range(from_, to)
        entries = self.repository.find_usage(attribution_id, from_, to)
        page = list_usage_entries(entries, order, pagination)
        return ListUsageResponse(
            usage_entries=page.items,
            pagination=page.pagination,
            credit_balance_at_start=self.repository.get_credit_balance(attribution_id, from_),
            credit_balance_at_end=self.repository.get_credit_balance(attribution_id, to),
        )

    def reconcile_usage(self, start_time: datetime, end_time: datetime) -> ReconcileUsageResponse:
        """Generate a usage report for the period and store its billed sessions.

        Raises:
            InvalidArgumentError: If start_time is not before end_time
        """
        start_time, end_time = ensure_utc(start_time), ensure_utc(end_time)
        if start_time >= end_time:
            raise InvalidArgumentError(f"start_time ({start_time}) must be before end_time ({end_time})")

        report = self.report_generator.generate_usage_report(start_time, end_time)
        report_id = str(uuid.uuid4())
        self.repository.upsert_billed_sessions(report.usage_records)
        logger.info(
            "Usage report %s: %d sessions, %d invalid, %.4f credits",
            report_id,
            len(report.usage_records),
            len(report.invalid_sessions),
            report.total_credits,
        )
        return ReconcileUsageResponse(report_id=report_id, report=report)

    def reconcile_usage_with_ledger(self, from_: datetime, to: datetime) -> ReconcileUsageWithLedgerResponse:
        """Bring draft ledger entries in line with instances active in [from_, to).

        The inserts and updates are applied as one atomic batch.

        Raises:
            InvalidArgumentError: If from_ is after to
            SerializationError: If entry metadata cannot be encoded
        """
        from_, to = ensure_utc(from_), ensure_utc(to)
        if from_ > to:
            raise InvalidArgumentError(f"from ({from_}) is after to ({to})")

        now = truncate_to_millis(ensure_utc(self.clock.now()))
        instances = self.repository.find_workspace_instances_in_range(from_, to)
        drafts = self.repository.find_all_draft_usage()
        logger.info("Reconciling %d instances against %d drafts", len(instances), len(drafts))

        inserts, updates = reconcile_usage_with_ledger(instances, drafts, self.pricer, now)
        self.repository.upsert_usage(inserts + updates)
        logger.info("Ledger reconciled: %d inserted, %d updated", len(inserts), len(updates))
        return ReconcileUsageWithLedgerResponse(inserted=len(inserts), updated=len(updates))

    def get_cost_center(self, attribution_id: str) -> CostCenter:
        """Get the cost center for an attribution.

        Raises:
            NotFoundError: If no cost center exists for the attribution
        """
        cost_center = self.repository.get_cost_center(attribution_id)
        if cost_center is None:
            raise NotFoundError(f"No cost center for attribution ID: {attribution_id}")
        return cost_center
