"""
Tests for the usage service.

Runs each operation end to end against a temporary SQLite database.
"""

import os
import tempfile
import uuid
from datetime import timedelta

import pytest

from usage_ledger.api.usage_service import UsageService
from usage_ledger.core.billing_query import Ordering, PaginatedRequest
from usage_ledger.core.clock import FixedClock
from usage_ledger.core.errors import InvalidArgumentError, NotFoundError
from usage_ledger.core.pricing import WorkspacePricer
from usage_ledger.storage.models import (
    CostCenter,
    DraftUsage,
    FinalUsage,
    UsageKind,
    new_team_attribution_id,
)
from usage_ledger.storage.repository import get_repository

from factories import new_instance, utc


class UsageServiceTestCase:
    """Service over a temporary database with a fixed clock."""

    now = utc(2022, 7, 20, 12)

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = get_repository(os.path.join(self.temp_dir, "test.db"))
        self.service = UsageService(self.repository, WorkspacePricer(), FixedClock(self.now))
        self.attribution_id = new_team_attribution_id(str(uuid.uuid4()))

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestListBilledUsage(UsageServiceTestCase):
    """Test listing billed sessions."""

    def _reconcile_instances(self, instances):
        self.repository.upsert_workspace_instances(instances)
        self.service.reconcile_usage(utc(2022, 6, 20), utc(2022, 7, 20))

    def test_from_after_to_fails(self):
        """Verify inverted ranges are rejected."""
        with pytest.raises(InvalidArgumentError):
            self.service.list_billed_usage(self.attribution_id, utc(2022, 7, 1, 13), utc(2022, 7, 1, 12))

    def test_range_longer_than_31_days_fails(self):
        """Verify ranges beyond 31 days are rejected."""
        with pytest.raises(InvalidArgumentError):
            self.service.list_billed_usage(self.attribution_id, utc(2022, 7, 1, 13), utc(2022, 8, 1, 13, 0, 1))

    def test_filters_to_range_ascending(self):
        """Verify sessions starting within the range are listed oldest first."""
        start = utc(2022, 7, 1, 13)
        instances = [
            new_instance(
                started_time=start + timedelta(days=i),
                stopping_time=start + timedelta(days=i, hours=1),
                usage_attribution_id=self.attribution_id,
            )
            for i in range(4)
        ]
        self._reconcile_instances(instances)

        response = self.service.list_billed_usage(
            self.attribution_id, start, start + timedelta(days=3), Ordering.ASCENDING
        )
        assert [s.instance_id for s in response.sessions] == [i.id for i in instances[:3]]
        assert response.total_credits_used == pytest.approx(30.0)

    def test_filters_to_range_descending(self):
        """Verify sessions are listed newest first."""
        start = utc(2022, 7, 1, 13)
        instances = [
            new_instance(
                started_time=start + timedelta(days=i),
                stopping_time=start + timedelta(days=i, hours=1),
                usage_attribution_id=self.attribution_id,
            )
            for i in range(3)
        ]
        self._reconcile_instances(instances)

        response = self.service.list_billed_usage(
            self.attribution_id, start, start + timedelta(days=5), Ordering.DESCENDING
        )
        assert [s.instance_id for s in response.sessions] == [i.id for i in reversed(instances)]

    @pytest.mark.parametrize("page,expected_count", [(1, 5), (2, 5), (3, 4), (4, 0)])
    def test_pagination(self, page, expected_count):
        """Verify totals and page sizes for 14 sessions at 5 per page."""
        start = utc(2022, 7, 1, 13)
        self._reconcile_instances([
            new_instance(
                started_time=start + timedelta(minutes=i),
                stopping_time=start + timedelta(minutes=i, hours=1),
                usage_attribution_id=self.attribution_id,
            )
            for i in range(1, 15)
        ])

        response = self.service.list_billed_usage(
            self.attribution_id,
            start,
            start + timedelta(minutes=20, hours=2),
            pagination=PaginatedRequest(per_page=5, page=page),
        )
        assert response.pagination.total == 14
        assert response.pagination.total_pages == 3
        assert len(response.sessions) == expected_count
        assert response.total_credits_used == pytest.approx(140.0)


class TestReconcileUsage(UsageServiceTestCase):
    """Test report generation through the service."""

    def test_stores_billed_sessions(self):
        """Verify report records become billed sessions."""
        instance = new_instance(started_time=utc(2022, 7, 10, 12), usage_attribution_id=self.attribution_id)
        self.repository.upsert_workspace_instances([instance])

        response = self.service.reconcile_usage(utc(2022, 7, 1), utc(2022, 8, 1))

        assert response.report_id
        assert response.report.generation_time == self.now
        sessions = self.repository.find_billed_sessions(self.attribution_id, utc(2022, 7, 1), utc(2022, 8, 1))
        assert [s.instance_id for s in sessions] == [instance.id]
        assert sessions[0].stopped_at is None
        assert sessions[0].credits_used == pytest.approx(10 * 24 * 10.0)

    def test_rerun_replaces_sessions(self):
        """Verify a later report overwrites an instance's billed session."""
        instance = new_instance(started_time=utc(2022, 7, 20, 11), usage_attribution_id=self.attribution_id)
        self.repository.upsert_workspace_instances([instance])
        self.service.reconcile_usage(utc(2022, 7, 1), utc(2022, 8, 1))

        self.service.clock = FixedClock(self.now + timedelta(hours=1))
        self.service.report_generator.clock = self.service.clock
        self.service.reconcile_usage(utc(2022, 7, 1), utc(2022, 8, 1))

        sessions = self.repository.find_billed_sessions(self.attribution_id, utc(2022, 7, 1), utc(2022, 8, 1))
        assert len(sessions) == 1
        assert sessions[0].credits_used == pytest.approx(20.0)

    def test_invalid_period_fails(self):
        """Verify the start must precede the end."""
        with pytest.raises(InvalidArgumentError):
            self.service.reconcile_usage(utc(2022, 8, 1), utc(2022, 7, 1))


class TestReconcileUsageWithLedger(UsageServiceTestCase):
    """Test ledger reconciliation through the service."""

    def test_creates_and_updates_drafts(self):
        """Verify drafts are inserted for new instances and updated for known ones."""
        stopped = new_instance(
            started_time=utc(2022, 7, 20, 9),
            stopping_time=utc(2022, 7, 20, 10),
            usage_attribution_id=self.attribution_id,
        )
        running = new_instance(started_time=utc(2022, 7, 20, 11), usage_attribution_id=self.attribution_id)
        self.repository.upsert_workspace_instances([stopped, running])
        existing = DraftUsage(
            id=str(uuid.uuid4()),
            attribution_id=self.attribution_id,
            description="stale",
            credit_cents=1,
            effective_time=utc(2022, 7, 20, 9, 30),
            kind=UsageKind.WORKSPACE_INSTANCE,
            workspace_instance_id=stopped.id,
        )
        self.repository.upsert_usage([existing])

        response = self.service.reconcile_usage_with_ledger(utc(2022, 7, 20), utc(2022, 7, 21))

        assert (response.inserted, response.updated) == (1, 1)
        drafts = {d.workspace_instance_id: d for d in self.repository.find_all_draft_usage()}
        assert drafts[stopped.id].id == existing.id
        assert drafts[stopped.id].credits == 10.0
        assert drafts[running.id].credits == 10.0
        assert all(d.effective_time == self.now for d in drafts.values())

    def test_second_run_is_a_no_op(self):
        """Verify reconciliation is idempotent through the store."""
        self.repository.upsert_workspace_instances([
            new_instance(started_time=utc(2022, 7, 20, 11, 0, 0, 333), usage_attribution_id=self.attribution_id),
        ])
        first = self.service.reconcile_usage_with_ledger(utc(2022, 7, 20), utc(2022, 7, 21))
        second = self.service.reconcile_usage_with_ledger(utc(2022, 7, 20), utc(2022, 7, 21))

        assert (first.inserted, first.updated) == (1, 0)
        assert (second.inserted, second.updated) == (0, 0)

    def test_final_entries_are_untouched(self):
        """Verify final entries survive reconciliation unchanged."""
        instance = new_instance(started_time=utc(2022, 7, 20, 11), usage_attribution_id=self.attribution_id)
        self.repository.upsert_workspace_instances([instance])
        final = FinalUsage(
            id=str(uuid.uuid4()),
            attribution_id=self.attribution_id,
            description="closed period",
            credit_cents=300,
            effective_time=utc(2022, 7, 19),
            kind=UsageKind.WORKSPACE_INSTANCE,
            workspace_instance_id=instance.id,
        )
        self.repository.upsert_usage([final])

        self.service.reconcile_usage_with_ledger(utc(2022, 7, 20), utc(2022, 7, 21))

        entries = self.service.list_usage(self.attribution_id, utc(2022, 7, 1), utc(2022, 8, 1)).usage_entries
        assert final in entries
        assert len(entries) == 2

    def test_from_after_to_fails(self):
        """Verify inverted windows are rejected."""
        with pytest.raises(InvalidArgumentError):
            self.service.reconcile_usage_with_ledger(utc(2022, 7, 21), utc(2022, 7, 20))


class TestListUsage(UsageServiceTestCase):
    """Test listing ledger entries with balances."""

    def _entry(self, cents, effective_time, kind=UsageKind.WORKSPACE_INSTANCE):
        return FinalUsage(
            id=str(uuid.uuid4()),
            attribution_id=self.attribution_id,
            description="usage",
            credit_cents=cents,
            effective_time=effective_time,
            kind=kind,
        )

    def test_entries_and_balances(self):
        """Verify entries in range and balances at both ends."""
        before = self._entry(1000, utc(2022, 6, 15))
        first = self._entry(250, utc(2022, 7, 2))
        second = self._entry(-100, utc(2022, 7, 3), kind=UsageKind.INVOICE)
        after = self._entry(400, utc(2022, 7, 10))
        self.repository.upsert_usage([before, first, second, after])

        response = self.service.list_usage(
            self.attribution_id, utc(2022, 7, 1), utc(2022, 7, 5), Ordering.ASCENDING
        )

        assert response.usage_entries == [first, second]
        assert response.pagination.total == 2
        assert response.credit_balance_at_start == 10.0
        assert response.credit_balance_at_end == 11.5

    def test_pagination_and_order(self):
        """Verify entries are paged newest first by default."""
        entries = [self._entry(100, utc(2022, 7, 1, h)) for h in range(6)]
        self.repository.upsert_usage(entries)

        response = self.service.list_usage(
            self.attribution_id, utc(2022, 7, 1), utc(2022, 7, 2), pagination=PaginatedRequest(per_page=4, page=2)
        )
        assert response.usage_entries == [entries[1], entries[0]]
        assert response.pagination.total_pages == 2

    def test_range_longer_than_31_days_fails(self):
        """Verify ranges beyond 31 days are rejected."""
        with pytest.raises(InvalidArgumentError):
            self.service.list_usage(self.attribution_id, utc(2022, 6, 1), utc(2022, 7, 5))


class TestGetCostCenter(UsageServiceTestCase):
    """Test cost center lookup."""

    def test_known_cost_center(self):
        """Verify the spending limit is returned."""
        self.repository.upsert_cost_center(CostCenter(self.attribution_id, 1000))
        assert self.service.get_cost_center(self.attribution_id).spending_limit == 1000

    def test_unknown_cost_center(self):
        """Verify unknown attributions are not found."""
        with pytest.raises(NotFoundError):
            self.service.get_cost_center(self.attribution_id)
