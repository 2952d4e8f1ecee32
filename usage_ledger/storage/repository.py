"""
Repository pattern for data access.

Reads workspace instances and ledger entries, and applies ledger changes
as single atomic batches.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    CostCenter,
    DraftUsage,
    FinalUsage,
    LedgerEntry,
    Usage,
    UsageKind,
    WorkspaceInstanceForUsage,
    WorkspaceInstanceUsage,
    WorkspaceType,
    cents_to_credits,
    decode_metadata,
    encode_metadata,
    from_iso8601,
    to_iso8601,
)

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS workspace_instance (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        project_id TEXT,
        workspace_class TEXT NOT NULL,
        workspace_type TEXT NOT NULL,
        usage_attribution_id TEXT NOT NULL,
        creation_time TEXT,
        started_time TEXT,
        stopping_time TEXT,
        stopped_time TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage (
        id TEXT PRIMARY KEY,
        attribution_id TEXT NOT NULL,
        description TEXT NOT NULL,
        credit_cents INTEGER NOT NULL,
        effective_time TEXT NOT NULL,
        kind TEXT NOT NULL,
        workspace_instance_id TEXT,
        draft INTEGER NOT NULL,
        metadata TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_usage_attribution_effective
    ON usage(attribution_id, effective_time)
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace_instance_usage (
        instance_id TEXT PRIMARY KEY,
        attribution_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        workspace_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        workspace_type TEXT NOT NULL,
        workspace_class TEXT NOT NULL,
        started_at TEXT NOT NULL,
        stopped_at TEXT,
        credits_used REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cost_center (
        attribution_id TEXT PRIMARY KEY,
        spending_limit INTEGER NOT NULL
    )
    """,
]

_INSTANCE_COLUMNS = (
    "id, workspace_id, owner_id, project_id, workspace_class, workspace_type, "
    "usage_attribution_id, creation_time, started_time, stopping_time, stopped_time"
)
_USAGE_COLUMNS = (
    "id, attribution_id, description, credit_cents, effective_time, kind, "
    "workspace_instance_id, draft, metadata"
)
_SESSION_COLUMNS = (
    "instance_id, attribution_id, user_id, workspace_id, project_id, workspace_type, "
    "workspace_class, started_at, stopped_at, credits_used"
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()


def _time_or_none(value: Optional[datetime]) -> Optional[str]:
    return to_iso8601(value) if value is not None else None


def _parse_time_or_none(value: Optional[str]) -> Optional[datetime]:
    return from_iso8601(value) if value else None


def _row_to_instance(row) -> WorkspaceInstanceForUsage:
    return WorkspaceInstanceForUsage(
        id=row[0],
        workspace_id=row[1],
        owner_id=row[2],
        project_id=row[3],
        workspace_class=row[4],
        workspace_type=WorkspaceType(row[5]),
        usage_attribution_id=row[6],
        creation_time=_parse_time_or_none(row[7]),
        started_time=_parse_time_or_none(row[8]),
        stopping_time=_parse_time_or_none(row[9]),
        stopped_time=_parse_time_or_none(row[10]),
    )


def _row_to_usage(row) -> LedgerEntry:
    kind = UsageKind(row[5])
    entry_type = DraftUsage if row[7] else FinalUsage
    return entry_type(
        id=row[0],
        attribution_id=row[1],
        description=row[2],
        credit_cents=row[3],
        effective_time=from_iso8601(row[4]),
        kind=kind,
        workspace_instance_id=row[6],
        metadata=decode_metadata(kind, row[8]),
    )


def _row_to_session(row) -> WorkspaceInstanceUsage:
    return WorkspaceInstanceUsage(
        instance_id=row[0],
        attribution_id=row[1],
        user_id=row[2],
        workspace_id=row[3],
        project_id=row[4],
        workspace_type=WorkspaceType(row[5]),
        workspace_class=row[6],
        started_at=from_iso8601(row[7]),
        stopped_at=_parse_time_or_none(row[8]),
        credits_used=row[9],
    )


class UsageRepository:
    """Repository for workspace instances, ledger entries and billed sessions.

    Each method opens its own connection. Batch writes run in a single
    transaction and roll back entirely on failure.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    def _write_batch(self, statement: str, rows: List[tuple]) -> None:
        if not rows:
            return
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany(statement, rows)
            conn.commit()
        except Exception:
            conn.rollback()
            logger.warning("Rolled back batch write of %d rows", len(rows))
            raise
        finally:
            conn.close()

    def _read(self, query: str, params: tuple) -> list:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()

    # Workspace instances

    def upsert_workspace_instances(self, instances: Iterable[WorkspaceInstanceForUsage]) -> None:
        """Insert or replace instance rows, as the workload manager does."""
        self._write_batch(
            f"INSERT OR REPLACE INTO workspace_instance ({_INSTANCE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    i.id,
                    i.workspace_id,
                    i.owner_id,
                    i.project_id,
                    i.workspace_class,
                    i.workspace_type.value,
                    i.usage_attribution_id,
                    _time_or_none(i.creation_time),
                    _time_or_none(i.started_time),
                    _time_or_none(i.stopping_time),
                    _time_or_none(i.stopped_time),
                )
                for i in instances
            ],
        )

    def find_workspace_instances_in_range(self, from_: datetime, to: datetime) -> List[WorkspaceInstanceForUsage]:
        """Find instances that were active at some point within [from_, to).

        Matches instances that started within the range, and instances that
        started before `to` and were still running at `from_`.
        """
        start, end = to_iso8601(from_), to_iso8601(to)
        rows = self._read(
            f"""
            SELECT {_INSTANCE_COLUMNS} FROM workspace_instance
            WHERE started_time IS NOT NULL AND (
                (started_time >= ? AND started_time < ?)
                OR (started_time < ? AND (stopping_time IS NULL OR stopping_time > ?))
            )
            ORDER BY started_time ASC, id ASC
            """,
            (start, end, end, start),
        )
        return [_row_to_instance(row) for row in rows]

    # Usage ledger

    def upsert_usage(self, entries: Iterable[Usage]) -> None:
        """Insert or update ledger entries by ID in one transaction.

        Final entries already in the ledger are never overwritten.
        """
        rows = []
        for entry in entries:
            rows.append((
                entry.id,
                entry.attribution_id,
                entry.description,
                entry.credit_cents,
                to_iso8601(entry.effective_time),
                entry.kind.value,
                entry.workspace_instance_id,
                1 if entry.draft else 0,
                encode_metadata(entry.metadata),
            ))
        self._write_batch(
            f"""
            INSERT INTO usage ({_USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                attribution_id = excluded.attribution_id,
                description = excluded.description,
                credit_cents = excluded.credit_cents,
                effective_time = excluded.effective_time,
                kind = excluded.kind,
                workspace_instance_id = excluded.workspace_instance_id,
                draft = excluded.draft,
                metadata = excluded.metadata
            WHERE usage.draft = 1
            """,
            rows,
        )

    def find_all_draft_usage(self) -> List[DraftUsage]:
        rows = self._read(
            f"SELECT {_USAGE_COLUMNS} FROM usage WHERE draft = 1 ORDER BY effective_time ASC, id ASC",
            (),
        )
        return [_row_to_usage(row) for row in rows]

    def find_usage(
        self,
        attribution_id: str,
        from_: datetime,
        to: datetime,
        exclude_drafts: bool = False,
    ) -> List[LedgerEntry]:
        """Find an attribution's entries effective within [from_, to)."""
        query = (
            f"SELECT {_USAGE_COLUMNS} FROM usage "
            "WHERE attribution_id = ? AND effective_time >= ? AND effective_time < ?"
        )
        if exclude_drafts:
            query += " AND draft = 0"
        query += " ORDER BY effective_time ASC, id ASC"
        rows = self._read(query, (attribution_id, to_iso8601(from_), to_iso8601(to)))
        return [_row_to_usage(row) for row in rows]

    def get_credit_balance(self, attribution_id: str, before: datetime) -> float:
        """Sum of an attribution's credits effective before the given instant."""
        rows = self._read(
            "SELECT COALESCE(SUM(credit_cents), 0) FROM usage WHERE attribution_id = ? AND effective_time < ?",
            (attribution_id, to_iso8601(before)),
        )
        return cents_to_credits(rows[0][0])

    # Billed sessions

    def upsert_billed_sessions(self, sessions: Iterable[WorkspaceInstanceUsage]) -> None:
        self._write_batch(
            f"INSERT OR REPLACE INTO workspace_instance_usage ({_SESSION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    s.instance_id,
                    s.attribution_id,
                    s.user_id,
                    s.workspace_id,
                    s.project_id,
                    s.workspace_type.value,
                    s.workspace_class,
                    to_iso8601(s.started_at),
                    _time_or_none(s.stopped_at),
                    s.credits_used,
                )
                for s in sessions
            ],
        )

    def find_billed_sessions(self, attribution_id: str, from_: datetime, to: datetime) -> List[WorkspaceInstanceUsage]:
        """Find an attribution's sessions that started within [from_, to)."""
        rows = self._read(
            f"""
            SELECT {_SESSION_COLUMNS} FROM workspace_instance_usage
            WHERE attribution_id = ? AND started_at >= ? AND started_at < ?
            ORDER BY started_at ASC, instance_id ASC
            """,
            (attribution_id, to_iso8601(from_), to_iso8601(to)),
        )
        return [_row_to_session(row) for row in rows]

    # Cost centers

    def upsert_cost_center(self, cost_center: CostCenter) -> None:
        self._write_batch(
            "INSERT OR REPLACE INTO cost_center (attribution_id, spending_limit) VALUES (?, ?)",
            [(cost_center.attribution_id, cost_center.spending_limit)],
        )

    def get_cost_center(self, attribution_id: str) -> Optional[CostCenter]:
        rows = self._read(
            "SELECT attribution_id, spending_limit FROM cost_center WHERE attribution_id = ?",
            (attribution_id,),
        )
        if not rows:
            return None
        return CostCenter(attribution_id=rows[0][0], spending_limit=rows[0][1])


def get_repository(db_path: str = DEFAULT_DB_PATH) -> UsageRepository:
    """Get a repository for the given database, creating its schema if needed.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of UsageRepository
    """
    repository = UsageRepository(db_path)
    repository.initialize_schema()
    return repository
