"""
Usage record compilation.

Turns raw workspace instance rows into billed sessions for reporting.
Stop times are capped at the report's cap time; reconciliation uses its
own uncapped path in reconciler.py.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, List

from .pricing import WorkspacePricer
from usage_ledger.storage.models import WorkspaceInstanceForUsage, WorkspaceInstanceUsage


INVALID_REASON_NOT_STARTED = "instance has no started time"


@dataclass(frozen=True)
class InvalidSession:
    """An instance row that could not be billed."""
    instance_id: str
    reason: str


@dataclass
class CompiledUsage:
    """Billed sessions in input order, plus the rows that were rejected."""
    records: List[WorkspaceInstanceUsage] = field(default_factory=list)
    invalid_sessions: List[InvalidSession] = field(default_factory=list)


def instances_to_usage_records(
    instances: Iterable[WorkspaceInstanceForUsage],
    pricer: WorkspacePricer,
    cap: datetime,
) -> CompiledUsage:
    """Compile instances into billed sessions as of the cap time.

    Args:
        instances: Raw instance rows
        pricer: Pricer used to compute credits
        cap: Latest instant usage is counted up to; running instances
            and instances stopping later are billed until here

    Returns:
        CompiledUsage with one record per billable instance
    """
    compiled = CompiledUsage()
    for instance in instances:
        if instance.started_time is None:
            compiled.invalid_sessions.append(
                InvalidSession(instance_id=instance.id, reason=INVALID_REASON_NOT_STARTED)
            )
            continue
        if instance.started_time > cap:
            # Not yet running at the cap
            continue

        stopped_at = instance.stopping_time
        if stopped_at is not None and stopped_at > cap:
            stopped_at = cap
        capped = replace(instance, stopping_time=stopped_at)

        compiled.records.append(WorkspaceInstanceUsage(
            instance_id=instance.id,
            attribution_id=instance.usage_attribution_id,
            user_id=instance.owner_id,
            workspace_id=instance.workspace_id,
            project_id=instance.project_id or "",
            workspace_type=instance.workspace_type,
            workspace_class=instance.workspace_class,
            started_at=instance.started_time,
            stopped_at=stopped_at,
            credits_used=pricer.credits_used_by_instance(capped, cap),
        ))
    return compiled
