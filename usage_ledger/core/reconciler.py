"""
Reconciliation of workspace instances with the usage ledger.

Recomputes draft usage entries from the live instance snapshot. Only draft
entries are ever read or produced here; final entries are immutable.

The computation is pure: callers apply the returned inserts and updates
as one atomic batch, and must not run overlapping reconciliations over
the same instances.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Tuple

from .pricing import WorkspacePricer
from usage_ledger.storage.models import (
    DraftUsage,
    Usage,
    UsageKind,
    WorkspaceInstanceForUsage,
    WorkspaceInstanceUsageData,
    credits_to_cents,
    encode_metadata,
    to_iso8601,
)

logger = logging.getLogger(__name__)

USAGE_DESCRIPTION_FROM_CONTROLLER = "Usage collected by automated system."


def reconcile_usage_with_ledger(
    instances: Iterable[WorkspaceInstanceForUsage],
    drafts: Iterable[Usage],
    pricer: WorkspacePricer,
    now: datetime,
) -> Tuple[List[DraftUsage], List[DraftUsage]]:
    """Compute the draft entries to insert and update for a snapshot.

    Instances are priced against `now` with no capping. An instance that
    already has a draft keeps that draft's ID; a draft that already matches
    its recomputed form produces no update. Drafts without a live instance
    are left alone. Instances that never started are skipped.

    Args:
        instances: Instance snapshot, possibly with duplicate IDs
        drafts: Existing ledger entries; non-draft entries are ignored
        pricer: Pricer used to compute credits
        now: Effective time of the recomputed entries

    Returns:
        (inserts, updates)

    Raises:
        SerializationError: If metadata for any entry cannot be encoded
        UnknownWorkspaceClassError: If an instance cannot be priced
    """
    drafts_by_instance: Dict[str, DraftUsage] = {}
    for entry in drafts:
        if isinstance(entry, DraftUsage) and entry.workspace_instance_id:
            drafts_by_instance.setdefault(entry.workspace_instance_id, entry)

    inserts: List[DraftUsage] = []
    updates: List[DraftUsage] = []
    for instance in _dedup_instances(instances):
        if instance.started_time is None:
            logger.debug("Skipping instance %s with no started time", instance.id)
            continue
        existing = drafts_by_instance.get(instance.id)
        usage_id = existing.id if existing is not None else str(uuid.uuid4())
        record = _draft_from_instance(usage_id, instance, pricer, now)

        if existing is None:
            inserts.append(record)
        elif existing != record:
            updates.append(record)

    # Encode everything before returning so a bad payload fails the whole batch
    for record in inserts + updates:
        encode_metadata(record.metadata)

    logger.debug("Reconciled usage with ledger: %d inserts, %d updates", len(inserts), len(updates))
    return inserts, updates


def _dedup_instances(instances: Iterable[WorkspaceInstanceForUsage]) -> List[WorkspaceInstanceForUsage]:
    """Keep the first occurrence of each instance ID."""
    seen: Dict[str, WorkspaceInstanceForUsage] = {}
    for instance in instances:
        first = seen.get(instance.id)
        if first is None:
            seen[instance.id] = instance
        elif first != instance:
            logger.warning("Duplicate instance %s with diverging data, keeping first occurrence", instance.id)
    return list(seen.values())


def _draft_from_instance(
    usage_id: str,
    instance: WorkspaceInstanceForUsage,
    pricer: WorkspacePricer,
    now: datetime,
) -> DraftUsage:
    credits = pricer.credits_used_by_instance(instance, now)
    start_time = to_iso8601(instance.started_time)
    return DraftUsage(
        id=usage_id,
        attribution_id=instance.usage_attribution_id,
        description=USAGE_DESCRIPTION_FROM_CONTROLLER,
        credit_cents=credits_to_cents(credits),
        effective_time=now,
        kind=UsageKind.WORKSPACE_INSTANCE,
        workspace_instance_id=instance.id,
        metadata=WorkspaceInstanceUsageData(
            workspace_id=instance.workspace_id,
            workspace_type=instance.workspace_type,
            workspace_class=instance.workspace_class,
            start_time=start_time,
            end_time="",
        ),
    )
