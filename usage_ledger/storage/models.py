"""
Data models for storage layer.

Defines workspace instances, ledger entries and the helpers that encode
them at the storage boundary.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from usage_ledger.core.errors import InvalidArgumentError, SerializationError


TEAM_ATTRIBUTION = "team"
USER_ATTRIBUTION = "user"


def new_team_attribution_id(team_id: str) -> str:
    return f"{TEAM_ATTRIBUTION}:{team_id}"


def new_user_attribution_id(user_id: str) -> str:
    return f"{USER_ATTRIBUTION}:{user_id}"


def parse_attribution_id(attribution_id: str) -> Tuple[str, str]:
    """Split an attribution ID into its (kind, entity id) parts.

    Raises:
        InvalidArgumentError: If the ID is not of the form "<kind>:<id>"
    """
    kind, sep, entity_id = attribution_id.partition(":")
    if not sep or kind not in (TEAM_ATTRIBUTION, USER_ATTRIBUTION) or not entity_id:
        raise InvalidArgumentError(f"Invalid attribution ID: {attribution_id!r}")
    return kind, entity_id


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond precision, which the store does not keep."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def to_iso8601(value: datetime) -> str:
    """Encode as e.g. 2022-08-17T09:40:53.115Z."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def from_iso8601(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def credits_to_cents(credits: float) -> int:
    """Convert floating credits to integer credit-cents, rounding half away from zero."""
    return int((Decimal(repr(credits)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_credits(credit_cents: int) -> float:
    return credit_cents / 100


class WorkspaceType(Enum):
    REGULAR = "regular"
    PREBUILD = "prebuild"
    IMAGEBUILD = "imagebuild"


class UsageKind(Enum):
    WORKSPACE_INSTANCE = "workspaceinstance"
    INVOICE = "invoice"


@dataclass(frozen=True)
class WorkspaceInstanceForUsage:
    """A workspace instance row as seen by usage computation.

    A missing started_time makes the instance invalid for billing; a missing
    stopping_time means the instance is still running.
    """
    id: str
    workspace_id: str
    owner_id: str
    workspace_class: str
    workspace_type: WorkspaceType
    usage_attribution_id: str
    started_time: Optional[datetime] = None
    stopping_time: Optional[datetime] = None
    project_id: Optional[str] = None
    creation_time: Optional[datetime] = None
    stopped_time: Optional[datetime] = None


@dataclass(frozen=True)
class WorkspaceInstanceUsage:
    """Billed session: the credits one instance used within a report."""
    instance_id: str
    attribution_id: str
    user_id: str
    workspace_id: str
    project_id: str
    workspace_type: WorkspaceType
    workspace_class: str
    started_at: datetime
    stopped_at: Optional[datetime]
    credits_used: float

    def __post_init__(self):
        if self.credits_used < 0:
            raise ValueError("credits_used cannot be negative")

    @property
    def team_id(self) -> str:
        """Team ID when the session is attributed to a team, else empty."""
        kind, entity_id = parse_attribution_id(self.attribution_id)
        return entity_id if kind == TEAM_ATTRIBUTION else ""


@dataclass(frozen=True)
class WorkspaceInstanceUsageData:
    """Metadata payload of a workspace-instance usage entry."""
    workspace_id: str
    workspace_type: WorkspaceType
    workspace_class: str
    context_url: str = ""
    start_time: str = ""
    end_time: str = ""
    user_name: str = ""
    user_avatar_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workspaceId": self.workspace_id,
            "workspaceType": self.workspace_type.value,
            "workspaceClass": self.workspace_class,
            "contextURL": self.context_url,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "userName": self.user_name,
            "userAvatarURL": self.user_avatar_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkspaceInstanceUsageData":
        return cls(
            workspace_id=data["workspaceId"],
            workspace_type=WorkspaceType(data["workspaceType"]),
            workspace_class=data["workspaceClass"],
            context_url=data.get("contextURL", ""),
            start_time=data.get("startTime", ""),
            end_time=data.get("endTime", ""),
            user_name=data.get("userName", ""),
            user_avatar_url=data.get("userAvatarURL", ""),
        )


# Known metadata payloads. Invoice entries carry none.
UsageMetadata = Optional[WorkspaceInstanceUsageData]


def encode_metadata(metadata: UsageMetadata) -> Optional[str]:
    """Encode a metadata payload to its JSON column value.

    Raises:
        SerializationError: If the payload cannot be encoded
    """
    if metadata is None:
        return None
    try:
        return json.dumps(metadata.to_dict(), allow_nan=False)
    except (TypeError, ValueError, AttributeError) as e:
        raise SerializationError(f"Failed to encode usage metadata: {e}") from e


def decode_metadata(kind: UsageKind, raw: Optional[str]) -> UsageMetadata:
    """Decode a JSON column value into the payload type for the given kind.

    Raises:
        SerializationError: If the stored value is not a valid payload
    """
    if not raw or kind != UsageKind.WORKSPACE_INSTANCE:
        return None
    try:
        return WorkspaceInstanceUsageData.from_dict(json.loads(raw))
    except (TypeError, ValueError, KeyError) as e:
        raise SerializationError(f"Failed to decode usage metadata: {e}") from e


@dataclass(frozen=True)
class Usage:
    """Ledger entry. Use DraftUsage or FinalUsage, never this class directly."""
    id: str
    attribution_id: str
    description: str
    credit_cents: int
    effective_time: datetime
    kind: UsageKind
    workspace_instance_id: Optional[str] = None
    metadata: UsageMetadata = None

    @property
    def credits(self) -> float:
        return cents_to_credits(self.credit_cents)

    @property
    def draft(self) -> bool:
        return isinstance(self, DraftUsage)


@dataclass(frozen=True)
class DraftUsage(Usage):
    """Mutable entry, recomputed wholesale on each reconciliation pass."""


@dataclass(frozen=True)
class FinalUsage(Usage):
    """Immutable entry; never modified once written."""


LedgerEntry = Union[DraftUsage, FinalUsage]


@dataclass(frozen=True)
class CostCenter:
    attribution_id: str
    spending_limit: int
