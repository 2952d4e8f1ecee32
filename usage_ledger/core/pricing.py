"""
Credit pricing for workspace instances.

Maps workspace classes to credit rates and computes the credits an
instance has used.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping

from .errors import ConfigurationError, UnknownWorkspaceClassError
from usage_ledger.storage.models import WorkspaceInstanceForUsage


DEFAULT_WORKSPACE_CLASS = "default"

# Credits per hour of runtime
DEFAULT_CREDIT_RATES: Dict[str, float] = {
    DEFAULT_WORKSPACE_CLASS: 10.0,
    "g1-standard": 10.0,
    "g1-standard-pvc": 10.0,
    "g1-large": 20.0,
    "g1-large-pvc": 20.0,
    "gitpodio-internal-xl": 20.0,
}


@dataclass(frozen=True)
class WorkspacePricer:
    """Credit rates per workspace class, in credits per hour."""
    rates: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_CREDIT_RATES))

    def __post_init__(self):
        """Validate the rate table is non-empty with non-negative rates."""
        if not self.rates:
            raise ConfigurationError("Workspace class rates cannot be empty")
        for workspace_class, rate in self.rates.items():
            if not math.isfinite(rate):
                raise ConfigurationError(
                    f"Rate for workspace class '{workspace_class}' must be finite: {rate}"
                )
            if rate < 0:
                raise ConfigurationError(
                    f"Rate for workspace class '{workspace_class}' cannot be negative: {rate}"
                )
        object.__setattr__(self, "rates", dict(self.rates))

    def credits_per_hour(self, workspace_class: str) -> float:
        """Get the rate for a class, falling back to the default class.

        Raises:
            UnknownWorkspaceClassError: If neither the class nor a default rate is configured
        """
        if workspace_class in self.rates:
            return self.rates[workspace_class]
        if DEFAULT_WORKSPACE_CLASS in self.rates:
            return self.rates[DEFAULT_WORKSPACE_CLASS]
        raise UnknownWorkspaceClassError(workspace_class)

    def credits(self, workspace_class: str, runtime_seconds: int) -> float:
        return runtime_seconds / 3600 * self.credits_per_hour(workspace_class)

    def credits_used_by_instance(self, instance: WorkspaceInstanceForUsage, now: datetime) -> float:
        """Credits used by an instance from its start until it stopped, or until now.

        Unstarted instances cost nothing; callers exclude them upstream.
        """
        if instance.started_time is None:
            return 0.0
        return self.credits(instance.workspace_class, runtime_seconds(instance, now))


def runtime_seconds(instance: WorkspaceInstanceForUsage, now: datetime) -> int:
    """Runtime rounded to the nearest whole second, never negative."""
    end = instance.stopping_time if instance.stopping_time is not None else now
    elapsed = (end - instance.started_time).total_seconds()
    if elapsed <= 0:
        return 0
    return int(Decimal(repr(elapsed)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
