"""
Error taxonomy for usage computation and billing queries.

Library code raises these; only the CLI turns them into exit codes.
"""


class UsageError(Exception):
    """Base class for all usage ledger errors."""


class InvalidArgumentError(UsageError, ValueError):
    """Raised when a request carries a malformed range or pagination."""


class UnknownWorkspaceClassError(InvalidArgumentError):
    """Raised when an instance's class has no rate and no default rate exists."""
    def __init__(self, workspace_class: str):
        super().__init__(f"No credit rate configured for workspace class: {workspace_class}")
        self.workspace_class = workspace_class


class ConfigurationError(UsageError, ValueError):
    """Raised when rates or configuration files are invalid."""


class NotFoundError(UsageError, LookupError):
    """Raised when an attribution or cost center is unknown."""


class SerializationError(UsageError):
    """Raised when usage metadata cannot be encoded or decoded."""
