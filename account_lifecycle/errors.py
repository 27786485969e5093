"""Exception hierarchy for account lifecycle workflows."""

from __future__ import annotations


class AccountLifecycleError(Exception):
    """Base class for errors raised by this service."""


class AccountNotFoundError(AccountLifecycleError):
    pass


class InvalidLifecycleTransitionError(AccountLifecycleError):
    """Raised when an account is not in a state that allows the requested change."""


class GroupActionValidationError(AccountLifecycleError):
    """Raised when submitted group decisions do not cover the owned groups correctly."""


class PendingActionsPayloadError(AccountLifecycleError):
    pass


class PendingActionError(AccountLifecycleError):
    """Raised while applying a single group decision during reconciliation."""


class ReconciliationError(AccountLifecycleError):
    """Run-level failure: eligible accounts could not be selected at all."""


class RunInProgressError(AccountLifecycleError):
    """Raised when a reconciliation run is requested while another one holds the run lock."""


class RunLockUnavailableError(AccountLifecycleError):
    """Raised when the configured distributed run lock backend cannot be reached."""
