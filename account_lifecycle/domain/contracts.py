"""Domain-level query predicates and request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .group_actions import GroupAction


@dataclass(frozen=True, slots=True)
class AccountQuery:
    """Explicit predicate over the accounts table.

    ``include_deleted`` is the soft-delete visibility switch; every read path
    composes it rather than relying on an implicit filter.
    """

    is_deactivated: bool | None = None
    deactivated_before: datetime | None = None
    has_pending_group_actions: bool | None = None
    include_deleted: bool = False

    @classmethod
    def eligible_for_lock(cls, cutoff: datetime) -> "AccountQuery":
        """Accounts deactivated at or before ``cutoff`` that asked for deletion."""
        return cls(
            is_deactivated=True,
            deactivated_before=cutoff,
            has_pending_group_actions=True,
            include_deleted=False,
        )

    def matches(self, account) -> bool:
        """Evaluate the predicate against an in-memory account."""
        if not self.include_deleted and account.is_deleted:
            return False
        if self.is_deactivated is not None and account.is_deactivated != self.is_deactivated:
            return False
        if self.deactivated_before is not None:
            if account.deactivated_at is None or account.deactivated_at > self.deactivated_before:
                return False
        if self.has_pending_group_actions is not None:
            if bool(account.pending_group_actions) != self.has_pending_group_actions:
                return False
        return True


@dataclass(slots=True)
class DeletionRequestInput:
    """Validated inputs for scheduling an account for permanent deletion."""

    account_id: str
    group_actions: list[GroupAction] = field(default_factory=list)
