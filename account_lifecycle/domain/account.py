from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class GroupRole(str, Enum):
    member = "member"
    admin = "admin"
    creator = "creator"


@dataclass(slots=True)
class Account:
    """Aggregate root for a registered user and its lifecycle flags."""

    account_id: str
    username: str
    email: str
    created_at: datetime
    is_deactivated: bool = False
    deactivated_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    pending_group_actions: str | None = None

    @property
    def deletion_requested(self) -> bool:
        """A non-empty pending-actions payload is the only marker of a deletion request."""
        return bool(self.pending_group_actions)


@dataclass(slots=True)
class Group:
    group_id: str
    name: str
    created_by_id: str
    created_at: datetime
    is_deleted: bool = False
    deleted_at: datetime | None = None


@dataclass(slots=True)
class GroupMembership:
    """Relates an account to a group with a role."""

    group_id: str
    account_id: str
    role: GroupRole
    joined_at: datetime

    @property
    def is_creator(self) -> bool:
        return self.role is GroupRole.creator
