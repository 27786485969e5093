"""Account lifecycle service: deactivation, deletion requests and reactivation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable

from .account import Account, Group, GroupRole
from .contracts import DeletionRequestInput
from .group_actions import TransferGroupAction, encode_group_actions
from ..errors import AccountNotFoundError, GroupActionValidationError, InvalidLifecycleTransitionError
from ..repository import AccountRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EligibleTransferMember:
    account_id: str
    username: str
    role: GroupRole
    is_eligible: bool


@dataclass(slots=True)
class GroupTransferEligibility:
    """A group created by the account and who could take it over."""

    group_id: str
    group_name: str
    member_count: int
    members: list[EligibleTransferMember] = field(default_factory=list)

    @property
    def can_transfer(self) -> bool:
        return any(member.is_eligible for member in self.members)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountLifecycleService:
    """Account lifecycle workflows backed by Postgres storage."""

    def __init__(self, repository: AccountRepository, clock: Callable[[], datetime] = _utcnow) -> None:
        """Store dependencies used to orchestrate persistence and auditing."""
        self._repository = repository
        self._clock = clock

    def get_account(self, account_id: str) -> Account | None:
        """Retrieve a visible (not permanently locked) account."""
        return self._repository.get_account(account_id)

    def deactivate(self, account_id: str) -> Account:
        """Take a break: deactivate without recording any deletion intent."""
        with self._repository.unit_of_work() as uow:
            account = self._require_account(uow, account_id)
            if account.is_deactivated:
                raise InvalidLifecycleTransitionError("account already deactivated")
            updated = replace(
                account,
                is_deactivated=True,
                deactivated_at=self._clock(),
                pending_group_actions=None,
            )
            uow.update_account(updated)
            uow.write_audit_event(
                account_id=account_id,
                event_type="account.deactivated",
                actor=account_id,
                metadata={},
            )
            uow.commit()
        logger.info("account %s deactivated", account_id)
        return updated

    def created_groups_with_transfer_eligibility(self, account_id: str) -> list[GroupTransferEligibility]:
        """List the groups the account created and which members could receive each one."""
        with self._repository.unit_of_work() as uow:
            self._require_account(uow, account_id)
            return [self._eligibility(uow, account_id, group) for group in uow.list_created_groups(account_id)]

    def request_deletion(self, payload: DeletionRequestInput) -> Account:
        """Deactivate the account and record what happens to each group it created.

        Every group the account created must receive exactly one decision, and a
        transfer must name an eligible member. The grace period starts now.
        """
        account_id = payload.account_id
        with self._repository.unit_of_work() as uow:
            account = self._require_account(uow, account_id)
            if account.deletion_requested:
                raise InvalidLifecycleTransitionError("account deletion already requested")

            owned = {group.group_id: group for group in uow.list_created_groups(account_id)}
            seen: set[str] = set()
            for action in payload.group_actions:
                if action.group_id in seen:
                    raise GroupActionValidationError(f"duplicate action for group {action.group_id}")
                seen.add(action.group_id)
                group = owned.get(action.group_id)
                if group is None:
                    raise GroupActionValidationError(f"group {action.group_id} is not owned by the account")
                if isinstance(action, TransferGroupAction):
                    eligibility = self._eligibility(uow, account_id, group)
                    eligible_ids = {m.account_id for m in eligibility.members if m.is_eligible}
                    if action.transfer_to_account_id not in eligible_ids:
                        raise GroupActionValidationError(
                            f"account {action.transfer_to_account_id} cannot receive group {group.group_id}"
                        )
            missing = sorted(set(owned) - seen)
            if missing:
                raise GroupActionValidationError(f"missing actions for groups: {', '.join(missing)}")

            updated = replace(
                account,
                is_deactivated=True,
                deactivated_at=self._clock(),
                pending_group_actions=encode_group_actions(payload.group_actions),
            )
            uow.update_account(updated)
            uow.write_audit_event(
                account_id=account_id,
                event_type="account.deletion_requested",
                actor=account_id,
                metadata={"group_actions": [action.model_dump() for action in payload.group_actions]},
            )
            uow.commit()
        logger.info("account %s scheduled for deletion with %d group actions", account_id, len(payload.group_actions))
        return updated

    def reactivate(self, account_id: str) -> Account:
        """Return a deactivated account to normal use, discarding any deletion request."""
        with self._repository.unit_of_work() as uow:
            account = self._require_account(uow, account_id)
            if not account.is_deactivated:
                raise InvalidLifecycleTransitionError("account is not deactivated")
            updated = replace(account, is_deactivated=False, deactivated_at=None, pending_group_actions=None)
            uow.update_account(updated)
            uow.write_audit_event(
                account_id=account_id,
                event_type="account.reactivated",
                actor=account_id,
                metadata={"cancelled_deletion": account.deletion_requested},
            )
            uow.commit()
        logger.info("account %s reactivated", account_id)
        return updated

    def _require_account(self, uow, account_id: str) -> Account:
        account = uow.get_account(account_id, for_update=True)
        if account is None:
            raise AccountNotFoundError("account not found")
        return account

    def _eligibility(self, uow, account_id: str, group: Group) -> GroupTransferEligibility:
        memberships = uow.list_group_members(group.group_id)
        members: list[EligibleTransferMember] = []
        for membership in memberships:
            if membership.account_id == account_id:
                continue
            member = uow.get_account(membership.account_id)
            if member is None:
                continue
            members.append(
                EligibleTransferMember(
                    account_id=member.account_id,
                    username=member.username,
                    role=membership.role,
                    is_eligible=not member.is_deactivated,
                )
            )
        return GroupTransferEligibility(
            group_id=group.group_id,
            group_name=group.name,
            member_count=len(memberships),
            members=members,
        )
