"""Execute the group ownership decisions recorded when an account asked for deletion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime

from .account import Account, GroupRole
from .group_actions import DeleteGroupAction, TransferGroupAction, decode_group_actions
from ..errors import AccountLifecycleError, PendingActionError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingActionResult:
    """Success or failure of one account's pending group actions."""

    ok: bool
    error: str | None = None
    transferred: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @classmethod
    def failure(cls, error: str) -> "PendingActionResult":
        return cls(ok=False, error=error)


class PendingActionExecutor:
    """Applies transfer/delete decisions inside the caller's unit of work.

    The executor never commits. Every change lands in the account's
    transaction, so a failure on any group leaves all groups untouched.
    """

    def execute(self, uow, account: Account, now: datetime) -> PendingActionResult:
        try:
            actions = decode_group_actions(account.pending_group_actions)
        except AccountLifecycleError as exc:
            return PendingActionResult.failure(str(exc))

        result = PendingActionResult(ok=True)
        for action in actions:
            group = uow.get_group(action.group_id)
            if group is None or group.created_by_id != account.account_id:
                logger.warning(
                    "skipping stale %s action for group %s of account %s",
                    action.action,
                    action.group_id,
                    account.account_id,
                )
                result.skipped.append(action.group_id)
                continue
            try:
                if isinstance(action, TransferGroupAction):
                    self._transfer(uow, account, group, action, now)
                    result.transferred.append(group.group_id)
                elif isinstance(action, DeleteGroupAction):
                    self._delete(uow, account, group, now)
                    result.deleted.append(group.group_id)
            except PendingActionError as exc:
                return PendingActionResult.failure(str(exc))
        return result

    def _transfer(self, uow, account: Account, group, action: TransferGroupAction, now: datetime) -> None:
        recipient_id = action.transfer_to_account_id
        if recipient_id == account.account_id:
            raise PendingActionError(f"group {group.group_id} cannot be transferred to its current creator")
        recipient = uow.get_account(recipient_id)
        if recipient is None or recipient.is_deactivated:
            raise PendingActionError(f"transfer recipient {recipient_id} is not an active account")

        members = {m.account_id: m for m in uow.list_group_members(group.group_id)}
        recipient_membership = members.get(recipient_id)
        if recipient_membership is None:
            raise PendingActionError(f"transfer recipient {recipient_id} is not a member of group {group.group_id}")

        uow.update_group(replace(group, created_by_id=recipient_id))
        uow.save_membership(replace(recipient_membership, role=GroupRole.creator))
        departing = members.get(account.account_id)
        if departing is not None:
            uow.save_membership(replace(departing, role=GroupRole.member))
        uow.write_audit_event(
            account_id=account.account_id,
            event_type="group.transferred",
            actor="reconciliation",
            metadata={"group_id": group.group_id, "to_account_id": recipient_id, "at": now.isoformat()},
        )
        logger.info("transferred group %s from %s to %s", group.group_id, account.account_id, recipient_id)

    def _delete(self, uow, account: Account, group, now: datetime) -> None:
        uow.update_group(replace(group, is_deleted=True, deleted_at=now))
        uow.remove_memberships(uow.list_group_members(group.group_id))
        uow.write_audit_event(
            account_id=account.account_id,
            event_type="group.deleted",
            actor="reconciliation",
            metadata={"group_id": group.group_id, "at": now.isoformat()},
        )
        logger.info("deleted group %s owned by %s", group.group_id, account.account_id)
