from __future__ import annotations

import json

import pytest

from account_lifecycle.domain.account import GroupRole
from account_lifecycle.domain.group_actions import (
    DeleteGroupAction,
    TransferGroupAction,
    decode_group_actions,
    encode_group_actions,
)
from account_lifecycle.domain.pending_actions import PendingActionExecutor
from account_lifecycle.errors import PendingActionsPayloadError

from fakes import NOW


def _deleting(repo, username, actions):
    return repo.add_account(username, deactivated_days_ago=31, pending_group_actions=json.dumps(actions))


def test_empty_action_list_still_marks_deletion():
    payload = encode_group_actions([])

    assert payload == "[]"
    assert decode_group_actions(payload) == []


def test_decode_rejects_unknown_action():
    with pytest.raises(PendingActionsPayloadError):
        decode_group_actions(json.dumps([{"action": "archive", "group_id": "g-1"}]))


def test_decode_builds_tagged_variants():
    actions = decode_group_actions(
        json.dumps(
            [
                {"action": "transfer", "group_id": "g-1", "transfer_to_account_id": "a-2"},
                {"action": "delete", "group_id": "g-2"},
            ]
        )
    )

    assert isinstance(actions[0], TransferGroupAction)
    assert actions[0].transfer_to_account_id == "a-2"
    assert isinstance(actions[1], DeleteGroupAction)


def test_transfer_to_non_member_fails_without_side_effects(repo):
    outsider = repo.add_account("outsider")
    placeholder = repo.add_account("placeholder")
    leaving = _deleting(repo, "leaving", [])
    group = repo.add_group("club", leaving, placeholder)
    other = repo.add_group("other", leaving)
    repo.accounts[leaving.account_id].pending_group_actions = json.dumps(
        [
            {"action": "delete", "group_id": other.group_id},
            {"action": "transfer", "group_id": group.group_id, "transfer_to_account_id": outsider.account_id},
        ]
    )
    executor = PendingActionExecutor()

    with repo.unit_of_work() as uow:
        result = executor.execute(uow, uow.get_account(leaving.account_id), NOW)

    assert result.ok is False
    assert "not a member" in result.error
    # nothing was committed, including the delete that ran first
    assert not repo.groups[other.group_id].is_deleted
    assert repo.groups[group.group_id].created_by_id == leaving.account_id


def test_transfer_to_deactivated_member_fails(repo):
    resting = repo.add_account("resting", deactivated_days_ago=3)
    leaving = _deleting(repo, "leaving", [])
    group = repo.add_group("club", leaving, resting)
    repo.accounts[leaving.account_id].pending_group_actions = json.dumps(
        [{"action": "transfer", "group_id": group.group_id, "transfer_to_account_id": resting.account_id}]
    )

    with repo.unit_of_work() as uow:
        result = PendingActionExecutor().execute(uow, uow.get_account(leaving.account_id), NOW)

    assert result.ok is False
    assert "not an active account" in result.error


def test_stale_actions_are_skipped(repo):
    new_owner = repo.add_account("new-owner")
    leaving = _deleting(repo, "leaving", [])
    handed_over = repo.add_group("handed-over", new_owner, leaving)
    removed = repo.add_group("removed", leaving)
    repo.groups[removed.group_id].is_deleted = True
    repo.accounts[leaving.account_id].pending_group_actions = json.dumps(
        [
            {"action": "delete", "group_id": handed_over.group_id},
            {"action": "delete", "group_id": removed.group_id},
        ]
    )

    with repo.unit_of_work() as uow:
        result = PendingActionExecutor().execute(uow, uow.get_account(leaving.account_id), NOW)
        uow.commit()

    assert result.ok is True
    assert result.skipped == [handed_over.group_id, removed.group_id]
    assert not repo.groups[handed_over.group_id].is_deleted


def test_transfer_promotes_recipient_and_demotes_creator(repo):
    heir = repo.add_account("heir")
    leaving = _deleting(repo, "leaving", [])
    group = repo.add_group("club", leaving, admins=(heir,))
    repo.accounts[leaving.account_id].pending_group_actions = json.dumps(
        [{"action": "transfer", "group_id": group.group_id, "transfer_to_account_id": heir.account_id}]
    )

    with repo.unit_of_work() as uow:
        result = PendingActionExecutor().execute(uow, uow.get_account(leaving.account_id), NOW)
        uow.commit()

    assert result.transferred == [group.group_id]
    assert repo.roles_of(heir.account_id) == {group.group_id: GroupRole.creator}
    assert repo.roles_of(leaving.account_id) == {group.group_id: GroupRole.member}
    [event] = repo.events("group.transferred")
    assert event.metadata["to_account_id"] == heir.account_id
