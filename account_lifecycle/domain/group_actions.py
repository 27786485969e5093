"""Pydantic contracts for the pending group actions payload stored on an account."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..errors import PendingActionsPayloadError


class TransferGroupAction(BaseModel):
    action: Literal["transfer"] = "transfer"
    group_id: str
    transfer_to_account_id: str


class DeleteGroupAction(BaseModel):
    action: Literal["delete"] = "delete"
    group_id: str


GroupAction = Annotated[
    Union[TransferGroupAction, DeleteGroupAction],
    Field(discriminator="action"),
]

_actions_adapter: TypeAdapter[list[GroupAction]] = TypeAdapter(list[GroupAction])


def encode_group_actions(actions: list[GroupAction]) -> str:
    """Serialise actions to the JSON text stored in ``pending_group_actions``.

    An empty list still encodes to a non-empty string, so an account owning no
    groups is still recognised as having requested deletion.
    """
    return _actions_adapter.dump_json(actions).decode("utf-8")


def decode_group_actions(payload: str | None) -> list[GroupAction]:
    """Parse a stored payload, raising ``PendingActionsPayloadError`` when malformed."""
    if not payload:
        return []
    try:
        return _actions_adapter.validate_json(payload)
    except ValidationError as exc:
        raise PendingActionsPayloadError(f"invalid pending group actions: {exc.error_count()} error(s)") from exc
