"""HTTP route definitions for account lifecycle transitions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field

from ..domain.account import Account, GroupRole
from ..domain.contracts import DeletionRequestInput
from ..domain.group_actions import GroupAction
from ..domain.service import AccountLifecycleService, GroupTransferEligibility
from ..errors import (
    AccountLifecycleError,
    AccountNotFoundError,
    InvalidLifecycleTransitionError,
)
from .dependencies import get_service, require_account_subject

router = APIRouter(prefix="/v1")


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate."""

    account_id: str
    username: str
    email: EmailStr
    created_at: str
    is_deactivated: bool
    deactivated_at: str | None = None
    deletion_requested: bool

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            username=account.username,
            email=account.email,
            created_at=account.created_at.isoformat(),
            is_deactivated=account.is_deactivated,
            deactivated_at=account.deactivated_at.isoformat() if account.deactivated_at else None,
            deletion_requested=account.deletion_requested,
        )


class EligibleMemberResponse(BaseModel):
    account_id: str
    username: str
    role: GroupRole
    is_eligible: bool


class CreatedGroupResponse(BaseModel):
    """A group the account created together with who could take it over."""

    group_id: str
    group_name: str
    member_count: int
    can_transfer: bool
    members: list[EligibleMemberResponse]

    @classmethod
    def from_domain(cls, group: GroupTransferEligibility) -> "CreatedGroupResponse":
        return cls(
            group_id=group.group_id,
            group_name=group.group_name,
            member_count=group.member_count,
            can_transfer=group.can_transfer,
            members=[
                EligibleMemberResponse(
                    account_id=member.account_id,
                    username=member.username,
                    role=member.role,
                    is_eligible=member.is_eligible,
                )
                for member in group.members
            ],
        )


class DeletionRequest(BaseModel):
    """One decision per created group: transfer to a member or delete."""

    group_actions: list[GroupAction] = Field(default_factory=list)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str = Depends(require_account_subject),
    service: AccountLifecycleService = Depends(get_service),
) -> AccountResponse:
    """Retrieve an account; permanently locked accounts are not found."""
    account = service.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/deactivate", response_model=AccountResponse)
def deactivate_account(
    account_id: str = Depends(require_account_subject),
    service: AccountLifecycleService = Depends(get_service),
) -> AccountResponse:
    """Deactivate the account for a break; it can be reactivated at any time."""
    try:
        account = service.deactivate(account_id)
    except AccountLifecycleError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/accounts/{account_id}/created-groups", response_model=list[CreatedGroupResponse])
def list_created_groups(
    account_id: str = Depends(require_account_subject),
    service: AccountLifecycleService = Depends(get_service),
) -> list[CreatedGroupResponse]:
    """List the account's groups with the members eligible to receive ownership."""
    try:
        groups = service.created_groups_with_transfer_eligibility(account_id)
    except AccountLifecycleError as exc:
        raise _http_error(exc) from exc
    return [CreatedGroupResponse.from_domain(group) for group in groups]


@router.post("/accounts/{account_id}/deletion", response_model=AccountResponse)
def request_deletion(
    payload: DeletionRequest,
    account_id: str = Depends(require_account_subject),
    service: AccountLifecycleService = Depends(get_service),
) -> AccountResponse:
    """Deactivate the account and schedule its permanent lock after the grace period."""
    try:
        account = service.request_deletion(
            DeletionRequestInput(account_id=account_id, group_actions=payload.group_actions)
        )
    except AccountLifecycleError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/reactivate", response_model=AccountResponse)
def reactivate_account(
    account_id: str = Depends(require_account_subject),
    service: AccountLifecycleService = Depends(get_service),
) -> AccountResponse:
    """Reactivate a deactivated account and cancel any pending deletion."""
    try:
        account = service.reactivate(account_id)
    except AccountLifecycleError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


def _http_error(exc: AccountLifecycleError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    if isinstance(exc, AccountNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InvalidLifecycleTransitionError):
        status_code = status.HTTP_409_CONFLICT
    return HTTPException(status_code=status_code, detail=str(exc))
