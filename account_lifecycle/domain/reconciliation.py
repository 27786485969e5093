"""Reconciliation job that permanently locks accounts whose deletion grace period has elapsed.

Eligible accounts are deactivated, past the grace period, not yet deleted and
carry a pending group actions payload. Accounts deactivated for a break have no
payload and are never selected.

Each account moves through ``deactivated -> actions_executed ->
memberships_pruned -> locked`` inside a single unit of work. A failure at any
step rolls the account back, is recorded as an :class:`AccountOutcome` and the
run moves on; only a failure to select accounts aborts the run.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterator

from .account import Account, GroupRole
from .contracts import AccountQuery
from .pending_actions import PendingActionExecutor
from ..errors import ReconciliationError
from ..metrics import (
    RECONCILIATION_ACCOUNTS,
    RECONCILIATION_ANOMALIES,
    RECONCILIATION_LAST_RUN,
    RECONCILIATION_RUNS,
)

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = timedelta(days=30)


class TransitionState(str, Enum):
    deactivated = "deactivated"
    actions_executed = "actions_executed"
    memberships_pruned = "memberships_pruned"
    locked = "locked"
    failed = "failed"


@dataclass(slots=True)
class AccountOutcome:
    """Result of driving one account through the lock transition."""

    account_id: str
    username: str
    state: TransitionState
    failed_at: TransitionState | None = None
    error: str | None = None
    anomalies: list[str] = field(default_factory=list)
    removed_memberships: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state is TransitionState.locked


@dataclass(slots=True)
class AccountFailure:
    account_id: str
    username: str
    stage: TransitionState
    error: str


@dataclass(slots=True)
class RunSummary:
    """Aggregated outcome of one reconciliation run."""

    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    anomalies: int = 0
    cancelled: bool = False
    errors: list[AccountFailure] = field(default_factory=list)
    outcomes: list[AccountOutcome] = field(default_factory=list)

    def record(self, outcome: AccountOutcome) -> None:
        self.processed += 1
        self.outcomes.append(outcome)
        self.anomalies += len(outcome.anomalies)
        if outcome.succeeded:
            self.succeeded += 1
            return
        self.failed += 1
        self.errors.append(
            AccountFailure(
                account_id=outcome.account_id,
                username=outcome.username,
                stage=outcome.failed_at or TransitionState.deactivated,
                error=outcome.error or "unknown error",
            )
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "anomalies": self.anomalies,
            "cancelled": self.cancelled,
            "errors": [
                {
                    "account_id": failure.account_id,
                    "username": failure.username,
                    "stage": failure.stage.value,
                    "error": failure.error,
                }
                for failure in self.errors
            ],
        }


def select_eligible_accounts(repository, now: datetime, grace_period: timedelta) -> Iterator[Account]:
    """Return the accounts due for permanent lock as of ``now``.

    The cutoff is inclusive: an account deactivated exactly ``grace_period``
    before ``now`` qualifies. The store is read once, when this is called.
    """
    cutoff = now - grace_period
    return repository.query_accounts(AccountQuery.eligible_for_lock(cutoff))


def lock_account(uow, account: Account, executor: PendingActionExecutor, now: datetime) -> AccountOutcome:
    """Drive one account to ``locked`` within ``uow``; commits only when every step succeeded."""
    outcome = AccountOutcome(
        account_id=account.account_id,
        username=account.username,
        state=TransitionState.deactivated,
    )
    try:
        result = executor.execute(uow, account, now)
        if not result.ok:
            return _fail(outcome, result.error or "pending group actions failed")
        outcome.state = TransitionState.actions_executed

        removable = uow.query_memberships(account.account_id, exclude_role=GroupRole.creator)
        if removable:
            logger.info("removing account %s from %d groups", account.account_id, len(removable))
        outcome.removed_memberships = uow.remove_memberships(removable)
        for leftover in uow.query_memberships(account.account_id):
            logger.warning(
                "account %s (%s) still holds creator membership of group %s after pending actions",
                account.account_id,
                account.username,
                leftover.group_id,
            )
            outcome.anomalies.append(leftover.group_id)
        outcome.state = TransitionState.memberships_pruned

        uow.update_account(replace(account, is_deleted=True, deleted_at=now))
        uow.write_audit_event(
            account_id=account.account_id,
            event_type="account.locked",
            actor="reconciliation",
            metadata={
                "transferred_groups": result.transferred,
                "deleted_groups": result.deleted,
                "skipped_groups": result.skipped,
                "removed_memberships": outcome.removed_memberships,
                "creator_anomalies": outcome.anomalies,
            },
        )
        uow.commit()
    except Exception as exc:
        logger.exception(
            "error processing account lock for %s (%s) at stage %s",
            account.account_id,
            account.username,
            outcome.state.value,
        )
        return _fail(outcome, str(exc) or exc.__class__.__name__)

    outcome.state = TransitionState.locked
    return outcome


def _fail(outcome: AccountOutcome, error: str) -> AccountOutcome:
    outcome.failed_at = outcome.state
    outcome.state = TransitionState.failed
    outcome.error = error
    return outcome


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationJob:
    """Select eligible accounts and lock them one at a time with failure isolation."""

    def __init__(
        self,
        repository,
        executor: PendingActionExecutor | None = None,
        *,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._executor = executor or PendingActionExecutor()
        self._grace_period = grace_period
        self._clock = clock
        self._stop_requested = threading.Event()

    @property
    def grace_period(self) -> timedelta:
        return self._grace_period

    def stop(self) -> None:
        """Stop picking up new accounts; the account in flight finishes its unit of work."""
        self._stop_requested.set()

    @property
    def stopping(self) -> bool:
        return self._stop_requested.is_set()

    def run(self, now: datetime | None = None, heartbeat: Callable[[], bool] | None = None) -> RunSummary:
        """Run one reconciliation pass and return its summary.

        A pending stop request from an earlier run is discarded. ``heartbeat``
        is called before each account; when it returns ``False`` the run lock
        has been lost and the remaining accounts are left for the next run.

        Raises
        ------
        ReconciliationError
            When the eligible accounts cannot be selected; nothing is processed.
        """
        self._stop_requested.clear()
        now = now or self._clock()
        summary = RunSummary(started_at=now)
        logger.info("starting account reconciliation at %s", now.isoformat())

        try:
            accounts = select_eligible_accounts(self._repository, now, self._grace_period)
        except Exception as exc:
            logger.exception("fatal error selecting accounts for reconciliation")
            RECONCILIATION_RUNS.labels(outcome="fatal").inc()
            raise ReconciliationError("eligible accounts could not be selected") from exc

        for account in accounts:
            if self._stop_requested.is_set():
                logger.warning("stop requested, leaving remaining accounts for the next run")
                summary.cancelled = True
                break
            if heartbeat is not None and not heartbeat():
                logger.error("run lock lost, leaving remaining accounts for the next run")
                summary.cancelled = True
                break
            summary.record(self._process(account, now))

        summary.finished_at = self._clock()
        RECONCILIATION_RUNS.labels(outcome="cancelled" if summary.cancelled else "completed").inc()
        RECONCILIATION_LAST_RUN.set(summary.finished_at.timestamp())
        logger.info(
            "account reconciliation finished at %s: processed=%d succeeded=%d failed=%d anomalies=%d",
            summary.finished_at.isoformat(),
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.anomalies,
        )
        return summary

    def _process(self, account: Account, now: datetime) -> AccountOutcome:
        logger.info(
            "processing permanent lock for account %s (%s), deactivated at %s",
            account.account_id,
            account.username,
            account.deactivated_at,
        )
        try:
            with self._repository.unit_of_work() as uow:
                outcome = lock_account(uow, account, self._executor, now)
        except Exception as exc:
            logger.exception("unit of work failed for account %s (%s)", account.account_id, account.username)
            outcome = _fail(
                AccountOutcome(account_id=account.account_id, username=account.username, state=TransitionState.deactivated),
                str(exc) or exc.__class__.__name__,
            )

        if outcome.succeeded:
            logger.info("locked account %s (%s)", account.account_id, account.username)
            RECONCILIATION_ACCOUNTS.labels(result="locked").inc()
        else:
            logger.error(
                "account %s (%s) not locked at stage %s: %s",
                account.account_id,
                account.username,
                outcome.failed_at.value if outcome.failed_at else "unknown",
                outcome.error,
            )
            RECONCILIATION_ACCOUNTS.labels(result="failed").inc()
        if outcome.anomalies:
            RECONCILIATION_ANOMALIES.inc(len(outcome.anomalies))
        return outcome
