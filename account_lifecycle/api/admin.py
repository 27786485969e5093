"""Operator endpoints for triggering and inspecting account reconciliation."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ..domain.reconciliation import RunSummary
from ..errors import ReconciliationError, RunInProgressError
from ..jobs.scheduler import ReconciliationScheduler
from .dependencies import get_scheduler, require_operator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin/reconciliation", tags=["admin"])


class AccountFailureEntry(BaseModel):
    account_id: str
    username: str
    stage: str
    error: str


class RunSummaryResponse(BaseModel):
    """Counts and per-account errors of one reconciliation run."""

    started_at: datetime
    finished_at: datetime | None = None
    processed: int
    succeeded: int
    failed: int
    anomalies: int
    cancelled: bool
    errors: list[AccountFailureEntry]
    next_run: datetime | None = None

    @classmethod
    def from_domain(cls, summary: RunSummary, next_run: datetime | None = None) -> "RunSummaryResponse":
        return cls(
            started_at=summary.started_at,
            finished_at=summary.finished_at,
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
            anomalies=summary.anomalies,
            cancelled=summary.cancelled,
            errors=[
                AccountFailureEntry(
                    account_id=failure.account_id,
                    username=failure.username,
                    stage=failure.stage.value,
                    error=failure.error,
                )
                for failure in summary.errors
            ],
            next_run=next_run,
        )


@router.post("/runs", response_model=RunSummaryResponse)
def trigger_run(
    operator: str = Depends(require_operator),
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> RunSummaryResponse:
    """Run reconciliation immediately and return its summary."""
    logger.info("manual reconciliation requested by %s", operator)
    try:
        summary = scheduler.trigger(source=f"operator:{operator}")
    except RunInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ReconciliationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RunSummaryResponse.from_domain(summary, scheduler.next_run)


@router.get("/runs/latest", response_model=RunSummaryResponse)
def latest_run(
    operator: str = Depends(require_operator),
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> RunSummaryResponse:
    """Return the summary of the most recent run handled by this process."""
    summary = scheduler.last_summary
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no reconciliation run recorded")
    return RunSummaryResponse.from_domain(summary, scheduler.next_run)
