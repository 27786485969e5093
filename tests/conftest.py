from __future__ import annotations

import pytest

from account_lifecycle.domain.reconciliation import ReconciliationJob

from fakes import NOW, FakeRepository


@pytest.fixture()
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture()
def job(repo: FakeRepository) -> ReconciliationJob:
    return ReconciliationJob(repo, clock=lambda: NOW)
