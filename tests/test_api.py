from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from account_lifecycle.api import admin, routes
from account_lifecycle.config import Settings, get_settings
from account_lifecycle.domain.reconciliation import ReconciliationJob
from account_lifecycle.domain.service import AccountLifecycleService
from account_lifecycle.jobs.run_lock import InMemoryRunLock
from account_lifecycle.jobs.scheduler import ReconciliationScheduler
from account_lifecycle.security.tokens import ADMIN_SCOPE, issue_access_token

from fakes import NOW, FakeRepository


def _bearer(subject: str, scopes: list[str] | None = None) -> dict[str, str]:
    token, _ = issue_access_token(subject=subject, scopes=scopes)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_client():
    """Provide a FastAPI test client with isolated state."""
    repository = FakeRepository()
    run_lock = InMemoryRunLock()
    scheduler = ReconciliationScheduler(ReconciliationJob(repository, clock=lambda: NOW), run_lock)

    app = FastAPI()
    app.include_router(routes.router)
    app.include_router(admin.router)
    app.state.lifecycle_service = AccountLifecycleService(repository, clock=lambda: NOW)
    app.state.reconciliation_scheduler = scheduler
    app.dependency_overrides[get_settings] = lambda: Settings(environment="production")

    with TestClient(app) as client:
        yield client, repository, app, run_lock


def test_admin_trigger_rejects_anonymous_callers(api_client):
    client, _, _, _ = api_client

    response = client.post("/v1/admin/reconciliation/runs")

    assert response.status_code == 401


def test_admin_trigger_requires_operator_scope(api_client):
    client, repository, _, _ = api_client
    account = repository.add_account("member")

    response = client.post("/v1/admin/reconciliation/runs", headers=_bearer(account.account_id))

    assert response.status_code == 403


def test_admin_trigger_allows_anonymous_in_development(api_client):
    client, _, app, _ = api_client
    app.dependency_overrides[get_settings] = lambda: Settings(environment="development")

    response = client.post("/v1/admin/reconciliation/runs")

    assert response.status_code == 200
    assert response.json()["processed"] == 0


def test_admin_trigger_returns_run_summary(api_client):
    client, repository, _, _ = api_client
    leaving = repository.add_account("leaving", deactivated_days_ago=31, pending_group_actions="[]")
    repository.add_account("resting", deactivated_days_ago=90)
    broken = repository.add_account("broken", deactivated_days_ago=31, pending_group_actions="oops")

    response = client.post("/v1/admin/reconciliation/runs", headers=_bearer("ops", [ADMIN_SCOPE]))

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 2
    assert body["succeeded"] == 1
    assert body["failed"] == 1
    assert body["errors"][0]["account_id"] == broken.account_id
    assert body["errors"][0]["stage"] == "deactivated"
    assert repository.accounts[leaving.account_id].is_deleted

    latest = client.get("/v1/admin/reconciliation/runs/latest", headers=_bearer("ops", [ADMIN_SCOPE]))
    assert latest.status_code == 200
    assert latest.json()["processed"] == 2


def test_latest_run_is_not_found_before_any_run(api_client):
    client, _, _, _ = api_client

    response = client.get("/v1/admin/reconciliation/runs/latest", headers=_bearer("ops", [ADMIN_SCOPE]))

    assert response.status_code == 404


def test_admin_trigger_conflicts_with_running_job(api_client):
    client, _, _, run_lock = api_client
    assert run_lock.acquire()

    response = client.post("/v1/admin/reconciliation/runs", headers=_bearer("ops", [ADMIN_SCOPE]))

    assert response.status_code == 409
    run_lock.release()


def test_admin_trigger_reports_selection_failure(api_client):
    client, repository, _, _ = api_client
    repository.fail_queries = True

    response = client.post("/v1/admin/reconciliation/runs", headers=_bearer("ops", [ADMIN_SCOPE]))

    assert response.status_code == 503


def test_account_routes_require_matching_subject(api_client):
    client, repository, _, _ = api_client
    account = repository.add_account("owner")

    anonymous = client.post(f"/v1/accounts/{account.account_id}/deactivate")
    someone_else = client.post(f"/v1/accounts/{account.account_id}/deactivate", headers=_bearer("intruder"))

    assert anonymous.status_code == 401
    assert someone_else.status_code == 403


def test_deletion_then_lock_hides_account(api_client):
    client, repository, _, _ = api_client
    leaving = repository.add_account("leaving")
    heir = repository.add_account("heir")
    group = repository.add_group("club", leaving, heir)
    headers = _bearer(leaving.account_id)

    groups = client.get(f"/v1/accounts/{leaving.account_id}/created-groups", headers=headers)
    assert groups.status_code == 200
    assert groups.json()[0]["can_transfer"] is True

    response = client.post(
        f"/v1/accounts/{leaving.account_id}/deletion",
        headers=headers,
        json={
            "group_actions": [
                {"action": "transfer", "group_id": group.group_id, "transfer_to_account_id": heir.account_id}
            ]
        },
    )
    assert response.status_code == 200
    assert response.json()["deletion_requested"] is True

    # pretend the grace period has passed
    repository.accounts[leaving.account_id].deactivated_at = NOW.replace(year=2025)
    run = client.post("/v1/admin/reconciliation/runs", headers=_bearer("ops", [ADMIN_SCOPE]))
    assert run.json()["succeeded"] == 1

    assert client.get(f"/v1/accounts/{leaving.account_id}", headers=headers).status_code == 404
    assert repository.groups[group.group_id].created_by_id == heir.account_id


def test_deletion_with_missing_group_actions_is_rejected(api_client):
    client, repository, _, _ = api_client
    leaving = repository.add_account("leaving")
    repository.add_group("club", leaving)

    response = client.post(
        f"/v1/accounts/{leaving.account_id}/deletion",
        headers=_bearer(leaving.account_id),
        json={"group_actions": []},
    )

    assert response.status_code == 400
    assert "missing actions" in response.json()["detail"]


def test_reactivate_requires_deactivated_account(api_client):
    client, repository, _, _ = api_client
    account = repository.add_account("active")
    headers = _bearer(account.account_id)

    assert client.post(f"/v1/accounts/{account.account_id}/reactivate", headers=headers).status_code == 409

    deactivated = client.post(f"/v1/accounts/{account.account_id}/deactivate", headers=headers)
    assert deactivated.json()["is_deactivated"] is True

    reactivated = client.post(f"/v1/accounts/{account.account_id}/reactivate", headers=headers)
    assert reactivated.status_code == 200
    assert reactivated.json()["is_deactivated"] is False
