"""
Tests for the season admin API.
"""

import httpx
import pytest_asyncio

from app.admin.admin_auth import admin_auth
from app.api.dependencies import get_wizard
from app.main import create_app
from app.services.wizard import WizardStep
from tests.conftest import address

PREFIX = "/api/v1/admin/seasons"
ADMIN_KEY = "test-admin-key"
HEADERS = {"Authorization": f"Bearer {ADMIN_KEY}"}


@pytest_asyncio.fixture
async def client(wizard, monkeypatch):
    monkeypatch.setattr(admin_auth, "admin_api_key", ADMIN_KEY)
    app = create_app()
    app.dependency_overrides[get_wizard] = lambda: wizard

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def test_requires_admin_token(client):
    response = await client.get(f"{PREFIX}/1/wizard", headers={"Authorization": "Bearer wrong"})

    assert response.status_code == 401


async def test_rejects_invalid_season_number(client):
    response = await client.get(f"{PREFIX}/0/wizard", headers=HEADERS)

    assert response.status_code == 400


async def test_missing_wizard_is_404(client):
    response = await client.get(f"{PREFIX}/1/wizard", headers=HEADERS)

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "NOT_FOUND"


async def test_full_finalization_flow(client, ended_season):
    response = await client.post(f"{PREFIX}/{ended_season}/wizard", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["data"]["current_step"] == 2

    response = await client.post(f"{PREFIX}/{ended_season}/wizard/sync", headers=HEADERS)
    assert response.status_code == 200

    response = await client.post(
        f"{PREFIX}/{ended_season}/wizard/compute",
        json={"total_pool": "2100"},
        headers=HEADERS
    )
    assert response.status_code == 200
    plan = response.json()["data"]["step_data"]["compute"]["plan"]
    assert plan["total_amount"] == "2100"

    response = await client.get(f"{PREFIX}/{ended_season}/plan/recipients", headers=HEADERS)
    assert response.json()["data"]["all_valid"] is True

    response = await client.post(f"{PREFIX}/{ended_season}/plan/simulate", json={"batch_size": 3}, headers=HEADERS)
    assert response.json()["data"]["batch_count"] == 3

    response = await client.post(f"{PREFIX}/{ended_season}/wizard/approve", headers=HEADERS)
    assert response.json()["data"]["approved_by"] == "api_key"

    response = await client.post(f"{PREFIX}/{ended_season}/wizard/execute", json={"batch_size": 3}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["data"]["execution"]["status"] == "completed"

    response = await client.get(f"{PREFIX}/{ended_season}/execution", headers=HEADERS)
    data = response.json()["data"]
    assert data["processed"] == 8
    assert data["distributed_amount"] == "2100"

    response = await client.get(f"{PREFIX}/{ended_season}/leaderboard?limit=2", headers=HEADERS)
    leaderboard = response.json()["data"]
    assert leaderboard["rewards_distributed"] is True
    assert [entry["content_id"] for entry in leaderboard["entries"]] == [5, 2]

    response = await client.delete(f"{PREFIX}/{ended_season}/wizard", headers=HEADERS)
    assert response.status_code == 409


async def test_compute_rejects_non_integer_pool(client, ended_season):
    await client.post(f"{PREFIX}/{ended_season}/wizard", headers=HEADERS)
    await client.post(f"{PREFIX}/{ended_season}/wizard/sync", headers=HEADERS)

    response = await client.post(
        f"{PREFIX}/{ended_season}/wizard/compute",
        json={"total_pool": "21.5"},
        headers=HEADERS
    )

    assert response.status_code == 422


async def test_out_of_order_step_is_rejected(client, ended_season):
    await client.post(f"{PREFIX}/{ended_season}/wizard", headers=HEADERS)

    response = await client.post(f"{PREFIX}/{ended_season}/wizard/approve", headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error_code"] == "STEP_ORDER_VIOLATION"


async def test_reconciliation_and_resync(client, chain, ended_season):
    chain.add_season(ended_season, [(5, 1100), (2, 800), (9, 600), (11, 100)])

    response = await client.get(f"{PREFIX}/{ended_season}/reconciliation", headers=HEADERS)
    report = response.json()["data"]
    assert report["in_sync"] is False
    assert report["difference"] == "100"

    response = await client.post(f"{PREFIX}/{ended_season}/resync", headers=HEADERS)
    assert response.json()["data"]["updated"] == 4

    response = await client.get(f"{PREFIX}/{ended_season}/reconciliation", headers=HEADERS)
    assert response.json()["data"]["in_sync"] is True


async def test_start_reports_reconciliation_conflict(client, chain, ended_season):
    chain.add_season(ended_season, [(5, 1100), (2, 800), (9, 600), (11, 100)])

    response = await client.post(f"{PREFIX}/{ended_season}/wizard", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["error_code"] == "RECONCILIATION_ERROR"


async def test_detect_finalizations(client, chain, ended_season):
    chain.add_season(2, [(3, 10)], ended=False)

    response = await client.get(f"{PREFIX}/finalizations/detect", headers=HEADERS)

    assert response.json()["data"] == {"seasons": [1], "count": 1}


async def test_admin_wallet_can_authenticate(client, monkeypatch):
    wallet = address(77)
    monkeypatch.setattr(admin_auth, "admin_wallets", [wallet])

    response = await client.get(f"{PREFIX}/1/wizard", headers={"Authorization": f"Bearer {wallet}"})

    assert response.status_code == 404


async def approve_season(wizard, season_number):
    await wizard.start(season_number)
    await wizard.sync(season_number)
    await wizard.compute(season_number, 2100)
    await wizard.approve(season_number, "ops@example")


async def test_background_execution_is_scheduled_and_tracked(client, wizard, transport, ended_season):
    await approve_season(wizard, ended_season)

    response = await client.post(
        f"{PREFIX}/{ended_season}/wizard/execute",
        json={"batch_size": 3, "background": True},
        headers=HEADERS
    )
    assert response.status_code == 200
    assert response.json()["data"] == {"season_number": ended_season, "scheduled": True}

    response = await client.get(f"{PREFIX}/{ended_season}/execution", headers=HEADERS)
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["processed"] == 8
    assert data["completed_batches"] == 3
    assert len(transport.calls) == 8

    response = await client.get(f"{PREFIX}/{ended_season}/wizard", headers=HEADERS)
    assert response.json()["data"]["steps"][4]["status"] == "completed"


async def test_background_execution_failure_leaves_no_run(client, wizard, transport, ended_season):
    await approve_season(wizard, ended_season)
    await wizard._begin_step(ended_season, WizardStep.EXECUTE)

    response = await client.post(
        f"{PREFIX}/{ended_season}/wizard/execute",
        json={"background": True},
        headers=HEADERS
    )
    assert response.status_code == 200

    response = await client.get(f"{PREFIX}/{ended_season}/execution", headers=HEADERS)
    assert response.status_code == 404
    assert transport.calls == []


async def test_background_execution_requires_a_plan(client, ended_season):
    await client.post(f"{PREFIX}/{ended_season}/wizard", headers=HEADERS)

    response = await client.post(
        f"{PREFIX}/{ended_season}/wizard/execute",
        json={"background": True},
        headers=HEADERS
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "PLAN_NOT_COMPUTED"
