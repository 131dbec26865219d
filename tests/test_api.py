import pytest
from fastapi.testclient import TestClient

from api import create_app
from engine import ExperimentRunner
from record_store import InMemoryRecordStore, seed_demo


@pytest.fixture
def client():
    store = InMemoryRecordStore()
    seed_demo(store, round_duration_seconds=2)
    return TestClient(create_app(ExperimentRunner(store=store)))


def _start(client):
    resp = client.post("/v1/experiments/demo/runs")
    assert resp.status_code == 200
    return resp.json()


def test_start_run(client):
    data = _start(client)
    assert "run_id" in data
    assert data["current_section"] == "intro"
    assert data["step"]["title"] == "Welcome"
    assert data["navigation_blocked"] is False
    assert data["valuation"] is None


def test_unknown_experiment_and_run(client):
    assert client.post("/v1/experiments/nope/runs").status_code == 404
    assert client.get("/v1/runs/nope").status_code == 404
    assert client.post("/v1/runs/nope/advance").status_code == 404


def test_flow_listing(client):
    run_id = _start(client)["run_id"]
    flow = client.get(f"/v1/runs/{run_id}/flow").json()
    assert [s["kind"] for s in flow[:5]] == ["info", "info", "scenario", "break", "scenario"]
    assert flow[5]["id"] == "survey-demographic"


def test_scenario_round_trip(client):
    run_id = _start(client)["run_id"]
    client.post(f"/v1/runs/{run_id}/advance")
    data = client.post(f"/v1/runs/{run_id}/advance").json()
    assert data["current_section"] == "scenario"
    assert data["current_round"] == 1
    assert data["timer_active"] is True
    assert data["valuation"]["total_value"] == pytest.approx(0.5 * 50000 + 4 * 3000 + 1000)

    blocked = client.post(f"/v1/runs/{run_id}/advance")
    assert blocked.status_code == 409

    client.post(f"/v1/runs/{run_id}/responses", json={"step_id": "demo-investment", "value": "option_a"})
    data = client.post(f"/v1/runs/{run_id}/tick", json={"count": 2}).json()
    assert data["current_round"] == 2
    assert data["valuation"]["change"]["direction"] == "up"

    data = client.post(f"/v1/runs/{run_id}/tick", json={"count": 100}).json()
    assert data["rounds_completed"] is True
    assert data["navigation_blocked"] is False

    val = client.get(f"/v1/runs/{run_id}/valuation").json()
    assert {a["asset_code"] for a in val["assets"]} == {"BTC", "ETH", "USDT"}

    data = client.post(f"/v1/runs/{run_id}/advance").json()
    assert data["current_section"] == "break"
    assert client.get(f"/v1/runs/{run_id}/valuation").status_code == 404


def test_bad_requests(client):
    run_id = _start(client)["run_id"]
    resp = client.post(f"/v1/runs/{run_id}/responses", json={"step_id": "unknown", "value": 1})
    assert resp.status_code == 400
    assert client.post(f"/v1/runs/{run_id}/submit").status_code == 400
    assert client.post(f"/v1/runs/{run_id}/tick", json={"count": -1}).status_code == 422


def test_abandon(client):
    run_id = _start(client)["run_id"]
    assert client.delete(f"/v1/runs/{run_id}").status_code == 200
    assert client.get(f"/v1/runs/{run_id}").status_code == 404
