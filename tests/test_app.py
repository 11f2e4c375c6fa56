"""
Test suite for the main application
"""
import pytest
from fastapi.testclient import TestClient

from app import create_app
from config import Settings
from conftest import make_flag
from deployment.system import DeploymentSafetySystem


@pytest.fixture
def system():
    settings = Settings(enable_scheduler=False, seed_default_flags=True, log_to_file=False, environment="testing")
    return DeploymentSafetySystem(settings)


@pytest.fixture
def client(system):
    with TestClient(create_app(system)) as client:
        yield client


def test_health_check(client):
    """Test health endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"
    assert data["services"]["scheduler"] == "running"
    assert data["services"]["health_checks"] == "unknown"


def test_metrics_endpoint(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "deploy_guard_requests_total" in response.text
    assert "x-feature-dual_audience_homepage" not in response.headers


def test_response_carries_request_id_and_feature_headers(client, system):
    system.engine.update_rollout_percentage("dual_audience_homepage", 100, actor="alice")
    system.engine.update_rollout_percentage("enhanced_hero_section", 0, actor="alice")

    response = client.get("/health", headers={"X-Request-ID": "req-123", "X-User-ID": "user-1"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert "X-Process-Time" in response.headers
    assert response.headers["x-feature-dual_audience_homepage"] == "true"
    assert response.headers["x-feature-enhanced_hero_section"] == "false"


def test_requests_are_recorded(client, system):
    for _ in range(3):
        client.get("/health")
    assert system.aggregator.compute_stats(5).request_count >= 3


# Feature flags

def test_update_feature_flag(client, system):
    response = client.put("/api/deployment/feature-flags", json={
        "flagId": "dual_audience_homepage",
        "percentage": 25,
        "updatedBy": "alice"
    })

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Rollout for dual_audience_homepage updated from 5% to 25%"
    }
    assert system.engine.get_flag("dual_audience_homepage").updated_by == "alice"


def test_update_feature_flag_missing_fields(client):
    response = client.put("/api/deployment/feature-flags", json={"flagId": "dual_audience_homepage"})
    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert "percentage" in data["error"]
    assert "updatedBy" in data["error"]


def test_update_feature_flag_out_of_range(client, system):
    response = client.put("/api/deployment/feature-flags", json={
        "flagId": "dual_audience_homepage",
        "percentage": 150,
        "updatedBy": "alice"
    })

    assert response.status_code == 400
    assert response.json()["error_kind"] == "invalid_range"
    assert system.engine.get_flag("dual_audience_homepage").rollout_percentage == 5


def test_update_unknown_flag(client):
    response = client.put("/api/deployment/feature-flags", json={
        "flagId": "missing",
        "percentage": 10,
        "updatedBy": "alice"
    })
    assert response.status_code == 404
    assert response.json()["error_kind"] == "not_found"


def test_invalid_json_body(client):
    response = client.put(
        "/api/deployment/feature-flags",
        content="not json",
        headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_start_gradual_rollout(client, system):
    response = client.post("/api/deployment/feature-flags/gradual-rollout", json={
        "flagId": "trust_social_proof",
        "updatedBy": "alice"
    })

    assert response.status_code == 200
    assert response.json()["message"] == "Gradual rollout started for trust_social_proof at 5%"
    assert system.store.get_plan("trust_social_proof").is_active


def test_start_gradual_rollout_without_plan(client, system):
    system.engine.register_flag(make_flag("search-v2", 0))

    response = client.post("/api/deployment/feature-flags/gradual-rollout", json={
        "flagId": "search-v2",
        "updatedBy": "alice"
    })

    assert response.status_code == 404
    assert response.json()["error_kind"] == "no_plan_configured"


# Rollback

def test_manual_rollback(system):
    with TestClient(create_app(system)) as client:
        response = client.post("/api/deployment/rollback", json={
            "reason": "Checkout failures reported",
            "triggeredBy": "oncall"
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        event_id = data["eventId"]

    # Shutdown drains in-flight rollbacks
    event = system.controller.get_event(event_id)
    assert event.trigger_id == "manual_emergency"
    assert event.actor == "oncall"
    assert event.status.value == "completed"
    assert all(flag.rollout_percentage == 0 for flag in system.engine.list_flags())


def test_manual_rollback_requires_reason(client):
    response = client.post("/api/deployment/rollback", json={"triggeredBy": "oncall"})
    assert response.status_code == 400
    assert "reason" in response.json()["error"]


def test_manual_rollback_unknown_trigger(client):
    response = client.post("/api/deployment/rollback", json={
        "reason": "typo",
        "triggeredBy": "oncall",
        "triggerId": "missing"
    })
    assert response.status_code == 404


# Monitoring

def test_monitoring_snapshot(client):
    response = client.get("/api/deployment/monitoring")

    assert response.status_code == 200
    data = response.json()
    for key in ("monitoring", "performance", "rollout", "rollback", "recent_rollbacks",
                "triggers", "feature_flags", "rollout_plans"):
        assert key in data
    assert data["scheduler_running"] is False
    assert len(data["feature_flags"]) == 5
    assert {t["id"] for t in data["triggers"]} >= {"error_rate_spike", "manual_emergency"}


def test_web_vitals(client, system):
    response = client.post("/api/deployment/web-vitals", json={"lcp": 2500, "cls": 0.1, "route": "/"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "recorded": ["cls", "lcp"]}
    assert system.aggregator.compute_stats(5).web_vitals.lcp == pytest.approx(2500.0)


@pytest.mark.parametrize("body", [{}, {"lcp": -1}, {"lcp": "fast"}, {"route": "/"}])
def test_web_vitals_rejects_bad_payload(client, body):
    response = client.post("/api/deployment/web-vitals", json=body)
    assert response.status_code == 400
    assert response.json()["success"] is False
