import base64

import pytest
from fastapi.testclient import TestClient

import main
from bgd.listener import ListenerPool
from bgd.runtime import AttemptStatus


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


AUTH = _basic_auth(main.settings.admin_user, main.settings.admin_password)

HEALTHY_APP = {
    "name": "app",
    "image": "shop:v2",
    "health_check": {"command": ["CMD-SHELL", "curl -fs http://localhost:8080/health || exit 1"]},
}


def deploy_payload(**overrides):
    payload = {"app_container": "app", "port": 8080, "containers": [dict(HEALTHY_APP)]}
    payload.update(overrides)
    return payload


@pytest.fixture
def ctl(make_controller):
    return make_controller()


@pytest.fixture
def client(ctl):
    with TestClient(main.create_app(controller=ctl, recover=False)) as c:
        yield c


@pytest.fixture
def shop(client):
    r = client.post("/services", json={"name": "shop", "production_port": 8081, "test_port": 18081}, headers=AUTH)
    assert r.status_code == 201
    return r.json()


def test_health_is_public(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_endpoints_require_basic_auth(client):
    assert client.get("/services").status_code == 401
    assert client.get("/services", headers=_basic_auth("admin", "wrong")).status_code == 401
    assert client.get("/services", headers=AUTH).status_code == 200


def test_register_service(client, shop):
    assert shop["traffic"]["production_environment"] is None
    r = client.post("/services", json={"name": "shop"}, headers=AUTH)
    assert r.status_code == 409
    r = client.post("/services", json={"name": "Not_Valid"}, headers=AUTH)
    assert r.status_code == 422

    listed = client.get("/services", headers=AUTH).json()
    assert [s["name"] for s in listed] == ["shop"]
    assert {e["id"] for e in listed[0]["environments"]} == {"shop-blue", "shop-green"}


def test_submit_deployment(client, shop, spawner):
    r = client.post("/services/shop/deployments", json=deploy_payload(), headers=AUTH)
    assert r.status_code == 202
    body = r.json()
    assert body["status"] == AttemptStatus.PROVISIONING.value
    assert body["candidate_environment"] == "shop-blue"
    assert body["sidecar_set"] == "NONE"
    assert body["start_order"] == ["app"]
    assert len(spawner.queue) == 1

    r = client.post("/services/shop/deployments", json=deploy_payload(), headers=AUTH)
    assert r.status_code == 409


def test_submit_with_sidecars_reports_start_order(client, shop):
    payload = deploy_payload(
        flags={"enable_log_shipping": True, "enable_tracing": True},
        log_router_config={"reference": "/svc/fluent-bit.conf", "content": "[OUTPUT]\n"},
        collector_config={"reference": "/svc/otel.yaml", "content": "receivers: {}\n"},
    )
    r = client.post("/services/shop/deployments", json=payload, headers=AUTH)
    assert r.status_code == 202
    order = r.json()["start_order"]
    assert r.json()["sidecar_set"] == "LOG_AND_TRACING"
    assert order.index("otel-init") < order.index("app")
    assert order.index("log-router") < order.index("otel-collector")


@pytest.mark.parametrize(
    "payload",
    [
        deploy_payload(flags={"enable_metrics_collection": True}),
        deploy_payload(flags={"enable_log_shipping": True}),
        deploy_payload(
            containers=[
                {**HEALTHY_APP, "depends_on": [{"container": "side", "condition": "START"}]},
                {"name": "side", "image": "side:1", "depends_on": [{"container": "app", "condition": "START"}]},
            ]
        ),
        deploy_payload(app_container="web"),
    ],
)
def test_invalid_revisions_are_rejected(client, shop, spawner, payload):
    r = client.post("/services/shop/deployments", json=payload, headers=AUTH)
    assert r.status_code == 422
    assert spawner.queue == []


def test_unknown_service_is_404(client):
    assert client.post("/services/nope/deployments", json=deploy_payload(), headers=AUTH).status_code == 404
    assert client.get("/services/nope/deployments", headers=AUTH).status_code == 404
    assert client.get("/services/nope/traffic", headers=AUTH).status_code == 404


def test_deployment_lifecycle_over_http(client, shop, spawner):
    attempt_id = client.post("/services/shop/deployments", json=deploy_payload(), headers=AUTH).json()["id"]
    spawner.run_all()

    r = client.get(f"/deployments/{attempt_id}", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["status"] == "PROMOTED"
    assert r.json()["revision"]["service"] == "shop"

    listed = client.get("/services/shop/deployments", headers=AUTH).json()
    assert [a["id"] for a in listed] == [attempt_id]

    traffic = client.get("/services/shop/traffic", headers=AUTH).json()
    assert traffic["production_environment"] == "shop-blue"
    bindings = {b["name"]: b for b in traffic["bindings"]}
    assert bindings["production"] == {
        "name": "production",
        "listener_port": 8081,
        "rule_id": "shop-rule-production",
        "target_group": "shop-tg-blue",
    }
    assert bindings["test"]["target_group"] is None


def test_abort_deployment(client, shop):
    attempt_id = client.post("/services/shop/deployments", json=deploy_payload(), headers=AUTH).json()["id"]
    r = client.post(f"/deployments/{attempt_id}/abort", json={"reason": "bad build"}, headers=AUTH)
    assert r.status_code == 200
    assert r.json()["status"] == "ROLLED_BACK"
    assert r.json()["reason"].startswith("bad build")

    assert client.post("/deployments/dep-nope/abort", headers=AUTH).status_code == 404
    assert client.get("/deployments/dep-nope", headers=AUTH).status_code == 404


def test_events_can_be_filtered_by_service(client, shop):
    events = client.get("/events", params={"service": "shop", "limit": 5}, headers=AUTH).json()
    assert events and all(e["service_name"] == "shop" for e in events)
    assert client.get("/events", params={"limit": 0}, headers=AUTH).status_code == 422


def test_module_app_serves_the_traffic_listeners():
    listeners = main.app.state.listeners
    assert isinstance(listeners, ListenerPool)
    assert listeners.router is main.app.state.controller.router
