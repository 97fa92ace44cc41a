import pytest
from fastapi.testclient import TestClient

import main
from dre import db

from conftest import settle, workload_spec


@pytest.fixture
def client(reconciler):
    # No context manager: startup would launch the background loops.
    return TestClient(main.create_app(reconciler))


def _docs(*extra):
    return [
        {"kind": "Workload", "name": "auth", "spec": workload_spec(replicas=1, labels={"tier": "web"})},
        {"kind": "Service", "name": "auth", "spec": {"selector": {"app": "auth"}, "port": 80, "target_port": 3001, "scope": "external"}},
        {"kind": "Service", "name": "auth-internal", "spec": {"selector": {"app": "auth"}, "port": 80, "target_port": 3001}},
        *extra,
    ]


def test_apply_is_idempotent(client):
    r = client.put("/documents", json=_docs())
    assert r.status_code == 200
    assert [d["changed"] for d in r.json()] == [True, True, True]

    r = client.put("/documents", json=_docs())
    assert [d["changed"] for d in r.json()] == [False, False, False]
    assert {d["generation"] for d in r.json()} == {1}


def test_invalid_document_applies_nothing(client):
    bad = {"kind": "ConfigSet", "name": "platform", "spec": {"fragments": [{"name": "a", "data": "oops"}]}}
    r = client.put("/documents", json=_docs(bad))
    assert r.status_code == 422
    assert "ConfigSet/platform" in r.json()["detail"]
    assert db.list_documents() == []


def test_invalid_name_is_rejected(client):
    r = client.put("/documents", json=[{"kind": "Workload", "name": "Bad_Name", "spec": workload_spec()}])
    assert r.status_code == 422


def test_status_endpoints_after_reconcile(client, reconciler, clock):
    client.put("/documents", json=_docs())
    r = client.post("/reconcile")
    assert r.status_code == 200
    assert "rollout auth" in r.json()["actions"]
    settle(reconciler, clock, rounds=2)

    [wl] = client.get("/workloads").json()
    assert wl["name"] == "auth"
    assert wl["rollout"]["state"] == "Converged"
    assert [i["state"] for i in wl["instances"]] == ["Ready"]

    instances = client.get("/workloads/auth/instances").json()
    ep = client.get("/services/auth/endpoints").json()
    assert ep["external_port"] == 30000
    assert [e["instance_id"] for e in ep["endpoints"]] == [instances[0]["instance_id"]]

    assert client.get("/rollouts").json()[0]["workload"] == "auth"
    assert client.get("/events", params={"resource": "workload/auth"}).json()


def test_unknown_resources_are_404(client):
    assert client.get("/workloads/nope/instances").status_code == 404
    assert client.post("/rollouts/nope/cancel").status_code == 404
    assert client.get("/services/nope/endpoints").status_code == 404
    assert client.delete("/documents/Workload/nope").status_code == 404
    assert client.delete("/documents/Gadget/nope").status_code == 400
    assert client.delete("/pools/nope", params={"confirm": "nope"}).status_code == 404


def test_cancel_is_queued_for_the_next_pass(client, reconciler):
    client.put("/documents", json=_docs())
    client.post("/reconcile")
    r = client.post("/rollouts/auth/cancel")
    assert r.status_code == 202
    assert r.json()["state"] == "RollingOut"
    assert "cancel auth" in client.post("/reconcile").json()["actions"]
    assert reconciler.rollouts.status("auth").state == "RolledBack"


def test_pool_deletion_needs_confirmation(client):
    pool = {"kind": "VolumePool", "name": "disk", "spec": {"capacity": "1Gi", "access_mode": "ReadWriteOnce"}}
    client.put("/documents", json=[pool])
    client.post("/reconcile")
    r = client.delete("/pools/disk")
    assert r.status_code == 409
    assert db.get_pool("disk") is not None
    r = client.delete("/pools/disk", params={"confirm": "disk"})
    assert r.status_code == 200
    assert db.get_pool("disk") is None


def test_gateway_admission(client):
    client.put("/documents", json=_docs())
    client.post("/reconcile")
    assert client.get("/svc/missing/api/info").status_code == 404
    assert client.get("/svc/auth-internal/api/info").status_code == 403
    # Instance is Running but not yet Ready.
    assert client.get("/svc/auth/api/info").status_code == 503


def test_repeated_key_in_request_body_is_rejected(client):
    body = (
        '[{"kind": "ConfigSet", "name": "platform", "spec": {"fragments": '
        '[{"name": "auth", "data": {"PORT": "3001", "DATABASE_HOST": "auth-db", "PORT": "3003"}}]}}]'
    )
    r = client.put("/documents", content=body, headers={"content-type": "application/json"})
    assert r.status_code == 422
    assert "'PORT' is defined more than once" in r.json()["detail"]
    assert db.list_documents() == []


def test_malformed_body_is_rejected(client):
    r = client.put("/documents", content="not json", headers={"content-type": "application/json"})
    assert r.status_code == 422
    r = client.put("/documents", json={"kind": "Workload"})
    assert r.status_code == 422
