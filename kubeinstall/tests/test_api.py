import pytest
from fastapi.testclient import TestClient

from kubeinstall.api.main import app
from kubeinstall.api.sse import format_sse_event

HEADERS = {"X-API-Key": "kubeinstall-secret"}


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.delenv("KUBEINSTALL_API_KEY", raising=False)
    return TestClient(app)


def add_node(client, name, ip, role="worker"):
    resp = client.post("/nodes", json={"name": name, "ip": ip, "password": "pw", "nodeType": role},
                       headers=HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_is_open(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_api_key_required(client):
    assert client.get("/nodes").status_code == 403
    assert client.get("/nodes", headers={"X-API-Key": "wrong"}).status_code == 403


def test_node_crud(client):
    node = add_node(client, "node-a", "10.0.0.1", role="master")
    assert node["password"] == "******"

    resp = client.put(f"/nodes/{node['id']}", json={"name": "renamed"}, headers=HEADERS)
    assert resp.json()["name"] == "renamed"
    assert [n["name"] for n in client.get("/nodes", headers=HEADERS).json()] == ["renamed"]

    assert client.delete(f"/nodes/{node['id']}", headers=HEADERS).status_code == 200
    resp = client.get(f"/nodes/{node['id']}", headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"] == "NodeNotFoundError"


def test_node_without_credential_is_rejected(client):
    resp = client.post("/nodes", json={"ip": "10.0.0.1"}, headers=HEADERS)
    assert resp.status_code == 400
    assert "password or privateKey" in resp.json()["detail"]


def test_test_connection(client):
    node = add_node(client, "node-a", "10.0.0.1")
    body = client.post(f"/nodes/{node['id']}/test-connection", headers=HEADERS).json()
    assert body["reachable"] is True
    assert body["node"]["status"] == "reachable"


def test_batch_endpoint(client, fleet):
    a = add_node(client, "node-a", "10.0.0.1")
    b = add_node(client, "node-b", "10.0.0.2")
    fleet.unreachable.add("10.0.0.2")
    resp = client.post("/batch/system_prep", json={"nodeIds": [a["id"], b["id"]]}, headers=HEADERS)
    results = resp.json()["results"]
    assert results[a["id"]]["status"] == "success"
    assert results[b["id"]]["status"] == "failed"


def test_batch_bad_input(client):
    resp = client.post("/batch/system_prep", json={"nodeIds": []}, headers=HEADERS)
    assert resp.status_code == 400


def test_cluster_flow(client):
    master = add_node(client, "node-a", "10.0.0.1", role="master")
    worker = add_node(client, "node-b", "10.0.0.2")

    resp = client.post("/cluster/select", json={"masterId": master["id"], "workerIds": [worker["id"]]},
                       headers=HEADERS)
    assert resp.json()["state"] == "configure"
    resp = client.post("/cluster/configure", json={"podSubnet": "10.244.0.0/16", "skipSteps": ["preflight"]},
                       headers=HEADERS)
    assert resp.json()["spec"]["networkPlugin"] == "flannel"
    assert client.post("/cluster/init", headers=HEADERS).json()["state"] == "join_workers"
    assert client.post("/cluster/join", json={}, headers=HEADERS).json()["state"] == "complete"
    assert client.get("/cluster", headers=HEADERS).json()["joinToken"]["endpoint"] == "10.0.0.1:6443"


def test_illegal_transition_is_conflict(client):
    resp = client.post("/cluster/init", headers=HEADERS)
    assert resp.status_code == 409


def test_invalid_configuration(client):
    master = add_node(client, "node-a", "10.0.0.1", role="master")
    client.post("/cluster/select", json={"masterId": master["id"]}, headers=HEADERS)
    resp = client.post("/cluster/configure", json={"serviceSubnet": "10.244.0.0/24"}, headers=HEADERS)
    assert resp.status_code == 409
    assert "overlaps" in resp.json()["detail"]


def test_manual_token(client):
    resp = client.post("/cluster/token", json={"endpoint": "10.0.0.1:6443", "token": "a.b",
                                               "caCertHash": "sha256:c"}, headers=HEADERS)
    assert resp.json()["caCertHash"] == "sha256:c"
    assert client.post("/cluster/token", json={}, headers=HEADERS).status_code == 400


def test_logs(client):
    node = add_node(client, "node-a", "10.0.0.1")
    client.get(f"/kubeadm/preflight/{node['id']}", headers=HEADERS)
    logs = client.get(f"/logs/node/{node['id']}", headers=HEADERS).json()
    assert logs and logs[0]["status"] == "success"
    client.delete("/logs", headers=HEADERS)
    assert client.get("/logs", headers=HEADERS).json() == []


def test_scripts(client):
    scripts = client.get("/scripts", headers=HEADERS).json()
    assert "ubuntu_system_prep" in scripts

    client.put("/scripts", json={"ubuntu_system_prep": "echo custom"}, headers=HEADERS)
    assert client.get("/scripts", headers=HEADERS).json()["ubuntu_system_prep"] == "echo custom"
    default = client.get("/scripts/ubuntu_system_prep/default", headers=HEADERS).json()
    assert default["content"] == scripts["ubuntu_system_prep"]

    client.post("/scripts/reset", json={"keys": ["ubuntu_system_prep"]}, headers=HEADERS)
    assert client.get("/scripts", headers=HEADERS).json()["ubuntu_system_prep"] == scripts["ubuntu_system_prep"]

    resp = client.post("/scripts/render", json={"distro": "ubuntu", "step": "k8s_components",
                                                "version": "v1.29.0"}, headers=HEADERS)
    assert "v1.29" in resp.json()["script"]
    resp = client.post("/scripts/render", json={"distro": "arch", "step": "k8s_components"}, headers=HEADERS)
    assert resp.status_code == 404


def test_sources_and_versions(client):
    assert client.post("/kubeadm/sources/1/default", headers=HEADERS).json()["name"] == "Aliyun"
    sources = client.get("/kubeadm/sources", headers=HEADERS).json()
    assert [s["name"] for s in sources if s["default"]] == ["Aliyun"]
    assert client.delete("/kubeadm/sources/9", headers=HEADERS).status_code == 400
    assert "v1.30.0" in client.get("/kubeadm/versions", headers=HEADERS).json()


def test_preflight_endpoint(client):
    node = add_node(client, "node-a", "10.0.0.1")
    body = client.get(f"/kubeadm/preflight/{node['id']}", headers=HEADERS).json()
    assert body["passed"] is True
    assert {c["status"] for c in body["checks"]} == {"pass"}


def test_format_sse_event():
    assert format_sse_event("log", {"id": "1"}) == 'event: log\ndata: {"id": "1"}\n\n'


def test_ssh_configure_and_passwordless(client, fleet):
    a = add_node(client, "node-a", "10.0.0.1")
    b = add_node(client, "node-b", "10.0.0.2")
    fleet.on("id_rsa.pub", stdout="ssh-ed25519 AAAA root@node\n")

    body = client.post(f"/nodes/{a['id']}/ssh/configure", headers=HEADERS).json()
    assert body["status"] == "success"
    assert any("ssh-keygen" in t for t in fleet.commands_for("10.0.0.1"))

    body = client.post("/nodes/ssh/passwordless", json={}, headers=HEADERS).json()
    assert {node_id: r["status"] for node_id, r in body.items()} == {a["id"]: "success", b["id"]: "success"}
    assert client.post("/nodes/missing/ssh/configure", headers=HEADERS).status_code == 404
