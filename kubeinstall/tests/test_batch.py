import threading
import time

import pytest

from kubeinstall.modules.batch import BatchController
from kubeinstall.modules.errors import BatchInputError, KubeInstallError
from kubeinstall.modules.models import LogStatus, NodeStatus


def test_one_result_per_node_and_failures_isolated(services, make_node, fleet):
    nodes = [make_node(f"node-{i}", f"10.0.0.{i}") for i in range(1, 4)]
    fleet.unreachable.add("10.0.0.2")

    results = services.batch.run_batch([n.id for n in nodes], "system_prep")

    assert set(results) == {n.id for n in nodes}
    assert results[nodes[0].id].ok
    assert results[nodes[2].id].ok
    assert not results[nodes[1].id].ok
    assert "refused" in results[nodes[1].id].message
    assert services.registry.get(nodes[0].id).status == NodeStatus.READY
    assert services.registry.get(nodes[1].id).status == NodeStatus.FAILED


def test_read_only_operations_leave_status(services, make_node):
    node = make_node("node-a", "10.0.0.1")
    results = services.batch.run_batch([node.id], "preflight")
    assert results[node.id].ok
    assert services.registry.get(node.id).status == NodeStatus.UNKNOWN


def test_unknown_node_is_a_failed_result(services, make_node):
    node = make_node("node-a", "10.0.0.1")
    results = services.batch.run_batch([node.id, "missing"], "test_connection")
    assert results[node.id].ok
    assert results["missing"].status == "failed"
    assert services.registry.get(node.id).status == NodeStatus.REACHABLE


def test_duplicate_ids_run_once(services, make_node, fleet):
    node = make_node("node-a", "10.0.0.1")
    results = services.batch.run_batch([node.id, node.id], "runtime_status")
    assert list(results) == [node.id]
    assert len([c for c in fleet.commands_for("10.0.0.1") if "is-active" in c]) == 1


def test_bad_input(services):
    with pytest.raises(BatchInputError):
        services.batch.run_batch([], "system_prep")
    with pytest.raises(BatchInputError):
        services.batch.run_batch(["x"], "format_disks")


def test_batch_is_audited(services, make_node):
    node = make_node("node-a", "10.0.0.1")
    services.batch.run_batch([node.id], "runtime_install", runtime="containerd")
    entries = [e for e in services.audit.list() if e.operation == "Batch:runtime_install"]
    assert len(entries) == 1
    assert entries[0].status == LogStatus.SUCCESS
    assert services.registry.get(node.id).container_runtime == "containerd"


def test_unexpected_exception_is_captured(services, make_node):
    node = make_node("node-a", "10.0.0.1")

    def explode(node, params):
        raise RuntimeError("boom")

    services.batch.register("explode", explode)
    results = services.batch.run_batch([node.id], "explode")
    assert results[node.id].message == "RuntimeError: boom"
    assert services.registry.get(node.id).status == NodeStatus.FAILED


def test_worker_pool_is_bounded(services, make_node):
    nodes = [make_node(f"node-{i}", f"10.0.1.{i}") for i in range(6)]
    running = []
    peak = []
    lock = threading.Lock()

    def slow(node, params):
        with lock:
            running.append(node.id)
            peak.append(len(running))
        time.sleep(0.05)
        with lock:
            running.remove(node.id)
        return "ok"

    controller = BatchController(services.registry, max_workers=2)
    controller.register("slow", slow, tracks_status=False)
    results = controller.run_batch([n.id for n in nodes], "slow")
    assert all(r.ok for r in results.values())
    assert max(peak) <= 2


def test_operation_errors_become_messages(services, make_node):
    node = make_node("node-a", "10.0.0.1")

    def refuse(node, params):
        raise KubeInstallError(f"{params['reason']} on {node.name}")

    services.batch.register("refuse", refuse, tracks_status=False)
    results = services.batch.run_batch([node.id], "refuse", reason="disk full")
    assert results[node.id].message == "disk full on node-a"


def test_kubeadm_version_reports_output(services, make_node, fleet):
    node = make_node("node-a", "10.0.0.1")
    fleet.on("kubeadm version", stdout="v1.30.2\n")
    results = services.batch.run_batch([node.id], "kubeadm_version")
    assert results[node.id].message == "v1.30.2"
    assert services.registry.get(node.id).status == NodeStatus.UNKNOWN


def test_log_cleared_mid_batch_still_returns_results(services, make_node):
    nodes = [make_node("node-a", "10.0.0.1"), make_node("node-b", "10.0.0.2")]

    def wipe(node, params):
        services.audit.clear()
        return "ok"

    services.batch.register("wipe", wipe, tracks_status=False)
    results = services.batch.run_batch([n.id for n in nodes], "wipe")
    assert all(r.ok for r in results.values())
    assert all(e.status == LogStatus.SUCCESS for e in services.audit.list())


def test_ssh_trust_exchanges_keys_and_verifies(services, make_node, fleet):
    a = make_node("node-a", "10.0.0.1")
    b = make_node("node-b", "10.0.0.2")
    fleet.on("id_rsa.pub", ip=a.ip, stdout="ssh-rsa AAAA-a root@node-a\n")
    fleet.on("id_rsa.pub", ip=b.ip, stdout="ssh-rsa AAAA-b root@node-b\n")

    results = services.batch.setup_ssh_trust([a.id, b.id])

    assert all(r.ok for r in results.values())
    for node in (a, b):
        scripts = [t for t in fleet.commands_for(node.ip) if "authorized_keys" in t]
        assert "AAAA-a" in scripts[0] and "AAAA-b" in scripts[0]
    assert any("root@10.0.0.2" in c for c in fleet.commands_for(a.ip))
    assert any("root@10.0.0.1" in c for c in fleet.commands_for(b.ip))


def test_ssh_trust_generates_missing_key(services, make_node, fleet):
    a = make_node("node-a", "10.0.0.1")
    b = make_node("node-b", "10.0.0.2")
    fleet.on("cat ~/.ssh/id_rsa.pub", ip=a.ip, stdout="ssh-rsa AAAA-a root@node-a\n")
    fleet.on("cat ~/.ssh/id_rsa.pub", ip=a.ip, stderr="No such file", exit_code=1, times=1)
    fleet.on("cat ~/.ssh/id_rsa.pub", ip=b.ip, stdout="ssh-rsa AAAA-b root@node-b\n")

    results = services.batch.setup_ssh_trust([a.id, b.id])

    assert results[a.id].ok
    assert any("ssh-keygen" in t for t in fleet.commands_for(a.ip))
    assert not any("ssh-keygen" in t for t in fleet.commands_for(b.ip))


def test_ssh_trust_reports_unreachable_peer(services, make_node, fleet):
    nodes = [make_node(f"node-{i}", f"10.0.0.{i}") for i in range(1, 4)]
    for node in nodes:
        fleet.on("id_rsa.pub", ip=node.ip, stdout=f"ssh-rsa AAAA-{node.name}\n")
    fleet.unreachable.add("10.0.0.3")

    results = services.batch.setup_ssh_trust([n.id for n in nodes])

    assert not results[nodes[2].id].ok
    assert results[nodes[0].id].ok and results[nodes[1].id].ok
    assert not any("10.0.0.3" in c for c in fleet.commands_for("10.0.0.1"))


def test_ssh_trust_needs_two_nodes(services, make_node):
    node = make_node("node-a", "10.0.0.1")
    with pytest.raises(BatchInputError):
        services.batch.setup_ssh_trust([node.id])


def test_harbor_password_never_reaches_the_log(services, make_node, fleet):
    node = make_node("node-a", "10.0.0.1")
    fleet.on("images list", stdout="registry.k8s.io/pause:3.9\n")
    harbor = {"url": "harbor.local", "username": "admin", "password": "S3cret'PW", "project": "k8s"}

    results = services.batch.run_batch([node.id], "push_images", harbor=harbor, version="v1.30.0")

    assert results[node.id].ok
    assert fleet.stdin == ["S3cret'PW"]
    assert any("--password-stdin" in c for c in fleet.commands_for(node.ip))
    for entry in services.audit.list():
        assert "S3cret" not in entry.command + entry.output
