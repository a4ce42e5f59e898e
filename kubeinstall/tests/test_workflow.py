import paramiko
import pytest

from kubeinstall.modules.errors import ConnectError, ConnectErrorKind, WorkflowError
from kubeinstall.modules.models import LogStatus, NodeRole, NodeStatus, WorkflowState
from kubeinstall.modules.preflight import PREFLIGHT_COMMAND
from kubeinstall.modules.workflow import TOKEN_EXTRACTED, TOKEN_MANUAL, TOKEN_MISSING

JOIN_COMMAND = "kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef --discovery-token-ca-cert-hash sha256:99"


@pytest.fixture
def cluster(services, make_node):
    master = make_node("node-a", "10.0.0.1", role=NodeRole.MASTER)
    b = make_node("node-b", "10.0.0.2")
    c = make_node("node-c", "10.0.0.3")
    return master, b, c


def configure(services, master_id, worker_ids, skip=()):
    workflow = services.workflow
    workflow.select_nodes(master_id, worker_ids)
    workflow.configure(services.cluster_spec(), skip)
    return workflow


def test_failed_worker_is_retried_until_complete(services, cluster, fleet):
    master, b, c = cluster
    fleet.on("kubeadm join", ip=b.ip, stderr="[ERROR FileAvailable] kubelet.conf exists", exit_code=1, times=1)
    workflow = configure(services, master.id, [b.id, c.id])

    snapshot = workflow.init_master()
    assert snapshot["state"] == WorkflowState.JOIN_WORKERS.value
    assert snapshot["tokenStatus"] == TOKEN_EXTRACTED
    assert workflow.join_token.endpoint == "10.0.0.1:6443"
    assert services.registry.get(master.id).status == NodeStatus.READY

    snapshot = workflow.join_workers()
    assert snapshot["state"] == WorkflowState.JOIN_WORKERS.value
    assert snapshot["steps"]["join"] == {b.id: "failed", c.id: "success"}
    assert services.registry.get(b.id).status == NodeStatus.FAILED
    assert services.registry.get(c.id).status == NodeStatus.READY

    joins_on_c = len([t for t in fleet.commands_for(c.ip) if "kubeadm join" in t])
    snapshot = workflow.retry_worker(b.id)
    assert snapshot["state"] == WorkflowState.COMPLETE.value
    assert snapshot["steps"]["join"][b.id] == "success"
    assert len([t for t in fleet.commands_for(c.ip) if "kubeadm join" in t]) == joins_on_c


def test_master_only_cluster_completes(services, cluster):
    master, _, _ = cluster
    workflow = configure(services, master.id, [])
    assert workflow.init_master()["state"] == WorkflowState.COMPLETE.value


def test_kubeadm_init_failure_surfaces_command_and_output(services, cluster, fleet):
    master, b, _ = cluster
    fleet.on("kubeadm init", stderr="[ERROR Port-6443]: Port 6443 is in use", exit_code=1)
    workflow = configure(services, master.id, [b.id])

    snapshot = workflow.init_master()

    assert snapshot["state"] == WorkflowState.FAILED.value
    assert snapshot["error"]["step"] == "kubeadm_init"
    assert "kubeadm init" in snapshot["error"]["command"]
    assert "Port 6443 is in use" in snapshot["error"]["output"]
    assert services.registry.get(master.id).status == NodeStatus.FAILED
    with pytest.raises(WorkflowError):
        workflow.join_workers()


def test_missing_token_is_a_warning_not_a_failure(services, cluster, fleet):
    master, b, _ = cluster
    fleet.on("kubeadm init", stdout="Your Kubernetes control-plane has initialized successfully!\n")
    fleet.on("kubeadm token create", stderr="timed out waiting for the condition", exit_code=1)
    workflow = configure(services, master.id, [b.id])

    snapshot = workflow.init_master()

    assert snapshot["state"] == WorkflowState.JOIN_WORKERS.value
    assert snapshot["tokenStatus"] == TOKEN_MISSING
    with pytest.raises(WorkflowError):
        workflow.join_workers()
    workflow.set_join_command(JOIN_COMMAND)
    assert workflow.token_status == TOKEN_MANUAL
    assert workflow.join_workers()["state"] == WorkflowState.COMPLETE.value


def test_token_fetched_when_init_output_has_none(services, cluster, fleet):
    master, _, _ = cluster
    fleet.on("kubeadm init", stdout="initialized\n")
    fleet.on("kubeadm token create", stdout=JOIN_COMMAND + "\n")
    workflow = configure(services, master.id, [])
    assert workflow.init_master()["tokenStatus"] == "fetched"
    assert workflow.join_token.ca_cert_hash == "sha256:99"


def test_worker_only_requires_valid_token(services, cluster):
    _, b, _ = cluster
    workflow = services.workflow
    with pytest.raises(WorkflowError):
        workflow.select_nodes(None, [b.id])

    workflow.set_join_command(JOIN_COMMAND)
    configure(services, None, [b.id])
    assert workflow.init_master()["state"] == WorkflowState.JOIN_WORKERS.value
    assert workflow.join_workers()["state"] == WorkflowState.COMPLETE.value


def test_selection_rules(services, cluster):
    master, b, _ = cluster
    workflow = services.workflow
    with pytest.raises(WorkflowError):
        workflow.select_nodes(None, [])
    with pytest.raises(WorkflowError):
        workflow.select_nodes(b.id, [])
    with pytest.raises(WorkflowError):
        workflow.select_nodes(master.id, [master.id])
    with pytest.raises(WorkflowError):
        workflow.select_nodes(master.id, ["missing"])
    assert workflow.state == WorkflowState.SELECT_NODES


def test_illegal_transitions(services, cluster):
    master, b, _ = cluster
    workflow = services.workflow
    with pytest.raises(WorkflowError):
        workflow.init_master()
    workflow.select_nodes(master.id, [b.id])
    with pytest.raises(WorkflowError):
        workflow.configure(services.cluster_spec(pod_subnet="10.96.0.0/16"))
    with pytest.raises(WorkflowError):
        workflow.configure(services.cluster_spec(), ["format_disks"])
    with pytest.raises(WorkflowError):
        workflow.join_workers()


def test_skipped_steps_do_not_run(services, cluster, fleet):
    master, _, _ = cluster
    workflow = configure(services, master.id, [], skip=["preflight", "system_prep"])
    snapshot = workflow.init_master()
    assert snapshot["steps"]["preflight"][master.id] == "skipped"
    assert PREFLIGHT_COMMAND not in fleet.commands_for(master.ip)


def test_stop_is_honored_between_steps_and_resumable(services, cluster, fleet):
    master, b, _ = cluster
    workflow = configure(services, master.id, [b.id])
    workflow.stop()

    snapshot = workflow.init_master()
    assert snapshot["state"] == WorkflowState.INIT_MASTER.value
    assert snapshot["stopped"]
    assert fleet.commands_for(master.ip) == []

    snapshot = workflow.init_master()
    assert snapshot["state"] == WorkflowState.JOIN_WORKERS.value
    assert not snapshot["stopped"]


def test_reset_is_always_available_and_clears_token(services, cluster, fleet):
    master, b, _ = cluster
    workflow = configure(services, master.id, [b.id])
    workflow.init_master()
    assert workflow.has_valid_token()

    results = workflow.reset([master.id, b.id])

    assert all(r.ok for r in results.values())
    assert not workflow.has_valid_token()
    assert any("kubeadm reset --force" in t for t in fleet.commands_for(b.ip))
    assert workflow.state == WorkflowState.JOIN_WORKERS


def test_token_persists_into_new_workflow(services, cluster):
    services.workflow.set_join_command(JOIN_COMMAND)
    assert services.new_workflow().has_valid_token()


def test_channel_error_during_init_fails_the_workflow(services, cluster, fleet):
    master, b, _ = cluster
    fleet.on("kubeadm init", raises=paramiko.SSHException("Channel closed."))
    workflow = configure(services, master.id, [b.id], skip=("preflight", "system_prep", "runtime_install",
                                                          "k8s_install"))

    snapshot = workflow.init_master()

    assert snapshot["state"] == WorkflowState.FAILED.value
    assert snapshot["error"]["step"] == "kubeadm_init"
    assert "Channel closed" in snapshot["error"]["message"]
    assert services.registry.get(master.id).status == NodeStatus.FAILED
    assert not [e for e in services.audit.list() if e.status == LogStatus.RUNNING]


def test_channel_error_during_join_leaves_worker_retryable(services, cluster, fleet):
    master, b, c = cluster
    fleet.on("kubeadm join", ip=b.ip, raises=paramiko.SSHException("Channel closed."), times=1)
    workflow = configure(services, master.id, [b.id, c.id])
    workflow.init_master()

    snapshot = workflow.join_workers()
    assert snapshot["state"] == WorkflowState.JOIN_WORKERS.value
    assert snapshot["steps"]["join"][b.id] == "failed"
    assert workflow.retry_worker(b.id)["state"] == WorkflowState.COMPLETE.value


def test_unreachable_master_during_token_fallback_is_not_fatal(services, cluster, fleet):
    master, b, _ = cluster
    fleet.on("kubeadm init", stdout="initialized\n")
    fleet.on("kubeadm token create",
             raises=ConnectError(master.ip, 22, ConnectErrorKind.TIMEOUT, "timed out"))
    workflow = configure(services, master.id, [b.id])

    snapshot = workflow.init_master()

    assert snapshot["state"] == WorkflowState.JOIN_WORKERS.value
    assert snapshot["tokenStatus"] == TOKEN_MISSING
    assert snapshot["error"] is None
