"""Cluster bootstrap workflow.

The workflow walks one cluster through::

    select_nodes -> configure -> init_master -> join_workers -> complete

and moves to ``failed`` from any non-terminal state on an unrecoverable
error. Worker joins that fail leave the workflow in ``join_workers`` so each
failed worker can be retried on its own. ``reset`` is available at any time
and does not touch the workflow state.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .audit import AuditLog
from .batch import BatchController
from .errors import KubeInstallError, NodeNotFoundError, RemoteCommandError, WorkflowError
from .kubeadm import ClusterSpec, JoinTokenResult, extract_join_token
from .models import BatchResult, JoinToken, Node, NodeRole, NodeStatus, WorkflowState
from .operations import NodeOperations
from .registry import NodeRegistry
from .store import SETTINGS, RecordStore

logger = logging.getLogger("kubeinstall.workflow")

JOIN_TOKEN_KEY = "join_token"
JOIN_OP = "join_worker"

PREPARE_STEPS = ("preflight", "system_prep", "runtime_install", "k8s_install")

STEP_PENDING = "pending"
STEP_RUNNING = "running"
STEP_SUCCESS = "success"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"

TOKEN_NONE = "none"
TOKEN_EXTRACTED = "extracted"
TOKEN_FETCHED = "fetched"
TOKEN_MANUAL = "manual"
TOKEN_MISSING = "success-without-token"


class ClusterWorkflow:
    """State machine for bootstrapping one cluster."""

    def __init__(
        self,
        registry: NodeRegistry,
        operations: NodeOperations,
        batch: BatchController,
        audit: Optional[AuditLog] = None,
        store: Optional[RecordStore] = None,
    ):
        self.registry = registry
        self.operations = operations
        self.batch = batch
        self.audit = audit
        self.store = store

        self.state = WorkflowState.SELECT_NODES
        self.master_id: Optional[str] = None
        self.worker_ids: List[str] = []
        self.spec: Optional[ClusterSpec] = None
        self.skip_steps: List[str] = []
        self.steps: Dict[str, Dict[str, str]] = {}
        self.token_status = TOKEN_NONE
        self.error: Optional[Dict[str, Any]] = None
        self.join_token: Optional[JoinToken] = self._load_token()

        self._stop = threading.Event()
        self._run_lock = threading.Lock()
        self._state_lock = threading.RLock()

        self.batch.register(JOIN_OP, self._join_one)

    # -- join token ------------------------------------------------------------------

    def _load_token(self) -> Optional[JoinToken]:
        if self.store is None:
            return None
        record = self.store.get(SETTINGS, JOIN_TOKEN_KEY)
        return JoinToken.from_dict(record) if record else None

    def _save_token(self, token: Optional[JoinToken]) -> None:
        self.join_token = token
        if self.store is None:
            return
        if token is None:
            self.store.delete(SETTINGS, JOIN_TOKEN_KEY)
        else:
            self.store.put(SETTINGS, JOIN_TOKEN_KEY, token.to_dict())

    def has_valid_token(self, now: Optional[datetime] = None) -> bool:
        return self.join_token is not None and not self.join_token.is_expired(now)

    def set_join_token(self, endpoint: str, token: str, ca_cert_hash: str,
                       expires_at: Optional[datetime] = None) -> JoinToken:
        """Store a join token supplied by the operator."""
        join_token = JoinToken(endpoint=endpoint, token=token, ca_cert_hash=ca_cert_hash, expires_at=expires_at)
        with self._state_lock:
            self._save_token(join_token)
            self.token_status = TOKEN_MANUAL
        logger.info(f"Join token for {endpoint} set manually")
        return join_token

    def set_join_command(self, command: str) -> JoinToken:
        """Store a join token from a full ``kubeadm join ...`` command line.

        Raises:
            WorkflowError: If the command cannot be parsed
        """
        result = extract_join_token(command)
        if not result.found:
            raise WorkflowError("could not parse a kubeadm join command")
        return self.set_join_token(result.token.endpoint, result.token.token, result.token.ca_cert_hash)

    def refresh_join_token(self) -> JoinTokenResult:
        """Ask the master for a new join command (tokens expire after 24h)."""
        if not self.master_id:
            raise WorkflowError("no master node selected")
        master = self.registry.get(self.master_id)
        result = self.operations.kubeadm.print_join_command(master)
        if result.found:
            with self._state_lock:
                self._save_token(result.token)
                self.token_status = TOKEN_FETCHED
        return result

    # -- transitions -----------------------------------------------------------------

    def _require(self, *states: WorkflowState) -> None:
        if self.state not in states:
            expected = ", ".join(s.value for s in states)
            raise WorkflowError(f"workflow is in state {self.state.value}, expected {expected}")

    def _transition(self, state: WorkflowState) -> None:
        with self._state_lock:
            logger.info(f"Workflow {self.state.value} -> {state.value}")
            self.state = state

    @contextmanager
    def _exclusive(self):
        if not self._run_lock.acquire(blocking=False):
            raise WorkflowError("another workflow step is already running")
        try:
            yield
        finally:
            self._run_lock.release()

    def select_nodes(self, master_id: Optional[str] = None, worker_ids: Iterable[str] = ()) -> Dict[str, Any]:
        """Choose the master and the workers.

        Raises:
            WorkflowError: If no node is selected, a role does not match, or
                only workers are selected without a valid join token
        """
        self._require(WorkflowState.SELECT_NODES, WorkflowState.CONFIGURE)
        worker_ids = list(dict.fromkeys(worker_ids or []))
        if not master_id and not worker_ids:
            raise WorkflowError("select at least one node")

        try:
            if master_id:
                master = self.registry.get(master_id)
                if master.role != NodeRole.MASTER:
                    raise WorkflowError(f"node {master.name} does not have the master role")
            for worker_id in worker_ids:
                worker = self.registry.get(worker_id)
                if worker.role != NodeRole.WORKER:
                    raise WorkflowError(f"node {worker.name} does not have the worker role")
        except NodeNotFoundError as e:
            raise WorkflowError(str(e)) from e

        if master_id in worker_ids:
            raise WorkflowError("the master node cannot also be a worker")
        if not master_id and not self.has_valid_token():
            raise WorkflowError("joining workers without a master requires a valid, unexpired join token")

        with self._state_lock:
            self.master_id = master_id
            self.worker_ids = worker_ids
            self.steps = {}
            self.error = None
        self._transition(WorkflowState.CONFIGURE)
        return self.snapshot()

    def configure(self, spec: ClusterSpec, skip_steps: Iterable[str] = ()) -> Dict[str, Any]:
        """Set cluster settings and the preparation steps to skip.

        Raises:
            WorkflowError: If a required setting is missing or invalid
        """
        self._require(WorkflowState.CONFIGURE)
        try:
            spec.validate()
        except ValueError as e:
            raise WorkflowError(f"invalid cluster configuration: {e}") from e
        unknown = set(skip_steps) - set(PREPARE_STEPS)
        if unknown:
            raise WorkflowError(f"unknown steps to skip: {', '.join(sorted(unknown))}")
        with self._state_lock:
            self.spec = spec
            self.skip_steps = list(skip_steps)
        logger.info(f"Cluster configured: {spec.version}, {spec.runtime}, {spec.network_plugin}, "
                    f"pods {spec.pod_subnet}, services {spec.service_subnet}")
        return self.snapshot()

    def init_master(self) -> Dict[str, Any]:
        """Prepare the master and run ``kubeadm init``.

        Without a master (workers joining an existing cluster) this goes
        straight to ``join_workers`` using the stored token.
        """
        with self._exclusive():
            if self.state == WorkflowState.INIT_MASTER and self._stop.is_set():
                self._stop.clear()
            else:
                self._require(WorkflowState.CONFIGURE)
            if self.spec is None:
                raise WorkflowError("configure the cluster before initializing the master")
            self._transition(WorkflowState.INIT_MASTER)

            if not self.master_id:
                if not self.has_valid_token():
                    self._fail("init_master", WorkflowError("join token expired before workers could join"))
                    return self.snapshot()
                self._transition(WorkflowState.JOIN_WORKERS)
                return self.snapshot()

            try:
                master = self.registry.get(self.master_id)
            except NodeNotFoundError as e:
                self._fail("init_master", e)
                return self.snapshot()

            try:
                if not self._prepare(master) or not self._run_init(master):
                    return self.snapshot()
            except KubeInstallError as e:
                self._fail(self._failed_step(master.id), e, master)
                return self.snapshot()
            except Exception as e:
                logger.exception(f"Unexpected error initializing {master.name}")
                self._fail(self._failed_step(master.id), e, master)
                return self.snapshot()

            if self.worker_ids:
                self._transition(WorkflowState.JOIN_WORKERS)
            else:
                self._transition(WorkflowState.COMPLETE)
            return self.snapshot()

    def _set_step(self, step: str, node_id: str, status: str) -> None:
        with self._state_lock:
            self.steps.setdefault(step, {})[node_id] = status

    def _step_status(self, step: str, node_id: str) -> str:
        return self.steps.get(step, {}).get(node_id, STEP_PENDING)

    def _failed_step(self, node_id: str) -> str:
        for step, nodes in self.steps.items():
            if nodes.get(node_id) in (STEP_RUNNING, STEP_FAILED):
                return step
        return "init_master"

    def _prepare(self, node: Node) -> bool:
        """Run the preparation steps on a node; False if stopped in between."""
        for step in PREPARE_STEPS:
            if self._stop.is_set():
                logger.info(f"Workflow stopped before {step} on {node.name}")
                return False
            if self._step_status(step, node.id) in (STEP_SUCCESS, STEP_SKIPPED):
                continue
            if step in self.skip_steps:
                self._set_step(step, node.id, STEP_SKIPPED)
                continue
            self._set_step(step, node.id, STEP_RUNNING)
            try:
                self._run_prepare_step(step, node)
            except Exception:
                self._set_step(step, node.id, STEP_FAILED)
                raise
            self._set_step(step, node.id, STEP_SUCCESS)
        return True

    def _run_prepare_step(self, step: str, node: Node) -> None:
        spec = self.spec
        ops = self.operations
        if step == "preflight":
            ops.preflight(node)
        elif step == "system_prep":
            ops.system_prep(node)
        elif step == "runtime_install":
            ops.install_runtime(node, spec.runtime, spec.version, spec.repo_url or None)
        elif step == "k8s_install":
            ops.install_kubernetes(node, spec.version, spec.repo_url or None)

    def _run_init(self, master: Node) -> bool:
        if self._stop.is_set():
            logger.info("Workflow stopped before kubeadm init")
            return False
        self.registry.set_status(master.id, NodeStatus.DEPLOYING)
        self._set_step("kubeadm_init", master.id, STEP_RUNNING)
        result = self.operations.kubeadm.init(master, self.spec)
        self._set_step("kubeadm_init", master.id, STEP_SUCCESS)

        self._set_step("post_init", master.id, STEP_RUNNING)
        self.operations.kubeadm.post_init(master, self.spec)
        self._set_step("post_init", master.id, STEP_SUCCESS)

        self._capture_token(master, result.stdout)
        self.registry.set_status(master.id, NodeStatus.READY)
        return True

    def _capture_token(self, master: Node, output: str) -> None:
        parsed = extract_join_token(output)
        status = TOKEN_EXTRACTED
        if not parsed.found:
            logger.info("No join command in kubeadm init output, asking the master for one")
            parsed = self.operations.kubeadm.print_join_command(master)
            status = TOKEN_FETCHED
        with self._state_lock:
            if parsed.found:
                self._save_token(parsed.token)
                self.token_status = status
                logger.info(f"Captured join token for {parsed.token.endpoint}")
                return
            self.token_status = TOKEN_MISSING
        logger.warning("kubeadm init succeeded but no join token was found; supply one manually")
        if self.audit:
            self.audit.record("ExtractJoinToken", "kubeadm init succeeded without a join token",
                              success=True, node_id=master.id, node_name=master.name)

    def join_workers(self, node_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Join workers concurrently.

        Workers whose join already succeeded are left alone. Failed workers
        keep the workflow in ``join_workers`` until they are retried.
        """
        with self._exclusive():
            self._require(WorkflowState.JOIN_WORKERS)
            if self._stop.is_set():
                self._stop.clear()
            targets = list(node_ids) if node_ids is not None else list(self.worker_ids)
            unknown = [n for n in targets if n not in self.worker_ids]
            if unknown:
                raise WorkflowError(f"nodes were not selected as workers: {', '.join(unknown)}")
            if not self.has_valid_token():
                raise WorkflowError("no valid join token; refresh it or supply one manually")

            pending = [n for n in targets if self._step_status("join", n) != STEP_SUCCESS]
            if pending:
                results = self.batch.run_batch(pending, JOIN_OP)
                for node_id, result in results.items():
                    self._set_step("join", node_id, STEP_SUCCESS if result.ok else STEP_FAILED)
                    if not result.ok:
                        logger.warning(f"Worker {node_id} failed to join: {result.message}")

            if all(self._step_status("join", n) == STEP_SUCCESS for n in self.worker_ids):
                self._transition(WorkflowState.COMPLETE)
            return self.snapshot()

    def retry_worker(self, node_id: str) -> Dict[str, Any]:
        return self.join_workers([node_id])

    def _join_one(self, node: Node, params: Dict[str, Any]) -> str:
        if self._stop.is_set():
            raise KubeInstallError("workflow stopped before this node was scheduled")
        self._set_step("join", node.id, STEP_RUNNING)
        if not self._prepare(node):
            raise KubeInstallError("workflow stopped before this node joined")
        result = self.operations.kubeadm.join(node, self.join_token, self.spec.cri_socket if self.spec else "")
        if "already joined" in result.stdout:
            return "already joined"
        return "joined"

    def stop(self) -> None:
        """Stop scheduling further steps and nodes. Running commands finish."""
        self._stop.set()
        logger.info("Workflow stop requested")

    def _fail(self, step: str, exc: Exception, node: Optional[Node] = None) -> None:
        error = {"step": step, "message": str(exc), "command": "", "output": ""}
        if isinstance(exc, RemoteCommandError):
            error["command"] = exc.command
            error["output"] = "\n".join(p for p in (exc.stdout, exc.stderr) if p)
        with self._state_lock:
            self.error = error
        if node is not None:
            self._set_step(step, node.id, STEP_FAILED)
            try:
                self.registry.set_status(node.id, NodeStatus.FAILED)
            except NodeNotFoundError:
                logger.warning(f"Node {node.name} was deleted before it could be marked failed")
        if self.audit:
            self.audit.record("Workflow", f"{step} failed: {exc}\n{error['output']}".strip(), success=False,
                              node_id=node.id if node else "", node_name=node.name if node else "",
                              command=error["command"])
        logger.error(f"Workflow failed during {step}: {exc}")
        self._transition(WorkflowState.FAILED)

    # -- reset -----------------------------------------------------------------------

    def reset(self, node_ids: Iterable[str]) -> Dict[str, BatchResult]:
        """Run ``kubeadm reset`` and cleanup on nodes regardless of workflow state."""
        node_ids = list(node_ids)
        results = self.batch.run_batch(node_ids, "reset")
        if self.master_id and self.master_id in node_ids and results[self.master_id].ok:
            with self._state_lock:
                self._save_token(None)
                self.token_status = TOKEN_NONE
        return results

    def snapshot(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "state": self.state.value,
                "masterId": self.master_id,
                "workerIds": list(self.worker_ids),
                "spec": _spec_dict(self.spec),
                "skipSteps": list(self.skip_steps),
                "steps": {step: dict(nodes) for step, nodes in self.steps.items()},
                "joinToken": self.join_token.to_dict() if self.join_token else None,
                "tokenStatus": self.token_status,
                "stopped": self._stop.is_set(),
                "error": dict(self.error) if self.error else None,
            }


def _spec_dict(spec: Optional[ClusterSpec]) -> Optional[Dict[str, Any]]:
    if spec is None:
        return None
    return {
        "version": spec.version,
        "networkPlugin": spec.network_plugin,
        "runtime": spec.runtime,
        "podSubnet": spec.pod_subnet,
        "serviceSubnet": spec.service_subnet,
        "dnsDomain": spec.dns_domain,
        "controlPlaneEndpoint": spec.control_plane_endpoint,
        "repoUrl": spec.repo_url,
    }
