"""
Fan one operation out over many nodes with a bounded worker pool.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from .audit import AuditLog
from .errors import BatchInputError, KubeInstallError, NodeNotFoundError
from .kubeadm import HarborConfig
from .models import BatchResult, Node, NodeStatus
from .operations import NodeOperations
from .registry import NodeRegistry
from .scripts import DEFAULT_VERSION

logger = logging.getLogger("kubeinstall.batch")

DEFAULT_MAX_WORKERS = 10

OperationFunc = Callable[[Node, Dict[str, Any]], str]


@dataclass
class BatchOperation:
    name: str
    func: OperationFunc
    tracks_status: bool = True


class BatchController:
    """Runs registered operations across node sets.

    Operations that change a node mark it ``deploying`` while they run and
    ``ready`` or ``failed`` afterwards. Read-only operations leave the status
    alone; ``reachable``/``unreachable`` only come from connection tests.
    """

    def __init__(self, registry: NodeRegistry, operations: Optional[NodeOperations] = None,
                 audit: Optional[AuditLog] = None, max_workers: int = DEFAULT_MAX_WORKERS):
        self.registry = registry
        self.audit = audit
        self.max_workers = max_workers
        self._ops: Dict[str, BatchOperation] = {}
        if operations is not None:
            self._register_builtin(operations)

    def register(self, name: str, func: OperationFunc, tracks_status: bool = True) -> None:
        self._ops[name] = BatchOperation(name, func, tracks_status)

    @property
    def operations(self):
        return sorted(self._ops)

    def run_batch(self, node_ids: Iterable[str], op: str, **params: Any) -> Dict[str, BatchResult]:
        """Run ``op`` on every node and return one result per node id.

        Raises:
            BatchInputError: If no node ids are given or the operation is unknown
        """
        ids = list(dict.fromkeys(node_ids or []))
        if not ids:
            raise BatchInputError("at least one node id is required")
        operation = self._ops.get(op)
        if operation is None:
            raise BatchInputError(f"unknown batch operation: {op}")

        workers = max(1, min(self.max_workers, len(ids)))
        logger.info(f"Running {op} on {len(ids)} nodes with {workers} workers")
        start_time = time.time()
        results: Dict[str, BatchResult] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"batch_{op}") as executor:
            future_to_node = {
                executor.submit(self._run_one, node_id, operation, params): node_id
                for node_id in ids
            }
            completed = 0
            for future in as_completed(future_to_node):
                node_id = future_to_node[future]
                completed += 1
                results[node_id] = future.result()
                status = "✅" if results[node_id].ok else "❌"
                logger.info(f"[{completed}/{len(ids)}] {status} {node_id} "
                            f"({(time.time() - start_time):.1f}s): {results[node_id].message}")

        failed = sum(1 for r in results.values() if not r.ok)
        logger.info(f"{op} finished: {len(ids) - failed} succeeded, {failed} failed")
        return results

    def setup_ssh_trust(self, node_ids: Iterable[str]) -> Dict[str, BatchResult]:
        """Let every node log in to every other node with its own key.

        Runs three batches: collect each node's public key (creating it when
        missing), authorize all collected keys everywhere, then check each
        node can reach its peers. A node that fails a phase is left out of
        the later ones.

        Raises:
            BatchInputError: If fewer than two nodes are given
        """
        ids = list(dict.fromkeys(node_ids or []))
        if len(ids) < 2:
            raise BatchInputError("at least 2 nodes are required for passwordless SSH")

        results = self.run_batch(ids, "ssh_public_key")
        keys = [r.message for r in results.values() if r.ok]
        ready = [node_id for node_id in ids if results[node_id].ok]
        if len(ready) < 2:
            return results

        results.update(self.run_batch(ready, "ssh_authorize", keys=keys))
        ready = [node_id for node_id in ready if results[node_id].ok]
        if len(ready) < 2:
            return results

        results.update(self.run_batch(ready, "ssh_verify", peers=ready))
        return results

    def _run_one(self, node_id: str, operation: BatchOperation, params: Dict[str, Any]) -> BatchResult:
        entry = None
        try:
            node = self.registry.get(node_id)
        except NodeNotFoundError as e:
            if self.audit:
                self.audit.record(f"Batch:{operation.name}", str(e), success=False, node_id=node_id)
            return BatchResult("failed", str(e))

        if self.audit:
            entry = self.audit.start(f"Batch:{operation.name}", operation.name, node.id, node.name)
        if operation.tracks_status:
            self._set_status(node, NodeStatus.DEPLOYING)

        try:
            message = operation.func(node, params) or "ok"
            result = BatchResult("success", message)
        except KubeInstallError as e:
            result = BatchResult("failed", str(e))
        except Exception as e:
            logger.exception(f"Unexpected error running {operation.name} on {node.name}")
            result = BatchResult("failed", f"{type(e).__name__}: {e}")

        if operation.tracks_status:
            self._set_status(node, NodeStatus.READY if result.ok else NodeStatus.FAILED)
        if self.audit and entry is not None:
            try:
                self.audit.finish(entry, result.ok, result.message)
            except Exception:
                logger.exception(f"Could not record the {operation.name} result for {node.name}")
        return result

    def _set_status(self, node: Node, status: NodeStatus) -> None:
        try:
            self.registry.set_status(node.id, status)
        except NodeNotFoundError:
            logger.warning(f"Node {node.name} was deleted during the batch")

    def _register_builtin(self, ops: NodeOperations) -> None:
        def test_connection(node, params):
            if not self.registry.test_connection(node.id):
                raise KubeInstallError(f"{node.name} is unreachable")
            return "reachable"

        def preflight(node, params):
            checks = ops.preflight(node)
            return f"{len(checks)} checks passed"

        def runtime_status(node, params):
            result = ops.runtime_service(node, "status", params.get("runtime"))
            state = result.stdout.strip() or "unknown"
            if not result.ok:
                raise KubeInstallError(f"runtime is {state}")
            return state

        def push_images(node, params):
            harbor = params.get("harbor")
            if not harbor:
                raise KubeInstallError("harbor settings are required")
            if isinstance(harbor, dict):
                harbor = HarborConfig(**harbor)
            results = ops.kubeadm.push_images_to_harbor(node, harbor, params.get("version") or DEFAULT_VERSION)
            failed = [image for image, status in results.items() if status != "pushed"]
            if failed:
                raise KubeInstallError(f"failed to push {len(failed)} of {len(results)} images")
            return f"pushed {len(results)} images"

        def ssh_authorize(node, params):
            keys = params.get("keys") or []
            if not keys:
                raise KubeInstallError("no public keys to authorize")
            ops.authorize_keys(node, keys)
            return f"authorized {len(keys)} keys"

        def ssh_verify(node, params):
            failed = []
            peers = [self.registry.get(peer_id) for peer_id in params.get("peers") or [] if peer_id != node.id]
            for peer in peers:
                try:
                    ops.verify_ssh(node, peer)
                except KubeInstallError as e:
                    logger.warning(f"{node.name} cannot reach {peer.name} without a password: {e}")
                    failed.append(peer.name)
            if failed:
                raise KubeInstallError(f"cannot log in to {', '.join(failed)}")
            return f"reaches {len(peers)} peers"

        def service_action(action):
            def run(node, params):
                ops.runtime_service(node, action, params.get("runtime"))
                return f"runtime {action} done"
            return run

        self.register("test_connection", test_connection, tracks_status=False)
        self.register("preflight", preflight, tracks_status=False)
        self.register("runtime_status", runtime_status, tracks_status=False)
        self.register("kubeadm_version", lambda node, p: ops.kubeadm.version(node) or "unknown", tracks_status=False)
        self.register("system_prep", lambda node, p: _done(ops.system_prep(node)))
        self.register("runtime_install", lambda node, p: _done(ops.install_runtime(
            node, p.get("runtime"), p.get("version"), p.get("repo_url"))))
        self.register("runtime_configure", lambda node, p: _done(ops.configure_runtime(node, p.get("runtime"))))
        self.register("runtime_remove", lambda node, p: _done(ops.remove_runtime(node, p.get("runtime"))))
        for action in ("start", "stop", "enable", "disable"):
            self.register(f"runtime_{action}", service_action(action), tracks_status=False)
        self.register("k8s_install", lambda node, p: _done(ops.install_kubernetes(
            node, p.get("version"), p.get("repo_url"))))
        self.register("pull_images", lambda node, p: _done(ops.kubeadm.pull_images(
            node, p.get("version") or "stable-1", p.get("image_repository", ""))))
        self.register("push_images", push_images)
        self.register("reset", lambda node, p: _done(ops.reset(node)))
        self.register("ssh_configure", lambda node, p: _done(ops.configure_ssh(node)), tracks_status=False)
        self.register("ssh_public_key", lambda node, p: ops.public_key(node), tracks_status=False)
        self.register("ssh_authorize", ssh_authorize, tracks_status=False)
        self.register("ssh_verify", ssh_verify, tracks_status=False)


def _done(result) -> str:
    lines = [line for line in result.stdout.strip().splitlines() if line.strip()]
    return lines[-1] if lines else "completed"
