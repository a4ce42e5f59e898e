"""
Node registry: CRUD and lifecycle status for managed hosts.
"""
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional

from .errors import ConnectError, CredentialError, NodeNotFoundError, RemoteCommandError
from .models import Node, NodeRole, NodeStatus, make_credential, utcnow
from .ssh import SSHExecutor
from .store import NODES, RecordStore

logger = logging.getLogger("kubeinstall.registry")

_UPDATABLE = ("name", "ip", "port", "username", "role", "container_runtime", "os")


class NodeRegistry:
    """Stores nodes in the record store.

    All writes go through one lock so concurrent updates apply one at a time;
    readers always see the last committed record.
    """

    def __init__(self, store: RecordStore, executor: Optional[SSHExecutor] = None):
        self.store = store
        self.executor = executor
        self._lock = threading.RLock()

    def create(self, name: str, ip: str, username: str, password: Optional[str] = None,
               private_key: Optional[str] = None, port: int = 22,
               role: NodeRole = NodeRole.WORKER) -> Node:
        """Register a node.

        Raises:
            CredentialError: If neither password nor private key is given
        """
        credential = make_credential(password, private_key, ip, port)
        node = Node(
            id=uuid.uuid4().hex,
            name=name or ip,
            ip=ip,
            port=port or 22,
            username=username,
            credential=credential,
            role=NodeRole(role),
        )
        with self._lock:
            self.store.put(NODES, node.id, node.to_record())
        logger.info(f"Registered node {node.name} ({node.address}) as {node.role.value}")
        return node

    def get(self, node_id: str) -> Node:
        record = self.store.get(NODES, node_id)
        if record is None:
            raise NodeNotFoundError(node_id)
        return Node.from_record(record)

    def find(self, ref: str) -> Node:
        """Look a node up by id, then by name, then by address."""
        record = self.store.get(NODES, ref)
        if record is not None:
            return Node.from_record(record)
        for node in self.list():
            if ref in (node.name, node.ip):
                return node
        raise NodeNotFoundError(ref)

    def list(self, role: Optional[NodeRole] = None) -> List[Node]:
        nodes = [Node.from_record(r) for r in self.store.list(NODES)]
        if role is not None:
            nodes = [n for n in nodes if n.role == NodeRole(role)]
        return nodes

    def update(self, node_id: str, password: Optional[str] = None,
               private_key: Optional[str] = None, **changes: Any) -> Node:
        """Update node fields.

        The stored credential is kept when neither ``password`` nor
        ``private_key`` is supplied.
        """
        with self._lock:
            node = self.get(node_id)
            for key, value in changes.items():
                if key not in _UPDATABLE:
                    raise ValueError(f"Field '{key}' cannot be updated")
                if value is None:
                    continue
                if key == "role":
                    value = NodeRole(value)
                setattr(node, key, value)
            if password or private_key:
                node.credential = make_credential(password, private_key, node.ip, node.port)
            node.updated_at = utcnow()
            self.store.put(NODES, node.id, node.to_record())
        logger.debug(f"Updated node {node.name}")
        return node

    def set_status(self, node_id: str, status: NodeStatus, **fields: Any) -> Node:
        with self._lock:
            node = self.get(node_id)
            node.status = NodeStatus(status)
            for key, value in fields.items():
                setattr(node, key, value)
            node.updated_at = utcnow()
            self.store.put(NODES, node.id, node.to_record())
        return node

    def delete(self, node_id: str) -> None:
        with self._lock:
            if not self.store.delete(NODES, node_id):
                raise NodeNotFoundError(node_id)
        logger.info(f"Deleted node {node_id}")

    def test_connection(self, node_id: str) -> bool:
        """Open a short-lived session and record reachable/unreachable."""
        if self.executor is None:
            raise RuntimeError("NodeRegistry has no executor configured")
        node = self.set_status(node_id, NodeStatus.TESTING)
        try:
            reachable, os_name = self.executor.test_connection(node)
        except (ConnectError, CredentialError, RemoteCommandError) as e:
            logger.warning(f"Connection test for {node.name} failed: {e}")
            self.set_status(node_id, NodeStatus.UNREACHABLE)
            return False
        except Exception as e:
            logger.exception(f"Unexpected error testing connection to {node.name}: {e}")
            self.set_status(node_id, NodeStatus.UNREACHABLE)
            return False

        if reachable:
            self.set_status(node_id, NodeStatus.REACHABLE, os=os_name or node.os)
        else:
            self.set_status(node_id, NodeStatus.UNREACHABLE)
        logger.info(f"Node {node.name} is {'reachable' if reachable else 'unreachable'}")
        return reachable

    def public_view(self) -> List[Dict[str, Any]]:
        return [n.to_public() for n in self.list()]
