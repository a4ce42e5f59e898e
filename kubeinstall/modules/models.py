"""
Data models for nodes, audit log entries and cluster bootstrap state.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import CredentialError

JOIN_TOKEN_TTL = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class NodeRole(str, Enum):
    MASTER = "master"
    WORKER = "worker"


class NodeStatus(str, Enum):
    UNKNOWN = "unknown"
    TESTING = "testing"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"
    DEPLOYING = "deploying"
    READY = "ready"
    FAILED = "failed"


class LogStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not LogStatus.RUNNING


class WorkflowState(str, Enum):
    SELECT_NODES = "select_nodes"
    CONFIGURE = "configure"
    INIT_MASTER = "init_master"
    JOIN_WORKERS = "join_workers"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (WorkflowState.COMPLETE, WorkflowState.FAILED)


@dataclass(frozen=True)
class PasswordCredential:
    password: str

    def __repr__(self) -> str:
        return "PasswordCredential(password='***')"


@dataclass(frozen=True)
class KeyCredential:
    private_key: str

    def __repr__(self) -> str:
        return "KeyCredential(private_key='***')"


Credential = Union[PasswordCredential, KeyCredential]


def make_credential(password: Optional[str] = None, private_key: Optional[str] = None,
                    host: str = "", port: int = 22) -> Credential:
    """Build a credential from the raw password / private key fields.

    The private key takes precedence when both are given.

    Raises:
        CredentialError: If neither field is set
    """
    if private_key:
        return KeyCredential(private_key)
    if password:
        return PasswordCredential(password)
    raise CredentialError(
        f"either password or privateKey must be provided for SSH connection to {host}:{port}"
    )


@dataclass
class Node:
    """A managed host."""
    name: str
    ip: str
    username: str
    credential: Credential
    role: NodeRole = NodeRole.WORKER
    port: int = 22
    id: str = ""
    status: NodeStatus = NodeStatus.UNKNOWN
    container_runtime: str = ""
    os: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def address(self) -> str:
        return f"{self.ip}:{self.port}"

    def to_record(self) -> Dict[str, Any]:
        """Persisted shape, secrets included."""
        record = {
            "id": self.id,
            "name": self.name,
            "ip": self.ip,
            "port": self.port,
            "username": self.username,
            "nodeType": self.role.value,
            "status": self.status.value,
            "containerRuntime": self.container_runtime,
            "os": self.os,
            "createdAt": _format_ts(self.created_at),
            "updatedAt": _format_ts(self.updated_at),
        }
        if isinstance(self.credential, KeyCredential):
            record["privateKey"] = self.credential.private_key
        else:
            record["password"] = self.credential.password
        return record

    def to_public(self) -> Dict[str, Any]:
        """Record shape with secrets masked, for API and CLI output."""
        record = self.to_record()
        if "password" in record:
            record["password"] = "******"
        if "privateKey" in record:
            record["privateKey"] = "******"
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Node":
        port = int(record.get("port") or 22)
        return cls(
            id=record["id"],
            name=record.get("name", ""),
            ip=record.get("ip", ""),
            port=port,
            username=record.get("username", ""),
            credential=make_credential(record.get("password"), record.get("privateKey"),
                                       record.get("ip", ""), port),
            role=NodeRole(record.get("nodeType") or NodeRole.WORKER.value),
            status=NodeStatus(record.get("status") or NodeStatus.UNKNOWN.value),
            container_runtime=record.get("containerRuntime", ""),
            os=record.get("os", ""),
            created_at=_parse_ts(record.get("createdAt")) or utcnow(),
            updated_at=_parse_ts(record.get("updatedAt")) or utcnow(),
        )


@dataclass
class LogEntry:
    """One audited orchestration step."""
    id: str
    node_id: str = ""
    node_name: str = ""
    operation: str = ""
    command: str = ""
    output: str = ""
    status: LogStatus = LogStatus.RUNNING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "operation": self.operation,
            "command": self.command,
            "output": self.output,
            "status": self.status.value,
            "createdAt": _format_ts(self.created_at),
            "updatedAt": _format_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            id=data["id"],
            node_id=data.get("nodeId", ""),
            node_name=data.get("nodeName", ""),
            operation=data.get("operation", ""),
            command=data.get("command", ""),
            output=data.get("output", ""),
            status=LogStatus(data.get("status", LogStatus.RUNNING.value)),
            created_at=_parse_ts(data.get("createdAt")) or utcnow(),
            updated_at=_parse_ts(data.get("updatedAt")) or utcnow(),
        )


@dataclass
class BatchResult:
    status: str
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, str]:
        return {"status": self.status, "message": self.message}


@dataclass
class JoinToken:
    """Credential a worker uses to join the control plane."""
    endpoint: str
    token: str
    ca_cert_hash: str
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if self.expires_at is None:
            self.expires_at = self.created_at + JOIN_TOKEN_TTL
        elif self.expires_at.tzinfo is None:
            self.expires_at = self.expires_at.replace(tzinfo=timezone.utc)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def command(self) -> str:
        return (
            f"kubeadm join {self.endpoint} --token {self.token} "
            f"--discovery-token-ca-cert-hash {self.ca_cert_hash}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "token": self.token,
            "caCertHash": self.ca_cert_hash,
            "createdAt": _format_ts(self.created_at),
            "expiresAt": _format_ts(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinToken":
        return cls(
            endpoint=data["endpoint"],
            token=data["token"],
            ca_cert_hash=data["caCertHash"],
            created_at=_parse_ts(data.get("createdAt")) or utcnow(),
            expires_at=_parse_ts(data.get("expiresAt")),
        )
