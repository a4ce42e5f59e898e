"""
Exception hierarchy for remote orchestration.
"""
from enum import Enum
from typing import Optional


class KubeInstallError(Exception):
    """Base class for all kubeinstall errors."""
    pass


class CredentialError(KubeInstallError):
    """Raised when a node has neither a password nor a private key."""
    pass


class ConnectErrorKind(str, Enum):
    REFUSED = "refused"
    TIMEOUT = "timeout"
    AUTH_FAILED = "auth-failed"
    UNREACHABLE = "unreachable"


class ConnectError(KubeInstallError):
    """Raised when an SSH session cannot be established.

    Args:
        host: Host the connection was made to
        port: SSH port
        kind: Classified failure reason
        reason: Underlying error text
    """

    def __init__(self, host: str, port: int, kind: ConnectErrorKind, reason: str = ""):
        self.host = host
        self.port = port
        self.kind = kind
        self.reason = reason
        super().__init__(f"failed to connect to {host}:{port} ({kind.value}): {reason}")


class RemoteCommandError(KubeInstallError):
    """Raised when a remote command exits non-zero."""

    def __init__(self, command: str, exit_code: Optional[int], stdout: str = "", stderr: str = "",
                 message: Optional[str] = None):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message or f"command exited with status {exit_code}: {stderr.strip() or command}")


class TimeoutError(RemoteCommandError):
    """Raised when a remote command does not finish within its timeout."""

    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        self.timeout = timeout
        super().__init__(command, None, stdout, stderr,
                         message=f"command timed out after {timeout} seconds")


class TemplateNotFoundError(KubeInstallError):
    """Raised when no script template exists for a (distro, step) pair."""

    def __init__(self, distro: str, step: str):
        self.distro = distro
        self.step = step
        super().__init__(f"no script template for distro '{distro}' and step '{step}'")


class NodeNotFoundError(KubeInstallError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"node not found: {node_id}")


class BatchInputError(KubeInstallError):
    """Raised for malformed batch requests (empty node set, unknown op)."""
    pass


class WorkflowError(KubeInstallError):
    """Raised on an illegal workflow transition or an unmet precondition."""
    pass


class LogTransitionError(KubeInstallError):
    """Raised when a log entry status would move backwards."""
    pass


class PackageSourceError(KubeInstallError):
    pass


class TemplateRenderError(KubeInstallError):
    """Raised when a template references a value that was not supplied."""
    pass
