"""
Remote command execution over SSH using paramiko.
"""
import io
import logging
import socket
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple

import paramiko

from . import errors
from .audit import AuditLog
from .errors import ConnectError, ConnectErrorKind, CredentialError, RemoteCommandError
from .models import KeyCredential, Node, PasswordCredential, utcnow

logger = logging.getLogger("kubeinstall.ssh")

DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_COMMAND_TIMEOUT = 3600
POLL_INTERVAL = 0.1
CHUNK_SIZE = 32768

_KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def validate_credential(node: Node) -> None:
    """Raise CredentialError unless the node carries a password or a private key."""
    credential = node.credential
    if isinstance(credential, PasswordCredential) and credential.password:
        return
    if isinstance(credential, KeyCredential) and credential.private_key:
        return
    raise CredentialError(
        f"either password or privateKey must be provided for SSH connection to {node.ip}:{node.port}"
    )


def load_private_key(text: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key of any supported type.

    Raises:
        CredentialError: If the key cannot be parsed
    """
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError):
            continue
    raise CredentialError("failed to parse private key")


def classify_connect_error(exc: Exception) -> ConnectErrorKind:
    """Map a paramiko/socket failure onto a connection error kind."""
    if isinstance(exc, paramiko.AuthenticationException):
        return ConnectErrorKind.AUTH_FAILED
    if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
        errnos = {getattr(e, "errno", None) for e in exc.errors.values()}
        if errnos & {111, 61, 10061}:
            return ConnectErrorKind.REFUSED
        return ConnectErrorKind.UNREACHABLE
    if isinstance(exc, ConnectionRefusedError):
        return ConnectErrorKind.REFUSED
    if isinstance(exc, socket.timeout):
        return ConnectErrorKind.TIMEOUT
    if "timed out" in str(exc).lower():
        return ConnectErrorKind.TIMEOUT
    return ConnectErrorKind.UNREACHABLE


class SSHSession:
    """An authenticated SSH connection to one node.

    Use as a context manager; the underlying client is closed on every exit path.
    """

    def __init__(self, node: Node, client: paramiko.SSHClient):
        self.node = node
        self._client = client

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self._client.close()

    def run(self, command: str, timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT,
            stdin_data: Optional[str] = None) -> CommandResult:
        """Run a command and wait for it to finish.

        Args:
            command: Shell command line
            timeout: Seconds to wait before giving up
            stdin_data: Text written to the command's stdin

        Returns:
            CommandResult with the captured output and exit code

        Raises:
            TimeoutError: If the command runs past the timeout
            ConnectError: If the SSH channel fails while the command runs
        """
        timeout = timeout or DEFAULT_COMMAND_TIMEOUT
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise ConnectError(self.node.ip, self.node.port, ConnectErrorKind.UNREACHABLE,
                               "SSH transport is not active")

        stdout, stderr = [], []
        try:
            channel = transport.open_session()
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise self._channel_error(e) from e
        try:
            channel.settimeout(timeout)
            channel.exec_command(command)
            if stdin_data is not None:
                try:
                    channel.sendall(stdin_data.encode())
                except socket.timeout as e:
                    raise errors.TimeoutError(command, timeout) from e
                channel.shutdown_write()

            deadline = time.monotonic() + timeout
            while True:
                progressed = False
                while channel.recv_ready():
                    stdout.append(channel.recv(CHUNK_SIZE))
                    progressed = True
                while channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(CHUNK_SIZE))
                    progressed = True
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if time.monotonic() >= deadline:
                    raise errors.TimeoutError(command, timeout, _decode(stdout), _decode(stderr))
                if not progressed:
                    time.sleep(POLL_INTERVAL)

            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise self._channel_error(e) from e
        finally:
            channel.close()

        return CommandResult(_decode(stdout), _decode(stderr), exit_code)

    def _channel_error(self, exc: Exception) -> ConnectError:
        kind = classify_connect_error(exc)
        logger.warning(f"SSH channel to {self.node.address} failed ({kind.value}): {exc}")
        return ConnectError(self.node.ip, self.node.port, kind, str(exc) or type(exc).__name__)

    def run_script(self, script: str, timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT) -> CommandResult:
        """Run a multi-line script as one unit by feeding it to bash on stdin."""
        return self.run("bash -s", timeout=timeout, stdin_data=script)


def _decode(chunks) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def open_session(node: Node, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> SSHSession:
    """Open an SSH session to a node.

    Raises:
        CredentialError: If the node has no usable credential (no socket is opened)
        ConnectError: If the connection fails
    """
    validate_credential(node)

    kwargs = {
        "hostname": node.ip,
        "port": node.port,
        "username": node.username,
        "timeout": connect_timeout,
        "banner_timeout": connect_timeout,
        "auth_timeout": connect_timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if isinstance(node.credential, KeyCredential):
        kwargs["pkey"] = load_private_key(node.credential.private_key)
    else:
        kwargs["password"] = node.credential.password

    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(**kwargs)
    except (paramiko.SSHException, OSError) as e:
        client.close()
        kind = classify_connect_error(e)
        logger.warning(f"SSH connection to {node.username}@{node.address} failed ({kind.value}): {e}")
        raise ConnectError(node.ip, node.port, kind, str(e)) from e

    logger.debug(f"Connected to {node.username}@{node.address}")
    return SSHSession(node, client)


def format_output(command: str, started, finished, stdout: str, stderr: str,
                  exit_code: Optional[int] = None) -> str:
    """Build the text stored in a log entry for one command run."""
    lines = [
        "=== SSH command execution ===",
        f"Command: {command}",
        f"Start: {started:%Y-%m-%d %H:%M:%S}",
        f"End: {finished:%Y-%m-%d %H:%M:%S}",
        f"Duration: {(finished - started).total_seconds():.1f}s",
    ]
    if exit_code is not None:
        lines.append(f"Exit code: {exit_code}")
    lines.append(f"\n=== stdout ===\n{stdout}")
    lines.append(f"=== stderr ===\n{stderr}")
    return "\n".join(lines)


class SSHExecutor:
    """Runs audited commands on nodes, one at a time per node."""

    def __init__(
        self,
        audit: Optional[AuditLog] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        session_factory: Optional[Callable[[Node, float], SSHSession]] = None,
    ):
        self.audit = audit
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._session_factory = session_factory or open_session
        self._node_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, node_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._node_locks.get(node_id)
            if lock is None:
                lock = self._node_locks[node_id] = threading.Lock()
            return lock

    @contextmanager
    def node_lock(self, node: Node) -> Iterator[None]:
        """Serialize operations against one node."""
        lock = self._lock_for(node.id or node.address)
        with lock:
            yield

    def connect(self, node: Node) -> SSHSession:
        validate_credential(node)
        return self._session_factory(node, self.connect_timeout)

    def test_connection(self, node: Node) -> Tuple[bool, str]:
        """Check that a node accepts SSH and report its OS.

        Returns:
            (reachable, os_name) where os_name is empty when detection failed
        """
        entry = None
        if self.audit:
            entry = self.audit.start("TestConnection", "echo 'hello'", node.id, node.name)
        try:
            with self.node_lock(node), self.connect(node) as session:
                result = session.run("echo 'hello'", timeout=self.connect_timeout)
                reachable = result.ok and "hello" in result.stdout
                os_name = detect_os(session) if reachable else ""
        except Exception as e:
            self._finish(entry, False, f"{type(e).__name__}: {e}")
            raise
        self._finish(entry, reachable, f"{node.address} reachable, OS: {os_name or 'unknown'}"
                     if reachable else f"unexpected reply from {node.address}: {result.stdout.strip()}")
        return reachable, os_name

    def execute(
        self,
        node: Node,
        command: str,
        operation: str = "SSHCommandExecution",
        timeout: Optional[float] = None,
        check: bool = True,
        script: bool = False,
        stdin_data: Optional[str] = None,
        display: Optional[str] = None,
    ) -> CommandResult:
        """Run a command on a node, wrapped in a running/terminal log entry.

        Args:
            node: Target node
            command: Command line, or script text when ``script`` is set
            operation: Operation name recorded in the log
            timeout: Command timeout, defaults to the executor's
            check: Raise RemoteCommandError on a non-zero exit
            script: Run ``command`` as a multi-line script
            stdin_data: Text fed to the command on stdin, never logged
            display: Command text recorded in the log instead of ``command``

        Raises:
            CredentialError, ConnectError, RemoteCommandError, TimeoutError
        """
        timeout = timeout or self.command_timeout
        shown = display or command
        with self.node_lock(node):
            entry = None
            if self.audit:
                entry = self.audit.start(operation, shown, node.id, node.name,
                                         output=f"Running on {node.name} ({node.address})")
            started = utcnow()
            try:
                with self.connect(node) as session:
                    if script:
                        result = session.run_script(command, timeout=timeout)
                    elif stdin_data is not None:
                        result = session.run(command, timeout=timeout, stdin_data=stdin_data)
                    else:
                        result = session.run(command, timeout=timeout)
            except RemoteCommandError as e:
                self._finish(entry, False, format_output(shown, started, utcnow(), e.stdout,
                                                         f"{e.stderr}\n{e}".strip()))
                raise
            except Exception as e:
                self._finish(entry, False, f"{type(e).__name__}: {e}")
                raise

            self._finish(entry, result.ok, format_output(shown, started, utcnow(), result.stdout,
                                                         result.stderr, result.exit_code))
            if result.ok:
                logger.debug(f"[{node.name}] {operation} succeeded")
            else:
                logger.warning(f"[{node.name}] {operation} exited with status {result.exit_code}")
                if check:
                    raise RemoteCommandError(shown, result.exit_code, result.stdout, result.stderr)
            return result

    def _finish(self, entry, success: bool, output: str) -> None:
        if self.audit and entry is not None:
            self.audit.finish(entry, success, output)


def detect_os(session: SSHSession) -> str:
    """Return ``<id> <version_id>`` from /etc/os-release, or empty if unavailable."""
    result = session.run("cat /etc/os-release", timeout=DEFAULT_CONNECT_TIMEOUT)
    if not result.ok:
        return ""
    return parse_os_release(result.stdout)


def parse_os_release(text: str) -> str:
    fields = {}
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        fields[key.strip()] = value.strip().strip('"')
    distro = fields.get("ID", "")
    version = fields.get("VERSION_ID", "")
    return f"{distro} {version}".strip()
