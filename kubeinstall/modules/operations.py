"""
Per-node provisioning steps shared by batch operations and the bootstrap workflow.
"""
import logging
import shlex
from typing import List, Optional

from .errors import KubeInstallError
from .kubeadm import CRI_SOCKETS, KubeadmClient
from .models import Node
from .preflight import CheckResult, run_preflight
from .registry import NodeRegistry
from .scripts import ScriptTemplateStore, distro_family, normalize_distro
from .sources import PackageSourceRepository
from .ssh import CommandResult, SSHExecutor, parse_os_release

logger = logging.getLogger("kubeinstall.operations")

RUNTIME_SERVICES = {"containerd": "containerd", "crio": "crio"}
RUNTIME_PACKAGES = {
    "deb": {"containerd": "containerd", "crio": "cri-o"},
    "rpm": {"containerd": "containerd.io", "crio": "cri-o"},
}
SERVICE_ACTIONS = ("start", "stop", "restart", "enable", "disable", "status")
SSH_PUBLIC_KEY = "~/.ssh/id_rsa.pub"

SSH_CONFIGURE_SCRIPT = """mkdir -p ~/.ssh && chmod 700 ~/.ssh
[ -f ~/.ssh/id_rsa ] || ssh-keygen -t rsa -b 4096 -f ~/.ssh/id_rsa -N '' -q
chmod 600 ~/.ssh/id_rsa
chmod 644 ~/.ssh/id_rsa.pub
sudo sed -i 's/^#\\?PubkeyAuthentication .*/PubkeyAuthentication yes/' /etc/ssh/sshd_config
sudo systemctl restart sshd 2>/dev/null || sudo systemctl restart ssh 2>/dev/null || sudo service ssh restart
"""


class PreflightFailed(KubeInstallError):
    def __init__(self, node: Node, checks: List[CheckResult]):
        self.checks = checks
        failed = ", ".join(c.name for c in checks if not c.passed)
        super().__init__(f"preflight failed on {node.name}: {failed}")


def _runtime(runtime: Optional[str]) -> str:
    runtime = (runtime or "containerd").lower().replace("cri-o", "crio")
    if runtime not in RUNTIME_SERVICES:
        raise ValueError(f"Unsupported container runtime: {runtime}")
    return runtime


class NodeOperations:
    """Renders the right script for a node's distro and runs it."""

    def __init__(self, executor: SSHExecutor, registry: NodeRegistry, scripts: ScriptTemplateStore,
                 sources: Optional[PackageSourceRepository] = None):
        self.executor = executor
        self.registry = registry
        self.scripts = scripts
        self.sources = sources
        self.kubeadm = KubeadmClient(executor)

    def resolve_distro(self, node: Node) -> str:
        """Distro id of a node, detected over SSH on first use."""
        if node.os:
            return normalize_distro(node.os)
        result = self.executor.execute(node, "cat /etc/os-release", operation="DetectOS", check=False)
        os_name = parse_os_release(result.stdout) if result.ok else ""
        if not os_name:
            raise KubeInstallError(f"could not detect the operating system of {node.name}")
        self.registry.update(node.id, os=os_name)
        node.os = os_name
        return normalize_distro(os_name)

    def repo_url(self, repo_url: Optional[str] = None) -> str:
        if repo_url:
            return repo_url
        if self.sources is not None:
            return self.sources.get_default().url
        return ""

    def run_step(self, node: Node, step: str, operation: str, version: Optional[str] = None,
                 repo_url: Optional[str] = None) -> CommandResult:
        script = self.scripts.render(self.resolve_distro(node), step, version=version,
                                     repo_url=self.repo_url(repo_url))
        return self.executor.execute(node, script, operation=operation, script=True)

    def preflight(self, node: Node) -> List[CheckResult]:
        checks = run_preflight(self.executor, node)
        if not all(c.passed for c in checks):
            raise PreflightFailed(node, checks)
        return checks

    def system_prep(self, node: Node) -> CommandResult:
        return self.run_step(node, "system_prep", "SystemPrep")

    def install_runtime(self, node: Node, runtime: Optional[str] = None,
                        version: Optional[str] = None, repo_url: Optional[str] = None) -> CommandResult:
        runtime = _runtime(runtime)
        if runtime == "containerd":
            self.run_step(node, "containerd_install", "InstallRuntime")
            result = self.run_step(node, "containerd_config", "ConfigureRuntime")
        else:
            result = self.run_step(node, "crio_install", "InstallRuntime", version=version, repo_url=repo_url)
        self.registry.update(node.id, container_runtime=runtime)
        return result

    def configure_runtime(self, node: Node, runtime: Optional[str] = None) -> CommandResult:
        runtime = _runtime(runtime or node.container_runtime)
        if runtime == "containerd":
            return self.run_step(node, "containerd_config", "ConfigureRuntime")
        return self.runtime_service(node, "restart", runtime)

    def runtime_service(self, node: Node, action: str, runtime: Optional[str] = None) -> CommandResult:
        if action not in SERVICE_ACTIONS:
            raise ValueError(f"Unsupported service action: {action}")
        service = RUNTIME_SERVICES[_runtime(runtime or node.container_runtime)]
        if action == "status":
            return self.executor.execute(node, f"systemctl is-active {service}",
                                         operation="RuntimeStatus", check=False)
        return self.executor.execute(node, f"sudo systemctl {action} {service}",
                                     operation=f"Runtime{action.capitalize()}")

    def remove_runtime(self, node: Node, runtime: Optional[str] = None) -> CommandResult:
        runtime = _runtime(runtime or node.container_runtime)
        family = distro_family(self.resolve_distro(node))
        package = RUNTIME_PACKAGES[family][runtime]
        service = RUNTIME_SERVICES[runtime]
        if family == "deb":
            remove = f"sudo apt-get remove -y {package}"
        else:
            remove = f"sudo $(command -v dnf || command -v yum) remove -y {package}"
        result = self.executor.execute(
            node, f"sudo systemctl disable --now {service} || true\n{remove}",
            operation="RemoveRuntime", script=True,
        )
        self.registry.update(node.id, container_runtime="")
        return result

    def install_kubernetes(self, node: Node, version: Optional[str] = None,
                           repo_url: Optional[str] = None) -> CommandResult:
        return self.run_step(node, "k8s_components", "InstallKubernetes", version=version, repo_url=repo_url)

    def reset(self, node: Node) -> CommandResult:
        """``kubeadm reset`` followed by local cleanup of CNI and kubeconfig files."""
        cri_socket = CRI_SOCKETS.get(node.container_runtime, "")
        self.kubeadm.reset(node, cri_socket)
        return self.run_step(node, "reset_cleanup", "ResetCleanup")

    def configure_ssh(self, node: Node) -> CommandResult:
        """Create the node's own key pair and enable public key login."""
        return self.executor.execute(node, SSH_CONFIGURE_SCRIPT, operation="ConfigureSSH", script=True)

    def public_key(self, node: Node) -> str:
        """The node's ``~/.ssh/id_rsa.pub``, generating the key pair first when missing."""
        result = self.executor.execute(node, f"cat {SSH_PUBLIC_KEY}", operation="ReadPublicKey", check=False)
        if not result.ok or not result.stdout.strip():
            self.configure_ssh(node)
            result = self.executor.execute(node, f"cat {SSH_PUBLIC_KEY}", operation="ReadPublicKey")
        key = result.stdout.strip()
        if not key.startswith("ssh-"):
            raise KubeInstallError(f"{node.name} returned an invalid public key")
        return key

    def authorize_keys(self, node: Node, keys: List[str]) -> CommandResult:
        """Add each key to ``authorized_keys`` unless it is already there."""
        lines = ["mkdir -p ~/.ssh && chmod 700 ~/.ssh", "touch ~/.ssh/authorized_keys"]
        for key in keys:
            quoted = shlex.quote(key)
            lines.append(f"grep -qxF {quoted} ~/.ssh/authorized_keys || echo {quoted} >> ~/.ssh/authorized_keys")
        lines.append("chmod 600 ~/.ssh/authorized_keys")
        return self.executor.execute(node, "\n".join(lines), operation="AuthorizeKeys", script=True)

    def verify_ssh(self, source: Node, target: Node) -> CommandResult:
        """Log in from ``source`` to ``target`` with keys only."""
        command = (f"ssh -o BatchMode=yes -o StrictHostKeyChecking=no -o ConnectTimeout=5 "
                   f"-p {target.port} {target.username}@{target.ip} 'echo success'")
        return self.executor.execute(source, command, operation="VerifySSHTrust")
