"""kubeadm commands run on cluster nodes.

This module renders the kubeadm init configuration, builds the kubeadm
command lines used by the bootstrap workflow, and parses the join command
that ``kubeadm init`` prints.
"""
import ipaddress
import logging
import os
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from .errors import KubeInstallError, RemoteCommandError, TemplateRenderError
from .models import JoinToken, Node
from .ssh import CommandResult, SSHExecutor

logger = logging.getLogger("kubeinstall.kubeadm")

KUBEADM_API_VERSION = "kubeadm.k8s.io/v1beta3"
REMOTE_CONFIG_PATH = "/tmp/kubeadm-config.yaml"

CRI_SOCKETS = {
    "containerd": "unix:///run/containerd/containerd.sock",
    "crio": "unix:///var/run/crio/crio.sock",
}

NETWORK_PLUGINS = {
    "flannel": "https://github.com/flannel-io/flannel/releases/latest/download/kube-flannel.yml",
    "calico": "https://raw.githubusercontent.com/projectcalico/calico/v3.27.3/manifests/calico.yaml",
    "none": "",
}

_TOKEN_RE = re.compile(r"--token[=\s]+(\S+)")
_HASH_RE = re.compile(r"--discovery-token-ca-cert-hash[=\s]+(\S+)")
_ENDPOINT_RE = re.compile(r"^kubeadm join\s+([^\s-][^\s]*)")


@dataclass
class Taint:
    key: str
    effect: str = "NoSchedule"
    value: str = ""


@dataclass
class HarborConfig:
    """Private registry that Kubernetes images are mirrored into."""
    url: str
    username: str
    password: str
    project: str = "library"
    enabled: bool = True
    skip_tls: bool = False


@dataclass
class ClusterSpec:
    """Cluster-wide settings needed before ``kubeadm init``."""
    version: str
    network_plugin: str
    runtime: str
    pod_subnet: str
    service_subnet: str
    dns_domain: str = "cluster.local"
    control_plane_endpoint: str = ""
    image_repository: str = ""
    repo_url: str = ""
    bind_port: int = 6443
    taints: List[Taint] = field(default_factory=list)
    harbor: Optional[HarborConfig] = None

    def validate(self) -> None:
        """Check every required setting.

        Raises:
            ValueError: Naming the first missing or invalid setting
        """
        for name in ("version", "network_plugin", "runtime", "pod_subnet", "service_subnet"):
            if not getattr(self, name):
                raise ValueError(f"{name} is required")
        if self.runtime not in CRI_SOCKETS:
            raise ValueError(f"Unsupported container runtime: {self.runtime}")
        if self.network_plugin not in NETWORK_PLUGINS:
            raise ValueError(f"Unsupported pod network plugin: {self.network_plugin}")
        try:
            pod = ipaddress.ip_network(self.pod_subnet)
            service = ipaddress.ip_network(self.service_subnet)
        except ValueError as e:
            raise ValueError(f"Invalid CIDR: {e}") from e
        if pod.overlaps(service):
            raise ValueError(f"Pod subnet {pod} overlaps service subnet {service}")

    @property
    def cri_socket(self) -> str:
        return CRI_SOCKETS[self.runtime]


@dataclass
class JoinTokenResult:
    """Outcome of scanning command output for a join command."""
    found: bool
    token: Optional[JoinToken] = None
    command: str = ""


def _join_commands(output: str) -> List[str]:
    """Collect every ``kubeadm join`` command, joining ``\\`` continuation lines."""
    lines = output.splitlines()
    commands = []
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        if line.startswith("kubeadm join"):
            parts = []
            while i < len(lines):
                current = lines[i].strip()
                if current.endswith("\\"):
                    parts.append(current[:-1].strip())
                    i += 1
                    continue
                parts.append(current)
                break
            commands.append(" ".join(p for p in parts if p))
        i += 1
    return commands


def extract_join_token(output: str) -> JoinTokenResult:
    """Find the worker join command in kubeadm output.

    Control-plane join commands (``--control-plane``) are skipped when a
    worker command is also present. Never raises; a miss is reported as
    ``found=False``.
    """
    commands = _join_commands(output or "")
    if not commands:
        return JoinTokenResult(found=False)
    workers = [c for c in commands if "--control-plane" not in c]
    command = (workers or commands)[0]

    endpoint = _ENDPOINT_RE.search(command)
    token = _TOKEN_RE.search(command)
    ca_hash = _HASH_RE.search(command)
    if not (endpoint and token and ca_hash):
        return JoinTokenResult(found=False, command=command)
    return JoinTokenResult(
        found=True,
        token=JoinToken(endpoint=endpoint.group(1), token=token.group(1), ca_cert_hash=ca_hash.group(1)),
        command=command,
    )


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "templates")


def render_init_config(spec: ClusterSpec, node: Node) -> str:
    """Render the kubeadm init configuration for the master node.

    Raises:
        TemplateRenderError: If the template is missing or fails to render
    """
    env = Environment(
        loader=FileSystemLoader(get_template_path()),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )
    try:
        template = env.get_template("kubeadm-init.yaml.j2")
        return template.render(
            api_version=KUBEADM_API_VERSION,
            advertise_address=node.ip,
            bind_port=spec.bind_port,
            node_name=node.name,
            cri_socket=spec.cri_socket,
            taints=spec.taints,
            version=spec.version,
            control_plane_endpoint=spec.control_plane_endpoint,
            image_repository=spec.image_repository,
            pod_subnet=spec.pod_subnet,
            service_subnet=spec.service_subnet,
            dns_domain=spec.dns_domain,
        )
    except TemplateError as e:
        raise TemplateRenderError(f"Failed to render kubeadm config: {e}") from e


def init_script(config: str) -> str:
    return "\n".join([
        "set -e",
        f"cat <<'EOF' | sudo tee {REMOTE_CONFIG_PATH} >/dev/null",
        config.rstrip("\n"),
        "EOF",
        f"sudo kubeadm init --config {REMOTE_CONFIG_PATH} --upload-certs",
    ])


def post_init_script(spec: ClusterSpec) -> str:
    """Copy admin.conf for the SSH user and apply the pod network manifest."""
    lines = [
        "set -e",
        "mkdir -p $HOME/.kube",
        "sudo cp -f /etc/kubernetes/admin.conf $HOME/.kube/config",
        "sudo chown $(id -u):$(id -g) $HOME/.kube/config",
    ]
    manifest = NETWORK_PLUGINS.get(spec.network_plugin)
    if manifest:
        lines.append(f"kubectl apply -f {manifest}")
    return "\n".join(lines)


def join_script(token: JoinToken, cri_socket: str = "") -> str:
    """Join command that is a no-op on a node that already joined."""
    command = f"sudo {token.command()}"
    if cri_socket:
        command += f" --cri-socket {cri_socket}"
    return "\n".join([
        "if [ -f /etc/kubernetes/kubelet.conf ]; then",
        "    echo 'node already joined, skipping kubeadm join'",
        "    exit 0",
        "fi",
        command,
    ])


def reset_command(cri_socket: str = "") -> str:
    command = "sudo kubeadm reset --force"
    if cri_socket:
        command += f" --cri-socket {cri_socket}"
    return command


class KubeadmClient:
    """Runs kubeadm on nodes through the audited executor."""

    def __init__(self, executor: SSHExecutor):
        self.executor = executor

    def init(self, node: Node, spec: ClusterSpec) -> CommandResult:
        config = render_init_config(spec, node)
        logger.info(f"Running kubeadm init on {node.name} ({spec.version})")
        return self.executor.execute(node, init_script(config), operation="InitMaster", script=True)

    def post_init(self, node: Node, spec: ClusterSpec) -> CommandResult:
        return self.executor.execute(node, post_init_script(spec), operation="PostInit", script=True)

    def join(self, node: Node, token: JoinToken, cri_socket: str = "") -> CommandResult:
        logger.info(f"Joining {node.name} to {token.endpoint}")
        return self.executor.execute(node, join_script(token, cri_socket), operation="JoinWorker", script=True)

    def print_join_command(self, node: Node) -> JoinTokenResult:
        """Ask the control plane for a fresh join command."""
        try:
            result = self.executor.execute(node, "sudo kubeadm token create --print-join-command",
                                           operation="GetJoinCommand")
        except KubeInstallError as e:
            logger.warning(f"Could not create join token on {node.name}: {e}")
            return JoinTokenResult(found=False)
        return extract_join_token(result.stdout)

    def reset(self, node: Node, cri_socket: str = "") -> CommandResult:
        return self.executor.execute(node, reset_command(cri_socket), operation="ResetCluster")

    def version(self, node: Node) -> str:
        result = self.executor.execute(node, "kubeadm version -o short", operation="CheckKubeadmVersion")
        return result.stdout.strip()

    def pull_images(self, node: Node, version: str, image_repository: str = "",
                    cri_socket: str = "") -> CommandResult:
        command = f"sudo kubeadm config images pull --kubernetes-version {version}"
        if image_repository:
            command += f" --image-repository {image_repository}"
        if cri_socket:
            command += f" --cri-socket {cri_socket}"
        return self.executor.execute(node, command, operation="PullImages")

    def push_images_to_harbor(self, node: Node, harbor: HarborConfig, version: str) -> Dict[str, str]:
        """Retag the images kubeadm needs and push them to a Harbor project.

        Returns:
            Mapping of source image to ``pushed`` or the error message
        """
        login = f"sudo docker login {shlex.quote(harbor.url)} -u {shlex.quote(harbor.username)} --password-stdin"
        self.executor.execute(node, login, operation="HarborLogin", stdin_data=harbor.password)
        listing = self.executor.execute(
            node, f"kubeadm config images list --kubernetes-version {version}", operation="ListImages"
        )
        results = {}
        for image in filter(None, (line.strip() for line in listing.stdout.splitlines())):
            target = f"{harbor.url}/{harbor.project}/{image.split('/')[-1]}"
            try:
                self.executor.execute(node, f"sudo docker pull {image} && sudo docker tag {image} {target} "
                                            f"&& sudo docker push {target}", operation="PushImage")
                results[image] = "pushed"
            except RemoteCommandError as e:
                results[image] = str(e)
        return results
