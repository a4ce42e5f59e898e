"""Script template store.

Shell scripts for each provisioning step are kept per distro under the key
``{distro}_{step}`` (for example ``ubuntu_k8s_components``) and rendered with
Jinja2. Templates may reference:

- ``version``: Kubernetes version, e.g. ``v1.30.0``
- ``package_version``: the same without the ``v`` prefix, e.g. ``1.30.0``
- ``minor``: the minor release, e.g. ``v1.30``
- ``repo_url``: base URL of the selected package source
- ``repo_block``: the complete Kubernetes package repository setup
- ``crio_repo_block``: the complete CRI-O package repository setup

The repository blocks are generated whole for the distro's package family
(apt or yum/dnf), with mirror URLs laid out differently from pkgs.k8s.io.
"""
import logging
import re
import threading
from typing import Any, Dict, Iterable, List, Optional

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError

from .errors import TemplateNotFoundError, TemplateRenderError
from .models import utcnow
from .store import SCRIPTS, RecordStore

logger = logging.getLogger("kubeinstall.scripts")

OFFICIAL_REPO_URL = "https://pkgs.k8s.io"
DEFAULT_VERSION = "v1.30.0"

DEB_DISTROS = ("ubuntu", "debian")
RPM_DISTROS = ("centos", "rhel", "rocky", "almalinux", "fedora")

STEPS = (
    "system_prep",
    "containerd_install",
    "containerd_config",
    "crio_install",
    "k8s_components",
    "reset_cleanup",
)

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?")


def distro_family(distro: str) -> str:
    """Return ``deb`` or ``rpm`` for a distro id."""
    distro = normalize_distro(distro)
    if distro in DEB_DISTROS:
        return "deb"
    if distro in RPM_DISTROS:
        return "rpm"
    raise TemplateNotFoundError(distro, "*")


def normalize_distro(os_name: str) -> str:
    """Turn an OS description such as ``Ubuntu 22.04`` into a distro id."""
    return (os_name or "").strip().split(" ")[0].lower()


def template_key(distro: str, step: str) -> str:
    return f"{normalize_distro(distro)}_{step}"


def parse_version(version: str) -> Dict[str, str]:
    """Split a Kubernetes version into the forms templates need."""
    match = _VERSION_RE.match((version or "").strip())
    if not match:
        raise TemplateRenderError(f"Invalid Kubernetes version: {version!r}")
    major, minor, patch = match.group(1), match.group(2), match.group(3) or "0"
    return {
        "version": f"v{major}.{minor}.{patch}",
        "package_version": f"{major}.{minor}.{patch}",
        "minor": f"v{major}.{minor}",
    }


def repository_url(repo_url: str, project: str, minor: str, family: str) -> str:
    """Build the package repository URL for a source.

    pkgs.k8s.io uses ``/core:/stable:/v1.30/deb/`` while mirrors publish the
    same tree as ``/core/stable/v1.30/deb/``.
    """
    base = (repo_url or OFFICIAL_REPO_URL).rstrip("/")
    if base in (OFFICIAL_REPO_URL, "https://dl.k8s.io"):
        path = f"{OFFICIAL_REPO_URL}/{project}:/stable:/{minor}/{family}/"
        return path
    return f"{base}/{project.replace(':/', '/')}/stable/{minor}/{family}/"


def repository_block(family: str, repo_url: str, minor: str, name: str = "kubernetes",
                     project: str = "core") -> str:
    """Render the full repository configuration for one package family."""
    url = repository_url(repo_url, project, minor, family)
    if family == "deb":
        keyring = f"/etc/apt/keyrings/{name}-apt-keyring.gpg"
        return "\n".join([
            "sudo apt-get update -y",
            "sudo apt-get install -y apt-transport-https ca-certificates curl gpg",
            "sudo mkdir -p -m 755 /etc/apt/keyrings",
            f"curl -fsSL {url}Release.key | sudo gpg --dearmor --yes -o {keyring}",
            f"echo 'deb [signed-by={keyring}] {url} /' | sudo tee /etc/apt/sources.list.d/{name}.list",
            "sudo apt-get update -y",
        ])
    lines = [
        f"cat <<'EOF' | sudo tee /etc/yum.repos.d/{name}.repo",
        f"[{name}]",
        f"name={name}",
        f"baseurl={url}",
        "enabled=1",
        "gpgcheck=1",
        f"gpgkey={url}repodata/repomd.xml.key",
    ]
    if name == "kubernetes":
        lines.append("exclude=kubelet kubeadm kubectl cri-tools kubernetes-cni")
    lines.append("EOF")
    return "\n".join(lines)


SYSTEM_PREP_COMMON = """# Disable swap
sudo swapoff -a
sudo sed -i '/ swap / s/^\\(.*\\)$/#\\1/' /etc/fstab

# Kernel modules required by Kubernetes
cat <<'EOF' | sudo tee /etc/modules-load.d/k8s.conf
overlay
br_netfilter
EOF
sudo modprobe overlay
sudo modprobe br_netfilter

# Kernel parameters
cat <<'EOF' | sudo tee /etc/sysctl.d/k8s.conf
net.bridge.bridge-nf-call-iptables = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward = 1
EOF
sudo sysctl --system
sudo sysctl net.bridge.bridge-nf-call-iptables net.bridge.bridge-nf-call-ip6tables net.ipv4.ip_forward
"""

DEB_TEMPLATES = {
    "system_prep": """set -e
echo "=== Preparing system ==="
sudo apt-get update -y
sudo apt-get install -y chrony
sudo systemctl enable --now chrony
if command -v ufw >/dev/null 2>&1; then
    sudo systemctl disable --now ufw || true
fi
""" + SYSTEM_PREP_COMMON,
    "containerd_install": """set -e
echo "=== Installing containerd ==="
if ! command -v containerd >/dev/null 2>&1; then
    sudo apt-get update -y
    sudo apt-get install -y containerd
fi
containerd --version
""",
    "crio_install": """set -e
echo "=== Installing CRI-O for {{ minor }} ==="
{{ crio_repo_block }}
sudo apt-get install -y cri-o
sudo systemctl enable --now crio
""",
    "k8s_components": """set -e
echo "=== Installing kubelet, kubeadm and kubectl {{ version }} ==="
{{ repo_block }}
sudo apt-get install -y kubelet='{{ package_version }}-*' kubeadm='{{ package_version }}-*' kubectl='{{ package_version }}-*'
sudo apt-mark hold kubelet kubeadm kubectl
sudo systemctl enable --now kubelet
kubeadm version -o short
""",
}

RPM_TEMPLATES = {
    "system_prep": """set -e
echo "=== Preparing system ==="
PKG=$(command -v dnf || command -v yum)
sudo $PKG install -y chrony
sudo systemctl enable --now chronyd
sudo systemctl disable --now firewalld || true
if command -v setenforce >/dev/null 2>&1; then
    sudo setenforce 0 || true
    sudo sed -i 's/^SELINUX=enforcing$/SELINUX=permissive/' /etc/selinux/config || true
fi
""" + SYSTEM_PREP_COMMON,
    "containerd_install": """set -e
echo "=== Installing containerd ==="
if ! command -v containerd >/dev/null 2>&1; then
    PKG=$(command -v dnf || command -v yum)
    sudo $PKG install -y yum-utils || sudo $PKG install -y dnf-plugins-core
    sudo yum-config-manager --add-repo https://download.docker.com/linux/centos/docker-ce.repo
    sudo $PKG install -y containerd.io
fi
containerd --version
""",
    "crio_install": """set -e
echo "=== Installing CRI-O for {{ minor }} ==="
{{ crio_repo_block }}
PKG=$(command -v dnf || command -v yum)
sudo $PKG install -y cri-o
sudo systemctl enable --now crio
""",
    "k8s_components": """set -e
echo "=== Installing kubelet, kubeadm and kubectl {{ version }} ==="
{{ repo_block }}
PKG=$(command -v dnf || command -v yum)
sudo $PKG install -y kubelet-{{ package_version }} kubeadm-{{ package_version }} kubectl-{{ package_version }} --disableexcludes=kubernetes
sudo systemctl enable --now kubelet
kubeadm version -o short
""",
}

COMMON_TEMPLATES = {
    "containerd_config": """set -e
echo "=== Configuring containerd ==="
sudo mkdir -p /etc/containerd
sudo containerd config default | sudo tee /etc/containerd/config.toml >/dev/null
sudo sed -i 's/SystemdCgroup = false/SystemdCgroup = true/g' /etc/containerd/config.toml
sudo systemctl daemon-reload
sudo systemctl restart containerd
sudo systemctl enable containerd
for i in $(seq 1 30); do
    [ -S /run/containerd/containerd.sock ] && break
    sleep 1
done
test -S /run/containerd/containerd.sock
sudo systemctl is-active containerd
""",
    "reset_cleanup": """echo "=== Cleaning up after kubeadm reset ==="
sudo rm -rf /etc/cni/net.d
sudo rm -rf $HOME/.kube/config
sudo iptables -F && sudo iptables -t nat -F && sudo iptables -t mangle -F && sudo iptables -X || true
if command -v ipvsadm >/dev/null 2>&1; then
    sudo ipvsadm --clear || true
fi
sudo systemctl restart kubelet || true
""",
}


def default_templates() -> Dict[str, str]:
    """Built-in templates for every supported distro and step."""
    templates = {}
    for family_distros, family_templates in ((DEB_DISTROS, DEB_TEMPLATES), (RPM_DISTROS, RPM_TEMPLATES)):
        for distro in family_distros:
            for step in STEPS:
                text = family_templates.get(step, COMMON_TEMPLATES.get(step))
                templates[f"{distro}_{step}"] = text
    return templates


class ScriptTemplateStore:
    """In-memory templates backed by the record store.

    The in-memory copy is authoritative for rendering. Updates replace the
    mapping as a whole so a render in progress keeps using the templates it
    started with.
    """

    def __init__(self, store: Optional[RecordStore] = None):
        self.store = store
        self._lock = threading.RLock()
        self._templates: Dict[str, str] = default_templates()
        self._env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)

    def load(self) -> None:
        """Load defaults, overlay persisted templates, then fill missing keys from defaults."""
        templates = default_templates()
        if self.store is not None:
            for record in self.store.list(SCRIPTS):
                templates[record["key"]] = record["content"]
        with self._lock:
            self._templates = templates
        logger.debug(f"Loaded {len(templates)} script templates")

    def save(self) -> None:
        if self.store is None:
            return
        with self._lock:
            templates = dict(self._templates)
            now = utcnow().isoformat()
            for key, content in templates.items():
                self.store.put(SCRIPTS, key, {"key": key, "content": content, "updatedAt": now})

    def get(self, key: str) -> str:
        templates = self._templates
        if key not in templates:
            distro, _, step = key.partition("_")
            raise TemplateNotFoundError(distro, step)
        return templates[key]

    def all(self) -> Dict[str, str]:
        return dict(self._templates)

    def keys(self) -> List[str]:
        return sorted(self._templates)

    def defaults(self) -> Dict[str, str]:
        return default_templates()

    def update(self, mapping: Dict[str, str]) -> None:
        """Replace the named templates and persist them.

        Raises:
            ValueError: If a key is not of the form ``{distro}_{step}`` or a value is not text
        """
        for key, content in mapping.items():
            if "_" not in key or not isinstance(content, str):
                raise ValueError(f"Invalid script template entry: {key!r}")
        with self._lock:
            templates = dict(self._templates)
            templates.update(mapping)
            self._templates = templates
        self.save()
        logger.info(f"Updated script templates: {', '.join(sorted(mapping))}")

    def reset(self, keys: Optional[Iterable[str]] = None) -> None:
        """Restore the built-in text for ``keys`` (all templates when omitted)."""
        defaults = default_templates()
        with self._lock:
            if keys is None:
                templates = defaults
                if self.store is not None:
                    self.store.clear(SCRIPTS)
            else:
                templates = dict(self._templates)
                for key in keys:
                    if key not in defaults:
                        distro, _, step = key.partition("_")
                        raise TemplateNotFoundError(distro, step)
                    templates[key] = defaults[key]
            self._templates = templates
        self.save()

    def render(self, distro: str, step: str, version: Optional[str] = None,
               repo_url: Optional[str] = None, **params: Any) -> str:
        """Render the script for one distro and step.

        Args:
            distro: Distro id or OS description (``ubuntu``, ``Rocky 9.3``)
            step: Step id, one of STEPS or a custom step added through update()
            version: Kubernetes version, defaults to DEFAULT_VERSION
            repo_url: Base URL of the package source, defaults to pkgs.k8s.io
            **params: Extra template variables

        Returns:
            The script text

        Raises:
            TemplateNotFoundError: If there is no template for (distro, step)
            TemplateRenderError: If the template is invalid or needs an undefined value
        """
        distro = normalize_distro(distro)
        key = template_key(distro, step)
        templates = self._templates
        if key not in templates:
            raise TemplateNotFoundError(distro, step)

        context = parse_version(version or DEFAULT_VERSION)
        repo_url = (repo_url or OFFICIAL_REPO_URL).rstrip("/")
        context.update(repo_url=repo_url, distro=distro)
        if distro in DEB_DISTROS or distro in RPM_DISTROS:
            family = distro_family(distro)
            context.update(
                repo_block=repository_block(family, repo_url, context["minor"]),
                crio_repo_block=repository_block(family, repo_url, context["minor"], name="cri-o",
                                                 project="addons:/cri-o"),
                family=family,
            )
        context.update(params)

        try:
            return self._env.from_string(templates[key]).render(**context)
        except (UndefinedError, TemplateSyntaxError) as e:
            raise TemplateRenderError(f"Failed to render {key}: {e}") from e
