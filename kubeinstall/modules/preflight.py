"""
Host requirement checks run before installing Kubernetes on a node.
"""
import logging
import re
from dataclasses import asdict, dataclass
from typing import Dict, List

from .models import Node
from .ssh import SSHExecutor

logger = logging.getLogger("kubeinstall.preflight")

MIN_CPUS = 2
MIN_MEMORY_KB = 2 * 1024 * 1024
MIN_KERNEL = (5, 4)

_SECTIONS = (
    ("cpu", "nproc"),
    ("memory", "grep MemTotal /proc/meminfo"),
    ("kernel", "uname -r"),
    ("swap", "swapon --show --noheadings"),
    ("hostname", "hostname"),
    ("mac", "ip link | grep link/ether"),
    ("uuid", "sudo cat /sys/class/dmi/id/product_uuid"),
)

PREFLIGHT_COMMAND = "; ".join(f"echo '### {name}'; {cmd} 2>/dev/null" for name, cmd in _SECTIONS)


@dataclass
class CheckResult:
    name: str
    passed: bool
    message: str
    recommendation: str = ""

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["status"] = "pass" if self.passed else "fail"
        return data


def split_sections(output: str) -> Dict[str, str]:
    sections: Dict[str, List[str]] = {}
    current = None
    for line in output.splitlines():
        if line.startswith("### "):
            current = line[4:].strip()
            sections[current] = []
        elif current is not None:
            sections[current].append(line)
    return {k: "\n".join(v).strip() for k, v in sections.items()}


def check_cpu(text: str) -> CheckResult:
    try:
        cores = int(text.strip())
    except ValueError:
        return CheckResult("CPU Cores", False, f"Could not read CPU count from {text!r}",
                           "Ensure 'nproc' is available")
    if cores < MIN_CPUS:
        return CheckResult("CPU Cores", False, f"Found {cores} CPU cores, recommended: {MIN_CPUS}+",
                           "Add more CPU cores to the system")
    return CheckResult("CPU Cores", True, f"Found {cores} CPU cores")


def check_memory(text: str) -> CheckResult:
    match = re.search(r"MemTotal:\s+(\d+)\s*kB", text)
    if not match:
        return CheckResult("Memory", False, "Could not read MemTotal from /proc/meminfo",
                           "Ensure /proc/meminfo is accessible")
    kb = int(match.group(1))
    gb = kb / 1024 / 1024
    if kb < MIN_MEMORY_KB:
        return CheckResult("Memory", False, f"Found {gb:.1f} GB of memory, recommended: 2 GB+",
                           "Add more memory to the system")
    return CheckResult("Memory", True, f"Found {gb:.1f} GB of memory")


def check_kernel(text: str) -> CheckResult:
    match = re.match(r"(\d+)\.(\d+)", text.strip())
    if not match:
        return CheckResult("Kernel Version", False, f"Could not parse kernel version {text!r}",
                           "Check 'uname -r' output")
    version = (int(match.group(1)), int(match.group(2)))
    if version < MIN_KERNEL:
        return CheckResult("Kernel Version", False,
                           f"Kernel {text.strip()} is older than {MIN_KERNEL[0]}.{MIN_KERNEL[1]}",
                           "Upgrade the kernel to 5.4 or newer")
    return CheckResult("Kernel Version", True, f"Kernel {text.strip()}")


def check_swap(text: str) -> CheckResult:
    if text.strip():
        return CheckResult("Swap", False, "Swap is enabled",
                           "Disable swap with 'swapoff -a' and remove it from /etc/fstab")
    return CheckResult("Swap", True, "Swap is disabled")


def check_hostname(text: str) -> CheckResult:
    hostname = text.strip()
    if not hostname:
        return CheckResult("Hostname", False, "Hostname is empty", "Set a hostname with hostnamectl")
    return CheckResult("Hostname", True, f"Hostname is {hostname}")


def check_mac(text: str) -> CheckResult:
    macs = re.findall(r"link/ether\s+([0-9a-f:]{17})", text)
    if not macs:
        return CheckResult("MAC Address", False, "No network interface MAC address found",
                           "Check network interfaces with 'ip link'")
    return CheckResult("MAC Address", True, f"Found MAC addresses: {', '.join(macs)}")


def check_product_uuid(text: str) -> CheckResult:
    product_uuid = text.strip()
    if not product_uuid:
        return CheckResult("Product UUID", False, "Could not read product_uuid",
                           "Ensure /sys/class/dmi/id/product_uuid is readable and unique per node")
    return CheckResult("Product UUID", True, f"product_uuid is {product_uuid}")


CHECKS = (
    ("cpu", check_cpu),
    ("memory", check_memory),
    ("kernel", check_kernel),
    ("swap", check_swap),
    ("hostname", check_hostname),
    ("mac", check_mac),
    ("uuid", check_product_uuid),
)


def evaluate(output: str) -> List[CheckResult]:
    sections = split_sections(output)
    return [check(sections.get(name, "")) for name, check in CHECKS]


def run_preflight(executor: SSHExecutor, node: Node) -> List[CheckResult]:
    """Run every check on a node in a single SSH command."""
    result = executor.execute(node, PREFLIGHT_COMMAND, operation="Preflight", check=False)
    checks = evaluate(result.stdout)
    failed = [c.name for c in checks if not c.passed]
    if failed:
        logger.warning(f"Preflight on {node.name} failed: {', '.join(failed)}")
    else:
        logger.info(f"Preflight on {node.name} passed")
    return checks
