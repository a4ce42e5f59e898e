import threading
from dataclasses import dataclass
from typing import List, Optional

import pytest

from kubeinstall.config import AppConfig, set_config
from kubeinstall.modules.errors import ConnectError, ConnectErrorKind
from kubeinstall.modules.models import NodeRole
from kubeinstall.modules.preflight import PREFLIGHT_COMMAND
from kubeinstall.modules.ssh import CommandResult
from kubeinstall.modules.store import MemoryStore
from kubeinstall.services import Services, set_services

OS_RELEASE = 'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\n'

PREFLIGHT_OK = """### cpu
4
### memory
MemTotal:        8152344 kB
### kernel
5.15.0-91-generic
### swap
### hostname
node-a
### mac
    link/ether 52:54:00:12:34:56 brd ff:ff:ff:ff:ff:ff
### uuid
4c4c4544-0031-3510-8052-b4c04f4e5632
"""

INIT_OUTPUT = """[init] Using Kubernetes version: v1.30.0
Your Kubernetes control-plane has initialized successfully!

Then you can join any number of worker nodes by running the following on each as root:

kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef \\
	--discovery-token-ca-cert-hash sha256:1234567890abcdef
"""


@dataclass
class Rule:
    match: str
    ip: Optional[str]
    result: Optional[CommandResult]
    raises: Optional[Exception]
    times: Optional[int]


class FakeSession:
    def __init__(self, fleet: "FakeFleet", node):
        self.fleet = fleet
        self.node = node
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.closed = True
        self.fleet.closed += 1

    def run(self, command, timeout=None, stdin_data=None):
        if command == "bash -s":
            return self.fleet.handle(self.node, stdin_data)
        if stdin_data is not None:
            self.fleet.stdin.append(stdin_data)
        return self.fleet.handle(self.node, command)

    def run_script(self, script, timeout=None):
        return self.run("bash -s", timeout=timeout, stdin_data=script)


class FakeFleet:
    """Scripted remote hosts. Rules added later win; unmatched commands succeed."""

    def __init__(self):
        self.rules: List[Rule] = []
        self.calls = []
        self.stdin = []
        self.unreachable = set()
        self.opened = 0
        self.closed = 0
        self._lock = threading.Lock()

    def on(self, match, stdout="", stderr="", exit_code=0, ip=None, raises=None, times=None):
        result = None if raises else CommandResult(stdout, stderr, exit_code)
        self.rules.append(Rule(match, ip, result, raises, times))

    def factory(self, node, timeout):
        with self._lock:
            if node.ip in self.unreachable:
                raise ConnectError(node.ip, node.port, ConnectErrorKind.REFUSED, "Connection refused")
            self.opened += 1
        return FakeSession(self, node)

    def handle(self, node, text):
        with self._lock:
            self.calls.append((node.ip, text))
            for rule in reversed(self.rules):
                if rule.ip not in (None, node.ip) or rule.match not in text:
                    continue
                if rule.times is not None:
                    if rule.times == 0:
                        continue
                    rule.times -= 1
                if rule.raises:
                    raise rule.raises
                return rule.result
        if "/etc/os-release" in text:
            return CommandResult(OS_RELEASE, "", 0)
        if "echo 'hello'" in text:
            return CommandResult("hello\n", "", 0)
        if text == PREFLIGHT_COMMAND:
            return CommandResult(PREFLIGHT_OK, "", 0)
        if "kubeadm init" in text:
            return CommandResult(INIT_OUTPUT, "", 0)
        return CommandResult("done\n", "", 0)

    def commands_for(self, ip):
        return [text for call_ip, text in self.calls if call_ip == ip]


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def config():
    cfg = AppConfig()
    cfg.store.backend = "memory"
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def services(fleet, config):
    svc = Services(config, store=MemoryStore(), session_factory=fleet.factory)
    set_services(svc)
    yield svc
    set_services(None)


@pytest.fixture
def make_node(services):
    def _make(name, ip, role=NodeRole.WORKER, password="secret", private_key=None):
        return services.registry.create(name=name, ip=ip, username="root", password=password,
                                        private_key=private_key, role=role)
    return _make
