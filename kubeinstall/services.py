"""Wiring of the orchestration components shared by the CLI and the API."""
import logging
from typing import Any, Callable, Optional

from kubeinstall.config import AppConfig, get_config
from kubeinstall.modules.audit import AuditLog, Broadcaster
from kubeinstall.modules.batch import BatchController
from kubeinstall.modules.kubeadm import ClusterSpec
from kubeinstall.modules.operations import NodeOperations
from kubeinstall.modules.registry import NodeRegistry
from kubeinstall.modules.scripts import ScriptTemplateStore
from kubeinstall.modules.sources import PackageSourceRepository
from kubeinstall.modules.ssh import SSHExecutor
from kubeinstall.modules.store import RecordStore, create_store
from kubeinstall.modules.versions import VersionManager
from kubeinstall.modules.workflow import ClusterWorkflow

logger = logging.getLogger("kubeinstall.services")


class Services:
    """All long-lived components, built from one configuration."""

    def __init__(self, config: AppConfig, store: Optional[RecordStore] = None,
                 session_factory: Optional[Callable] = None):
        self.config = config
        self.store = store or create_store(config.store.backend, config.store.path)
        self.audit = AuditLog(self.store, Broadcaster(config.logging.stream_buffer))
        self.executor = SSHExecutor(
            audit=self.audit,
            connect_timeout=config.ssh.connect_timeout,
            command_timeout=config.ssh.command_timeout,
            session_factory=session_factory,
        )
        self.registry = NodeRegistry(self.store, self.executor)
        self.scripts = ScriptTemplateStore(self.store)
        self.scripts.load()
        self.sources = PackageSourceRepository(self.store)
        self.operations = NodeOperations(self.executor, self.registry, self.scripts, self.sources)
        self.batch = BatchController(self.registry, self.operations, self.audit, config.batch.max_workers)
        self.versions = VersionManager(sync_interval=config.cluster.version_sync_hours * 3600)
        self.workflow = self.new_workflow()

    def new_workflow(self) -> ClusterWorkflow:
        """Start a fresh workflow; the stored join token carries over."""
        self.workflow = ClusterWorkflow(self.registry, self.operations, self.batch, self.audit, self.store)
        return self.workflow

    def cluster_spec(self, **values: Any) -> ClusterSpec:
        """Build a ClusterSpec, filling omitted values from configuration."""
        defaults = self.config.cluster
        values = {k: v for k, v in values.items() if v is not None}
        values.setdefault("version", defaults.version)
        values.setdefault("network_plugin", defaults.network_plugin)
        values.setdefault("runtime", defaults.runtime)
        values.setdefault("pod_subnet", defaults.pod_subnet)
        values.setdefault("service_subnet", defaults.service_subnet)
        values.setdefault("dns_domain", defaults.dns_domain)
        return ClusterSpec(**values)


_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the process-wide services."""
    global _services
    if _services is None:
        _services = Services(get_config())
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services
