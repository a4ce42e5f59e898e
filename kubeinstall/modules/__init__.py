"""
Cluster provisioning modules.
"""
from .audit import AuditLog, Broadcaster
from .batch import BatchController
from .registry import NodeRegistry
from .scripts import ScriptTemplateStore
from .ssh import SSHExecutor
from .workflow import ClusterWorkflow

__all__ = [
    'AuditLog',
    'Broadcaster',
    'BatchController',
    'NodeRegistry',
    'ScriptTemplateStore',
    'SSHExecutor',
    'ClusterWorkflow',
]
