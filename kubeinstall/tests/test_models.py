from datetime import timedelta

import pytest

from kubeinstall.modules.errors import CredentialError
from kubeinstall.modules.models import (
    JoinToken, KeyCredential, LogEntry, LogStatus, Node, NodeRole, PasswordCredential,
    make_credential, utcnow,
)


def test_credential_requires_password_or_key():
    with pytest.raises(CredentialError) as exc:
        make_credential(None, None, "10.0.0.5", 22)
    assert "10.0.0.5:22" in str(exc.value)


def test_private_key_wins_over_password():
    credential = make_credential("secret", "-----BEGIN KEY-----", "10.0.0.5", 22)
    assert isinstance(credential, KeyCredential)


def test_credential_repr_masks_secret():
    assert "hunter2" not in repr(PasswordCredential("hunter2"))


def test_node_record_roundtrip_keeps_credential():
    node = Node(id="n1", name="a", ip="10.0.0.1", username="root",
                credential=PasswordCredential("pw"), role=NodeRole.MASTER)
    record = node.to_record()
    assert record["nodeType"] == "master"
    restored = Node.from_record(record)
    assert restored.credential == PasswordCredential("pw")
    assert restored.role == NodeRole.MASTER


def test_public_view_masks_secrets():
    node = Node(id="n1", name="a", ip="10.0.0.1", username="root", credential=KeyCredential("KEY"))
    public = node.to_public()
    assert public["privateKey"] == "******"
    assert "password" not in public


def test_join_token_expires_after_24h():
    token = JoinToken(endpoint="10.0.0.1:6443", token="abc.def", ca_cert_hash="sha256:00")
    assert not token.is_expired()
    assert token.is_expired(token.created_at + timedelta(hours=24, seconds=1))
    assert token.command().startswith("kubeadm join 10.0.0.1:6443 --token abc.def")


def test_join_token_from_dict_accepts_naive_timestamps():
    token = JoinToken.from_dict({
        "endpoint": "10.0.0.1:6443", "token": "t", "caCertHash": "h",
        "createdAt": "2024-01-01T00:00:00", "expiresAt": "2024-01-02T00:00:00",
    })
    assert token.is_expired(utcnow())


def test_log_status_terminal():
    assert not LogStatus.RUNNING.terminal
    assert LogStatus.SUCCESS.terminal
    assert LogStatus.FAILED.terminal


def test_log_entry_dict_shape():
    entry = LogEntry(id="1", node_id="n1", node_name="a", operation="Op", command="ls",
                     output="", status=LogStatus.RUNNING)
    data = entry.to_dict()
    assert set(data) == {"id", "nodeId", "nodeName", "operation", "command", "output",
                         "status", "createdAt", "updatedAt"}
    assert LogEntry.from_dict(data).status == LogStatus.RUNNING
