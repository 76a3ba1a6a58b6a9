"""
Pytest configuration and shared fixtures for Field Vault tests.
"""
import os
import sys
import pytest

# Add repository root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from field_vault.audit import AuditSink
from field_vault.codec import ProtectionCodec
from field_vault.keystore import InMemoryKeyStore
from field_vault.policy import PolicyStore


class CollectingAuditSink(AuditSink):
    """Keeps every emitted event in memory."""

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


@pytest.fixture
def sample_policy():
    """Return a policy document covering SSNs, account and card numbers."""
    return {
        "version": 1,
        "classes": {
            "PII_SSN": {
                "algorithm": "xchacha20poly1305",
                "key_ref": "ssn-key",
                "authorized_roles": ["hr", "compliance"],
            },
            "PII_ACCOUNT": {
                "algorithm": "xchacha20poly1305",
                "key_ref": "acct-key",
                "authorized_roles": ["payments"],
            },
            "PII_CARD": {
                "algorithm": "xsalsa20poly1305",
                "key_ref": "card-key",
                "authorized_roles": ["payments"],
                "deterministic": True,
            },
        },
        "patterns": [
            {"class": "PII_SSN", "value": r"\d{3}-\d{2}-\d{4}"},
            {"class": "PII_CARD", "value": r"\d{16}"},
            {"class": "PII_ACCOUNT", "value": r"\d{10,12}"},
            {"class": "PII_SSN", "field": r"(.*\.)?ssn"},
            {"class": "NONE", "field": r"(.*\.)?reference", "value": r"\d+"},
        ],
    }


@pytest.fixture
def policy_store(sample_policy):
    return PolicyStore(sample_policy)


@pytest.fixture
def key_store():
    """In-memory key store with version 1 of every key the sample policy uses."""
    store = InMemoryKeyStore()
    for ref in ("ssn-key", "acct-key", "card-key"):
        store.add_key(ref)
    return store


@pytest.fixture
def audit_sink():
    return CollectingAuditSink()


@pytest.fixture
def codec(policy_store, key_store, audit_sink):
    return ProtectionCodec(policy_store, key_store, audit_sink)


@pytest.fixture
def sample_record():
    return {
        "accountNumber": "1234567890",
        "amount": "500.00",
        "note": "hello",
        "customer": {
            "name": "Ada",
            "ssn": "123-45-6789",
            "card": "4111111111111111",
        },
    }


@pytest.fixture
def policy_file(tmp_path, sample_policy):
    """Write the sample policy to disk and return its path."""
    import json

    path = tmp_path / "policy.json"
    path.write_text(json.dumps(sample_policy))
    return path
