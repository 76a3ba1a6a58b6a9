"""
Tests for errors.py - Exception hierarchy and SIEM integration.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from field_vault import __version__
from field_vault.errors import (
    Severity,
    FieldVaultError,
    ConfigError,
    UnknownClassError,
    KeyStoreError,
    UnknownKeyVersionError,
    UnknownKeyError,
    AuthorizationError,
    OperationTimeoutError,
    OperationCancelledError,
    EncodingError,
    CryptoError,
    EncryptionError,
    DecryptionError,
    AuditError,
)


class TestSeverityEnum:
    """Test Severity IntEnum."""

    def test_severity_values(self):
        assert Severity.DEBUG == 1
        assert Severity.ERROR == 5
        assert Severity.SECURITY_VIOLATION == 9
        assert Severity.BREACH_DETECTED == 10

    def test_severity_is_int(self):
        assert int(Severity.ERROR) == 5
        assert Severity.CRITICAL > Severity.WARNING


class TestFieldVaultError:
    """Test base exception class."""

    def test_basic_instantiation(self):
        err = FieldVaultError("Something failed")
        assert str(err) == "Something failed"
        assert err.message == "Something failed"
        assert err.outcome == "failure"
        assert err.actor == {"type": "system", "id": "unknown"}
        assert err.metadata == {}
        assert err.timestamp

    def test_with_cause(self):
        cause = ValueError("original error")
        err = FieldVaultError("wrapped", cause=cause)
        assert err.cause is cause
        assert err.metadata["cause_type"] == "ValueError"
        assert err.metadata["cause_message"] == "original error"
        assert "cause_traceback" in err.metadata

    def test_to_siem_event(self):
        err = FieldVaultError(
            "test event",
            actor={"type": "caller", "id": "svc-1"},
            metadata={"key": "value"},
        )
        event = err.to_siem_event(source_host="mq-host")

        assert event["source"]["product"] == "field-vault"
        assert event["source"]["host"] == "mq-host"
        assert event["source"]["version"] == __version__
        assert event["action"] == "vault.error"
        assert event["severity"] == int(Severity.ERROR)
        assert event["actor"]["id"] == "svc-1"
        assert event["metadata"]["error_type"] == "FieldVaultError"
        assert event["metadata"]["message"] == "test event"
        assert event["metadata"]["key"] == "value"


class TestPolicyErrors:

    def test_config_error_source(self):
        err = ConfigError("bad pattern", source="/etc/policy.json")
        assert err.action == "policy.load"
        assert err.metadata["source"] == "/etc/policy.json"

    def test_unknown_class_error(self):
        err = UnknownClassError("no rule", sensitivity_class="PII_X")
        assert err.metadata["sensitivity_class"] == "PII_X"
        assert err.severity == Severity.WARNING


class TestKeyStoreErrors:

    def test_hierarchy(self):
        err = UnknownKeyError("missing", key_ref="k")
        assert isinstance(err, UnknownKeyVersionError)
        assert isinstance(err, KeyStoreError)
        assert isinstance(err, FieldVaultError)

    def test_version_metadata(self):
        err = UnknownKeyVersionError("gone", key_ref="k", key_version=0)
        assert err.metadata["key_ref"] == "k"
        assert err.metadata["key_version"] == 0
        assert err.severity == Severity.ALERT


class TestAuthorizationError:

    def test_defaults(self):
        err = AuthorizationError("denied", field_path="customer.ssn",
                                 required_roles=["hr", "compliance"])
        assert err.outcome == "denied"
        assert err.severity == Severity.SECURITY_VIOLATION
        assert err.metadata["field_path"] == "customer.ssn"
        assert err.metadata["required_roles"] == ["compliance", "hr"]


class TestCallErrors:

    def test_timeout_is_builtin_timeout(self):
        err = OperationTimeoutError("slow", timeout=1.5)
        assert isinstance(err, TimeoutError)
        assert isinstance(err, FieldVaultError)
        assert str(err) == "slow"
        assert err.metadata["timeout_seconds"] == 1.5

    def test_cancelled(self):
        err = OperationCancelledError("stop")
        assert err.outcome == "blocked"


class TestOtherErrors:

    def test_encoding_error(self):
        assert EncodingError("x").action == "wire.decode"

    def test_crypto_errors(self):
        assert isinstance(EncryptionError("x"), CryptoError)
        assert DecryptionError("x").severity == Severity.ALERT

    def test_audit_error(self):
        assert AuditError("x").action == "audit.emit"
