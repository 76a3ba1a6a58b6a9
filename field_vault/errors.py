"""
Field Vault Error Handling Framework.

Provides structured exception classes with SIEM integration support.
All exceptions include severity levels and can be reported to an audit sink.
"""

from enum import IntEnum
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import traceback


class Severity(IntEnum):
    """SIEM-compatible severity levels (1-10 scale)."""
    DEBUG = 1
    INFO = 2
    NOTICE = 3
    WARNING = 4
    ERROR = 5
    CRITICAL = 6
    ALERT = 7
    EMERGENCY = 8
    SECURITY_VIOLATION = 9
    BREACH_DETECTED = 10


class FieldVaultError(Exception):
    """Base exception for all Field Vault errors.

    Attributes:
        message: Human-readable error message
        severity: SIEM severity level (1-10)
        action: Dot-notation action that failed (e.g., 'field.unprotect')
        outcome: Result of the action ('failure', 'blocked', 'denied')
        actor: Actor information dict (type, id, name)
        metadata: Additional context for debugging/auditing
        timestamp: When the error occurred
    """

    severity: Severity = Severity.ERROR
    action: str = "vault.error"
    outcome: str = "failure"

    def __init__(
        self,
        message: str,
        actor: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.actor = actor or {"type": "system", "id": "unknown"}
        self.metadata = metadata or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc).isoformat()

        if cause:
            self.metadata["cause_type"] = type(cause).__name__
            self.metadata["cause_message"] = str(cause)
            self.metadata["cause_traceback"] = traceback.format_exception(
                type(cause), cause, cause.__traceback__
            )

    def to_siem_event(self, source_host: str = "localhost") -> Dict[str, Any]:
        """Convert exception to SIEM-compatible event format."""
        from . import __version__

        return {
            "timestamp": self.timestamp,
            "source": {
                "product": "field-vault",
                "host": source_host,
                "version": __version__
            },
            "action": self.action,
            "outcome": self.outcome,
            "severity": int(self.severity),
            "actor": self.actor,
            "metadata": {
                "error_type": type(self).__name__,
                "message": self.message,
                **self.metadata
            }
        }


# ============================================================================
# Policy Errors
# ============================================================================

class ConfigError(FieldVaultError):
    """Policy source is malformed or inconsistent."""
    severity = Severity.ERROR
    action = "policy.load"

    def __init__(self, message: str, source: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if source:
            self.metadata["source"] = source


class UnknownClassError(FieldVaultError):
    """No protection rule exists for a sensitivity class."""
    severity = Severity.WARNING
    action = "policy.unknown_class"

    def __init__(self, message: str, sensitivity_class: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if sensitivity_class:
            self.metadata["sensitivity_class"] = sensitivity_class


# ============================================================================
# Key Store Errors
# ============================================================================

class KeyStoreError(FieldVaultError):
    """Base class for key store failures."""
    severity = Severity.CRITICAL
    action = "keystore.operation"

    def __init__(self, message: str, key_ref: str = None,
                 key_version: int = None, **kwargs):
        super().__init__(message, **kwargs)
        if key_ref:
            self.metadata["key_ref"] = key_ref
        if key_version is not None:
            self.metadata["key_version"] = key_version


class UnknownKeyVersionError(KeyStoreError):
    """Key version is no longer retrievable (destroyed or expired)."""
    severity = Severity.ALERT
    action = "keystore.key_version"


class UnknownKeyError(UnknownKeyVersionError):
    """Key reference does not exist at all."""
    action = "keystore.key_ref"


# ============================================================================
# Access Control Errors
# ============================================================================

class AuthorizationError(FieldVaultError):
    """Caller roles do not satisfy a field's protection rule."""
    severity = Severity.SECURITY_VIOLATION
    action = "field.authorize"
    outcome = "denied"

    def __init__(self, message: str, field_path: str = None,
                 required_roles: list = None, **kwargs):
        super().__init__(message, **kwargs)
        if field_path:
            self.metadata["field_path"] = field_path
        if required_roles:
            self.metadata["required_roles"] = sorted(required_roles)


# ============================================================================
# Call Lifecycle Errors
# ============================================================================

class OperationTimeoutError(FieldVaultError, TimeoutError):
    """An external dependency did not answer within the caller's budget."""
    severity = Severity.WARNING
    action = "call.timeout"

    def __init__(self, message: str, timeout: float = None, **kwargs):
        super().__init__(message, **kwargs)
        if timeout is not None:
            self.metadata["timeout_seconds"] = timeout


class OperationCancelledError(FieldVaultError):
    """The caller cancelled a protect/unprotect call."""
    severity = Severity.NOTICE
    action = "call.cancelled"
    outcome = "blocked"


# ============================================================================
# Wire Errors
# ============================================================================

class EncodingError(FieldVaultError):
    """Wire bytes or record shape are malformed."""
    severity = Severity.WARNING
    action = "wire.decode"


# ============================================================================
# Cryptographic Errors
# ============================================================================

class CryptoError(FieldVaultError):
    """Base class for cryptographic operation failures."""
    severity = Severity.CRITICAL
    action = "crypto.operation"


class EncryptionError(CryptoError):
    """Failed to encrypt data."""
    action = "crypto.encrypt"


class DecryptionError(CryptoError):
    """Failed to decrypt data. May indicate tampering or wrong key."""
    severity = Severity.ALERT
    action = "crypto.decrypt"


# ============================================================================
# Audit Errors
# ============================================================================

class AuditError(FieldVaultError):
    """Failed to deliver an audit event. Never escapes a sink's emit()."""
    severity = Severity.WARNING
    action = "audit.emit"
