# field_vault/__init__.py
"""
Field Vault - policy-driven field-level protection for message-queue payloads.

Records crossing a message-queue serialization boundary are classified
against configured sensitivity patterns, sensitive fields are encrypted
under per-class protection rules, and only callers holding an authorized
role can reverse it.

Components:
- PolicyStore: reloadable snapshots of patterns and protection rules
- Classifier: tags each field with a sensitivity class
- ProtectionCodec: encrypts/decrypts classified fields with versioned keys
- MessageBoundary: on_send / on_receive entry points for the transport
"""

__version__ = "1.0.0"
__author__ = "kase1111-hash"

from .models import NONE, ProtectionRule, ProtectedField, AuditEvent
from .policy import PolicyStore, PolicySnapshot, FilePolicySource, HttpPolicySource, DictPolicySource
from .classifier import Classifier
from .codec import ProtectionCodec
from .keystore import KeyStore, InMemoryKeyStore, FileKeyStore, HttpKeyStore
from .audit import AuditSink, LoggingAuditSink, SIEMAuditSink, SIEMConfig, FanOutAuditSink, NullAuditSink
from .boundary import MessageBoundary
from .config import FieldVaultConfig, build_boundary
from .errors import (
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
)

__all__ = [
    # Core
    "PolicyStore",
    "PolicySnapshot",
    "Classifier",
    "ProtectionCodec",
    "MessageBoundary",
    "build_boundary",
    "FieldVaultConfig",
    # Models
    "NONE",
    "ProtectionRule",
    "ProtectedField",
    "AuditEvent",
    # Policy sources
    "FilePolicySource",
    "HttpPolicySource",
    "DictPolicySource",
    # Key stores
    "KeyStore",
    "InMemoryKeyStore",
    "FileKeyStore",
    "HttpKeyStore",
    # Audit
    "AuditSink",
    "LoggingAuditSink",
    "SIEMAuditSink",
    "SIEMConfig",
    "FanOutAuditSink",
    "NullAuditSink",
    # Errors
    "FieldVaultError",
    "ConfigError",
    "UnknownClassError",
    "KeyStoreError",
    "UnknownKeyVersionError",
    "UnknownKeyError",
    "AuthorizationError",
    "OperationTimeoutError",
    "OperationCancelledError",
    "EncodingError",
    "CryptoError",
    "EncryptionError",
    "DecryptionError",
]
