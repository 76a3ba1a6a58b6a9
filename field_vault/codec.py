# field_vault/codec.py
"""
Protection Codec.

Turns a classified record into a ProtectedRecord and back. The codec holds
no per-call state: everything a call needs (policy snapshot, key-store
session, key cache, deadline) lives in a _CallContext that is discarded when
the call returns. Both directions are all-or-nothing per record.
"""

import json
import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from .audit import AuditSink, NullAuditSink, emit_safely
from .crypto import derive_nonce, get_cipher
from .deadline import Deadline
from .errors import AuthorizationError, ConfigError, DecryptionError, EncodingError, FieldVaultError
from .keystore import KeyStore
from .models import (
    NONE,
    AuditEvent,
    Classification,
    ProtectedField,
    ProtectedRecord,
    ProtectionRule,
    Record,
    is_scalar,
    join_path,
)
from .policy import PolicySnapshot, PolicyStore


logger = logging.getLogger(__name__)

PROTECT = "field.protect"
UNPROTECT = "field.unprotect"


def associated_data(path: str, sensitivity_class: str, algorithm: str, key_ref: str, key_version: int) -> bytes:
    """Binds a ciphertext to the field and key it was produced for."""
    return json.dumps(
        ["fv1", path, sensitivity_class, algorithm, key_ref, key_version],
        separators=(",", ":"),
    ).encode("utf-8")


class _CallContext:
    """Key lookups for a single protect/unprotect call."""

    def __init__(self, keys: KeyStore, deadline: Deadline, caller: Optional[str]):
        self.keys = keys
        self.deadline = deadline
        self.caller = caller
        self.path = ""
        self.events: List[AuditEvent] = []
        self._key_cache: Dict[Tuple[str, int], bytes] = {}
        self._active: Dict[str, int] = {}

    def active_version(self, key_ref: str) -> int:
        if key_ref not in self._active:
            self._active[key_ref] = self.keys.get_active_version(
                key_ref, timeout=self.deadline.remaining()
            )
        return self._active[key_ref]

    def key(self, key_ref: str, version: int) -> bytes:
        cache_key = (key_ref, version)
        if cache_key not in self._key_cache:
            self._key_cache[cache_key] = self.keys.get_key(
                key_ref, version, timeout=self.deadline.remaining()
            )
        return self._key_cache[cache_key]

    def close(self) -> None:
        self._key_cache.clear()
        self._active.clear()


class ProtectionCodec:
    """Encrypts classified fields under their class's rule and reverses it for authorized callers."""

    def __init__(self, store: PolicyStore, key_store: KeyStore, audit_sink: Optional[AuditSink] = None):
        self.store = store
        self.key_store = key_store
        self.audit_sink = audit_sink or NullAuditSink()

    # ==================== Protect ====================

    def protect(
        self,
        record: Record,
        classification: Classification,
        *,
        snapshot: Optional[PolicySnapshot] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        caller: Optional[str] = None,
    ) -> ProtectedRecord:
        """Return a ProtectedRecord with every non-NONE field encrypted.

        Raises:
            EncodingError: record is not a mapping of str to scalars/records
            UnknownClassError: a field's class has no rule
            UnknownKeyVersionError: the rule's key cannot be fetched
            OperationTimeoutError / OperationCancelledError
        """
        if not isinstance(record, dict):
            raise EncodingError(f"Record must be a mapping, got {type(record).__name__}")
        snapshot = snapshot or self.store.snapshot()
        deadline = Deadline(timeout, cancel)
        deadline.check()

        with self.key_store.session(timeout=deadline.remaining()) as keys:
            ctx = _CallContext(keys, deadline, caller)
            try:
                protected = self._protect_record(record, classification, "", None, snapshot, ctx)
            except FieldVaultError as e:
                self._audit_failure(PROTECT, ctx, e)
                raise
            finally:
                ctx.close()

        for event in ctx.events:
            emit_safely(self.audit_sink, event)
        return protected

    def _protect_record(self, record, classification, prefix, inherited, snapshot, ctx) -> ProtectedRecord:
        if classification is not None and not isinstance(classification, dict):
            raise EncodingError(f"Classification for {prefix or '<root>'} must be a mapping")
        out: ProtectedRecord = {}
        for name, value in record.items():
            if not isinstance(name, str):
                raise EncodingError(f"Field names must be strings, got {name!r}")
            path = join_path(prefix, name)
            ctx.path = path
            ctx.deadline.check()
            entry = classification.get(name) if classification else None

            if isinstance(value, dict):
                if isinstance(entry, dict):
                    out[name] = self._protect_record(value, entry, path, inherited, snapshot, ctx)
                else:
                    # a class given for a whole nested record applies to all its leaves
                    out[name] = self._protect_record(value, None, path, entry or inherited, snapshot, ctx)
                continue

            if not is_scalar(value):
                raise EncodingError(f"Field {path} has unsupported type {type(value).__name__}")
            if isinstance(entry, dict):
                raise EncodingError(f"Classification for {path} describes a nested record")

            cls = entry or inherited or NONE
            if cls == NONE:
                out[name] = value
            else:
                out[name] = self._seal(path, value, snapshot.rule_for(cls), ctx)
        return out

    def _seal(self, path: str, value, rule: ProtectionRule, ctx: _CallContext) -> ProtectedField:
        try:
            plaintext = json.dumps(value, allow_nan=False).encode("utf-8")
        except ValueError as e:
            raise EncodingError(f"Field {path} cannot be serialized: {e}", cause=e) from e
        cipher = get_cipher(rule.algorithm)
        version = ctx.active_version(rule.key_ref)
        key = ctx.key(rule.key_ref, version)
        aad = associated_data(path, rule.sensitivity_class, rule.algorithm, rule.key_ref, version)
        nonce = derive_nonce(key, aad, plaintext, cipher.nonce_size) if rule.deterministic else None
        ciphertext = cipher.encrypt(key, plaintext, aad, nonce)
        ctx.events.append(AuditEvent(
            action=PROTECT,
            field_path=path,
            sensitivity_class=rule.sensitivity_class,
            caller=ctx.caller,
            key_ref=rule.key_ref,
            key_version=version,
        ))
        return ProtectedField(
            sensitivity_class=rule.sensitivity_class,
            algorithm=rule.algorithm,
            key_ref=rule.key_ref,
            key_version=version,
            ciphertext=ciphertext,
        )

    # ==================== Unprotect ====================

    def unprotect(
        self,
        protected: ProtectedRecord,
        caller_roles: Iterable[str],
        *,
        snapshot: Optional[PolicySnapshot] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        caller: Optional[str] = None,
    ) -> Record:
        """Decrypt every ProtectedField, or nothing at all.

        Authorization is checked for all protected fields before the first
        decryption, so a caller missing a role learns no plaintext.
        """
        if not isinstance(protected, dict):
            raise EncodingError(f"Protected record must be a mapping, got {type(protected).__name__}")
        snapshot = snapshot or self.store.snapshot()
        roles = frozenset(caller_roles or ())
        deadline = Deadline(timeout, cancel)
        deadline.check()

        self._authorize(protected, roles, snapshot, caller)

        with self.key_store.session(timeout=deadline.remaining()) as keys:
            ctx = _CallContext(keys, deadline, caller)
            try:
                record = self._open_record(protected, "", ctx)
            except FieldVaultError as e:
                self._audit_failure(UNPROTECT, ctx, e)
                raise
            finally:
                ctx.close()

        for event in ctx.events:
            emit_safely(self.audit_sink, event)
        return record

    def _protected_fields(self, protected: ProtectedRecord, prefix: str = ""):
        for name, value in protected.items():
            path = join_path(prefix, str(name))
            if isinstance(value, ProtectedField):
                yield path, value
            elif isinstance(value, dict):
                yield from self._protected_fields(value, path)

    def _authorize(self, protected, roles, snapshot, caller) -> None:
        denied: List[Tuple[str, ProtectedField, ProtectionRule]] = []
        for path, pf in self._protected_fields(protected):
            rule = snapshot.rule_for(pf.sensitivity_class)
            if not rule.permits(roles):
                denied.append((path, pf, rule))
        if not denied:
            return

        for path, pf, _ in denied:
            emit_safely(self.audit_sink, AuditEvent(
                action=UNPROTECT,
                field_path=path,
                sensitivity_class=pf.sensitivity_class,
                outcome="denied",
                caller=caller,
                key_ref=pf.key_ref,
                key_version=pf.key_version,
            ))
        path, _, rule = denied[0]
        logger.warning(f"Caller {caller or 'unknown'} denied on {len(denied)} protected field(s)")
        raise AuthorizationError(
            f"Caller lacks a role required for field {path}",
            actor={"type": "caller", "id": caller or "unknown"},
            metadata={"denied_fields": [d[0] for d in denied]},
            field_path=path,
            required_roles=list(rule.authorized_roles),
        )

    def _open_record(self, protected: ProtectedRecord, prefix: str, ctx: _CallContext) -> Record:
        out: Record = {}
        for name, value in protected.items():
            if not isinstance(name, str):
                raise EncodingError(f"Field names must be strings, got {name!r}")
            path = join_path(prefix, name)
            ctx.path = path
            ctx.deadline.check()
            if isinstance(value, ProtectedField):
                out[name] = self._open(path, value, ctx)
            elif isinstance(value, dict):
                out[name] = self._open_record(value, path, ctx)
            elif is_scalar(value):
                out[name] = value
            else:
                raise EncodingError(f"Field {path} has unsupported type {type(value).__name__}")
        return out

    def _open(self, path: str, pf: ProtectedField, ctx: _CallContext):
        try:
            cipher = get_cipher(pf.algorithm)
        except ConfigError as e:
            raise DecryptionError(
                f"Protected field {path} names unsupported algorithm {pf.algorithm!r}", cause=e
            ) from e
        key = ctx.key(pf.key_ref, pf.key_version)
        aad = associated_data(path, pf.sensitivity_class, pf.algorithm, pf.key_ref, pf.key_version)
        plaintext = cipher.decrypt(key, pf.ciphertext, aad)
        try:
            value = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError(f"Decrypted payload for {path} is not a JSON scalar", cause=e) from e
        if not is_scalar(value):
            raise DecryptionError(f"Decrypted payload for {path} is not a scalar")
        ctx.events.append(AuditEvent(
            action=UNPROTECT,
            field_path=path,
            sensitivity_class=pf.sensitivity_class,
            caller=ctx.caller,
            key_ref=pf.key_ref,
            key_version=pf.key_version,
        ))
        return value

    # ==================== Audit ====================

    def _audit_failure(self, action: str, ctx: _CallContext, error: FieldVaultError) -> None:
        logger.error(f"{action} failed at {ctx.path or '<root>'}: {error}")
        emit_safely(self.audit_sink, AuditEvent(
            action=action,
            field_path=ctx.path,
            sensitivity_class=error.metadata.get("sensitivity_class", "unknown"),
            outcome="failure",
            caller=ctx.caller,
            key_ref=error.metadata.get("key_ref"),
            key_version=error.metadata.get("key_version"),
        ))
