"""
Message-queue boundary.

The two entry points a transport layer calls: ``on_send`` when a record
leaves the process and ``on_receive`` when bytes arrive. Failures propagate
unchanged; retry and dead-letter decisions belong to the transport.
"""

import threading
from typing import Callable, Iterable, Optional

from .audit import AuditSink
from .classifier import Classifier
from .codec import ProtectionCodec
from .errors import EncodingError
from .keystore import KeyStore
from .models import Record
from .policy import PolicyStore
from . import wire


class MessageBoundary:
    def __init__(
        self,
        policy_store: PolicyStore,
        key_store: KeyStore,
        audit_sink: Optional[AuditSink] = None,
        codec: Optional[ProtectionCodec] = None,
        default_timeout: Optional[float] = None,
        identity: Optional[str] = None,
    ):
        """
        Args:
            policy_store: Source of classification patterns and rules
            key_store: Supplies key material by reference and version
            audit_sink: Receives per-field audit events (best-effort)
            codec: Override the codec, e.g. to share one between boundaries
            default_timeout: Budget applied when a call passes no timeout
            identity: Caller id recorded on events produced by on_send
        """
        self.policy_store = policy_store
        self.classifier = Classifier(policy_store)
        self.codec = codec or ProtectionCodec(policy_store, key_store, audit_sink)
        self.default_timeout = default_timeout
        self.identity = identity

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.default_timeout

    def on_send(
        self,
        record: Record,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bytes:
        """Classify, protect and encode an outbound record."""
        if not isinstance(record, dict):
            raise EncodingError(f"Outbound record must be a mapping, got {type(record).__name__}")
        snapshot = self.policy_store.snapshot()
        classification = self.classifier.classify(record, snapshot=snapshot)
        protected = self.codec.protect(
            record,
            classification,
            snapshot=snapshot,
            timeout=self._timeout(timeout),
            cancel=cancel,
            caller=self.identity,
        )
        return wire.encode(protected)

    def on_receive(
        self,
        data: bytes,
        caller_roles: Iterable[str],
        *,
        caller: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Record:
        """Decode inbound bytes and decrypt them for the calling principal."""
        protected = wire.decode(data)
        return self.codec.unprotect(
            protected,
            caller_roles,
            timeout=self._timeout(timeout),
            cancel=cancel,
            caller=caller,
        )

    # ==================== Client hooks ====================

    def value_serializer(self) -> Callable[[Record], bytes]:
        """Callable for a producer's ``value_serializer`` hook."""
        def serialize(record: Record) -> bytes:
            return self.on_send(record)
        return serialize

    def value_deserializer(self, caller_roles: Iterable[str], caller: Optional[str] = None) -> Callable[[bytes], Record]:
        """Callable for a consumer's ``value_deserializer`` hook, bound to one principal."""
        roles = frozenset(caller_roles)

        def deserialize(data: bytes) -> Record:
            return self.on_receive(data, roles, caller=caller)
        return deserialize
