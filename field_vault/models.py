from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional, Union
import uuid

NONE = "NONE"  # sensitivity class for fields left in clear

Scalar = Union[str, int, float, bool, None]
Record = Dict[str, Any]
Classification = Dict[str, Any]
ProtectedRecord = Dict[str, Any]


def is_scalar(value) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def join_path(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


@dataclass(frozen=True)
class ProtectionRule:
    sensitivity_class: str
    algorithm: str = "xchacha20poly1305"
    key_ref: str = "default"
    authorized_roles: FrozenSet[str] = frozenset()
    deterministic: bool = False

    def permits(self, roles) -> bool:
        return bool(self.authorized_roles & frozenset(roles or ()))


@dataclass(frozen=True)
class ProtectedField:
    sensitivity_class: str
    algorithm: str
    key_ref: str
    key_version: int
    ciphertext: bytes = field(repr=False)


@dataclass(frozen=True)
class AuditEvent:
    action: str  # field.protect / field.unprotect
    field_path: str
    sensitivity_class: str
    outcome: str = "success"  # or "denied", "failure"
    caller: Optional[str] = None
    key_ref: Optional[str] = None
    key_version: Optional[int] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_siem_event(self, source_host: str = "localhost", version: str = "") -> Dict[str, Any]:
        severity = 2 if self.outcome == "success" else 7
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "source": {"product": "field-vault", "host": source_host, "version": version},
            "action": self.action,
            "outcome": self.outcome,
            "severity": severity,
            "actor": {"type": "caller", "id": self.caller or "unknown"},
            "target": {"type": "field", "id": self.field_path},
            "metadata": {
                "sensitivity_class": self.sensitivity_class,
                "key_ref": self.key_ref,
                "key_version": self.key_version,
            },
        }
