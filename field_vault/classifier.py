"""Maps each field of a record to a sensitivity class."""

import math
from typing import Optional

from .models import NONE, Classification, Record, join_path
from .policy import PolicySnapshot, PolicyStore


def value_text(value) -> Optional[str]:
    """String form a value pattern is matched against.

    None for nested records and for integers too long to stringify; such
    values match no value pattern.
    """
    if isinstance(value, dict):
        return None
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return str(value)
    try:
        return str(value)
    except ValueError:
        return None


def classify_with(snapshot: PolicySnapshot, record: Record, prefix: str = "") -> Classification:
    result: Classification = {}
    for name, value in record.items():
        path = join_path(prefix, str(name))
        if isinstance(value, dict):
            result[name] = classify_with(snapshot, value, path)
            continue
        text = value_text(value)
        result[name] = NONE
        for pattern in snapshot.patterns:
            if pattern.matches(path, text):
                result[name] = pattern.sensitivity_class
                break
    return result


class Classifier:
    """Evaluates the store's patterns in priority order; first match wins."""

    def __init__(self, store: PolicyStore):
        self.store = store

    def classify(self, record: Record, snapshot: Optional[PolicySnapshot] = None) -> Classification:
        snapshot = snapshot or self.store.snapshot()
        return classify_with(snapshot, record)
