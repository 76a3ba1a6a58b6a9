# field_vault/policy.py
"""
Policy Store.

Holds classification patterns and per-class protection rules as immutable
snapshots. Readers grab the current snapshot and keep using it for the
whole call; ``reload()`` builds a new snapshot off to the side and swaps it
in under a lock that covers only the assignment, so a failed reload never
disturbs the published one.
"""

import hashlib
import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import requests

from .crypto import get_cipher
from .errors import ConfigError, FieldVaultError, OperationTimeoutError, UnknownClassError
from .models import NONE, ProtectionRule


logger = logging.getLogger(__name__)

POLICY_FORMAT_VERSION = 1
DEFAULT_TIMEOUT = 10.0


# ==================== Sources ====================

class PolicySource:
    """Where a policy document comes from."""

    def fetch(self, timeout: Optional[float] = None) -> str:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


class FilePolicySource(PolicySource):
    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def fetch(self, timeout=None):
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            raise ConfigError(f"Cannot read policy file: {e}", source=self.path, cause=e) from e

    def describe(self):
        return self.path


class HttpPolicySource(PolicySource):
    """Fetches the policy document from a remote endpoint."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}

    def fetch(self, timeout=None):
        timeout = timeout if timeout is not None else self.timeout
        try:
            response = requests.get(self.url, headers=self.headers, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise OperationTimeoutError(
                f"Policy fetch from {self.url} timed out after {timeout}s", timeout=timeout, cause=e
            ) from e
        except requests.exceptions.RequestException as e:
            raise ConfigError(f"Cannot fetch policy: {e}", source=self.url, cause=e) from e
        return response.text

    def describe(self):
        return self.url


class DictPolicySource(PolicySource):
    """An in-process policy document, mostly for embedding and tests."""

    def __init__(self, document: Mapping[str, Any]):
        self.document = document

    def fetch(self, timeout=None):
        try:
            return json.dumps(self.document)
        except (TypeError, ValueError) as e:
            raise ConfigError("Policy document is not JSON-serializable", cause=e) from e

    def describe(self):
        return "<dict>"


def as_source(source: Union[PolicySource, Mapping[str, Any], str]) -> PolicySource:
    if isinstance(source, PolicySource):
        return source
    if isinstance(source, Mapping):
        return DictPolicySource(source)
    if isinstance(source, str):
        if source.startswith(("http://", "https://")):
            return HttpPolicySource(source)
        return FilePolicySource(source)
    raise ConfigError(f"Unsupported policy source type: {type(source).__name__}")


# ==================== Snapshot ====================

@dataclass(frozen=True)
class CompiledPattern:
    sensitivity_class: str
    field_re: Optional[re.Pattern]
    value_re: Optional[re.Pattern]
    priority: int
    index: int

    def matches(self, path: str, value_text: Optional[str]) -> bool:
        """Both declared matchers must fullmatch. A value matcher never matches a nested record."""
        if self.field_re is not None and self.field_re.fullmatch(path) is None:
            return False
        if self.value_re is not None:
            if value_text is None or self.value_re.fullmatch(value_text) is None:
                return False
        return True


@dataclass(frozen=True)
class PolicySnapshot:
    patterns: Tuple[CompiledPattern, ...]
    rules: Mapping[str, ProtectionRule]
    revision: int = 0
    digest: str = ""
    source: str = ""

    def rule_for(self, sensitivity_class: str) -> ProtectionRule:
        try:
            return self.rules[sensitivity_class]
        except KeyError:
            raise UnknownClassError(
                f"No protection rule for class {sensitivity_class!r}",
                sensitivity_class=sensitivity_class,
            ) from None

    @property
    def classes(self) -> List[str]:
        return list(self.rules)


def _compile(expr: Any, what: str, index: int, source: str) -> Optional[re.Pattern]:
    if expr is None:
        return None
    if not isinstance(expr, str):
        raise ConfigError(f"Pattern #{index}: {what} must be a string", source=source)
    try:
        return re.compile(expr)
    except (re.error, OverflowError, RecursionError) as e:
        raise ConfigError(
            f"Pattern #{index}: invalid {what} expression {expr!r}: {e}", source=source, cause=e
        ) from e


def _parse_rule(name: str, raw: Any, source: str) -> ProtectionRule:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Class {name}: rule must be an object", source=source)
    algorithm = raw.get("algorithm", "xchacha20poly1305")
    if not isinstance(algorithm, str):
        raise ConfigError(f"Class {name}: algorithm must be a string", source=source)
    try:
        get_cipher(algorithm)
    except ConfigError as e:
        raise ConfigError(f"Class {name}: unknown algorithm {algorithm!r}", source=source) from e
    key_ref = raw.get("key_ref")
    if not isinstance(key_ref, str) or not key_ref:
        raise ConfigError(f"Class {name}: key_ref is required", source=source)
    roles = raw.get("authorized_roles")
    if (not isinstance(roles, list) or not roles
            or not all(isinstance(r, str) and r for r in roles)):
        raise ConfigError(f"Class {name}: authorized_roles must be a non-empty list of strings", source=source)
    deterministic = raw.get("deterministic", False)
    if not isinstance(deterministic, bool):
        raise ConfigError(f"Class {name}: deterministic must be a boolean", source=source)
    return ProtectionRule(
        sensitivity_class=name,
        algorithm=algorithm,
        key_ref=key_ref,
        authorized_roles=frozenset(roles),
        deterministic=deterministic,
    )


def parse_policy(text: str, source: str = "") -> Tuple[Tuple[CompiledPattern, ...], Dict[str, ProtectionRule]]:
    """Parse and validate a policy document.

    Returns the patterns sorted into evaluation order and the class → rule map.
    Raises ConfigError on any malformed or inconsistent input.
    """
    try:
        doc = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Policy is not valid JSON: {e}", source=source, cause=e) from e
    if not isinstance(doc, dict):
        raise ConfigError("Policy document must be a JSON object", source=source)

    version = doc.get("version", POLICY_FORMAT_VERSION)
    if version != POLICY_FORMAT_VERSION:
        raise ConfigError(f"Unsupported policy version: {version!r}", source=source)

    classes = doc.get("classes", {})
    patterns = doc.get("patterns", [])
    if not isinstance(classes, dict):
        raise ConfigError("'classes' must be an object", source=source)
    if not isinstance(patterns, list):
        raise ConfigError("'patterns' must be a list", source=source)

    rules: Dict[str, ProtectionRule] = {}
    for name, raw in classes.items():
        if not name or name == NONE:
            raise ConfigError(f"Invalid class name: {name!r}", source=source)
        rules[name] = _parse_rule(name, raw, source)

    compiled = []
    for index, entry in enumerate(patterns):
        if not isinstance(entry, dict):
            raise ConfigError(f"Pattern #{index} must be an object", source=source)
        cls = entry.get("class")
        if not isinstance(cls, str):
            raise ConfigError(f"Pattern #{index}: class must be a string", source=source)
        if cls != NONE and cls not in rules:
            raise ConfigError(
                f"Pattern #{index} references undefined class {cls!r}", source=source
            )
        field_re = _compile(entry.get("field"), "field", index, source)
        value_re = _compile(entry.get("value"), "value", index, source)
        if field_re is None and value_re is None:
            raise ConfigError(f"Pattern #{index} needs a 'field' or 'value' expression", source=source)
        specificity = (field_re is not None) + (value_re is not None)
        priority = entry.get("priority", specificity)
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ConfigError(f"Pattern #{index}: priority must be an integer", source=source)
        compiled.append(CompiledPattern(cls, field_re, value_re, priority, index))

    # highest priority first, declaration order breaks ties
    compiled.sort(key=lambda p: (-p.priority, p.index))
    return tuple(compiled), rules


# ==================== Store ====================

class PolicyStore:
    """Publishes immutable policy snapshots; ``reload()`` is the only writer."""

    def __init__(self, source: Union[PolicySource, Mapping[str, Any], str, None] = None):
        self._snapshot: Optional[PolicySnapshot] = None
        self._source: Optional[PolicySource] = None
        self._swap_lock = threading.Lock()
        self._revision = 0
        self._reload_thread: Optional[threading.Thread] = None
        self._stop_reload = threading.Event()
        if source is not None:
            self.load(source)

    def _build(self, source: PolicySource, timeout: Optional[float]) -> Tuple[Tuple[CompiledPattern, ...], Dict[str, ProtectionRule], str]:
        text = source.fetch(timeout=timeout)
        patterns, rules = parse_policy(text, source.describe())
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return patterns, rules, digest

    def _publish(self, source: PolicySource, patterns, rules, digest) -> PolicySnapshot:
        with self._swap_lock:
            self._revision += 1
            snapshot = PolicySnapshot(
                patterns=patterns,
                rules=MappingProxyType(dict(rules)),
                revision=self._revision,
                digest=digest,
                source=source.describe(),
            )
            self._snapshot = snapshot
            self._source = source
        return snapshot

    def load(self, source, timeout: Optional[float] = None) -> PolicySnapshot:
        """Load a policy source and make it the active snapshot.

        Raises ConfigError if the document is malformed; the previously
        active snapshot (if any) stays in place.
        """
        source = as_source(source)
        patterns, rules, digest = self._build(source, timeout)
        snapshot = self._publish(source, patterns, rules, digest)
        logger.info(
            f"Loaded policy from {snapshot.source}: {len(rules)} classes, "
            f"{len(patterns)} patterns (revision {snapshot.revision})"
        )
        return snapshot

    def reload(self, timeout: Optional[float] = None) -> PolicySnapshot:
        """Re-fetch the last loaded source and swap in the result.

        On failure the current snapshot stays active and the error is raised.
        """
        source = self._source
        if source is None:
            raise ConfigError("Cannot reload: no policy source has been loaded")
        try:
            patterns, rules, digest = self._build(source, timeout)
        except FieldVaultError as e:
            logger.error(f"Policy reload from {source.describe()} failed, keeping revision "
                         f"{self._snapshot.revision if self._snapshot else 0}: {e}")
            raise
        current = self._snapshot
        if current is not None and current.digest == digest:
            logger.debug(f"Policy at {source.describe()} unchanged")
            return current
        snapshot = self._publish(source, patterns, rules, digest)
        logger.info(f"Reloaded policy from {snapshot.source} (revision {snapshot.revision})")
        return snapshot

    def snapshot(self) -> PolicySnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise ConfigError("No policy loaded")
        return snapshot

    def rule_for(self, sensitivity_class: str) -> ProtectionRule:
        return self.snapshot().rule_for(sensitivity_class)

    # ==================== Refresh ====================

    def start_auto_reload(self, interval: float) -> None:
        """Reload every ``interval`` seconds on a daemon thread until stopped."""
        if interval <= 0:
            raise ValueError("Refresh interval must be positive")
        if self._reload_thread and self._reload_thread.is_alive():
            return
        self._stop_reload.clear()
        self._reload_thread = threading.Thread(
            target=self._reload_loop,
            args=(interval,),
            name="policy-refresh",
            daemon=True
        )
        self._reload_thread.start()
        logger.debug(f"Policy auto-reload started (every {interval}s)")

    def _reload_loop(self, interval: float) -> None:
        while not self._stop_reload.wait(interval):
            try:
                self.reload(timeout=interval)
            except Exception as e:
                logger.warning(f"Scheduled policy reload failed: {e}")

    def stop_auto_reload(self, timeout: float = 5.0) -> None:
        self._stop_reload.set()
        if self._reload_thread and self._reload_thread.is_alive():
            self._reload_thread.join(timeout=timeout)
        self._reload_thread = None
