# field_vault/keystore.py
"""
Key stores supplying versioned key material.

A key store answers two questions: which version of a key reference is
active for new encryptions, and what the material of a given version is.
Old versions stay retrievable until destroyed, which is what lets records
protected before a rotation still decrypt afterwards.
"""

import base64
import logging
import os
import re
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import requests

from .crypto import KEY_SIZE, generate_key
from .errors import (
    KeyStoreError,
    OperationTimeoutError,
    UnknownKeyError,
    UnknownKeyVersionError,
)


logger = logging.getLogger(__name__)

_REF_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]*")
DEFAULT_TIMEOUT = 5.0


def _check_ref(ref: str) -> str:
    if not isinstance(ref, str) or not _REF_RE.fullmatch(ref):
        raise KeyStoreError(f"Invalid key reference: {ref!r}")
    return ref


class KeyStore:
    """Key store contract.

    ``session()`` yields a handle exposing ``get_key`` and
    ``get_active_version``; stores backed by a connection acquire it on
    entry and release it on every exit path.
    """

    def get_key(self, ref: str, version: int, timeout: Optional[float] = None) -> bytes:
        raise NotImplementedError

    def get_active_version(self, ref: str, timeout: Optional[float] = None) -> int:
        raise NotImplementedError

    @contextmanager
    def session(self, timeout: Optional[float] = None) -> Iterator["KeyStore"]:
        yield self


class _LockedStore(KeyStore):
    """Shared lock-with-timeout handling for local stores."""

    def __init__(self):
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self, timeout: Optional[float]):
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise OperationTimeoutError("Timed out waiting for key store lock", timeout=timeout)
        try:
            yield
        finally:
            self._lock.release()


class InMemoryKeyStore(_LockedStore):
    """Process-local key store, mainly for tests and embedded use."""

    def __init__(self):
        super().__init__()
        self._keys: Dict[str, Dict[int, bytes]] = {}
        self._active: Dict[str, int] = {}

    def add_key(self, ref: str, key: bytes = None, version: int = None, activate: bool = True) -> int:
        _check_ref(ref)
        key = key if key is not None else generate_key()
        if len(key) != KEY_SIZE:
            raise KeyStoreError(f"Key must be {KEY_SIZE} bytes", key_ref=ref)
        with self._locked(None):
            versions = self._keys.setdefault(ref, {})
            if version is None:
                version = max(versions, default=0) + 1
            if version in versions:
                raise KeyStoreError("Key version already exists", key_ref=ref, key_version=version)
            versions[version] = key
            if activate:
                self._active[ref] = version
        return version

    def rotate(self, ref: str) -> int:
        """Generate a new version and make it active. Old versions stay readable."""
        if ref not in self._keys:
            raise UnknownKeyError(f"Unknown key reference: {ref}", key_ref=ref)
        version = self.add_key(ref)
        logger.info(f"Rotated key {ref} to version {version}")
        return version

    def destroy(self, ref: str, version: int) -> None:
        with self._locked(None):
            if self._active.get(ref) == version:
                raise KeyStoreError("Cannot destroy the active key version", key_ref=ref, key_version=version)
            if self._keys.get(ref, {}).pop(version, None) is None:
                raise UnknownKeyVersionError("No such key version", key_ref=ref, key_version=version)

    def get_key(self, ref, version, timeout=None):
        with self._locked(timeout):
            if ref not in self._keys:
                raise UnknownKeyError(f"Unknown key reference: {ref}", key_ref=ref)
            try:
                return self._keys[ref][version]
            except KeyError:
                raise UnknownKeyVersionError(
                    f"Key {ref} version {version} is not retrievable",
                    key_ref=ref, key_version=version,
                ) from None

    def get_active_version(self, ref, timeout=None):
        with self._locked(timeout):
            try:
                return self._active[ref]
            except KeyError:
                raise UnknownKeyError(f"Unknown key reference: {ref}", key_ref=ref) from None


class FileKeyStore(_LockedStore):
    """Key files on disk: ``<directory>/<ref>/v<N>.key`` plus an ``ACTIVE`` marker."""

    ACTIVE_FILE = "ACTIVE"

    def __init__(self, directory: str):
        super().__init__()
        self.directory = os.path.expanduser(directory)

    def _ref_dir(self, ref: str) -> str:
        return os.path.join(self.directory, _check_ref(ref))

    def _key_path(self, ref: str, version: int) -> str:
        return os.path.join(self._ref_dir(ref), f"v{int(version)}.key")

    def versions(self, ref: str) -> List[int]:
        ref_dir = self._ref_dir(ref)
        if not os.path.isdir(ref_dir):
            return []
        found = []
        for name in os.listdir(ref_dir):
            m = re.fullmatch(r"v(\d+)\.key", name)
            if m:
                found.append(int(m.group(1)))
        return sorted(found)

    def _write_key(self, ref: str, version: int, key: bytes) -> str:
        path = self._key_path(ref, version)
        os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        return path

    def _set_active(self, ref: str, version: int) -> None:
        marker = os.path.join(self._ref_dir(ref), self.ACTIVE_FILE)
        tmp = marker + ".tmp"
        with open(tmp, "w") as f:
            f.write(str(version))
        os.replace(tmp, marker)

    def create(self, ref: str, key: bytes = None) -> int:
        """Create version 1 of a new key reference."""
        with self._locked(None):
            if self.versions(ref):
                raise KeyStoreError(f"Key reference already exists: {ref}", key_ref=ref)
            self._write_key(ref, 1, key if key is not None else generate_key())
            self._set_active(ref, 1)
        logger.info(f"Created key {ref} version 1 in {self.directory}")
        return 1

    def rotate(self, ref: str) -> int:
        with self._locked(None):
            existing = self.versions(ref)
            if not existing:
                raise UnknownKeyError(f"Unknown key reference: {ref}", key_ref=ref)
            version = max(existing) + 1
            self._write_key(ref, version, generate_key())
            self._set_active(ref, version)
        logger.info(f"Rotated key {ref} to version {version}")
        return version

    def destroy(self, ref: str, version: int) -> None:
        """Remove a retired key version. Records protected under it become unreadable."""
        with self._locked(None):
            if self.get_active_version(ref) == version:
                raise KeyStoreError("Cannot destroy the active key version", key_ref=ref, key_version=version)
            path = self._key_path(ref, version)
            if not os.path.exists(path):
                raise UnknownKeyVersionError("No such key version", key_ref=ref, key_version=version)
            os.remove(path)
        logger.warning(f"Destroyed key {ref} version {version}")

    def get_key(self, ref, version, timeout=None):
        with self._locked(timeout):
            path = self._key_path(ref, version)
            if not os.path.exists(path):
                if not os.path.isdir(self._ref_dir(ref)):
                    raise UnknownKeyError(f"Unknown key reference: {ref}", key_ref=ref)
                raise UnknownKeyVersionError(
                    f"Key {ref} version {version} is not retrievable",
                    key_ref=ref, key_version=version,
                )
            with open(path, "rb") as f:
                key = f.read()
        if len(key) != KEY_SIZE:
            raise KeyStoreError("Key file has the wrong size", key_ref=ref, key_version=version)
        return key

    def get_active_version(self, ref, timeout=None):
        with self._locked(timeout):
            marker = os.path.join(self._ref_dir(ref), self.ACTIVE_FILE)
            try:
                with open(marker) as f:
                    return int(f.read().strip())
            except FileNotFoundError:
                raise UnknownKeyError(f"Unknown key reference: {ref}", key_ref=ref) from None
            except ValueError as e:
                raise KeyStoreError("Corrupt ACTIVE marker", key_ref=ref, cause=e) from e


class _HttpKeyHandle(KeyStore):
    """One HTTP session against a key service; closed when the session scope ends."""

    def __init__(self, store: "HttpKeyStore", session: requests.Session, timeout: Optional[float]):
        self._store = store
        self._session = session
        self._timeout = timeout

    def _get(self, path: str, ref: str, version: int = None, timeout: Optional[float] = None) -> dict:
        url = f"{self._store.base_url}{path}"
        timeout = timeout if timeout is not None else self._timeout
        if timeout is None:
            timeout = self._store.timeout
        try:
            response = self._session.get(url, timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise OperationTimeoutError(
                f"Key service timed out after {timeout}s", timeout=timeout, cause=e
            ) from e
        except requests.exceptions.RequestException as e:
            raise KeyStoreError(
                f"Cannot reach key service at {self._store.base_url}",
                key_ref=ref, key_version=version, cause=e,
            ) from e

        if response.status_code == 404:
            if version is None:
                raise UnknownKeyError(f"Unknown key reference: {ref}", key_ref=ref)
            raise UnknownKeyVersionError(
                f"Key {ref} version {version} is not retrievable",
                key_ref=ref, key_version=version,
            )
        if response.status_code >= 400:
            raise KeyStoreError(
                f"Key service error: {response.status_code}", key_ref=ref, key_version=version
            )
        try:
            return response.json()
        except ValueError as e:
            raise KeyStoreError("Key service returned invalid JSON", key_ref=ref, cause=e) from e

    def get_key(self, ref, version, timeout=None):
        data = self._get(f"/keys/{_check_ref(ref)}/versions/{int(version)}", ref, version, timeout)
        try:
            key = base64.b64decode(data["key"], validate=True)
        except (KeyError, TypeError, ValueError) as e:
            raise KeyStoreError("Malformed key payload", key_ref=ref, key_version=version, cause=e) from e
        if len(key) != KEY_SIZE:
            raise KeyStoreError("Key service returned a key of the wrong size", key_ref=ref, key_version=version)
        return key

    def get_active_version(self, ref, timeout=None):
        data = self._get(f"/keys/{_check_ref(ref)}/active", ref, None, timeout)
        try:
            return int(data["version"])
        except (KeyError, TypeError, ValueError) as e:
            raise KeyStoreError("Malformed active-version payload", key_ref=ref, cause=e) from e


class HttpKeyStore(KeyStore):
    """Client for a network key service.

    Endpoints:
        GET {base_url}/keys/{ref}/active          -> {"version": N}
        GET {base_url}/keys/{ref}/versions/{N}    -> {"key": "<base64>"}
    """

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT, api_key: str = ""):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key

    def _new_session(self) -> requests.Session:
        from . import __version__

        session = requests.Session()
        session.headers.update({"User-Agent": f"FieldVault/{__version__}"})
        if self.api_key:
            session.headers["X-API-Key"] = self.api_key
        return session

    @contextmanager
    def session(self, timeout=None):
        http = self._new_session()
        try:
            yield _HttpKeyHandle(self, http, timeout)
        finally:
            http.close()

    def get_key(self, ref, version, timeout=None):
        with self.session(timeout) as handle:
            return handle.get_key(ref, version)

    def get_active_version(self, ref, timeout=None):
        with self.session(timeout) as handle:
            return handle.get_active_version(ref)
