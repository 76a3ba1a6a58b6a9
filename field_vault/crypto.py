# field_vault/crypto.py
"""
Pluggable field ciphers.

Every algorithm identifier a protection rule may name maps to a Cipher
variant registered here. All variants are built on libsodium via PyNaCl
and produce ``nonce || ciphertext`` blobs.
"""

import hmac
import threading
from typing import Dict, List, Optional

import nacl.bindings
import nacl.encoding
import nacl.hash
import nacl.pwhash
import nacl.secret
import nacl.utils
from nacl.exceptions import CryptoError as NaClCryptoError

from .errors import ConfigError, DecryptionError, EncryptionError

KEY_SIZE = 32
SALT_SIZE = nacl.pwhash.argon2id.SALTBYTES
_AAD_TAG_SIZE = 32


def generate_key() -> bytes:
    return nacl.utils.random(KEY_SIZE)


def derive_key_from_passphrase(passphrase: str, salt: Optional[bytes] = None) -> tuple[bytes, bytes]:
    """Derive a 256-bit key from a passphrase with argon2id.

    Returns (key, salt). A fresh salt is generated when none is given.
    """
    if salt is None:
        salt = nacl.utils.random(SALT_SIZE)
    key = nacl.pwhash.argon2id.kdf(
        KEY_SIZE,
        passphrase.encode("utf-8"),
        salt,
        opslimit=nacl.pwhash.argon2id.OPSLIMIT_INTERACTIVE,
        memlimit=nacl.pwhash.argon2id.MEMLIMIT_INTERACTIVE,
    )
    return key, salt


def derive_nonce(key: bytes, aad: bytes, plaintext: bytes, size: int) -> bytes:
    """Synthetic nonce for deterministic rules: keyed BLAKE2b over aad and plaintext."""
    material = len(aad).to_bytes(4, "big") + aad + plaintext
    return nacl.hash.blake2b(
        material, digest_size=size, key=key, encoder=nacl.encoding.RawEncoder
    )


class Cipher:
    """Interface for a field encryption algorithm."""

    name: str = ""
    key_size: int = KEY_SIZE
    nonce_size: int = 24

    def encrypt(self, key: bytes, plaintext: bytes, aad: bytes, nonce: Optional[bytes] = None) -> bytes:
        raise NotImplementedError

    def decrypt(self, key: bytes, blob: bytes, aad: bytes) -> bytes:
        raise NotImplementedError

    def _check_key(self, key: bytes) -> None:
        if len(key) != self.key_size:
            raise EncryptionError(
                f"{self.name} requires a {self.key_size}-byte key, got {len(key)}"
            )


class XChaCha20Poly1305Cipher(Cipher):
    """IETF XChaCha20-Poly1305 AEAD. The associated data is authenticated natively."""

    name = "xchacha20poly1305"
    nonce_size = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_NPUBBYTES

    def encrypt(self, key, plaintext, aad, nonce=None):
        self._check_key(key)
        if nonce is None:
            nonce = nacl.utils.random(self.nonce_size)
        try:
            ct = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(
                plaintext, aad, nonce, key
            )
        except NaClCryptoError as e:
            raise EncryptionError("XChaCha20-Poly1305 encryption failed", cause=e) from e
        return nonce + ct

    def decrypt(self, key, blob, aad):
        if len(blob) < self.nonce_size:
            raise DecryptionError("Ciphertext shorter than nonce")
        nonce, ct = blob[:self.nonce_size], blob[self.nonce_size:]
        try:
            return nacl.bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(
                ct, aad, nonce, key
            )
        except (NaClCryptoError, ValueError, TypeError) as e:
            raise DecryptionError("XChaCha20-Poly1305 authentication failed", cause=e) from e


class SecretBoxCipher(Cipher):
    """XSalsa20-Poly1305 SecretBox.

    SecretBox has no associated-data input, so a keyed BLAKE2b tag of the
    aad is sealed in front of the plaintext and checked on open.
    """

    name = "xsalsa20poly1305"
    nonce_size = nacl.secret.SecretBox.NONCE_SIZE

    def _aad_tag(self, key: bytes, aad: bytes) -> bytes:
        return nacl.hash.blake2b(
            aad, digest_size=_AAD_TAG_SIZE, key=key, encoder=nacl.encoding.RawEncoder
        )

    def encrypt(self, key, plaintext, aad, nonce=None):
        self._check_key(key)
        box = nacl.secret.SecretBox(key)
        if nonce is None:
            nonce = nacl.utils.random(self.nonce_size)
        try:
            return bytes(box.encrypt(self._aad_tag(key, aad) + plaintext, nonce))
        except NaClCryptoError as e:
            raise EncryptionError("SecretBox encryption failed", cause=e) from e

    def decrypt(self, key, blob, aad):
        try:
            opened = nacl.secret.SecretBox(key).decrypt(blob)
        except (NaClCryptoError, ValueError, TypeError) as e:
            raise DecryptionError("SecretBox authentication failed", cause=e) from e
        tag, plaintext = opened[:_AAD_TAG_SIZE], opened[_AAD_TAG_SIZE:]
        if not hmac.compare_digest(tag, self._aad_tag(key, aad)):
            raise DecryptionError("Associated data mismatch")
        return plaintext


_registry: Dict[str, Cipher] = {}
_registry_lock = threading.Lock()


def register_cipher(cipher: Cipher) -> None:
    """Make a cipher available to protection rules under its name."""
    if not cipher.name:
        raise ValueError("Cipher must define a name")
    with _registry_lock:
        _registry[cipher.name] = cipher


def get_cipher(name: str) -> Cipher:
    try:
        return _registry[name]
    except KeyError:
        raise ConfigError(f"Unknown algorithm: {name!r}", metadata={"algorithm": name}) from None


def available_ciphers() -> List[str]:
    return sorted(_registry)


register_cipher(XChaCha20Poly1305Cipher())
register_cipher(SecretBoxCipher())
