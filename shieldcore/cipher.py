"""shieldcore.cipher

Authenticated symmetric encryption for note envelopes.

``SymmetricCipher`` is the single interface the note codec depends on. The
host picks an implementation at construction:

- ``AesGcmCipher``: one-shot AEAD (``AESGCM``).
- ``StreamingAesGcmCipher``: incremental ``Cipher(AES, GCM)`` context,
  processing the message in fixed-size chunks.

Both are AES-256-GCM with a 16-byte IV and a 16-byte tag, no associated
data, and must agree byte for byte: same key, IV and plaintext give the same
ciphertext and tag, and decrypting one's output with the other yields the
same plaintext. A wrong key or corrupted data is reported as ``None`` from
``decrypt``; it is never raised.
"""

from __future__ import annotations

from typing import Optional, Protocol, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32
IV_SIZE = 16
TAG_SIZE = 16


class SymmetricCipher(Protocol):
    """AES-256-GCM with 16-byte IV and tag."""

    name: str

    def encrypt(self, key: bytes, iv: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
        """Return (ciphertext, tag)."""
        ...

    def decrypt(self, key: bytes, iv: bytes, ciphertext: bytes, tag: bytes) -> Optional[bytes]:
        """Return the plaintext, or None if authentication fails."""
        ...


def _check_encrypt_params(key: bytes, iv: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes")
    if len(iv) != IV_SIZE:
        raise ValueError(f"IV must be {IV_SIZE} bytes")


def _decrypt_params_ok(key: bytes, iv: bytes, tag: bytes) -> bool:
    return len(key) == KEY_SIZE and len(iv) == IV_SIZE and len(tag) == TAG_SIZE


class AesGcmCipher:
    """One-shot AES-256-GCM."""

    name = "aes-256-gcm"

    def encrypt(self, key: bytes, iv: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
        _check_encrypt_params(key, iv)
        sealed = AESGCM(key).encrypt(iv, plaintext, None)
        return sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

    def decrypt(self, key: bytes, iv: bytes, ciphertext: bytes, tag: bytes) -> Optional[bytes]:
        if not _decrypt_params_ok(key, iv, tag):
            return None
        try:
            return AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            return None


class StreamingAesGcmCipher:
    """Incremental AES-256-GCM, fed ``chunk_size`` bytes at a time."""

    name = "aes-256-gcm-stream"

    def __init__(self, chunk_size: int = 64):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.chunk_size = chunk_size

    def _feed(self, context, data: bytes) -> bytes:
        out = bytearray()
        for start in range(0, len(data), self.chunk_size):
            out += context.update(data[start:start + self.chunk_size])
        return bytes(out)

    def encrypt(self, key: bytes, iv: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
        _check_encrypt_params(key, iv)
        encryptor = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()
        ciphertext = self._feed(encryptor, plaintext) + encryptor.finalize()
        return ciphertext, encryptor.tag

    def decrypt(self, key: bytes, iv: bytes, ciphertext: bytes, tag: bytes) -> Optional[bytes]:
        if not _decrypt_params_ok(key, iv, tag):
            return None
        decryptor = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()
        plaintext = self._feed(decryptor, ciphertext)
        try:
            return plaintext + decryptor.finalize()
        except InvalidTag:
            return None
