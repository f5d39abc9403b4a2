"""
SHIELDCORE Note Codec

Notes, their commitments and nullifiers, and the encrypted envelopes that
carry a note to its recipient.

Commitment scheme (matches the on-chain verifier):

    npk        = Poseidon(master_public_key, random)
    commitment = Poseidon(npk, token_hash, value)
    nullifier  = Poseidon(nullifying_key, leaf_index)

The nullifier only depends on the leaf index, so it is unique within one
tree; across trees the same value can legitimately appear twice.

Transfer envelope:

    shared     = X25519(ephemeral_private, recipient_viewing_public)
    key        = HKDF-SHA256(shared, salt=ephemeral_public || recipient_public)
    ciphertext = AES-256-GCM(key, iv, plaintext)

    plaintext:  master_public_key(32) | token_type(1) | token_address(20)
                | token_sub_id(32) | random(16) | value(32) | memo

    On chain it is a ``CommitmentCiphertext`` struct:
        ciphertext[0]           iv(16) | tag(16)
        ciphertext[1..3]        first 96 bytes of the encrypted plaintext
        blindedSenderViewingKey ephemeral public key
        memo                    rest of the encrypted plaintext

Shield envelope:

    A shield publishes its preimage (npk, token, value), so only the note's
    random travels encrypted, in a ``ShieldCiphertext``:
        encryptedBundle[0]      iv(16) | tag(16)
        encryptedBundle[1]      encrypted random(16) | zero(16)
        encryptedBundle[2]      zero
        shieldKey               ephemeral public key

    The recipient recomputes npk from its own master public key and the
    decrypted random; a match proves ownership.

Trial decryption is the hot path of sync: nearly every ciphertext on chain
belongs to someone else. ``try_decrypt`` and ``try_decrypt_shield``
therefore never raise; every way of failing (short blob, bad point, tag
mismatch, malformed plaintext) is a ``DecryptFailure`` value.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from shieldcore.cipher import IV_SIZE, KEY_SIZE, TAG_SIZE, AesGcmCipher, SymmetricCipher
from shieldcore.field import SNARK_PRIME, from_hex, hash_to_field, poseidon, to_bytes32, to_hex32
from shieldcore.keys import ViewingKey
from shieldcore import abi

MAX_NOTE_VALUE = (1 << 120) - 1
RANDOM_SIZE = 16
EPHEMERAL_KEY_SIZE = 32
HKDF_INFO = b"shieldcore/note-envelope/v1"
SHIELD_HKDF_INFO = b"shieldcore/shield-envelope/v1"

# Encrypted plaintext carried in ciphertext[1..3]; the rest goes in ``memo``.
_CIPHERTEXT_WORDS_SIZE = 96
_ZERO_WORD = b"\x00" * 32

_PLAINTEXT_HEADER = 32 + 1 + 20 + 32 + RANDOM_SIZE + 32


# =============================================================================
# TOKENS
# =============================================================================

class TokenType(IntEnum):
    ERC20 = 0
    ERC721 = 1
    ERC1155 = 2


def _normalize_address(address: Union[str, bytes]) -> str:
    if isinstance(address, (bytes, bytearray)):
        raw = bytes(address)
    else:
        raw = bytes.fromhex(address[2:] if address.startswith(("0x", "0X")) else address)
    if len(raw) != 20:
        raise ValueError(f"Token address must be 20 bytes, got {len(raw)}")
    return "0x" + raw.hex()


@dataclass(frozen=True)
class TokenData:
    """Token identifier as the pool contract sees it."""
    token_type: TokenType
    address: str
    sub_id: int = 0

    def __post_init__(self):
        object.__setattr__(self, "token_type", TokenType(self.token_type))
        object.__setattr__(self, "address", _normalize_address(self.address))
        if not 0 <= self.sub_id < (1 << 256):
            raise ValueError("sub_id must be a uint256")
        if self.token_type == TokenType.ERC20 and self.sub_id != 0:
            raise ValueError("ERC20 tokens have no sub_id")

    @classmethod
    def erc20(cls, address: Union[str, bytes]) -> "TokenData":
        return cls(TokenType.ERC20, address)

    @classmethod
    def native(cls) -> "TokenData":
        """Sentinel for the chain's native asset (zero address)."""
        return cls(TokenType.ERC20, b"\x00" * 20)

    @property
    def is_native(self) -> bool:
        return self == TokenData.native()

    @property
    def token_hash(self) -> int:
        if self.token_type == TokenType.ERC20:
            return int(self.address, 16)
        return hash_to_field(abi.encode(
            ["uint8", "address", "uint256"],
            [int(self.token_type), self.address, self.sub_id],
        ))

    def to_abi(self) -> tuple:
        return (int(self.token_type), self.address, self.sub_id)

    @classmethod
    def from_abi(cls, value: tuple) -> "TokenData":
        token_type, address, sub_id = value
        return cls(TokenType(token_type), address, sub_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": int(self.token_type), "address": self.address, "sub_id": str(self.sub_id)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenData":
        return cls(TokenType(data["type"]), data["address"], int(data.get("sub_id", "0")))

    def __str__(self) -> str:
        if self.token_type == TokenType.ERC20:
            return f"erc20:{self.address}"
        return f"{self.token_type.name.lower()}:{self.address}/{self.sub_id}"


# =============================================================================
# NOTES
# =============================================================================

@dataclass(frozen=True)
class Note:
    """A shielded value record owned by ``master_public_key``."""
    master_public_key: int
    token: TokenData
    value: int
    random: bytes
    memo: bytes = b""

    def __post_init__(self):
        if not 0 <= self.master_public_key < SNARK_PRIME:
            raise ValueError("master_public_key is not a field element")
        if not 0 <= self.value <= MAX_NOTE_VALUE:
            raise ValueError(f"Note value out of range: {self.value}")
        if len(self.random) != RANDOM_SIZE:
            raise ValueError(f"Note random must be {RANDOM_SIZE} bytes")

    @classmethod
    def create(cls, master_public_key: int, token: TokenData, value: int, memo: bytes = b"") -> "Note":
        """New note with fresh randomness."""
        return cls(master_public_key, token, value, os.urandom(RANDOM_SIZE), memo)

    @property
    def note_public_key(self) -> int:
        return poseidon([self.master_public_key, int.from_bytes(self.random, "big")])

    @property
    def commitment(self) -> int:
        return poseidon([self.note_public_key, self.token.token_hash, self.value])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "master_public_key": to_hex32(self.master_public_key),
            "token": self.token.to_dict(),
            "value": str(self.value),
            "random": self.random.hex(),
            "memo": self.memo.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        return cls(
            master_public_key=from_hex(data["master_public_key"]),
            token=TokenData.from_dict(data["token"]),
            value=int(data["value"]),
            random=bytes.fromhex(data["random"]),
            memo=bytes.fromhex(data.get("memo", "")),
        )


@dataclass(frozen=True)
class UnshieldNote:
    """Output that leaves the pool; its preimage is public."""
    receiver: str
    token: TokenData
    value: int

    def __post_init__(self):
        object.__setattr__(self, "receiver", _normalize_address(self.receiver))
        if not 0 < self.value <= MAX_NOTE_VALUE:
            raise ValueError(f"Unshield value out of range: {self.value}")

    @property
    def note_public_key(self) -> int:
        return int(self.receiver, 16)

    @property
    def commitment(self) -> int:
        return poseidon([self.note_public_key, self.token.token_hash, self.value])

    def preimage(self) -> "CommitmentPreimage":
        return CommitmentPreimage(self.note_public_key, self.token, self.value)


@dataclass(frozen=True)
class CommitmentPreimage:
    """Public ``(npk, token, value)`` triple the contract hashes into a commitment."""
    note_public_key: int
    token: TokenData
    value: int

    def __post_init__(self):
        if not 0 <= self.note_public_key < SNARK_PRIME:
            raise ValueError("Note public key is not a field element")
        if not 0 <= self.value <= MAX_NOTE_VALUE:
            raise ValueError(f"Preimage value out of range: {self.value}")

    @classmethod
    def of(cls, note: Union[Note, UnshieldNote]) -> "CommitmentPreimage":
        return cls(note.note_public_key, note.token, note.value)

    @property
    def commitment(self) -> int:
        return poseidon([self.note_public_key, self.token.token_hash, self.value])

    def with_value(self, value: int) -> "CommitmentPreimage":
        return CommitmentPreimage(self.note_public_key, self.token, value)

    def to_abi(self) -> tuple:
        return (to_bytes32(self.note_public_key), self.token.to_abi(), self.value)

    @classmethod
    def from_abi(cls, value: tuple) -> "CommitmentPreimage":
        npk_raw, token_abi, amount = value
        return cls(int.from_bytes(npk_raw, "big"), TokenData.from_abi(token_abi), amount)


EMPTY_PREIMAGE = CommitmentPreimage(0, TokenData.native(), 0)


def commitment_of(note: Union[Note, UnshieldNote]) -> int:
    return note.commitment


def nullifier_of(leaf_index: int, nullifying_key: int) -> int:
    """Nullifier of the note at ``leaf_index`` within its tree."""
    return poseidon([nullifying_key, leaf_index])


# =============================================================================
# ENVELOPE
# =============================================================================

@dataclass(frozen=True)
class Ciphertext:
    ephemeral_key: bytes
    iv: bytes
    tag: bytes
    data: bytes

    def to_bytes(self) -> bytes:
        return self.ephemeral_key + self.iv + self.tag + self.data

    @classmethod
    def from_bytes(cls, blob: bytes) -> "Ciphertext":
        header = EPHEMERAL_KEY_SIZE + IV_SIZE + TAG_SIZE
        if len(blob) < header:
            raise ValueError(f"Ciphertext shorter than {header}-byte header")
        return cls(
            ephemeral_key=bytes(blob[:EPHEMERAL_KEY_SIZE]),
            iv=bytes(blob[EPHEMERAL_KEY_SIZE:EPHEMERAL_KEY_SIZE + IV_SIZE]),
            tag=bytes(blob[EPHEMERAL_KEY_SIZE + IV_SIZE:header]),
            data=bytes(blob[header:]),
        )

    def to_abi(self) -> tuple:
        """``CommitmentCiphertext`` struct value."""
        if len(self.data) < _CIPHERTEXT_WORDS_SIZE:
            raise ValueError(f"Envelope data shorter than {_CIPHERTEXT_WORDS_SIZE} bytes")
        words = [self.iv + self.tag] + [self.data[i:i + 32] for i in range(0, _CIPHERTEXT_WORDS_SIZE, 32)]
        return (words, self.ephemeral_key, _ZERO_WORD, b"", self.data[_CIPHERTEXT_WORDS_SIZE:])

    @classmethod
    def from_abi(cls, value: tuple) -> "Ciphertext":
        words, blinded_sender, _, _, memo = value
        head = bytes(words[0])
        return cls(
            ephemeral_key=bytes(blinded_sender),
            iv=head[:IV_SIZE],
            tag=head[IV_SIZE:IV_SIZE + TAG_SIZE],
            data=b"".join(bytes(w) for w in words[1:]) + bytes(memo),
        )


@dataclass(frozen=True)
class ShieldCiphertext:
    """Encrypted note random of a shield, as the ``ShieldCiphertext`` struct carries it."""
    encrypted_bundle: Tuple[bytes, bytes, bytes]
    shield_key: bytes

    def to_abi(self) -> tuple:
        return (list(self.encrypted_bundle), self.shield_key)

    @classmethod
    def from_abi(cls, value: tuple) -> "ShieldCiphertext":
        bundle, shield_key = value
        return cls(tuple(bytes(word) for word in bundle), bytes(shield_key))


@dataclass(frozen=True)
class DecryptFailure:
    """Trial decryption did not yield a note for this key. Not an error."""
    reason: str
    detail: str = field(default="", compare=False)


def _derive_key(
    shared: bytes,
    ephemeral_public: bytes,
    recipient_public: bytes,
    info: bytes = HKDF_INFO,
) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=ephemeral_public + recipient_public,
        info=info,
    ).derive(shared)


def _encode_plaintext(note: Note) -> bytes:
    return b"".join([
        to_bytes32(note.master_public_key),
        bytes([int(note.token.token_type)]),
        bytes.fromhex(note.token.address[2:]),
        note.token.sub_id.to_bytes(32, "big"),
        note.random,
        note.value.to_bytes(32, "big"),
        note.memo,
    ])


def _decode_plaintext(plaintext: bytes) -> Note:
    if len(plaintext) < _PLAINTEXT_HEADER:
        raise ValueError("plaintext too short")
    offset = 0

    def take(n: int) -> bytes:
        nonlocal offset
        chunk = plaintext[offset:offset + n]
        offset += n
        return chunk

    master_public_key = int.from_bytes(take(32), "big")
    token_type = TokenType(take(1)[0])
    address = take(20)
    sub_id = int.from_bytes(take(32), "big")
    random = take(RANDOM_SIZE)
    value = int.from_bytes(take(32), "big")
    memo = plaintext[offset:]
    return Note(master_public_key, TokenData(token_type, address, sub_id), value, random, memo)


class NoteCodec:
    """Commitment, nullifier and envelope operations over an injected cipher."""

    def __init__(self, cipher: Optional[SymmetricCipher] = None):
        self.cipher = cipher or AesGcmCipher()

    commitment_of = staticmethod(commitment_of)
    nullifier_of = staticmethod(nullifier_of)

    def encrypt(
        self,
        note: Note,
        recipient_viewing_public_key: bytes,
        ephemeral_key: Optional[ViewingKey] = None,
        iv: Optional[bytes] = None,
    ) -> Ciphertext:
        """Encrypt ``note`` so that only the holder of the viewing key can read it.

        ``ephemeral_key`` and ``iv`` are generated when omitted; tests pass them
        to get deterministic output.
        """
        ephemeral = ephemeral_key or ViewingKey.generate()
        iv = iv if iv is not None else os.urandom(IV_SIZE)
        shared = ephemeral.exchange(recipient_viewing_public_key)
        key = _derive_key(shared, ephemeral.public_bytes, recipient_viewing_public_key)
        data, tag = self.cipher.encrypt(key, iv, _encode_plaintext(note))
        return Ciphertext(ephemeral.public_bytes, iv, tag, data)

    def try_decrypt(
        self,
        ciphertext: Union[bytes, Ciphertext],
        viewing_key: ViewingKey,
        expected_master_public_key: Optional[int] = None,
    ) -> Union[Note, DecryptFailure]:
        """Return the note if this viewing key can open the envelope, else a DecryptFailure."""
        if not isinstance(ciphertext, Ciphertext):
            if not isinstance(ciphertext, (bytes, bytearray, memoryview)):
                return DecryptFailure("malformed", f"unsupported type {type(ciphertext).__name__}")
            try:
                ciphertext = Ciphertext.from_bytes(bytes(ciphertext))
            except ValueError as e:
                return DecryptFailure("malformed", str(e))

        try:
            shared = viewing_key.exchange(ciphertext.ephemeral_key)
        except ValueError as e:
            return DecryptFailure("invalid-ephemeral-key", str(e))

        key = _derive_key(shared, ciphertext.ephemeral_key, viewing_key.public_bytes)
        plaintext = self.cipher.decrypt(key, ciphertext.iv, ciphertext.data, ciphertext.tag)
        if plaintext is None:
            return DecryptFailure("authentication-failed")

        try:
            note = _decode_plaintext(plaintext)
        except ValueError as e:
            return DecryptFailure("malformed-plaintext", str(e))

        if expected_master_public_key is not None and note.master_public_key != expected_master_public_key:
            return DecryptFailure("wrong-owner")
        return note

    def encrypt_shield(
        self,
        note: Note,
        recipient_viewing_public_key: bytes,
        ephemeral_key: Optional[ViewingKey] = None,
        iv: Optional[bytes] = None,
    ) -> ShieldCiphertext:
        """Encrypt the random of a note being shielded. The memo does not travel."""
        ephemeral = ephemeral_key or ViewingKey.generate()
        iv = iv if iv is not None else os.urandom(IV_SIZE)
        shared = ephemeral.exchange(recipient_viewing_public_key)
        key = _derive_key(shared, ephemeral.public_bytes, recipient_viewing_public_key, SHIELD_HKDF_INFO)
        data, tag = self.cipher.encrypt(key, iv, note.random)
        bundle = (iv + tag, data + b"\x00" * (32 - RANDOM_SIZE), _ZERO_WORD)
        return ShieldCiphertext(bundle, ephemeral.public_bytes)

    def try_decrypt_shield(
        self,
        preimage: CommitmentPreimage,
        ciphertext: ShieldCiphertext,
        viewing_key: ViewingKey,
        master_public_key: int,
    ) -> Union[Note, DecryptFailure]:
        """Rebuild the shielded note if it was sent to ``master_public_key``."""
        if not isinstance(ciphertext, ShieldCiphertext):
            return DecryptFailure("malformed", f"unsupported type {type(ciphertext).__name__}")
        head = ciphertext.encrypted_bundle[0]
        try:
            shared = viewing_key.exchange(ciphertext.shield_key)
        except ValueError as e:
            return DecryptFailure("invalid-ephemeral-key", str(e))

        key = _derive_key(shared, ciphertext.shield_key, viewing_key.public_bytes, SHIELD_HKDF_INFO)
        random = self.cipher.decrypt(
            key, head[:IV_SIZE], ciphertext.encrypted_bundle[1][:RANDOM_SIZE], head[IV_SIZE:IV_SIZE + TAG_SIZE]
        )
        if random is None:
            return DecryptFailure("authentication-failed")

        try:
            note = Note(master_public_key, preimage.token, preimage.value, random)
        except ValueError as e:
            return DecryptFailure("malformed-plaintext", str(e))
        if note.note_public_key != preimage.note_public_key:
            return DecryptFailure("wrong-owner")
        return note
