"""shieldcore.keys

Account credentials and shielded addresses.

- Spending key: BabyJubJub EdDSA-Poseidon (see ``shieldcore.babyjubjub``).
  Signs the transaction sighash; its public point is bound into the
  master public key.
- Viewing key: X25519. Decrypts notes sent to the account and derives the
  nullifying key; grants no spend authority on its own.
- ``nullifying_key = Poseidon(viewing_private_key)``
- ``master_public_key = Poseidon(spend_pub.x, spend_pub.y, nullifying_key)``

A shielded address publishes ``(master_public_key, viewing_public_key)``
plus the chain it is meant for, bech32m-encoded under the ``0zk`` prefix:

    payload = version(1) | master_public_key(32)
              | network_id(8) XOR "railgun\\0" | viewing_public_key(32)

    network_id = 0x00 | chain_id (7 bytes, big-endian)   one EVM chain
               = 0xff * 8                                any chain
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from functools import cached_property
from typing import List, Optional, Sequence, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from shieldcore import babyjubjub
from shieldcore.babyjubjub import Point, Signature
from shieldcore.field import SNARK_PRIME, poseidon, to_bytes32

_RAW = serialization.Encoding.Raw
_RAW_PUB = serialization.PublicFormat.Raw
_RAW_PRIV = serialization.PrivateFormat.Raw
_NO_ENC = serialization.NoEncryption()


# =============================================================================
# KEYS
# =============================================================================

class SpendingKey:
    """BabyJubJub spending credential."""

    def __init__(self, raw: bytes):
        if len(raw) != 32:
            raise ValueError("Spending key must be 32 bytes")
        self._raw = bytes(raw)

    @classmethod
    def generate(cls) -> "SpendingKey":
        return cls(secrets.token_bytes(32))

    @classmethod
    def from_bytes(cls, raw: bytes) -> "SpendingKey":
        return cls(raw)

    def to_bytes(self) -> bytes:
        return self._raw

    @cached_property
    def public_key(self) -> Point:
        return babyjubjub.public_key(self._raw)

    @property
    def public_key_fields(self) -> Tuple[int, int]:
        """The public point as ``(x, y)`` field elements."""
        return self.public_key

    def sign(self, message: int) -> Signature:
        """Sign a field element."""
        return babyjubjub.sign(self._raw, message)


def verify_spend_signature(public_key: Point, message: int, signature: Signature) -> bool:
    return babyjubjub.verify(public_key, message, signature)


class ViewingKey:
    """X25519 viewing credential."""

    def __init__(self, private_key: X25519PrivateKey):
        self._key = private_key

    @classmethod
    def generate(cls) -> "ViewingKey":
        return cls(X25519PrivateKey.generate())

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ViewingKey":
        if len(raw) != 32:
            raise ValueError("Viewing key must be 32 bytes")
        return cls(X25519PrivateKey.from_private_bytes(raw))

    def to_bytes(self) -> bytes:
        return self._key.private_bytes(_RAW, _RAW_PRIV, _NO_ENC)

    @cached_property
    def public_bytes(self) -> bytes:
        return self._key.public_key().public_bytes(_RAW, _RAW_PUB)

    @cached_property
    def nullifying_key(self) -> int:
        return poseidon([int.from_bytes(self.to_bytes(), "big") % SNARK_PRIME])

    def exchange(self, peer_public: bytes) -> bytes:
        """ECDH shared secret with a peer's raw public key.

        Raises ValueError for a malformed or low-order peer key.
        """
        return self._key.exchange(X25519PublicKey.from_public_bytes(peer_public))


# =============================================================================
# BECH32M
# =============================================================================

_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_BECH32M_CONST = 0x2BC830A3


def _polymod(values: Sequence[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            if (top >> i) & 1:
                chk ^= _GENERATOR[i]
    return chk


def _hrp_expand(hrp: str) -> List[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data: Sequence[int], from_bits: int, to_bits: int, pad: bool) -> List[int]:
    acc = 0
    bits = 0
    out: List[int] = []
    max_value = (1 << to_bits) - 1
    for value in data:
        if value >> from_bits:
            raise ValueError(f"Value {value} does not fit in {from_bits} bits")
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & max_value)
    if pad:
        if bits:
            out.append((acc << (to_bits - bits)) & max_value)
    elif bits >= from_bits or (acc << (to_bits - bits)) & max_value:
        raise ValueError("Invalid padding in bech32m data")
    return out


def bech32m_encode(hrp: str, payload: bytes) -> str:
    data = _convert_bits(payload, 8, 5, pad=True)
    polymod = _polymod(_hrp_expand(hrp) + data + [0] * 6) ^ _BECH32M_CONST
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_CHARSET[d] for d in data + checksum)


def bech32m_decode(text: str) -> Tuple[str, bytes]:
    if text.lower() != text and text.upper() != text:
        raise ValueError("Mixed-case bech32m string")
    text = text.lower()
    separator = text.rfind("1")
    if separator < 1 or separator + 7 > len(text):
        raise ValueError("Missing bech32m separator or checksum")
    hrp = text[:separator]
    try:
        data = [_CHARSET.index(c) for c in text[separator + 1:]]
    except ValueError:
        raise ValueError("Invalid bech32m character") from None
    if _polymod(_hrp_expand(hrp) + data) != _BECH32M_CONST:
        raise ValueError("Invalid bech32m checksum")
    return hrp, bytes(_convert_bits(data[:-6], 5, 8, pad=False))


# =============================================================================
# ADDRESSES
# =============================================================================

ADDRESS_PREFIX = "0zk"
ADDRESS_VERSION = 1
ADDRESS_LENGTH_LIMIT = 127
ALL_CHAINS = b"\xff" * 8
_NETWORK_MASK = b"railgun\x00"


def _xor_network(raw: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(raw, _NETWORK_MASK))


def _encode_network(chain_id: Optional[int]) -> bytes:
    if chain_id is None:
        return ALL_CHAINS
    return b"\x00" + chain_id.to_bytes(7, "big")


def _decode_network(raw: bytes) -> Optional[int]:
    if raw[0] == 0:
        return int.from_bytes(raw[1:], "big")
    if raw[0] == 0xFF:
        return None
    raise ValueError(f"Invalid network id {raw.hex()} in shielded address")


@dataclass(frozen=True)
class ShieldedAddress:
    """Public receiving address.

    ``chain_id`` None means the address is valid on every chain.
    """
    master_public_key: int
    viewing_public_key: bytes
    chain_id: Optional[int] = None

    def __post_init__(self):
        if not 0 <= self.master_public_key < SNARK_PRIME:
            raise ValueError("master_public_key is not a field element")
        if len(self.viewing_public_key) != 32:
            raise ValueError("viewing_public_key must be 32 bytes")
        if self.chain_id is not None and not 0 <= self.chain_id < (1 << 56):
            raise ValueError(f"Chain id {self.chain_id} does not fit in 7 bytes")

    def encode(self) -> str:
        payload = b"".join([
            bytes([ADDRESS_VERSION]),
            to_bytes32(self.master_public_key),
            _xor_network(_encode_network(self.chain_id)),
            self.viewing_public_key,
        ])
        text = bech32m_encode(ADDRESS_PREFIX, payload)
        if len(text) > ADDRESS_LENGTH_LIMIT:
            raise ValueError("Encoded address exceeds length limit")
        return text

    @classmethod
    def decode(cls, text: str) -> "ShieldedAddress":
        if len(text) > ADDRESS_LENGTH_LIMIT:
            raise ValueError("Shielded address exceeds length limit")
        hrp, payload = bech32m_decode(text)
        if hrp != ADDRESS_PREFIX:
            raise ValueError(f"Shielded address must start with {ADDRESS_PREFIX!r}, got {hrp!r}")
        if len(payload) != 73:
            raise ValueError(f"Shielded address payload must be 73 bytes, got {len(payload)}")
        if payload[0] != ADDRESS_VERSION:
            raise ValueError(f"Unsupported shielded address version {payload[0]}")
        return cls(
            master_public_key=int.from_bytes(payload[1:33], "big"),
            viewing_public_key=payload[41:73],
            chain_id=_decode_network(_xor_network(payload[33:41])),
        )

    def for_chain(self, chain_id: Optional[int]) -> "ShieldedAddress":
        return ShieldedAddress(self.master_public_key, self.viewing_public_key, chain_id)

    def __str__(self) -> str:
        return self.encode()


class Credential:
    """Spending plus viewing key pair owned by one account."""

    def __init__(self, spending_key: SpendingKey, viewing_key: ViewingKey):
        self.spending_key = spending_key
        self.viewing_key = viewing_key

    @classmethod
    def generate(cls) -> "Credential":
        return cls(SpendingKey.generate(), ViewingKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Credential":
        """Deterministic credential for fixtures: both keys from a 64-byte seed."""
        if len(seed) != 64:
            raise ValueError("Seed must be 64 bytes")
        return cls(SpendingKey.from_bytes(seed[:32]), ViewingKey.from_bytes(seed[32:]))

    @property
    def nullifying_key(self) -> int:
        return self.viewing_key.nullifying_key

    @cached_property
    def master_public_key(self) -> int:
        x, y = self.spending_key.public_key
        return poseidon([x, y, self.nullifying_key])

    @cached_property
    def address(self) -> ShieldedAddress:
        return ShieldedAddress(self.master_public_key, self.viewing_key.public_bytes)

    def address_for(self, chain_id: Optional[int]) -> ShieldedAddress:
        return self.address.for_chain(chain_id)
