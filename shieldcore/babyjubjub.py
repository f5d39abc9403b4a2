"""
SHIELDCORE BabyJubJub

EdDSA over the BabyJubJub twisted Edwards curve, hashed with Poseidon, as
the transaction circuit verifies spend signatures.

Curve (over the BN254 scalar field):

    a·x² + y² = 1 + d·x²·y²        a = 168700, d = 168696

Keys (circomlib ``eddsa.prv2pub``):

    h       = BLAKE-512(private_key)
    s       = prune(h[0:32]) as little-endian int
    public  = B8 · (s >> 3)

Signing a field element ``m``:

    r  = LE(BLAKE-512(h[32:64] || LE32(m))) mod l
    R8 = B8 · r
    S  = r + Poseidon(R8.x, R8.y, A.x, A.y, m) · s  mod l

BLAKE-512 here is the SHA-3 finalist, not BLAKE2b.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from shieldcore.field import SNARK_PRIME, poseidon

CURVE_A = 168700
CURVE_D = 168696
SUBORDER = 2736030358979909402780800718157159386076813972158567259200215660948447373041

Point = Tuple[int, int]

IDENTITY: Point = (0, 1)
BASE8: Point = (
    5299619240641551281634865583518297030282874472190772894086521144482721001553,
    16950150798460657717958625567821834550301663161624707787222815936182638968203,
)


# =============================================================================
# BLAKE-512
# =============================================================================

_MASK64 = (1 << 64) - 1

_IV = (
    0x6A09E667F3BCC908, 0xBB67AE8584CAA73B, 0x3C6EF372FE94F82B, 0xA54FF53A5F1D36F1,
    0x510E527FADE682D1, 0x9B05688C2B3E6C1F, 0x1F83D9ABFB41BD6B, 0x5BE0CD19137E2179,
)

_CONSTANTS = (
    0x243F6A8885A308D3, 0x13198A2E03707344, 0xA4093822299F31D0, 0x082EFA98EC4E6C89,
    0x452821E638D01377, 0xBE5466CF34E90C6C, 0xC0AC29B7C97C50DD, 0x3F84D5B5B5470917,
    0x9216D5D98979FB1B, 0xD1310BA698DFB5AC, 0x2FFD72DBD01ADFB7, 0xB8E1AFED6A267E96,
    0xBA7C9045F12C7F99, 0x24A19947B3916CF7, 0x0801F2E2858EFC16, 0x636920D871574E69,
)

_SIGMA = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 11, 12, 13, 14, 15),
    (14, 10, 4, 8, 9, 15, 13, 6, 1, 12, 0, 2, 11, 7, 5, 3),
    (11, 8, 12, 0, 5, 2, 15, 13, 10, 14, 3, 6, 7, 1, 9, 4),
    (7, 9, 3, 1, 13, 12, 11, 14, 2, 6, 5, 10, 4, 0, 15, 8),
    (9, 0, 5, 7, 2, 4, 10, 15, 14, 1, 11, 12, 6, 8, 3, 13),
    (2, 12, 6, 10, 0, 11, 8, 3, 4, 13, 7, 5, 15, 14, 1, 9),
    (12, 5, 1, 15, 14, 13, 4, 10, 0, 7, 6, 3, 9, 2, 8, 11),
    (13, 11, 7, 14, 12, 1, 3, 9, 5, 0, 15, 4, 8, 6, 2, 10),
    (6, 15, 14, 9, 11, 3, 0, 8, 12, 2, 13, 7, 1, 4, 10, 5),
    (10, 2, 8, 4, 7, 6, 1, 5, 15, 11, 9, 14, 3, 12, 13, 0),
)

# (a, b, c, d) lanes: four columns, then four diagonals.
_LANES = (
    (0, 4, 8, 12), (1, 5, 9, 13), (2, 6, 10, 14), (3, 7, 11, 15),
    (0, 5, 10, 15), (1, 6, 11, 12), (2, 7, 8, 13), (3, 4, 9, 14),
)

_ROUNDS = 16
_BLOCK_SIZE = 128


def _rotr(x: int, n: int) -> int:
    return ((x >> n) | (x << (64 - n))) & _MASK64


def _compress(h: list, block: bytes, counter: int) -> None:
    m = [int.from_bytes(block[i:i + 8], "big") for i in range(0, _BLOCK_SIZE, 8)]
    t0 = counter & _MASK64
    t1 = (counter >> 64) & _MASK64
    v = list(h) + [
        _CONSTANTS[0], _CONSTANTS[1], _CONSTANTS[2], _CONSTANTS[3],
        _CONSTANTS[4] ^ t0, _CONSTANTS[5] ^ t0, _CONSTANTS[6] ^ t1, _CONSTANTS[7] ^ t1,
    ]

    for r in range(_ROUNDS):
        sigma = _SIGMA[r % 10]
        for i, (a, b, c, d) in enumerate(_LANES):
            x, y = sigma[2 * i], sigma[2 * i + 1]
            v[a] = (v[a] + v[b] + (m[x] ^ _CONSTANTS[y])) & _MASK64
            v[d] = _rotr(v[d] ^ v[a], 32)
            v[c] = (v[c] + v[d]) & _MASK64
            v[b] = _rotr(v[b] ^ v[c], 25)
            v[a] = (v[a] + v[b] + (m[y] ^ _CONSTANTS[x])) & _MASK64
            v[d] = _rotr(v[d] ^ v[a], 16)
            v[c] = (v[c] + v[d]) & _MASK64
            v[b] = _rotr(v[b] ^ v[c], 11)

    for i in range(8):
        h[i] ^= v[i] ^ v[i + 8]


def blake512(data: bytes) -> bytes:
    """BLAKE-512 digest (64 bytes), zero salt."""
    data = bytes(data)
    bit_length = len(data) * 8

    padded = bytearray(data)
    padded.append(0x80)
    while len(padded) % _BLOCK_SIZE != 112:
        padded.append(0)
    padded[-1] |= 0x01
    padded += bit_length.to_bytes(16, "big")

    h = list(_IV)
    for offset in range(0, len(padded), _BLOCK_SIZE):
        # Counter is the message bits consumed so far; zero for a block of pure padding.
        counter = min(bit_length, (offset + _BLOCK_SIZE) * 8) if offset < len(data) else 0
        _compress(h, bytes(padded[offset:offset + _BLOCK_SIZE]), counter)
    return b"".join(x.to_bytes(8, "big") for x in h)


# =============================================================================
# CURVE
# =============================================================================

def _inverse(x: int) -> int:
    return pow(x, SNARK_PRIME - 2, SNARK_PRIME)


def point_add(p: Point, q: Point) -> Point:
    x1, y1 = p
    x2, y2 = q
    t = CURVE_D * x1 * x2 * y1 * y2 % SNARK_PRIME
    x3 = (x1 * y2 + y1 * x2) * _inverse((1 + t) % SNARK_PRIME) % SNARK_PRIME
    y3 = (y1 * y2 - CURVE_A * x1 * x2) * _inverse((1 - t) % SNARK_PRIME) % SNARK_PRIME
    return x3, y3


def scalar_mul(point: Point, scalar: int) -> Point:
    result = IDENTITY
    addend = point
    while scalar > 0:
        if scalar & 1:
            result = point_add(result, addend)
        addend = point_add(addend, addend)
        scalar >>= 1
    return result


def is_on_curve(point: Point) -> bool:
    x, y = point
    x2, y2 = x * x % SNARK_PRIME, y * y % SNARK_PRIME
    return (CURVE_A * x2 + y2) % SNARK_PRIME == (1 + CURVE_D * x2 * y2) % SNARK_PRIME


# =============================================================================
# EDDSA-POSEIDON
# =============================================================================

@dataclass(frozen=True)
class Signature:
    r8: Point
    s: int

    def to_fields(self) -> Tuple[int, int, int]:
        """``(R8.x, R8.y, S)`` as the circuit takes them."""
        return self.r8[0], self.r8[1], self.s


def _pruned_scalar(digest: bytes) -> int:
    head = bytearray(digest[:32])
    head[0] &= 0xF8
    head[31] &= 0x7F
    head[31] |= 0x40
    return int.from_bytes(head, "little")


def public_key(private_key: bytes) -> Point:
    if len(private_key) != 32:
        raise ValueError("BabyJubJub private key must be 32 bytes")
    return scalar_mul(BASE8, _pruned_scalar(blake512(private_key)) >> 3)


def sign(private_key: bytes, message: int) -> Signature:
    if not 0 <= message < SNARK_PRIME:
        raise ValueError("Message is not a field element")
    digest = blake512(private_key)
    s = _pruned_scalar(digest)
    a = scalar_mul(BASE8, s >> 3)
    r = int.from_bytes(blake512(digest[32:64] + message.to_bytes(32, "little")), "little") % SUBORDER
    r8 = scalar_mul(BASE8, r)
    hm = poseidon([r8[0], r8[1], a[0], a[1], message])
    return Signature(r8, (r + hm * s) % SUBORDER)


def verify(public: Point, message: int, signature: Signature) -> bool:
    if not (0 <= message < SNARK_PRIME and 0 <= signature.s < SUBORDER):
        return False
    if not (is_on_curve(public) and is_on_curve(signature.r8)):
        return False
    hm = poseidon([signature.r8[0], signature.r8[1], public[0], public[1], message])
    left = scalar_mul(BASE8, signature.s)
    right = point_add(signature.r8, scalar_mul(public, 8 * hm))
    return left == right
