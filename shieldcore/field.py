"""
shieldcore.field

Cryptographic primitives over the BN254 scalar field: the field modulus,
keccak-256 hash-to-field, and the Poseidon permutation the on-chain verifier
uses for commitments, nullifiers and Merkle nodes.

Poseidon parameters
-------------------
The circom parameter set: state width ``t = inputs + 1``, S-box ``x^5``,
8 full rounds and a width-dependent number of partial rounds. Round constants
and the Cauchy MDS matrix are derived from the Grain LFSR seeded with
``(field=1, sbox=0, n=254, t, R_F, R_P)``. Derivation runs once per width
and is memoized.

Hashing
-------
- ``keccak256`` is the Ethereum keccak (pre-NIST padding), not SHA3-256.
- ``hash_to_field(data) = keccak256(data) mod p``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Sequence, Tuple

from Crypto.Hash import keccak

SNARK_PRIME = 21888242871839275222246405745257275088548364400416034343698204186575808495617

FULL_ROUNDS = 8
# Partial rounds indexed by t - 2.
PARTIAL_ROUNDS = (56, 57, 56, 60, 60, 63, 64, 63, 60, 66, 60, 65, 70, 60, 64, 68)
MAX_INPUTS = len(PARTIAL_ROUNDS)

_FIELD_BITS = 254


def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def hash_to_field(data: bytes) -> int:
    """keccak256(data) reduced into the scalar field."""
    return int.from_bytes(keccak256(data), "big") % SNARK_PRIME


def is_field_element(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < SNARK_PRIME


def to_bytes32(value: int) -> bytes:
    return value.to_bytes(32, "big")


def to_hex32(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def from_hex(value: str) -> int:
    return int(value[2:] if value.startswith(("0x", "0X")) else value, 16)


# =============================================================================
# GRAIN LFSR
# =============================================================================

class _GrainLFSR:
    """80-bit Grain LFSR in self-shrinking mode.

    Bit ``i`` of the register integer is position ``i`` of the bit sequence;
    position 0 is the oldest bit.
    """

    def __init__(self, width: int, partial_rounds: int):
        seq = ""
        for value, size in ((1, 2), (0, 4), (_FIELD_BITS, 12), (width, 12),
                            (FULL_ROUNDS, 10), (partial_rounds, 10)):
            seq += format(value, f"0{size}b")
        seq += "1" * 30

        self._state = 0
        for i, bit in enumerate(seq):
            if bit == "1":
                self._state |= 1 << i

        for _ in range(160):
            self._clock()

    def _clock(self) -> int:
        s = self._state
        new_bit = ((s >> 62) ^ (s >> 51) ^ (s >> 38) ^ (s >> 23) ^ (s >> 13) ^ s) & 1
        self._state = (s >> 1) | (new_bit << 79)
        return new_bit

    def next_bit(self) -> int:
        # Bits are consumed in pairs; a pair is kept only if its first bit is 1.
        while True:
            first = self._clock()
            second = self._clock()
            if first:
                return second

    def next_int(self, num_bits: int) -> int:
        value = 0
        for _ in range(num_bits):
            value = (value << 1) | self.next_bit()
        return value

    def next_field_element(self) -> int:
        """Rejection-sample a value below the modulus."""
        while True:
            value = self.next_int(_FIELD_BITS)
            if value < SNARK_PRIME:
                return value


@lru_cache(maxsize=None)
def poseidon_parameters(width: int) -> Tuple[Tuple[int, ...], Tuple[Tuple[int, ...], ...]]:
    """Round constants and MDS matrix for state width ``width`` (2..17)."""
    if not 2 <= width <= MAX_INPUTS + 1:
        raise ValueError(f"Unsupported Poseidon width {width}")

    partial_rounds = PARTIAL_ROUNDS[width - 2]
    lfsr = _GrainLFSR(width, partial_rounds)

    constants = tuple(
        lfsr.next_field_element() for _ in range((FULL_ROUNDS + partial_rounds) * width)
    )

    while True:
        samples = [lfsr.next_int(_FIELD_BITS) % SNARK_PRIME for _ in range(2 * width)]
        if len(set(samples)) != len(samples):
            continue
        xs, ys = samples[:width], samples[width:]
        if any((x + y) % SNARK_PRIME == 0 for x in xs for y in ys):
            continue
        mds = tuple(
            tuple(pow(x + y, -1, SNARK_PRIME) for y in ys)
            for x in xs
        )
        return constants, mds


def poseidon(inputs: Sequence[int]) -> int:
    """Poseidon hash of 1..16 field elements."""
    if not 1 <= len(inputs) <= MAX_INPUTS:
        raise ValueError(f"Poseidon takes 1..{MAX_INPUTS} inputs, got {len(inputs)}")
    for value in inputs:
        if not is_field_element(value):
            raise ValueError(f"Poseidon input is not a field element: {value!r}")

    width = len(inputs) + 1
    constants, mds = poseidon_parameters(width)
    partial_rounds = PARTIAL_ROUNDS[width - 2]
    half_full = FULL_ROUNDS // 2
    p = SNARK_PRIME

    state: List[int] = [0, *inputs]
    for r in range(FULL_ROUNDS + partial_rounds):
        offset = r * width
        state = [(s + constants[offset + i]) % p for i, s in enumerate(state)]

        if r < half_full or r >= half_full + partial_rounds:
            state = [pow(s, 5, p) for s in state]
        else:
            state[0] = pow(state[0], 5, p)

        state = [sum(m * s for m, s in zip(row, state)) % p for row in mds]

    return state[0]
