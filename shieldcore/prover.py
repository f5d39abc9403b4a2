"""
SHIELDCORE Prover Interface

Circuit shapes, witnesses and proofs, and the capabilities the builder
consumes to turn a witness into a Groth16 proof.

The on-chain verifier only accepts a fixed set of circuit shapes,
``(nullifiers, commitments)`` in ``{1, 2, 8} x {2, 3}``. Every private
operation the builder produces must land on one of them; anything else is
``UnsupportedArity``, a builder bug rather than a user error.

Capabilities (all injected, none global):

    Prover                    prove(shape, witness) -> ProofResult
    CircuitArtifactProvider   supported_shapes(), load(shape)

``CachedArtifactProvider`` wraps any provider with an explicit ``LRUCache``
owned by its consumer, so compiled artifacts are loaded at most once per
cache lifetime and memory stays bounded by ``max_size``.

``MockProver`` generates deterministic mock proofs from a hash of the
witness. NOT CRYPTOGRAPHICALLY SECURE - for testing only.
"""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from shieldcore.cache import LRUCache
from shieldcore.errors import ArtifactNotFound, ProverFailure, UnsupportedArity
from shieldcore.field import SNARK_PRIME, is_field_element, to_hex32
from shieldcore.observability import ShieldLayer, ShieldLogger

log = ShieldLogger("prover", ShieldLayer.PROVER)


# =============================================================================
# CIRCUIT SHAPES
# =============================================================================

@dataclass(frozen=True, order=True)
class CircuitShape:
    """Number of nullifiers (inputs) and commitments (outputs) of a circuit."""
    nullifiers: int
    commitments: int

    @property
    def circuit_id(self) -> str:
        return f"{self.nullifiers:02d}x{self.commitments:02d}"

    @property
    def public_input_count(self) -> int:
        # merkleRoot, boundParamsHash, nullifiers..., commitmentsOut...
        return 2 + self.nullifiers + self.commitments

    def __str__(self) -> str:
        return self.circuit_id


INPUT_ARITIES: Tuple[int, ...] = (1, 2, 8)
OUTPUT_ARITIES: Tuple[int, ...] = (2, 3)
SUPPORTED_SHAPES: Tuple[CircuitShape, ...] = tuple(
    CircuitShape(n, m) for n in INPUT_ARITIES for m in OUTPUT_ARITIES
)


def smallest_input_arity(count: int) -> Optional[int]:
    """Smallest supported nullifier count >= ``count``, or None if too many."""
    for arity in INPUT_ARITIES:
        if arity >= count:
            return arity
    return None


def smallest_output_arity(count: int) -> Optional[int]:
    """Smallest supported commitment count >= ``count``, or None if too many."""
    for arity in OUTPUT_ARITIES:
        if arity >= count:
            return arity
    return None


def require_supported(nullifiers: int, commitments: int) -> CircuitShape:
    shape = CircuitShape(nullifiers, commitments)
    if shape not in SUPPORTED_SHAPES:
        raise UnsupportedArity(nullifiers, commitments)
    return shape


def _canonical_digest(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


# =============================================================================
# WITNESS AND PROOF
# =============================================================================

@dataclass
class Witness:
    """
    Input to the prover.

    ``public_inputs`` is in verifier order. ``signals`` holds every circuit
    signal by name; values are field elements, bytes-like hex strings, or
    nested lists of them.
    """
    public_inputs: List[int]
    signals: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        for value in self.public_inputs:
            if not is_field_element(value):
                raise ValueError(f"Public input is not a field element: {value!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "public_inputs": [str(v) for v in self.public_inputs],
            "signals": _stringify(self.signals),
        }

    @property
    def digest(self) -> str:
        return _canonical_digest(self.to_dict())


def _stringify(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return {k: _stringify(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify(v) for v in value]
    return value


@dataclass(frozen=True)
class Proof:
    """Groth16 proof points: ``a`` in G1, ``b`` in G2, ``c`` in G1."""
    a: Tuple[int, int]
    b: Tuple[Tuple[int, int], Tuple[int, int]]
    c: Tuple[int, int]

    # ABI layout of the verifier's SnarkProof struct.
    ABI_TYPE = "((uint256,uint256),(uint256[2],uint256[2]),(uint256,uint256))"

    def to_abi(self) -> tuple:
        return (tuple(self.a), (list(self.b[0]), list(self.b[1])), tuple(self.c))

    @classmethod
    def from_abi(cls, value: tuple) -> "Proof":
        a, b, c = value
        return cls(tuple(a), (tuple(b[0]), tuple(b[1])), tuple(c))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "a": [to_hex32(x) for x in self.a],
            "b": [[to_hex32(x) for x in row] for row in self.b],
            "c": [to_hex32(x) for x in self.c],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proof":
        return cls(
            a=tuple(int(x, 16) for x in data["a"]),
            b=tuple(tuple(int(x, 16) for x in row) for row in data["b"]),
            c=tuple(int(x, 16) for x in data["c"]),
        )

    @property
    def digest(self) -> str:
        return _canonical_digest(self.to_dict())


@dataclass(frozen=True)
class ProofResult:
    proof: Proof
    public_inputs: Tuple[int, ...]


class Prover(Protocol):
    """Protocol for proof generation. Implementations may be slow."""

    def prove(self, shape: CircuitShape, witness: Witness) -> ProofResult:
        """Generate a proof for the witness under the given circuit."""
        ...


# =============================================================================
# CIRCUIT ARTIFACTS
# =============================================================================

@dataclass(frozen=True)
class CircuitArtifacts:
    """Compiled circuit: proving key and witness generator."""
    shape: CircuitShape
    zkey: bytes
    wasm: bytes

    @property
    def digest(self) -> str:
        h = hashlib.sha256()
        h.update(self.shape.circuit_id.encode())
        h.update(hashlib.sha256(self.zkey).digest())
        h.update(hashlib.sha256(self.wasm).digest())
        return h.hexdigest()


class CircuitArtifactProvider(Protocol):
    def supported_shapes(self) -> Tuple[CircuitShape, ...]:
        ...

    def load(self, shape: CircuitShape) -> CircuitArtifacts:
        ...


class FileArtifactLoader:
    """
    Reads artifacts laid out as ``<directory>/<NNxMM>/circuit.zkey`` and
    ``<directory>/<NNxMM>/circuit.wasm``.
    """

    ZKEY_NAME = "circuit.zkey"
    WASM_NAME = "circuit.wasm"

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        if directory is None:
            from shieldcore.config import get_config
            directory = get_config().cache.artifact_dir.get()
        self.directory = Path(directory)

    def supported_shapes(self) -> Tuple[CircuitShape, ...]:
        return SUPPORTED_SHAPES

    def path_for(self, shape: CircuitShape) -> Path:
        return self.directory / shape.circuit_id

    def load(self, shape: CircuitShape) -> CircuitArtifacts:
        require_supported(shape.nullifiers, shape.commitments)
        base = self.path_for(shape)
        zkey_path = base / self.ZKEY_NAME
        wasm_path = base / self.WASM_NAME
        for path in (zkey_path, wasm_path):
            if not path.is_file():
                raise ArtifactNotFound(f"Missing circuit artifact {path}", circuit=shape.circuit_id)
        log.info("Loaded circuit artifacts", circuit=shape.circuit_id, path=str(base))
        return CircuitArtifacts(shape, zkey_path.read_bytes(), wasm_path.read_bytes())


class SyntheticArtifactLoader:
    """Deterministic placeholder artifacts for tests and local development."""

    def __init__(self):
        self.loads: Dict[CircuitShape, int] = {}

    def supported_shapes(self) -> Tuple[CircuitShape, ...]:
        return SUPPORTED_SHAPES

    def load(self, shape: CircuitShape) -> CircuitArtifacts:
        require_supported(shape.nullifiers, shape.commitments)
        self.loads[shape] = self.loads.get(shape, 0) + 1
        seed = f"shieldcore-synthetic/{shape.circuit_id}".encode()
        return CircuitArtifacts(
            shape,
            zkey=hashlib.sha256(seed + b"/zkey").digest(),
            wasm=hashlib.sha256(seed + b"/wasm").digest(),
        )


class CachedArtifactProvider:
    """
    Artifact provider backed by an explicit LRU cache.

    The cache belongs to whoever constructs this provider; pass a shared
    ``LRUCache`` to share artifacts between provers, or let one be created
    with ``max_size`` entries.
    """

    def __init__(
        self,
        loader: CircuitArtifactProvider,
        cache: Optional[LRUCache] = None,
        max_size: Optional[int] = None,
    ):
        if cache is None:
            if max_size is None:
                from shieldcore.config import get_config
                max_size = get_config().cache.artifact_cache_size.get()
            cache = LRUCache(max_size=max_size)
        self.loader = loader
        self.cache = cache

    def supported_shapes(self) -> Tuple[CircuitShape, ...]:
        return self.loader.supported_shapes()

    def load(self, shape: CircuitShape) -> CircuitArtifacts:
        return self.cache.get_or_compute(shape, lambda: self.loader.load(shape))


# =============================================================================
# MOCK PROVER
# =============================================================================

class MockProver:
    """
    Mock prover for testing.

    Proof points are field elements expanded from
    ``sha256(witness digest || artifact digest)``. The same witness always
    yields the same proof.

    ``fail_times`` makes the next N calls raise ``fail_with`` (default
    ``ProverFailure``). ``on_prove`` runs before proving and lets tests
    move the chain while a proof is "in flight".
    """

    def __init__(
        self,
        artifacts: Optional[CircuitArtifactProvider] = None,
        fail_times: int = 0,
        fail_with: Optional[Exception] = None,
        on_prove: Optional[Callable[[CircuitShape, Witness], None]] = None,
    ):
        self.artifacts = artifacts or CachedArtifactProvider(SyntheticArtifactLoader(), max_size=len(SUPPORTED_SHAPES))
        self.fail_times = fail_times
        self.fail_with = fail_with
        self.on_prove = on_prove
        self.calls: List[CircuitShape] = []
        self._lock = threading.Lock()

    def prove(self, shape: CircuitShape, witness: Witness) -> ProofResult:
        require_supported(shape.nullifiers, shape.commitments)
        with self._lock:
            self.calls.append(shape)
            failing = self.fail_times > 0
            if failing:
                self.fail_times -= 1
        if failing:
            raise self.fail_with or ProverFailure(f"Mock prover failure for {shape}")

        if len(witness.public_inputs) != shape.public_input_count:
            raise ProverFailure(
                f"Circuit {shape} expects {shape.public_input_count} public inputs, "
                f"witness provides {len(witness.public_inputs)}"
            )
        if self.on_prove:
            self.on_prove(shape, witness)

        artifacts = self.artifacts.load(shape)
        seed = hashlib.sha256((witness.digest + artifacts.digest).encode()).digest()
        points = [
            int.from_bytes(hashlib.sha256(seed + bytes([i])).digest(), "big") % SNARK_PRIME
            for i in range(8)
        ]
        proof = Proof(
            a=(points[0], points[1]),
            b=((points[2], points[3]), (points[4], points[5])),
            c=(points[6], points[7]),
        )
        log.debug("Generated mock proof", circuit=shape.circuit_id, proof_digest=proof.digest)
        return ProofResult(proof, tuple(witness.public_inputs))
