"""
SHIELDCORE Chain Interface

What the core needs from the chain, and how the pool contract's events and
calls are laid out on the wire.

Consumed capability:

    ChainReader
        get_logs(address, from_block, to_block) -> List[LogEvent]
        get_block_number() -> int
        get_transaction_receipt(tx_hash) -> Optional[Receipt]

    RootVerifier (optional)
        is_known_root(tree_number, root) -> bool

Contract structs:

    TokenData            (uint8 tokenType, address tokenAddress, uint256 tokenSubID)
    CommitmentPreimage   (bytes32 npk, TokenData token, uint120 value)
    CommitmentCiphertext (bytes32[4] ciphertext, bytes32 blindedSenderViewingKey,
                          bytes32 blindedReceiverViewingKey, bytes annotationData,
                          bytes memo)
    ShieldCiphertext     (bytes32[3] encryptedBundle, bytes32 shieldKey)
    ShieldRequest        (CommitmentPreimage preimage, ShieldCiphertext ciphertext)
    BoundParams          (uint16 treeNumber, uint72 minGasPrice, uint8 unshield,
                          uint64 chainID, address adaptContract, bytes32 adaptParams,
                          CommitmentCiphertext[] commitmentCiphertext)
    Transaction          (SnarkProof proof, bytes32 merkleRoot, bytes32[] nullifiers,
                          bytes32[] commitments, BoundParams boundParams,
                          CommitmentPreimage unshieldPreimage)

Functions:

    shield(ShieldRequest[])
    transact(Transaction[])

Events (topic0 = keccak256(signature)):

    Shield(uint256 treeNumber, uint256 startPosition, CommitmentPreimage[] commitments,
           ShieldCiphertext[] shieldCiphertext, uint256[] fees)
    Transact(uint256 treeNumber, uint256 startPosition, bytes32[] hash,
             CommitmentCiphertext[] ciphertext)
    Unshield(address to, TokenData token, uint256 amount, uint256 fee)
    Nullified(uint16 treeNumber, bytes32[] nullifier)

Shield and unshield fees are taken from the gross amount in basis points:
``fee = amount * bps // 10000``, ``base = amount - fee``. A shielded note is
committed with ``base``; an unshield pays ``base`` to the receiver.

A log with an unknown topic decodes to ``None``. A log with a known topic
whose data does not decode is ``MalformedLog``.

``InMemoryChain`` is a self-contained pool contract plus chain used by the
tests: it emits the events above, accepts calldata built by
``shieldcore.builder``, keeps the contract's own tree and root history, and
can inject read failures.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple, Union

from shieldcore import abi
from shieldcore.errors import MalformedLog
from shieldcore.field import SNARK_PRIME, hash_to_field, keccak256, to_bytes32
from shieldcore.merkle import TREE_DEPTH, MerkleForest
from shieldcore.note import Ciphertext, CommitmentPreimage, Note, ShieldCiphertext, TokenData
from shieldcore.observability import ShieldLayer, ShieldLogger

log = ShieldLogger("chain", ShieldLayer.INDEXER)


# =============================================================================
# CONTRACT INTERFACE
# =============================================================================

TOKEN_DATA_TYPE = "(uint8,address,uint256)"
PREIMAGE_TYPE = f"(bytes32,{TOKEN_DATA_TYPE},uint120)"
COMMITMENT_CIPHERTEXT_TYPE = "(bytes32[4],bytes32,bytes32,bytes,bytes)"
SHIELD_CIPHERTEXT_TYPE = "(bytes32[3],bytes32)"
SHIELD_REQUEST_TYPE = f"({PREIMAGE_TYPE},{SHIELD_CIPHERTEXT_TYPE})"
BOUND_PARAMS_TYPE = f"(uint16,uint72,uint8,uint64,address,bytes32,{COMMITMENT_CIPHERTEXT_TYPE}[])"
PROOF_TYPE = "((uint256,uint256),(uint256[2],uint256[2]),(uint256,uint256))"
TRANSACTION_TYPE = f"({PROOF_TYPE},bytes32,bytes32[],bytes32[],{BOUND_PARAMS_TYPE},{PREIMAGE_TYPE})"

SHIELD_EVENT_TYPES = ["uint256", "uint256", f"{PREIMAGE_TYPE}[]", f"{SHIELD_CIPHERTEXT_TYPE}[]", "uint256[]"]
TRANSACT_EVENT_TYPES = ["uint256", "uint256", "bytes32[]", f"{COMMITMENT_CIPHERTEXT_TYPE}[]"]
UNSHIELD_EVENT_TYPES = ["address", TOKEN_DATA_TYPE, "uint256", "uint256"]
NULLIFIED_EVENT_TYPES = ["uint16", "bytes32[]"]

SHIELD_EVENT = f"Shield({','.join(SHIELD_EVENT_TYPES)})"
TRANSACT_EVENT = f"Transact({','.join(TRANSACT_EVENT_TYPES)})"
UNSHIELD_EVENT = f"Unshield({','.join(UNSHIELD_EVENT_TYPES)})"
NULLIFIED_EVENT = f"Nullified({','.join(NULLIFIED_EVENT_TYPES)})"

SHIELD_TOPIC = abi.event_topic(SHIELD_EVENT)
TRANSACT_TOPIC = abi.event_topic(TRANSACT_EVENT)
NULLIFIED_TOPIC = abi.event_topic(NULLIFIED_EVENT)
UNSHIELD_TOPIC = abi.event_topic(UNSHIELD_EVENT)

SHIELD_FUNCTION = f"shield({SHIELD_REQUEST_TYPE}[])"
TRANSACT_FUNCTION = f"transact({TRANSACTION_TYPE}[])"

# BoundParams ``unshield`` (UnshieldType enum).
UNSHIELD_NONE = 0
UNSHIELD_NORMAL = 1
UNSHIELD_REDIRECT = 2

BASIS_POINTS = 10_000


def split_fee(amount: int, fee_bps: int) -> Tuple[int, int]:
    """``(base, fee)`` of a gross amount."""
    fee = amount * fee_bps // BASIS_POINTS
    return amount - fee, fee


def hash_bound_params(bound_params: tuple) -> int:
    """keccak256(abi.encode(BoundParams)) reduced into the field."""
    return hash_to_field(abi.encode([BOUND_PARAMS_TYPE], [bound_params]))


# =============================================================================
# CHAIN DATA
# =============================================================================

@dataclass(frozen=True)
class LogEvent:
    """One contract log as returned by the chain."""
    address: str
    topics: Tuple[bytes, ...]
    data: bytes
    block_number: int
    transaction_index: int
    log_index: int
    transaction_hash: str = ""

    @property
    def order_key(self) -> Tuple[int, int, int]:
        """Canonical emission order."""
        return (self.block_number, self.transaction_index, self.log_index)


@dataclass(frozen=True)
class Receipt:
    transaction_hash: str
    block_number: int
    status: int
    revert_reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainReader(Protocol):
    def get_logs(self, address: str, from_block: int, to_block: int) -> List[LogEvent]:
        ...

    def get_block_number(self) -> int:
        ...

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        ...


class RootVerifier(Protocol):
    def is_known_root(self, tree_number: int, root: int) -> bool:
        ...


# =============================================================================
# EVENT CODEC
# =============================================================================

@dataclass(frozen=True)
class CommitmentBatch:
    """Commitments appended by one Shield or Transact event.

    Shield batches carry their preimages and per-output fees; transact
    batches carry neither.
    """
    tree_number: int
    start_position: int
    commitments: Tuple[int, ...]
    ciphertexts: Tuple[Union[Ciphertext, ShieldCiphertext], ...]
    block_number: int
    kind: str
    preimages: Tuple[CommitmentPreimage, ...] = ()
    fees: Tuple[int, ...] = ()


@dataclass(frozen=True)
class NullifierBatch:
    tree_number: int
    nullifiers: Tuple[int, ...]
    block_number: int


@dataclass(frozen=True)
class UnshieldRecord:
    """Value that left the pool; informational for the indexer."""
    to: str
    token: TokenData
    amount: int
    fee: int
    block_number: int


ChainEvent = Union[CommitmentBatch, NullifierBatch, UnshieldRecord]


def _field_from_bytes32(raw: bytes, what: str) -> int:
    value = int.from_bytes(raw, "big")
    if value >= SNARK_PRIME:
        raise MalformedLog(f"{what} {value:#x} is not a field element")
    return value


def encode_shield_event(
    tree_number: int,
    start_position: int,
    preimages: Sequence[CommitmentPreimage],
    ciphertexts: Sequence[ShieldCiphertext],
    fees: Sequence[int],
) -> bytes:
    return abi.encode(
        SHIELD_EVENT_TYPES,
        [
            tree_number,
            start_position,
            [p.to_abi() for p in preimages],
            [c.to_abi() for c in ciphertexts],
            list(fees),
        ],
    )


def encode_transact_event(
    tree_number: int,
    start_position: int,
    commitments: Sequence[int],
    ciphertexts: Sequence[Ciphertext],
) -> bytes:
    return abi.encode(
        TRANSACT_EVENT_TYPES,
        [tree_number, start_position, [to_bytes32(c) for c in commitments], [c.to_abi() for c in ciphertexts]],
    )


def encode_nullified_event(tree_number: int, nullifiers: Sequence[int]) -> bytes:
    return abi.encode(NULLIFIED_EVENT_TYPES, [tree_number, [to_bytes32(n) for n in nullifiers]])


def encode_unshield_event(to: str, token: TokenData, amount: int, fee: int) -> bytes:
    return abi.encode(UNSHIELD_EVENT_TYPES, [to, token.to_abi(), amount, fee])


def decode_preimage(value: tuple) -> CommitmentPreimage:
    try:
        return CommitmentPreimage.from_abi(value)
    except ValueError as e:
        raise MalformedLog(f"Invalid commitment preimage: {e}") from e


def decode_log(event: LogEvent) -> Optional[ChainEvent]:
    """Decode a pool log. Unknown topics yield None."""
    if not event.topics:
        return None
    topic = bytes(event.topics[0])

    try:
        if topic == SHIELD_TOPIC:
            tree_number, start, raw_preimages, raw_ciphertexts, fees = abi.decode(SHIELD_EVENT_TYPES, event.data)
            if not len(raw_preimages) == len(raw_ciphertexts) == len(fees):
                raise MalformedLog(
                    f"Shield log has {len(raw_preimages)} preimages, {len(raw_ciphertexts)} ciphertexts"
                    f" and {len(fees)} fees",
                    block=event.block_number,
                )
            preimages = tuple(decode_preimage(p) for p in raw_preimages)
            return CommitmentBatch(
                tree_number,
                start,
                tuple(p.commitment for p in preimages),
                tuple(ShieldCiphertext.from_abi(c) for c in raw_ciphertexts),
                event.block_number,
                "shield",
                preimages=preimages,
                fees=tuple(fees),
            )

        if topic == TRANSACT_TOPIC:
            tree_number, start, hashes, raw_ciphertexts = abi.decode(TRANSACT_EVENT_TYPES, event.data)
            if len(hashes) != len(raw_ciphertexts):
                raise MalformedLog(
                    f"Transact log has {len(hashes)} commitments but {len(raw_ciphertexts)} ciphertexts",
                    block=event.block_number,
                )
            return CommitmentBatch(
                tree_number,
                start,
                tuple(_field_from_bytes32(h, "Commitment") for h in hashes),
                tuple(Ciphertext.from_abi(c) for c in raw_ciphertexts),
                event.block_number,
                "transact",
            )

        if topic == NULLIFIED_TOPIC:
            tree_number, nullifiers = abi.decode(NULLIFIED_EVENT_TYPES, event.data)
            return NullifierBatch(
                tree_number,
                tuple(_field_from_bytes32(n, "Nullifier") for n in nullifiers),
                event.block_number,
            )

        if topic == UNSHIELD_TOPIC:
            to, token_abi, amount, fee = abi.decode(UNSHIELD_EVENT_TYPES, event.data)
            try:
                token = TokenData.from_abi(token_abi)
            except ValueError as e:
                raise MalformedLog(f"Invalid token in unshield: {e}", block=event.block_number) from e
            return UnshieldRecord(to, token, amount, fee, event.block_number)
    except abi.AbiDecodeError as e:
        raise MalformedLog(
            f"Undecodable log at block {event.block_number}: {e}",
            block=event.block_number,
            log_index=event.log_index,
        ) from e

    return None


# =============================================================================
# IN-MEMORY CHAIN
# =============================================================================

def placeholder_ciphertext() -> Ciphertext:
    """An envelope no viewing key opens (its ephemeral key is the zero point)."""
    return Ciphertext(b"\x00" * 32, b"\x00" * 16, b"\x00" * 16, b"\x00" * 96)


@dataclass(frozen=True)
class _CheckedTransaction:
    tree_number: int
    nullifiers: List[int]
    inserted: List[int]
    ciphertexts: List[Ciphertext]
    unshield: Optional[CommitmentPreimage]


class InMemoryChain:
    """
    In-memory pool contract and chain for testing.

    Logs go into the pending block and become visible once it is mined.
    With ``auto_mine`` (the default) every transaction mines its own block.
    """

    def __init__(
        self,
        contract_address: str = "0x" + "5c" * 20,
        depth: int = TREE_DEPTH,
        start_block: int = 0,
        chain_id: int = 1,
        auto_mine: bool = True,
        shield_fee_bps: int = 0,
        unshield_fee_bps: int = 0,
    ):
        self.contract_address = contract_address.lower()
        self.chain_id = chain_id
        self.auto_mine = auto_mine
        self.shield_fee_bps = shield_fee_bps
        self.unshield_fee_bps = unshield_fee_bps
        self._lock = threading.RLock()
        self._head = start_block
        self._tx_index = 0
        self._log_index = 0
        self._nonce = 0
        self._logs: List[LogEvent] = []
        self._receipts: Dict[str, Receipt] = {}
        self._forest = MerkleForest(depth)
        self._roots: Dict[int, Set[int]] = {0: {self._forest.root(0)}}
        self._nullifiers: Set[Tuple[int, int]] = set()
        self._read_failures = 0

    # -------------------------------------------------------------------------
    # ChainReader
    # -------------------------------------------------------------------------

    def _maybe_fail_read(self) -> None:
        if self._read_failures > 0:
            self._read_failures -= 1
            raise ConnectionError("Injected chain read failure")

    def get_logs(self, address: str, from_block: int, to_block: int) -> List[LogEvent]:
        with self._lock:
            self._maybe_fail_read()
            upper = min(to_block, self._head)
            return [
                e for e in self._logs
                if e.address == address.lower() and from_block <= e.block_number <= upper
            ]

    def get_block_number(self) -> int:
        with self._lock:
            self._maybe_fail_read()
            return self._head

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        with self._lock:
            receipt = self._receipts.get(tx_hash)
            if receipt is None or receipt.block_number > self._head:
                return None
            return receipt

    def is_known_root(self, tree_number: int, root: int) -> bool:
        with self._lock:
            return root in self._roots.get(tree_number, set())

    # -------------------------------------------------------------------------
    # Contract state
    # -------------------------------------------------------------------------

    def root(self, tree_number: Optional[int] = None) -> int:
        with self._lock:
            return self._forest.root(tree_number)

    @property
    def head(self) -> int:
        return self._head

    def is_spent(self, tree_number: int, nullifier: int) -> bool:
        with self._lock:
            return (tree_number, nullifier) in self._nullifiers

    def fail_next_reads(self, count: int) -> None:
        """Make the next ``count`` reads raise ConnectionError."""
        with self._lock:
            self._read_failures = count

    def mine(self, blocks: int = 1) -> int:
        with self._lock:
            self._head += blocks
            self._tx_index = 0
            self._log_index = 0
            return self._head

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    def _new_tx_hash(self, payload: bytes) -> str:
        self._nonce += 1
        return "0x" + keccak256(payload + self._nonce.to_bytes(8, "big")).hex()

    def _emit(self, topic: bytes, data: bytes, tx_hash: str, tx_index: int) -> LogEvent:
        event = LogEvent(
            address=self.contract_address,
            topics=(topic,),
            data=data,
            block_number=self._head + 1,
            transaction_index=tx_index,
            log_index=self._log_index,
            transaction_hash=tx_hash,
        )
        self._log_index += 1
        self._logs.append(event)
        return event

    def _finish_tx(self, tx_hash: str, status: int, reason: str = "") -> str:
        self._receipts[tx_hash] = Receipt(tx_hash, self._head + 1, status, reason)
        self._tx_index += 1
        if self.auto_mine:
            self.mine()
        return tx_hash

    def _append(self, commitments: Sequence[int]) -> Tuple[int, int]:
        """Insert like the contract: a batch that does not fit starts a new tree."""
        tree_number = self._forest.latest_tree_number
        start = len(self._forest.tree(tree_number))
        if start + len(commitments) > self._forest.capacity:
            tree_number += 1
            start = 0
        if commitments:
            self._forest.insert_at(tree_number, start, commitments)
            self._roots.setdefault(tree_number, set()).add(self._forest.root(tree_number))
        return tree_number, start

    def emit_shield(self, notes: Sequence[Note], ciphertexts: Sequence[ShieldCiphertext]) -> str:
        """Shield ``notes`` as if ``shield`` had been called with their preimages."""
        with self._lock:
            return self._shield([CommitmentPreimage.of(n) for n in notes], ciphertexts)

    def _shield(self, preimages: Sequence[CommitmentPreimage], ciphertexts: Sequence[ShieldCiphertext]) -> str:
        inserted: List[CommitmentPreimage] = []
        fees: List[int] = []
        for preimage in preimages:
            base, fee = split_fee(preimage.value, self.shield_fee_bps)
            inserted.append(preimage.with_value(base))
            fees.append(fee)
        tree_number, start = self._append([p.commitment for p in inserted])
        data = encode_shield_event(tree_number, start, inserted, ciphertexts, fees)
        tx_hash = self._new_tx_hash(data)
        self._emit(SHIELD_TOPIC, data, tx_hash, self._tx_index)
        return self._finish_tx(tx_hash, 1)

    def emit_transact(self, commitments: Sequence[int], ciphertexts: Optional[Sequence[Ciphertext]] = None) -> str:
        """Append commitments; without ciphertexts they get envelopes nobody can open."""
        if ciphertexts is None:
            ciphertexts = [placeholder_ciphertext() for _ in commitments]
        with self._lock:
            tree_number, start = self._append(commitments)
            data = encode_transact_event(tree_number, start, commitments, ciphertexts)
            tx_hash = self._new_tx_hash(data)
            self._emit(TRANSACT_TOPIC, data, tx_hash, self._tx_index)
            return self._finish_tx(tx_hash, 1)

    def emit_nullified(self, tree_number: int, nullifiers: Sequence[int]) -> str:
        """Record nullifiers without the double-spend check ``submit`` performs."""
        with self._lock:
            self._nullifiers.update((tree_number, n) for n in nullifiers)
            data = encode_nullified_event(tree_number, nullifiers)
            tx_hash = self._new_tx_hash(data)
            self._emit(NULLIFIED_TOPIC, data, tx_hash, self._tx_index)
            return self._finish_tx(tx_hash, 1)

    def emit_raw(self, topic: bytes, data: bytes) -> str:
        """Emit an arbitrary log from the pool address."""
        with self._lock:
            tx_hash = self._new_tx_hash(topic + data)
            self._emit(topic, data, tx_hash, self._tx_index)
            return self._finish_tx(tx_hash, 1)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def submit(self, to: str, data: bytes, value: int = 0) -> str:
        """Execute a pool call; returns the transaction hash.

        A call the contract would revert leaves no logs and gets a receipt
        with status 0. A ``transact`` batch is all or nothing.
        """
        with self._lock:
            if to.lower() != self.contract_address:
                return self._revert(data, "wrong contract")
            selector = bytes(data[:4])
            try:
                if selector == abi.function_selector(SHIELD_FUNCTION):
                    (requests,) = abi.decode_call(SHIELD_FUNCTION, data)
                    preimages = [CommitmentPreimage.from_abi(p) for p, _ in requests]
                    if not preimages or any(p.value == 0 for p in preimages):
                        return self._revert(data, "invalid note value")
                    ciphertexts = [ShieldCiphertext.from_abi(c) for _, c in requests]
                    return self._shield(preimages, ciphertexts)
                if selector == abi.function_selector(TRANSACT_FUNCTION):
                    return self._transact(data)
            except (MalformedLog, ValueError) as e:
                return self._revert(data, f"bad calldata: {e}")
            return self._revert(data, "unknown function")

    def _revert(self, data: bytes, reason: str) -> str:
        log.debug("Transaction reverted", reason=reason)
        tx_hash = self._new_tx_hash(data)
        return self._finish_tx(tx_hash, 0, reason)

    def _check_transaction(self, transaction: tuple, seen: Set[Tuple[int, int]]) -> Union[_CheckedTransaction, str]:
        _, root_raw, nullifiers_raw, commitments_raw, bound, unshield_abi = transaction
        tree_number, _, unshield_type, chain_id, _, _, raw_ciphertexts = bound
        root = int.from_bytes(root_raw, "big")
        nullifiers = [int.from_bytes(n, "big") for n in nullifiers_raw]
        commitments = [int.from_bytes(c, "big") for c in commitments_raw]

        if chain_id != self.chain_id:
            return "wrong chain id"
        if not self.is_known_root(tree_number, root):
            return "invalid merkle root"
        for nullifier in nullifiers:
            key = (tree_number, nullifier)
            if key in self._nullifiers or key in seen:
                return "note already spent"
            seen.add(key)

        inserted = commitments
        unshield: Optional[CommitmentPreimage] = None
        if unshield_type != UNSHIELD_NONE:
            unshield = CommitmentPreimage.from_abi(unshield_abi)
            if not commitments or unshield.commitment != commitments[-1]:
                return "invalid unshield preimage"
            inserted = commitments[:-1]
        if len(raw_ciphertexts) != len(inserted):
            return "ciphertext count mismatch"
        return _CheckedTransaction(
            tree_number, nullifiers, inserted, [Ciphertext.from_abi(c) for c in raw_ciphertexts], unshield
        )

    def _transact(self, data: bytes) -> str:
        (transactions,) = abi.decode_call(TRANSACT_FUNCTION, data)
        if not transactions:
            return self._revert(data, "empty transaction batch")
        seen: Set[Tuple[int, int]] = set()
        checked: List[_CheckedTransaction] = []
        for transaction in transactions:
            result = self._check_transaction(transaction, seen)
            if isinstance(result, str):
                return self._revert(data, result)
            checked.append(result)

        tx_hash = self._new_tx_hash(data)
        tx_index = self._tx_index
        for tx in checked:
            self._nullifiers.update((tx.tree_number, n) for n in tx.nullifiers)
            self._emit(NULLIFIED_TOPIC, encode_nullified_event(tx.tree_number, tx.nullifiers), tx_hash, tx_index)
            new_tree, start = self._append(tx.inserted)
            self._emit(
                TRANSACT_TOPIC, encode_transact_event(new_tree, start, tx.inserted, tx.ciphertexts), tx_hash, tx_index
            )
            if tx.unshield is not None:
                receiver = "0x" + to_bytes32(tx.unshield.note_public_key)[-20:].hex()
                base, fee = split_fee(tx.unshield.value, self.unshield_fee_bps)
                self._emit(
                    UNSHIELD_TOPIC, encode_unshield_event(receiver, tx.unshield.token, base, fee), tx_hash, tx_index
                )
        return self._finish_tx(tx_hash, 1)
