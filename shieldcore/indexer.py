"""
SHIELDCORE Indexer / Sync Engine

Pulls pool events from a ChainReader and applies them, in strict emission
order, to the commitment forest, the spent-nullifier set (keyed by tree
number and nullifier, since a nullifier is only unique per tree) and every
registered account.

State machine:

    IDLE ──► FETCHING ──► APPLYING ──► IDLE
                │  ▲          │
                │  └──────────┘   (next window)
                ▼             ▼
              ERROR ◄─────────┘

Guarantees:
- Each window of ``batch_size`` blocks is one atomic transition. The window
  is fetched, decoded and trial-decrypted first; tree insertion, nullifier
  checks and root verification then run under the state lock against a
  forest checkpoint, and any failure rolls the forest back. Nothing of a
  failed window is ever visible.
- Idempotent: the last applied height is a watermark, and a range at or
  below it is a no-op.
- Single flight: one sync at a time. A concurrent caller is rejected with
  ``SyncInProgress`` or, with ``wait=True``, gets the in-flight result.
- Chain reads retry under a RetryPolicy; exhaustion is ``ChainReadError``.
- Malformed logs fail the attempt only. Root mismatch or a repeated
  nullifier is fatal: the engine and its accounts halt until
  ``resync_from_checkpoint``.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from shieldcore.account import Account, NullifierKey, ScanEntry
from shieldcore.chain import (
    ChainEvent,
    ChainReader,
    CommitmentBatch,
    LogEvent,
    NullifierBatch,
    RootVerifier,
    decode_log,
)
from shieldcore.errors import (
    ChainReadError,
    FatalStateDivergence,
    NullifierInconsistency,
    ShieldError,
    SnapshotError,
    SyncInProgress,
)
from shieldcore.field import from_hex, to_hex32
from shieldcore.merkle import MerkleForest, MerklePath
from shieldcore.observability import ShieldLayer, ShieldLogger, correlation_scope
from shieldcore.resilience import RetryExhaustedError, RetryPolicy

log = ShieldLogger("sync", ShieldLayer.INDEXER)

T = TypeVar("T")

SNAPSHOT_KEY = "shieldcore/sync-snapshot"


class SyncState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    ERROR = "error"


VALID_TRANSITIONS: Dict[SyncState, Set[SyncState]] = {
    SyncState.IDLE: {SyncState.FETCHING},
    SyncState.FETCHING: {SyncState.APPLYING, SyncState.IDLE, SyncState.ERROR},
    SyncState.APPLYING: {SyncState.FETCHING, SyncState.IDLE, SyncState.ERROR},
    SyncState.ERROR: {SyncState.FETCHING, SyncState.IDLE},
}


@dataclass(frozen=True)
class SyncReport:
    new_height: int
    commitments_added: int
    nullifiers_seen: int
    windows: int = 0


class SyncEngine:
    """
    Single-writer owner of the commitment forest and spent-nullifier set.

    Example:
        engine = SyncEngine(reader, contract_address, root_verifier=reader)
        engine.register_account(account)
        report = engine.sync()
    """

    def __init__(
        self,
        reader: ChainReader,
        contract_address: Optional[str] = None,
        root_verifier: Optional[RootVerifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: Optional[int] = None,
        start_block: Optional[int] = None,
        depth: Optional[int] = None,
    ):
        from shieldcore.config import get_config
        config = get_config()

        self.reader = reader
        self.contract_address = (contract_address or config.builder.contract_address.get()).lower()
        self.root_verifier = root_verifier
        self.verify_roots = config.sync.verify_roots.get()
        self.batch_size = batch_size or config.sync.batch_size.get()
        self.start_block = config.sync.start_block.get() if start_block is None else start_block
        self.depth = depth or config.merkle.depth.get()
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self._retry = retry_policy or RetryPolicy.for_chain_reads(on_retry=self._log_retry)

        self.forest = MerkleForest(self.depth)
        self._height = self.start_block - 1
        self._nullifiers: Set[NullifierKey] = set()
        self._accounts: Dict[int, Account] = {}
        self._state = SyncState.IDLE
        self._halted: Optional[str] = None

        self._state_lock = threading.RLock()
        self._flight_lock = threading.Lock()
        self._in_flight: Optional[Future] = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def height(self) -> int:
        """Last fully applied block."""
        return self._height

    @property
    def halted(self) -> Optional[str]:
        return self._halted

    @property
    def accounts(self) -> List[Account]:
        with self._state_lock:
            return list(self._accounts.values())

    def is_spent(self, tree_number: int, nullifier: int) -> bool:
        with self._state_lock:
            return (tree_number, nullifier) in self._nullifiers

    def nullifier_count(self) -> int:
        with self._state_lock:
            return len(self._nullifiers)

    def tree_size(self, tree_number: int) -> int:
        """Occupied leaves of ``tree_number``."""
        with self._state_lock:
            return len(self.forest.tree(tree_number))

    def root(self, tree_number: Optional[int] = None) -> int:
        with self._state_lock:
            return self.forest.root(tree_number)

    def merkle_path(self, global_index: int) -> MerklePath:
        with self._state_lock:
            return self.forest.path_to(global_index)

    def inclusion_proofs(self, tree_number: int, global_indices: List[int]) -> Tuple[int, List[MerklePath]]:
        """Root of ``tree_number`` and paths for the given leaves, all taken at that root."""
        with self._state_lock:
            paths = [self.forest.path_to(g) for g in global_indices]
            return self.forest.root(tree_number), paths

    def can_transition_to(self, target: SyncState) -> bool:
        return target in VALID_TRANSITIONS.get(self._state, set())

    def _transition(self, target: SyncState) -> None:
        if not self.can_transition_to(target):
            raise RuntimeError(f"Invalid sync transition {self._state.value} -> {target.value}")
        self._state = target

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def register_account(self, account: Account) -> None:
        """Subscribe an account to future batches.

        An account registered while a window is being applied is scanned
        against that window before it commits. One registered after blocks
        were applied only sees later outputs; ``resync_from_checkpoint()``
        rediscovers the earlier ones.
        """
        with self._state_lock:
            self._accounts[account.master_public_key] = account
            if self._halted is not None:
                account.halt(self._halted)
            if self._height >= self.start_block:
                log.warning(
                    "Account registered after sync started",
                    account=to_hex32(account.master_public_key),
                    height=self._height,
                )

    def unregister_account(self, account: Account) -> None:
        with self._state_lock:
            self._accounts.pop(account.master_public_key, None)

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def sync(
        self,
        from_height: Optional[int] = None,
        to_height: Optional[int] = None,
        wait: bool = False,
    ) -> SyncReport:
        """Apply every block from the watermark (or ``from_height``) to ``to_height`` (default: head)."""
        with self._flight_lock:
            if self._in_flight is not None:
                in_flight = self._in_flight
                owner = False
            else:
                in_flight = self._in_flight = Future()
                owner = True

        if not owner:
            if not wait:
                raise SyncInProgress("A sync is already running")
            return in_flight.result()

        try:
            report = self._run(from_height, to_height)
        except BaseException as e:
            in_flight.set_exception(e)
            raise
        else:
            in_flight.set_result(report)
            return report
        finally:
            with self._flight_lock:
                self._in_flight = None

    def _run(self, from_height: Optional[int], to_height: Optional[int]) -> SyncReport:
        if self._halted is not None:
            raise FatalStateDivergence(f"Sync engine halted: {self._halted}", reason=self._halted)
        if from_height is not None and from_height > self._height + 1:
            raise ValueError(
                f"from_height {from_height} would skip unapplied blocks after {self._height}"
            )

        with correlation_scope("sync"):
            started = time.monotonic()
            self._transition(SyncState.FETCHING)
            commitments_added = 0
            nullifiers_seen = 0
            windows = 0
            try:
                head = self._read(self.reader.get_block_number)
                start = self._height + 1
                end = head if to_height is None else min(to_height, head)

                for window_start in range(start, end + 1, self.batch_size):
                    window_end = min(window_start + self.batch_size - 1, end)
                    if self._state != SyncState.FETCHING:
                        self._transition(SyncState.FETCHING)
                    logs = self._read(
                        lambda: self.reader.get_logs(self.contract_address, window_start, window_end)
                    )
                    events = self._decode(logs)
                    self._transition(SyncState.APPLYING)
                    added, seen = self._apply_window(events, window_end)
                    commitments_added += added
                    nullifiers_seen += seen
                    windows += 1

                self._transition(SyncState.IDLE)
            except Exception as e:
                self._fail(e)
                raise

            log.operation(
                "sync",
                (time.monotonic() - started) * 1000,
                height=self._height,
                commitments=commitments_added,
                nullifiers=nullifiers_seen,
                windows=windows,
            )
            return SyncReport(self._height, commitments_added, nullifiers_seen, windows)

    def _fail(self, error: Exception) -> None:
        self._state = SyncState.ERROR
        code = getattr(error, "error_code", type(error).__name__)
        if isinstance(error, ShieldError) and error.fatal:
            log.critical("Sync failed with state divergence", error_code=code, error=str(error))
            self._halt(str(error))
        else:
            log.error("Sync attempt failed", error_code=code, error=str(error), height=self._height)

    def _halt(self, reason: str) -> None:
        with self._state_lock:
            self._halted = reason
            for account in self._accounts.values():
                account.halt(reason)

    def _log_retry(self, attempt: int, error: Exception, delay: float) -> None:
        log.warning("Chain read failed, retrying", attempt=attempt, error=str(error), delay_seconds=delay)

    def _read(self, func: Callable[[], T]) -> T:
        try:
            return self._retry.execute(func)
        except RetryExhaustedError as e:
            raise ChainReadError(
                f"Chain read failed after {e.attempts} attempts: {e.last_exception}",
                attempts=e.attempts,
            ) from e.last_exception

    def _decode(self, logs: List[LogEvent]) -> List[ChainEvent]:
        events: List[ChainEvent] = []
        for entry in sorted(logs, key=lambda e: e.order_key):
            if entry.address.lower() != self.contract_address:
                continue
            event = decode_log(entry)
            if event is None:
                log.debug("Skipping log", block=entry.block_number, log_index=entry.log_index)
                continue
            events.append(event)
        return events

    def _apply_window(self, events: List[ChainEvent], window_end: int) -> Tuple[int, int]:
        capacity = self.forest.capacity
        entries: List[ScanEntry] = []
        for event in events:
            if isinstance(event, CommitmentBatch):
                preimages = event.preimages or (None,) * len(event.commitments)
                for i, (commitment, ciphertext, preimage) in enumerate(
                    zip(event.commitments, event.ciphertexts, preimages)
                ):
                    global_index = event.tree_number * capacity + event.start_position + i
                    entries.append(ScanEntry(commitment, ciphertext, global_index, preimage))

        with self._state_lock:
            accounts = list(self._accounts.values())
        # Trial decryption is the slow part and touches no shared state.
        staged = [(account, account.scan(entries)) for account in accounts]

        with self._state_lock:
            # Accounts registered while the window was being scanned.
            scanned = {id(account) for account in accounts}
            for account in self._accounts.values():
                if id(account) not in scanned:
                    staged.append((account, account.scan(entries)))

            checkpoint = self.forest.checkpoint()
            new_nullifiers: List[NullifierKey] = []
            batch_nullifiers: Set[NullifierKey] = set()
            touched: Set[int] = set()
            added = 0
            try:
                for event in events:
                    if isinstance(event, CommitmentBatch):
                        self.forest.insert_at(event.tree_number, event.start_position, event.commitments)
                        if event.commitments:
                            touched.add(event.tree_number)
                        added += len(event.commitments)
                    elif isinstance(event, NullifierBatch):
                        for nullifier in event.nullifiers:
                            key = (event.tree_number, nullifier)
                            if key in self._nullifiers or key in batch_nullifiers:
                                raise NullifierInconsistency(
                                    f"Nullifier {to_hex32(nullifier)} spent twice in tree {event.tree_number}",
                                    nullifier=to_hex32(nullifier),
                                    tree_number=event.tree_number,
                                    block=event.block_number,
                                )
                            batch_nullifiers.add(key)
                            new_nullifiers.append(key)
                self._verify_roots(touched)
            except Exception:
                self.forest.rollback(checkpoint)
                raise

            self._nullifiers.update(new_nullifiers)
            for account, notes in staged:
                if self._accounts.get(account.master_public_key) is account:
                    account.apply_batch(notes, new_nullifiers)
            self._height = window_end

        if added or new_nullifiers:
            log.info("Applied window", height=window_end, commitments=added, nullifiers=len(new_nullifiers))
        return added, len(new_nullifiers)

    def _verify_roots(self, touched: Set[int]) -> None:
        if not self.verify_roots or self.root_verifier is None:
            return
        for tree_number in sorted(touched):
            root = self.forest.root(tree_number)
            if not self.root_verifier.is_known_root(tree_number, root):
                raise FatalStateDivergence(
                    f"Local root {to_hex32(root)} of tree {tree_number} is unknown on chain",
                    tree_number=tree_number,
                    root=to_hex32(root),
                )

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Current state as a snapshot document."""
        from shieldcore.store import SNAPSHOT_VERSION

        with self._state_lock:
            return {
                "version": SNAPSHOT_VERSION,
                "height": self._height,
                "forest": self.forest.to_dict(),
                "nullifiers": [
                    {"tree_number": tree_number, "nullifier": to_hex32(n)}
                    for tree_number, n in sorted(self._nullifiers)
                ],
                "accounts": [
                    self._accounts[mpk].to_dict() for mpk in sorted(self._accounts)
                ],
            }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        """Replace state with a snapshot taken by ``snapshot()``."""
        try:
            forest = MerkleForest.from_dict(snapshot["forest"])
            height = int(snapshot["height"])
            nullifiers = {
                (int(item["tree_number"]), from_hex(item["nullifier"]))
                for item in snapshot.get("nullifiers", [])
            }
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotError(f"Invalid sync snapshot: {e}") from e
        if forest.depth != self.depth:
            raise SnapshotError(f"Snapshot depth {forest.depth} does not match engine depth {self.depth}")

        account_data = {from_hex(a["master_public_key"]): a for a in snapshot.get("accounts", [])}
        with self._state_lock:
            self.forest = forest
            self._height = height
            self._nullifiers = nullifiers
            for mpk, account in self._accounts.items():
                if mpk in account_data:
                    account.load_dict(account_data[mpk])
                else:
                    log.warning("Account missing from snapshot", account=to_hex32(mpk))
                    account.reset()

    def _reset(self) -> None:
        with self._state_lock:
            self.forest = MerkleForest(self.depth)
            self._height = self.start_block - 1
            self._nullifiers = set()
            for account in self._accounts.values():
                account.reset()

    def resync_from_checkpoint(self, snapshot: Optional[Dict[str, Any]] = None) -> SyncReport:
        """Operator-level recovery: clear the halt, restore state and sync to head.

        Without a snapshot, state is rebuilt from ``start_block``.
        """
        with self._flight_lock:
            if self._in_flight is not None:
                raise SyncInProgress("Cannot resync while a sync is running")
            with self._state_lock:
                if snapshot is None:
                    self._reset()
                else:
                    self.restore(snapshot)
                self._halted = None
                for account in self._accounts.values():
                    account.resume()
                self._state = SyncState.IDLE
        log.warning("Resyncing from checkpoint", height=self._height)
        return self.sync()

    def save(self, store: Any, key: str = SNAPSHOT_KEY) -> bytes:
        """Persist the snapshot through a KeyValueStore; returns the stored bytes."""
        from shieldcore.store import SnapshotCodec

        blob = SnapshotCodec().encode(self.snapshot())
        store.set(key, blob)
        return blob

    def load(self, store: Any, key: str = SNAPSHOT_KEY) -> bool:
        """Restore from a KeyValueStore. Returns False if nothing was stored."""
        from shieldcore.store import SnapshotCodec

        blob = store.get(key)
        if blob is None:
            return False
        self.restore(SnapshotCodec().decode(blob))
        return True
