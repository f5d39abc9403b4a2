"""
SHIELDCORE Account / Balance Engine

One credential's private view of the pool: the notes it has discovered,
which of them are spent, and which are held by an in-progress build.

Ownership and mutation
──────────────────────
- The indexer is the only writer of discovered notes and spent flags. It
  scans a batch with ``scan`` (pure, no mutation), and once the whole batch
  validated it commits with ``apply_batch`` under the account lock.
- The builder is the only writer of pending marks (``reserve``/``release``).
- Balances and coin selection read under the same lock, so they see state
  either before or after a batch, never in between.

Coin selection
──────────────
1. Fewest notes that cover the amount.
2. Among those, least change.
3. Remaining ties: oldest notes first (ascending global index).

Candidates are unspent, non-pending, non-zero notes of the token, grouped by
tree because one proof spends from one tree. The note count is then rounded
up to the smallest supported circuit input arity; unused slots are padding.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from itertools import combinations
from math import comb
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from shieldcore.errors import AccountHalted, BuildError, SnapshotError
from shieldcore.field import from_hex, to_hex32
from shieldcore.keys import Credential
from shieldcore.merkle import TREE_DEPTH
from shieldcore.note import (
    Ciphertext,
    CommitmentPreimage,
    DecryptFailure,
    Note,
    NoteCodec,
    ShieldCiphertext,
    TokenData,
    nullifier_of,
)
from shieldcore.observability import ShieldLayer, ShieldLogger
from shieldcore.prover import INPUT_ARITIES, smallest_input_arity

log = ShieldLogger("account", ShieldLayer.ACCOUNT)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class OwnedNote:
    """A discovered note and where it sits in the commitment trees."""
    note: Note
    commitment: int
    global_index: int
    tree_number: int
    leaf_index: int
    nullifier: int
    spent: bool = False
    pending: bool = False

    @property
    def value(self) -> int:
        return self.note.value

    @property
    def token(self) -> TokenData:
        return self.note.token

    @property
    def spendable(self) -> bool:
        return not self.spent and not self.pending and self.note.value > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "note": self.note.to_dict(),
            "commitment": to_hex32(self.commitment),
            "global_index": self.global_index,
            "nullifier": to_hex32(self.nullifier),
            "spent": self.spent,
        }


@dataclass(frozen=True)
class NoteSelection:
    """Notes chosen to fund one private operation."""
    token: TokenData
    notes: Tuple[OwnedNote, ...]
    arity: int
    amount: int

    @property
    def total(self) -> int:
        return sum(n.value for n in self.notes)

    @property
    def change(self) -> int:
        return self.total - self.amount

    @property
    def padding(self) -> int:
        """Input slots filled with zero-value dummies."""
        return self.arity - len(self.notes)

    @property
    def tree_number(self) -> int:
        return self.notes[0].tree_number

    @property
    def commitments(self) -> Tuple[int, ...]:
        return tuple(n.commitment for n in self.notes)


@dataclass(frozen=True)
class InsufficientFunds:
    """Coin selection could not cover the amount. A result, not an error."""
    token: TokenData
    requested: int
    available: int
    reason: str = "insufficient-balance"


@dataclass(frozen=True)
class Reservation:
    id: str
    commitments: Tuple[int, ...]


Envelope = Union[bytes, Ciphertext, ShieldCiphertext]

# Spent-note key: a nullifier is only unique within its tree.
NullifierKey = Tuple[int, int]


@dataclass
class ScanEntry:
    commitment: int
    ciphertext: Envelope
    global_index: int
    preimage: Optional[CommitmentPreimage] = None


# =============================================================================
# ACCOUNT
# =============================================================================

class Account:
    """
    Balance engine for a single credential.

    Thread-safe: every read and write holds the account's RLock.
    """

    def __init__(
        self,
        credential: Credential,
        codec: Optional[NoteCodec] = None,
        depth: int = TREE_DEPTH,
        search_limit: Optional[int] = None,
    ):
        if search_limit is None:
            from shieldcore.config import get_config
            search_limit = get_config().builder.selection_search_limit.get()
        self.credential = credential
        self.codec = codec or NoteCodec()
        self.capacity = 1 << depth
        self.search_limit = search_limit
        self._lock = threading.RLock()
        self._notes: Dict[int, OwnedNote] = {}
        self._by_nullifier: Dict[NullifierKey, int] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._halted: Optional[str] = None

    @property
    def master_public_key(self) -> int:
        return self.credential.master_public_key

    # -------------------------------------------------------------------------
    # Halt
    # -------------------------------------------------------------------------

    @property
    def halted(self) -> Optional[str]:
        return self._halted

    def halt(self, reason: str) -> None:
        with self._lock:
            if self._halted is None:
                log.critical("Account halted", error_code=AccountHalted.error_code, reason=reason)
            self._halted = reason

    def resume(self) -> None:
        with self._lock:
            self._halted = None

    def ensure_operational(self) -> None:
        if self._halted is not None:
            raise AccountHalted(f"Account halted: {self._halted}", reason=self._halted)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def _decrypt(
        self,
        commitment: int,
        ciphertext: Envelope,
        global_index: int,
        preimage: Optional[CommitmentPreimage] = None,
    ) -> Union[OwnedNote, DecryptFailure]:
        if isinstance(ciphertext, ShieldCiphertext):
            if preimage is None:
                return DecryptFailure("malformed", "shield ciphertext without preimage")
            result = self.codec.try_decrypt_shield(
                preimage, ciphertext, self.credential.viewing_key, self.master_public_key
            )
        else:
            result = self.codec.try_decrypt(
                ciphertext, self.credential.viewing_key, expected_master_public_key=self.master_public_key
            )
        if isinstance(result, DecryptFailure):
            return result
        if result.commitment != commitment:
            return DecryptFailure("commitment-mismatch", f"global index {global_index}")
        tree_number, leaf_index = divmod(global_index, self.capacity)
        return OwnedNote(
            note=result,
            commitment=commitment,
            global_index=global_index,
            tree_number=tree_number,
            leaf_index=leaf_index,
            nullifier=nullifier_of(leaf_index, self.credential.nullifying_key),
        )

    def _store(self, owned: OwnedNote) -> OwnedNote:
        existing = self._notes.get(owned.commitment)
        if existing is not None:
            return existing
        self._notes[owned.commitment] = owned
        self._by_nullifier[(owned.tree_number, owned.nullifier)] = owned.commitment
        return owned

    def ingest(
        self,
        commitment: int,
        ciphertext: Envelope,
        global_index: int,
        preimage: Optional[CommitmentPreimage] = None,
    ) -> Union[OwnedNote, DecryptFailure]:
        """Trial-decrypt one output; store it if it is ours. Re-ingesting is a no-op."""
        result = self._decrypt(commitment, ciphertext, global_index, preimage)
        if isinstance(result, DecryptFailure):
            return result
        with self._lock:
            return self._store(result)

    def scan(self, entries: Sequence[ScanEntry]) -> List[OwnedNote]:
        """Decrypt a batch of outputs without touching account state."""
        found: List[OwnedNote] = []
        for entry in entries:
            result = self._decrypt(entry.commitment, entry.ciphertext, entry.global_index, entry.preimage)
            if isinstance(result, OwnedNote):
                found.append(result)
        return found

    def observe_nullifier(self, tree_number: int, nullifier: int) -> bool:
        """Mark the owned note of ``tree_number`` with this nullifier spent.

        Returns True if a note changed state. A nullifier that is not ours is
        silently ignored.
        """
        with self._lock:
            commitment = self._by_nullifier.get((tree_number, nullifier))
            if commitment is None:
                return False
            owned = self._notes[commitment]
            if owned.spent:
                return False
            owned.spent = True
            owned.pending = False
            return True

    def apply_batch(self, notes: Sequence[OwnedNote], nullifiers: Sequence[NullifierKey]) -> int:
        """Commit a scanned batch: new notes first, then ``(tree, nullifier)`` spends.

        Returns notes added.
        """
        with self._lock:
            before = len(self._notes)
            for owned in notes:
                self._store(owned)
            spent = sum(1 for tree_number, n in nullifiers if self.observe_nullifier(tree_number, n))
            added = len(self._notes) - before
        if added or spent:
            log.info("Applied batch", notes_added=added, notes_spent=spent)
        return added

    def reset(self) -> None:
        """Forget all notes, marks and halt state."""
        with self._lock:
            self._notes.clear()
            self._by_nullifier.clear()
            self._reservations.clear()
            self._halted = None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def notes(self, include_spent: bool = False) -> List[OwnedNote]:
        with self._lock:
            owned = [n for n in self._notes.values() if include_spent or not n.spent]
        return sorted(owned, key=lambda n: n.global_index)

    def get_note(self, commitment: int) -> Optional[OwnedNote]:
        with self._lock:
            return self._notes.get(commitment)

    def balance(self, token: TokenData) -> int:
        """Sum of unspent, non-pending note values of ``token``."""
        with self._lock:
            return sum(n.value for n in self._notes.values() if n.token == token and n.spendable)

    def balances(self) -> Dict[TokenData, int]:
        totals: Dict[TokenData, int] = {}
        with self._lock:
            for n in self._notes.values():
                if n.spendable:
                    totals[n.token] = totals.get(n.token, 0) + n.value
        return totals

    # -------------------------------------------------------------------------
    # Coin selection
    # -------------------------------------------------------------------------

    def select_notes_for_spend(self, token: TokenData, amount: int) -> Union[NoteSelection, InsufficientFunds]:
        """Pick the notes that fund ``amount`` of ``token``."""
        if amount <= 0:
            raise ValueError(f"Spend amount must be positive, got {amount}")
        self.ensure_operational()

        with self._lock:
            groups: Dict[int, List[OwnedNote]] = {}
            for owned in sorted(self._notes.values(), key=lambda n: n.global_index):
                if owned.token == token and owned.spendable:
                    groups.setdefault(owned.tree_number, []).append(owned)

        available = sum(n.value for notes in groups.values() for n in notes)
        best: Optional[List[OwnedNote]] = None
        best_key: Optional[Tuple] = None
        for tree_number in sorted(groups):
            choice = self._select_in_tree(groups[tree_number], amount)
            if choice is None:
                continue
            key = (len(choice), sum(n.value for n in choice) - amount, [n.global_index for n in choice])
            if best_key is None or key < best_key:
                best, best_key = choice, key

        if best is None:
            reason = "insufficient-balance" if available < amount else "fragmented"
            return InsufficientFunds(token, amount, available, reason)

        return NoteSelection(token, tuple(best), smallest_input_arity(len(best)), amount)

    def _select_in_tree(self, notes: List[OwnedNote], amount: int) -> Optional[List[OwnedNote]]:
        """Notes are in ascending global index order."""
        max_inputs = INPUT_ARITIES[-1]
        by_value = sorted(notes, key=lambda n: (-n.value, n.global_index))

        # The k largest notes reach the amount first, so k is the minimal count.
        running = 0
        count = None
        for i, owned in enumerate(by_value[:max_inputs], start=1):
            running += owned.value
            if running >= amount:
                count = i
                break
        if count is None:
            return None

        if comb(len(notes), count) > self.search_limit:
            log.debug("Selection search limit exceeded", candidates=len(notes), count=count)
            return sorted(by_value[:count], key=lambda n: n.global_index)

        best: Optional[Tuple[OwnedNote, ...]] = None
        best_total = 0
        for combo in combinations(notes, count):
            total = sum(n.value for n in combo)
            if total >= amount and (best is None or total < best_total):
                best, best_total = combo, total
                if total == amount:
                    break
        return list(best)

    # -------------------------------------------------------------------------
    # Pending marks
    # -------------------------------------------------------------------------

    def reserve(self, selection: NoteSelection) -> Reservation:
        """Mark the selected notes pending so no other build spends them."""
        with self._lock:
            self.ensure_operational()
            for commitment in selection.commitments:
                owned = self._notes.get(commitment)
                if owned is None or not owned.spendable:
                    raise BuildError(
                        f"Note {to_hex32(commitment)} is not available for spending",
                        commitment=to_hex32(commitment),
                    )
            for commitment in selection.commitments:
                self._notes[commitment].pending = True
            reservation = Reservation(uuid.uuid4().hex, selection.commitments)
            self._reservations[reservation.id] = reservation
        log.debug("Reserved notes", reservation=reservation.id, count=len(reservation.commitments))
        return reservation

    def release(self, reservation: Reservation) -> None:
        """Drop the pending marks of a failed or cancelled build."""
        with self._lock:
            if self._reservations.pop(reservation.id, None) is None:
                return
            for commitment in reservation.commitments:
                owned = self._notes.get(commitment)
                if owned is not None and not owned.spent:
                    owned.pending = False
        log.debug("Released notes", reservation=reservation.id)

    def confirm(self, reservation: Reservation) -> None:
        """The operation was accepted; marks stay until the nullifiers are seen."""
        with self._lock:
            self._reservations.pop(reservation.id, None)

    @contextmanager
    def reserved(self, selection: NoteSelection) -> Iterator[Reservation]:
        """Reserve for the duration of a block, releasing if it raises."""
        reservation = self.reserve(selection)
        try:
            yield reservation
        except BaseException:
            self.release(reservation)
            raise

    def active_reservations(self) -> List[Reservation]:
        with self._lock:
            return list(self._reservations.values())

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Persistable state. Pending marks are not persisted."""
        return {
            "master_public_key": to_hex32(self.master_public_key),
            "notes": [n.to_dict() for n in self.notes(include_spent=True)],
        }

    def load_dict(self, data: Dict[str, Any]) -> None:
        if from_hex(data["master_public_key"]) != self.master_public_key:
            raise SnapshotError("Snapshot belongs to a different account")
        restored: List[OwnedNote] = []
        for item in data.get("notes", []):
            global_index = int(item["global_index"])
            tree_number, leaf_index = divmod(global_index, self.capacity)
            restored.append(OwnedNote(
                note=Note.from_dict(item["note"]),
                commitment=from_hex(item["commitment"]),
                global_index=global_index,
                tree_number=tree_number,
                leaf_index=leaf_index,
                nullifier=from_hex(item["nullifier"]),
                spent=bool(item.get("spent", False)),
            ))
        with self._lock:
            self._notes.clear()
            self._by_nullifier.clear()
            self._reservations.clear()
            for owned in restored:
                self._store(owned)

    @classmethod
    def from_dict(cls, credential: Credential, data: Dict[str, Any], **kwargs: Any) -> "Account":
        account = cls(credential, **kwargs)
        account.load_dict(data)
        return account
