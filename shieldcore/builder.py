"""
SHIELDCORE Transaction Builder

Turns operation requests into broadcastable ``TxData{to, data, value}``.

Shield:
    Public operation, no proof. Each output becomes a ``ShieldRequest``
    struct: the note's commitment preimage plus a shield envelope that
    only the recipient's viewing key opens.

Transfer / Unshield:
    1. Select notes (Account) and reserve them (pending marks).
    2. Build: inclusion paths and nullifiers for the inputs, output notes
       (transfers, change to self, zero-value padding, unshield last),
       zero-value dummy inputs up to the circuit's input arity, bound
       parameters, public inputs and the signed witness.
    3. Prove outside every lock, then re-check the tree root. If the tree
       moved while proving, the witness is stale: ``StaleProof``, rebuild.
    4. Encode a ``Transaction`` struct and wrap it in ``transact(...)``
       calldata. ``encode_batch`` puts several into one call.

Dummy inputs sit on occupied leaves of the spending tree that belong to
other accounts, so their index is in range and their nullifier can never
collide with one of the account's own notes.

    Reservations are released on any failure or cancellation and kept on
    success until the nullifiers show up on chain (see ``reconcile``).

Public input order (what the verifier circuit expects):

    [merkleRoot, boundParamsHash, nullifiers..., commitmentsOut...]

    sighash = Poseidon(public inputs), signed with the spending key.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from shieldcore import abi
from shieldcore.account import Account, InsufficientFunds, NoteSelection, Reservation
from shieldcore.chain import (
    SHIELD_FUNCTION,
    TRANSACT_FUNCTION,
    UNSHIELD_NONE,
    UNSHIELD_NORMAL,
    ChainReader,
    Receipt,
    hash_bound_params,
)
from shieldcore.errors import (
    BuildCancelled,
    BuildError,
    ProverFailure,
    ShieldError,
    StaleProof,
    UnsupportedArity,
)
from shieldcore.field import poseidon, to_bytes32
from shieldcore.indexer import SyncEngine
from shieldcore.keys import ShieldedAddress
from shieldcore.merkle import zero_values
from shieldcore.note import (
    EMPTY_PREIMAGE,
    CommitmentPreimage,
    Note,
    NoteCodec,
    TokenData,
    UnshieldNote,
    nullifier_of,
)
from shieldcore.observability import ShieldLayer, ShieldLogger, correlation_scope, timed_operation
from shieldcore.prover import (
    OUTPUT_ARITIES,
    CircuitShape,
    Prover,
    Witness,
    require_supported,
    smallest_output_arity,
)

log = ShieldLogger("builder", ShieldLayer.BUILDER)

ZERO_ADDRESS = "0x" + "00" * 20

_random = secrets.SystemRandom()


# =============================================================================
# REQUESTS AND RESULTS
# =============================================================================

class OperationKind(Enum):
    TRANSFER = "transfer"
    UNSHIELD = "unshield"


@dataclass(frozen=True)
class TxData:
    """Payload handed to the broadcaster."""
    to: str
    data: bytes
    value: int = 0


@dataclass(frozen=True)
class ShieldRequest:
    """A public deposit; the shield envelope carries no memo."""
    recipient: ShieldedAddress
    token: TokenData
    amount: int


@dataclass(frozen=True)
class TransferOutput:
    recipient: ShieldedAddress
    amount: int
    memo: bytes = b""


@dataclass(frozen=True)
class UnshieldOutput:
    receiver: str
    amount: int


@dataclass(frozen=True)
class AdaptParams:
    """Adapt contract bound into the proof (zero address when unused)."""
    contract: str = ZERO_ADDRESS
    params: bytes = b"\x00" * 32


@dataclass
class PreparedOperation:
    """A fully built private operation waiting for its proof."""
    kind: OperationKind
    shape: CircuitShape
    selection: NoteSelection
    tree_number: int
    merkle_root: int
    nullifiers: List[int]
    output_notes: List[Union[Note, UnshieldNote]]
    commitments: List[int]
    bound_params: tuple
    bound_params_hash: int
    unshield_preimage: CommitmentPreimage
    witness: Witness

    @property
    def public_inputs(self) -> List[int]:
        return list(self.witness.public_inputs)


@dataclass
class PreparedTransaction:
    """Proved and encoded operation plus the reservation holding its inputs.

    ``transaction`` is the ABI ``Transaction`` tuple; ``tx`` is the
    single-transaction ``transact`` call built from it.
    """
    tx: TxData
    reservation: Reservation
    operation: PreparedOperation
    transaction: tuple

    @property
    def nullifiers(self) -> List[int]:
        return self.operation.nullifiers


def encode_batch(prepared: Sequence[PreparedTransaction]) -> TxData:
    """One ``transact`` call carrying several prepared transactions.

    The pool applies the batch all or nothing.
    """
    if not prepared:
        raise BuildError("A transact batch needs at least one transaction")
    targets = {p.tx.to for p in prepared}
    if len(targets) != 1:
        raise BuildError("Batched transactions target different contracts")
    data = abi.encode_call(TRANSACT_FUNCTION, [[p.transaction for p in prepared]])
    return TxData(targets.pop(), data, 0)


class CancellationToken:
    """Caller-side cancellation for an in-progress build."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BuildCancelled("Build cancelled by caller")


# =============================================================================
# BUILDER
# =============================================================================

class TransactionBuilder:
    """Builds shield, transfer and unshield operations for one account."""

    def __init__(
        self,
        account: Account,
        engine: SyncEngine,
        prover: Prover,
        codec: Optional[NoteCodec] = None,
        contract_address: Optional[str] = None,
        chain_id: Optional[int] = None,
        min_gas_price: Optional[int] = None,
        max_stale_retries: Optional[int] = None,
    ):
        from shieldcore.config import get_config
        config = get_config().builder

        self.account = account
        self.engine = engine
        self.prover = prover
        self.codec = codec or account.codec
        self.contract_address = (contract_address or engine.contract_address).lower()
        self.chain_id = config.chain_id.get() if chain_id is None else chain_id
        self.min_gas_price = config.min_gas_price.get() if min_gas_price is None else min_gas_price
        self.max_stale_retries = (
            config.max_stale_retries.get() if max_stale_retries is None else max_stale_retries
        )

    # -------------------------------------------------------------------------
    # Shield
    # -------------------------------------------------------------------------

    def build_shield(self, outputs: Sequence[ShieldRequest]) -> TxData:
        if not outputs:
            raise BuildError("Shield needs at least one output")
        requests = []
        native_value = 0
        for request in outputs:
            if request.amount <= 0:
                raise BuildError(f"Shield amount must be positive, got {request.amount}")
            note = Note.create(request.recipient.master_public_key, request.token, request.amount)
            envelope = self.codec.encrypt_shield(note, request.recipient.viewing_public_key)
            requests.append((CommitmentPreimage.of(note).to_abi(), envelope.to_abi()))
            if request.token.is_native:
                native_value += request.amount
        data = abi.encode_call(SHIELD_FUNCTION, [requests])
        log.info("Built shield", outputs=len(outputs), value=native_value)
        return TxData(self.contract_address, data, native_value)

    # -------------------------------------------------------------------------
    # Private operations
    # -------------------------------------------------------------------------

    def build_private_operation(
        self,
        kind: OperationKind,
        selection: NoteSelection,
        outputs: Sequence[Union[TransferOutput, UnshieldOutput]],
        fee: Optional[TransferOutput] = None,
        adapt: Optional[AdaptParams] = None,
    ) -> Union[PreparedOperation, InsufficientFunds]:
        """Build witness and public inputs for a transfer or unshield."""
        self.account.ensure_operational()
        transfers, unshield = self._split_outputs(kind, outputs)
        if fee is not None:
            if fee.amount <= 0:
                raise BuildError(f"Fee must be positive, got {fee.amount}")
            transfers.insert(0, fee)

        spend = sum(t.amount for t in transfers) + (unshield.amount if unshield else 0)
        if selection.total < spend:
            return InsufficientFunds(selection.token, spend, selection.total, "selection-too-small")
        if len({n.tree_number for n in selection.notes}) != 1:
            raise BuildError("All inputs of one operation must come from the same tree")
        if not selection.notes or selection.arity < len(selection.notes):
            raise BuildError(f"Selection arity {selection.arity} does not fit {len(selection.notes)} notes")

        token = selection.token
        credential = self.account.credential
        own_mpk = credential.master_public_key
        own_viewing = credential.viewing_key.public_bytes

        # Outputs: transfers, change, padding, unshield last.
        notes_out: List[Note] = [Note.create(t.recipient.master_public_key, token, t.amount, t.memo) for t in transfers]
        recipients: List[bytes] = [t.recipient.viewing_public_key for t in transfers]
        change = selection.total - spend
        if change > 0:
            notes_out.append(Note.create(own_mpk, token, change))
            recipients.append(own_viewing)

        real_outputs = len(notes_out) + (1 if unshield else 0)
        output_arity = smallest_output_arity(real_outputs)
        if output_arity is None:
            raise BuildError(
                f"{real_outputs} outputs exceed the largest circuit ({OUTPUT_ARITIES[-1]} outputs)"
            )
        while len(notes_out) + (1 if unshield else 0) < output_arity:
            notes_out.append(Note.create(own_mpk, token, 0))
            recipients.append(own_viewing)
        try:
            shape = require_supported(selection.arity, output_arity)
        except UnsupportedArity as e:
            self.account.halt(str(e))
            raise

        all_outputs: List[Union[Note, UnshieldNote]] = list(notes_out)
        unshield_note: Optional[UnshieldNote] = None
        if unshield is not None:
            unshield_note = UnshieldNote(unshield.receiver, token, unshield.amount)
            all_outputs.append(unshield_note)
        commitments = [o.commitment for o in all_outputs]
        ciphertexts = [self.codec.encrypt(n, r).to_abi() for n, r in zip(notes_out, recipients)]

        # Inputs: real notes at one root, then zero-value dummies.
        tree_number = selection.tree_number
        root, paths = self.engine.inclusion_proofs(tree_number, [n.global_index for n in selection.notes])
        nullifying_key = credential.nullifying_key
        nullifiers: List[int] = []
        random_in: List[int] = []
        value_in: List[int] = []
        path_elements: List[List[int]] = []
        leaf_indices: List[int] = []
        for owned, path in zip(selection.notes, paths):
            if path.leaf != owned.commitment or not path.verify(root):
                raise StaleProof(tree_number, path.root, root)
            if self.engine.is_spent(tree_number, owned.nullifier):
                raise BuildError("Selected note is already spent on chain", global_index=owned.global_index)
            nullifiers.append(nullifier_of(path.leaf_index, nullifying_key))
            random_in.append(int.from_bytes(owned.note.random, "big"))
            value_in.append(owned.value)
            path_elements.append(list(path.elements))
            leaf_indices.append(path.leaf_index)

        dummy_path = list(zero_values(self.engine.depth)[:self.engine.depth])
        for leaf_index in self._dummy_leaf_indices(tree_number, selection.padding, nullifying_key):
            dummy = Note.create(own_mpk, token, 0)
            nullifiers.append(nullifier_of(leaf_index, nullifying_key))
            random_in.append(int.from_bytes(dummy.random, "big"))
            value_in.append(0)
            path_elements.append(dummy_path)
            leaf_indices.append(leaf_index)

        adapt = adapt or AdaptParams()
        bound_params = (
            tree_number,
            self.min_gas_price,
            UNSHIELD_NORMAL if unshield else UNSHIELD_NONE,
            self.chain_id,
            adapt.contract,
            adapt.params,
            ciphertexts,
        )
        bound_params_hash = hash_bound_params(bound_params)

        public_inputs = [root, bound_params_hash, *nullifiers, *commitments]
        sighash = poseidon(public_inputs)
        signals: Dict[str, Any] = {
            "merkleRoot": root,
            "boundParamsHash": bound_params_hash,
            "nullifiers": nullifiers,
            "commitmentsOut": commitments,
            "token": token.token_hash,
            "publicKey": list(credential.spending_key.public_key_fields),
            "signature": list(credential.spending_key.sign(sighash).to_fields()),
            "randomIn": random_in,
            "valueIn": value_in,
            "pathElements": path_elements,
            "leavesIndices": leaf_indices,
            "nullifyingKey": nullifying_key,
            "npkOut": [o.note_public_key for o in all_outputs],
            "valueOut": [o.value for o in all_outputs],
        }

        log.debug("Built private operation", kind=kind.value, circuit=shape.circuit_id, tree=tree_number)
        return PreparedOperation(
            kind=kind,
            shape=shape,
            selection=selection,
            tree_number=tree_number,
            merkle_root=root,
            nullifiers=nullifiers,
            output_notes=all_outputs,
            commitments=commitments,
            bound_params=bound_params,
            bound_params_hash=bound_params_hash,
            unshield_preimage=unshield_note.preimage() if unshield_note else EMPTY_PREIMAGE,
            witness=Witness(public_inputs, signals),
        )

    def _dummy_leaf_indices(self, tree_number: int, count: int, nullifying_key: int) -> List[int]:
        """Random occupied leaves of other accounts whose nullifier is unused."""
        if count == 0:
            return []
        own = {
            n.leaf_index for n in self.account.notes(include_spent=True)
            if n.tree_number == tree_number
        }
        candidates = [i for i in range(self.engine.tree_size(tree_number)) if i not in own]
        _random.shuffle(candidates)
        chosen: List[int] = []
        for leaf_index in candidates:
            if not self.engine.is_spent(tree_number, nullifier_of(leaf_index, nullifying_key)):
                chosen.append(leaf_index)
                if len(chosen) == count:
                    return chosen
        raise BuildError(
            f"Tree {tree_number} has {len(chosen)} usable foreign leaves, {count} dummy inputs needed",
            tree_number=tree_number,
        )

    def _split_outputs(
        self,
        kind: OperationKind,
        outputs: Sequence[Union[TransferOutput, UnshieldOutput]],
    ) -> Tuple[List[TransferOutput], Optional[UnshieldOutput]]:
        transfers = [o for o in outputs if isinstance(o, TransferOutput)]
        unshields = [o for o in outputs if isinstance(o, UnshieldOutput)]
        if len(transfers) + len(unshields) != len(outputs):
            raise BuildError("Outputs must be TransferOutput or UnshieldOutput")
        for output in outputs:
            if output.amount <= 0:
                raise BuildError(f"Output amount must be positive, got {output.amount}")
        if kind == OperationKind.TRANSFER:
            if unshields:
                raise BuildError("A transfer cannot contain unshield outputs")
            if not transfers:
                raise BuildError("A transfer needs at least one output")
            return transfers, None
        if len(unshields) != 1:
            raise BuildError("An unshield needs exactly one unshield output")
        return transfers, unshields[0]

    @timed_operation(log, "prove_and_encode")
    def prove_and_encode(
        self,
        prepared: PreparedOperation,
        cancel: Optional[CancellationToken] = None,
    ) -> Tuple[TxData, tuple]:
        """Prove, re-check the root, and encode ``transact`` calldata.

        Returns the call and the ``Transaction`` tuple inside it.
        """
        if cancel:
            cancel.raise_if_cancelled()
        try:
            result = self.prover.prove(prepared.shape, prepared.witness)
        except ShieldError:
            raise
        except Exception as e:
            raise ProverFailure(f"Prover failed for {prepared.shape}: {e}", cause=e) from e
        if cancel:
            cancel.raise_if_cancelled()

        if list(result.public_inputs) != prepared.public_inputs:
            raise ProverFailure("Prover returned different public inputs than the witness")

        current_root = self.engine.root(prepared.tree_number)
        if current_root != prepared.merkle_root:
            raise StaleProof(prepared.tree_number, prepared.merkle_root, current_root)

        transaction = (
            result.proof.to_abi(),
            to_bytes32(prepared.merkle_root),
            [to_bytes32(n) for n in prepared.nullifiers],
            [to_bytes32(c) for c in prepared.commitments],
            prepared.bound_params,
            prepared.unshield_preimage.to_abi(),
        )
        data = abi.encode_call(TRANSACT_FUNCTION, [[transaction]])
        return TxData(self.contract_address, data, 0), transaction

    # -------------------------------------------------------------------------
    # Full flows
    # -------------------------------------------------------------------------

    def transfer(
        self,
        token: TokenData,
        outputs: Sequence[TransferOutput],
        fee: Optional[TransferOutput] = None,
        adapt: Optional[AdaptParams] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Union[PreparedTransaction, InsufficientFunds]:
        return self._run(OperationKind.TRANSFER, token, list(outputs), fee, adapt, cancel)

    def unshield(
        self,
        token: TokenData,
        receiver: str,
        amount: int,
        outputs: Sequence[TransferOutput] = (),
        fee: Optional[TransferOutput] = None,
        adapt: Optional[AdaptParams] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Union[PreparedTransaction, InsufficientFunds]:
        all_outputs = [*outputs, UnshieldOutput(receiver, amount)]
        return self._run(OperationKind.UNSHIELD, token, all_outputs, fee, adapt, cancel)

    def _run(
        self,
        kind: OperationKind,
        token: TokenData,
        outputs: List[Union[TransferOutput, UnshieldOutput]],
        fee: Optional[TransferOutput],
        adapt: Optional[AdaptParams],
        cancel: Optional[CancellationToken],
    ) -> Union[PreparedTransaction, InsufficientFunds]:
        self._split_outputs(kind, outputs)
        amount = sum(o.amount for o in outputs) + (fee.amount if fee else 0)
        stale: Optional[StaleProof] = None

        with correlation_scope(kind.value):
            for attempt in range(self.max_stale_retries + 1):
                if cancel:
                    cancel.raise_if_cancelled()
                selection = self.account.select_notes_for_spend(token, amount)
                if isinstance(selection, InsufficientFunds):
                    log.info("Insufficient funds", token=str(token), requested=amount, available=selection.available)
                    return selection

                reservation = self.account.reserve(selection)
                try:
                    prepared = self.build_private_operation(kind, selection, outputs, fee, adapt)
                    if isinstance(prepared, InsufficientFunds):
                        self.account.release(reservation)
                        return prepared
                    tx, transaction = self.prove_and_encode(prepared, cancel)
                except StaleProof as e:
                    self.account.release(reservation)
                    stale = e
                    log.warning("Tree advanced while proving, rebuilding", attempt=attempt + 1, tree=e.tree_number)
                    continue
                except BaseException:
                    self.account.release(reservation)
                    raise

                log.info(
                    "Prepared private operation",
                    kind=kind.value,
                    circuit=prepared.shape.circuit_id,
                    inputs=len(selection.notes),
                )
                return PreparedTransaction(tx, reservation, prepared, transaction)

        if stale is None:
            raise BuildError("No build attempt was made", max_stale_retries=self.max_stale_retries)
        raise stale

    # -------------------------------------------------------------------------
    # After broadcast
    # -------------------------------------------------------------------------

    def reconcile(self, prepared: PreparedTransaction, tx_hash: str, chain: ChainReader) -> Optional[Receipt]:
        """Settle the pending marks of a broadcast operation.

        No receipt yet: marks stay and None is returned. A reverted
        transaction releases the marks; a successful one keeps them until
        the sync engine observes the nullifiers.
        """
        receipt = chain.get_transaction_receipt(tx_hash)
        if receipt is None:
            return None
        if receipt.succeeded:
            self.account.confirm(prepared.reservation)
        else:
            log.warning("Operation reverted, releasing notes", tx_hash=tx_hash, reason=receipt.revert_reason)
            self.account.release(prepared.reservation)
        return receipt
