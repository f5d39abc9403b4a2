"""
Transaction builder tests.

End-to-end flows run against the in-memory pool: shield, sync, transfer or
unshield, submit the calldata, sync again and check both accounts.

Run with: pytest tests/test_builder.py -v
"""

import pytest

from shieldcore import abi
from shieldcore.account import Account, InsufficientFunds, NoteSelection
from shieldcore.babyjubjub import Signature
from shieldcore.builder import (
    AdaptParams,
    CancellationToken,
    OperationKind,
    ShieldRequest,
    TransactionBuilder,
    TransferOutput,
    UnshieldOutput,
    encode_batch,
)
from shieldcore.chain import (
    TRANSACT_FUNCTION,
    UNSHIELD_NORMAL,
    UnshieldRecord,
    decode_log,
    hash_bound_params,
)
from shieldcore.errors import (
    AccountHalted,
    BuildCancelled,
    BuildError,
    ProverFailure,
    StaleProof,
    UnsupportedArity,
)
from shieldcore.field import poseidon
from shieldcore.keys import verify_spend_signature
from shieldcore.note import TokenData, UnshieldNote
from shieldcore.prover import CircuitShape, MockProver

RECEIVER = "0x" + "ee" * 20


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def wallet(engine, alice):
    account = Account(alice)
    engine.register_account(account)
    return account


@pytest.fixture
def bob_wallet(engine, bob):
    account = Account(bob)
    engine.register_account(account)
    return account


@pytest.fixture
def funded(wallet, engine, shield, alice, token):
    shield(alice, token, 100)
    engine.sync()
    return wallet


def make_builder(wallet, engine, prover=None, **kwargs):
    return TransactionBuilder(wallet, engine, prover or MockProver(), **kwargs)


def submit(chain, prepared):
    tx_hash = chain.submit(prepared.tx.to, prepared.tx.data, prepared.tx.value)
    return tx_hash, chain.get_transaction_receipt(tx_hash)


class TestShield:

    def test_shield_round_trip(self, chain, engine, funded, bob_wallet, bob, token):
        builder = make_builder(funded, engine)
        tx = builder.build_shield([ShieldRequest(bob.address, token, 50)])
        assert tx.to == chain.contract_address
        assert tx.value == 0

        receipt = chain.get_transaction_receipt(chain.submit(tx.to, tx.data, tx.value))
        assert receipt.succeeded
        engine.sync()
        assert bob_wallet.balance(token) == 50
        assert bob_wallet.notes()[0].note.memo == b""

    def test_native_value_attached(self, engine, wallet, alice):
        builder = make_builder(wallet, engine)
        tx = builder.build_shield([
            ShieldRequest(alice.address, TokenData.native(), 5),
            ShieldRequest(alice.address, TokenData.erc20("0x" + "a0" * 20), 7),
        ])
        assert tx.value == 5

    def test_shield_validation(self, engine, wallet, alice, token):
        builder = make_builder(wallet, engine)
        with pytest.raises(BuildError):
            builder.build_shield([])
        with pytest.raises(BuildError):
            builder.build_shield([ShieldRequest(alice.address, token, 0)])


class TestTransfer:

    def test_transfer_sixty_of_hundred(self, chain, engine, funded, bob_wallet, alice, bob, token):
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 60)])

        operation = prepared.operation
        assert operation.shape == CircuitShape(1, 2)
        assert [n.value for n in operation.output_notes] == [60, 40]
        assert operation.output_notes[0].master_public_key == bob.master_public_key
        assert operation.output_notes[1].master_public_key == alice.master_public_key
        assert funded.balance(token) == 0

        tx_hash, receipt = submit(chain, prepared)
        assert receipt.succeeded
        assert builder.reconcile(prepared, tx_hash, chain).succeeded
        assert funded.active_reservations() == []

        engine.sync()
        assert funded.balance(token) == 40
        assert bob_wallet.balance(token) == 60
        assert engine.root() == chain.root()

    def test_public_inputs_and_signature(self, engine, funded, alice, bob, token):
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 60)])
        operation = prepared.operation
        signals = operation.witness.signals

        assert operation.public_inputs == [
            operation.merkle_root,
            operation.bound_params_hash,
            *operation.nullifiers,
            *operation.commitments,
        ]
        assert operation.merkle_root == engine.root(0)
        assert operation.nullifiers == [funded.notes()[0].nullifier]
        assert operation.bound_params_hash == hash_bound_params(operation.bound_params)
        r8x, r8y, s = signals["signature"]
        assert signals["publicKey"] == list(alice.spending_key.public_key)
        assert verify_spend_signature(
            alice.spending_key.public_key, poseidon(operation.public_inputs), Signature((r8x, r8y), s)
        )
        assert signals["valueIn"] == [100]
        assert signals["valueOut"] == [60, 40]
        assert len(signals["pathElements"][0]) == engine.depth

    def test_calldata_decodes(self, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 60)])
        (transactions,) = abi.decode_call(TRANSACT_FUNCTION, prepared.tx.data)
        assert len(transactions) == 1
        _, root, nullifiers, commitments, bound, _ = transactions[0]
        assert int.from_bytes(root, "big") == prepared.operation.merkle_root
        assert [int.from_bytes(n, "big") for n in nullifiers] == prepared.nullifiers
        assert len(commitments) == 2
        assert bound[3] == 1
        assert len(bound[6]) == 2

    def test_exact_amount_pads_outputs(self, chain, engine, funded, bob_wallet, bob, token):
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 100)])
        assert [n.value for n in prepared.operation.output_notes] == [100, 0]
        assert submit(chain, prepared)[1].succeeded
        engine.sync()
        assert funded.balance(token) == 0
        assert bob_wallet.balance(token) == 100

    def test_two_inputs(self, chain, engine, funded, shield, alice, bob, token):
        shield(alice, token, 10)
        engine.sync()
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 105)])
        assert prepared.operation.shape == CircuitShape(2, 2)
        assert submit(chain, prepared)[1].succeeded
        engine.sync()
        assert funded.balance(token) == 5

    def test_three_inputs_padded_with_dummies(self, chain, engine, wallet, shield, alice, bob, token):
        for value in (10, 20, 30):
            shield(alice, token, value)
        chain.emit_transact([poseidon([900 + i]) for i in range(5)])
        engine.sync()
        builder = make_builder(wallet, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 55)])
        operation = prepared.operation
        assert operation.shape == CircuitShape(8, 2)
        assert len(set(operation.nullifiers)) == 8
        assert operation.witness.signals["valueIn"][3:] == [0] * 5
        own = {n.leaf_index for n in wallet.notes()}
        dummies = operation.witness.signals["leavesIndices"][3:]
        assert sorted(dummies) == [3, 4, 5, 6, 7]
        assert not own.intersection(dummies)
        assert submit(chain, prepared)[1].succeeded
        engine.sync()
        assert wallet.balance(token) == 5

    def test_dummies_need_foreign_leaves(self, engine, wallet, shield, alice, bob, token):
        for value in (10, 20, 30):
            shield(alice, token, value)
        engine.sync()
        builder = make_builder(wallet, engine)
        with pytest.raises(BuildError) as exc:
            builder.transfer(token, [TransferOutput(bob.address, 55)])
        assert exc.value.details["tree_number"] == 0
        assert wallet.balance(token) == 60
        assert wallet.active_reservations() == []

    def test_batch_of_two_transfers(self, chain, engine, funded, shield, bob_wallet, alice, bob, token):
        shield(alice, token, 50)
        engine.sync()
        builder = make_builder(funded, engine)
        first = builder.transfer(token, [TransferOutput(bob.address, 60)])
        second = builder.transfer(token, [TransferOutput(bob.address, 30)])
        tx = encode_batch([first, second])
        (transactions,) = abi.decode_call(TRANSACT_FUNCTION, tx.data)
        assert len(transactions) == 2

        receipt = chain.get_transaction_receipt(chain.submit(tx.to, tx.data, tx.value))
        assert receipt.succeeded
        engine.sync()
        assert bob_wallet.balance(token) == 90
        assert funded.balance(token) == 60

    def test_batch_validation(self, engine, funded, shield, alice, bob, token):
        with pytest.raises(BuildError):
            encode_batch([])
        shield(alice, token, 50)
        engine.sync()
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 10)])
        other = make_builder(funded, engine, contract_address="0x" + "11" * 20)
        elsewhere = other.transfer(token, [TransferOutput(bob.address, 10)])
        with pytest.raises(BuildError):
            encode_batch([prepared, elsewhere])

    def test_fee_output_first(self, engine, funded, alice, bob, token):
        relayer = TransferOutput(alice.address, 3)
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 50)], fee=relayer)
        assert [n.value for n in prepared.operation.output_notes] == [3, 50, 47]
        assert prepared.operation.shape == CircuitShape(1, 3)

    def test_too_many_outputs(self, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        outputs = [TransferOutput(bob.address, 10) for _ in range(3)]
        with pytest.raises(BuildError):
            builder.transfer(token, outputs)
        assert funded.balance(token) == 100

    def test_insufficient_funds_is_result(self, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        result = builder.transfer(token, [TransferOutput(bob.address, 1000)])
        assert isinstance(result, InsufficientFunds)
        assert result.available == 100
        assert funded.active_reservations() == []

    def test_output_validation(self, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        with pytest.raises(BuildError):
            builder.transfer(token, [])
        with pytest.raises(BuildError):
            builder.transfer(token, [TransferOutput(bob.address, 10)], fee=TransferOutput(bob.address, 0))

    def test_adapt_params_bound(self, engine, funded, bob, token):
        adapt = AdaptParams("0x" + "ad" * 20, b"\x01" * 32)
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 10)], adapt=adapt)
        assert prepared.operation.bound_params[4] == adapt.contract
        assert prepared.operation.bound_params[5] == adapt.params


class TestUnshield:

    def test_unshield_with_change(self, chain, engine, funded, token):
        builder = make_builder(funded, engine)
        prepared = builder.unshield(token, RECEIVER, 30)
        operation = prepared.operation
        assert operation.kind == OperationKind.UNSHIELD
        assert operation.shape == CircuitShape(1, 2)
        assert isinstance(operation.output_notes[-1], UnshieldNote)
        assert operation.bound_params[2] == UNSHIELD_NORMAL
        assert len(operation.bound_params[6]) == 1

        assert submit(chain, prepared)[1].succeeded
        engine.sync()
        assert funded.balance(token) == 70

    def test_unshield_everything(self, chain, engine, funded, token):
        builder = make_builder(funded, engine)
        prepared = builder.unshield(token, RECEIVER, 100)
        assert [n.value for n in prepared.operation.output_notes] == [0, 100]
        assert submit(chain, prepared)[1].succeeded
        engine.sync()
        assert funded.balance(token) == 0

    def test_unshield_fee_in_event(self, chain, engine, funded, token):
        chain.unshield_fee_bps = 250
        builder = make_builder(funded, engine)
        prepared = builder.unshield(token, RECEIVER, 100)
        _, receipt = submit(chain, prepared)
        assert receipt.succeeded

        events = [decode_log(e) for e in chain.get_logs(chain.contract_address, 0, chain.head)]
        (record,) = [e for e in events if isinstance(e, UnshieldRecord)]
        assert (record.to, record.token, record.amount, record.fee) == (RECEIVER, token, 98, 2)
        engine.sync()
        assert funded.balance(token) == 0

    def test_unshield_needs_single_receiver(self, engine, funded, token):
        builder = make_builder(funded, engine)
        selection = funded.select_notes_for_spend(token, 20)
        with pytest.raises(BuildError):
            builder.build_private_operation(
                OperationKind.UNSHIELD, selection,
                [UnshieldOutput(RECEIVER, 10), UnshieldOutput(RECEIVER, 10)],
            )

    def test_transfer_rejects_unshield_output(self, engine, funded, token):
        builder = make_builder(funded, engine)
        selection = funded.select_notes_for_spend(token, 10)
        with pytest.raises(BuildError):
            builder.build_private_operation(OperationKind.TRANSFER, selection, [UnshieldOutput(RECEIVER, 10)])


class TestFailureHandling:

    def test_stale_root_rebuilds(self, chain, engine, funded, bob, token):
        moves = []

        def advance_chain(shape, witness):
            if not moves:
                moves.append(1)
                chain.emit_transact([poseidon([424242])])
                engine.sync()

        prover = MockProver(on_prove=advance_chain)
        builder = make_builder(funded, engine, prover)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 60)])
        assert len(prover.calls) == 2
        assert prepared.operation.merkle_root == engine.root(0)
        assert submit(chain, prepared)[1].succeeded

    def test_stale_retries_exhausted(self, chain, engine, funded, bob, token):
        counter = [0]

        def always_advance(shape, witness):
            counter[0] += 1
            chain.emit_transact([poseidon([900 + counter[0]])])
            engine.sync()

        builder = make_builder(funded, engine, MockProver(on_prove=always_advance), max_stale_retries=1)
        with pytest.raises(StaleProof):
            builder.transfer(token, [TransferOutput(bob.address, 60)])
        assert counter[0] == 2
        assert funded.balance(token) == 100
        assert funded.active_reservations() == []

    def test_negative_retry_budget_is_build_error(self, engine, funded, bob, token):
        prover = MockProver()
        builder = make_builder(funded, engine, prover, max_stale_retries=-1)
        with pytest.raises(BuildError) as exc:
            builder.transfer(token, [TransferOutput(bob.address, 60)])
        assert exc.value.details["max_stale_retries"] == -1
        assert prover.calls == []
        assert funded.balance(token) == 100

    def test_prover_failure_releases(self, engine, funded, bob, token):
        builder = make_builder(funded, engine, MockProver(fail_times=1))
        with pytest.raises(ProverFailure):
            builder.transfer(token, [TransferOutput(bob.address, 60)])
        assert funded.balance(token) == 100
        assert isinstance(builder.transfer(token, [TransferOutput(bob.address, 60)]).tx.data, bytes)

    def test_unexpected_prover_error_wrapped(self, engine, funded, bob, token):
        prover = MockProver(fail_times=1, fail_with=TimeoutError("prover timed out"))
        builder = make_builder(funded, engine, prover)
        with pytest.raises(ProverFailure) as exc:
            builder.transfer(token, [TransferOutput(bob.address, 60)])
        assert isinstance(exc.value.cause, TimeoutError)
        assert funded.balance(token) == 100

    def test_cancel_during_proving(self, engine, funded, bob, token):
        cancel = CancellationToken()
        builder = make_builder(funded, engine, MockProver(on_prove=lambda shape, witness: cancel.cancel()))
        with pytest.raises(BuildCancelled):
            builder.transfer(token, [TransferOutput(bob.address, 60)], cancel=cancel)
        assert funded.balance(token) == 100
        assert funded.active_reservations() == []

    def test_cancel_before_start(self, engine, funded, bob, token):
        cancel = CancellationToken()
        cancel.cancel()
        prover = MockProver()
        builder = make_builder(funded, engine, prover)
        with pytest.raises(BuildCancelled):
            builder.transfer(token, [TransferOutput(bob.address, 60)], cancel=cancel)
        assert prover.calls == []

    def test_unsupported_arity_halts_account(self, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        owned = funded.notes()[0]
        selection = NoteSelection(token, (owned,), 3, 60)
        with pytest.raises(UnsupportedArity):
            builder.build_private_operation(OperationKind.TRANSFER, selection, [TransferOutput(bob.address, 60)])
        assert funded.halted
        with pytest.raises(AccountHalted):
            builder.transfer(token, [TransferOutput(bob.address, 60)])

    def test_selection_too_small(self, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        selection = funded.select_notes_for_spend(token, 10)
        result = builder.build_private_operation(
            OperationKind.TRANSFER, selection, [TransferOutput(bob.address, 500)]
        )
        assert isinstance(result, InsufficientFunds)
        assert result.reason == "selection-too-small"

    def test_note_spent_on_chain_rejected(self, chain, engine, funded, bob, token):
        owned = funded.notes()[0]
        selection = funded.select_notes_for_spend(token, 10)
        chain.emit_nullified(0, [owned.nullifier])
        engine.sync()
        assert engine.is_spent(0, owned.nullifier)
        builder = make_builder(funded, engine)
        with pytest.raises(BuildError):
            builder.build_private_operation(OperationKind.TRANSFER, selection, [TransferOutput(bob.address, 10)])


class TestReconcile:

    def test_pending_until_mined(self, chain, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 60)])
        chain.auto_mine = False
        tx_hash, _ = submit(chain, prepared)
        assert builder.reconcile(prepared, tx_hash, chain) is None
        assert len(funded.active_reservations()) == 1
        chain.mine()
        assert builder.reconcile(prepared, tx_hash, chain).succeeded
        assert funded.active_reservations() == []

    def test_revert_releases(self, chain, engine, funded, bob, token):
        builder = make_builder(funded, engine, chain_id=5)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 60)])
        tx_hash, receipt = submit(chain, prepared)
        assert not receipt.succeeded
        assert receipt.revert_reason == "wrong chain id"
        builder.reconcile(prepared, tx_hash, chain)
        assert funded.balance(token) == 100

    def test_double_spend_reverts(self, chain, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 60)])
        assert submit(chain, prepared)[1].succeeded
        _, receipt = submit(chain, prepared)
        assert receipt.revert_reason == "note already spent"

    def test_confirmed_marks_clear_on_sync(self, chain, engine, funded, bob, token):
        builder = make_builder(funded, engine)
        prepared = builder.transfer(token, [TransferOutput(bob.address, 60)])
        tx_hash, _ = submit(chain, prepared)
        builder.reconcile(prepared, tx_hash, chain)
        spent_commitment = prepared.operation.selection.notes[0].commitment
        assert funded.get_note(spent_commitment).pending
        engine.sync()
        note = funded.get_note(spent_commitment)
        assert note.spent and not note.pending
