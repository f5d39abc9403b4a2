"""
Account / balance engine tests.

Covers note discovery, spend tracking, coin selection and pending marks.

Run with: pytest tests/test_account.py -v
"""

import pytest

from shieldcore.account import (
    Account,
    InsufficientFunds,
    NoteSelection,
    OwnedNote,
    ScanEntry,
)
from shieldcore.errors import AccountHalted, BuildError, SnapshotError
from shieldcore.note import DecryptFailure, Note, TokenData, nullifier_of

OTHER_TOKEN = TokenData.erc20("0x" + "b1" * 20)


@pytest.fixture
def account(alice):
    return Account(alice)


@pytest.fixture
def give(account, alice, codec):
    """Deliver a note of ``value`` to the account at ``global_index``."""
    def _give(value, global_index, token=None, credential=None):
        owner = credential or alice
        note = Note.create(owner.master_public_key, token or TokenData.erc20("0x" + "a0" * 20), value)
        blob = codec.encrypt(note, owner.viewing_key.public_bytes).to_bytes()
        return account.ingest(note.commitment, blob, global_index)
    return _give


class TestDiscovery:

    def test_ingest_own_note(self, account, give, alice, token):
        owned = give(100, 0)
        assert isinstance(owned, OwnedNote)
        assert owned.value == 100
        assert owned.nullifier == nullifier_of(0, alice.nullifying_key)
        assert account.balance(token) == 100

    def test_foreign_note_is_failure(self, account, give, bob, token):
        result = give(100, 0, credential=bob)
        assert isinstance(result, DecryptFailure)
        assert account.balance(token) == 0

    def test_commitment_mismatch(self, account, alice, codec, token):
        note = Note.create(alice.master_public_key, token, 5)
        blob = codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes()
        result = account.ingest(note.commitment + 1, blob, 0)
        assert result == DecryptFailure("commitment-mismatch")

    def test_ingest_is_idempotent(self, account, alice, codec, token):
        note = Note.create(alice.master_public_key, token, 5)
        blob = codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes()
        first = account.ingest(note.commitment, blob, 3)
        second = account.ingest(note.commitment, blob, 3)
        assert first is second
        assert account.balance(token) == 5

    def test_tree_position_from_global_index(self, alice, codec, token):
        account = Account(alice, depth=2)
        note = Note.create(alice.master_public_key, token, 5)
        blob = codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes()
        owned = account.ingest(note.commitment, blob, 6)
        assert (owned.tree_number, owned.leaf_index) == (1, 2)
        assert owned.nullifier == nullifier_of(2, alice.nullifying_key)

    def test_scan_does_not_mutate(self, account, alice, codec, token):
        note = Note.create(alice.master_public_key, token, 5)
        blob = codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes()
        found = account.scan([ScanEntry(note.commitment, blob, 0), ScanEntry(1, b"junk", 1)])
        assert [n.commitment for n in found] == [note.commitment]
        assert account.notes() == []
        assert account.apply_batch(found, []) == 1
        assert account.balance(token) == 5


class TestSpendTracking:

    def test_observe_own_nullifier(self, account, give, token):
        owned = give(100, 0)
        assert account.observe_nullifier(owned.tree_number, owned.nullifier)
        assert account.balance(token) == 0
        assert account.notes() == []
        assert account.notes(include_spent=True)[0].spent

    def test_foreign_nullifier_is_noop(self, account, give, token):
        give(100, 0)
        assert not account.observe_nullifier(0, 12345)
        assert account.balance(token) == 100

    def test_repeat_nullifier_is_noop(self, account, give):
        owned = give(100, 0)
        assert account.observe_nullifier(owned.tree_number, owned.nullifier)
        assert not account.observe_nullifier(owned.tree_number, owned.nullifier)

    def test_nullifier_from_other_tree_is_noop(self, account, give, token):
        owned = give(100, 0)
        assert not account.observe_nullifier(owned.tree_number + 1, owned.nullifier)
        assert account.balance(token) == 100

    def test_apply_batch_notes_before_spends(self, account, alice, codec, token):
        note = Note.create(alice.master_public_key, token, 9)
        blob = codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes()
        found = account.scan([ScanEntry(note.commitment, blob, 4)])
        account.apply_batch(found, [(found[0].tree_number, found[0].nullifier)])
        assert account.balance(token) == 0
        assert account.get_note(note.commitment).spent

    def test_balances_per_token(self, account, give, token):
        give(10, 0)
        give(7, 1, token=OTHER_TOKEN)
        assert account.balances() == {token: 10, OTHER_TOKEN: 7}


class TestCoinSelection:

    def test_single_note_covers(self, account, give, token):
        give(100, 0)
        selection = account.select_notes_for_spend(token, 60)
        assert isinstance(selection, NoteSelection)
        assert [n.value for n in selection.notes] == [100]
        assert selection.arity == 1
        assert selection.change == 40
        assert selection.padding == 0

    def test_two_notes_when_largest_insufficient(self, account, give, token):
        give(10, 0)
        give(90, 1)
        selection = account.select_notes_for_spend(token, 95)
        assert sorted(n.value for n in selection.notes) == [10, 90]
        assert selection.arity == 2
        assert selection.change == 5

    def test_fewest_notes_then_least_change(self, account, give, token):
        for i, value in enumerate([30, 50, 60, 100]):
            give(value, i)
        assert [n.value for n in account.select_notes_for_spend(token, 55).notes] == [60]
        assert [n.value for n in account.select_notes_for_spend(token, 100).notes] == [100]
        assert sorted(n.value for n in account.select_notes_for_spend(token, 110).notes) == [50, 60]

    def test_oldest_first_tie_break(self, account, give, token):
        give(50, 0)
        give(50, 1)
        selection = account.select_notes_for_spend(token, 40)
        assert selection.notes[0].global_index == 0

    def test_three_notes_padded_to_eight(self, account, give, token):
        for i in range(3):
            give(10, i)
        selection = account.select_notes_for_spend(token, 25)
        assert len(selection.notes) == 3
        assert selection.arity == 8
        assert selection.padding == 5

    def test_insufficient_balance(self, account, give, token):
        give(10, 0)
        result = account.select_notes_for_spend(token, 11)
        assert result == InsufficientFunds(token, 11, 10, "insufficient-balance")

    def test_fragmented_across_trees(self, alice, codec, token):
        account = Account(alice, depth=2)
        for value, index in ((50, 0), (50, 4)):
            note = Note.create(alice.master_public_key, token, value)
            account.ingest(note.commitment, codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes(), index)
        result = account.select_notes_for_spend(token, 80)
        assert isinstance(result, InsufficientFunds)
        assert result.reason == "fragmented"
        assert result.available == 100

    def test_single_tree_per_selection(self, alice, codec, token):
        account = Account(alice, depth=2)
        for value, index in ((10, 0), (30, 1), (60, 4)):
            note = Note.create(alice.master_public_key, token, value)
            account.ingest(note.commitment, codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes(), index)
        selection = account.select_notes_for_spend(token, 35)
        assert [n.value for n in selection.notes] == [60]
        assert selection.tree_number == 1

    def test_more_than_eight_needed(self, account, give, token):
        for i in range(9):
            give(1, i)
        result = account.select_notes_for_spend(token, 9)
        assert isinstance(result, InsufficientFunds)
        assert result.reason == "fragmented"

    def test_other_token_ignored(self, account, give, token):
        give(100, 0, token=OTHER_TOKEN)
        assert isinstance(account.select_notes_for_spend(token, 1), InsufficientFunds)

    def test_zero_value_notes_never_selected(self, account, give, token):
        give(0, 0)
        give(5, 1)
        assert [n.global_index for n in account.select_notes_for_spend(token, 5).notes] == [1]

    def test_search_limit_falls_back_to_largest(self, alice, codec, token):
        account = Account(alice, search_limit=1)
        for i, value in enumerate([40, 30, 35]):
            note = Note.create(alice.master_public_key, token, value)
            account.ingest(note.commitment, codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes(), i)
        selection = account.select_notes_for_spend(token, 60)
        assert sorted(n.value for n in selection.notes) == [35, 40]

    def test_amount_must_be_positive(self, account):
        with pytest.raises(ValueError):
            account.select_notes_for_spend(TokenData.native(), 0)

    def test_halted_account_refuses(self, account, give, token):
        give(100, 0)
        account.halt("divergence")
        with pytest.raises(AccountHalted):
            account.select_notes_for_spend(token, 1)
        account.resume()
        assert isinstance(account.select_notes_for_spend(token, 1), NoteSelection)


class TestReservations:

    def test_reserve_hides_notes(self, account, give, token):
        give(100, 0)
        selection = account.select_notes_for_spend(token, 60)
        reservation = account.reserve(selection)
        assert account.balance(token) == 0
        assert isinstance(account.select_notes_for_spend(token, 60), InsufficientFunds)
        assert account.active_reservations() == [reservation]

    def test_double_reserve_rejected(self, account, give, token):
        give(100, 0)
        selection = account.select_notes_for_spend(token, 60)
        account.reserve(selection)
        with pytest.raises(BuildError):
            account.reserve(selection)

    def test_release_restores(self, account, give, token):
        give(100, 0)
        reservation = account.reserve(account.select_notes_for_spend(token, 60))
        account.release(reservation)
        account.release(reservation)
        assert account.balance(token) == 100
        assert account.active_reservations() == []

    def test_confirm_keeps_marks_until_nullifier(self, account, give, token):
        owned = give(100, 0)
        reservation = account.reserve(account.select_notes_for_spend(token, 60))
        account.confirm(reservation)
        account.release(reservation)
        assert account.balance(token) == 0
        account.observe_nullifier(owned.tree_number, owned.nullifier)
        assert account.get_note(owned.commitment).spent
        assert not account.get_note(owned.commitment).pending

    def test_reserved_context_releases_on_error(self, account, give, token):
        give(100, 0)
        selection = account.select_notes_for_spend(token, 60)
        with pytest.raises(RuntimeError):
            with account.reserved(selection):
                assert account.balance(token) == 0
                raise RuntimeError("prover crashed")
        assert account.balance(token) == 100


class TestAccountSnapshot:

    def test_round_trip(self, account, give, alice, token):
        give(100, 0)
        spent = give(5, 1)
        account.observe_nullifier(spent.tree_number, spent.nullifier)
        restored = Account(alice)
        restored.load_dict(account.to_dict())
        assert restored.balance(token) == 100
        assert [n.commitment for n in restored.notes(include_spent=True)] == [
            n.commitment for n in account.notes(include_spent=True)
        ]
        assert restored.observe_nullifier(spent.tree_number, spent.nullifier) is False

    def test_from_dict(self, account, give, alice, token):
        give(42, 7)
        restored = Account.from_dict(alice, account.to_dict())
        assert restored.balance(token) == 42
        assert restored.notes()[0].global_index == 7

    def test_pending_not_persisted(self, account, give, alice, token):
        give(100, 0)
        account.reserve(account.select_notes_for_spend(token, 1))
        restored = Account(alice)
        restored.load_dict(account.to_dict())
        assert restored.balance(token) == 100

    def test_wrong_account_rejected(self, account, bob):
        with pytest.raises(SnapshotError):
            Account(bob).load_dict(account.to_dict())
