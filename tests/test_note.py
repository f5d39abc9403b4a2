"""
Note, commitment, nullifier and envelope tests.

Run with: pytest tests/test_note.py -v
"""

import pytest

from shieldcore.cipher import IV_SIZE, StreamingAesGcmCipher
from shieldcore.field import SNARK_PRIME, poseidon
from shieldcore.keys import ViewingKey
from shieldcore.note import (
    EMPTY_PREIMAGE,
    MAX_NOTE_VALUE,
    Ciphertext,
    CommitmentPreimage,
    DecryptFailure,
    Note,
    NoteCodec,
    ShieldCiphertext,
    TokenData,
    TokenType,
    UnshieldNote,
    nullifier_of,
)


@pytest.fixture
def note(alice, token):
    return Note(alice.master_public_key, token, 100, b"\x01" * 16, b"memo")


class TestTokenData:

    def test_erc20_hash_is_address(self, token):
        assert token.token_hash == int(token.address, 16)

    def test_nft_hash_differs_by_sub_id(self):
        a = TokenData(TokenType.ERC721, "0x" + "b0" * 20, 1)
        b = TokenData(TokenType.ERC721, "0x" + "b0" * 20, 2)
        assert a.token_hash != b.token_hash

    def test_erc20_rejects_sub_id(self):
        with pytest.raises(ValueError):
            TokenData(TokenType.ERC20, "0x" + "b0" * 20, 1)

    def test_address_normalized(self):
        assert TokenData.erc20("0X" + "AB" * 20).address == "0x" + "ab" * 20

    def test_native(self):
        assert TokenData.native().is_native
        assert not TokenData.erc20("0x" + "01" * 20).is_native

    def test_dict_and_abi_round_trip(self):
        token = TokenData(TokenType.ERC1155, "0x" + "c0" * 20, 7)
        assert TokenData.from_dict(token.to_dict()) == token
        assert TokenData.from_abi(token.to_abi()) == token


class TestCommitments:

    def test_commitment_definition(self, note):
        npk = poseidon([note.master_public_key, int.from_bytes(note.random, "big")])
        assert note.note_public_key == npk
        assert note.commitment == poseidon([npk, note.token.token_hash, 100])

    def test_commitment_binds_value(self, note):
        other = Note(note.master_public_key, note.token, 101, note.random)
        assert other.commitment != note.commitment

    def test_memo_not_committed(self, note):
        other = Note(note.master_public_key, note.token, note.value, note.random, b"")
        assert other.commitment == note.commitment

    def test_nullifier_definition(self, alice):
        assert nullifier_of(3, alice.nullifying_key) == poseidon([alice.nullifying_key, 3])
        assert nullifier_of(3, alice.nullifying_key) != nullifier_of(4, alice.nullifying_key)

    def test_codec_exposes_pure_functions(self, note, alice):
        assert NoteCodec.commitment_of(note) == note.commitment
        assert NoteCodec.nullifier_of(0, alice.nullifying_key) == nullifier_of(0, alice.nullifying_key)

    def test_value_range(self, alice, token):
        Note(alice.master_public_key, token, MAX_NOTE_VALUE, b"\x00" * 16)
        with pytest.raises(ValueError):
            Note(alice.master_public_key, token, MAX_NOTE_VALUE + 1, b"\x00" * 16)
        with pytest.raises(ValueError):
            Note(alice.master_public_key, token, -1, b"\x00" * 16)

    def test_random_size(self, alice, token):
        with pytest.raises(ValueError):
            Note(alice.master_public_key, token, 1, b"\x00" * 15)

    def test_unshield_note(self, token):
        out = UnshieldNote("0x" + "ee" * 20, token, 5)
        assert out.note_public_key == int("ee" * 20, 16)
        assert out.commitment == poseidon([out.note_public_key, token.token_hash, 5])
        with pytest.raises(ValueError):
            UnshieldNote("0x" + "ee" * 20, token, 0)

    def test_note_dict_round_trip(self, note):
        assert Note.from_dict(note.to_dict()) == note


class TestEnvelope:

    def test_owner_decrypts(self, codec, note, alice):
        ciphertext = codec.encrypt(note, alice.viewing_key.public_bytes)
        assert codec.try_decrypt(ciphertext, alice.viewing_key) == note
        assert codec.try_decrypt(ciphertext.to_bytes(), alice.viewing_key) == note

    def test_other_key_is_failure_value(self, codec, note, alice, bob):
        blob = codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes()
        result = codec.try_decrypt(blob, bob.viewing_key)
        assert isinstance(result, DecryptFailure)
        assert result.reason == "authentication-failed"

    def test_wrong_owner(self, codec, note, alice, bob):
        blob = codec.encrypt(note, alice.viewing_key.public_bytes).to_bytes()
        result = codec.try_decrypt(blob, alice.viewing_key, expected_master_public_key=bob.master_public_key)
        assert result == DecryptFailure("wrong-owner")

    @pytest.mark.parametrize("garbage", [b"", b"\x00", b"\xff" * 63, b"\x00" * 200, "text", None, 12])
    def test_garbage_never_raises(self, codec, alice, garbage):
        assert isinstance(codec.try_decrypt(garbage, alice.viewing_key), DecryptFailure)

    def test_deterministic_with_fixed_ephemeral(self, codec, note, alice):
        ephemeral = ViewingKey.from_bytes(b"\x09" * 32)
        iv = b"\x05" * IV_SIZE
        a = codec.encrypt(note, alice.viewing_key.public_bytes, ephemeral, iv)
        b = codec.encrypt(note, alice.viewing_key.public_bytes, ephemeral, iv)
        assert a == b

    def test_streaming_cipher_interoperates(self, note, alice):
        one_shot, streaming = NoteCodec(), NoteCodec(StreamingAesGcmCipher(chunk_size=5))
        ephemeral = ViewingKey.from_bytes(b"\x09" * 32)
        iv = b"\x05" * IV_SIZE
        a = one_shot.encrypt(note, alice.viewing_key.public_bytes, ephemeral, iv)
        b = streaming.encrypt(note, alice.viewing_key.public_bytes, ephemeral, iv)
        assert a.to_bytes() == b.to_bytes()
        assert streaming.try_decrypt(a, alice.viewing_key) == note

    def test_ciphertext_bytes_round_trip(self, codec, note, alice):
        ciphertext = codec.encrypt(note, alice.viewing_key.public_bytes)
        assert Ciphertext.from_bytes(ciphertext.to_bytes()) == ciphertext

    def test_ciphertext_abi_round_trip(self, codec, note, alice):
        ciphertext = codec.encrypt(note, alice.viewing_key.public_bytes)
        words, blinded_sender, _, _, _ = ciphertext.to_abi()
        assert len(words) == 4
        assert all(len(w) == 32 for w in words)
        assert blinded_sender == ciphertext.ephemeral_key
        assert Ciphertext.from_abi(ciphertext.to_abi()) == ciphertext

    def test_short_ciphertext_has_no_abi_form(self):
        with pytest.raises(ValueError):
            Ciphertext(b"\x00" * 32, b"\x00" * 16, b"\x00" * 16, b"\x00" * 95).to_abi()


# poseidon([0, 1]) and poseidon([0, 1, 2]) from the circom reference vectors
POSEIDON_0_1 = 12583541437132735734108669866114103169564651237895298778035846191048104863326
POSEIDON_0_1_2 = 8599452571108419911675042369134657596129797276905188988960674134744449929238
TOKEN_ONE = "0x" + "00" * 19 + "01"


class TestHashVectors:

    def test_note_public_key(self):
        note = Note(0, TokenData.erc20(TOKEN_ONE), 2, b"\x00" * 15 + b"\x01")
        assert note.note_public_key == POSEIDON_0_1

    def test_preimage_commitment(self):
        assert CommitmentPreimage(0, TokenData.erc20(TOKEN_ONE), 2).commitment == POSEIDON_0_1_2

    def test_unshield_commitment(self):
        out = UnshieldNote("0x" + "00" * 20, TokenData.erc20(TOKEN_ONE), 2)
        assert out.commitment == POSEIDON_0_1_2

    def test_nullifier(self):
        assert nullifier_of(1, 0) == POSEIDON_0_1


class TestCommitmentPreimage:

    def test_of_note(self, note):
        preimage = CommitmentPreimage.of(note)
        assert preimage.note_public_key == note.note_public_key
        assert preimage.commitment == note.commitment

    def test_abi_round_trip(self, note):
        preimage = CommitmentPreimage.of(note)
        npk, token_abi, value = preimage.to_abi()
        assert len(npk) == 32
        assert token_abi == note.token.to_abi()
        assert value == 100
        assert CommitmentPreimage.from_abi(preimage.to_abi()) == preimage

    def test_with_value(self, note):
        preimage = CommitmentPreimage.of(note).with_value(90)
        assert preimage.value == 90
        assert preimage.commitment != note.commitment

    def test_unshield_preimage(self, token):
        out = UnshieldNote("0x" + "ee" * 20, token, 5)
        assert out.preimage() == CommitmentPreimage(int("ee" * 20, 16), token, 5)
        assert out.preimage().commitment == out.commitment

    def test_empty_preimage(self):
        assert EMPTY_PREIMAGE.note_public_key == 0
        assert EMPTY_PREIMAGE.value == 0
        assert EMPTY_PREIMAGE.token.is_native

    def test_rejects_non_field_npk(self, token):
        with pytest.raises(ValueError):
            CommitmentPreimage(SNARK_PRIME, token, 1)
        with pytest.raises(ValueError):
            CommitmentPreimage(1, token, MAX_NOTE_VALUE + 1)


class TestShieldEnvelope:

    def test_recipient_rebuilds_note(self, codec, note, alice):
        ciphertext = codec.encrypt_shield(note, alice.viewing_key.public_bytes)
        preimage = CommitmentPreimage.of(note)
        rebuilt = codec.try_decrypt_shield(preimage, ciphertext, alice.viewing_key, alice.master_public_key)
        assert rebuilt.commitment == note.commitment
        assert rebuilt.random == note.random
        assert rebuilt.memo == b""

    def test_bundle_layout(self, codec, note, alice):
        ciphertext = codec.encrypt_shield(note, alice.viewing_key.public_bytes)
        bundle, shield_key = ciphertext.to_abi()
        assert [len(word) for word in bundle] == [32, 32, 32]
        assert shield_key == ciphertext.shield_key
        assert ShieldCiphertext.from_abi(ciphertext.to_abi()) == ciphertext

    def test_other_key_fails(self, codec, note, alice, bob):
        ciphertext = codec.encrypt_shield(note, alice.viewing_key.public_bytes)
        result = codec.try_decrypt_shield(
            CommitmentPreimage.of(note), ciphertext, bob.viewing_key, bob.master_public_key
        )
        assert result == DecryptFailure("authentication-failed")

    def test_wrong_master_public_key(self, codec, note, alice, bob):
        ciphertext = codec.encrypt_shield(note, alice.viewing_key.public_bytes)
        result = codec.try_decrypt_shield(
            CommitmentPreimage.of(note), ciphertext, alice.viewing_key, bob.master_public_key
        )
        assert result == DecryptFailure("wrong-owner")

    def test_unsupported_type(self, codec, note, alice):
        result = codec.try_decrypt_shield(
            CommitmentPreimage.of(note), b"\x00" * 64, alice.viewing_key, alice.master_public_key
        )
        assert result.reason == "malformed"
