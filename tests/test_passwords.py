"""Tests for the scrypt password format and one-time code helpers."""

import asyncio
import hashlib

import pytest

from tokenwarden.service.errors import ValidationError
from tokenwarden.service.passwords import (
    SCRYPT_DKLEN,
    SCRYPT_N,
    SCRYPT_P,
    SCRYPT_R,
    CredentialHasher,
    _derive_key,
    sha256_hex,
)
from tokenwarden.service.secret_generator import SecretGenerator
from tokenwarden.service.workers import CryptoWorkerPool


class FixedBytes(SecretGenerator):
    def __init__(self, data: bytes):
        self.data = data

    def random_bytes(self, length: int) -> bytes:
        return self.data[:length]


@pytest.fixture
def hasher():
    return CredentialHasher()


class TestPasswordHashFormat:
    def test_hash_is_salt_hex_colon_key_hex(self, hasher):
        stored = hasher.hash_password("Sup3rSecret")
        salt_hex, key_hex = stored.split(":")
        assert len(salt_hex) == 32
        assert len(key_hex) == 128
        int(salt_hex, 16)
        int(key_hex, 16)

    def test_each_hash_uses_fresh_salt(self, hasher):
        assert hasher.hash_password("Sup3rSecret") != hasher.hash_password("Sup3rSecret")

    def test_salt_is_fed_as_hex_text(self):
        """scrypt receives the UTF-8 of the hex salt string, not the raw salt bytes."""
        salt = bytes(range(16))
        hasher = CredentialHasher(secrets=FixedBytes(salt))
        stored = hasher.hash_password("Sup3rSecret")
        expected = hashlib.scrypt(
            b"Sup3rSecret",
            salt=salt.hex().encode("utf-8"),
            n=SCRYPT_N,
            r=SCRYPT_R,
            p=SCRYPT_P,
            dklen=SCRYPT_DKLEN,
            maxmem=64 * 1024 * 1024,
        )
        assert stored == f"{salt.hex()}:{expected.hex()}"

    def test_parameters_match_stored_credentials(self):
        assert (SCRYPT_N, SCRYPT_R, SCRYPT_P, SCRYPT_DKLEN) == (16384, 16, 1, 64)

    def test_pinned_legacy_vector(self):
        """A known salt and password reproduce the stored key byte for byte."""
        salt = bytes.fromhex("00112233445566778899aabbccddeeff")
        hasher = CredentialHasher(secrets=FixedBytes(salt))
        assert hasher.hash_password("password") == (
            "00112233445566778899aabbccddeeff:"
            "9a098760abf0e95230464650e1160ecd37c82de7f9aea0c41eee704c90daaac4"
            "5ce13ec6c244f429e4e4ba505cde11131ed35ef08e55b31c226a2ba87069e3ae"
        )

    def test_pinned_legacy_vector_verifies(self, hasher):
        stored = (
            "00112233445566778899aabbccddeeff:"
            "9a098760abf0e95230464650e1160ecd37c82de7f9aea0c41eee704c90daaac4"
            "5ce13ec6c244f429e4e4ba505cde11131ed35ef08e55b31c226a2ba87069e3ae"
        )
        assert hasher.verify_password("password", stored)
        assert not hasher.verify_password("Password", stored)


class TestPasswordVerification:
    def test_round_trip(self, hasher):
        stored = hasher.hash_password("Sup3rSecret")
        assert hasher.verify_password("Sup3rSecret", stored)

    def test_wrong_password(self, hasher):
        stored = hasher.hash_password("Sup3rSecret")
        assert not hasher.verify_password("Sup3rSecreT", stored)

    def test_compatibility_forms_normalize_to_same_password(self, hasher):
        # U+FF21 FULLWIDTH LATIN CAPITAL LETTER A folds to "A" under NFKC
        stored = hasher.hash_password("Ａbcdefg1")
        assert hasher.verify_password("Abcdefg1", stored)

    def test_composed_and_decomposed_accents_match(self, hasher):
        stored = hasher.hash_password("Cafe\u0301Latte1")
        assert hasher.verify_password("Caf\u00e9Latte1", stored)

    @pytest.mark.parametrize(
        "stored",
        ["", "no-separator", ":abcd", "abcd:", "abcd:not-hex", "abcd:zz"],
    )
    def test_malformed_stored_value_is_false(self, hasher, stored):
        assert hasher.verify_password("Sup3rSecret", stored) is False

    def test_async_variants_use_pool(self):
        pool = CryptoWorkerPool("test-hash", 1)
        pooled = CredentialHasher(pool=pool)

        async def run():
            stored = await pooled.hash_password_async("Sup3rSecret")
            return await pooled.verify_password_async("Sup3rSecret", stored)

        try:
            assert asyncio.run(run()) is True
        finally:
            pool.shutdown()


class TestScryptVectors:
    """RFC 7914 test vectors pin the key derivation primitive."""

    def test_pleaseletmein_vector(self):
        derived = _derive_key(b"pleaseletmein", b"SodiumChloride", n=16384, r=8, p=1, dklen=64)
        assert derived.hex() == (
            "7023bdcb3afd7348461c06cd81fd38ebfda8fbba904f8e3ea9b543f6545da1f2"
            "d5432955613f0fcf62d49705242a9af9e61e85dc0d651e40dfcf017b45575887"
        )

    def test_password_nacl_vector(self):
        derived = _derive_key(b"password", b"NaCl", n=1024, r=8, p=16, dklen=64)
        assert derived.hex() == (
            "fdbabe1c9d3472007856e7190d01e9fe7c6ad7cbc8237830e77376634b373162"
            "2eaf30d92e22a3886ff109279d9830dac727afb94a83ee6d8360cbdfa2cc0640"
        )


class TestCodesAndDigests:
    def test_sha256_hex(self):
        assert sha256_hex("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_refresh_and_code_hashes_are_sha256(self, hasher):
        assert hasher.hash_refresh_token("abc") == sha256_hex("abc")
        assert hasher.hash_verification_code("123456") == sha256_hex("123456")

    def test_code_matches_its_hash(self, hasher):
        stored = hasher.hash_verification_code("042917")
        assert hasher.verification_code_matches("042917", stored)
        assert not hasher.verification_code_matches("042918", stored)

    def test_generated_code_is_digits_of_requested_length(self, hasher):
        code = hasher.generate_verification_code(6)
        assert len(code) == 6
        assert code.isdigit()

    def test_code_digits_are_bytes_mod_ten(self):
        hasher = CredentialHasher(secrets=FixedBytes(bytes([0, 9, 10, 255, 123, 57])))
        assert hasher.generate_verification_code(6) == "090537"

    def test_leading_zeros_are_kept(self):
        hasher = CredentialHasher(secrets=FixedBytes(bytes([0, 0, 0, 0])))
        assert hasher.generate_verification_code(4) == "0000"

    def test_non_positive_length_rejected(self, hasher):
        with pytest.raises(ValidationError):
            hasher.generate_verification_code(0)


class TestPasswordStrength:
    def test_accepts_strong_password(self, hasher):
        hasher.validate_password_strength("Str0ngPassword")

    @pytest.mark.parametrize(
        "password, fragment",
        [
            ("Sh0rt", "at least 8"),
            ("alllowercase1", "uppercase"),
            ("NoDigitsHere", "number"),
        ],
    )
    def test_rejects_weak_password(self, hasher, password, fragment):
        with pytest.raises(ValidationError) as excinfo:
            hasher.validate_password_strength(password)
        assert fragment in excinfo.value.message
