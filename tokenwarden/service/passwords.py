from __future__ import annotations

import hashlib
import hmac
import re
import unicodedata
from typing import Optional

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import ValidationError
from tokenwarden.service.secret_generator import SecretGenerator
from tokenwarden.service.workers import CryptoWorkerPool

logger = get_logger(__name__)

# Legacy "saltHex:keyHex" scrypt parameters; changing any of them breaks
# every stored credential.
SCRYPT_N = 16384
SCRYPT_R = 16
SCRYPT_P = 1
SCRYPT_DKLEN = 64
SCRYPT_MAXMEM = 64 * 1024 * 1024
SALT_BYTES = 16

MIN_PASSWORD_LENGTH = 8
_UPPERCASE = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"[0-9]")


def normalize_password(password: str) -> str:
    return unicodedata.normalize("NFKC", password)


def _derive_key(
    password: bytes,
    salt: bytes,
    *,
    n: int = SCRYPT_N,
    r: int = SCRYPT_R,
    p: int = SCRYPT_P,
    dklen: int = SCRYPT_DKLEN,
) -> bytes:
    return hashlib.scrypt(
        password, salt=salt, n=n, r=r, p=p, dklen=dklen, maxmem=SCRYPT_MAXMEM
    )


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class CredentialHasher:
    """Password and one-time code hashing.

    Passwords are stored as ``saltHex:keyHex``. The salt fed to scrypt is the
    UTF-8 encoding of the hex salt string, not the raw salt bytes, which is
    what the existing credential store was written with.
    """

    def __init__(
        self,
        *,
        secrets: Optional[SecretGenerator] = None,
        pool: Optional[CryptoWorkerPool] = None,
    ) -> None:
        self.secrets = secrets or SecretGenerator()
        self.pool = pool
        self.logger = logger

    def hash_password(self, plaintext: str) -> str:
        salt_hex = self.secrets.random_bytes(SALT_BYTES).hex()
        key = _derive_key(
            normalize_password(plaintext).encode("utf-8"), salt_hex.encode("utf-8")
        )
        return f"{salt_hex}:{key.hex()}"

    def verify_password(self, plaintext: str, stored: str) -> bool:
        salt_hex, sep, key_hex = (stored or "").partition(":")
        if not sep or not salt_hex or not key_hex:
            self.logger.warning("password_hash_malformed")
            return False
        try:
            expected = bytes.fromhex(key_hex)
        except ValueError:
            self.logger.warning("password_hash_malformed")
            return False
        derived = _derive_key(
            normalize_password(plaintext).encode("utf-8"),
            salt_hex.encode("utf-8"),
        )
        return hmac.compare_digest(derived, expected)

    async def hash_password_async(self, plaintext: str) -> str:
        if self.pool is None:
            return self.hash_password(plaintext)
        return await self.pool.run(self.hash_password, plaintext)

    async def verify_password_async(self, plaintext: str, stored: str) -> bool:
        if self.pool is None:
            return self.verify_password(plaintext, stored)
        return await self.pool.run(self.verify_password, plaintext, stored)

    def hash_verification_code(self, code: str) -> str:
        return sha256_hex(code)

    def hash_refresh_token(self, token: str) -> str:
        return sha256_hex(token)

    def verification_code_matches(self, code: str, stored_hash: str) -> bool:
        return hmac.compare_digest(self.hash_verification_code(code), stored_hash)

    def generate_verification_code(self, length: int = 6) -> str:
        """Numeric code; byte % 10 has a small bias, tolerable for rate-limited codes."""
        if length <= 0:
            raise ValidationError("code length must be positive")
        return "".join(str(b % 10) for b in self.secrets.random_bytes(length))

    def validate_password_strength(self, password: str) -> None:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if not _UPPERCASE.search(password):
            raise ValidationError("password must contain at least one uppercase letter")
        if not _DIGIT.search(password):
            raise ValidationError("password must contain at least one number")


__all__ = [
    "CredentialHasher",
    "normalize_password",
    "sha256_hex",
    "SCRYPT_N",
    "SCRYPT_R",
    "SCRYPT_P",
    "SCRYPT_DKLEN",
]
