from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    ConfigurationError,
    InvalidClaimsError,
    InvalidSignatureError,
    InvalidTokenFormatError,
    TokenExpiredError,
    ValidationError,
)
from tokenwarden.service.results import Result
from tokenwarden.service.secret_generator import SecretGenerator

logger = get_logger(__name__)

HS256 = "HS256"
RS256 = "RS256"
SUPPORTED_ALGORITHMS = (HS256, RS256)
_SEGMENT_ALPHABET = re.compile(r"[A-Za-z0-9_-]*")


@dataclass(frozen=True)
class PlatformToken:
    token: str
    session_id: str
    expires_at: datetime


def _now() -> datetime:
    return datetime.now(timezone.utc)


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    """Strict base64url decode; raises ValueError for any non-canonical segment.

    Only the canonical encoding of the decoded bytes is accepted, so unused
    trailing bits and characters outside the alphabet cannot alias a valid
    segment.
    """
    if not _SEGMENT_ALPHABET.fullmatch(segment) or len(segment) % 4 == 1:
        raise ValueError("segment is not base64url")
    padding_chars = "=" * ((4 - len(segment) % 4) % 4)
    decoded = base64.b64decode(segment + padding_chars, altchars=b"-_", validate=True)
    if encode_segment(decoded) != segment:
        raise ValueError("segment is not canonical base64url")
    return decoded


def _compact_json(value: dict[str, Any]) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


class TokenCodec:
    """Encode and verify compact JWS tokens signed with HS256 or RS256.

    Both algorithms share header/payload handling and differ only in the
    signing primitive. Verification never trusts the header for the key
    type: the caller names the algorithm and a header that disagrees is
    rejected.
    """

    def __init__(
        self,
        *,
        leeway_seconds: int = 0,
        secrets: Optional[SecretGenerator] = None,
    ) -> None:
        self.leeway = timedelta(seconds=leeway_seconds)
        self.secrets = secrets or SecretGenerator()
        self.logger = logger

    # -- key handling ------------------------------------------------------

    def _load_private_key(self, key: str | bytes) -> rsa.RSAPrivateKey:
        data = key.encode("utf-8") if isinstance(key, str) else key
        try:
            loaded = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("platform signing key is not a PEM private key") from exc
        if not isinstance(loaded, rsa.RSAPrivateKey):
            raise ConfigurationError("platform signing key must be an RSA key")
        return loaded

    def _load_public_key(self, key: str | bytes) -> rsa.RSAPublicKey:
        data = key.encode("utf-8") if isinstance(key, str) else key
        if b"PRIVATE KEY" in data:
            return self._load_private_key(data).public_key()
        try:
            loaded = serialization.load_pem_public_key(data)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("verification key is not a PEM public key") from exc
        if not isinstance(loaded, rsa.RSAPublicKey):
            raise ConfigurationError("verification key must be an RSA key")
        return loaded

    @staticmethod
    def _require_key(key: Any) -> None:
        if not key:
            raise ConfigurationError("signing key material is not configured")

    # -- signing primitives -------------------------------------------------

    def _sign(self, signing_input: bytes, key: Any, algorithm: str) -> bytes:
        if algorithm == HS256:
            secret = key.encode("utf-8") if isinstance(key, str) else key
            return hmac.new(secret, signing_input, hashlib.sha256).digest()
        private_key = self._load_private_key(key)
        return private_key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    def _signature_matches(
        self, signing_input: bytes, signature: bytes, key: Any, algorithm: str
    ) -> bool:
        if algorithm == HS256:
            return hmac.compare_digest(self._sign(signing_input, key, HS256), signature)
        public_key = self._load_public_key(key)
        try:
            public_key.verify(signature, signing_input, padding.PKCS1v15(), hashes.SHA256())
        except CryptoInvalidSignature:
            return False
        return True

    # -- public API ----------------------------------------------------------

    def encode(self, claims: dict[str, Any], key: Any, algorithm: str = HS256) -> str:
        """Serialize ``claims`` as ``header.payload.signature``.

        Raises ConfigurationError when ``key`` is empty or unusable and
        ValidationError for an unsupported algorithm.
        """
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValidationError(f"unsupported algorithm {algorithm}")
        self._require_key(key)
        header = {"alg": algorithm, "typ": "JWT"}
        signing_input = f"{encode_segment(_compact_json(header))}.{encode_segment(_compact_json(claims))}"
        signature = self._sign(signing_input.encode("utf-8"), key, algorithm)
        return f"{signing_input}.{encode_segment(signature)}"

    def verify(
        self,
        token: str,
        key: Any,
        algorithm: str = HS256,
        *,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Result[dict[str, Any]]:
        """Check format, signature, expiry and optional iss/aud claims."""
        if algorithm not in SUPPORTED_ALGORITHMS:
            return Result.failure(ValidationError(f"unsupported algorithm {algorithm}"))
        if not key:
            return Result.failure(ConfigurationError("signing key material is not configured"))

        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3:
            return Result.failure(InvalidTokenFormatError("token must have three segments"))
        header_b64, payload_b64, signature_b64 = parts
        try:
            header = json.loads(decode_segment(header_b64))
            payload = json.loads(decode_segment(payload_b64))
            signature = decode_segment(signature_b64)
        except (binascii.Error, ValueError):
            self.logger.warning("jwt_segment_decode_failed")
            return Result.failure(InvalidTokenFormatError("token segment is not valid base64url JSON"))
        if not isinstance(header, dict) or not isinstance(payload, dict):
            return Result.failure(InvalidTokenFormatError("token segments must be JSON objects"))
        # Algorithm confusion guard
        if header.get("alg") != algorithm:
            self.logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return Result.failure(InvalidTokenFormatError("unexpected token algorithm"))

        signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
        try:
            matches = self._signature_matches(signing_input, signature, key, algorithm)
        except ConfigurationError as exc:
            return Result.failure(exc)
        except (ValueError, TypeError):
            matches = False
        if not matches:
            return Result.failure(InvalidSignatureError("token signature is invalid"))

        exp = payload.get("exp")
        if exp is not None:
            try:
                exp_ts = float(exp)
            except (TypeError, ValueError):
                return Result.failure(InvalidTokenFormatError("exp claim is not numeric"))
            current = (now or _now()).timestamp()
            if current > exp_ts + self.leeway.total_seconds():
                return Result.failure(TokenExpiredError("token has expired"))

        if issuer is not None and payload.get("iss") != issuer:
            return Result.failure(InvalidClaimsError("token issuer mismatch"))
        if audience is not None:
            aud = payload.get("aud")
            valid_aud = aud == audience if isinstance(aud, str) else (
                isinstance(aud, list) and audience in aud
            )
            if not valid_aud:
                return Result.failure(InvalidClaimsError("token audience mismatch"))
        return Result.success(payload)

    def mint_platform_token(
        self,
        principal_id: str,
        private_key: Any,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> PlatformToken:
        """RS256 token whose subject binds the principal to a fresh session id."""
        issued = now or _now()
        expires = issued + ttl
        session_id = self.secrets.new_opaque_token()
        claims = {
            "sub": f"{principal_id}|{session_id}",
            "iss": issuer,
            "aud": audience,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
        }
        token = self.encode(claims, private_key, RS256)
        return PlatformToken(token=token, session_id=session_id, expires_at=expires)


__all__ = [
    "HS256",
    "RS256",
    "PlatformToken",
    "TokenCodec",
    "decode_segment",
    "encode_segment",
]
