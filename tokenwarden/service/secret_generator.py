from __future__ import annotations

import secrets

OPAQUE_TOKEN_BYTES = 32


class SecretGenerator:
    """Source of unguessable values backed by the OS CSPRNG."""

    def new_opaque_token(self) -> str:
        """Return 32 random bytes hex-encoded (64 characters)."""
        return secrets.token_hex(OPAQUE_TOKEN_BYTES)

    def random_bytes(self, length: int) -> bytes:
        return secrets.token_bytes(length)


__all__ = ["SecretGenerator", "OPAQUE_TOKEN_BYTES"]
