"""SRP6 verifier derivation compatible with the TrinityCore auth server."""
from __future__ import annotations

import secrets
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes


@dataclass(frozen=True)
class SRP6Params:
    """Group parameters for the SRP6 exchange."""

    N: int
    g: int
    salt_length: int = 32
    key_length: int = 32


TRINITYCORE = SRP6Params(
    N=int("894B645E89E1535BBDAD5B8B290650530801B18EBFBF5E8FAB3C82872A3E9BB7", 16),
    g=7,
)


def _sha1(*parts: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA1())  # noqa: S303 - mandated by the auth protocol
    for part in parts:
        digest.update(part)
    return digest.finalize()


def generate_salt(params: SRP6Params = TRINITYCORE) -> bytes:
    """Return a cryptographically random salt of the protocol's length."""
    return secrets.token_bytes(params.salt_length)


def compute_verifier(params: SRP6Params, salt: bytes, username: str, password: str) -> bytes:
    """Return ``g^x mod N`` as little-endian bytes, where x = H(salt | H(user:pass))."""
    credentials = _sha1(f"{username}:{password}".encode())
    x = int.from_bytes(_sha1(salt, credentials), "little")
    verifier = pow(params.g, x, params.N)
    return verifier.to_bytes(params.key_length, "little")


__all__ = ["SRP6Params", "TRINITYCORE", "compute_verifier", "generate_salt"]
