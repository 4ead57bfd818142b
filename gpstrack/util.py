"""Random tokens, identifiers and password hashing."""

from __future__ import annotations

import base64
import secrets
import uuid

import bcrypt

_BCRYPT_COST = 12


def gen_random_bytes(n: int) -> bytes:
    """Return ``n`` cryptographically secure random bytes."""
    return secrets.token_bytes(n)


def gen_random_string(prefix: bytes, n: int) -> str:
    """Return ``prefix`` followed by ``n`` random bytes, URL-safe base64 without padding."""
    data = bytes(prefix) + gen_random_bytes(n)
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def crypt_password(password: str) -> str:
    """Hash a password with bcrypt."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_COST))
    return hashed.decode("ascii")


def gen_uuid() -> str:
    """Return a random (version 4) UUID as text."""
    return str(uuid.uuid4())


def gen_uuid_bytes() -> bytes:
    """Return a random (version 4) UUID as 16 bytes."""
    return uuid.uuid4().bytes