"""Authentication utilities for studylib.

Passwords are stored as salted PBKDF2-SHA256 hashes in the form
``pbkdf2_sha256$<iterations>$<salt_hex>$<hash_hex>``.

Access tokens are HS256 JWTs carrying ``sub`` (user id), ``role`` and ``jti``.
Logging out puts the ``jti`` on the token blacklist until the token expires.
"""

from __future__ import annotations

import hashlib
import os
import secrets
import time
import uuid
from typing import Any

import jwt

from .cache import is_token_revoked, revoke_token_id
from .config import get_config
from .errors import AuthenticationFailed

PASSWORD_ALGORITHM = "pbkdf2_sha256"
# Lowered in tests via the environment
PASSWORD_ITERATIONS = int(os.environ.get("STUDYLIB_PASSWORD_ITERATIONS", 260_000))
MIN_PASSWORD_LENGTH = 6

TOKEN_ALGORITHM = "HS256"


def generate_secret() -> str:
    """Generate a new random secret (64 hex chars = 32 bytes)."""
    return secrets.token_hex(32)


def hash_password(password: str, iterations: int = PASSWORD_ITERATIONS) -> str:
    """Hash a password for storage."""
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, iterations)
    return f"{PASSWORD_ALGORITHM}${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify a password against its stored hash."""
    try:
        algorithm, iterations, salt_hex, digest_hex = stored_hash.split("$")
    except ValueError:
        return False
    if algorithm != PASSWORD_ALGORITHM:
        return False

    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode(), bytes.fromhex(salt_hex), int(iterations)
    )
    return secrets.compare_digest(digest.hex(), digest_hex)


# --- Access tokens ---


def issue_access_token(user_id: str, role: str, ttl_minutes: int | None = None) -> dict[str, Any]:
    """Issue a signed access token.

    Returns:
        {"token": ..., "expires_at": <unix seconds>}
    """
    config = get_config()
    if ttl_minutes is None:
        ttl_minutes = config.token_ttl_minutes

    now = int(time.time())
    expires_at = now + ttl_minutes * 60
    claims = {
        "sub": user_id,
        "role": role,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": expires_at,
    }
    token = jwt.encode(claims, config.jwt_secret, algorithm=TOKEN_ALGORITHM)
    return {"token": token, "expires_at": expires_at}


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify a token's signature, expiry and revocation. Returns its claims."""
    try:
        claims = jwt.decode(
            token,
            get_config().jwt_secret,
            algorithms=[TOKEN_ALGORITHM],
            options={"require": ["sub", "jti", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationFailed("Token expired, please login again")
    except jwt.InvalidTokenError:
        raise AuthenticationFailed("Invalid token")

    if is_token_revoked(claims["jti"]):
        raise AuthenticationFailed("Token has been revoked")

    return claims


def revoke_token(claims: dict[str, Any]) -> None:
    """Blacklist a decoded token until it would have expired anyway."""
    remaining = claims["exp"] - time.time()
    if remaining > 0:
        revoke_token_id(claims["jti"], ttl=remaining)


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None
