"""Password login and in-memory bearer tokens.

Tokens live for the lifetime of the server process; a restart
invalidates all of them. ``TokenStore.is_valid`` is the identity
predicate handed to the front door.
"""

from __future__ import annotations

import hmac
import logging
import secrets

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


class TokenStore:
    """Issues and validates bearer tokens against a single password."""

    def __init__(self, password: str | None = None) -> None:
        if not password:
            password = secrets.token_urlsafe(16)
            logger.warning("No password configured; generated one: %s", password)
        self._password = password
        self._tokens: set[str] = set()

    def login(self, password: str) -> str | None:
        """Return a new token if ``password`` matches, else None."""
        if not hmac.compare_digest(password.encode("utf-8"), self._password.encode("utf-8")):
            return None
        token = secrets.token_hex(TOKEN_BYTES)
        self._tokens.add(token)
        return token

    def issue(self) -> str:
        """Issue a token without a password check (tests, embedding)."""
        token = secrets.token_hex(TOKEN_BYTES)
        self._tokens.add(token)
        return token

    def revoke(self, token: str) -> None:
        self._tokens.discard(token)

    def is_valid(self, token: str | None) -> bool:
        return bool(token) and token in self._tokens


def extract_bearer_token(header_value: str | None) -> str | None:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not header_value:
        return None
    parts = header_value.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        return None
    return parts[1]
