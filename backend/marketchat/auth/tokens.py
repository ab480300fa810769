"""JWT bearer credential verification.

Tokens are issued elsewhere in the marketplace; the chat subsystem only
verifies them. The user id travels in the ``id`` claim (``sub`` accepted as
a fallback).
"""
import logging
from typing import Optional

import jwt

from marketchat.chat.errors import AuthError

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Decodes bearer tokens with a shared secret."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", leeway_seconds: int = 0) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._leeway = leeway_seconds

    def verify(self, token: Optional[str]) -> str:
        """Return the user id carried by ``token``.

        Raises:
            AuthError: ``missing_token`` if empty, ``invalid_token`` if the
                signature, expiry or payload is not acceptable.
        """
        if not token:
            raise AuthError(AuthError.MISSING_TOKEN)
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                leeway=self._leeway,
            )
        except jwt.InvalidTokenError as exc:
            logger.debug("Token rejected: %s", exc)
            raise AuthError(AuthError.INVALID_TOKEN) from exc

        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise AuthError(AuthError.INVALID_TOKEN)
        return str(user_id)


def bearer_from_header(header: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
