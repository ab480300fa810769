"""FastAPI dependencies for bearer-authenticated HTTP endpoints."""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from marketchat.chat.errors import AuthError
from marketchat.chat.hub import get_hub
from marketchat.chat.schemas import Identity

_bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Identity:
    """Resolve the request's bearer token to an identity (401 on failure)."""
    if credentials is None:
        raise AuthError(AuthError.MISSING_TOKEN)
    return get_hub().gateway.authenticate(credentials.credentials)
