"""
Auth dependencies.

Admin endpoints require the admin key as a bearer token. Account
endpoints require the account's own API key, issued via
POST /v1/admin/accounts.
"""

import hmac
import os
from typing import Annotated

from fastapi import Depends, Request

from lslmsr.api_errors import APIError
from lslmsr.auth import User


ADMIN_KEY = os.environ.get("LSLMSR_ADMIN_KEY", "")


def _get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return None


async def require_auth(request: Request) -> User:
    """Require a valid account API key. Returns the authenticated User."""
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")

    # The admin key is not an account key
    if ADMIN_KEY and hmac.compare_digest(token, ADMIN_KEY):
        raise APIError(401, "invalid_api_key",
                       "Admin key cannot be used for account endpoints. "
                       "Use an account key from /v1/admin/accounts.")

    user = request.app.state.auth_store.authenticate(token)
    if user is None:
        raise APIError(401, "invalid_api_key", "Invalid or rotated API key")
    return user


async def require_admin(request: Request) -> None:
    """Require the admin API key."""
    if not ADMIN_KEY:
        raise APIError(500, "admin_required",
                       "LSLMSR_ADMIN_KEY not configured")
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")
    if not hmac.compare_digest(token, ADMIN_KEY):
        raise APIError(403, "admin_required", "Admin API key required")


AuthUser = Annotated[User, Depends(require_auth)]
AdminDep = Annotated[None, Depends(require_admin)]
