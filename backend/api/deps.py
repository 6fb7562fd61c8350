from typing import Any

from fastapi import Depends, HTTPException, Request, status

from db.supabase_client import get_user_client


def _get_bearer_token(request: Request) -> str:
    """Extract Bearer token from Authorization header. Raises 401 if missing or malformed."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
        )
    return auth_header.removeprefix("Bearer ")


def _resolve_owner(token: str) -> dict[str, Any] | None:
    """Look the token up in Supabase Auth. The auth user id is the catalog owner id."""
    client = get_user_client(token)
    response = client.auth.get_user(token)
    if response is None or response.user is None:
        return None
    return {"id": response.user.id, "email": response.user.email}


async def get_current_user(token: str = Depends(_get_bearer_token)) -> dict[str, Any]:  # noqa: B008
    """Validate JWT and return the authenticated owner. Raises 401 if invalid."""
    try:
        user = _resolve_owner(token)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return user


async def get_optional_user(request: Request) -> dict[str, Any] | None:
    """Same as get_current_user but returns None instead of raising.

    The streaming route reports a missing caller as an `error` event
    inside the stream rather than as an HTTP status.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    try:
        return _resolve_owner(auth_header.removeprefix("Bearer "))
    except Exception:
        return None
