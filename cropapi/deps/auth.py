import os
import secrets

from fastapi import Header, HTTPException, status

API_KEY_HEADER = "X-Api-Key"


def _reject(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": status.HTTP_401_UNAUTHORIZED, "message": message},
    )


def require_api_key(x_api_key: str | None = Header(default=None, alias=API_KEY_HEADER)) -> None:
    """Guard for every /api route; the key comes from the API_KEY env var at call time."""
    expected = os.getenv("API_KEY")
    if not expected:
        raise _reject("API key not configured")
    if not x_api_key or not secrets.compare_digest(x_api_key.encode(), expected.encode()):
        raise _reject("Invalid API key")
