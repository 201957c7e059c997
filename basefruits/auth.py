from fastapi import Header, HTTPException, status

from .config import settings


def _key_from_headers(authorization: str | None, x_api_key: str | None) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return x_api_key


def require_admin_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
):
    """Admin routes are open only while no API keys are configured."""
    valid_keys = settings.api_keys()
    if not valid_keys:
        return
    key = _key_from_headers(authorization, x_api_key)
    if key is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing token")
    if key not in valid_keys:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="bad token")


def require_trigger_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
):
    if not settings.TRIGGER_REQUIRE_KEY:
        return
    key = _key_from_headers(authorization, x_api_key)
    if key is None or key not in settings.api_keys():
        raise HTTPException(status_code=401, detail="unauthorized")
