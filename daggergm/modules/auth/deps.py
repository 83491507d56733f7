from __future__ import annotations

from fastapi import Header, HTTPException, status

from daggergm.config import settings


def optional_user_token(
    x_user_token: str | None = Header(default=None, alias="X-User-Token"),
) -> str | None:
    cleaned = str(x_user_token or "").strip()
    return cleaned or None


def require_user_token(
    x_user_token: str | None = Header(default=None, alias="X-User-Token"),
) -> str:
    cleaned = str(x_user_token or "").strip()
    if not cleaned:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Missing user token"},
        )
    return cleaned


def require_admin_token(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> str:
    expected = str(settings.admin_api_token or "").strip()
    provided = str(x_admin_token or "").strip()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "Admin endpoints are disabled"},
        )
    if provided != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Invalid admin token"},
        )
    return provided
