from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from fastapi import Cookie, Header, HTTPException, Request, status

from ugc_tracker.settings import Settings
from ugc_tracker.accounts import verify_token


def _same(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(None, 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def require_api_key(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> None:
    """Optional API-key guard.

    If API_KEY is set (non-empty), requests must provide either:
      - Header: X-API-Key: <API_KEY>
      - Header: Authorization: Bearer <API_KEY>

    If API_KEY is not set, this guard becomes a no-op.
    """
    s: Settings = request.app.state.settings
    expected = (s.api_key or "").strip()
    if not expected:
        return

    if x_api_key and _same(x_api_key.strip(), expected):
        return

    token = _bearer(authorization)
    if token and _same(token, expected):
        return

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized (missing/invalid API key)",
    )


def require_cron_key(
    request: Request,
    x_cron_key: Optional[str] = Header(default=None, alias="x-cron-key"),
) -> None:
    """The sync trigger needs x-cron-key == CRON_SECRET; an unset secret locks it."""
    s: Settings = request.app.state.settings
    expected = s.cron_secret or ""
    if not x_cron_key or not expected or not _same(x_cron_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def current_claims(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Cookie(default=None),
) -> Dict[str, Any]:
    """JWT claims from `Authorization: Bearer` or the `token` cookie."""
    raw = _bearer(authorization) or token
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No token provided")

    claims = verify_token(raw, request.app.state.settings)
    if claims is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return claims
