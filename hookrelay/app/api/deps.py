"""Shared FastAPI dependencies."""

import hmac

from fastapi import HTTPException, Request

from hookrelay.app.container import RelayServices

_ADMIN_HEADER = "X-Admin-Token"


def get_services(request: Request) -> RelayServices:
    return request.app.state.services


def require_admin(request: Request) -> None:
    """Guard admin routes with a shared token when one is configured.

    Without ``admin_token`` the admin API is open; run it behind a trusted
    proxy in that case.
    """
    expected = get_services(request).settings.admin_token
    if not expected:
        return
    supplied = request.headers.get(_ADMIN_HEADER, "")
    if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid admin token")
