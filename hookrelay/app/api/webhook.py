"""Webhook intake — the endpoint the upstream event source calls.

POST /api/webhook?secret=<secret>

  Handshake body: {"op": 13, "d": {"event_ts": "...", "plain_token": "..."}}
    -> {"plain_token": "...", "signature": "<128 hex chars>"}

  Any other JSON body is relayed to the secret's WebSocket subscribers
    -> {"status": "delivered" | "no_subscriber" | "send_error", "delivered": n, "failed": n}

Unknown or disabled secrets get 403 on the payload path (see main.py handlers).
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from hookrelay.app.api.deps import get_services
from hookrelay.app.container import RelayServices
from hookrelay.app.schemas.webhook import DeliveryResponse, HandshakeResponse

router = APIRouter(tags=["webhook"])


@router.post("/webhook", response_model=HandshakeResponse | DeliveryResponse)
async def receive_webhook(
    request: Request,
    secret: str | None = Query(default=None),
    services: RelayServices = Depends(get_services),
) -> dict:
    if not secret:
        services.activity.record("error", "Webhook request without secret")
        raise HTTPException(status_code=400, detail="Secret required")

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON body") from None

    return await services.router.handle(secret, body)
