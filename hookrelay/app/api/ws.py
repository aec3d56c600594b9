"""WebSocket endpoint for subscribers.

Clients connect at /ws/{secret}. The secret must already exist (created by an
administrator or by a successful webhook handshake), be enabled, and be under
its connection limit; otherwise the handshake is refused before accept.

Protocol:
  Server -> Client (JSON text):
    {"type": "connected", "data": {"connection_id": "...", "timestamp": "...", ...}}
    <webhook payload, verbatim>
    {"type": "ping"}                      heartbeat probe, answer with a pong
    {"type": "pong", "timestamp": 1700000000000}

  Client -> Server (JSON):
    {"type": "ping"}                      client keep-alive, answered with a pong
    {"type": "pong"}                      answer to a heartbeat probe
"""

import json
import time
from datetime import UTC, datetime

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from hookrelay.app.errors import AdmissionError
from hookrelay.app.services.ws_manager import EvictionCause, WebSocketChannel

router = APIRouter()

# Policy violation: used for every admission refusal
_REJECT_CODE = 1008


@router.websocket("/ws/{secret}")
async def websocket_endpoint(ws: WebSocket, secret: str) -> None:
    services = ws.app.state.services
    manager = services.manager
    channel = WebSocketChannel(ws)

    try:
        conn = await manager.admit(secret, channel)
    except AdmissionError as exc:
        await ws.close(code=_REJECT_CODE, reason=exc.reason)
        return

    cause = EvictionCause.CLOSED
    try:
        # Payloads dispatched while accepting queue behind the connected frame
        await channel.open(
            json.dumps(
                {
                    "type": "connected",
                    "data": {
                        "secret": secret,
                        "connection_id": conn.id,
                        "timestamp": datetime.now(UTC).isoformat(),
                        "heartbeat_interval": services.settings.client_heartbeat_interval,
                    },
                }
            )
        )

        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON frame from WS {}", conn.id)
                continue

            msg_type = msg.get("type") if isinstance(msg, dict) else None

            if msg_type == "ping":
                manager.mark_alive(conn)
                await manager.send(conn, {"type": "pong", "timestamp": int(time.time() * 1000)})

            elif msg_type == "pong":
                manager.mark_alive(conn)

            else:
                logger.info("WS {} sent unhandled message type: {}", conn.id, msg_type)

    except WebSocketDisconnect:
        logger.info("WS client {} disconnected normally", conn.id)
    except Exception:
        if conn.channel.closed:
            # Evicted server-side (kick, disable, heartbeat) while we were reading
            logger.debug("WS {} receive loop ended after server-side close", conn.id)
        else:
            cause = EvictionCause.ERROR
            logger.exception("WS error for client {}", conn.id)
    finally:
        await manager.release(conn, cause)
