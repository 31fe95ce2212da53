import asyncio
from uuid import uuid4

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from ledger.auth import TokenAuthority
from ledger.service import Unauthenticated

from .hub import RealtimeHub

logger = structlog.get_logger(__name__)


class WebSocketSession:
    """Adapts a FastAPI WebSocket to the hub's Session protocol."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid4().hex
        self.websocket = websocket

    async def send_json(self, message: dict) -> None:
        await self.websocket.send_json(message)


async def serve_connection(
    websocket: WebSocket,
    hub: RealtimeHub,
    authority: TokenAuthority,
    idle_timeout: float,
) -> None:
    """
    Run one realtime connection until it disconnects or goes idle.

    The client must send ``{"type": "authenticate", "token": ...}`` before it
    is added to any user's session set; until then it receives nothing but
    handshake replies.
    """
    await websocket.accept()
    session = WebSocketSession(websocket)
    logger.info("client_connected", session_id=session.id)

    try:
        while True:
            try:
                message = await asyncio.wait_for(websocket.receive_json(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                logger.info("session_idle_timeout", session_id=session.id)
                await websocket.close(code=1001)
                break
            except (ValueError, KeyError):
                # KeyError: binary frame with no text payload
                await websocket.send_json({"type": "error", "error": "Messages must be JSON"})
                continue

            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "authenticate":
                try:
                    user_id = authority.verify(message.get("token"))
                except Unauthenticated as e:
                    await websocket.send_json({"type": "auth_error", "error": str(e)})
                    continue
                hub.register(user_id, session)
                await websocket.send_json({"type": "authenticated", "userId": user_id})
            elif kind == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "error": f"Unsupported message type {kind!r}"})
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(session.id)
        logger.info("client_disconnected", session_id=session.id)
