"""WebSocket handler for the verification widget."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from coverage_bot.engine import ConversationEngine
from coverage_bot.presentation import render_message, render_session
from coverage_bot.session import is_valid_key
from coverage_bot.widget import WidgetRegistry, get_registry

logger = logging.getLogger(__name__)
router = APIRouter()


async def _push_updates(websocket: WebSocket, engine: ConversationEngine, seen: tuple[str, int]) -> tuple[str, int]:
    """Send transcript entries added since *seen* followed by a state frame.

    *seen* is ``(session_id, message_count)``; a restart changes the session id,
    in which case the whole fresh transcript is sent.
    """
    session = engine.session
    session_id, count = seen
    if session.session_id != session_id:
        count = 0
    for message in session.transcript[count:]:
        await websocket.send_json({"type": "message", **render_message(message)})
    state = render_session(session, is_open=engine.is_open, in_flight=engine.in_flight)
    state.pop("messages")
    await websocket.send_json({"type": "state", **state})
    return session.session_id, len(session.transcript)


@router.websocket("/ws/{session_key}")
async def websocket_endpoint(
    websocket: WebSocket,
    session_key: str,
    registry: WidgetRegistry = Depends(get_registry),
):
    await websocket.accept()

    if not is_valid_key(session_key):
        await websocket.send_json({"type": "error", "content": "Invalid session key"})
        await websocket.close()
        return

    engine = registry.get_or_create(session_key)
    returning = websocket.cookies.get("verified_before") == "true"
    engine.open(returning=returning)
    seen = await _push_updates(websocket, engine, ("", 0))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = {"type": "message", "content": raw}

            msg_type = data.get("type", "message")

            if msg_type == "message":
                await engine.handle_input(str(data.get("content", "")))
            elif msg_type == "consent":
                engine.give_consent(bool(data.get("granted")))
            elif msg_type == "restart":
                engine.restart()
            elif msg_type == "close":
                engine.close()
                await websocket.send_json({"type": "closed"})
                await websocket.close()
                return
            else:
                await websocket.send_json({"type": "error", "content": f"Unknown message type: {msg_type}"})
                continue

            seen = await _push_updates(websocket, engine, seen)

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for widget %s", session_key)
        # Keep the engine so the conversation can be resumed
    except Exception:
        logger.exception("WebSocket error for widget %s", session_key)
        try:
            await websocket.send_json({
                "type": "error",
                "content": "An unexpected error occurred. Please try again.",
            })
        except Exception:
            logger.debug("Could not deliver error frame to widget %s", session_key)
