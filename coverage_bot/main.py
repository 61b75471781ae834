from __future__ import annotations

import logging
import os

from fastapi import Cookie, Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from coverage_bot.engine import ConversationEngine
from coverage_bot.presentation import render_session
from coverage_bot.session import is_valid_key
from coverage_bot.widget import WidgetRegistry, get_registry

logger = logging.getLogger(__name__)

VERIFIED_COOKIE = "verified_before"

app = FastAPI(title="Insurance Verification Assistant", version="0.1.0")

origins = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
]
if os.environ.get("FRONTEND_URL"):
    origins.append(os.environ["FRONTEND_URL"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class OpenRequest(BaseModel):
    session_key: str | None = None


class MessageRequest(BaseModel):
    content: str


class ConsentRequest(BaseModel):
    granted: bool


def _state(engine: ConversationEngine) -> dict:
    payload = render_session(engine.session, is_open=engine.is_open, in_flight=engine.in_flight)
    payload["session_key"] = engine.session_key
    return payload


def _respond(engine: ConversationEngine) -> JSONResponse:
    response = JSONResponse(_state(engine))
    if engine.session.result is not None:
        response.set_cookie(VERIFIED_COOKIE, "true", max_age=60 * 60 * 24 * 365, samesite="lax")
    return response


def _not_found(session_key: str) -> JSONResponse:
    return JSONResponse({"error": f"Unknown widget session {session_key}"}, status_code=404)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "insurance-verification-assistant"}


@app.post("/api/widget/open")
async def open_widget(
    body: OpenRequest | None = None,
    verified_before: str | None = Cookie(default=None),
    registry: WidgetRegistry = Depends(get_registry),
):
    session_key = body.session_key if body else None
    if session_key is not None and not is_valid_key(session_key):
        return JSONResponse({"error": "Invalid session key"}, status_code=400)
    engine = registry.get_or_create(session_key)
    engine.open(returning=verified_before == "true")
    return _respond(engine)


@app.get("/api/widget/{session_key}")
async def get_widget_state(session_key: str, registry: WidgetRegistry = Depends(get_registry)):
    engine = registry.get(session_key)
    if engine is None:
        return _not_found(session_key)
    return _respond(engine)


@app.post("/api/widget/{session_key}/messages")
async def send_message(
    session_key: str,
    body: MessageRequest,
    registry: WidgetRegistry = Depends(get_registry),
):
    engine = registry.get(session_key)
    if engine is None:
        return _not_found(session_key)
    await engine.handle_input(body.content)
    return _respond(engine)


@app.post("/api/widget/{session_key}/consent")
async def give_consent(
    session_key: str,
    body: ConsentRequest,
    registry: WidgetRegistry = Depends(get_registry),
):
    engine = registry.get(session_key)
    if engine is None:
        return _not_found(session_key)
    engine.give_consent(body.granted)
    return _respond(engine)


@app.post("/api/widget/{session_key}/restart")
async def restart_widget(session_key: str, registry: WidgetRegistry = Depends(get_registry)):
    engine = registry.get(session_key)
    if engine is None:
        return _not_found(session_key)
    engine.restart()
    return _respond(engine)


@app.post("/api/widget/{session_key}/close")
async def close_widget(session_key: str, registry: WidgetRegistry = Depends(get_registry)):
    engine = registry.get(session_key)
    if engine is None:
        return _not_found(session_key)
    engine.close()
    if registry.policy.clear_on_close:
        registry.discard(session_key)
    return {"status": "closed", "session_key": session_key}


# Staff dashboard (demo password gate)
from coverage_bot.api.staff import router as staff_router  # noqa: E402

app.include_router(staff_router)

# WebSocket endpoint is registered in websocket.py
from coverage_bot.websocket import router as ws_router  # noqa: E402

app.include_router(ws_router)
