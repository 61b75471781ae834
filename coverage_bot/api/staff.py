"""Staff dashboard endpoints for reviewing completed verifications.

Protected by a single shared demo password sent in the ``X-Staff-Password``
header. This is a demonstration gate, not an authentication system.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from coverage_bot.audit import AuditLog
from coverage_bot.config import settings
from coverage_bot.dashboard import render_dashboard
from coverage_bot.submissions import SubmissionLog
from coverage_bot.widget import get_audit_log, get_submission_log

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/staff", tags=["staff"])


class LoginRequest(BaseModel):
    password: str


def _password_ok(password: str | None) -> bool:
    if not password:
        return False
    return secrets.compare_digest(password.encode(), settings.staff_password.encode())


def require_staff(x_staff_password: str | None = Header(default=None)) -> None:
    if not _password_ok(x_staff_password):
        raise HTTPException(status_code=401, detail="Invalid password. Please try again.")


@router.post("/login")
async def login(body: LoginRequest):
    if not _password_ok(body.password):
        logger.warning("Rejected staff dashboard login")
        raise HTTPException(status_code=401, detail="Invalid password. Please try again.")
    return {"status": "ok"}


@router.get("/submissions", dependencies=[Depends(require_staff)])
async def list_submissions(log: SubmissionLog = Depends(get_submission_log)):
    return [r.model_dump(mode="json", by_alias=True) for r in log.list()]


@router.delete("/submissions", dependencies=[Depends(require_staff)])
async def clear_submissions(log: SubmissionLog = Depends(get_submission_log)):
    log.clear()
    logger.info("Staff cleared all submission records")
    return {"status": "cleared"}


@router.get("/audit", dependencies=[Depends(require_staff)])
async def list_audit_events(
    session_id: str | None = Query(default=None),
    audit: AuditLog = Depends(get_audit_log),
):
    return [e.model_dump(mode="json", by_alias=True) for e in audit.events(session_id)]


@router.get("/dashboard", response_class=HTMLResponse, dependencies=[Depends(require_staff)])
async def dashboard(log: SubmissionLog = Depends(get_submission_log)):
    return HTMLResponse(render_dashboard(log.list()))
