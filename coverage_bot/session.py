from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from coverage_bot.config import settings
from coverage_bot.models.session import ConversationSession

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class SessionCorrupt(Exception):
    """Stored session data could not be decoded."""


def new_session_key() -> str:
    return secrets.token_urlsafe(18)


def new_session_id() -> str:
    return secrets.token_hex(8)


def is_valid_key(session_key: str | None) -> bool:
    return bool(session_key) and _KEY_PATTERN.match(session_key) is not None


def _check_key(session_key: str) -> str:
    if not is_valid_key(session_key):
        raise ValueError(f"Invalid session key: {session_key!r}")
    return session_key


def encode_session(session: ConversationSession) -> str:
    return session.model_dump_json(by_alias=True, indent=2)


def decode_session(raw: str) -> ConversationSession:
    try:
        return ConversationSession.model_validate_json(raw)
    except (ValidationError, ValueError) as exc:
        raise SessionCorrupt(str(exc)) from exc


class SessionStore(Protocol):
    def load(self, session_key: str) -> ConversationSession | None: ...

    def save(self, session_key: str, session: ConversationSession) -> None: ...

    def clear(self, session_key: str) -> None: ...

    def purge(self, older_than: datetime) -> int: ...


class InMemorySessionStore:
    """Keeps serialized sessions in a dict; loads always return a fresh copy."""

    def __init__(self):
        self._data: dict[str, str] = {}

    def load(self, session_key: str) -> ConversationSession | None:
        raw = self._data.get(session_key)
        if raw is None:
            return None
        try:
            return decode_session(raw)
        except SessionCorrupt as exc:
            logger.warning("Discarding corrupt session %s: %s", session_key, exc)
            self._data.pop(session_key, None)
            return None

    def save(self, session_key: str, session: ConversationSession) -> None:
        self._data[_check_key(session_key)] = encode_session(session)

    def clear(self, session_key: str) -> None:
        self._data.pop(session_key, None)

    def purge(self, older_than: datetime) -> int:
        """Drop sessions idle since before *older_than*; returns how many went."""
        stale = []
        for key, raw in self._data.items():
            try:
                if decode_session(raw).last_activity_at < older_than:
                    stale.append(key)
            except SessionCorrupt:
                stale.append(key)
        for key in stale:
            del self._data[key]
        return len(stale)


class FileSessionStore:
    """One ``<key>.json`` file per session under *base_dir*."""

    def __init__(self, base_dir: Path | None = None):
        self.base_dir = base_dir or settings.sessions_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, session_key: str) -> Path:
        return self.base_dir / f"{_check_key(session_key)}.json"

    def load(self, session_key: str) -> ConversationSession | None:
        try:
            path = self._path(session_key)
        except ValueError:
            logger.warning("Ignoring load for invalid session key %r", session_key)
            return None
        if not path.exists():
            return None
        try:
            return decode_session(path.read_text(encoding="utf-8"))
        except (SessionCorrupt, OSError, UnicodeDecodeError) as exc:
            logger.warning("Discarding corrupt session %s: %s", session_key, exc)
            path.unlink(missing_ok=True)
            return None

    def save(self, session_key: str, session: ConversationSession) -> None:
        path = self._path(session_key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(encode_session(session), encoding="utf-8")
        tmp.replace(path)

    def clear(self, session_key: str) -> None:
        try:
            self._path(session_key).unlink(missing_ok=True)
        except ValueError:
            logger.debug("Ignoring clear for invalid session key %r", session_key)

    def purge(self, older_than: datetime) -> int:
        removed = 0
        for path in self.base_dir.glob("*.json"):
            try:
                stale = decode_session(path.read_text(encoding="utf-8")).last_activity_at < older_than
            except (SessionCorrupt, OSError, UnicodeDecodeError):
                stale = True
            if stale:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Purged %d expired sessions from %s", removed, self.base_dir)
        return removed


def build_session_store() -> SessionStore:
    if settings.session_store == "memory":
        return InMemorySessionStore()
    return FileSessionStore()

