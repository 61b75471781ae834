"""Per-key conversation engines shared by the REST and WebSocket endpoints."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from coverage_bot.audit import AuditLog
from coverage_bot.config import settings
from coverage_bot.engine import CompletionCallback, ConversationEngine, EnginePolicy
from coverage_bot.models.session import utcnow
from coverage_bot.oracle.base import VerificationOracle, build_oracle
from coverage_bot.session import SessionStore, build_session_store, is_valid_key, new_session_key
from coverage_bot.submissions import SubmissionLog

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 60.0

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


def _last_activity(engine: ConversationEngine) -> datetime:
    return engine.last_activity or _NEVER


class WidgetRegistry:
    """Engines by session key, with idle ones evicted.

    An evicted engine's session stays in the store until it expires, so
    :meth:`get` rebuilds the engine on demand.
    """

    def __init__(
        self,
        store: SessionStore,
        oracle: VerificationOracle,
        policy: EnginePolicy | None = None,
        submissions: SubmissionLog | None = None,
        on_complete: CompletionCallback | None = None,
        audit: AuditLog | None = None,
        max_engines: int = 1000,
    ):
        self.store = store
        self.oracle = oracle
        self.policy = policy or EnginePolicy()
        self.submissions = submissions
        self.on_complete = on_complete
        self.audit = audit
        self.max_engines = max_engines
        self._engines: dict[str, ConversationEngine] = {}
        self._last_sweep = time.monotonic()

    @property
    def engine_count(self) -> int:
        return len(self._engines)

    def get(self, session_key: str) -> ConversationEngine | None:
        engine = self._engines.get(session_key)
        if engine is None and is_valid_key(session_key) and self.store.load(session_key) is not None:
            engine = self.get_or_create(session_key)
        return engine

    def get_or_create(self, session_key: str | None = None) -> ConversationEngine:
        """Return the engine for *session_key*, creating one (and a key) if needed."""
        if time.monotonic() - self._last_sweep >= SWEEP_INTERVAL_SECONDS:
            self.sweep()

        session_key = session_key or new_session_key()
        engine = self._engines.get(session_key)
        if engine is None:
            engine = ConversationEngine(
                session_key,
                self.store,
                self.oracle,
                policy=self.policy,
                submissions=self.submissions,
                on_complete=self.on_complete,
                audit=self.audit,
            )
            self._engines[session_key] = engine
            self._enforce_limit(keep=session_key)
        return engine

    def discard(self, session_key: str) -> None:
        self._engines.pop(session_key, None)

    def sweep(self, now: datetime | None = None) -> int:
        """Evict idle engines and purge expired sessions from the store."""
        now = now or utcnow()
        self._last_sweep = time.monotonic()
        idle = [key for key, engine in self._engines.items() if engine.is_idle(now)]
        for key in idle:
            del self._engines[key]
        purged = self.store.purge(now - timedelta(seconds=self.policy.session_ttl))
        if idle or purged:
            logger.info("Evicted %d idle widgets, purged %d expired sessions", len(idle), purged)
        return len(idle)

    def _enforce_limit(self, keep: str) -> None:
        excess = len(self._engines) - self.max_engines
        if excess <= 0:
            return
        candidates = sorted(
            (key for key, engine in self._engines.items() if key != keep and not engine.in_flight),
            key=lambda key: _last_activity(self._engines[key]),
        )
        evicted = candidates[:excess]
        for key in evicted:
            self._engines.pop(key).close()
        logger.warning("Widget limit %d reached, evicted %d least recently active", self.max_engines, len(evicted))


@lru_cache
def get_submission_log() -> SubmissionLog:
    return SubmissionLog()


@lru_cache
def get_audit_log() -> AuditLog:
    return AuditLog()


@lru_cache
def get_registry() -> WidgetRegistry:
    registry = WidgetRegistry(
        store=build_session_store(),
        oracle=build_oracle(),
        policy=EnginePolicy.from_settings(),
        submissions=get_submission_log(),
        audit=get_audit_log(),
        max_engines=settings.max_widgets,
    )
    logger.info(
        "Widget registry ready (oracle=%s, consent=%s, reject=%s)",
        type(registry.oracle).__name__,
        registry.policy.consent_mode.value,
        registry.policy.reject_policy.value,
    )
    return registry
