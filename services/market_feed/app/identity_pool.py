"""
Identity pool: the rotating set of network identities used to reach a source.

Each session binds an optional proxy, a user agent, a cookie jar and a request
counter. The pool hands sessions out round-robin, quarantines them when a
source blocks them, and restores them on reset (by an operator, or by the
scheduler once the no-capacity cool-down has elapsed).

The pool is a resource allocator only. It never retries; retry policy belongs
to the source connector.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from shared.schemas import PoolStatus, ProxyConfig, SessionStatus, SourceConfig
from .errors import NoCapacityError
from .events import EventChannel, PoolEvent
from .rate_limiter import RateLimiter
from .stealth import get_random_user_agent

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One network identity. Owned and mutated only by its pool."""
    id: str
    user_agent: str
    proxy: Optional[ProxyConfig] = None
    cookies: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    request_count: int = 0
    last_request_at: Optional[float] = None  # monotonic seconds
    blocked: bool = False
    blocked_reason: Optional[str] = None
    # Held for the whole spacing + fetch exchange
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def in_use(self) -> bool:
        return self.lock.locked()

    def to_status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.id,
            proxy=self.proxy.key if self.proxy else None,
            user_agent=self.user_agent,
            request_count=self.request_count,
            blocked=self.blocked,
            blocked_reason=self.blocked_reason,
        )


class IdentityPool:
    """
    Round-robin pool of sessions for a single source.

    Features:
    - One session per configured proxy, or a single direct session
    - Persistent round-robin cursor so no session is starved
    - Blocked-proxy tracking
    - Explicit lifecycle (reset_session / reset_all / close)
    """

    def __init__(
        self,
        config: SourceConfig,
        events: Optional[EventChannel] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        self.config = config
        self.source_id = config.source_id
        self.events = events
        self.limiter = limiter or RateLimiter(
            config.request_delay,
            config.rate_limit,
            source_id=config.source_id,
        )
        self.blocked_proxies: Set[str] = set()
        self._sessions: List[Session] = []
        self._cursor = 0
        self._closed = False
        self._initialize_sessions()

    def _initialize_sessions(self) -> None:
        proxies = list(self.config.proxies)
        if proxies and not self.config.anti_detection.rotate_proxies:
            proxies = proxies[:1]

        if proxies:
            for i, proxy in enumerate(proxies):
                self._sessions.append(self._new_session(i, proxy))
        else:
            self._sessions.append(self._new_session(0, None))

        logger.info(
            f"[{self.source_id}] Identity pool ready with {len(self._sessions)} session(s)",
            extra={"event_type": "pool_init", "source_id": self.source_id},
        )

    def _new_session(self, index: int, proxy: Optional[ProxyConfig]) -> Session:
        return Session(
            id=f"session_{index}",
            user_agent=get_random_user_agent(self.config.user_agents),
            proxy=proxy,
        )

    @property
    def sessions(self) -> List[Session]:
        return list(self._sessions)

    def get_session(self, session_id: str) -> Optional[Session]:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def available_count(self) -> int:
        return sum(1 for s in self._sessions if not s.blocked)

    def _publish(self, kind: str, session: Optional[Session] = None, reason: str = "") -> None:
        if self.events is None:
            return
        self.events.publish(PoolEvent(
            kind=kind,
            source_id=self.source_id,
            session_id=session.id if session else "",
            reason=reason,
        ))

    # ─────────────────────────────────────────────────────────────────────────
    # Allocation
    # ─────────────────────────────────────────────────────────────────────────

    def acquire_session(self) -> Session:
        """
        Return the next unblocked session in round-robin order.

        Sessions that are idle are preferred over sessions currently held by
        another in-flight request. Raises NoCapacityError when every session
        is blocked.
        """
        if self._closed:
            raise RuntimeError(f"[{self.source_id}] identity pool is closed")

        total = len(self._sessions)
        fallback: Optional[int] = None
        for offset in range(total):
            index = (self._cursor + offset) % total
            session = self._sessions[index]
            if session.blocked:
                continue
            if not session.in_use:
                self._cursor = (index + 1) % total
                return session
            if fallback is None:
                fallback = index

        if fallback is not None:
            self._cursor = (fallback + 1) % total
            return self._sessions[fallback]

        logger.warning(
            f"[{self.source_id}] All {total} sessions blocked - no capacity",
            extra={"event_type": "no_capacity", "source_id": self.source_id},
        )
        self._publish("no_capacity", reason="all sessions blocked")
        raise NoCapacityError(self.source_id, total)

    async def await_spacing(self, session: Session) -> float:
        """Apply the source budget, then the per-session delay."""
        await self.limiter.await_budget()
        return await self.limiter.await_spacing(session)

    # ─────────────────────────────────────────────────────────────────────────
    # Quarantine and recovery
    # ─────────────────────────────────────────────────────────────────────────

    def mark_blocked(self, session: Session, reason: str) -> None:
        session.blocked = True
        session.blocked_reason = reason
        if session.proxy:
            self.blocked_proxies.add(session.proxy.key)

        logger.warning(
            f"[{self.source_id}] {session.id} blocked: {reason}",
            extra={
                "event_type": "session_blocked",
                "source_id": self.source_id,
                "session_id": session.id,
            },
        )
        self._publish("session_blocked", session, reason)

    def reset_session(self, session: Session) -> None:
        session.blocked = False
        session.blocked_reason = None
        session.cookies.clear()
        session.headers.clear()
        session.request_count = 0
        session.user_agent = get_random_user_agent(self.config.user_agents)
        if session.proxy:
            self.blocked_proxies.discard(session.proxy.key)

        logger.info(
            f"[{self.source_id}] {session.id} reset",
            extra={
                "event_type": "session_reset",
                "source_id": self.source_id,
                "session_id": session.id,
            },
        )
        self._publish("session_reset", session)

    def reset_all(self) -> None:
        for session in self._sessions:
            self.reset_session(session)
        logger.info(f"[{self.source_id}] All {len(self._sessions)} sessions reset")

    # ─────────────────────────────────────────────────────────────────────────
    # Status and teardown
    # ─────────────────────────────────────────────────────────────────────────

    def get_status(self) -> PoolStatus:
        available = self.available_count()
        return PoolStatus(
            source_id=self.source_id,
            total_sessions=len(self._sessions),
            available_sessions=available,
            blocked_sessions=len(self._sessions) - available,
            blocked_proxies=sorted(self.blocked_proxies),
            sessions=[s.to_status() for s in self._sessions],
        )

    def close(self) -> None:
        """Drop all session state. The pool cannot be used afterwards."""
        for session in self._sessions:
            session.cookies.clear()
            session.headers.clear()
        self._closed = True
        logger.info(f"[{self.source_id}] Identity pool closed")
