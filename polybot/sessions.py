"""
Per-user session state for Polybot.

Each Telegram user gets exactly one Session, created lazily on their first
message. A session carries the chat-mode flag, the last-activity timestamp,
and a Conversation (multi-turn LLM history used while in chat mode).

Locking is two-level: the registry lock only guards structural insertion and
eviction of the map, while every Session owns its own lock that the router
holds for the whole handling of one message. Unrelated users therefore never
wait on each other, and messages from one user are processed in arrival order.

Sessions idle longer than the configured TTL are evicted by a background loop;
a TTL of zero keeps sessions for the process lifetime.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class Conversation:
    """Multi-turn chat history: one system prompt plus capped role/content turns."""

    system_prompt: str = ""
    turns: list[dict[str, str]] = field(default_factory=list)
    max_pairs: int = 20

    def reset(self, system_prompt: str) -> None:
        self.system_prompt = system_prompt
        self.turns.clear()

    def add_exchange(self, user_text: str, assistant_text: str) -> None:
        """Record one user/assistant pair, dropping the oldest pairs past the cap."""
        self.turns.append({"role": "user", "content": user_text})
        self.turns.append({"role": "assistant", "content": assistant_text})
        max_entries = self.max_pairs * 2
        if len(self.turns) > max_entries:
            del self.turns[: len(self.turns) - max_entries]

    def messages_with(self, user_text: str) -> list[dict[str, str]]:
        """History plus a pending user turn, ready to send to the model."""
        return [*self.turns, {"role": "user", "content": user_text}]

    def __len__(self) -> int:
        return len(self.turns)


@dataclass
class Session:
    """Per-user state for a single Telegram user."""

    user_id: int
    chat_mode: bool = False
    conversation: Conversation = field(default_factory=Conversation)
    # Wall-clock time for display in info().
    created_at: float = field(default_factory=time.time)
    # Monotonic clock so TTL expiry ignores wall-clock adjustments.
    last_activity: float = field(default_factory=time.monotonic)
    message_count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


class SessionRegistry:
    """
    Owns every Session in the process.

    Built once at startup and passed by reference to the router and the
    orchestrator. The mode/touch helpers expect the caller to hold
    ``session.lock`` (see :meth:`acquire`).
    """

    def __init__(self, *, ttl_seconds: float = 0.0, max_history: int = 20) -> None:
        self._sessions: dict[int, Session] = {}
        self._lock = asyncio.Lock()
        self._ttl = max(0.0, float(ttl_seconds))
        self._max_history = max(1, int(max_history))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_or_create(self, user_id: int) -> Session:
        """Return the user's session, creating it on first use. Idempotent."""
        session = self._sessions.get(user_id)
        if session is not None:
            return session
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = Session(
                    user_id=user_id,
                    conversation=Conversation(max_pairs=self._max_history),
                )
                self._sessions[user_id] = session
                logger.debug("sessions.created", user_id=user_id, total=len(self._sessions))
        return session

    @asynccontextmanager
    async def acquire(self, user_id: int) -> AsyncIterator[Session]:
        """
        Hold the user's session lock for the duration of the block.

        If the session was evicted while we waited for its lock, retry with
        the replacement so no message ever mutates an orphaned session.
        """
        while True:
            session = await self.get_or_create(user_id)
            await session.lock.acquire()
            if self._sessions.get(user_id) is session:
                break
            session.lock.release()
        try:
            yield session
        finally:
            session.lock.release()

    @staticmethod
    def touch(session: Session) -> None:
        session.last_activity = time.monotonic()
        session.message_count += 1

    @staticmethod
    def set_mode(session: Session, chat_mode: bool) -> None:
        if session.chat_mode != chat_mode:
            logger.debug("sessions.mode_changed", user_id=session.user_id, chat_mode=chat_mode)
        session.chat_mode = chat_mode

    @staticmethod
    def is_chat_mode(session: Session) -> bool:
        return session.chat_mode

    @staticmethod
    def conversation_handle(session: Session) -> Conversation:
        return session.conversation

    def session_count(self) -> int:
        """Return the number of live sessions."""
        return len(self._sessions)

    def info(self, user_id: int) -> dict[str, Any] | None:
        """Return metadata about a session (for /status-style reporting)."""
        session = self._sessions.get(user_id)
        if session is None:
            return None
        return {
            "user_id": session.user_id,
            "chat_mode": session.chat_mode,
            "message_count": session.message_count,
            "history_length": len(session.conversation),
            "created_at": session.created_at,
            "idle_seconds": time.monotonic() - session.last_activity,
        }

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    async def expire_idle(self, now: float | None = None) -> int:
        """
        Remove sessions idle longer than the TTL. Sessions whose lock is
        held are in use and are never removed.

        Returns the number of sessions removed.
        """
        if self._ttl <= 0:
            return 0
        now = time.monotonic() if now is None else now
        async with self._lock:
            stale = [
                uid
                for uid, session in self._sessions.items()
                if now - session.last_activity > self._ttl and not session.lock.locked()
            ]
            for uid in stale:
                del self._sessions[uid]
        return len(stale)

    async def run_eviction(self, interval: float) -> None:
        """Auxiliary loop: expire idle sessions every *interval* seconds."""
        while True:
            await asyncio.sleep(interval)
            removed = await self.expire_idle()
            if removed:
                logger.info(
                    "sessions.evicted",
                    removed=removed,
                    remaining=len(self._sessions),
                )
