"""
Per-call sessions and the dual-keyed session registry.

ConversationRelay identifies a call by `sessionId` and by Twilio's `callSid`,
and either may be learned first. The registry keeps one index per key, both
pointing at the same Session object, and merges late-arriving identifiers into
the existing session instead of creating a second one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import threading
import time
from typing import Dict, Optional
import uuid

import structlog

from src.relay.metrics import metrics, record_event
from src.relay.protocol import OutboundChannel

logger = structlog.get_logger(__name__)


@dataclass
class CancellationHandle:
    """
    Cancellation signal for one generation.

    Owned by the session while the generation is active. `signal()` only marks
    the generation as cancelled (the adapter polls it); `cancel()` also stops
    the task so a pending backend read is abandoned immediately.
    """

    generation_id: int
    reason: str = ""
    task: Optional[asyncio.Task] = None
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def signal(self, reason: str) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def cancel(self, reason: str) -> None:
        self.signal(reason)
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class Session:
    """State for one call."""

    session_id: str = ""
    call_sid: str = ""
    language: str = ""
    prompt_buffer: str = ""
    generation_id: int = 0
    cancellation_handle: Optional[CancellationHandle] = None
    outbound: Optional[OutboundChannel] = None
    closed: bool = False
    # session_id was generated locally and gives way to the first real one
    synthetic_id: bool = False
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)

    @property
    def busy(self) -> bool:
        return self.cancellation_handle is not None

    @property
    def log_id(self) -> str:
        return self.call_sid or self.session_id

    def touch(self) -> None:
        self.last_activity_at = time.time()

    def cancel_generation(self, reason: str) -> bool:
        """
        Cancel the active generation, if any.

        Bumping `generation_id` invalidates every pending send of the old
        generation even if it never observes the signal.

        Returns:
            True if a generation was active
        """
        handle = self.cancellation_handle
        if handle is None:
            return False
        handle.cancel(reason)
        self.generation_id += 1
        self.cancellation_handle = None
        return True


@dataclass
class ChannelBinding:
    """Identifiers already learned on one WebSocket."""
    session_id: str = ""
    call_sid: str = ""


class SessionRegistry:
    """
    Index of live sessions by `sessionId` and by `callSid`.

    A key, once bound to a session, is never re-pointed at a different session.
    """

    def __init__(self) -> None:
        self._by_session_id: Dict[str, Session] = {}
        self._by_call_sid: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len({id(s) for s in self._by_session_id.values()} | {id(s) for s in self._by_call_sid.values()})

    def get(self, *, session_id: str = "", call_sid: str = "") -> Optional[Session]:
        with self._lock:
            return self._lookup(session_id, call_sid)

    def _lookup(self, session_id: str, call_sid: str) -> Optional[Session]:
        if session_id and session_id in self._by_session_id:
            return self._by_session_id[session_id]
        if call_sid and call_sid in self._by_call_sid:
            return self._by_call_sid[call_sid]
        return None

    def _bind(self, session: Session, session_id: str, call_sid: str) -> None:
        """Attach identifiers to `session` unless another session owns them."""
        replaceable = not session.session_id or session.synthetic_id
        if session_id and replaceable and session_id != session.session_id:
            owner = self._by_session_id.get(session_id)
            if owner is None or owner is session:
                if session.synthetic_id and self._by_session_id.get(session.session_id) is session:
                    del self._by_session_id[session.session_id]
                session.session_id = session_id
                session.synthetic_id = False
            else:
                logger.warning(
                    "Session id already bound to another session",
                    session_id=session_id,
                    call_sid=session.call_sid,
                )
        if call_sid and not session.call_sid:
            owner = self._by_call_sid.get(call_sid)
            if owner is None or owner is session:
                session.call_sid = call_sid
            else:
                logger.warning(
                    "Call SID already bound to another session",
                    call_sid=call_sid,
                    session_id=session.session_id,
                )

        if session.session_id:
            self._by_session_id[session.session_id] = session
        if session.call_sid:
            self._by_call_sid[session.call_sid] = session

    def resolve(
        self,
        session_id: Optional[str] = None,
        call_sid: Optional[str] = None,
        *,
        create_if_missing: bool = True,
        channel: Optional[ChannelBinding] = None,
    ) -> Optional[Session]:
        """
        Find (or create) the session for a message.

        Lookup order: `session_id`, then `call_sid`, then the identifiers
        already bound to the calling channel. Identifiers the session does not
        have yet are merged into it in place.

        Args:
            session_id: Candidate session id from the message
            call_sid: Candidate call SID from the message
            create_if_missing: Create a session when nothing matches
            channel: Identifiers bound to the calling WebSocket (updated)

        Returns:
            The session, or None if not found and not created
        """
        session_id = session_id or ""
        call_sid = call_sid or ""
        created = False

        with self._lock:
            session = self._lookup(session_id, call_sid)
            if session is None and channel is not None:
                session = self._lookup(channel.session_id, channel.call_sid)

            if session is None:
                if not create_if_missing:
                    return None
                session = Session()
                if not session_id and not call_sid:
                    session.session_id = f"call_{uuid.uuid4().hex[:12]}"
                    session.synthetic_id = True
                created = True

            self._bind(session, session_id, call_sid)
            session.touch()

            if channel is not None:
                channel.session_id = session.session_id
                channel.call_sid = session.call_sid

        if created:
            metrics.active_sessions += 1
            logger.info(
                "Session created",
                session_id=session.session_id,
                call_sid=session.call_sid,
            )
        return session

    def destroy(self, session: Session, reason: str) -> None:
        """
        Cancel the session's generation and drop it from both indexes.

        Safe to call more than once.
        """
        cancelled = session.cancel_generation(reason)
        if cancelled:
            record_event(
                "generation.cancelled",
                call_sid=session.call_sid,
                session_id=session.session_id,
                reason=reason,
            )

        with self._lock:
            if session.closed:
                return
            session.closed = True
            if self._by_session_id.get(session.session_id) is session:
                del self._by_session_id[session.session_id]
            if self._by_call_sid.get(session.call_sid) is session:
                del self._by_call_sid[session.call_sid]

        metrics.active_sessions -= 1
        logger.info(
            "Session destroyed",
            session_id=session.session_id,
            call_sid=session.call_sid,
            reason=reason,
        )


# Singleton instance
_registry: Optional[SessionRegistry] = None


def get_registry() -> SessionRegistry:
    """Get or create the process-wide session registry."""
    global _registry

    if _registry is None:
        _registry = SessionRegistry()

    return _registry
