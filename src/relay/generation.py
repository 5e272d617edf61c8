"""
Generation control for one call.

Owns the supersession protocol: at most one generation per session is active,
and a generation may only send while the session's `generation_id` still
equals the id it captured at start. Each generation runs as its own task:

    backend deltas -> segmenter -> normalizer -> hold-back-by-one -> channel

The last produced chunk is always held back so it can be sent with
`last=true` once the stream ends.
"""

import asyncio
import time
from typing import Optional, Protocol, AsyncIterator

import structlog

from src.relay.config import Config, get_config
from src.relay.llm import BackendError, GenerationRequest, get_backend
from src.relay.metrics import record_event
from src.relay.normalizer import normalize
from src.relay.phrases import fallback_phrase
from src.relay.segmenter import drain
from src.relay.session import CancellationHandle, Session

logger = structlog.get_logger(__name__)


class DeltaSource(Protocol):
    def stream_deltas(
        self, request: GenerationRequest, handle: CancellationHandle
    ) -> AsyncIterator[str]:
        ...


class _Superseded(Exception):
    """The generation lost its session (newer generation, closed channel)."""


class GenerationController:
    """Starts, supersedes and cancels generations."""

    def __init__(
        self,
        backend: Optional[DeltaSource] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self._backend = backend

    @property
    def backend(self) -> DeltaSource:
        if self._backend is None:
            self._backend = get_backend()
        return self._backend

    def start(self, session: Session, input_text: str) -> CancellationHandle:
        """
        Start a generation for `input_text`, superseding any active one.

        Returns:
            The new generation's cancellation handle (its task is attached)
        """
        if session.cancellation_handle is not None:
            self.cancel(session, reason="superseded")

        session.generation_id += 1
        handle = CancellationHandle(generation_id=session.generation_id)
        session.cancellation_handle = handle
        session.touch()

        record_event(
            "generation.started",
            call_sid=session.call_sid,
            session_id=session.session_id,
            generation_id=handle.generation_id,
            chars=len(input_text),
        )
        handle.task = asyncio.create_task(self._run(session, handle, input_text))
        return handle

    def cancel(self, session: Session, reason: str) -> bool:
        """
        Cancel the session's active generation.

        Returns:
            True if a generation was active
        """
        generation_id = session.cancellation_handle.generation_id if session.cancellation_handle else None
        if not session.cancel_generation(reason):
            return False

        record_event(
            "generation.cancelled",
            call_sid=session.call_sid,
            session_id=session.session_id,
            generation_id=generation_id,
            reason=reason,
        )
        return True

    @staticmethod
    def _is_current(session: Session, handle: CancellationHandle) -> bool:
        return session.generation_id == handle.generation_id and not session.closed

    async def _send(self, session: Session, handle: CancellationHandle, token: str, *, last: bool) -> None:
        """Guarded send: withheld unless this generation still owns the session."""
        channel = session.outbound
        if channel is None:
            raise _Superseded
        sent = await channel.send_text(
            token,
            last=last,
            lang=session.language,
            guard=lambda: self._is_current(session, handle),
        )
        if not sent:
            raise _Superseded

    async def _run(self, session: Session, handle: CancellationHandle, input_text: str) -> None:
        started_at = time.time()
        request = GenerationRequest(
            text=input_text,
            call_sid=session.call_sid,
            session_id=session.session_id,
            language=session.language,
        )
        limits = {
            "soft_limit": self.config.segment_soft_limit,
            "hard_limit": self.config.segment_hard_limit,
        }

        held: Optional[str] = None
        buffer = ""
        chunks_sent = 0
        outcome = "completed"

        async def push(chunk: str) -> None:
            nonlocal held, chunks_sent
            text = normalize(chunk, session.language)
            if not text:
                return
            if held is not None:
                await self._send(session, handle, held, last=False)
                chunks_sent += 1
            held = text

        try:
            async for delta in self.backend.stream_deltas(request, handle):
                if handle.cancelled or not self._is_current(session, handle):
                    raise _Superseded
                buffer += delta
                ready, buffer = drain(buffer, **limits)
                for chunk in ready:
                    await push(chunk)

            if handle.cancelled and handle.reason != "timeout":
                raise _Superseded

            ready, buffer = drain(buffer, force_flush=True, **limits)
            for chunk in ready:
                await push(chunk)

            if held is not None:
                await self._send(session, handle, held, last=True)
                chunks_sent += 1
            else:
                kind = "apology" if handle.reason == "timeout" else "no_output"
                await self._send(session, handle, fallback_phrase(kind, session.language), last=True)
                chunks_sent += 1
                if handle.reason == "timeout":
                    outcome = "failed"

        except _Superseded:
            outcome = "superseded"
        except asyncio.CancelledError:
            outcome = "superseded"
        except Exception as e:
            outcome = "failed"
            logger.error(
                "Generation failed",
                call_sid=session.call_sid,
                generation_id=handle.generation_id,
                error=str(e),
                error_type=type(e).__name__,
                status_code=e.status_code if isinstance(e, BackendError) else None,
            )
            try:
                if held is not None:
                    await self._send(session, handle, held, last=False)
                    chunks_sent += 1
                await self._send(session, handle, fallback_phrase("apology", session.language), last=True)
                chunks_sent += 1
            except _Superseded:
                pass
        finally:
            if session.cancellation_handle is handle:
                session.cancellation_handle = None

        fields = dict(
            call_sid=session.call_sid,
            session_id=session.session_id,
            generation_id=handle.generation_id,
            chunks_sent=chunks_sent,
            total_ms=round((time.time() - started_at) * 1000, 1),
        )
        if outcome == "completed":
            record_event("generation.completed", **fields)
        elif outcome == "failed":
            record_event("generation.failed", reason=handle.reason or "backend_error", **fields)
        else:
            logger.debug("Generation abandoned", reason=handle.reason or "stale", **fields)
