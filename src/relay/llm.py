"""
Streaming client for the OpenAI Responses API.

Provides:
- Incremental SSE frame parsing tolerant of malformed frames
- Text delta extraction for Responses and Chat Completions event shapes
- Overall per-generation timeout
- Cooperative cancellation via the session's CancellationHandle
"""

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import msgspec
import structlog

from src.relay.config import Config, get_config
from src.relay.prompt_utils import get_system_prompt
from src.relay.session import CancellationHandle

logger = structlog.get_logger(__name__)

_json_decoder = msgspec.json.Decoder()

DONE_SENTINEL = "[DONE]"

_DELTA_EVENT_TYPES = ("response.output_text.delta",)
_FULL_TEXT_EVENT_TYPES = ("response.output_text", "response.output_text.done")
_TERMINAL_EVENT_TYPES = ("response.completed",)
_FAILURE_EVENT_TYPES = ("error", "response.failed")


class BackendError(Exception):
    """Raised when the generation backend fails (non-success status, error event)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class GenerationRequest:
    """Everything the backend needs for one reply."""
    text: str
    call_sid: str = ""
    session_id: str = ""
    language: str = ""


class SSEDeltaParser:
    """
    Incremental parser for a server-sent-event stream of text deltas.

    Feed raw text as it arrives; complete frames (terminated by a blank line)
    are parsed and their text deltas returned. Lines without a `data:` prefix
    and `data:` payloads that are not JSON are skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._seen_delta = False
        self.done = False

    def feed(self, text: str) -> List[str]:
        """Consume raw stream text; return the deltas of all completed frames."""
        if self.done or not text:
            return []

        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")
        deltas: List[str] = []
        while not self.done:
            idx = self._buffer.find("\n\n")
            if idx == -1:
                break
            frame = self._buffer[:idx]
            self._buffer = self._buffer[idx + 2:]
            deltas.extend(self._parse_frame(frame))
        return deltas

    def close(self) -> List[str]:
        """Flush a trailing frame left without its blank-line terminator."""
        if self.done:
            return []
        frame, self._buffer = self._buffer, ""
        deltas = self._parse_frame(frame) if frame.strip() else []
        self.done = True
        return deltas

    def _parse_frame(self, frame: str) -> List[str]:
        deltas: List[str] = []
        for line in frame.split("\n"):
            if not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if not data:
                continue
            if data == DONE_SENTINEL:
                self.done = True
                break

            try:
                event = _json_decoder.decode(data.encode("utf-8"))
            except msgspec.DecodeError:
                logger.debug("Skipping unparsable SSE line", line=data[:120])
                continue
            if not isinstance(event, dict):
                continue

            text = self._extract(event)
            if text:
                deltas.append(text)
            if self.done:
                break
        return deltas

    def _extract(self, event: Dict[str, Any]) -> str:
        event_type = event.get("type")

        if event_type in _DELTA_EVENT_TYPES:
            delta = event.get("delta")
            if isinstance(delta, str):
                self._seen_delta = True
                return delta
            return ""

        # Chat Completions-compatible backends
        choices = event.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta")
            content = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(content, str):
                self._seen_delta = True
                return content
            return ""

        if event_type in _FULL_TEXT_EVENT_TYPES:
            full_text = event.get("text")
            if isinstance(full_text, str) and not self._seen_delta:
                return full_text
            return ""

        if event_type in _TERMINAL_EVENT_TYPES:
            self.done = True
            return ""

        if event_type in _FAILURE_EVENT_TYPES:
            error = event.get("error") if isinstance(event.get("error"), dict) else {}
            message = error.get("message") or event.get("message") or event_type
            raise BackendError(f"Backend reported failure: {message}")

        return ""


def build_request_body(config: Config, request: GenerationRequest) -> Dict[str, Any]:
    """Build the Responses API payload for one caller utterance."""
    language = request.language or config.language
    call_ref = request.call_sid or request.session_id or "unknown"
    return {
        "model": config.openai_model,
        "stream": True,
        "input": [
            {"role": "system", "content": get_system_prompt(config)},
            {
                "role": "user",
                "content": (
                    f"Skambutis ({call_ref}, session {request.session_id or '-'}, "
                    f"kalba {language}). Vartotojas pasakė: {request.text}"
                ),
            },
        ],
    }


class ResponsesBackend:
    """
    OpenAI Responses API client with streaming support.

    One instance serves all calls; each `stream_deltas` call is one generation.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.openai_base_url,
            timeout=httpx.Timeout(config.generation_timeout_seconds, connect=5.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def stream_deltas(
        self,
        request: GenerationRequest,
        handle: CancellationHandle,
    ) -> AsyncGenerator[str, None]:
        """
        Stream text deltas for one reply.

        Stops quietly when the handle is cancelled or the overall timeout
        expires (the handle is then signalled with reason "timeout").

        Args:
            request: The caller utterance and identifiers
            handle: Cancellation handle of the generation

        Yields:
            Text deltas in arrival order

        Raises:
            BackendError: On missing credentials, non-success status or a
                backend-reported failure event
        """
        if not self.config.openai_api_key:
            raise BackendError("OPENAI_API_KEY is not configured")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.generation_timeout_seconds
        parser = SSEDeltaParser()

        try:
            async with self._client.stream(
                "POST",
                "/responses",
                json=build_request_body(self.config, request),
                headers={"Authorization": f"Bearer {self.config.openai_api_key}"},
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise BackendError(
                        f"Backend returned status {response.status_code}: {body[:300]}",
                        status_code=response.status_code,
                    )

                chunks = response.aiter_text()
                while not handle.cancelled:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    try:
                        raw = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                    except StopAsyncIteration:
                        break

                    for delta in parser.feed(raw):
                        if handle.cancelled:
                            return
                        yield delta
                    if parser.done:
                        return

                if not handle.cancelled:
                    for delta in parser.close():
                        yield delta

        except asyncio.TimeoutError:
            logger.warning(
                "Generation timed out",
                call_sid=request.call_sid,
                timeout_seconds=self.config.generation_timeout_seconds,
            )
            handle.signal("timeout")
        except httpx.TimeoutException as e:
            logger.warning("Generation backend timed out", call_sid=request.call_sid, error=str(e))
            handle.signal("timeout")
        except httpx.HTTPError as e:
            raise BackendError(f"Backend request failed: {e}") from e


# Singleton instance
_backend_instance: Optional[ResponsesBackend] = None


def get_backend() -> ResponsesBackend:
    """Get or create the backend singleton."""
    global _backend_instance

    if _backend_instance is None:
        _backend_instance = ResponsesBackend()

    return _backend_instance


async def close_backend() -> None:
    global _backend_instance

    if _backend_instance is not None:
        await _backend_instance.close()
        _backend_instance = None
