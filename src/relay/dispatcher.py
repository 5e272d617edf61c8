"""ConversationRelay event dispatch.

One dispatcher per WebSocket. Inbound messages are handled strictly in
arrival order; generations run as background tasks so an `interrupt` or a new
final `prompt` can cancel them without waiting for the backend.

State machine per channel:

    CONNECTED --setup--> SESSION_BOUND --prompt--> GENERATING <--> IDLE
         any state --close--> CLOSED
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.relay.config import Config, get_config
from src.relay.diagnostics import classify_error
from src.relay.generation import GenerationController
from src.relay.metrics import record_event
from src.relay.phrases import fallback_phrase
from src.relay.protocol import (
    DTMFEvent,
    ErrorEvent,
    InterruptEvent,
    OutboundChannel,
    PromptEvent,
    RelayEventType,
    SetupEvent,
    create_language_message,
    parse_relay_message,
)
from src.relay.session import ChannelBinding, Session, SessionRegistry, get_registry

logger = structlog.get_logger(__name__)

_SILENT_TYPES = frozenset({"ping", "heartbeat"})


class ChannelState(str, Enum):
    """Protocol state of one ConversationRelay channel."""
    CONNECTED = "connected"
    SESSION_BOUND = "session_bound"
    IDLE = "idle"
    GENERATING = "generating"
    CLOSED = "closed"


def _collapse(text: str) -> str:
    return " ".join(text.split())


class RelayDispatcher:
    """
    Routes ConversationRelay events for one channel to the session registry
    and the generation controller.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        registry: Optional[SessionRegistry] = None,
        controller: Optional[GenerationController] = None,
        config: Optional[Config] = None,
    ):
        """
        Args:
            send_message: Async function to send WebSocket messages to Twilio
            registry: Session registry (process-wide one by default)
            controller: Generation controller (a new one by default)
            config: Optional configuration (uses default if not provided)
        """
        self.config = config or get_config()
        self.channel = OutboundChannel(send_message)
        self._registry = registry if registry is not None else get_registry()
        self._controller = controller or GenerationController(config=self.config)
        self._binding = ChannelBinding()
        self._session: Optional[Session] = None
        self._state = ChannelState.CONNECTED

    @property
    def state(self) -> ChannelState:
        if self._state == ChannelState.GENERATING and self._session and not self._session.busy:
            self._state = ChannelState.IDLE
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        if self._state == ChannelState.CLOSED:
            return

        try:
            event_type, event = parse_relay_message(raw_message)
        except ValueError as e:
            record_event("message.malformed", call_sid=self._binding.call_sid, error=str(e))
            return

        if event_type == RelayEventType.SETUP:
            await self._handle_setup(event)

        elif event_type == RelayEventType.PROMPT:
            await self._handle_prompt(event)

        elif event_type == RelayEventType.INTERRUPT:
            self._handle_interrupt(event)

        elif event_type == RelayEventType.ERROR:
            self._handle_error(event)

        elif event_type == RelayEventType.DTMF:
            self._handle_dtmf(event)

        else:
            self._handle_unknown(event)

    async def close(self) -> None:
        """Channel closed: cancel any generation and drop the session."""
        if self._state == ChannelState.CLOSED:
            return
        self._state = ChannelState.CLOSED
        self.channel.close()
        if self._session is not None:
            self._registry.destroy(self._session, reason="channel_closed")
        logger.info("Relay channel closed", call_sid=self._binding.call_sid or "-")

    def _bind(self, session_id: str = "", call_sid: str = "", *, create: bool = True) -> Optional[Session]:
        session = self._registry.resolve(
            session_id,
            call_sid,
            create_if_missing=create,
            channel=self._binding,
        )
        if session is None:
            return None
        if session is not self._session:
            self._session = session
            session.outbound = self.channel
            if not session.language:
                session.language = self.config.language
        return session

    async def _handle_setup(self, event: SetupEvent) -> None:
        session = self._bind(event.session_id, event.call_sid)
        if self._state == ChannelState.CONNECTED:
            self._state = ChannelState.SESSION_BOUND

        logger.info(
            "Relay setup",
            session_id=session.session_id,
            call_sid=session.call_sid,
            from_number=event.from_number or None,
            to_number=event.to_number or None,
        )

        if self.config.send_language_on_setup:
            await self.channel.send_json(create_language_message(session.language))

    async def _handle_prompt(self, event: PromptEvent) -> None:
        session = self._bind()
        if event.lang:
            session.language = event.lang

        session.prompt_buffer += event.text
        if not event.last:
            logger.debug(
                "Partial prompt buffered",
                call_sid=session.log_id,
                buffered_chars=len(session.prompt_buffer),
            )
            return

        user_text = _collapse(session.prompt_buffer)
        session.prompt_buffer = ""
        logger.info("Prompt", call_sid=session.log_id, text=user_text[:200])

        if not user_text:
            record_event("prompt.empty", call_sid=session.call_sid, session_id=session.session_id)
            if session.busy:
                # The running reply owns the single last=true chunk of this turn.
                return
            await self.channel.send_text(
                fallback_phrase("silence", session.language),
                last=True,
                lang=session.language,
            )
            if self._state in (ChannelState.CONNECTED, ChannelState.SESSION_BOUND):
                self._state = ChannelState.IDLE
            return

        self._controller.start(session, user_text)
        self._state = ChannelState.GENERATING

    def _handle_interrupt(self, event: InterruptEvent) -> None:
        session = self._bind(create=False)
        if session is None:
            logger.debug("Interrupt without session")
            return

        cancelled = self._controller.cancel(session, reason="interrupt")
        session.prompt_buffer = ""
        if self._state == ChannelState.GENERATING:
            self._state = ChannelState.IDLE
        logger.info(
            "Caller interrupted",
            call_sid=session.log_id,
            cancelled=cancelled,
            utterance_until_interrupt=event.utterance_until_interrupt[:120] or None,
            duration_until_interrupt_ms=event.duration_until_interrupt_ms,
        )

    def _handle_error(self, event: ErrorEvent) -> None:
        record_event(
            "telephony.error",
            call_sid=self._binding.call_sid or None,
            code=event.code,
            description=event.description[:300],
            category=classify_error(event.code, event.description),
        )

    def _handle_dtmf(self, event: DTMFEvent) -> None:
        logger.info("DTMF received", call_sid=self._binding.call_sid or None, digit=event.digit)

    def _handle_unknown(self, message: Any) -> None:
        type_str = message.get("type") if isinstance(message, dict) else None
        if type_str in _SILENT_TYPES:
            return
        record_event("event.unknown", call_sid=self._binding.call_sid or None, event_type=type_str)


def create_dispatcher(
    send_message: Callable[[str], Awaitable[None]],
    config: Optional[Config] = None,
) -> RelayDispatcher:
    """
    Factory function to create a dispatcher for a new WebSocket.

    Args:
        send_message: Async function to send WebSocket messages
        config: Optional configuration

    Returns:
        RelayDispatcher bound to the process-wide session registry
    """
    return RelayDispatcher(send_message, config=config)
