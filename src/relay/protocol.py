"""
Twilio ConversationRelay WebSocket Protocol Handler.

ConversationRelay does speech recognition and synthesis on Twilio's side and
exchanges JSON text messages with us, keyed by `type`:
- setup: Session established, contains sessionId and callSid
- prompt: Caller speech transcript (possibly partial)
- interrupt: Caller barged in over synthesized speech
- dtmf: Keypad digit pressed
- error: Twilio-side error report

Outbound messages:
- text: A speakable token/chunk; `last` marks the end of a reply
- language: Switch TTS/STT language for the session
"""

import msgspec
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class RelayEventType(str, Enum):
    """ConversationRelay inbound message types."""
    SETUP = "setup"
    PROMPT = "prompt"
    INTERRUPT = "interrupt"
    DTMF = "dtmf"
    ERROR = "error"
    UNKNOWN = "unknown"


def _payload(message: Dict[str, Any]) -> Dict[str, Any]:
    payload = message.get("payload")
    return payload if isinstance(payload, dict) else {}


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


@dataclass
class SetupEvent:
    """Parsed setup event."""
    session_id: str
    call_sid: str
    from_number: str = ""
    to_number: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "SetupEvent":
        """Parse from ConversationRelay message."""
        payload = _payload(message)
        params = message.get("customParameters")
        return cls(
            session_id=_as_str(message.get("sessionId")) or _as_str(payload.get("sessionId")),
            call_sid=_as_str(message.get("callSid")) or _as_str(payload.get("callSid")),
            from_number=_as_str(message.get("from")),
            to_number=_as_str(message.get("to")),
            custom_parameters=params if isinstance(params, dict) else {},
        )


@dataclass
class PromptEvent:
    """Parsed prompt event (a transcript fragment)."""
    text: str
    last: bool = True
    lang: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PromptEvent":
        """Parse from ConversationRelay message."""
        payload = _payload(message)
        # Field naming differs between relay versions/configs.
        text = (
            _as_str(message.get("voicePrompt"))
            or _as_str(message.get("transcript"))
            or _as_str(message.get("text"))
            or _as_str(payload.get("text"))
            or _as_str(payload.get("transcript"))
        )
        last = message.get("last", True)
        return cls(
            text=text,
            last=last if isinstance(last, bool) else True,
            lang=_as_str(message.get("lang")),
        )


@dataclass
class InterruptEvent:
    """Parsed interrupt (barge-in) event."""
    utterance_until_interrupt: str = ""
    duration_until_interrupt_ms: Optional[int] = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "InterruptEvent":
        """Parse from ConversationRelay message."""
        duration = message.get("durationUntilInterruptMs")
        return cls(
            utterance_until_interrupt=_as_str(message.get("utteranceUntilInterrupt")),
            duration_until_interrupt_ms=int(duration) if isinstance(duration, (int, float)) else None,
        )


@dataclass
class ErrorEvent:
    """Parsed Twilio-side error report."""
    code: str
    description: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "ErrorEvent":
        """Parse from ConversationRelay message."""
        code = message.get("code", "")
        return cls(
            code=str(code) if code is not None else "",
            description=_as_str(message.get("description")) or _as_str(message.get("message")),
        )


@dataclass
class DTMFEvent:
    """Parsed DTMF event."""
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "DTMFEvent":
        """Parse from ConversationRelay message."""
        return cls(digit=_as_str(message.get("digit")))


_PARSERS: Dict[RelayEventType, Callable[[Dict[str, Any]], Any]] = {
    RelayEventType.SETUP: SetupEvent.from_message,
    RelayEventType.PROMPT: PromptEvent.from_message,
    RelayEventType.INTERRUPT: InterruptEvent.from_message,
    RelayEventType.ERROR: ErrorEvent.from_message,
    RelayEventType.DTMF: DTMFEvent.from_message,
}


def parse_relay_message(raw_message: str | bytes) -> tuple[RelayEventType, Any]:
    """
    Parse a raw ConversationRelay WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event). Unrecognized types come back as
        (UNKNOWN, raw dict) so the caller can count and ignore them.

    Raises:
        ValueError: If message is not a JSON object with a string `type`
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Message is not a JSON object")

    type_str = message.get("type")
    if not isinstance(type_str, str) or not type_str:
        raise ValueError("Missing message type")

    try:
        event_type = RelayEventType(type_str)
    except ValueError:
        return RelayEventType.UNKNOWN, message

    parser = _PARSERS.get(event_type)
    if parser is None:
        return RelayEventType.UNKNOWN, message
    return event_type, parser(message)


def create_text_message(token: str, last: bool, lang: str = "") -> str:
    """
    Create a ConversationRelay text message.

    Args:
        token: Text to speak
        last: Whether this is the final chunk of the reply
        lang: Language tag for synthesis

    Returns:
        JSON string to send to Twilio
    """
    message: Dict[str, Any] = {"type": "text", "token": token, "last": last}
    if lang:
        message["lang"] = lang
    return encoder.encode(message).decode("utf-8")


def create_language_message(language: str) -> str:
    """
    Create a ConversationRelay language message.

    Sets both TTS and transcription language for the session.
    """
    message = {
        "type": "language",
        "ttsLanguage": language,
        "transcriptionLanguage": language,
    }
    return encoder.encode(message).decode("utf-8")


class OutboundChannel:
    """
    The outbound half of one ConversationRelay WebSocket.

    Every outbound message goes through `send_text`/`send_json`, which refuse
    to write once the channel is closed or when the caller's guard says the
    message has gone stale.
    """

    def __init__(self, send_message: Callable[[str], Awaitable[None]]):
        self._send_message = send_message
        self._is_open = True
        self.messages_sent = 0

    @property
    def is_open(self) -> bool:
        return self._is_open

    def close(self) -> None:
        self._is_open = False

    async def send_json(self, message: str, *, guard: Optional[Callable[[], bool]] = None) -> bool:
        """Send a pre-encoded message; returns False if it was withheld."""
        if not self._is_open:
            return False
        if guard is not None and not guard():
            return False
        await self._send_message(message)
        self.messages_sent += 1
        return True

    async def send_text(
        self,
        token: str,
        *,
        last: bool,
        lang: str = "",
        guard: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Send a text chunk; returns False if it was withheld."""
        return await self.send_json(create_text_message(token, last, lang), guard=guard)
