"""
Pytest configuration and fixtures.
"""

import asyncio
import json
import os
from typing import Dict, List, Optional, Union
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "8080",
        "LOG_LEVEL": "DEBUG",
        "RELAY_LANGUAGE": "lt-LT",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-5-mini",
        "OPENAI_BASE_URL": "https://api.test/v1",
        "GENERATION_TIMEOUT_SECONDS": "25",
        "TTS_PROVIDER": "google",
        "SEND_LANGUAGE_ON_SETUP": "true",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeBackend:
    """
    Stand-in for the streaming backend.

    `replies` is either one script used for every request or a mapping from
    prompt text to script. If `gate` is given, the stream blocks on it after
    the first delta (after setting `reached_gate`) so tests can race other
    events against an in-flight generation.
    """

    def __init__(
        self,
        replies: Union[List[str], Dict[str, List[str]]],
        *,
        gate: Optional[asyncio.Event] = None,
        gate_on: Optional[str] = None,
        error: Optional[Exception] = None,
    ):
        self.replies = replies
        self.gate = gate
        self.gate_on = gate_on
        self.error = error
        self.reached_gate = asyncio.Event()
        self.requests = []

    async def stream_deltas(self, request, handle):
        self.requests.append(request)
        script = self.replies[request.text] if isinstance(self.replies, dict) else self.replies
        gated = self.gate is not None and (self.gate_on is None or self.gate_on == request.text)
        for i, delta in enumerate(script):
            if handle.cancelled:
                return
            yield delta
            if i == 0 and gated:
                self.reached_gate.set()
                await self.gate.wait()
        if self.error is not None:
            raise self.error


class Outbox:
    """Collects messages written to an OutboundChannel."""

    def __init__(self):
        self.raw: List[str] = []

    async def __call__(self, message: str) -> None:
        self.raw.append(message)

    @property
    def messages(self):
        return [json.loads(m) for m in self.raw]

    @property
    def texts(self):
        return [m for m in self.messages if m.get("type") == "text"]


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def relay_setup_message():
    """Sample ConversationRelay setup message."""
    return json.dumps({
        "type": "setup",
        "sessionId": "VX123456",
        "callSid": "CA789012",
        "from": "+37060000000",
        "to": "+37052000000",
        "customParameters": {},
    })


@pytest.fixture
def fake_backend():
    """Factory for scripted streaming backends."""
    return FakeBackend
