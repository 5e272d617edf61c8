"""
Tests for ConversationRelay event dispatch.
"""

import asyncio
import dataclasses
import json

import pytest

from src.relay.config import get_config
from src.relay.dispatcher import ChannelState, RelayDispatcher
from src.relay.generation import GenerationController
from src.relay.metrics import metrics
from src.relay.phrases import fallback_phrase
from src.relay.session import SessionRegistry


def _dispatcher(outbox, backend, config=None, registry=None):
    return RelayDispatcher(
        outbox,
        registry=registry if registry is not None else SessionRegistry(),
        controller=GenerationController(backend=backend),
        config=config,
    )


def _prompt(text, last=True, **extra):
    return json.dumps({"type": "prompt", "voicePrompt": text, "last": last, **extra})


async def _finish(dispatcher):
    handle = dispatcher.session.cancellation_handle
    if handle is not None:
        await handle.task


class TestSetup:
    def test_injected_empty_registry_is_used(self, outbox, fake_backend):
        registry = SessionRegistry()

        dispatcher = _dispatcher(outbox, fake_backend([]), registry=registry)

        assert len(registry) == 0
        assert dispatcher._registry is registry

    @pytest.mark.asyncio
    async def test_setup_binds_session_and_sends_language(self, outbox, fake_backend, relay_setup_message):
        registry = SessionRegistry()
        dispatcher = _dispatcher(outbox, fake_backend([]), registry=registry)

        await dispatcher.handle_message(relay_setup_message)

        assert dispatcher.state == ChannelState.SESSION_BOUND
        assert dispatcher.session.session_id == "VX123456"
        assert dispatcher.session.call_sid == "CA789012"
        assert dispatcher.session.language == "lt-LT"
        assert registry.get(call_sid="CA789012") is dispatcher.session
        assert outbox.messages == [
            {"type": "language", "ttsLanguage": "lt-LT", "transcriptionLanguage": "lt-LT"}
        ]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_language_message_can_be_disabled(self, outbox, fake_backend, relay_setup_message):
        config = dataclasses.replace(get_config(), send_language_on_setup=False)
        dispatcher = _dispatcher(outbox, fake_backend([]), config=config)

        await dispatcher.handle_message(relay_setup_message)

        assert outbox.raw == []
        await dispatcher.close()


class TestPrompts:
    @pytest.mark.asyncio
    async def test_partial_prompts_are_joined(self, outbox, fake_backend, relay_setup_message):
        backend = fake_backend(["Labas, kuo galiu padėti?"])
        dispatcher = _dispatcher(outbox, backend)
        await dispatcher.handle_message(relay_setup_message)

        await dispatcher.handle_message(_prompt("Labas", last=False))
        await dispatcher.handle_message(_prompt(" rytas", last=False))
        assert backend.requests == []
        assert dispatcher.session.prompt_buffer == "Labas rytas"

        await dispatcher.handle_message(_prompt("", last=True))
        assert dispatcher.state == ChannelState.GENERATING
        await _finish(dispatcher)

        assert [r.text for r in backend.requests] == ["Labas rytas"]
        assert dispatcher.session.prompt_buffer == ""
        assert [(m["token"], m["last"]) for m in outbox.texts] == [("Labas, kuo galiu padėti?", True)]
        assert dispatcher.state == ChannelState.IDLE
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_blank_final_prompt_sends_silence_phrase(self, outbox, fake_backend, relay_setup_message):
        backend = fake_backend(["nenaudojama"])
        dispatcher = _dispatcher(outbox, backend)
        await dispatcher.handle_message(relay_setup_message)
        empty_before = metrics.empty_prompts

        await dispatcher.handle_message(_prompt("   ", last=True))

        assert backend.requests == []
        assert [(m["token"], m["last"]) for m in outbox.texts] == [
            (fallback_phrase("silence", "lt-LT"), True)
        ]
        assert metrics.empty_prompts == empty_before + 1
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_prompt_language_switches_session(self, outbox, fake_backend, relay_setup_message):
        dispatcher = _dispatcher(outbox, fake_backend([]))
        await dispatcher.handle_message(relay_setup_message)

        await dispatcher.handle_message(_prompt("", last=True, lang="en-US"))

        assert dispatcher.session.language == "en-US"
        assert outbox.texts == [
            {"type": "text", "token": fallback_phrase("silence", "en-US"), "last": True, "lang": "en-US"}
        ]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_prompt_before_setup_creates_session(self, outbox, fake_backend):
        backend = fake_backend(["Sveiki."])
        dispatcher = _dispatcher(outbox, backend)

        await dispatcher.handle_message(_prompt("Labas"))
        await _finish(dispatcher)

        assert dispatcher.session.session_id.startswith("call_")
        assert [m["token"] for m in outbox.texts] == ["Sveiki."]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_setup_after_prompt_adopts_real_ids(self, outbox, fake_backend, relay_setup_message):
        registry = SessionRegistry()
        dispatcher = _dispatcher(outbox, fake_backend([]), registry=registry)

        await dispatcher.handle_message(_prompt("Labas", last=False))
        session = dispatcher.session
        generated = session.session_id
        await dispatcher.handle_message(relay_setup_message)

        assert dispatcher.session is session
        assert session.session_id == "VX123456"
        assert session.prompt_buffer == "Labas"
        assert registry.get(session_id="VX123456") is session
        assert registry.get(call_sid="CA789012") is session
        assert registry.get(session_id=generated) is None
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_blank_prompt_during_reply_keeps_single_last(self, outbox, fake_backend, relay_setup_message):
        gate = asyncio.Event()
        backend = fake_backend(["Pirmas sakinys. ", "Antras sakinys."], gate=gate)
        dispatcher = _dispatcher(outbox, backend)
        await dispatcher.handle_message(relay_setup_message)

        await dispatcher.handle_message(_prompt("Papasakok"))
        await asyncio.wait_for(backend.reached_gate.wait(), timeout=1.0)
        await dispatcher.handle_message(_prompt(" ", last=True))
        gate.set()
        await _finish(dispatcher)

        assert [(m["token"], m["last"]) for m in outbox.texts] == [
            ("Pirmas sakinys.", False),
            ("Antras sakinys.", True),
        ]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_transcript_field_variants(self, outbox, fake_backend, relay_setup_message):
        backend = fake_backend(["Gerai."])
        dispatcher = _dispatcher(outbox, backend)
        await dispatcher.handle_message(relay_setup_message)

        await dispatcher.handle_message(json.dumps({"type": "prompt", "transcript": "Kiek  kainuoja?"}))
        await _finish(dispatcher)

        assert backend.requests[0].text == "Kiek kainuoja?"
        await dispatcher.close()


class TestInterrupt:
    @pytest.mark.asyncio
    async def test_interrupt_cancels_generation_and_clears_buffer(
        self, outbox, fake_backend, relay_setup_message
    ):
        gate = asyncio.Event()
        backend = fake_backend(["Pirmas sakinys. ", "Antras sakinys."], gate=gate)
        dispatcher = _dispatcher(outbox, backend)
        await dispatcher.handle_message(relay_setup_message)

        await dispatcher.handle_message(_prompt("Papasakok"))
        handle = dispatcher.session.cancellation_handle
        await asyncio.wait_for(backend.reached_gate.wait(), timeout=1.0)
        await dispatcher.handle_message(_prompt("pala", last=False))

        await dispatcher.handle_message(json.dumps({
            "type": "interrupt",
            "utteranceUntilInterrupt": "Pirmas",
            "durationUntilInterruptMs": 640,
        }))
        gate.set()
        await handle.task

        assert handle.cancelled
        assert handle.reason == "interrupt"
        assert dispatcher.session.prompt_buffer == ""
        assert outbox.texts == []
        assert dispatcher.state == ChannelState.IDLE
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_interrupt_without_session_is_ignored(self, outbox, fake_backend):
        dispatcher = _dispatcher(outbox, fake_backend([]))

        await dispatcher.handle_message(json.dumps({"type": "interrupt"}))

        assert dispatcher.session is None
        assert dispatcher.state == ChannelState.CONNECTED
        assert outbox.raw == []


class TestOtherEvents:
    @pytest.mark.asyncio
    async def test_malformed_and_unknown_messages_are_ignored(self, outbox, fake_backend, relay_setup_message):
        dispatcher = _dispatcher(outbox, fake_backend([]))
        await dispatcher.handle_message(relay_setup_message)
        outbox.raw.clear()
        malformed_before = metrics.malformed_messages
        unknown_before = metrics.unknown_events

        await dispatcher.handle_message("not json {")
        await dispatcher.handle_message(json.dumps(["prompt"]))
        await dispatcher.handle_message(json.dumps({"voicePrompt": "be tipo"}))
        await dispatcher.handle_message(json.dumps({"type": "mystery"}))
        await dispatcher.handle_message(json.dumps({"type": "ping"}))

        assert metrics.malformed_messages == malformed_before + 3
        assert metrics.unknown_events == unknown_before + 1
        assert outbox.raw == []
        assert dispatcher.state == ChannelState.SESSION_BOUND
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_error_event_is_recorded_only(self, outbox, fake_backend, relay_setup_message):
        dispatcher = _dispatcher(outbox, fake_backend([]))
        await dispatcher.handle_message(relay_setup_message)
        errors_before = metrics.telephony_errors

        await dispatcher.handle_message(json.dumps({
            "type": "error",
            "code": 64101,
            "description": "Invalid voice attribute",
        }))

        assert metrics.telephony_errors == errors_before + 1
        assert dispatcher.state == ChannelState.SESSION_BOUND
        assert dispatcher.session.generation_id == 0
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_dtmf_produces_no_output(self, outbox, fake_backend, relay_setup_message):
        dispatcher = _dispatcher(outbox, fake_backend([]))
        await dispatcher.handle_message(relay_setup_message)
        outbox.raw.clear()

        await dispatcher.handle_message(json.dumps({"type": "dtmf", "digit": "5"}))

        assert outbox.raw == []
        await dispatcher.close()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_destroys_session(self, outbox, fake_backend, relay_setup_message):
        registry = SessionRegistry()
        backend = fake_backend(["nenaudojama"])
        dispatcher = _dispatcher(outbox, backend, registry=registry)
        await dispatcher.handle_message(relay_setup_message)

        await dispatcher.close()
        await dispatcher.close()
        await dispatcher.handle_message(_prompt("Labas"))

        assert dispatcher.state == ChannelState.CLOSED
        assert dispatcher.session.closed
        assert registry.get(session_id="VX123456") is None
        assert registry.get(call_sid="CA789012") is None
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_close_mid_generation_is_silent(self, outbox, fake_backend, relay_setup_message):
        gate = asyncio.Event()
        backend = fake_backend(["Vienas. ", "Du."], gate=gate)
        dispatcher = _dispatcher(outbox, backend)
        await dispatcher.handle_message(relay_setup_message)
        await dispatcher.handle_message(_prompt("Labas"))
        handle = dispatcher.session.cancellation_handle
        await asyncio.wait_for(backend.reached_gate.wait(), timeout=1.0)

        await dispatcher.close()
        gate.set()
        await handle.task

        assert handle.reason == "channel_closed"
        assert outbox.texts == []
