"""Tests for the live session adapter and backend frame normalization."""

from __future__ import annotations

import asyncio
import base64

import pytest


# ======================================================================
# Transcript hygiene
# ======================================================================

class TestScrubControlTokens:

    @pytest.mark.parametrize("raw, expected", [
        ("Hello Ctrl46 there", "Hello  there"),
        ("Hello <ctrl46>there", "Hello there"),
        ("CTRL 46 Visitar", " Visitar"),
        ("bell\x07 char", "bell char"),
        ("plain text", "plain text"),
    ])
    def test_scrub(self, raw, expected):
        from kiosk_relay.relay.backend import scrub_control_tokens
        assert scrub_control_tokens(raw) == expected

    def test_keeps_newlines(self):
        from kiosk_relay.relay.backend import scrub_control_tokens
        assert scrub_control_tokens("line1\nline2") == "line1\nline2"


# ======================================================================
# normalize_message
# ======================================================================

class TestNormalizeMessage:

    def test_dict_frame_events_in_order(self):
        from kiosk_relay.relay.backend import (
            AudioChunk, OutputTranscript, ToolCallRequested, TurnComplete, normalize_message,
        )

        pcm = b"\x01\x02" * 10
        message = {
            "serverContent": {
                "outputTranscription": {"text": "Hi <ctrl46>"},
                "modelTurn": {"parts": [
                    {"inlineData": {"mimeType": "audio/pcm;rate=16000",
                                    "data": base64.b64encode(pcm).decode()}},
                    {"functionCall": {"id": "p1", "name": "show_product",
                                      "args": {"product": "Visitar"}}},
                ]},
                "turnComplete": True,
            },
            "toolCall": {"functionCalls": [
                {"id": "t1", "name": "search_knowledge", "args": {"query": "price"}},
            ]},
        }
        events = normalize_message(message)

        assert [type(e) for e in events] == [
            OutputTranscript, AudioChunk, ToolCallRequested, ToolCallRequested, TurnComplete,
        ]
        assert events[0].text == "Hi "
        assert events[1].sample_rate_hz == 16000
        assert base64.b64decode(events[1].base64) == pcm
        assert events[2].call.name == "search_knowledge"
        assert events[3].call.id == "p1"
        assert events[3].call.args == {"product": "Visitar"}

    def test_json_text_frame(self):
        from fakes import transcript_message
        import json
        from kiosk_relay.relay.backend import OutputTranscript, normalize_message

        events = normalize_message(json.dumps(transcript_message("hello")))
        assert events == [OutputTranscript(text="hello")]

    def test_bytes_frame(self):
        import json
        from kiosk_relay.relay.backend import TurnComplete, normalize_message

        raw = json.dumps({"serverContent": {"turnComplete": True}}).encode()
        assert normalize_message(raw) == [TurnComplete()]

    def test_top_level_data_without_parts(self):
        from kiosk_relay.relay.backend import AudioChunk, normalize_message

        events = normalize_message({"data": "AAAA"})
        assert events == [AudioChunk(base64="AAAA", sample_rate_hz=24000)]

    def test_transcript_only_control_token_dropped(self):
        from fakes import transcript_message
        from kiosk_relay.relay.backend import normalize_message

        assert normalize_message(transcript_message("Ctrl46")) == []

    def test_nameless_function_call_ignored(self):
        from kiosk_relay.relay.backend import normalize_message

        message = {"toolCall": {"functionCalls": [{"id": "x", "args": {}}]}}
        assert normalize_message(message) == []

    def test_non_audio_inline_data_ignored(self):
        from kiosk_relay.relay.backend import normalize_message

        message = {"serverContent": {"modelTurn": {"parts": [
            {"inlineData": {"mimeType": "image/png", "data": "AAAA"}},
            {"text": "thinking"},
        ]}}}
        assert normalize_message(message) == []

    def test_invalid_json_raises(self):
        from kiosk_relay.relay.backend import normalize_message

        with pytest.raises(ValueError):
            normalize_message("{not json")
        with pytest.raises(ValueError):
            normalize_message("[1, 2]")

    def test_sdk_message(self):
        from google.genai import types
        from kiosk_relay.relay.backend import (
            AudioChunk, OutputTranscript, ToolCallRequested, TurnComplete, normalize_message,
        )

        message = types.LiveServerMessage(
            server_content=types.LiveServerContent(
                model_turn=types.Content(role="model", parts=[
                    types.Part(inline_data=types.Blob(data=b"\x00\x01", mime_type="audio/pcm;rate=24000")),
                ]),
                output_transcription=types.Transcription(text="Welcome"),
                turn_complete=True,
            ),
            tool_call=types.LiveServerToolCall(function_calls=[
                types.FunctionCall(id="c1", name="list_products", args={}),
            ]),
        )
        events = normalize_message(message)

        assert [type(e) for e in events] == [
            OutputTranscript, AudioChunk, ToolCallRequested, TurnComplete,
        ]
        assert events[1].base64 == base64.b64encode(b"\x00\x01").decode()
        assert events[2].call.name == "list_products"


# ======================================================================
# LiveSessionAdapter
# ======================================================================

class TestLiveSessionAdapter:

    def _make(self, store, **kwargs):
        from fakes import FakeLiveSession
        from kiosk_relay.relay.backend import LiveSessionAdapter

        session = FakeLiveSession(**kwargs)
        return session, LiveSessionAdapter(session, store, "s1")

    def test_resume_last_user_completes_turn(self, store):
        from kiosk_relay.models import Role

        store.append_turn("s1", Role.USER, "A")
        store.append_turn("s1", Role.MODEL, "B")
        store.append_turn("s1", Role.USER, "C")
        session, adapter = self._make(store)

        flag = asyncio.run(adapter.resume(store.sanitized_history("s1")))

        assert flag is True
        sent = session.content_sends()[0]
        assert sent["turn_complete"] is True
        assert [c.role for c in sent["turns"]] == ["user", "model", "user"]
        assert sent["turns"][2].parts[0].text == "C"

    def test_resume_last_model_does_not_complete(self, store):
        from kiosk_relay.models import Role

        store.append_turn("s1", Role.USER, "A")
        store.append_turn("s1", Role.MODEL, "B")
        session, adapter = self._make(store)

        assert asyncio.run(adapter.resume(store.sanitized_history("s1"))) is False
        assert session.content_sends()[0]["turn_complete"] is False

    def test_resume_empty_history_sends_nothing(self, store):
        session, adapter = self._make(store)
        assert asyncio.run(adapter.resume([])) is None
        assert session.sent == []

    def test_activity_framing(self, store):
        session, adapter = self._make(store)

        async def scenario():
            await adapter.begin_activity()
            await adapter.send_audio_chunk(b"\x00" * 32, 16000)
            await adapter.end_activity()
            await adapter.end_activity()  # no open activity, ignored

        asyncio.run(scenario())
        assert session.realtime_kinds() == ["activity_start", "audio", "activity_end"]
        blob = session.sent[1][1]["audio"]
        assert blob.mime_type == "audio/pcm;rate=16000"

    def test_interrupt_opens_activity_once(self, store):
        session, adapter = self._make(store)

        async def scenario():
            await adapter.interrupt()
            await adapter.begin_activity()
            await adapter.end_activity()

        asyncio.run(scenario())
        assert session.realtime_kinds() == ["activity_start", "activity_end"]

    def test_interrupt_commits_partial_transcript(self, store):
        from kiosk_relay.models import Role

        session, adapter = self._make(store)
        adapter._transcript.extend(["Visitar is ", "a visitor"])
        asyncio.run(adapter.interrupt())

        history = store.sanitized_history("s1")
        assert history[-1].role == Role.MODEL
        assert history[-1].text == "Visitar is a visitor"

    def test_send_text_records_user_turn(self, store):
        from kiosk_relay.models import Role

        session, adapter = self._make(store)
        asyncio.run(adapter.send_text("What is Co Desk?"))

        history = store.sanitized_history("s1")
        assert history[0].role == Role.USER
        assert history[0].text == "What is Co Desk?"
        sent = session.content_sends()[0]
        assert sent["turn_complete"] is True
        assert sent["turns"].parts[0].text == "What is Co Desk?"

    def test_send_text_closes_open_activity(self, store):
        session, adapter = self._make(store)

        async def scenario():
            await adapter.interrupt()
            await adapter.send_text("hi")

        asyncio.run(scenario())
        assert session.realtime_kinds() == ["activity_start", "activity_end"]
        assert not adapter.activity_open

    def test_close_empty_activity_only_after_bare_interrupt(self, store):
        session, adapter = self._make(store)

        async def scenario():
            closed = [await adapter.close_empty_activity()]
            await adapter.interrupt()
            closed.append(await adapter.close_empty_activity())

            await adapter.begin_activity()
            closed.append(await adapter.close_empty_activity())
            await adapter.end_activity()

            await adapter.interrupt()
            await adapter.begin_activity()
            await adapter.send_audio_chunk(b"\x00" * 32, 16000)
            closed.append(await adapter.close_empty_activity())
            return closed

        assert asyncio.run(scenario()) == [False, True, False, False]
        assert session.realtime_kinds() == [
            "activity_start", "activity_end",
            "activity_start", "activity_end",
            "activity_start", "audio",
        ]

    def test_fallback_not_recorded(self, store):
        from kiosk_relay.prompt import FALLBACK_PROMPT

        session, adapter = self._make(store)
        asyncio.run(adapter.send_fallback())

        assert store.sanitized_history("s1") == []
        assert session.content_sends()[0]["turns"].parts[0].text == FALLBACK_PROMPT

    def test_tool_result(self, store):
        session, adapter = self._make(store)
        asyncio.run(adapter.send_tool_result("c1", "list_products", {"result": "x"}))

        (response,) = session.tool_responses()
        assert response.id == "c1"
        assert response.name == "list_products"
        assert response.response == {"result": "x"}

    def test_events_commit_model_turn(self, store):
        from fakes import transcript_message, turn_complete_message
        from kiosk_relay.models import Role
        from kiosk_relay.relay.backend import BackendClosed, OutputTranscript, TurnComplete

        session, adapter = self._make(store)

        async def scenario():
            session.push(
                transcript_message("Hello "),
                transcript_message("world"),
                turn_complete_message(),
                "{not json",
            )
            await session.close()
            return [e async for e in adapter.events()]

        events = asyncio.run(scenario())

        assert [type(e) for e in events] == [
            OutputTranscript, OutputTranscript, TurnComplete, BackendClosed,
        ]
        history = store.sanitized_history("s1")
        assert len(history) == 1
        assert history[0].role == Role.MODEL
        assert history[0].text == "Hello world"

    def test_stream_failure_yields_error_then_closed(self, store):
        from kiosk_relay.relay.backend import BackendClosed, BackendError

        session, adapter = self._make(store, fail_on_receive=True)

        async def scenario():
            return [e async for e in adapter.events()]

        events = asyncio.run(scenario())
        assert isinstance(events[0], BackendError)
        assert "backend went away" in events[0].message
        assert isinstance(events[-1], BackendClosed)

    def test_close_is_idempotent(self, store):
        session, adapter = self._make(store)

        async def scenario():
            await adapter.close()
            await adapter.close()

        asyncio.run(scenario())
        assert session.closed


# ======================================================================
# Live config
# ======================================================================

class TestLiveConfig:

    def test_manual_activity_and_tools(self, settings):
        from kiosk_relay.relay.backend import build_live_config

        settings.enabled_tools = ["search_knowledge", "return_user_text", "no_such_tool"]
        config = build_live_config(settings, "You are a booth assistant.")

        assert config.realtime_input_config.automatic_activity_detection.disabled is True
        assert config.output_audio_transcription is not None
        names = [d.name for d in config.tools[0].function_declarations]
        assert names == ["search_knowledge", "return_user_text"]

    def test_no_tools_when_none_enabled(self, settings):
        from kiosk_relay.relay.backend import build_live_config

        settings.enabled_tools = []
        config = build_live_config(settings, "prompt")
        assert not config.tools
