from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import pytest
from loguru import logger

from larkgate.agent.conversation import ConversationStore
from larkgate.agent.dispatcher import (
    AUDIO_FAILURE,
    CHAT_APOLOGY,
    CLEAR_CONFIRMATION,
    IMAGE_FAILURE,
    UNSUPPORTED_TYPE,
    SessionDispatcher,
)
from larkgate.agent.gate import EventGate
from larkgate.agent.transcription import TranscriptionPipeline
from larkgate.bus.events import OutboundMessage
from larkgate.channels.base import BaseChannel
from larkgate.channels.feishu import FileRef
from larkgate.errors import BackendError, DeliveryError, MediaError
from larkgate.providers.base import LLMProvider, LLMResponse
from tests.payloads import build_payload


class StubProvider(LLMProvider):
    def __init__(self, responses: list[str] | None = None, fail_chat: bool = False, fail_image: bool = False):
        super().__init__()
        self._responses = responses or []
        self.fail_chat = fail_chat
        self.fail_image = fail_image
        self.calls: list[list[dict[str, Any]]] = []
        self.image_prompts: list[str] = []
        self.transcribed: list[Path] = []

    async def chat(self, messages: list[dict[str, Any]], model: str | None = None) -> LLMResponse:
        self.calls.append(messages)
        if self.fail_chat:
            raise BackendError("backend down")
        content = self._responses.pop(0) if self._responses else "ok"
        return LLMResponse(content=content)

    async def generate_image(self, prompt: str) -> str:
        self.image_prompts.append(prompt)
        if self.fail_image:
            raise BackendError("no images today")
        return f"https://img.example/{prompt or 'blank'}.png"

    async def transcribe(self, audio_path: Path, audio_format: str) -> str:
        self.transcribed.append(audio_path)
        return "/image a red fox"


class RecordingChannel(BaseChannel):
    name = "recording"

    def __init__(self, fail: bool = False):
        super().__init__(config=None)
        self.fail = fail
        self.sent: list[OutboundMessage] = []

    async def send(self, msg: OutboundMessage) -> None:
        if self.fail:
            raise DeliveryError("socket closed")
        self.sent.append(msg)


def _dispatcher(
    provider: StubProvider | None = None,
    channel: RecordingChannel | None = None,
    pipeline: Any = None,
    max_size: int = 1024,
) -> SessionDispatcher:
    return SessionDispatcher(
        gate=EventGate(bot_identities=["helper-bot"], staleness_seconds=10),
        store=ConversationStore(max_size=max_size),
        provider=provider or StubProvider(),
        channel=channel or RecordingChannel(),
        pipeline=pipeline,
        bot_name="helper-bot",
    )


@pytest.mark.asyncio
async def test_chat_flow_records_history_and_replies() -> None:
    provider = StubProvider(["hi there", "still here"])
    channel = RecordingChannel()
    dispatcher = _dispatcher(provider, channel)

    first = await dispatcher.handle_inbound_event(build_payload("e1", text="hello"))
    second = await dispatcher.handle_inbound_event(build_payload("e2", text="you there?"))

    assert first.admitted and first.outcome_kind == "chat"
    assert second.outcome_kind == "chat"
    assert [m.content for m in channel.sent] == ["hi there", "still here"]
    assert channel.sent[0].chat_id == "oc_chat"
    assert provider.calls[1] == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi there"},
        {"role": "user", "content": "you there?"},
    ]


@pytest.mark.asyncio
async def test_duplicate_delivery_is_processed_once() -> None:
    provider = StubProvider(["once"])
    channel = RecordingChannel()
    dispatcher = _dispatcher(provider, channel)

    first = await dispatcher.handle_inbound_event(build_payload("e1"))
    later_ms = int(time.time() * 1000) + 2000
    second = await dispatcher.handle_inbound_event(build_payload("e1", created_ms=later_ms))

    assert first.admitted
    assert not second.admitted
    assert second.outcome_kind == "duplicate"
    assert len(provider.calls) == 1
    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_rejected_events_make_no_external_calls() -> None:
    provider = StubProvider()
    channel = RecordingChannel()
    dispatcher = _dispatcher(provider, channel)
    stale_ms = int(time.time() * 1000) - 60_000

    results = [
        await dispatcher.handle_inbound_event(build_payload("b1", sender_type="bot")),
        await dispatcher.handle_inbound_event(build_payload("s1", created_ms=stale_ms)),
        await dispatcher.handle_inbound_event(build_payload("g1", chat_type="group")),
    ]

    assert [r.outcome_kind for r in results] == ["self", "stale", "unaddressed"]
    assert not any(r.admitted for r in results)
    assert provider.calls == []
    assert channel.sent == []


@pytest.mark.asyncio
async def test_group_mention_marker_is_stripped() -> None:
    provider = StubProvider(["pong"])
    dispatcher = _dispatcher(provider)
    payload = build_payload(
        "g2",
        text="@_user_1  ping",
        chat_type="group",
        mentions=[{"key": "@_user_1", "name": "helper-bot", "id": {"open_id": "ou_bot"}}],
    )

    result = await dispatcher.handle_inbound_event(payload)

    assert result.outcome_kind == "chat"
    assert provider.calls[0][-1] == {"role": "user", "content": "ping"}


@pytest.mark.asyncio
async def test_clear_command_drops_history() -> None:
    provider = StubProvider(["a1", "a2"])
    channel = RecordingChannel()
    dispatcher = _dispatcher(provider, channel)

    await dispatcher.handle_inbound_event(build_payload("e1", text="remember me"))
    cleared = await dispatcher.handle_inbound_event(build_payload("e2", text="/clear"))
    await dispatcher.handle_inbound_event(build_payload("e3", text="who am I?"))

    assert cleared.outcome_kind == "clear"
    assert channel.sent[1].content == CLEAR_CONFIRMATION
    assert provider.calls[-1] == [{"role": "user", "content": "who am I?"}]


@pytest.mark.asyncio
async def test_image_command_replies_with_url() -> None:
    provider = StubProvider()
    channel = RecordingChannel()
    dispatcher = _dispatcher(provider, channel)

    result = await dispatcher.handle_inbound_event(build_payload("e1", text="/image cat"))

    assert result.outcome_kind == "image"
    assert provider.image_prompts == ["cat"]
    assert channel.sent[0].content == "https://img.example/cat.png"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_image_failure_replies_with_fixed_text() -> None:
    channel = RecordingChannel()
    dispatcher = _dispatcher(StubProvider(fail_image=True), channel)

    await dispatcher.handle_inbound_event(build_payload("e1", text="/image"))

    assert channel.sent[0].content == IMAGE_FAILURE


@pytest.mark.asyncio
async def test_unknown_command_replies_with_help() -> None:
    channel = RecordingChannel()
    dispatcher = _dispatcher(channel=channel)

    result = await dispatcher.handle_inbound_event(build_payload("e1", text="/foo"))

    assert result.outcome_kind == "help"
    assert "/image <prompt>" in channel.sent[0].content


@pytest.mark.asyncio
async def test_backend_failure_replies_with_apology() -> None:
    channel = RecordingChannel()
    dispatcher = _dispatcher(StubProvider(fail_chat=True), channel)

    result = await dispatcher.handle_inbound_event(build_payload("e1", text="hello"))

    assert result.admitted and result.outcome_kind == "chat"
    assert channel.sent[0].content == CHAT_APOLOGY
    assert [t.role for t in dispatcher.store.history("oc_chat:u1")] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_unsupported_message_type_gets_fixed_reply_without_state() -> None:
    channel = RecordingChannel()
    dispatcher = _dispatcher(channel=channel)

    result = await dispatcher.handle_inbound_event(
        build_payload("e1", message_type="image", content={"image_key": "img_1"})
    )

    assert result.outcome_kind == "unsupported"
    assert channel.sent[0].content == UNSUPPORTED_TYPE
    assert dispatcher.store.history("oc_chat:u1") == []


@pytest.mark.asyncio
async def test_delivery_failure_is_swallowed() -> None:
    dispatcher = _dispatcher(StubProvider(["lost"]), RecordingChannel(fail=True))

    result = await dispatcher.handle_inbound_event(build_payload("e1"))

    assert result.admitted
    assert result.outcome_kind == "chat"


@pytest.mark.asyncio
async def test_malformed_payload_is_not_admitted() -> None:
    dispatcher = _dispatcher()
    result = await dispatcher.handle_inbound_event({"header": {}, "event": {}})
    assert not result.admitted
    assert result.outcome_kind == "malformed"


@pytest.mark.asyncio
async def test_unexpected_errors_never_escape() -> None:
    class ExplodingStore(ConversationStore):
        async def append_user(self, session_id: str, text: str):
            raise RuntimeError("store exploded")

    dispatcher = _dispatcher()
    dispatcher.store = ExplodingStore(max_size=10)

    result = await dispatcher.handle_inbound_event(build_payload("e1"))

    assert result.admitted
    assert result.outcome_kind == "error"
    assert "store exploded" in result.detail


class FailingTranscoder:
    def __init__(self) -> None:
        self.inputs: list[Path] = []

    async def transcode(self, input_path: Path, target_format: str) -> Path:
        self.inputs.append(input_path)
        raise MediaError("ffmpeg exited with 1")


class CopyTranscoder:
    async def transcode(self, input_path: Path, target_format: str) -> Path:
        out = input_path.with_suffix(f".{target_format}")
        out.write_bytes(input_path.read_bytes())
        return out


async def _token() -> str:
    return "tok"


async def _fetch(ref: FileRef, token: str):
    assert ref == FileRef(message_id="om_a1", file_key="file_1")
    yield b"voice"


def _audio_payload(event_id: str = "a1") -> dict[str, Any]:
    return build_payload(event_id, message_type="audio", content={"file_key": "file_1", "duration": 1500})


@pytest.mark.asyncio
async def test_audio_transcode_failure_sends_audio_failure(tmp_path: Path) -> None:
    provider = StubProvider()
    channel = RecordingChannel()
    transcoder = FailingTranscoder()
    pipeline = TranscriptionPipeline(_token, _fetch, transcoder, provider.transcribe, temp_dir=tmp_path)
    dispatcher = _dispatcher(provider, channel, pipeline=pipeline)

    result = await dispatcher.handle_inbound_event(_audio_payload())

    assert result.outcome_kind == "audio_failed"
    assert channel.sent[0].content == AUDIO_FAILURE
    assert provider.transcribed == []
    assert not transcoder.inputs[0].exists()
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_audio_transcript_is_handled_as_text(tmp_path: Path) -> None:
    provider = StubProvider()
    channel = RecordingChannel()
    pipeline = TranscriptionPipeline(_token, _fetch, CopyTranscoder(), provider.transcribe, temp_dir=tmp_path)
    dispatcher = _dispatcher(provider, channel, pipeline=pipeline)

    result = await dispatcher.handle_inbound_event(_audio_payload())

    assert result.outcome_kind == "image"
    assert provider.image_prompts == ["a red fox"]
    assert channel.sent[0].content == "https://img.example/a red fox.png"


@pytest.mark.asyncio
async def test_audio_without_pipeline_is_unsupported() -> None:
    channel = RecordingChannel()
    dispatcher = _dispatcher(channel=channel)

    result = await dispatcher.handle_inbound_event(_audio_payload())

    assert result.outcome_kind == "unsupported"
    assert channel.sent[0].content == UNSUPPORTED_TYPE


@pytest.mark.asyncio
async def test_chat_logs_token_usage_and_truncation() -> None:
    class TruncatingProvider(StubProvider):
        async def chat(self, messages, model=None) -> LLMResponse:
            return LLMResponse(
                content="partial answer",
                finish_reason="length",
                usage={"prompt_tokens": 12, "completion_tokens": 256, "total_tokens": 268},
            )

    lines: list[str] = []
    sink_id = logger.add(lambda message: lines.append(str(message)), level="DEBUG", format="{level} {message}")
    try:
        channel = RecordingChannel()
        await _dispatcher(TruncatingProvider(), channel).handle_inbound_event(build_payload("e1"))
    finally:
        logger.remove(sink_id)

    assert channel.sent[0].content == "partial answer"
    assert any(line.startswith("WARNING") and "finish_reason=length" in line for line in lines)
    assert any("12 prompt + 256 completion tokens" in line for line in lines)
