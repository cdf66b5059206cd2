"""Gateway: wires config, Feishu channel, LLM provider and the dispatcher."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from larkgate.agent.conversation import ConversationStore, build_estimator
from larkgate.agent.dispatcher import SessionDispatcher
from larkgate.agent.gate import EventGate
from larkgate.agent.transcription import TranscriptionPipeline
from larkgate.bus.events import HandlingResult
from larkgate.channels.feishu import MESSAGE_EVENT_TYPE, FeishuChannel, FeishuClient
from larkgate.config import Config
from larkgate.providers.base import LLMProvider
from larkgate.providers.litellm_provider import LiteLLMProvider
from larkgate.storage.backends import MemoryBackend
from larkgate.utils.audio import FfmpegTranscoder


def doctor(config: Config) -> dict[str, Any]:
    """Self-check of required settings, in the webhook response shape."""
    missing = config.missing_settings()
    if missing:
        return {"code": 1, "message": f"Incomplete configuration, missing: {', '.join(missing)}"}
    return {"code": 0, "message": "✅ Configuration OK, ready to use."}


def build_policies(config: Config) -> dict[str, Any]:
    retries = config.retries
    return {name: getattr(retries, name).to_policy() for name in type(retries).model_fields}


class Gateway:
    """One process-wide gateway instance; an HTTP layer calls :meth:`handle_webhook`."""

    def __init__(
        self,
        config: Config,
        client: FeishuClient | None = None,
        provider: LLMProvider | None = None,
    ):
        self.config = config
        self.client = client or FeishuClient(config.feishu)
        self.channel = FeishuChannel(config.feishu, self.client)
        self.provider = provider or LiteLLMProvider(
            api_key=config.llm.api_key or None,
            api_base=config.llm.api_base,
            default_model=config.llm.model,
            image_model=config.llm.image_model,
            image_size=config.llm.image_size,
            transcription_model=config.llm.transcription_model,
            fallback_models=config.llm.fallback_models,
        )
        policies = build_policies(config)

        gate = EventGate(
            bot_identities=[config.feishu.bot_name, config.feishu.bot_open_id],
            staleness_seconds=config.gate.staleness_seconds,
            processed=MemoryBackend(
                max_entries=config.gate.max_tracked_events,
                ttl_seconds=config.gate.event_ttl_seconds,
            ),
        )
        store = ConversationStore(
            max_size=config.conversation.max_size,
            estimator=build_estimator(config.conversation.estimator, config.llm.model),
            backend=MemoryBackend(
                max_entries=config.conversation.max_sessions,
                ttl_seconds=config.conversation.session_ttl_seconds,
            ),
        )

        pipeline = None
        if config.audio.enabled:
            pipeline = TranscriptionPipeline(
                credential_provider=self.client.get_token,
                fetch_file=self.client.fetch_file,
                transcoder=FfmpegTranscoder(config.audio.ffmpeg_path),
                transcriber=self.provider.transcribe,
                target_format=config.audio.target_format,
                skip_transcode=config.audio.skip_transcode,
                temp_dir=config.audio.temp_dir,
                policies=policies,
            )

        self.dispatcher = SessionDispatcher(
            gate=gate,
            store=store,
            provider=self.provider,
            channel=self.channel,
            pipeline=pipeline,
            mention_marker=config.feishu.mention_marker,
            bot_name=config.feishu.bot_name,
            policies=policies,
            event_budget_seconds=config.event_budget_seconds,
        )
        self._tasks: set[asyncio.Task] = set()

    async def handle_inbound_event(self, raw_payload: dict[str, Any]) -> HandlingResult:
        return await self.dispatcher.handle_inbound_event(raw_payload)

    async def handle_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Answer one webhook delivery; message events are processed in the background."""
        if payload.get("type") == "url_verification":
            logger.info("Feishu URL verification")
            return {"challenge": payload.get("challenge", "")}

        header = payload.get("header")
        if not isinstance(header, dict) or not header or not payload.get("event"):
            logger.info("Incomplete webhook payload; running self-check")
            return doctor(self.config)

        if header.get("event_type") == MESSAGE_EVENT_TYPE:
            # Acknowledge right away so the platform does not redeliver on slow replies.
            task = asyncio.create_task(self.handle_inbound_event(payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return {"code": 0}

        logger.info(f"Unhandled event type: {header.get('event_type')}")
        return {"code": 2}

    async def drain(self) -> None:
        """Wait for background event handlers still in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self.channel.close()
