"""Session dispatcher: admission -> (transcription) -> command or chat -> reply."""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from larkgate.agent.conversation import ConversationStore
from larkgate.agent.gate import EventGate
from larkgate.agent.transcription import TranscriptionPipeline
from larkgate.bus.events import HandlingResult, InboundEvent, MessageKind, OutboundMessage
from larkgate.channels.base import BaseChannel
from larkgate.channels.commands import (
    ChatRequest,
    ClearRequest,
    CommandRouter,
    HelpRequest,
    ImageRequest,
    get_help_text,
)
from larkgate.channels.feishu import FileRef, parse_event
from larkgate.errors import BackendError, DeliveryError
from larkgate.providers.base import LLMProvider
from larkgate.utils.logger import bind_event_id, reset_event_id
from larkgate.utils.retry import Deadline, RetryPolicy, call_with_policy

CHAT_APOLOGY = "Sorry, I can't answer that right now."
IMAGE_FAILURE = "Sorry, the image could not be generated."
CLEAR_CONFIRMATION = "✅ Conversation memory cleared."
UNSUPPORTED_TYPE = "This message type is not supported yet."
AUDIO_FAILURE = "Sorry, I couldn't process that audio message."


class SessionDispatcher:
    """Runs one inbound delivery end to end. Never raises to the caller."""

    def __init__(
        self,
        gate: EventGate,
        store: ConversationStore,
        provider: LLMProvider,
        channel: BaseChannel,
        pipeline: TranscriptionPipeline | None = None,
        router: CommandRouter | None = None,
        mention_marker: str = "@_user_1",
        bot_name: str = "",
        policies: dict[str, RetryPolicy] | None = None,
        event_budget_seconds: float | None = 120.0,
        parse: Callable[[dict[str, Any]], InboundEvent | None] = parse_event,
    ):
        self.gate = gate
        self.store = store
        self.provider = provider
        self.channel = channel
        self.pipeline = pipeline
        self.router = router or CommandRouter()
        self.mention_marker = mention_marker
        self.bot_name = bot_name
        self.policies = policies or {}
        self.event_budget_seconds = event_budget_seconds
        self.parse = parse

    def _policy(self, name: str) -> RetryPolicy:
        return self.policies.get(name, RetryPolicy())

    async def handle_inbound_event(self, raw_payload: dict[str, Any]) -> HandlingResult:
        event: InboundEvent | None = None
        token = None
        try:
            event = self.parse(raw_payload)
            if event is None:
                return HandlingResult(admitted=False, outcome_kind="malformed")
            token = bind_event_id(event.event_id)

            decision = self.gate.admit(event)
            if not decision.process:
                return HandlingResult(admitted=False, outcome_kind=decision.reason)

            deadline = Deadline(self.event_budget_seconds)
            outcome_kind = await self._dispatch(event, deadline)
            return HandlingResult(admitted=True, outcome_kind=outcome_kind)
        except Exception as e:
            event_id = event.event_id if event else "?"
            logger.exception(f"Unhandled error while processing event {event_id}: {e}")
            return HandlingResult(admitted=event is not None, outcome_kind="error", detail=str(e))
        finally:
            if token is not None:
                reset_event_id(token)

    async def _dispatch(self, event: InboundEvent, deadline: Deadline) -> str:
        if event.message_kind == MessageKind.TEXT:
            return await self._handle_text(event, event.text, deadline)

        if event.message_kind == MessageKind.AUDIO and self.pipeline is not None:
            result = await self.pipeline.run(
                FileRef(message_id=event.message_id, file_key=event.file_key),
                event_id=event.event_id,
                deadline=deadline,
            )
            if not result.ok:
                await self._reply(event, AUDIO_FAILURE)
                return "audio_failed"
            logger.debug(f"Audio from {event.session_id} transcribed ({len(result.text)} chars)")
            return await self._handle_text(event, result.text, deadline)

        logger.debug(f"Unsupported message type from {event.session_id}")
        await self._reply(event, UNSUPPORTED_TYPE)
        return "unsupported"

    async def _handle_text(self, event: InboundEvent, text: str, deadline: Deadline) -> str:
        if self.mention_marker:
            text = text.replace(self.mention_marker, "")
        question = text.strip()
        outcome = self.router.route(question)

        if isinstance(outcome, ChatRequest):
            answer = await self._chat(event.session_id, outcome.text, deadline)
            await self._reply(event, answer)
            return "chat"

        if isinstance(outcome, ImageRequest):
            logger.debug(f"Image prompt from {event.session_id}: {outcome.prompt!r}")
            try:
                reply = await call_with_policy(
                    "image",
                    lambda: self.provider.generate_image(outcome.prompt),
                    self._policy("image"),
                    deadline,
                    BackendError,
                )
            except BackendError as e:
                logger.error(f"Image generation failed for {event.session_id}: {e}")
                reply = IMAGE_FAILURE
            await self._reply(event, reply)
            return "image"

        if isinstance(outcome, ClearRequest):
            cleared = await self.store.clear(event.session_id)
            logger.info(f"Session {event.session_id} cleared ({cleared} turns)")
            await self._reply(event, CLEAR_CONFIRMATION)
            return "clear"

        if isinstance(outcome, HelpRequest) and outcome.command not in ("", "/help"):
            logger.debug(f"Unknown command {outcome.command!r}; sending help")
        await self._reply(event, get_help_text(self.bot_name))
        return "help"

    async def _chat(self, session_id: str, question: str, deadline: Deadline) -> str:
        history = await self.store.append_user(session_id, question)
        messages = [turn.as_message() for turn in history]
        try:
            response = await call_with_policy(
                "chat",
                lambda: self.provider.chat(messages),
                self._policy("chat"),
                deadline,
                BackendError,
            )
            answer = response.content or ""
            if not answer:
                raise BackendError("empty completion")
            if response.finish_reason != "stop":
                logger.warning(f"Chat answer for {session_id} ended with finish_reason={response.finish_reason}")
            if response.usage:
                logger.debug(
                    f"Chat usage for {session_id}: {response.usage.get('prompt_tokens', 0)} prompt + "
                    f"{response.usage.get('completion_tokens', 0)} completion tokens"
                )
        except BackendError as e:
            logger.error(f"Chat completion failed for {session_id}: {e}")
            answer = CHAT_APOLOGY
        await self.store.append_assistant_and_trim(session_id, answer)
        return answer

    async def _reply(self, event: InboundEvent, content: str) -> None:
        """Best-effort delivery; failures are logged and never re-raised."""
        msg = OutboundMessage(chat_id=event.chat_id, content=content, metadata={"event_id": event.event_id})
        try:
            await call_with_policy(
                "reply",
                lambda: self.channel.send(msg),
                self._policy("reply"),
                None,
                DeliveryError,
            )
        except DeliveryError as e:
            logger.error(f"Reply to {event.chat_id} for event {event.event_id} not delivered: {e}")
