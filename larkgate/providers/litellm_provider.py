"""LiteLLM-backed chat completion, image generation and transcription."""

import os
from pathlib import Path
from typing import Any

import litellm
from litellm import acompletion, aimage_generation, atranscription
from loguru import logger

from larkgate.errors import BackendError
from larkgate.providers.base import LLMProvider, LLMResponse
from larkgate.providers.registry import find_by_model, normalize_model_name
from larkgate.utils.retry import is_retryable_error


def _field(obj: Any, name: str) -> Any:
    """Read ``name`` from a LiteLLM response object or its dict form."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _flatten_content(content: Any) -> str | None:
    """Message content may be a string or a list of text parts."""
    if content is None:
        return None
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts = []
        for part in content:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text") or part.get("content"), str):
                texts.append(part.get("text") or part.get("content"))
        return "".join(texts).strip() or None
    return str(content)


def _usage(response: Any) -> dict[str, int]:
    usage = _field(response, "usage")
    if not usage:
        return {}
    return {
        key: int(_field(usage, key) or 0)
        for key in ("prompt_tokens", "completion_tokens", "total_tokens")
    }


def _to_backend_error(prefix: str, err: Exception) -> BackendError:
    return BackendError(f"{prefix}: {err}", status_code=getattr(err, "status_code", None))


class LiteLLMProvider(LLMProvider):
    """All three backends behind one LiteLLM client configuration."""

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "openai/gpt-3.5-turbo",
        image_model: str | None = None,
        image_size: str = "1024x1024",
        transcription_model: str = "whisper-1",
        fallback_models: list[str] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = normalize_model_name(default_model)
        self.image_model = normalize_model_name(image_model) if image_model else None
        self.image_size = image_size
        self.transcription_model = normalize_model_name(transcription_model)
        self.fallback_models = [normalize_model_name(m) for m in (fallback_models or [])]

        family = find_by_model(self.default_model)
        if api_key and family:
            os.environ.setdefault(family.env_key, api_key)

        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _credentials(self) -> dict[str, Any]:
        creds: dict[str, Any] = {}
        if self.api_key:
            creds["api_key"] = self.api_key
        if self.api_base:
            creds["api_base"] = self.api_base
        return creds

    def _candidates(self, model: str | None) -> list[str]:
        ordered = [normalize_model_name(model or self.default_model), *self.fallback_models]
        return list(dict.fromkeys(ordered))

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
    ) -> LLMResponse:
        candidates = self._candidates(model)
        for position, candidate in enumerate(candidates, start=1):
            try:
                response = await acompletion(model=candidate, messages=messages, **self._credentials())
            except Exception as e:
                if position == len(candidates) or not is_retryable_error(e):
                    raise _to_backend_error("Chat completion failed", e) from e
                logger.warning(f"Chat model '{candidate}' failed ({e}); falling back")
                continue
            if position > 1:
                logger.warning(f"Chat answered by fallback model '{candidate}'")
            return self._parse_completion(response)
        raise BackendError("Chat completion failed: no model configured")

    @staticmethod
    def _parse_completion(response: Any) -> LLMResponse:
        choices = _field(response, "choices") or []
        if not choices:
            raise BackendError("Chat completion returned no choices")
        choice = choices[0]
        message = _field(choice, "message")
        raw = _field(message, "content") if message is not None else _field(choice, "text")
        return LLMResponse(
            content=_flatten_content(raw),
            finish_reason=_field(choice, "finish_reason") or "stop",
            usage=_usage(response),
        )

    async def generate_image(self, prompt: str) -> str:
        kwargs = self._credentials()
        if self.image_model:
            kwargs["model"] = self.image_model
        try:
            response = await aimage_generation(prompt=prompt, n=1, size=self.image_size, **kwargs)
        except Exception as e:
            raise _to_backend_error("Image generation failed", e) from e

        images = _field(response, "data") or []
        url = _field(images[0], "url") if images else None
        if not url:
            raise BackendError("Image generation returned no URL")
        return str(url)

    async def transcribe(self, audio_path: Path, audio_format: str) -> str:
        try:
            with open(audio_path, "rb") as audio:
                response = await atranscription(
                    model=self.transcription_model,
                    file=audio,
                    **self._credentials(),
                )
        except Exception as e:
            raise _to_backend_error("Transcription failed", e) from e

        text = _field(response, "text")
        if text is None:
            raise BackendError(f"Transcription of {audio_format} audio returned no text")
        return str(text).strip()
