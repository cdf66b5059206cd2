"""Collaborator interface for language-model backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class LLMResponse:
    content: str | None
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)


class LLMProvider(ABC):
    """Chat completion, image generation and speech-to-text.

    Implementations raise :class:`larkgate.errors.BackendError` on failure.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    async def generate_image(self, prompt: str) -> str:
        """Return the URL of one generated image."""

    @abstractmethod
    async def transcribe(self, audio_path: Path, audio_format: str) -> str:
        """Return the plain-text transcript of an audio file."""
