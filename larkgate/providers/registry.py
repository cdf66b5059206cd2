"""Model-family table: bare model names -> LiteLLM ``provider/model`` ids."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelFamily:
    name: str  # LiteLLM provider prefix
    env_key: str
    bare_prefixes: tuple[str, ...] = ()


FAMILIES: tuple[ModelFamily, ...] = (
    ModelFamily("openai", "OPENAI_API_KEY", ("gpt-", "o1", "o3", "o4", "dall-e", "whisper", "tts-")),
    ModelFamily("anthropic", "ANTHROPIC_API_KEY", ("claude-",)),
    ModelFamily("deepseek", "DEEPSEEK_API_KEY", ("deepseek-",)),
    ModelFamily("gemini", "GEMINI_API_KEY", ("gemini-",)),
    ModelFamily("openrouter", "OPENROUTER_API_KEY"),
)

_ALIASES: dict[str, str] = {
    "gpt-3.5-turbo": "openai/gpt-3.5-turbo",
    "dall-e-3": "openai/dall-e-3",
    "whisper-1": "openai/whisper-1",
    "gemini-flash": "gemini/gemini-2.5-flash",
    "deepseek-chat": "deepseek/deepseek-chat",
}


def normalize_model_name(model: str) -> str:
    """Qualify a bare model name with its provider; qualified names pass through."""
    name = model.strip()
    if not name:
        return name
    lowered = name.lower()
    if lowered in _ALIASES:
        return _ALIASES[lowered]
    if "/" in name:
        return name
    for family in FAMILIES:
        if lowered.startswith(family.bare_prefixes):
            return f"{family.name}/{name}"
    return name


def find_by_model(model: str) -> ModelFamily | None:
    qualified = normalize_model_name(model)
    if "/" not in qualified:
        return None
    provider = qualified.split("/", 1)[0].lower()
    for family in FAMILIES:
        if family.name == provider:
            return family
    return None
