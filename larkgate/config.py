"""Configuration schema and loader."""

import os
from pathlib import Path
from typing import Literal

import yaml
from loguru import logger
from pydantic import BaseModel, Field

from larkgate.utils.retry import RetryPolicy


class FeishuConfig(BaseModel):
    app_id: str = ""
    app_secret: str = ""
    bot_name: str = ""
    bot_open_id: str = ""
    api_base: str = "https://open.feishu.cn"
    mention_marker: str = "@_user_1"
    post_threshold_chars: int = Field(default=500, ge=1)


class GateConfig(BaseModel):
    staleness_seconds: float = Field(default=10.0, gt=0)
    max_tracked_events: int = Field(default=10000, ge=0)  # 0 = unbounded
    event_ttl_seconds: float = Field(default=3600.0, ge=0)  # 0 = never expire


class ConversationConfig(BaseModel):
    max_size: int = Field(default=1024, ge=1)
    estimator: Literal["chars", "approx_tokens", "litellm"] = "chars"
    max_sessions: int = Field(default=1000, ge=0)  # 0 = unbounded
    session_ttl_seconds: float = Field(default=0.0, ge=0)  # 0 = never expire


class LLMConfig(BaseModel):
    model: str = "openai/gpt-3.5-turbo"
    api_key: str = ""
    api_base: str | None = None
    image_model: str | None = None
    image_size: str = "1024x1024"
    transcription_model: str = "whisper-1"
    fallback_models: list[str] = Field(default_factory=list)


class AudioConfig(BaseModel):
    enabled: bool = True
    target_format: str = "mp3"
    skip_transcode: bool = False  # only when the platform already delivers target_format
    ffmpeg_path: str = "ffmpeg"
    temp_dir: str | None = None


class RetryConfig(BaseModel):
    attempts: int = Field(default=1, ge=1, le=10)
    backoff_seconds: float = Field(default=0.5, ge=0)
    max_backoff_seconds: float = Field(default=4.0, ge=0)
    timeout_seconds: float | None = Field(default=30.0, gt=0)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
            timeout_seconds=self.timeout_seconds,
        )


class RetriesConfig(BaseModel):
    credential: RetryConfig = Field(default_factory=lambda: RetryConfig(attempts=2, timeout_seconds=10))
    file_fetch: RetryConfig = Field(default_factory=lambda: RetryConfig(attempts=2, timeout_seconds=20))
    transcode: RetryConfig = Field(default_factory=lambda: RetryConfig(attempts=1, timeout_seconds=30))
    transcription: RetryConfig = Field(default_factory=lambda: RetryConfig(attempts=2, timeout_seconds=60))
    chat: RetryConfig = Field(default_factory=lambda: RetryConfig(attempts=2, timeout_seconds=60))
    image: RetryConfig = Field(default_factory=lambda: RetryConfig(attempts=1, timeout_seconds=60))
    # Replies are never retried.
    reply: RetryConfig = Field(default_factory=lambda: RetryConfig(attempts=1, timeout_seconds=10))


class Config(BaseModel):
    """Root configuration."""
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    retries: RetriesConfig = Field(default_factory=RetriesConfig)
    event_budget_seconds: float | None = Field(default=120.0, gt=0)
    log_level: str = "INFO"
    log_file: str | None = None

    def missing_settings(self) -> list[str]:
        """Names of required settings that are still empty."""
        required = {
            "feishu.app_id": self.feishu.app_id,
            "feishu.app_secret": self.feishu.app_secret,
            "feishu.bot_name": self.feishu.bot_name,
            "llm.api_key": self.llm.api_key,
        }
        return [name for name, value in required.items() if not value]


# env var -> (section, field, cast)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "FEISHU_APP_ID": ("feishu", "app_id", str),
    "FEISHU_APP_SECRET": ("feishu", "app_secret", str),
    "FEISHU_BOTNAME": ("feishu", "bot_name", str),
    "FEISHU_BOT_OPEN_ID": ("feishu", "bot_open_id", str),
    "OPENAI_API_KEY": ("llm", "api_key", str),
    "OPENAI_MODEL": ("llm", "model", str),
    "OPENAI_MAX_TOKEN": ("conversation", "max_size", int),
}


def apply_env_overrides(config: Config, environ: dict[str, str] | None = None) -> Config:
    """Overlay environment variables onto a loaded config (mutates in place)."""
    env = os.environ if environ is None else environ
    for var, (section, field, cast) in _ENV_OVERRIDES.items():
        raw = env.get(var)
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError:
            logger.warning(f"Ignoring {var}: cannot parse {raw!r}")
            continue
        if cast is int and value < 1:
            logger.warning(f"Ignoring {var}: must be positive")
            continue
        setattr(getattr(config, section), field, value)
    return config


def load_config(path: str | Path = "config.yaml", environ: dict[str, str] | None = None) -> Config:
    """Load config from YAML file, then apply environment overrides."""
    p = Path(path).expanduser()
    resolved_path = p.resolve()
    if p.exists():
        with open(resolved_path) as f:
            data = yaml.safe_load(f) or {}
        config = Config(**data)
    else:
        config = Config()
    return apply_env_overrides(config, environ)
