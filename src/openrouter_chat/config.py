"""Configuration management for the chat client."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from openrouter_chat.errors import DEFAULT_CAPABILITY_MARKERS
from openrouter_chat.types import WEB_SEARCH_PROMPT, Plugin

DEFAULT_SYSTEM_PROMPT = (
    "You are an AI assistant. You are helpful, creative, and provide accurate "
    "information. Answer questions in a friendly, conversational manner."
)


class ProviderConfig(BaseModel):
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    api_key_env: str = "OPENROUTER_API_KEY"
    referer: str = ""  # sent as HTTP-Referer for provider attribution
    title: str = "OpenRouter Chat"
    timeout: float = Field(default=30.0, gt=0)  # hard limit until headers arrive
    read_timeout: float = Field(default=60.0, gt=0)


class PluginConfig(BaseModel):
    id: str = "web"
    max_results: int = Field(default=1, gt=0)
    search_prompt: str = WEB_SEARCH_PROMPT

    def to_plugin(self) -> Plugin:
        return Plugin(id=self.id, max_results=self.max_results,
                      search_prompt=self.search_prompt)


class ChatSettings(BaseModel):
    default_model: str = "x-ai/grok-4"
    temperature: float = Field(default=0.7, ge=0, le=1)
    max_tokens: int = Field(default=8192, gt=0)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    vision_model: str = "x-ai/grok-vision-beta"
    image_detail: Literal["high", "low", "auto"] = "high"  # for attached images
    vision_models: list[str] = Field(
        default_factory=lambda: ["x-ai/grok-vision-beta", "z-ai/glm-4.5v"]
    )
    # When false, a request with media drops web search entirely
    allow_search_with_vision: bool = False
    cache_threshold: int = Field(default=4000, gt=0)
    web_plugin: PluginConfig = Field(default_factory=PluginConfig)
    capability_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CAPABILITY_MARKERS)
    )


class RetryConfig(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)  # seconds, linear backoff base


class AppConfig(BaseModel):
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    chat: ChatSettings = Field(default_factory=ChatSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)


CONFIG_FILENAME = "openrouter_chat.yaml"


def load_config(
    config_path: str | Path | None = None,
) -> tuple[AppConfig, Path | None]:
    """Load configuration from a YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. ``./openrouter_chat.yaml``
      3. ``~/.openrouter_chat/openrouter_chat.yaml``
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".openrouter_chat"):
            p = d / CONFIG_FILENAME
            if p.exists():
                config_path = p
                break
        else:
            return AppConfig(), None

    resolved = Path(config_path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(resolved) as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return AppConfig.model_validate(raw), resolved.resolve()


def resolve_api_key(config: AppConfig) -> str:
    """Return the configured API key, falling back to the environment."""
    if config.provider.api_key:
        return config.provider.api_key
    return os.environ.get(config.provider.api_key_env, "")
