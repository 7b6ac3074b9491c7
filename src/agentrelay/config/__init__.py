"""Configuration — Pydantic models for agentrelay settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from agentrelay.llm.retry import RateLimitedRetrier, RateLimiter, RetryPolicy


class LLMConfig(BaseModel):
    """LLM provider configuration.

    Model names use litellm's provider-prefix format:
        "openai/gpt-4o"
        "anthropic/claude-sonnet-4-5-20250929"
        "gemini/gemini-2.5-flash"

    API keys are read from env vars automatically by litellm
    (ANTHROPIC_API_KEY, GEMINI_API_KEY, OPENAI_API_KEY).
    """

    model: str = Field(default="openai/gpt-4o")
    temperature: float | None = Field(default=None)
    max_tokens: int | None = Field(default=None)


class RateLimitConfig(BaseModel):
    """Per-provider admission and retry budget."""

    rpm: int = Field(default=200, description="Requests per rolling minute")
    tpm: int = Field(default=150_000, description="Estimated tokens per rolling minute")
    max_retries: int = Field(default=5, description="Retries for transient failures")
    base_delay: float = Field(default=1.0, description="First backoff delay (seconds)")
    jitter_ratio: float = Field(default=0.5, description="Max jitter as a share of the delay")
    max_delay: float = Field(default=60.0, description="Backoff ceiling (seconds)")

    def build_retrier(self) -> RateLimitedRetrier:
        return RateLimitedRetrier(
            limiter=RateLimiter(rpm=self.rpm, tpm=self.tpm),
            policy=RetryPolicy(
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                jitter_ratio=self.jitter_ratio,
                max_delay=self.max_delay,
            ),
        )


class RunnerConfig(BaseModel):
    """Turn loop defaults."""

    max_turns: int = Field(default=10, description="Model round-trips per run")
    tool_nudge_after: int | None = Field(
        default=3,
        description="Consecutive tool turns before asking the model for an answer",
    )
    legacy_handoff_prefix: bool = Field(
        default=True,
        description="Treat unadvertised handoff_to_* tool calls as handoffs",
    )


class RelayConfig(BaseModel):
    """Top-level agentrelay configuration."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    agents_dir: str = Field(
        default="agents", description="Directory for agent definitions"
    )
    state_dir: str = Field(
        default="~/.agentrelay/state", description="Directory for workflow checkpoints"
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> RelayConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            OPENAI_API_KEY / ANTHROPIC_API_KEY / ...  - read by litellm automatically
            AGENTRELAY_MODEL        - Override model (litellm format with provider prefix)
            AGENTRELAY_MAX_TURNS    - Override turn budget
            AGENTRELAY_RPM          - Override requests per minute
            AGENTRELAY_TPM          - Override tokens per minute
            AGENTRELAY_MAX_RETRIES  - Override retry count
            AGENTRELAY_AGENTS_DIR   - Override agent definitions directory
        """
        # .env values take precedence over stale shell exports
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path, encoding="utf-8") as f:
                config_data = json.load(f)

        llm = config_data.get("llm", {})
        rate_limit = config_data.get("rate_limit", {})
        runner = config_data.get("runner", {})

        env_model = os.environ.get("AGENTRELAY_MODEL")
        if env_model:
            llm["model"] = env_model

        env_max_turns = os.environ.get("AGENTRELAY_MAX_TURNS")
        if env_max_turns:
            runner["max_turns"] = int(env_max_turns)

        env_rpm = os.environ.get("AGENTRELAY_RPM")
        if env_rpm:
            rate_limit["rpm"] = int(env_rpm)

        env_tpm = os.environ.get("AGENTRELAY_TPM")
        if env_tpm:
            rate_limit["tpm"] = int(env_tpm)

        env_max_retries = os.environ.get("AGENTRELAY_MAX_RETRIES")
        if env_max_retries:
            rate_limit["max_retries"] = int(env_max_retries)

        env_agents_dir = os.environ.get("AGENTRELAY_AGENTS_DIR")
        if env_agents_dir:
            config_data["agents_dir"] = env_agents_dir

        if llm:
            config_data["llm"] = llm
        if rate_limit:
            config_data["rate_limit"] = rate_limit
        if runner:
            config_data["runner"] = runner

        return cls.model_validate(config_data)
