"""
TDD Machine Router — per-role model access through LiteLLM.

Agents call `router.complete(role, messages)`. The router resolves the
role's model and temperature from config, points LiteLLM at the
configured OpenAI-compatible endpoint, retries transient failures, and
tracks token usage for the run summary.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from tddmachine.config_loader import TddConfig
from tddmachine.step import Role


class RouterError(Exception):
    """The LLM call failed after retries, or returned nothing usable."""


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    call_count: int = 0


@dataclass
class UsageTracker:
    """Token counts for the current process."""
    usage: UsageRecord = field(default_factory=UsageRecord)
    by_role: dict[str, int] = field(default_factory=dict)

    def record(self, role: str, response: Any) -> int:
        usage = getattr(response, "usage", None)
        total = 0
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            total = getattr(usage, "total_tokens", 0) or 0
            self.usage.total_tokens += total
        self.usage.call_count += 1
        self.by_role[role] = self.by_role.get(role, 0) + total
        return total

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "prompt_tokens": self.usage.prompt_tokens,
            "completion_tokens": self.usage.completion_tokens,
            "call_count": self.usage.call_count,
            "by_role": dict(self.by_role),
        }


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    provider: str
    tokens_used: int = 0
    latency_ms: int = 0


def _litellm_model(model: str) -> str:
    """Route every model through LiteLLM's OpenAI-compatible adapter."""
    return model if model.startswith("openai/") else f"openai/{model}"


class Router:
    """Resolves roles to models and calls the configured provider."""

    def __init__(self, config: TddConfig):
        self.config = config
        self.usage = UsageTracker()
        litellm.suppress_debug_info = True

    @property
    def provider(self) -> str:
        return self.config.llm.provider

    def resolve_model(self, role: Role | str) -> tuple[str, float]:
        role = Role.from_str(str(role))
        cfg = self.config.roles.for_role(role.value)
        return cfg.model, cfg.temperature

    def _build_kwargs(
        self,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        llm = self.config.llm
        kwargs: dict[str, Any] = {
            "model": _litellm_model(model),
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "api_base": llm.base_url.rstrip("/"),
        }
        api_key = llm.api_key()
        if api_key:
            kwargs["api_key"] = api_key
        if llm.provider == "github_copilot":
            kwargs["extra_headers"] = {
                "X-GitHub-Api-Version": llm.effective_api_version,
                "Copilot-Integration-Id": "vscode-chat",
            }
        return kwargs

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=False)
    def _call(self, kwargs: dict[str, Any]) -> Any:
        return litellm.completion(**kwargs)

    def complete(
        self,
        role: Role | str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
    ) -> RouterResponse:
        """Send a chat completion for `role`. Raises RouterError on failure."""
        model, temperature = self.resolve_model(role)
        kwargs = self._build_kwargs(model, messages, temperature, max_tokens)

        if not self.config.llm.api_key():
            raise RouterError(
                f"API key env var {self.config.llm.api_key_env} is not set"
            )

        logger.debug(f"[ROUTER] {role} → {model} via {self.provider} ({len(messages)} messages)")
        start = time.monotonic()
        try:
            response = self._call(kwargs)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise RouterError(f"{self.provider} call for {role} failed: {cause}") from cause

        elapsed_ms = int((time.monotonic() - start) * 1000)
        tokens = self.usage.record(str(role), response)

        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise RouterError(f"{self.provider} returned no choices for {role}") from e

        if not content.strip():
            raise RouterError(f"{self.provider} returned an empty message for {role}")

        logger.debug(f"[ROUTER] {role} complete — {tokens} tokens, {elapsed_ms}ms")

        return RouterResponse(
            content=content,
            model=model,
            provider=self.provider,
            tokens_used=tokens,
            latency_ms=elapsed_ms,
        )
