"""Text-correction backend for AI-assisted revisions.

Talks to any OpenAI-compatible chat endpoint: a local LM Studio server or
a cloud provider. One request corrects one chapter; the reply must carry
the whole chapter back, so truncated answers are errors.

Supported providers:
- lmstudio: Local LM Studio server (OpenAI-compatible API)
- openai: OpenAI API
- anthropic: Anthropic API (via OpenAI-compatible endpoint)
"""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog
from openai import APIConnectionError, APIError, APITimeoutError, OpenAI

from folio.config.app_config import load_app_config

logger = structlog.get_logger(__name__)

Provider = Literal["lmstudio", "openai", "anthropic"]

# Used when the app config has no entry for a provider
PROVIDER_DEFAULTS: dict[Provider, dict[str, Any]] = {
    "lmstudio": {
        "base_url": "http://localhost:1234/v1",
        "api_key": "lm-studio",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "api_key_env": "OPENAI_API_KEY",
    },
    "anthropic": {
        "base_url": "https://api.anthropic.com/v1",
        "api_key_env": "ANTHROPIC_API_KEY",
    },
}

# Reasoning blocks some models emit before the answer
_REASONING_RE = re.compile(
    r"<(think|analysis|reasoning)>.*?</\1>", re.DOTALL | re.IGNORECASE
)
_FENCE_RE = re.compile(r"^```[a-z]*\n(?P<body>.*)\n```$", re.DOTALL)


def sanitize_output(text: str) -> str:
    """Remove thinking tags and a wrapping code fence from model output."""
    result = _REASONING_RE.sub("", text).strip("\n")
    match = _FENCE_RE.match(result.strip())
    if match:
        return match.group("body")
    return result


class LLMError(Exception):
    """Error during LLM interaction."""


class LLMConnectionError(LLMError):
    """The provider could not be reached or timed out."""


class LLMResponseError(LLMError):
    """The provider answered with something unusable."""


class LLMTruncatedError(LLMResponseError):
    """The answer hit the token limit before the text was complete."""

    def __init__(self, max_tokens: int):
        self.max_tokens = max_tokens
        super().__init__(f"LLM answer truncated at max_tokens={max_tokens}")


@dataclass
class LLMConfig:
    """Connection and sampling settings for one provider."""

    provider: Provider = "lmstudio"
    base_url: str = "http://localhost:1234/v1"
    model: str = "default"
    temperature: float = 0.0
    max_tokens: int = 8192
    timeout: int = 120
    api_key: str | None = None

    @classmethod
    def from_app_config(cls, provider: str | None = None, model: str | None = None) -> LLMConfig:
        """Build a client config from the app config's provider section.

        Args:
            provider: Provider name (defaults to ai.default_provider)
            model: Model override (defaults to the provider's default_model)
        """
        app_config = load_app_config()
        provider = provider or app_config.ai.default_provider
        defaults = PROVIDER_DEFAULTS.get(provider, {})  # type: ignore[call-overload]
        provider_config = app_config.providers.get(provider)

        if provider_config is not None and provider_config.api_key_env:
            api_key = provider_config.get_api_key()
        elif "api_key_env" in defaults:
            api_key = os.environ.get(defaults["api_key_env"])
        else:
            api_key = defaults.get("api_key")

        base_url = (provider_config.base_url if provider_config else None) or defaults.get(
            "base_url", ""
        )

        return cls(
            provider=provider,  # type: ignore[arg-type]
            base_url=base_url,
            model=model or (provider_config.default_model if provider_config else "default"),
            timeout=app_config.ai.timeout,
            api_key=api_key,
        )


@dataclass
class LLMResponse:
    """One completion with its accounting."""

    content: str
    model: str
    provider: Provider
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: int = 0

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"

    @property
    def total_tokens(self) -> int:
        return self.usage.get("total_tokens", 0)


class LLMClient:
    """Chat client over the OpenAI SDK."""

    def __init__(
        self,
        config: LLMConfig | None = None,
        provider: Provider | None = None,
        model: str | None = None,
    ):
        """Initialize the client.

        Args:
            config: LLM configuration (built from the app config if not provided)
            provider: Provider to use when config is built here
            model: Override model from config
        """
        self.config = config or LLMConfig.from_app_config(provider=provider, model=model)
        if model is not None:
            self.config.model = model

        self._client = OpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key or "not-needed",
            timeout=self.config.timeout,
        )

        logger.info(
            "llm_client.initialized",
            provider=self.config.provider,
            model=self.config.model,
            base_url=self.config.base_url,
        )

    def chat(self, messages: list[dict[str, str]], max_tokens: int | None = None) -> LLMResponse:
        """Send a chat completion request.

        Args:
            messages: ``{"role": ..., "content": ...}`` dicts
            max_tokens: Override the configured token limit

        Raises:
            LLMConnectionError: If the provider is unreachable or times out
            LLMResponseError: If the response has no choices
            LLMError: For any other API error
        """
        start_time = time.time()
        try:
            completion = self._client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                temperature=self.config.temperature,
                max_tokens=max_tokens or self.config.max_tokens,
            )
        except (APIConnectionError, APITimeoutError) as e:
            raise LLMConnectionError(
                f"Could not connect to {self.config.provider} at {self.config.base_url}: {e}"
            ) from e
        except APIError as e:
            raise LLMError(f"LLM call failed: {e}") from e

        if not completion.choices:
            raise LLMResponseError("Empty response from LLM")

        choice = completion.choices[0]
        usage = {}
        if completion.usage:
            usage = {
                "prompt_tokens": completion.usage.prompt_tokens,
                "completion_tokens": completion.usage.completion_tokens,
                "total_tokens": completion.usage.total_tokens,
            }

        response = LLMResponse(
            content=choice.message.content or "",
            model=completion.model,
            provider=self.config.provider,
            finish_reason=choice.finish_reason,
            usage=usage,
            latency_ms=int((time.time() - start_time) * 1000),
        )
        logger.debug(
            "llm_client.response",
            model=response.model,
            tokens=response.total_tokens,
            finish_reason=response.finish_reason,
            latency_ms=response.latency_ms,
        )
        return response

    def simple_chat(self, system_prompt: str, user_message: str) -> str:
        """Single-turn chat; returns the answer text.

        Raises:
            LLMTruncatedError: If the answer stopped at the token limit
        """
        response = self.chat(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ]
        )
        if response.truncated:
            raise LLMTruncatedError(self.config.max_tokens)
        return response.content


class LLMTextCorrector:
    """Text corrector backed by an OpenAI-compatible chat model."""

    def __init__(self, client: LLMClient):
        self.client = client

    def correct(self, text: str, instructions: str) -> str:
        """Return the model's corrected version of text.

        Raises:
            LLMResponseError: If the model returns nothing for non-empty text
        """
        corrected = sanitize_output(self.client.simple_chat(instructions, text))
        if text.strip() and not corrected.strip():
            raise LLMResponseError("LLM returned an empty correction")
        return corrected
