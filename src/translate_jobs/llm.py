"""
LLM provider layer.

Defines the provider interface the translator talks to and the OpenRouter
implementation (OpenAI-compatible API, pay-per-token).
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from openai import AsyncOpenAI

from translate_jobs.config import LLMProvider as LLMProviderType

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from an LLM provider."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def usage(self) -> dict[str, Any]:
        """Token usage in the shape recorded by the usage log."""
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "model": self.model,
            "latency_ms": round(self.latency_ms, 1),
        }


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name for logging and identification."""
        ...

    @property
    @abstractmethod
    def model(self) -> str:
        """Current model name."""
        ...

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        **kwargs: Any,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: List of message dicts with 'role' and 'content' keys.
            temperature: Sampling temperature (0.0 to 2.0).
            max_tokens: Maximum tokens to generate.
            **kwargs: Additional provider-specific options.

        Returns:
            LLMResponse with the generated content and metadata.
        """
        ...

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        **kwargs: Any,
    ) -> LLMResponse:
        """Convenience method for a system + user prompt exchange."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        return await self.complete(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )


class OpenRouterProvider(LLMProvider):
    """
    OpenRouter LLM provider.

    Uses OpenRouter's unified API to reach Claude, GPT, Gemini, DeepSeek and
    others. The request timeout bounds how long one job can wait on the
    remote call.
    """

    MODELS = {
        "default": "anthropic/claude-sonnet-4.5",
        "fast": "anthropic/claude-3-haiku",
        "deepseek": "deepseek/deepseek-chat",
    }

    def __init__(
        self,
        api_key: str,
        model: str = "default",
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 120.0,
        max_retries: int = 3,
    ):
        self._model_name = self.MODELS.get(model, model)
        self._max_retries = max_retries
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    @property
    def name(self) -> str:
        return "openrouter"

    @property
    def model(self) -> str:
        return self._model_name

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        **kwargs: Any,
    ) -> LLMResponse:
        """Generate a completion via OpenRouter, retrying with backoff."""
        start_time = time.perf_counter()
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                response = await self._client.chat.completions.create(
                    model=self._model_name,
                    messages=messages,  # type: ignore[arg-type]
                    temperature=temperature,
                    max_tokens=max_tokens,
                    **kwargs,
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "OpenRouter request failed (attempt %d/%d): %s",
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(2**attempt)
                continue

            content = response.choices[0].message.content or ""
            usage = response.usage
            return LLMResponse(
                content=content.strip(),
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                model=self._model_name,
                latency_ms=(time.perf_counter() - start_time) * 1000,
                metadata={
                    "provider": self.name,
                    "finish_reason": response.choices[0].finish_reason,
                    "attempt": attempt + 1,
                },
            )

        raise last_error or RuntimeError("OpenRouter request failed after retries")


def create_llm_provider(
    provider_type: LLMProviderType | str,
    *,
    api_key: str | None = None,
    model: str = "default",
    **kwargs: Any,
) -> LLMProvider:
    """
    Create an LLM provider instance.

    Raises:
        ValueError: If provider_type is unknown or required config is missing.
    """
    if isinstance(provider_type, str):
        try:
            provider_type = LLMProviderType(provider_type.lower().replace("_", "-"))
        except ValueError:
            valid = [p.value for p in LLMProviderType]
            raise ValueError(
                f"Invalid provider type: {provider_type}. Valid options: {valid}"
            ) from None

    if provider_type == LLMProviderType.OPENROUTER:
        if not api_key:
            raise ValueError("OpenRouter provider requires an API key")
        return OpenRouterProvider(api_key=api_key, model=model, **kwargs)

    raise ValueError(f"Unknown provider type: {provider_type}")
