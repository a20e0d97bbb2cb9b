from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from app.router.engine import CompletionOptions, CompletionResult, LLMProvider, LLMUnavailableError
from core.config import LLM_PROVIDER_CHAIN, LLM_RETRIES, LLM_TIMEOUT_SEC

logger = logging.getLogger("app.router.fallback")


class FallbackChain:
    """Try providers in order; each gets ``retries + 1`` attempts under one timeout policy."""

    def __init__(
        self,
        providers: Sequence[LLMProvider],
        timeout_sec: float = LLM_TIMEOUT_SEC,
        retries: int = LLM_RETRIES,
        backoff_sec: float = 0.35,
    ):
        self.providers = list(providers)
        self.timeout_sec = float(timeout_sec)
        self.retries = max(0, int(retries))
        self.backoff_sec = max(0.0, float(backoff_sec))

    def available_providers(self) -> list[LLMProvider]:
        return [provider for provider in self.providers if provider.is_available()]

    async def complete(self, messages: list[dict], options: CompletionOptions | None = None) -> CompletionResult:
        opts = options or CompletionOptions()
        timeout_sec = float(opts.timeout_sec or self.timeout_sec)
        attempts: list[str] = []

        providers = self.available_providers()
        if not providers:
            raise LLMUnavailableError("no llm provider configured", attempts)

        last_error: Exception | None = None
        for provider in providers:
            for attempt in range(self.retries + 1):
                attempts.append(provider.name)
                try:
                    content = await asyncio.wait_for(provider.complete(messages, opts), timeout=timeout_sec)
                    return CompletionResult(
                        content=content,
                        provider=provider.name,
                        model=provider.model,
                        attempts=attempts,
                    )
                except asyncio.TimeoutError as exc:
                    last_error = exc
                    logger.warning("llm timeout | provider=%s attempt=%s", provider.name, attempt + 1)
                except Exception as exc:
                    last_error = exc
                    logger.warning("llm failure | provider=%s attempt=%s err=%s", provider.name, attempt + 1, exc)

                if attempt < self.retries and self.backoff_sec:
                    await asyncio.sleep(self.backoff_sec * (attempt + 1))

        logger.warning("llm chain exhausted | attempts=%s err=%s", attempts, last_error)
        raise LLMUnavailableError(f"all llm providers failed: {last_error}", attempts)


def build_provider_chain(names: Sequence[str] = tuple(LLM_PROVIDER_CHAIN)) -> FallbackChain:
    from app.router.claude import AnthropicProvider
    from app.router.gemini import GeminiProvider
    from app.router.openai import OpenAIProvider

    registry = {
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "claude": AnthropicProvider,
        "gemini": GeminiProvider,
        "google": GeminiProvider,
    }
    providers: list[LLMProvider] = []
    for name in names:
        factory = registry.get(str(name).strip().lower())
        if factory is None:
            logger.warning("unknown llm provider in chain | name=%s", name)
            continue
        providers.append(factory())
    return FallbackChain(providers)
