from __future__ import annotations

from openai import AsyncOpenAI

from app.router.engine import CompletionOptions, ProviderError
from core.config import MODEL_NAME, OPENAI_API_KEY


class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = MODEL_NAME, client: AsyncOpenAI | None = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    def is_available(self) -> bool:
        return bool(self.api_key) or self._client is not None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def complete(self, messages: list[dict], options: CompletionOptions) -> str:
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(**kwargs)
        content = response.choices[0].message.content if response.choices else None
        text = str(content or "").strip()
        if not text:
            raise ProviderError("openai returned empty content")
        return text
