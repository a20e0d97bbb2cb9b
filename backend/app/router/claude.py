from __future__ import annotations

from anthropic import AsyncAnthropic

from app.router.engine import CompletionOptions, ProviderError, split_system_prompt
from core.config import ANTHROPIC_API_KEY, ANTHROPIC_MODEL


class AnthropicProvider:
    name = "anthropic"

    def __init__(
        self,
        api_key: str = ANTHROPIC_API_KEY,
        model: str = ANTHROPIC_MODEL,
        client: AsyncAnthropic | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self._client = client

    def is_available(self) -> bool:
        return bool(self.api_key) or self._client is not None

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def complete(self, messages: list[dict], options: CompletionOptions) -> str:
        system, conversation = split_system_prompt(messages)
        if options.json_mode:
            system = f"{system}\n\nRespond with a single JSON object only.".strip()

        response = await self.client.messages.create(
            model=self.model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            system=system,
            messages=conversation,
        )
        text = "".join(
            str(getattr(block, "text", "") or "")
            for block in (response.content or [])
            if getattr(block, "type", "text") == "text"
        ).strip()
        if not text:
            raise ProviderError("anthropic returned empty content")
        return text
