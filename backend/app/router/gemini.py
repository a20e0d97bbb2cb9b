from __future__ import annotations

import google.generativeai as genai

from app.router.engine import CompletionOptions, ProviderError, split_system_prompt
from core.config import GEMINI_API_KEY, GEMINI_MODEL


class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: str = GEMINI_API_KEY, model: str = GEMINI_MODEL):
        self.api_key = api_key
        self.model = model
        self._configured = False

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _build_model(self, system: str) -> genai.GenerativeModel:
        if not self._configured:
            genai.configure(api_key=self.api_key)
            self._configured = True
        return genai.GenerativeModel(self.model, system_instruction=system or None)

    async def complete(self, messages: list[dict], options: CompletionOptions) -> str:
        system, conversation = split_system_prompt(messages)
        prompt = "\n\n".join(item["content"] for item in conversation)

        generation_config = {
            "temperature": options.temperature,
            "max_output_tokens": options.max_tokens,
        }
        if options.json_mode:
            generation_config["response_mime_type"] = "application/json"

        model = self._build_model(system)
        response = await model.generate_content_async(prompt, generation_config=generation_config)
        try:
            text = str(response.text or "").strip()
        except ValueError as exc:
            # .text raises when the candidate was blocked
            raise ProviderError(f"gemini returned no text: {exc}") from exc
        if not text:
            raise ProviderError("gemini returned empty content")
        return text
