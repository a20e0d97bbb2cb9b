from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


class ProviderError(RuntimeError):
    """A single provider call failed (transport, auth, empty output)."""


class LLMUnavailableError(RuntimeError):
    """Every provider in the chain failed or none was configured."""

    def __init__(self, message: str, attempts: list[str] | None = None):
        super().__init__(message)
        self.attempts = list(attempts or [])


@dataclass(frozen=True)
class CompletionOptions:
    temperature: float = 0.3
    max_tokens: int = 600
    json_mode: bool = True
    timeout_sec: float | None = None


@dataclass
class CompletionResult:
    content: str
    provider: str
    model: str
    attempts: list[str] = field(default_factory=list)


class LLMProvider(Protocol):
    name: str
    model: str

    def is_available(self) -> bool:
        ...

    async def complete(self, messages: list[dict], options: CompletionOptions) -> str:
        ...


def select_options(task: str) -> CompletionOptions:
    """
    Route a task to call options.
    Returns short, tightly bounded calls for live suggestions.
    """
    normalized = str(task or "").strip().lower()

    if normalized == "suggestion":
        return CompletionOptions(temperature=0.3, max_tokens=600, json_mode=True)
    if normalized == "summary":
        return CompletionOptions(temperature=0.2, max_tokens=1600, json_mode=True)

    return CompletionOptions()


def split_system_prompt(messages: list[dict]) -> tuple[str, list[dict]]:
    system_parts: list[str] = []
    rest: list[dict] = []
    for message in messages or []:
        role = str(message.get("role") or "user")
        content = str(message.get("content") or "")
        if role == "system":
            system_parts.append(content)
        else:
            rest.append({"role": "assistant" if role == "assistant" else "user", "content": content})
    return "\n\n".join(part for part in system_parts if part), rest
