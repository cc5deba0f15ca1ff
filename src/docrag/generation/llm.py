"""Text-generation collaborator used to compose RAG answers.

``ChatCompletionClient`` talks to any OpenAI-compatible ``/chat/completions``
endpoint (OpenAI, vLLM, Hugging Face router, ...). Only the first choice's
message content is used.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Protocol, Sequence

import requests

from docrag.errors import GenerationError

logger = logging.getLogger(__name__)

Message = Dict[str, str]

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"


class TextGenerator(Protocol):
    def complete(self, messages: Sequence[Message], system_prompt: str | None = None) -> str: ...


class ChatCompletionClient:
    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = base_url.rstrip("/") + "/chat/completions"
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._session = session or requests.Session()
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    def complete(self, messages: Sequence[Message], system_prompt: str | None = None) -> str:
        chat: List[Message] = []
        if system_prompt:
            chat.append({"role": "system", "content": system_prompt})
        chat.extend(messages)

        payload = {
            "model": self.model,
            "messages": chat,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        try:
            response = self._session.post(
                self.url, json=payload, headers=self._headers, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            logger.error("Completion request failed: %s", exc)
            raise GenerationError(
                "Completion request failed", context={"model": self.model}, cause=exc
            ) from exc
        except ValueError as exc:
            raise GenerationError(
                "Completion response is not JSON", context={"model": self.model}, cause=exc
            ) from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError(
                "No completion returned", context={"model": self.model}, cause=exc
            ) from exc
        if not content:
            raise GenerationError("No completion returned", context={"model": self.model})
        return content
