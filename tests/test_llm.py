"""Tests for the chat completion client."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from docrag.errors import GenerationError
from docrag.generation.llm import ChatCompletionClient


def _session(payload=None, error: Exception | None = None) -> MagicMock:
    session = MagicMock()
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value.json.return_value = payload
    return session


class TestChatCompletionClient:
    def test_sends_system_prompt_first(self) -> None:
        session = _session({"choices": [{"message": {"content": "Paris"}}]})
        client = ChatCompletionClient(
            base_url="http://llm.local/v1/", model="tiny", api_key="key", session=session
        )

        answer = client.complete([{"role": "user", "content": "Capital?"}], system_prompt="Be brief")

        assert answer == "Paris"
        args, kwargs = session.post.call_args
        assert args[0] == "http://llm.local/v1/chat/completions"
        assert kwargs["json"]["model"] == "tiny"
        assert kwargs["json"]["messages"][0] == {"role": "system", "content": "Be brief"}
        assert kwargs["json"]["messages"][1]["content"] == "Capital?"
        assert kwargs["headers"]["Authorization"] == "Bearer key"

    def test_defaults(self) -> None:
        session = _session({"choices": [{"message": {"content": "ok"}}]})
        ChatCompletionClient(session=session).complete([{"role": "user", "content": "hi"}])

        payload = session.post.call_args[1]["json"]
        assert payload["max_tokens"] == 1000
        assert payload["temperature"] == 0.7
        assert len(payload["messages"]) == 1

    def test_http_failure_wrapped(self) -> None:
        session = _session(error=requests.ConnectionError("down"))

        with pytest.raises(GenerationError):
            ChatCompletionClient(session=session).complete([{"role": "user", "content": "hi"}])

    def test_status_error_wrapped(self) -> None:
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")

        with pytest.raises(GenerationError):
            ChatCompletionClient(session=session).complete([{"role": "user", "content": "hi"}])

    @pytest.mark.parametrize(
        "payload",
        [{}, {"choices": []}, {"choices": [{"message": {"content": ""}}]}],
    )
    def test_missing_content(self, payload) -> None:
        with pytest.raises(GenerationError, match="No completion returned"):
            ChatCompletionClient(session=_session(payload)).complete([{"role": "user", "content": "hi"}])
