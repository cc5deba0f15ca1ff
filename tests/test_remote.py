"""Tests for the HTTP feature-extraction embedder."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from docrag.embedding.remote import InferenceAPIEmbedder
from docrag.errors import EmbeddingError


def _response(status: int = 200, payload=None, json_error: bool = False) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.text = "error body"
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


class TestInferenceAPIEmbedder:
    """Status codes map onto retryable and permanent failures."""

    def test_posts_inputs_and_returns_raw_json(self) -> None:
        session = MagicMock()
        session.post.return_value = _response(payload=[[0.1, 0.2], [0.3, 0.4]])
        embedder = InferenceAPIEmbedder("http://embed.local", api_key="secret", session=session, timeout=7)

        result = embedder.embed(["a", "b"])

        assert result == [[0.1, 0.2], [0.3, 0.4]]
        _, kwargs = session.post.call_args
        assert kwargs["json"] == {"inputs": ["a", "b"]}
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["timeout"] == 7

    def test_no_auth_header_without_key(self) -> None:
        session = MagicMock()
        session.post.return_value = _response(payload=[[0.1]])
        InferenceAPIEmbedder("http://embed.local", session=session).embed(["a"])

        assert "Authorization" not in session.post.call_args[1]["headers"]

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failures_not_retryable(self, status: int) -> None:
        session = MagicMock()
        session.post.return_value = _response(status)

        with pytest.raises(EmbeddingError) as excinfo:
            InferenceAPIEmbedder("http://embed.local", session=session).embed(["a"])
        assert excinfo.value.retryable is False

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_rate_limit_and_server_errors_retryable(self, status: int) -> None:
        session = MagicMock()
        session.post.return_value = _response(status)

        with pytest.raises(EmbeddingError) as excinfo:
            InferenceAPIEmbedder("http://embed.local", session=session).embed(["a"])
        assert excinfo.value.retryable is True
        assert excinfo.value.context["status"] == status

    def test_client_error_not_retryable(self) -> None:
        session = MagicMock()
        session.post.return_value = _response(422)

        with pytest.raises(EmbeddingError) as excinfo:
            InferenceAPIEmbedder("http://embed.local", session=session).embed(["a"])
        assert excinfo.value.retryable is False

    def test_timeout_retryable(self) -> None:
        session = MagicMock()
        session.post.side_effect = requests.Timeout("slow")

        with pytest.raises(EmbeddingError) as excinfo:
            InferenceAPIEmbedder("http://embed.local", session=session).embed(["a"])
        assert excinfo.value.retryable is True

    def test_connection_error_retryable(self) -> None:
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(EmbeddingError) as excinfo:
            InferenceAPIEmbedder("http://embed.local", session=session).embed(["a"])
        assert excinfo.value.retryable is True

    def test_malformed_json(self) -> None:
        session = MagicMock()
        session.post.return_value = _response(json_error=True)

        with pytest.raises(EmbeddingError) as excinfo:
            InferenceAPIEmbedder("http://embed.local", session=session).embed(["a"])
        assert excinfo.value.retryable is False
