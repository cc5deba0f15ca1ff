"""Embeddings from a hosted feature-extraction endpoint.

The endpoint follows the Hugging Face Inference API contract: ``POST`` a JSON
body ``{"inputs": [...]}`` and receive one embedding per input. Depending on
the model the embeddings come back flat, nested or as scalars, so the raw JSON
is returned untouched and decoded by the batch processor.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

import requests

from docrag.errors import EmbeddingError

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = (
    "https://router.huggingface.co/hf-inference/models/"
    "BAAI/bge-large-en-v1.5/pipeline/feature-extraction"
)


class InferenceAPIEmbedder:
    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    def embed(self, texts: Sequence[str]) -> Any:
        inputs = list(texts)
        try:
            response = self._session.post(
                self.api_url,
                json={"inputs": inputs},
                headers=self._headers,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise EmbeddingError(
                "Embedding request timed out",
                retryable=True,
                context={"operation": "embed", "count": len(inputs)},
                cause=exc,
            ) from exc
        except requests.RequestException as exc:
            raise EmbeddingError(
                "Embedding request failed",
                retryable=True,
                context={"operation": "embed", "count": len(inputs)},
                cause=exc,
            ) from exc

        if response.status_code in (401, 403):
            raise EmbeddingError(
                "Embedding provider rejected the credentials",
                retryable=False,
                context={"status": response.status_code},
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise EmbeddingError(
                "Embedding provider is unavailable or rate limited",
                retryable=True,
                context={"status": response.status_code},
            )
        if response.status_code >= 400:
            raise EmbeddingError(
                "Embedding provider refused the request",
                retryable=False,
                context={"status": response.status_code, "body": response.text[:200]},
            )

        try:
            return response.json()
        except ValueError as exc:
            raise EmbeddingError(
                "Embedding provider returned malformed JSON", retryable=False, cause=exc
            ) from exc
