"""Tests for the local sentence-transformers embedder."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import numpy as np

from docrag.embedding.encoder import DEFAULT_MODEL, EmbeddingConfig, EmbeddingModel


class TestEmbeddingModel:
    """EmbeddingModel wraps SentenceTransformer."""

    @patch("docrag.embedding.encoder.SentenceTransformer")
    def test_loads_model_with_config(self, mock_st: MagicMock) -> None:
        mock_st.return_value.get_sentence_embedding_dimension.return_value = 768

        model = EmbeddingModel(EmbeddingConfig(device="cpu"))

        assert model.dimension == 768
        mock_st.assert_called_once_with(DEFAULT_MODEL, backend="torch", device="cpu")

    @patch("docrag.embedding.encoder.SentenceTransformer")
    def test_embed_returns_float32(self, mock_st: MagicMock) -> None:
        mock_st.return_value.get_sentence_embedding_dimension.return_value = 2
        mock_st.return_value.encode.return_value = np.array([[1.0, 0.0], [0.0, 1.0]], dtype="float64")

        model = EmbeddingModel(EmbeddingConfig(batch_size=4))
        vectors = model.embed(text for text in ["a", "b"])

        assert vectors.dtype == np.float32
        assert vectors.shape == (2, 2)
        args, kwargs = mock_st.return_value.encode.call_args
        assert args[0] == ["a", "b"]
        assert kwargs["batch_size"] == 4
        assert kwargs["normalize_embeddings"] is True
