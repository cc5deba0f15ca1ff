"""Retrieval-augmented answers composed from search results."""

from __future__ import annotations

import logging
from typing import List

from docrag.errors import DocRagError, GenerationError
from docrag.generation.llm import TextGenerator
from docrag.index.search import Searcher
from docrag.models import AnswerSource, RagAnswer, SearchOptions, SearchResult
from docrag.utils.text import truncate

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions based on the provided context. "
    "Use only the information from the context to answer the question. "
    "If the context doesn't contain enough information to answer the question, say so. "
    "Be concise and accurate."
)
NO_RELEVANT_INFORMATION = "I couldn't find relevant information to answer your question."
CONTEXT_SEPARATOR = "\n\n---\n\n"
SOURCE_PREVIEW_CHARS = 200


def build_context(results: List[SearchResult]) -> str:
    return CONTEXT_SEPARATOR.join(result.chunk.text for result in results)


def build_prompt(question: str, context: str) -> str:
    return f"Context:\n{context}\n\nQuestion: {question}\n\nAnswer:"


def to_sources(results: List[SearchResult]) -> List[AnswerSource]:
    return [
        AnswerSource(
            document_id=result.document.id,
            document_title=result.document.title,
            chunk_text=truncate(result.chunk.text, SOURCE_PREVIEW_CHARS),
            similarity=result.similarity,
        )
        for result in results
    ]


class Answerer:
    """Feeds the top search hits to a :class:`TextGenerator`."""

    def __init__(self, searcher: Searcher, generator: TextGenerator | None) -> None:
        self.searcher = searcher
        self.generator = generator

    def retrieve(
        self,
        question: str,
        *,
        max_sources: int = 5,
        document_id: str | None = None,
        threshold: float = 0.7,
        hybrid: bool = False,
    ) -> List[SearchResult]:
        options = SearchOptions(limit=max_sources, threshold=threshold, document_id=document_id)
        if hybrid:
            return self.searcher.hybrid_search(question, options)
        return self.searcher.search(question, options)

    def answer(
        self,
        question: str,
        *,
        max_sources: int = 5,
        document_id: str | None = None,
        threshold: float = 0.7,
        hybrid: bool = False,
    ) -> RagAnswer:
        results = self.retrieve(
            question,
            max_sources=max_sources,
            document_id=document_id,
            threshold=threshold,
            hybrid=hybrid,
        )
        if not results:
            LOGGER.info("No context above threshold %.2f for question", threshold)
            return RagAnswer(answer=NO_RELEVANT_INFORMATION, sources=[], found_context=False)

        if self.generator is None:
            raise GenerationError("No text generator configured")

        context = build_context(results)
        messages = [{"role": "user", "content": build_prompt(question.strip(), context)}]
        try:
            text = self.generator.complete(messages, system_prompt=SYSTEM_PROMPT)
        except GenerationError:
            raise
        except DocRagError as exc:
            raise GenerationError(str(exc), context=exc.context, cause=exc) from exc
        except Exception as exc:
            raise GenerationError(
                f"Text generation failed: {exc}", context={"sources": len(results)}, cause=exc
            ) from exc

        LOGGER.info("Generated answer from %s sources", len(results))
        return RagAnswer(answer=text, sources=to_sources(results), found_context=True)
