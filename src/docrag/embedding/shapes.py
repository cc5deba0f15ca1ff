"""Decoding of provider embedding responses into flat float vectors.

Providers answer in different shapes: a flat list of numbers, a list nested
one level deeper, a bare scalar or a numpy array. Each shape is a tagged
variant with its own ``to_vector``; :func:`decode_embedding` picks the first
registered variant whose matcher accepts the raw value. New provider shapes
are supported by calling :func:`register_shape`.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass
from typing import Any, Callable, List, Protocol, Sequence

import numpy as np

from docrag.errors import EmbeddingShapeError


class EmbeddingShape(Protocol):
    tag: str

    def to_vector(self) -> List[float]: ...


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


@dataclass(frozen=True)
class FlatVector:
    values: Sequence[Any]
    tag: str = "flat"

    @staticmethod
    def matches(raw: Any) -> bool:
        return _is_sequence(raw) and all(_is_number(item) for item in raw)

    def to_vector(self) -> List[float]:
        return [float(item) for item in self.values]


@dataclass(frozen=True)
class NestedVector:
    """A vector wrapped one level deeper, e.g. ``[[0.1, 0.2]]``."""

    rows: Sequence[Any]
    tag: str = "nested"

    @staticmethod
    def matches(raw: Any) -> bool:
        return (
            _is_sequence(raw)
            and len(raw) > 0
            and all(_is_sequence(row) and all(_is_number(x) for x in row) for row in raw)
        )

    def to_vector(self) -> List[float]:
        return [float(item) for row in self.rows for item in row]


@dataclass(frozen=True)
class ScalarValue:
    value: Any
    tag: str = "scalar"

    @staticmethod
    def matches(raw: Any) -> bool:
        return _is_number(raw)

    def to_vector(self) -> List[float]:
        return [float(self.value)]


@dataclass(frozen=True)
class ArrayVector:
    array: np.ndarray
    tag: str = "array"

    @staticmethod
    def matches(raw: Any) -> bool:
        return isinstance(raw, np.ndarray) and raw.ndim in (0, 1, 2)

    def to_vector(self) -> List[float]:
        if self.array.ndim == 2 and self.array.shape[0] != 1:
            raise EmbeddingShapeError(
                "Array embedding has more than one row", context={"shape": self.array.shape}
            )
        return [float(item) for item in np.ravel(self.array)]


ShapeFactory = Callable[[Any], EmbeddingShape]

_REGISTRY: List[tuple[Callable[[Any], bool], ShapeFactory]] = [
    (ArrayVector.matches, ArrayVector),
    (ScalarValue.matches, ScalarValue),
    (FlatVector.matches, FlatVector),
    (NestedVector.matches, NestedVector),
]


def register_shape(matcher: Callable[[Any], bool], factory: ShapeFactory) -> None:
    """Register an additional response shape, tried after the built-in ones."""
    _REGISTRY.append((matcher, factory))


def classify(raw: Any) -> EmbeddingShape:
    for matcher, factory in _REGISTRY:
        if matcher(raw):
            return factory(raw)
    raise EmbeddingShapeError(
        "Unrecognized embedding shape", context={"type": type(raw).__name__}
    )


def decode_embedding(raw: Any) -> List[float]:
    """Decode one raw provider embedding, rejecting absent or empty vectors."""
    if raw is None:
        raise EmbeddingShapeError("Embedding is missing")
    vector = classify(raw).to_vector()
    if not vector:
        raise EmbeddingShapeError("Embedding is empty")
    return vector


def decode_embeddings(raw_batch: Any, expected: int) -> List[List[float]]:
    """Decode a batch response, requiring exactly ``expected`` embeddings."""
    if isinstance(raw_batch, np.ndarray):
        rows = list(raw_batch) if raw_batch.ndim > 1 else [raw_batch]
    elif _is_sequence(raw_batch):
        rows = list(raw_batch)
    else:
        raise EmbeddingShapeError(
            "Batch response is not a sequence", context={"type": type(raw_batch).__name__}
        )

    if len(rows) != expected:
        raise EmbeddingShapeError(
            "Embedding count does not match input count",
            context={"expected": expected, "received": len(rows)},
        )

    vectors: List[List[float]] = []
    for position, raw in enumerate(rows):
        try:
            vectors.append(decode_embedding(raw))
        except EmbeddingShapeError as exc:
            exc.context.setdefault("position", position)
            raise
    return vectors
