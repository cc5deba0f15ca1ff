"""Error taxonomy shared by the ingestion and retrieval pipeline."""

from __future__ import annotations

from typing import Any, Dict, Sequence


class DocRagError(Exception):
    """Base class for every error raised by DocRAG.

    ``context`` carries identifiers (operation, document id, batch index...)
    so a failure can be traced back to the call that produced it.
    """

    kind = "DocRagError"
    code = "DOCRAG_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        context: Dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.context:
            details = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
            return f"{self.message} ({details})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            data["context"] = dict(self.context)
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data


class InvalidInputError(DocRagError):
    """Rejected input: empty text or query, out-of-range options, bad files."""

    kind = "InvalidInput"
    code = "INVALID_INPUT"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        context: Dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        context = dict(context or {})
        if field is not None:
            context.setdefault("field", field)
            context.setdefault("value", value)
        super().__init__(message, context=context, cause=cause)
        self.field = field


class UnsupportedFileTypeError(InvalidInputError):
    code = "UNSUPPORTED_FILE_TYPE"

    def __init__(self, mime_type: str, allowed: Sequence[str]) -> None:
        super().__init__(
            f"File type {mime_type!r} is not supported. Supported types: {', '.join(allowed)}",
            context={"mime_type": mime_type, "allowed": list(allowed)},
        )
        self.mime_type = mime_type


class FileTooLargeError(InvalidInputError):
    code = "FILE_TOO_LARGE"

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(
            f"File size ({size} bytes) exceeds the maximum allowed size ({max_size} bytes)",
            context={"size": size, "max_size": max_size},
        )


class ExtractionError(InvalidInputError):
    """The file could not be parsed into text."""

    code = "EXTRACTION_FAILED"


class EmbeddingError(DocRagError):
    """The embedding provider failed or returned an unusable response."""

    kind = "EmbeddingFailure"
    code = "EMBEDDING_FAILED"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        context: Dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, context=context, cause=cause)
        self.retryable = retryable


class EmbeddingShapeError(EmbeddingError):
    """A provider response could not be decoded into a vector."""

    code = "EMBEDDING_SHAPE_MISMATCH"

    def __init__(self, message: str, *, context: Dict[str, Any] | None = None) -> None:
        super().__init__(message, retryable=False, context=context)


class StoreError(DocRagError):
    kind = "StoreFailure"
    code = "STORE_FAILED"


class CacheError(DocRagError):
    """Cache transport failure. Never surfaces past :class:`ResultCache`."""

    kind = "CacheFailure"
    code = "CACHE_FAILED"


class GenerationError(DocRagError):
    kind = "UpstreamGenerationFailure"
    code = "GENERATION_FAILED"
    retryable = True


class DocumentNotFoundError(DocRagError):
    kind = "DocumentNotFound"
    code = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str) -> None:
        super().__init__(
            f"Document with ID {document_id!r} was not found",
            context={"document_id": document_id},
        )
        self.document_id = document_id


class IngestionError(DocRagError):
    """Ingestion run failed at ``stage``; committed batches stay committed."""

    kind = "IngestionFailure"
    code = "INGESTION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        context: Dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        context = dict(context or {})
        context.setdefault("stage", stage)
        super().__init__(message, context=context, cause=cause)
        self.stage = stage
        self.retryable = bool(getattr(cause, "retryable", False))


class IngestionCancelledError(IngestionError):
    code = "INGESTION_CANCELLED"
