"""
Error taxonomy for the ingestion-to-retrieval pipeline.

Every error carries a human-readable message plus a details dict so that
callers (CLI, API handlers, logs) can report context without parsing strings.
"""

from typing import Any, Dict, Optional


class RAGError(Exception):
    """Base exception for all pipeline errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(RAGError):
    """Malformed input: chunking options, link weight, empty embedding text."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class BackendUnavailableError(RAGError):
    """Embedding backend failed at the network/process level, or timed out."""

    retryable = True

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if backend:
            details["backend"] = backend
        super().__init__(message, details)


class DimensionMismatchError(RAGError):
    """A vector's dimensionality differs from the one established for its dataset."""

    def __init__(
        self,
        expected: int,
        actual: int,
        dataset_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details.update({"expected": expected, "actual": actual})
        if dataset_id:
            details["dataset_id"] = dataset_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            details,
        )


class NotFoundError(RAGError):
    """A referenced dataset, consumer or link does not exist."""

    def __init__(self, kind: str, identifier: str, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        details.update({"kind": kind, "id": identifier})
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}", details)
