"""
Typed errors raised by the document-control service layer.

Routes map these to HTTP responses; scripts let them propagate.
"""
from __future__ import annotations


class DocumentControlError(RuntimeError):
    retryable = False

    def __init__(self, message: str, *, entity_id: str | None = None, operation: str | None = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
        self.operation = operation

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "retryable": self.retryable,
        }


class NotFoundError(DocumentControlError, LookupError):
    pass


class PreconditionFailedError(DocumentControlError, ValueError):
    pass


class ConflictError(DocumentControlError):
    retryable = True


class DependencyError(DocumentControlError):
    """Storage or text-extraction collaborator failed."""

    retryable = True


class ImmutableRecordError(DocumentControlError):
    pass
