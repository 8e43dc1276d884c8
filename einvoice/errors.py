"""Fehlertaxonomie für Finalisierung und Storno.

Jeder Fehler trägt einen maschinenlesbaren ``code`` und den HTTP-Status, auf
den die API ihn abbildet.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class InvoicingError(RuntimeError):
    code = "invoicing_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class ValidationError(InvoicingError):
    code = "validation_failed"
    http_status = 400

    def __init__(self, message: str, issues: Sequence[Any] = (), **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.issues: List[Any] = list(issues)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["errors"] = [
            {"field": issue.field, "message": issue.message} for issue in self.issues
        ]
        return detail


class NumberingError(InvoicingError):
    code = "numbering_failed"


class DocumentGenerationError(InvoicingError):
    code = "document_generation_failed"


class StorageError(InvoicingError):
    code = "storage_failed"


class PersistenceError(InvoicingError):
    code = "persistence_failed"


class StateConflictError(InvoicingError):
    code = "state_conflict"
    http_status = 409


class NotFoundError(InvoicingError):
    code = "not_found"
    http_status = 404
