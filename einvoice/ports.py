"""Schnittstellen zu externen Diensten (Mitgliedschaft, Objektspeicher, Mail).

Die Orchestrierung kennt nur diese Protokolle; konkrete Implementierungen
liegen im Backend (``backend/apps/invoices``) bzw. in Tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from .dto import Invoice


class MembershipResolver(Protocol):
    def resolve_tenant(self, caller: str) -> str: ...


class ObjectStorage(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> str: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def presign(self, url: str, ttl_seconds: Optional[int] = None) -> str: ...


class InvoiceStore(Protocol):
    """Persistenz der Rechnungen inkl. bedingter Zustandsübergänge."""

    def get(self, tenant_id: str, invoice_id: str) -> Optional[Invoice]: ...

    def insert(self, invoice: Invoice) -> bool: ...

    def update_draft(self, invoice: Invoice) -> bool: ...

    def claim_finalization(self, tenant_id: str, invoice_id: str, *, timeout_seconds: int) -> bool: ...

    def release_finalization(self, tenant_id: str, invoice_id: str) -> None: ...

    def mark_finalized(self, invoice: Invoice) -> bool: ...

    def find_cancellation(self, tenant_id: str, original_id: str) -> Optional[Invoice]: ...

    def set_document_refs(
        self, tenant_id: str, invoice_id: str, *, pdf_url: str, xml_url: str
    ) -> None: ...

    def set_status(
        self, tenant_id: str, invoice_id: str, status: str, *, expected: Iterable[str]
    ) -> bool: ...

    def delete(self, tenant_id: str, invoice_id: str) -> None: ...


@dataclass(frozen=True)
class MailAttachment:
    filename: str
    content: bytes
    content_type: str


class MailSender(Protocol):
    def send(
        self,
        sender: str,
        to: List[str],
        subject: str,
        html: str,
        text: str,
        attachments: List[MailAttachment],
    ) -> None: ...
