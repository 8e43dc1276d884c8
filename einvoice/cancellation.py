"""Stornorechnungen: Prüfung der Stornierbarkeit und Aufbau des Gegenbelegs."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Optional

from .dto import DocumentClass, Invoice, InvoiceStatus
from .errors import StateConflictError


def check_cancellable(original: Invoice, existing_cancellation: Optional[Invoice] = None) -> None:
    """Wirft ``StateConflictError`` (HTTP 400), wenn ``original`` nicht stornierbar ist."""

    if original.status is InvoiceStatus.DRAFT or not original.invoice_number:
        raise StateConflictError(
            "Entwürfe können nicht storniert werden.", code="draft", http_status=400
        )
    if original.status is InvoiceStatus.CANCELLED:
        raise StateConflictError(
            "Diese Rechnung wurde bereits storniert.", code="already_cancelled", http_status=400
        )
    if original.is_cancellation:
        raise StateConflictError(
            "Eine Stornorechnung kann nicht storniert werden.",
            code="is_cancellation",
            http_status=400,
        )
    if existing_cancellation is not None:
        raise StateConflictError(
            "Für diese Rechnung existiert bereits die Stornorechnung "
            f"{existing_cancellation.invoice_number}.",
            code="cancellation_exists",
            http_status=400,
        )


def build_cancellation(
    original: Invoice,
    number: str,
    today: date,
    *,
    invoice_id: Optional[str] = None,
) -> Invoice:
    """Spiegelt ``original`` mit negierten Mengen als Stornorechnung.

    Snapshots, Fälligkeit, Sprache und Texte werden unverändert übernommen; die
    Summen ergeben sich exakt als Negation der Originalsummen.
    """

    return Invoice(
        invoice_id=invoice_id or str(uuid.uuid4()),
        tenant_id=original.tenant_id,
        status=InvoiceStatus.CREATED,
        document_class=DocumentClass.CANCELLATION,
        seller_ref=original.seller_ref,
        buyer_ref=original.buyer_ref,
        seller=original.seller,
        buyer=original.buyer,
        line_items=tuple(item.negated() for item in original.line_items),
        invoice_date=today,
        due_date=original.due_date,
        service_date=original.service_date,
        invoice_number=number,
        language=original.language,
        currency=original.currency,
        intro_text=original.intro_text,
        outro_text=original.outro_text,
        buyer_reference=original.buyer_reference,
        recipient_email=original.recipient_email,
        cancelled_invoice_id=original.invoice_id,
    )
