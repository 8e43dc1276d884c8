"""Cancellation eligibility and the mirrored cancellation document."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from einvoice.cancellation import build_cancellation, check_cancellable
from einvoice.dto import DocumentClass, Invoice, InvoiceStatus, LineItem
from einvoice.errors import StateConflictError
from einvoice.samples import BUYER_PARTY, SELLER_PARTY


def _finalized(**overrides) -> Invoice:
    values = dict(
        invoice_id="inv-1",
        tenant_id="tenant-1",
        status=InvoiceStatus.CREATED,
        seller=SELLER_PARTY,
        buyer=BUYER_PARTY,
        line_items=[
            LineItem(description="Beratung", quantity="2", unit_price="100.00", vat_rate="19")
        ],
        invoice_date="2025-03-01",
        due_date="2025-03-31",
        invoice_number="INV-0001",
        intro_text="Intro",
        outro_text="Outro",
    )
    values.update(overrides)
    return Invoice(**values)


@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"status": InvoiceStatus.DRAFT, "invoice_number": None}, "draft"),
        ({"status": InvoiceStatus.CANCELLED}, "already_cancelled"),
        ({"document_class": DocumentClass.CANCELLATION}, "is_cancellation"),
    ],
)
def test_ineligible_invoices_are_rejected(overrides, code):
    with pytest.raises(StateConflictError) as exc:
        check_cancellable(_finalized(**overrides))

    assert exc.value.code == code
    assert exc.value.http_status == 400


def test_second_cancellation_names_the_existing_one():
    existing = _finalized(invoice_id="st-1", invoice_number="ST-0001")

    with pytest.raises(StateConflictError) as exc:
        check_cancellable(_finalized(), existing)

    assert exc.value.code == "cancellation_exists"
    assert "ST-0001" in exc.value.message


@pytest.mark.parametrize("status", ["created", "sent", "reminded", "paid"])
def test_delivered_invoices_are_cancellable(status):
    check_cancellable(_finalized(status=status))


def test_build_cancellation_negates_quantities_and_totals():
    original = _finalized()

    storno = build_cancellation(original, "ST-0001", date(2025, 3, 5), invoice_id="st-1")

    assert storno.document_class is DocumentClass.CANCELLATION
    assert storno.status is InvoiceStatus.CREATED
    assert storno.cancelled_invoice_id == "inv-1"
    assert storno.invoice_number == "ST-0001"
    assert storno.line_items[0].quantity == Decimal("-2")
    assert storno.line_items[0].unit_price == Decimal("100.00")
    assert storno.line_items[0].total == Decimal("-200.00")
    assert storno.line_items[0].vat_amount == Decimal("-38.00")
    totals = storno.document_totals()
    assert (totals.subtotal, totals.vat_total, totals.total) == (
        Decimal("-200.00"),
        Decimal("-38.00"),
        Decimal("-238.00"),
    )


def test_build_cancellation_copies_snapshots_and_texts():
    original = _finalized(language="en", buyer_reference="PO-77")

    storno = build_cancellation(original, "ST-0001", date(2025, 3, 5))

    assert storno.seller is original.seller
    assert storno.buyer is original.buyer
    assert storno.due_date == original.due_date
    assert storno.invoice_date == date(2025, 3, 5)
    assert (storno.language, storno.intro_text, storno.outro_text) == ("en", "Intro", "Outro")
    assert storno.buyer_reference == "PO-77"
    assert storno.invoice_id != original.invoice_id
