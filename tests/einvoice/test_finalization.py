"""End-to-end finalization, cancellation and status changes against SQLite + file storage."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from backend.apps.invoices.repository import SqlInvoiceStore
from backend.core.observability.metrics import get_metrics
from einvoice import finalization
from einvoice.dto import DocumentClass, InvoiceStatus
from einvoice.errors import (
    DocumentGenerationError,
    NotFoundError,
    PersistenceError,
    StateConflictError,
    StorageError,
    ValidationError,
)
from einvoice.facturx import extract_xml
from einvoice.numbering import IssuingIdentity
from einvoice.pdf import InvoiceRenderer
from einvoice.samples import (
    ISSUER_CONTACT_ID,
    SELLER_PARTY,
    build_draft_payload,
    build_sample_company,
    build_sample_issuer_contact,
    get_scenario,
)
from einvoice.xrechnung import check_structure


@pytest.fixture
def draft(finalizer, tenant_id):
    return finalizer.create_draft(tenant_id, build_draft_payload(get_scenario("01")))


def test_create_draft_defaults(draft):
    assert draft.status is InvoiceStatus.DRAFT
    assert draft.invoice_number is None
    assert draft.invoice_date.isoformat() == "2025-03-01"
    assert draft.due_date.isoformat() == "2025-03-31"
    assert draft.seller.name == SELLER_PARTY.name
    assert draft.buyer.name == "Kunde AG"


def test_update_draft_replaces_line_items(finalizer, tenant_id, draft):
    updated = finalizer.update_draft(
        tenant_id, draft.invoice_id, {"line_items": get_scenario("02").line_items()}
    )

    assert len(finalizer.get(tenant_id, draft.invoice_id).line_items) == 3
    assert updated.to_dict()["total_amount"] == "242.70"


def test_finalize_assigns_number_and_stores_documents(finalizer, storage, tenant_id, draft):
    result = finalizer.finalize(tenant_id, draft.invoice_id)

    invoice = result.invoice
    assert invoice.invoice_number == "INV-0001"
    assert invoice.status is InvoiceStatus.CREATED
    data = invoice.to_dict()
    assert (data["subtotal"], data["vat_amount"], data["total_amount"]) == (
        "200.00",
        "38.00",
        "238.00",
    )
    xml_bytes = storage.get(result.xml_url)
    assert check_structure(xml_bytes).ok
    assert extract_xml(storage.get(result.pdf_url)) == xml_bytes
    assert finalizer.get(tenant_id, draft.invoice_id).invoice_number == "INV-0001"
    assert get_metrics()["invoices_finalized_total"]["count"] == 1


def test_numbers_are_consecutive(finalizer, tenant_id):
    numbers = []
    for _ in range(3):
        draft = finalizer.create_draft(tenant_id, build_draft_payload(get_scenario("01")))
        numbers.append(finalizer.finalize(tenant_id, draft.invoice_id).invoice.invoice_number)

    assert numbers == ["INV-0001", "INV-0002", "INV-0003"]


def test_finalize_twice_is_a_conflict(finalizer, tenant_id, draft):
    finalizer.finalize(tenant_id, draft.invoice_id)

    with pytest.raises(StateConflictError) as exc:
        finalizer.finalize(tenant_id, draft.invoice_id)

    assert exc.value.code == "already_finalized"
    assert exc.value.http_status == 409


def test_finalized_invoice_rejects_draft_updates(finalizer, tenant_id, draft):
    finalizer.finalize(tenant_id, draft.invoice_id)

    with pytest.raises(StateConflictError) as exc:
        finalizer.update_draft(tenant_id, draft.invoice_id, {"intro_text": "neu"})

    assert exc.value.code == "not_draft"


def test_snapshot_is_immutable_after_master_data_change(
    finalizer, parties, tenant_id, draft
):
    finalizer.finalize(tenant_id, draft.invoice_id)

    renamed = replace(SELLER_PARTY, name="Umbenannt GmbH")
    parties.save_company(build_sample_company(tenant_id, party=renamed))

    assert finalizer.get(tenant_id, draft.invoice_id).seller.name == SELLER_PARTY.name


def test_draft_snapshot_follows_master_data(finalizer, parties, tenant_id, draft):
    renamed = replace(SELLER_PARTY, name="Umbenannt GmbH")
    parties.save_company(build_sample_company(tenant_id, party=renamed))

    result = finalizer.finalize(tenant_id, draft.invoice_id)

    assert result.invoice.seller.name == "Umbenannt GmbH"


def test_validation_failure_consumes_no_number(finalizer, allocator, tenant_id):
    draft = finalizer.create_draft(
        tenant_id, build_draft_payload(get_scenario("01"), line_items=[])
    )

    with pytest.raises(ValidationError) as exc:
        finalizer.finalize(tenant_id, draft.invoice_id)

    assert "lineItems" in {e["field"] for e in exc.value.to_detail()["errors"]}
    assert finalizer.get(tenant_id, draft.invoice_id).status is InvoiceStatus.DRAFT
    ok = finalizer.create_draft(tenant_id, build_draft_payload(get_scenario("01")))
    assert finalizer.finalize(tenant_id, ok.invoice_id).invoice.invoice_number == "INV-0001"


def test_storage_failure_releases_number_and_lock(
    finalizer, storage, tenant_id, draft, monkeypatch
):
    def broken_put(key, data, content_type):
        raise StorageError("disk full")

    monkeypatch.setattr(storage, "put", broken_put)
    with pytest.raises(StorageError):
        finalizer.finalize(tenant_id, draft.invoice_id)

    stored = finalizer.get(tenant_id, draft.invoice_id)
    assert stored.status is InvoiceStatus.DRAFT
    assert stored.invoice_number is None
    assert get_metrics()["storage_upload_retries_total"]["count"] == 2

    monkeypatch.undo()
    result = finalizer.finalize(tenant_id, draft.invoice_id)
    assert result.invoice.invoice_number == "INV-0001"


def test_concurrent_finalization_is_rejected(finalizer, db, clock, tenant_id, draft):
    engine, tables = db
    store = SqlInvoiceStore(engine, tables, clock=clock)
    assert store.claim_finalization(tenant_id, draft.invoice_id, timeout_seconds=120)

    with pytest.raises(StateConflictError) as exc:
        finalizer.finalize(tenant_id, draft.invoice_id)

    assert exc.value.code == "finalization_in_progress"


def test_stale_finalization_lock_is_reclaimed(finalizer, db, tenant_id, draft):
    engine, tables = db
    stale = SqlInvoiceStore(
        engine, tables, clock=lambda: datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)
    )
    assert stale.claim_finalization(tenant_id, draft.invoice_id, timeout_seconds=120)

    assert finalizer.finalize(tenant_id, draft.invoice_id).invoice.invoice_number == "INV-0001"


def test_contact_issuer_uses_own_sequence(finalizer, tenant_id):
    payload = build_draft_payload(
        get_scenario("01"), seller={"kind": "contact", "contact_id": ISSUER_CONTACT_ID}
    )
    draft = finalizer.create_draft(tenant_id, payload)

    result = finalizer.finalize(tenant_id, draft.invoice_id)

    assert result.invoice.invoice_number == "AS-0001"
    assert result.invoice.seller.name == "Freie Beraterin Anna Schmidt"


def test_unknown_invoice_is_not_found(finalizer, tenant_id):
    with pytest.raises(NotFoundError) as exc:
        finalizer.finalize(tenant_id, "does-not-exist")

    assert exc.value.code == "invoice_not_found"
    assert exc.value.http_status == 404


def test_other_tenant_cannot_see_invoice(finalizer, draft):
    with pytest.raises(NotFoundError) as exc:
        finalizer.get("33333333-3333-3333-3333-333333333333", draft.invoice_id)

    assert exc.value.code == "invoice_not_found"


def test_cancel_creates_negated_mirror(finalizer, storage, tenant_id, draft):
    finalizer.finalize(tenant_id, draft.invoice_id)

    result = finalizer.cancel(tenant_id, draft.invoice_id)

    storno = result.cancellation
    assert storno.invoice_number == "ST-0001"
    assert storno.document_class is DocumentClass.CANCELLATION
    assert storno.cancelled_invoice_id == draft.invoice_id
    assert storno.line_items[0].quantity == Decimal("-2")
    data = result.to_dict()["cancellation_invoice"]
    assert (data["subtotal"], data["vat_amount"], data["total_amount"]) == (
        "-200.00",
        "-38.00",
        "-238.00",
    )
    assert result.original.status is InvoiceStatus.CANCELLED
    assert finalizer.get(tenant_id, draft.invoice_id).status is InvoiceStatus.CANCELLED

    stored = finalizer.get(tenant_id, storno.invoice_id)
    xml_bytes = storage.get(stored.xml_url)
    assert b"<ram:TypeCode>384</ram:TypeCode>" in xml_bytes
    assert check_structure(xml_bytes).ok


def test_second_cancel_is_rejected(finalizer, tenant_id, draft):
    finalizer.finalize(tenant_id, draft.invoice_id)
    finalizer.cancel(tenant_id, draft.invoice_id)

    with pytest.raises(StateConflictError) as exc:
        finalizer.cancel(tenant_id, draft.invoice_id)

    assert exc.value.code == "already_cancelled"
    assert exc.value.http_status == 400


def test_cancel_of_draft_or_cancellation_is_rejected(finalizer, tenant_id, draft):
    with pytest.raises(StateConflictError) as exc:
        finalizer.cancel(tenant_id, draft.invoice_id)
    assert exc.value.code == "draft"

    finalizer.finalize(tenant_id, draft.invoice_id)
    storno = finalizer.cancel(tenant_id, draft.invoice_id).cancellation
    with pytest.raises(StateConflictError) as exc:
        finalizer.cancel(tenant_id, storno.invoice_id)
    assert exc.value.code == "is_cancellation"


def test_cancel_storage_failure_leaves_original_untouched(
    finalizer, storage, tenant_id, draft, monkeypatch
):
    finalizer.finalize(tenant_id, draft.invoice_id)

    def broken_put(key, data, content_type):
        raise StorageError("disk full")

    monkeypatch.setattr(storage, "put", broken_put)
    with pytest.raises(StorageError):
        finalizer.cancel(tenant_id, draft.invoice_id)
    monkeypatch.undo()

    assert finalizer.get(tenant_id, draft.invoice_id).status is InvoiceStatus.CREATED
    assert finalizer.cancel(tenant_id, draft.invoice_id).cancellation.invoice_number == "ST-0001"


def test_status_transitions(finalizer, tenant_id, draft):
    with pytest.raises(StateConflictError) as exc:
        finalizer.update_status(tenant_id, draft.invoice_id, "sent")
    assert exc.value.code == "draft"

    finalizer.finalize(tenant_id, draft.invoice_id)
    assert finalizer.update_status(tenant_id, draft.invoice_id, "sent").status is InvoiceStatus.SENT
    assert finalizer.update_status(tenant_id, draft.invoice_id, "paid").status is InvoiceStatus.PAID

    with pytest.raises(StateConflictError) as exc:
        finalizer.update_status(tenant_id, draft.invoice_id, "cancelled")
    assert exc.value.code == "invalid_status"

    with pytest.raises(ValidationError):
        finalizer.update_status(tenant_id, draft.invoice_id, "archived")


def test_overdue_only_for_open_invoices(finalizer, tenant_id, draft):
    invoice = finalizer.finalize(tenant_id, draft.invoice_id).invoice

    assert finalizer.is_overdue(invoice, date(2025, 4, 1)) is True
    assert finalizer.is_overdue(invoice, date(2025, 3, 15)) is False
    paid = finalizer.update_status(tenant_id, draft.invoice_id, "paid")
    assert finalizer.is_overdue(paid, date(2025, 4, 1)) is False


def test_preview_reports_missing_numbering(finalizer, parties, tenant_id):
    prefixless = replace(
        build_sample_issuer_contact(tenant_id, "contact-new"),
        invoice_number_prefix=None,
        cancellation_number_prefix=None,
    )
    parties.save_contact(prefixless)
    payload = build_draft_payload(
        get_scenario("01"), seller={"kind": "contact", "contact_id": "contact-new"}
    )
    draft = finalizer.create_draft(tenant_id, payload)

    result = finalizer.preview(tenant_id, draft.invoice_id)

    assert not result.valid
    assert [issue.field for issue in result.errors] == ["issuer.numbering"]


def test_contact_saved_with_prefix_can_issue_immediately(finalizer, parties, allocator, tenant_id):
    parties.save_contact(build_sample_issuer_contact(tenant_id, "contact-new"))
    assert allocator.current(IssuingIdentity.contact("contact-new"), DocumentClass.INVOICE) == 0
    payload = build_draft_payload(
        get_scenario("01"), seller={"kind": "contact", "contact_id": "contact-new"}
    )
    draft = finalizer.create_draft(tenant_id, payload)

    assert finalizer.preview(tenant_id, draft.invoice_id).valid
    assert finalizer.finalize(tenant_id, draft.invoice_id).invoice.invoice_number == "AS-0001"


def test_renamed_company_prefix_applies_to_next_numbers(finalizer, parties, tenant_id, draft):
    parties.save_company(build_sample_company(tenant_id, invoice_prefix="RE"))
    assert finalizer.finalize(tenant_id, draft.invoice_id).invoice.invoice_number == "RE-0001"

    parties.save_company(
        build_sample_company(tenant_id, invoice_prefix="RG", cancellation_prefix="SR")
    )
    second = finalizer.create_draft(tenant_id, build_draft_payload(get_scenario("01")))

    assert finalizer.finalize(tenant_id, second.invoice_id).invoice.invoice_number == "RG-0002"
    assert finalizer.cancel(tenant_id, draft.invoice_id).cancellation.invoice_number == "SR-0001"


def test_due_date_uses_company_payment_terms(finalizer, parties, tenant_id):
    parties.save_company(replace(build_sample_company(tenant_id), payment_terms_days=14))

    draft = finalizer.create_draft(tenant_id, build_draft_payload(get_scenario("01")))

    assert draft.due_date == date(2025, 3, 15)


def test_parallel_finalizations_get_unique_gapless_numbers(finalizer, tenant_id):
    drafts = [
        finalizer.create_draft(tenant_id, build_draft_payload(get_scenario("01")))
        for _ in range(8)
    ]

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda d: finalizer.finalize(tenant_id, d.invoice_id), drafts))

    numbers = sorted(result.invoice.invoice_number for result in results)
    assert numbers == [f"INV-{n:04d}" for n in range(1, 9)]


def test_render_failure_releases_number(finalizer, tenant_id, draft, monkeypatch):
    def broken_render(self, invoice, **kwargs):
        raise RuntimeError("font missing")

    monkeypatch.setattr(InvoiceRenderer, "render", broken_render)
    with pytest.raises(DocumentGenerationError) as exc:
        finalizer.finalize(tenant_id, draft.invoice_id)
    monkeypatch.undo()

    assert "PDF rendering failed" in str(exc.value)
    assert finalizer.get(tenant_id, draft.invoice_id).is_draft
    assert finalizer.finalize(tenant_id, draft.invoice_id).invoice.invoice_number == "INV-0001"


def test_serialization_failure_is_labelled_and_releases_number(
    finalizer, tenant_id, draft, monkeypatch
):
    def broken_serialize(invoice, **kwargs):
        raise RuntimeError("template error")

    monkeypatch.setattr(finalization, "serialize", broken_serialize)
    with pytest.raises(DocumentGenerationError) as exc:
        finalizer.finalize(tenant_id, draft.invoice_id)
    monkeypatch.undo()

    assert "XRechnung serialization failed" in str(exc.value)
    assert "PDF" not in str(exc.value)
    assert finalizer.finalize(tenant_id, draft.invoice_id).invoice.invoice_number == "INV-0001"


def test_cancel_generation_failure_removes_cancellation(
    finalizer, db, tenant_id, draft, monkeypatch
):
    finalizer.finalize(tenant_id, draft.invoice_id)

    def broken_serialize(invoice, **kwargs):
        raise RuntimeError("template error")

    monkeypatch.setattr(finalization, "serialize", broken_serialize)
    with pytest.raises(DocumentGenerationError):
        finalizer.cancel(tenant_id, draft.invoice_id)
    monkeypatch.undo()

    engine, tables = db
    assert SqlInvoiceStore(engine, tables).find_cancellation(tenant_id, draft.invoice_id) is None
    assert finalizer.get(tenant_id, draft.invoice_id).status is InvoiceStatus.CREATED
    assert finalizer.cancel(tenant_id, draft.invoice_id).cancellation.invoice_number == "ST-0001"


def _database_down(*args, **kwargs):
    raise OperationalError("UPDATE invoices", {}, Exception("database is locked"))


def test_database_failure_on_finalize_is_a_persistence_error(
    finalizer, tmp_path, tenant_id, draft, monkeypatch
):
    monkeypatch.setattr(SqlInvoiceStore, "mark_finalized", _database_down)
    with pytest.raises(PersistenceError) as exc:
        finalizer.finalize(tenant_id, draft.invoice_id)
    monkeypatch.undo()

    assert exc.value.code == "persistence_failed"
    assert exc.value.http_status == 500
    assert list((tmp_path / "storage").rglob("INV-0001.*")) == []
    assert finalizer.finalize(tenant_id, draft.invoice_id).invoice.invoice_number == "INV-0001"


def test_failed_document_refs_discard_uploads_and_release_number(
    finalizer, db, tmp_path, tenant_id, draft, monkeypatch
):
    finalizer.finalize(tenant_id, draft.invoice_id)

    monkeypatch.setattr(SqlInvoiceStore, "set_document_refs", _database_down)
    with pytest.raises(PersistenceError):
        finalizer.cancel(tenant_id, draft.invoice_id)
    monkeypatch.undo()

    engine, tables = db
    assert list((tmp_path / "storage").rglob("ST-0001.*")) == []
    assert SqlInvoiceStore(engine, tables).find_cancellation(tenant_id, draft.invoice_id) is None
    assert finalizer.cancel(tenant_id, draft.invoice_id).cancellation.invoice_number == "ST-0001"


def test_failed_cleanup_keeps_number_and_reports_original_error(
    finalizer, allocator, tenant_id, draft, monkeypatch
):
    finalizer.finalize(tenant_id, draft.invoice_id)

    def broken_serialize(invoice, **kwargs):
        raise RuntimeError("template error")

    monkeypatch.setattr(finalization, "serialize", broken_serialize)
    monkeypatch.setattr(SqlInvoiceStore, "delete", _database_down)
    with pytest.raises(DocumentGenerationError):
        finalizer.cancel(tenant_id, draft.invoice_id)

    company = IssuingIdentity.company(tenant_id)
    assert allocator.current(company, DocumentClass.CANCELLATION) == 1
    assert finalizer.get(tenant_id, draft.invoice_id).status is InvoiceStatus.CREATED
