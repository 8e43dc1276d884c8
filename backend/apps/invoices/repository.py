"""SQLAlchemy Core persistence for companies, contacts, invoices and counters."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from backend.core.observability.logging import logger
from einvoice.dto import (
    DocumentClass,
    Invoice,
    InvoiceStatus,
    PartySnapshot,
    line_items_from_payload,
    party_ref_from_dict,
    party_ref_to_dict,
    quantize_money,
)
from einvoice.numbering import IssuingIdentity, SequenceAllocator, get_sequence_counters_table
from einvoice.parties import CompanyProfile, ContactRecord, sequence_prefixes


@dataclass(frozen=True)
class InvoiceTables:
    companies: Table
    contacts: Table
    invoices: Table
    sequence_counters: Table


def get_tables(metadata: MetaData) -> InvoiceTables:
    """Return Table objects for the invoicing schema (see ops/alembic)."""
    companies = Table(
        "companies",
        metadata,
        Column("tenant_id", String, primary_key=True),
        Column("party_json", Text, nullable=False),
        Column("invoice_number_prefix", String(32), nullable=False),
        Column("cancellation_number_prefix", String(32), nullable=False),
        Column("logo_url", Text),
        Column("payment_terms_days", Integer, nullable=False, default=30),
        Column("updated_at", DateTime(timezone=True)),
        extend_existing=True,
    )

    contacts = Table(
        "contacts",
        metadata,
        Column("id", String, primary_key=True),
        Column("tenant_id", String, nullable=False, index=True),
        Column("party_json", Text, nullable=False),
        Column("invoice_number_prefix", String(32)),
        Column("cancellation_number_prefix", String(32)),
        Column("updated_at", DateTime(timezone=True)),
        extend_existing=True,
    )

    invoices = Table(
        "invoices",
        metadata,
        Column("id", String, primary_key=True),
        Column("tenant_id", String, nullable=False, index=True),
        Column("status", String(16), nullable=False),
        Column("document_class", String(16), nullable=False),
        Column("invoice_number", String(64)),
        Column("seller_ref_json", Text, nullable=False),
        Column("buyer_ref_json", Text),
        Column("seller_json", Text),
        Column("buyer_json", Text),
        Column("line_items_json", Text, nullable=False),
        Column("invoice_date", Date),
        Column("due_date", Date),
        Column("service_date", Date),
        Column("language", String(8), nullable=False),
        Column("currency", String(3), nullable=False),
        Column("intro_text", Text),
        Column("outro_text", Text),
        Column("buyer_reference", String(255)),
        Column("recipient_email", String(255)),
        Column("cancelled_invoice_id", String, unique=True),
        Column("subtotal", String(32)),
        Column("vat_amount", String(32)),
        Column("total_amount", String(32)),
        Column("pdf_url", Text),
        Column("xml_url", Text),
        Column("finalization_lock", DateTime(timezone=True)),
        Column("finalized_at", DateTime(timezone=True)),
        Column("created_at", DateTime(timezone=True)),
        Column("updated_at", DateTime(timezone=True)),
        extend_existing=True,
    )

    return InvoiceTables(
        companies=companies,
        contacts=contacts,
        invoices=invoices,
        sequence_counters=get_sequence_counters_table(metadata),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def _load(text: Optional[str]) -> Any:
    return json.loads(text) if text else None


def _invoice_values(invoice: Invoice) -> dict[str, Any]:
    totals = invoice.document_totals()
    return {
        "status": invoice.status.value,
        "document_class": invoice.document_class.value,
        "invoice_number": invoice.invoice_number,
        "seller_ref_json": _dump(party_ref_to_dict(invoice.seller_ref)),
        "buyer_ref_json": _dump(party_ref_to_dict(invoice.buyer_ref)),
        "seller_json": _dump(invoice.seller.to_dict() if invoice.seller else None),
        "buyer_json": _dump(invoice.buyer.to_dict() if invoice.buyer else None),
        "line_items_json": _dump([item.to_dict() for item in invoice.line_items]),
        "invoice_date": invoice.invoice_date,
        "due_date": invoice.due_date,
        "service_date": invoice.service_date,
        "language": invoice.language,
        "currency": invoice.currency,
        "intro_text": invoice.intro_text,
        "outro_text": invoice.outro_text,
        "buyer_reference": invoice.buyer_reference,
        "recipient_email": invoice.recipient_email,
        "cancelled_invoice_id": invoice.cancelled_invoice_id,
        "subtotal": str(quantize_money(totals.subtotal)),
        "vat_amount": str(quantize_money(totals.vat_total)),
        "total_amount": str(quantize_money(totals.total)),
        "pdf_url": invoice.pdf_url,
        "xml_url": invoice.xml_url,
        "finalized_at": invoice.finalized_at,
    }


def _row_to_invoice(row) -> Invoice:
    seller = _load(row.seller_json)
    buyer = _load(row.buyer_json)
    return Invoice(
        invoice_id=row.id,
        tenant_id=row.tenant_id,
        status=InvoiceStatus(row.status),
        document_class=DocumentClass(row.document_class),
        seller_ref=party_ref_from_dict(_load(row.seller_ref_json)),
        buyer_ref=party_ref_from_dict(_load(row.buyer_ref_json)),
        seller=PartySnapshot.from_mapping(seller) if seller else None,
        buyer=PartySnapshot.from_mapping(buyer) if buyer else None,
        line_items=tuple(line_items_from_payload(_load(row.line_items_json))),
        invoice_date=row.invoice_date,
        due_date=row.due_date,
        service_date=row.service_date,
        invoice_number=row.invoice_number,
        language=row.language,
        currency=row.currency,
        intro_text=row.intro_text,
        outro_text=row.outro_text,
        buyer_reference=row.buyer_reference,
        recipient_email=row.recipient_email,
        cancelled_invoice_id=row.cancelled_invoice_id,
        pdf_url=row.pdf_url,
        xml_url=row.xml_url,
        finalized_at=row.finalized_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlInvoiceStore:
    """Invoice persistence with conditional (compare-and-set) state changes."""

    def __init__(
        self,
        engine: Engine,
        tables: InvoiceTables,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._t = tables.invoices
        self._clock = clock or _utcnow

    def _key(self, tenant_id: str, invoice_id: str):
        return (self._t.c.id == invoice_id) & (self._t.c.tenant_id == tenant_id)

    def get(self, tenant_id: str, invoice_id: str) -> Optional[Invoice]:
        with self._engine.connect() as conn:
            row = conn.execute(select(self._t).where(self._key(tenant_id, invoice_id))).fetchone()
        return _row_to_invoice(row) if row else None

    def insert(self, invoice: Invoice) -> bool:
        """Insert; ``False`` if a unique constraint (e.g. cancellation link) is hit."""
        now = self._clock()
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(self._t).values(
                        id=invoice.invoice_id,
                        tenant_id=invoice.tenant_id,
                        created_at=now,
                        updated_at=now,
                        **_invoice_values(invoice),
                    )
                )
        except IntegrityError:
            logger.warning("invoice_insert_conflict", extra={"invoice_id": invoice.invoice_id})
            return False
        invoice.created_at = invoice.updated_at = now
        return True

    def update_draft(self, invoice: Invoice) -> bool:
        stmt = (
            update(self._t)
            .where(self._key(invoice.tenant_id, invoice.invoice_id))
            .where(self._t.c.status == InvoiceStatus.DRAFT.value)
            .where(self._t.c.finalization_lock.is_(None))
            .values(updated_at=self._clock(), **_invoice_values(invoice))
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def claim_finalization(self, tenant_id: str, invoice_id: str, *, timeout_seconds: int) -> bool:
        """Set ``finalization_lock`` unless another finalization holds a fresh lock."""
        now = self._clock()
        cutoff = now - timedelta(seconds=timeout_seconds)
        t = self._t
        stmt = (
            update(t)
            .where(self._key(tenant_id, invoice_id))
            .where(t.c.status == InvoiceStatus.DRAFT.value)
            .where(t.c.invoice_number.is_(None))
            .where(t.c.finalization_lock.is_(None) | (t.c.finalization_lock < cutoff))
            .values(finalization_lock=now)
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def release_finalization(self, tenant_id: str, invoice_id: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                update(self._t)
                .where(self._key(tenant_id, invoice_id))
                .where(self._t.c.status == InvoiceStatus.DRAFT.value)
                .values(finalization_lock=None)
            )

    def mark_finalized(self, invoice: Invoice) -> bool:
        """Draft → finalized in one conditional statement; clears the lock."""
        t = self._t
        stmt = (
            update(t)
            .where(self._key(invoice.tenant_id, invoice.invoice_id))
            .where(t.c.status == InvoiceStatus.DRAFT.value)
            .where(t.c.invoice_number.is_(None))
            .values(finalization_lock=None, updated_at=self._clock(), **_invoice_values(invoice))
        )
        try:
            with self._engine.begin() as conn:
                return conn.execute(stmt).rowcount == 1
        except IntegrityError:
            logger.error(
                "invoice_number_conflict",
                extra={"invoice_id": invoice.invoice_id, "invoice_number": invoice.invoice_number},
            )
            return False

    def find_cancellation(self, tenant_id: str, original_id: str) -> Optional[Invoice]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(self._t)
                .where(self._t.c.tenant_id == tenant_id)
                .where(self._t.c.cancelled_invoice_id == original_id)
            ).fetchone()
        return _row_to_invoice(row) if row else None

    def set_document_refs(
        self, tenant_id: str, invoice_id: str, *, pdf_url: str, xml_url: str
    ) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                update(self._t)
                .where(self._key(tenant_id, invoice_id))
                .values(pdf_url=pdf_url, xml_url=xml_url, updated_at=self._clock())
            )

    def set_status(
        self, tenant_id: str, invoice_id: str, status: str, *, expected: Iterable[str]
    ) -> bool:
        stmt = (
            update(self._t)
            .where(self._key(tenant_id, invoice_id))
            .where(self._t.c.status.in_([InvoiceStatus(s).value for s in expected]))
            .values(status=InvoiceStatus(status).value, updated_at=self._clock())
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def delete(self, tenant_id: str, invoice_id: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(delete(self._t).where(self._key(tenant_id, invoice_id)))


class SqlPartySource:
    """Company profiles and contacts for the party resolver.

    Saving a record also creates its invoice and cancellation counters, or
    moves them to the new prefixes, in the same transaction.
    """

    def __init__(self, engine: Engine, tables: InvoiceTables) -> None:
        self._engine = engine
        self._companies = tables.companies
        self._contacts = tables.contacts
        self._sequences = SequenceAllocator(engine, tables.sequence_counters)

    def get_company(self, tenant_id: str) -> Optional[CompanyProfile]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(self._companies).where(self._companies.c.tenant_id == tenant_id)
            ).fetchone()
        if not row:
            return None
        return CompanyProfile(
            tenant_id=row.tenant_id,
            party=PartySnapshot.from_mapping(_load(row.party_json)),
            invoice_number_prefix=row.invoice_number_prefix,
            cancellation_number_prefix=row.cancellation_number_prefix,
            logo_url=row.logo_url,
            payment_terms_days=row.payment_terms_days,
        )

    def get_contact(self, tenant_id: str, contact_id: str) -> Optional[ContactRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(self._contacts)
                .where(self._contacts.c.tenant_id == tenant_id)
                .where(self._contacts.c.id == contact_id)
            ).fetchone()
        if not row:
            return None
        return ContactRecord(
            contact_id=row.id,
            tenant_id=row.tenant_id,
            party=PartySnapshot.from_mapping(_load(row.party_json)),
            invoice_number_prefix=row.invoice_number_prefix,
            cancellation_number_prefix=row.cancellation_number_prefix,
        )

    def _sync_sequences(self, conn, identity: IssuingIdentity, record) -> None:
        for document_class, prefix in sequence_prefixes(record).items():
            self._sequences.provision(
                identity, document_class, prefix, tenant_id=record.tenant_id, connection=conn
            )

    def save_company(self, profile: CompanyProfile) -> None:
        values = {
            "party_json": _dump(profile.party.to_dict()),
            "invoice_number_prefix": profile.invoice_number_prefix,
            "cancellation_number_prefix": profile.cancellation_number_prefix,
            "logo_url": profile.logo_url,
            "payment_terms_days": profile.payment_terms_days,
            "updated_at": _utcnow(),
        }
        with self._engine.begin() as conn:
            updated = conn.execute(
                update(self._companies)
                .where(self._companies.c.tenant_id == profile.tenant_id)
                .values(**values)
            ).rowcount
            if not updated:
                conn.execute(insert(self._companies).values(tenant_id=profile.tenant_id, **values))
            self._sync_sequences(conn, IssuingIdentity.company(profile.tenant_id), profile)

    def save_contact(self, record: ContactRecord) -> None:
        values = {
            "tenant_id": record.tenant_id,
            "party_json": _dump(record.party.to_dict()),
            "invoice_number_prefix": record.invoice_number_prefix,
            "cancellation_number_prefix": record.cancellation_number_prefix,
            "updated_at": _utcnow(),
        }
        with self._engine.begin() as conn:
            updated = conn.execute(
                update(self._contacts)
                .where(self._contacts.c.id == record.contact_id)
                .where(self._contacts.c.tenant_id == record.tenant_id)
                .values(**values)
            ).rowcount
            if not updated:
                conn.execute(insert(self._contacts).values(id=record.contact_id, **values))
            self._sync_sequences(conn, IssuingIdentity.contact(record.contact_id), record)
