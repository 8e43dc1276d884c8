"""Finalisierung und Storno: vom Entwurf zum unveränderlichen, archivierbaren Beleg.

Ablauf der Finalisierung::

    laden → Status prüfen → Sperre setzen → Parteien einfrieren → prüfen
    → Nummer vergeben → PDF ∥ XML → einbetten → Upload PDF ∥ XML
    → bedingtes Update auf ``created``

Jeder Fehler nach der Nummernvergabe gibt die Nummer wieder frei, der Entwurf
bleibt unverändert. Alle Aufrufe sind für den Aufrufer synchron.
"""

from __future__ import annotations

import functools
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from backend.core.observability.logging import logger
from backend.core.observability.metrics import (
    increment_cancel_failures,
    increment_finalize_failures,
    increment_invoices_cancelled,
    increment_invoices_finalized,
    increment_storage_failures,
    increment_storage_retries,
    record_document_duration,
    record_finalize_duration,
)

from . import i18n
from .cancellation import build_cancellation, check_cancellable
from .compliance import ValidationResult, validate
from .dto import (
    DELIVERY_STATUSES,
    DocumentClass,
    Invoice,
    InvoiceStatus,
    LineItem,
    SelfParty,
    party_ref_from_dict,
)
from .errors import (
    DocumentGenerationError,
    InvoicingError,
    NotFoundError,
    PersistenceError,
    StateConflictError,
    StorageError,
    ValidationError,
)
from .facturx import DEFAULT_XML_FILENAME, embed
from .numbering import AllocatedNumber, SequenceAllocator
from .parties import PartyResolver
from .pdf import InvoiceRenderer
from .ports import InvoiceStore, ObjectStorage
from .xrechnung import serialize

PDF_CONTENT_TYPE = "application/pdf"
XML_CONTENT_TYPE = "application/xml"

# Felder, die ein Entwurf per create/update setzen darf
_DRAFT_FIELDS = (
    "invoice_date",
    "due_date",
    "service_date",
    "language",
    "currency",
    "intro_text",
    "outro_text",
    "buyer_reference",
    "recipient_email",
)


@dataclass(frozen=True)
class FinalizationConfig:
    upload_retries: int = 2
    lock_timeout_seconds: int = 120
    workers: int = 2
    default_language: str = "de"
    default_currency: str = "EUR"
    default_vat_rate: Decimal = Decimal("19")
    payment_terms_days: int = 30


@dataclass(frozen=True)
class FinalizationResult:
    invoice: Invoice
    pdf_url: str
    xml_url: str
    warnings: Tuple[Any, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice": self.invoice.to_dict(),
            "pdf_url": self.pdf_url,
            "xml_url": self.xml_url,
            "warnings": [{"field": w.field, "message": w.message} for w in self.warnings],
        }


@dataclass(frozen=True)
class CancellationResult:
    cancellation: Invoice
    original: Invoice

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cancellation_invoice": self.cancellation.to_dict(),
            "original_invoice": self.original.to_dict(),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, InvoicingError):
        return exc.code
    if isinstance(exc, SQLAlchemyError):
        return PersistenceError.code
    return "unexpected"


def _persistence_errors(method):
    """Datenbankfehler als ``PersistenceError`` mit eigenem Code weiterreichen."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error(
                "persistence_failed", extra={"operation": method.__name__, "error": str(exc)}
            )
            raise PersistenceError(f"Datenbankzugriff fehlgeschlagen: {exc}") from exc

    return wrapper


def _document_result(future: Future, label: str) -> bytes:
    try:
        return future.result()
    except InvoicingError:
        raise
    except Exception as exc:  # noqa: BLE001 - reportlab und lxml werfen verschiedene Typen
        raise DocumentGenerationError(f"{label}: {exc}") from exc


def _document_keys(invoice: Invoice) -> Tuple[str, str]:
    base = f"{invoice.tenant_id}/invoices/{invoice.invoice_id}/{invoice.invoice_number}"
    return f"{base}.pdf", f"{base}.xml"


class InvoiceFinalizer:
    """Orchestriert Entwürfe, Finalisierung, Storno und Statuswechsel."""

    def __init__(
        self,
        *,
        store: InvoiceStore,
        allocator: SequenceAllocator,
        resolver: PartyResolver,
        storage: ObjectStorage,
        config: FinalizationConfig = FinalizationConfig(),
        renderer: Optional[InvoiceRenderer] = None,
        clock: Callable[[], datetime] = _utcnow,
        logo_loader: Optional[Callable[[str], bytes]] = None,
    ) -> None:
        self._store = store
        self._allocator = allocator
        self._resolver = resolver
        self._storage = storage
        self._config = config
        self._renderer = renderer or InvoiceRenderer()
        self._clock = clock
        self._logo_loader = logo_loader

    # ------------------------------------------------------------------
    # Entwürfe
    # ------------------------------------------------------------------
    @_persistence_errors
    def get(self, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = self._store.get(tenant_id, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice '{invoice_id}' not found", code="invoice_not_found")
        return invoice

    def _apply_payload(self, invoice: Invoice, payload: Mapping[str, Any]) -> Invoice:
        changes: Dict[str, Any] = {k: payload[k] for k in _DRAFT_FIELDS if k in payload}
        try:
            if "seller" in payload:
                changes["seller_ref"] = party_ref_from_dict(payload["seller"]) or SelfParty()
            if "buyer" in payload:
                changes["buyer_ref"] = party_ref_from_dict(payload["buyer"])
            if "line_items" in payload:
                items: List[LineItem] = []
                for raw in payload["line_items"] or []:
                    item = dict(raw)
                    if item.get("vat_rate") is None:
                        item["vat_rate"] = self._config.default_vat_rate
                    items.append(LineItem.from_mapping(item))
                changes["line_items"] = tuple(items)
            updated = replace(invoice, **changes)
        except (ValueError, ArithmeticError) as exc:
            raise ValidationError(f"Ungültige Entwurfsdaten: {exc}") from exc
        updated.language = i18n.normalize_language(updated.language)
        return self._snapshot(updated)

    def _snapshot(self, invoice: Invoice) -> Invoice:
        """Entwürfe dürfen neu eingefroren werden; finalisierte Belege nie."""
        tenant_id = invoice.tenant_id
        invoice.seller = self._resolver.resolve(invoice.seller_ref, tenant_id)
        invoice.buyer = (
            self._resolver.resolve(invoice.buyer_ref, tenant_id) if invoice.buyer_ref else None
        )
        return invoice

    @_persistence_errors
    def create_draft(self, tenant_id: str, payload: Mapping[str, Any]) -> Invoice:
        today = self._clock().date()
        draft = Invoice(
            invoice_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            language=self._config.default_language,
            currency=self._config.default_currency,
            invoice_date=today,
        )
        draft = self._apply_payload(draft, payload)
        if draft.invoice_date is None:
            draft.invoice_date = today
        if draft.due_date is None:
            terms = self._resolver.payment_terms_days(draft.seller_ref, tenant_id)
            if terms is None:
                terms = self._config.payment_terms_days
            draft.due_date = draft.invoice_date + timedelta(days=terms)
        if not self._store.insert(draft):
            raise StateConflictError("Entwurf konnte nicht angelegt werden.", code="draft_conflict")
        logger.info("draft_created", extra={"invoice_id": draft.invoice_id})
        return draft

    @_persistence_errors
    def update_draft(self, tenant_id: str, invoice_id: str, payload: Mapping[str, Any]) -> Invoice:
        current = self.get(tenant_id, invoice_id)
        if current.status is InvoiceStatus.CANCELLED:
            raise StateConflictError(
                "Stornierte Rechnungen können nicht geändert werden.",
                code="invoice_cancelled",
                http_status=400,
            )
        if not current.is_draft:
            raise StateConflictError(
                "Finalisierte Rechnungen können nicht geändert werden.", code="not_draft"
            )
        updated = self._apply_payload(current, payload)
        if not self._store.update_draft(updated):
            raise StateConflictError(
                "Entwurf wird gerade finalisiert oder wurde geändert.", code="draft_locked"
            )
        return updated

    # ------------------------------------------------------------------
    # Dokumente
    # ------------------------------------------------------------------
    def _load_logo(self, invoice: Invoice) -> Optional[bytes]:
        if self._logo_loader is None:
            return None
        url = self._resolver.logo_url(invoice.seller_ref, invoice.tenant_id)
        if not url:
            return None
        try:
            return self._logo_loader(url)
        except StorageError as exc:
            logger.warning("logo_unavailable", extra={"invoice_id": invoice.invoice_id, "error": str(exc)})
            return None

    def _render(self, invoice: Invoice, logo: Optional[bytes], cancellation_of: Optional[str]) -> bytes:
        start = time.time()
        pdf_bytes = self._renderer.render(
            invoice, language=invoice.language, logo=logo, cancellation_of=cancellation_of
        )
        record_document_duration("render", (time.time() - start) * 1000)
        return pdf_bytes

    def _serialize(self, invoice: Invoice, original: Optional[Invoice]) -> bytes:
        start = time.time()
        try:
            xml_bytes = serialize(
                invoice,
                is_cancellation=original is not None,
                original_number=original.invoice_number if original else None,
                original_issue_date=original.invoice_date if original else None,
            )
        except ValueError as exc:
            raise DocumentGenerationError(f"XRechnung serialization failed: {exc}") from exc
        record_document_duration("serialize", (time.time() - start) * 1000)
        return xml_bytes

    def _generate(self, invoice: Invoice, original: Optional[Invoice] = None) -> Tuple[bytes, bytes]:
        """PDF und XML parallel erzeugen, danach das XML in das PDF einbetten."""
        logo = self._load_logo(invoice)
        cancellation_of = original.invoice_number if original else None
        with ThreadPoolExecutor(max_workers=max(1, self._config.workers)) as pool:
            pdf_future = pool.submit(self._render, invoice, logo, cancellation_of)
            xml_future = pool.submit(self._serialize, invoice, original)
            pdf_bytes = _document_result(pdf_future, "PDF rendering failed")
            xml_bytes = _document_result(xml_future, "XRechnung serialization failed")

        t = i18n.labels(invoice.language)
        title = t["cancellation"] if original else t["invoice"]
        start = time.time()
        hybrid = embed(
            pdf_bytes,
            xml_bytes,
            title=f"{title} {invoice.invoice_number}",
            author=invoice.seller.name if invoice.seller else "",
            timestamp=invoice.finalized_at or self._clock(),
            filename=DEFAULT_XML_FILENAME,
        )
        record_document_duration("embed", (time.time() - start) * 1000)
        return hybrid, xml_bytes

    def _put_with_retry(self, key: str, data: bytes, content_type: str) -> str:
        attempts = 1 + max(0, self._config.upload_retries)
        last_error: Optional[StorageError] = None
        for attempt in range(1, attempts + 1):
            try:
                return self._storage.put(key, data, content_type)
            except StorageError as exc:
                last_error = exc
                if attempt < attempts:
                    increment_storage_retries()
                    logger.warning("storage_upload_retry", extra={"key": key, "attempt": attempt})
        increment_storage_failures()
        raise StorageError(f"Upload failed after {attempts} attempts: {key}") from last_error

    def _discard(self, urls: List[str]) -> None:
        for url in urls:
            try:
                self._storage.delete(url)
            except StorageError as exc:
                logger.warning("storage_cleanup_failed", extra={"url": url, "error": str(exc)})

    def _upload(self, invoice: Invoice, pdf_bytes: bytes, xml_bytes: bytes) -> Tuple[str, str]:
        """Beide Dateien parallel hochladen; bei Fehler bereits Hochgeladenes entfernen."""
        pdf_key, xml_key = _document_keys(invoice)
        with ThreadPoolExecutor(max_workers=2) as pool:
            pdf_future = pool.submit(self._put_with_retry, pdf_key, pdf_bytes, PDF_CONTENT_TYPE)
            xml_future = pool.submit(self._put_with_retry, xml_key, xml_bytes, XML_CONTENT_TYPE)
            uploaded: List[str] = []
            errors: List[StorageError] = []
            for future in (pdf_future, xml_future):
                try:
                    uploaded.append(future.result())
                except StorageError as exc:
                    errors.append(exc)
        if errors:
            self._discard(uploaded)
            raise errors[0]
        return uploaded[0], uploaded[1]

    # ------------------------------------------------------------------
    # Finalisierung
    # ------------------------------------------------------------------
    def _check(self, invoice: Invoice) -> ValidationResult:
        identity = self._resolver.issuing_identity(invoice.seller_ref, invoice.tenant_id)
        prefix = self._resolver.number_prefix(
            invoice.seller_ref, invoice.tenant_id, DocumentClass.INVOICE
        )
        numbering_ready = bool(prefix) and self._allocator.is_provisioned(
            identity, DocumentClass.INVOICE
        )
        return validate(invoice, numbering_ready=numbering_ready)

    def _allocate(self, invoice: Invoice, document_class: DocumentClass) -> AllocatedNumber:
        """Nächste Nummer mit dem aktuell in den Stammdaten konfigurierten Präfix."""
        ref, tenant_id = invoice.seller_ref, invoice.tenant_id
        return self._allocator.allocate(
            self._resolver.issuing_identity(ref, tenant_id),
            document_class,
            prefix=self._resolver.number_prefix(ref, tenant_id, document_class),
        )

    @_persistence_errors
    def preview(self, tenant_id: str, draft_id: str) -> ValidationResult:
        """Prüft einen Entwurf mit aktuellen Stammdaten, ohne etwas zu ändern."""
        draft = self.get(tenant_id, draft_id)
        return self._check(self._snapshot(draft))

    @_persistence_errors
    def finalize(self, tenant_id: str, draft_id: str) -> FinalizationResult:
        start = time.time()
        draft = self.get(tenant_id, draft_id)
        if not draft.is_draft or draft.invoice_number:
            raise StateConflictError(
                f"Rechnung {draft.invoice_number or draft_id} ist bereits finalisiert.",
                code="already_finalized",
            )
        if not self._store.claim_finalization(
            tenant_id, draft_id, timeout_seconds=self._config.lock_timeout_seconds
        ):
            raise StateConflictError(
                "Rechnung wird bereits finalisiert.", code="finalization_in_progress"
            )

        allocated: Optional[AllocatedNumber] = None
        uploaded: List[str] = []
        try:
            invoice = self._snapshot(replace(draft))
            result = self._check(invoice)
            result.raise_for_errors(invoice.language)

            allocated = self._allocate(invoice, DocumentClass.INVOICE)
            invoice.invoice_number = allocated.number
            invoice.status = InvoiceStatus.CREATED
            invoice.finalized_at = self._clock()

            pdf_bytes, xml_bytes = self._generate(invoice)
            uploaded = list(self._upload(invoice, pdf_bytes, xml_bytes))
            invoice.pdf_url, invoice.xml_url = uploaded

            if not self._store.mark_finalized(invoice):
                raise StateConflictError(
                    "Rechnung wurde parallel geändert.", code="finalization_conflict"
                )
        except Exception as exc:
            code = _error_code(exc)
            increment_finalize_failures(code)
            logger.warning(
                "finalize_failed",
                extra={"invoice_id": draft_id, "error_code": code, "error": str(exc)},
            )
            self._discard(uploaded)
            if allocated is not None:
                self._allocator.release(allocated)
            try:
                self._store.release_finalization(tenant_id, draft_id)
            except SQLAlchemyError:
                logger.exception("finalization_lock_release_failed", extra={"invoice_id": draft_id})
            raise

        increment_invoices_finalized()
        record_finalize_duration((time.time() - start) * 1000)
        logger.info(
            "invoice_finalized",
            extra={"invoice_id": invoice.invoice_id, "invoice_number": invoice.invoice_number},
        )
        return FinalizationResult(
            invoice=invoice,
            pdf_url=invoice.pdf_url,
            xml_url=invoice.xml_url,
            warnings=tuple(result.warnings),
        )

    # ------------------------------------------------------------------
    # Storno
    # ------------------------------------------------------------------
    def _withdraw_cancellation(
        self, cancellation: Invoice, allocated: AllocatedNumber, uploaded: List[str]
    ) -> None:
        """Verwirft einen unvollständigen Storno-Beleg samt Dateien.

        Die Nummer wird nur freigegeben, wenn der Datensatz gelöscht ist; sonst
        bleibt sie als protokollierte Lücke verbraucht.
        """
        self._discard(uploaded)
        try:
            self._store.delete(cancellation.tenant_id, cancellation.invoice_id)
        except SQLAlchemyError:
            logger.exception(
                "cancellation_cleanup_failed",
                extra={
                    "cancellation_id": cancellation.invoice_id,
                    "invoice_number": cancellation.invoice_number,
                },
            )
            return
        self._allocator.release(allocated)

    @_persistence_errors
    def cancel(self, tenant_id: str, invoice_id: str) -> CancellationResult:
        original = self.get(tenant_id, invoice_id)
        check_cancellable(original, self._store.find_cancellation(tenant_id, invoice_id))

        try:
            allocated = self._allocate(original, DocumentClass.CANCELLATION)
        except InvoicingError as exc:
            increment_cancel_failures(exc.code)
            raise

        now = self._clock()
        cancellation = build_cancellation(original, allocated.number, now.date())
        cancellation.finalized_at = now
        try:
            inserted = self._store.insert(cancellation)
        except SQLAlchemyError:
            self._allocator.release(allocated)
            increment_cancel_failures(PersistenceError.code)
            raise
        if not inserted:
            self._allocator.release(allocated)
            increment_cancel_failures("cancellation_exists")
            existing = self._store.find_cancellation(tenant_id, invoice_id)
            if existing is not None:
                check_cancellable(original, existing)
            raise StateConflictError(
                "Stornorechnung konnte nicht angelegt werden.",
                code="cancellation_conflict",
                http_status=400,
            )

        uploaded: List[str] = []
        try:
            pdf_bytes, xml_bytes = self._generate(cancellation, original)
            uploaded = list(self._upload(cancellation, pdf_bytes, xml_bytes))
            pdf_url, xml_url = uploaded
            self._store.set_document_refs(
                tenant_id, cancellation.invoice_id, pdf_url=pdf_url, xml_url=xml_url
            )
        except Exception as exc:
            code = _error_code(exc)
            increment_cancel_failures(code)
            logger.warning(
                "cancel_failed",
                extra={"invoice_id": invoice_id, "error_code": code, "error": str(exc)},
            )
            self._withdraw_cancellation(cancellation, allocated, uploaded)
            raise
        cancellation.pdf_url, cancellation.xml_url = pdf_url, xml_url

        try:
            updated = self._store.set_status(
                tenant_id,
                invoice_id,
                InvoiceStatus.CANCELLED.value,
                expected=[s.value for s in DELIVERY_STATUSES],
            )
        except Exception:  # noqa: BLE001 - Storno ist bereits gültig
            logger.exception("original_status_update_failed", extra={"invoice_id": invoice_id})
            updated = False
        if updated:
            original.status = InvoiceStatus.CANCELLED
        else:
            logger.error("original_status_not_cancelled", extra={"invoice_id": invoice_id})

        increment_invoices_cancelled()
        logger.info(
            "invoice_cancelled",
            extra={
                "invoice_id": invoice_id,
                "cancellation_id": cancellation.invoice_id,
                "invoice_number": cancellation.invoice_number,
            },
        )
        return CancellationResult(cancellation=cancellation, original=original)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    @_persistence_errors
    def update_status(self, tenant_id: str, invoice_id: str, status: str) -> Invoice:
        try:
            target = InvoiceStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unbekannter Status: {status}") from exc
        if target not in DELIVERY_STATUSES:
            raise StateConflictError(
                f"Status '{target.value}' kann nicht direkt gesetzt werden.",
                code="invalid_status",
                http_status=400,
            )
        invoice = self.get(tenant_id, invoice_id)
        if invoice.status is InvoiceStatus.CANCELLED:
            raise StateConflictError(
                "Stornierte Rechnungen können nicht geändert werden.",
                code="invoice_cancelled",
                http_status=400,
            )
        if invoice.is_draft:
            raise StateConflictError(
                "Entwürfe müssen zuerst finalisiert werden.", code="draft", http_status=400
            )
        if not self._store.set_status(
            tenant_id, invoice_id, target.value, expected=[s.value for s in DELIVERY_STATUSES]
        ):
            raise StateConflictError("Status wurde parallel geändert.", code="status_conflict")
        invoice.status = target
        logger.info("invoice_status_changed", extra={"invoice_id": invoice_id, "status": target.value})
        return invoice

    def is_overdue(self, invoice: Invoice, today: Optional[date] = None) -> bool:
        return invoice.is_overdue(today or self._clock().date())
