"""Wiring of the invoicing core against settings, database and file storage."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from sqlalchemy import MetaData
from sqlalchemy.engine import Engine

from backend.apps.invoices.repository import (
    InvoiceTables,
    SqlInvoiceStore,
    SqlPartySource,
    get_tables,
)
from backend.apps.invoices.storage import FileObjectStorage
from backend.core.config import settings
from backend.core.db import get_engine
from einvoice.finalization import FinalizationConfig, InvoiceFinalizer
from einvoice.numbering import SequenceAllocator
from einvoice.parties import PartyResolver
from einvoice.pdf import InvoiceRenderer


def config_from_settings() -> FinalizationConfig:
    return FinalizationConfig(
        upload_retries=settings.STORAGE_UPLOAD_RETRIES,
        lock_timeout_seconds=settings.FINALIZE_LOCK_TIMEOUT_SEC,
        workers=settings.DOCUMENT_WORKERS,
        default_language=settings.DEFAULT_LANGUAGE,
        default_currency=settings.DEFAULT_CURRENCY,
        default_vat_rate=Decimal(settings.DEFAULT_VAT_RATE),
        payment_terms_days=settings.DEFAULT_PAYMENT_TERMS_DAYS,
    )


def build_finalizer(
    engine: Engine,
    storage: FileObjectStorage,
    *,
    tables: InvoiceTables | None = None,
    config: FinalizationConfig | None = None,
    **kwargs,
) -> InvoiceFinalizer:
    """Assemble an ``InvoiceFinalizer``; extra kwargs (e.g. ``clock``) pass through."""
    tables = tables or get_tables(MetaData())
    return InvoiceFinalizer(
        store=SqlInvoiceStore(engine, tables, clock=kwargs.get("clock")),
        allocator=SequenceAllocator(
            engine,
            tables.sequence_counters,
            pad_width=settings.NUMBER_PAD_WIDTH,
            clock=kwargs.get("clock"),
        ),
        resolver=PartyResolver(SqlPartySource(engine, tables)),
        storage=storage,
        config=config or config_from_settings(),
        renderer=InvoiceRenderer(producer=settings.PDF_PRODUCER),
        logo_loader=storage.get,
        **kwargs,
    )


@lru_cache(maxsize=1)
def get_storage() -> FileObjectStorage:
    return FileObjectStorage.from_settings()


@lru_cache(maxsize=1)
def get_finalizer() -> InvoiceFinalizer:
    """FastAPI dependency; tests override it via ``app.dependency_overrides``."""
    return build_finalizer(get_engine(), get_storage())
