"""E-Invoice Batch-Generator: Entwurf → Finalisierung (→ Storno) → Archivpaket."""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timedelta, timezone
from itertools import count
from pathlib import Path
from typing import Callable, Iterable, List

from sqlalchemy import MetaData

from backend.apps.invoices.repository import SqlPartySource, get_tables
from backend.apps.invoices.service import build_finalizer
from backend.apps.invoices.storage import FileObjectStorage
from backend.core.config import settings
from backend.core.db import get_engine
from backend.core.observability import generate_trace_id
from backend.core.observability.logging import log_context
from einvoice import (
    check_structure,
    extract_xml,
    version,
    write_package,
)
from einvoice.samples import (
    SCENARIOS,
    build_draft_payload,
    build_sample_buyer,
    build_sample_company,
)


def _iso_datetime(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _make_now_provider(start: datetime) -> Callable[[], datetime]:
    tick = count()

    def _next() -> datetime:
        return start + timedelta(seconds=next(tick))

    return _next


def _ensure_count(count_value: int, scenarios: Iterable) -> List:
    scenarios_list = list(scenarios)
    if count_value > len(scenarios_list):
        raise ValueError(
            f"Requested {count_value} invoices but only {len(scenarios_list)} scenarios available"
        )
    return scenarios_list[:count_value]


def _archive_files(storage: FileObjectStorage, pdf_url: str, xml_url: str) -> dict:
    pdf_bytes = storage.get(pdf_url)
    xml_bytes = storage.get(xml_url)
    check = check_structure(xml_bytes)
    return {
        "invoice.pdf": pdf_bytes,
        "invoice.xml": xml_bytes,
        "validation.json": json.dumps(
            {
                **check.to_dict(),
                "embedded_xml_matches": extract_xml(pdf_bytes) == xml_bytes,
            },
            indent=2,
            sort_keys=True,
        ).encode("utf-8"),
    }


def generate_batch(
    *,
    tenant_id: str,
    count: int,
    base_dir: Path,
    now_provider: Callable[[], datetime],
    cancel: bool = False,
    verbose: bool = False,
) -> dict:
    """Erzeugt ``count`` Rechnungen aus den Beispielszenarien in ``base_dir``."""

    scenarios = _ensure_count(count, SCENARIOS)
    base_dir.mkdir(parents=True, exist_ok=True)

    engine = get_engine(f"sqlite:///{base_dir / 'einvoice.db'}")
    metadata = MetaData()
    tables = get_tables(metadata)
    metadata.create_all(engine)

    storage = FileObjectStorage(
        f"file://{(base_dir / 'storage').resolve()}",
        public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
        hmac_key=settings.PRESIGN_HMAC_KEY,
        default_ttl_seconds=settings.PRESIGN_DEFAULT_TTL_SEC,
    )

    parties = SqlPartySource(engine, tables)
    company = build_sample_company(
        tenant_id,
        invoice_prefix=settings.INVOICE_NUMBER_PREFIX,
        cancellation_prefix=settings.CANCELLATION_NUMBER_PREFIX,
    )
    parties.save_company(company)
    buyer = build_sample_buyer(tenant_id)
    parties.save_contact(buyer)

    finalizer = build_finalizer(engine, storage, tables=tables, clock=now_provider)

    results: List[dict] = []
    previous_hash: str | None = None
    with log_context(trace_id=generate_trace_id(), tenant_id=tenant_id):
        for scenario in scenarios:
            draft = finalizer.create_draft(
                tenant_id, build_draft_payload(scenario, buyer_contact_id=buyer.contact_id)
            )
            finalized = finalizer.finalize(tenant_id, draft.invoice_id)
            documents = [(finalized.invoice, "invoice")]

            if cancel:
                cancelled = finalizer.cancel(tenant_id, finalized.invoice.invoice_id)
                documents.append((cancelled.cancellation, "cancellation"))

            for invoice, document_class in documents:
                package_dir, manifest_hash = write_package(
                    base_dir,
                    tenant_id,
                    invoice.invoice_number,
                    _archive_files(storage, invoice.pdf_url, invoice.xml_url),
                    now=now_provider(),
                    previous_hash=previous_hash,
                    generator_version=version(),
                    document_class=document_class,
                )
                previous_hash = manifest_hash
                results.append(
                    {
                        "scenario": scenario.code,
                        "invoice_id": invoice.invoice_id,
                        "invoice_number": invoice.invoice_number,
                        "document_class": document_class,
                        "total_amount": invoice.to_dict()["total_amount"],
                        "manifest_hash": manifest_hash,
                        "path": str(package_dir),
                    }
                )
                if verbose:
                    print(f"Generated {invoice.invoice_number} -> {manifest_hash}")

    return {"invoices": results, "last_hash": previous_hash}


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate finalized e-invoices from samples")
    parser.add_argument("--tenant", required=True, help="Tenant-ID")
    parser.add_argument("--count", type=int, default=len(SCENARIOS), help="Anzahl Rechnungen")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path.cwd() / "artifacts",
        help="Basisverzeichnis für Datenbank, Storage und Archiv",
    )
    parser.add_argument("--cancel", action="store_true", help="Jede Rechnung zusätzlich stornieren")
    parser.add_argument("--verbose", action="store_true", help="Zusätzliche Logs")
    parser.add_argument(
        "--now",
        help="ISO-8601 Zeitstempel für deterministische Läufe (z. B. 2025-01-01T00:00:00+00:00)",
    )
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    if args.count <= 0:
        raise SystemExit("Count must be positive")
    base_now = _iso_datetime(args.now) if args.now else datetime.now(timezone.utc)

    output = generate_batch(
        tenant_id=args.tenant,
        count=args.count,
        base_dir=args.output_dir,
        now_provider=_make_now_provider(base_now),
        cancel=args.cancel,
        verbose=args.verbose,
    )
    if args.verbose:
        print(json.dumps(output, indent=2))


if __name__ == "__main__":  # pragma: no cover
    main()
