"""Batch generator: finalized invoices, cancellations and archive packages."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from einvoice.archive import MANIFEST_NAME, verify_package
from tools.einvoice.generate import _make_now_provider, generate_batch, main

TENANT = "tenant-cli"
BASE_NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_generate_batch_with_cancellations(tmp_path: Path) -> None:
    result = generate_batch(
        tenant_id=TENANT,
        count=2,
        base_dir=tmp_path,
        now_provider=_make_now_provider(BASE_NOW),
        cancel=True,
    )

    entries = result["invoices"]
    assert [e["invoice_number"] for e in entries] == ["INV-0001", "ST-0001", "INV-0002", "ST-0002"]
    assert [e["document_class"] for e in entries] == [
        "invoice",
        "cancellation",
        "invoice",
        "cancellation",
    ]
    assert entries[0]["total_amount"] == "238.00"
    assert entries[1]["total_amount"] == "-238.00"
    assert result["last_hash"] == entries[-1]["manifest_hash"]

    previous = None
    for entry in entries:
        package = Path(entry["path"])
        assert verify_package(package)
        manifest = json.loads((package / MANIFEST_NAME).read_text(encoding="utf-8"))
        assert manifest["previous_hash"] == previous
        assert manifest["tenant_id"] == TENANT
        validation = json.loads((package / "validation.json").read_text(encoding="utf-8"))
        assert validation["ok"] is True
        assert validation["embedded_xml_matches"] is True
        previous = entry["manifest_hash"]


def test_count_larger_than_scenarios_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        generate_batch(
            tenant_id=TENANT,
            count=99,
            base_dir=tmp_path,
            now_provider=_make_now_provider(BASE_NOW),
        )


def test_main_writes_packages(tmp_path: Path) -> None:
    main(
        [
            "--tenant",
            TENANT,
            "--count",
            "1",
            "--output-dir",
            str(tmp_path),
            "--now",
            "2025-01-01T00:00:00+00:00",
        ]
    )

    assert (tmp_path / "einvoice" / TENANT / "INV-0001" / MANIFEST_NAME).exists()
    assert (tmp_path / "einvoice.db").exists()


def test_main_rejects_non_positive_count(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["--tenant", TENANT, "--count", "0", "--output-dir", str(tmp_path)])
