"""WORM-Light Archivierung finalisierter Belege mit Manifest und Hash-Kette."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Dict, Optional, Tuple

MANIFEST_NAME = "manifest.json"


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _hash_bytes(data: bytes) -> str:
    return sha256(data).hexdigest()


def write_package(
    base_dir: Path,
    tenant_id: str,
    invoice_number: str,
    files: Dict[str, bytes],
    *,
    now: datetime,
    previous_hash: Optional[str],
    generator_version: str,
    document_class: str = "invoice",
) -> Tuple[Path, str]:
    """Schreibt alle Artefakte und ein Manifest; liefert Ordner und Manifest-Hash.

    Ein vorhandenes Paket wird nicht überschrieben.
    """

    package_dir = base_dir / "einvoice" / tenant_id / invoice_number
    if (package_dir / MANIFEST_NAME).exists():
        raise FileExistsError(f"Archive package already exists: {package_dir}")
    package_dir.mkdir(parents=True, exist_ok=True)

    for name, content in sorted(files.items()):
        (package_dir / name).write_bytes(content)

    manifest = {
        "schema_version": "1.0",
        "generator_version": generator_version,
        "tenant_id": tenant_id,
        "invoice_number": invoice_number,
        "document_class": document_class,
        "created_at_utc": _ensure_utc(now).isoformat().replace("+00:00", "Z"),
        "previous_hash": previous_hash,
        "files": {name: _hash_bytes(content) for name, content in sorted(files.items())},
    }

    manifest_bytes = json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")
    (package_dir / MANIFEST_NAME).write_bytes(manifest_bytes)
    return package_dir, _hash_bytes(manifest_bytes)


def verify_package(package_dir: Path) -> bool:
    """Prüft die im Manifest hinterlegten Datei-Hashes."""

    manifest = json.loads((package_dir / MANIFEST_NAME).read_text(encoding="utf-8"))
    for name, expected in manifest["files"].items():
        path = package_dir / name
        if not path.exists() or _hash_bytes(path.read_bytes()) != expected:
            return False
    return True
