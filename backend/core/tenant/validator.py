from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from backend.core.config import settings

Reason = Literal["missing", "malformed", "unknown", "ok"]


UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


@dataclass
class TenantValidationResult:
    ok: bool
    reason: Reason
    tenant_id: str | None = None


class TenantAllowlist:
    """Tenants allowed to issue invoices.

    - ENV: TENANT_ALLOWLIST (CSV of UUIDs)
    - FILE: TENANT_ALLOWLIST_PATH (JSON list or ``{"tenants": [...]}``)
    - Hot-reload every TENANT_ALLOWLIST_REFRESH_SEC seconds (0 = disabled)

    An empty allowlist admits any well-formed UUID when ``app_env`` is
    ``development``.
    """

    def __init__(
        self,
        *,
        csv: str | None = None,
        path: str | None = None,
        refresh_sec: int | None = None,
        app_env: str | None = None,
    ) -> None:
        self._csv = settings.TENANT_ALLOWLIST if csv is None else csv
        raw_path = (settings.TENANT_ALLOWLIST_PATH if path is None else path).strip()
        self._path: Path | None = Path(raw_path) if raw_path else None
        self._refresh_sec = int(
            settings.TENANT_ALLOWLIST_REFRESH_SEC if refresh_sec is None else refresh_sec
        )
        self._app_env = settings.app_env if app_env is None else app_env
        self._allow: set[str] = set()
        self._mtime: float | None = None
        self._last_load = 0.0
        self._load()

    @property
    def source(self) -> str:
        return "file" if self._path else "env"

    def _read_file(self) -> list[str]:
        if not self._path or not self._path.exists():
            return []
        data = json.loads(self._path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("tenants", [])
        if not isinstance(data, list):
            raise ValueError(f"Tenant allowlist must be a JSON list: {self._path}")
        return [x for x in data if isinstance(x, str)]

    def _read_env(self) -> list[str]:
        return [t for t in (self._csv or "").split(",")]

    def _load(self) -> None:
        entries = self._read_file() if self._path else self._read_env()
        self._allow = {t.strip().lower() for t in entries if UUID_RE.match(t.strip())}
        self._mtime = self._path.stat().st_mtime if self._path and self._path.exists() else None
        self._last_load = time.time()

    def maybe_reload(self) -> None:
        if self._refresh_sec <= 0 or time.time() - self._last_load < self._refresh_sec:
            return
        if self._path is None:
            self._load()
            return
        if self._path.exists() and (not self._mtime or self._path.stat().st_mtime > self._mtime):
            self._load()

    def validate(self, candidate: str | None) -> TenantValidationResult:
        self.maybe_reload()
        if not candidate or not candidate.strip():
            return TenantValidationResult(ok=False, reason="missing")
        tenant_id = candidate.strip().lower()
        if not UUID_RE.match(tenant_id):
            return TenantValidationResult(ok=False, reason="malformed")
        if not self._allow and self._app_env == "development":
            return TenantValidationResult(ok=True, reason="ok", tenant_id=tenant_id)
        if tenant_id not in self._allow:
            return TenantValidationResult(ok=False, reason="unknown")
        return TenantValidationResult(ok=True, reason="ok", tenant_id=tenant_id)

    def info(self) -> tuple[str, int]:
        """(source, count) of the currently loaded allowlist."""
        self.maybe_reload()
        return self.source, len(self._allow)


# Global allowlist instance
allowlist = TenantAllowlist()


def validate_tenant(candidate: str | None) -> TenantValidationResult:
    return allowlist.validate(candidate)
