import inspect
import json
import socket
import warnings
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
from sqlalchemy import MetaData, create_engine

from backend.apps.invoices.repository import SqlPartySource, get_tables
from backend.apps.invoices.service import build_finalizer
from backend.apps.invoices.storage import FileObjectStorage
from backend.core.observability.metrics import reset_metrics
from einvoice.finalization import FinalizationConfig
from einvoice.numbering import SequenceAllocator
from einvoice.samples import (
    build_sample_buyer,
    build_sample_company,
    build_sample_issuer_contact,
)

VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
REPORT = ARTIFACTS_DIR / "egress-violations.json"

TENANT_ID = "11111111-1111-1111-1111-111111111111"
OTHER_TENANT_ID = "22222222-2222-2222-2222-222222222222"
FIXED_NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
PRESIGN_NOW = 1_740_819_600

warnings.filterwarnings(
    "ignore",
    message="Please use `import python_multipart` instead.",
    category=PendingDeprecationWarning,
)


def _is_allowed_callstack(allowed_paths: list[str]) -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        for ap in allowed_paths:
            if ap in filename:
                return True
    return False


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    allowed_client_paths = ["/tests/"]

    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_httpx_init = httpx.Client.__init__

    def guard_getaddrinfo(host, *args, **kwargs):
        if _is_allowed_callstack(allowed_client_paths):
            return real_getaddrinfo(host, *args, **kwargs)
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host)})
        raise RuntimeError("Egress blocked: getaddrinfo disallowed")

    def guard_create_connection(address, *args, **kwargs):
        if _is_allowed_callstack(allowed_client_paths):
            return real_create_connection(address, *args, **kwargs)
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    def guard_httpx_init(self, *args, **kwargs):
        if not _is_allowed_callstack(allowed_client_paths):
            VIOLATIONS.append({"fn": "httpx.Client.__init__"})
            raise RuntimeError("Egress blocked: httpx.Client not allowed from this callsite")
        return real_httpx_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_httpx_init  # type: ignore[assignment]

    yield

    # Restore
    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_httpx_init  # type: ignore[assignment]

    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def tenant_id() -> str:
    return TENANT_ID


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def db(tmp_path):
    """(engine, tables) on a fresh SQLite file."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'einvoice.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    metadata = MetaData()
    tables = get_tables(metadata)
    metadata.create_all(engine)
    yield engine, tables
    engine.dispose()


@pytest.fixture
def storage(tmp_path) -> FileObjectStorage:
    return FileObjectStorage(
        f"file://{tmp_path / 'storage'}",
        public_base_url="http://testserver/api/v1/files",
        hmac_key="test-presign-key",
        default_ttl_seconds=600,
        clock=lambda: PRESIGN_NOW,
    )


@pytest.fixture
def allocator(db, clock) -> SequenceAllocator:
    engine, tables = db
    return SequenceAllocator(engine, tables.sequence_counters, clock=clock)


@pytest.fixture
def parties(db, tenant_id) -> SqlPartySource:
    """Sample company (INV/ST), buyer contact and an issuing contact (AS/AS-ST)."""
    engine, tables = db
    source = SqlPartySource(engine, tables)
    source.save_company(build_sample_company(tenant_id))
    source.save_contact(build_sample_buyer(tenant_id))
    source.save_contact(build_sample_issuer_contact(tenant_id))
    return source


@pytest.fixture
def finalizer(db, storage, parties, clock):
    engine, tables = db
    return build_finalizer(
        engine,
        storage,
        tables=tables,
        config=FinalizationConfig(upload_retries=1, workers=2),
        clock=clock,
    )
