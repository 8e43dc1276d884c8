import time
import uuid
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import Response

from backend.apps.invoices.schemas import DocumentLinkOut, DraftIn, StatusIn
from backend.apps.invoices.service import get_finalizer, get_storage
from backend.apps.invoices.storage import FileObjectStorage
from backend.core.config import settings
from backend.core.observability.logging import log_context, logger
from backend.core.observability.metrics import observe_duration
from backend.core.tenant.context import require_tenant
from einvoice.errors import InvoicingError
from einvoice.finalization import InvoiceFinalizer

router = APIRouter(prefix="/api/v1")


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _raise_for(exc: InvoicingError, trace_id: str):
    logger.warning(
        "request_failed",
        extra={"trace_id": trace_id, "error_code": exc.code, "http_status": exc.http_status},
    )
    raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc


def _trace(trace_header: str | None) -> str:
    return trace_header or str(uuid.uuid4())


@router.post("/drafts", status_code=status.HTTP_201_CREATED)
def create_draft(
    body: DraftIn,
    tenant_id: str = Depends(require_tenant),
    finalizer: InvoiceFinalizer = Depends(get_finalizer),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
) -> dict[str, Any]:
    trace_id = _trace(trace_header)
    with log_context(trace_id=trace_id, tenant_id=tenant_id):
        try:
            draft = finalizer.create_draft(tenant_id, body.to_payload())
        except InvoicingError as exc:
            _raise_for(exc, trace_id)
    return draft.to_dict()


@router.patch("/drafts/{draft_id}")
def update_draft(
    draft_id: str,
    body: DraftIn,
    tenant_id: str = Depends(require_tenant),
    finalizer: InvoiceFinalizer = Depends(get_finalizer),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
) -> dict[str, Any]:
    trace_id = _trace(trace_header)
    with log_context(trace_id=trace_id, tenant_id=tenant_id):
        try:
            draft = finalizer.update_draft(tenant_id, draft_id, body.to_payload())
        except InvoicingError as exc:
            _raise_for(exc, trace_id)
    return draft.to_dict()


@router.get("/drafts/{draft_id}/validation")
def validate_draft(
    draft_id: str,
    tenant_id: str = Depends(require_tenant),
    finalizer: InvoiceFinalizer = Depends(get_finalizer),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
) -> dict[str, Any]:
    trace_id = _trace(trace_header)
    with log_context(trace_id=trace_id, tenant_id=tenant_id):
        try:
            result = finalizer.preview(tenant_id, draft_id)
        except InvoicingError as exc:
            _raise_for(exc, trace_id)
    return result.to_dict()


@router.post("/invoices/{draft_id}/finalize")
def finalize_invoice(
    draft_id: str,
    tenant_id: str = Depends(require_tenant),
    finalizer: InvoiceFinalizer = Depends(get_finalizer),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
) -> dict[str, Any]:
    start = time.time()
    trace_id = _trace(trace_header)
    with log_context(trace_id=trace_id, tenant_id=tenant_id):
        try:
            result = finalizer.finalize(tenant_id, draft_id)
        except InvoicingError as exc:
            _raise_for(exc, trace_id)
        finally:
            observe_duration(start, "finalize_request_ms")
    return result.to_dict()


@router.post("/invoices/{invoice_id}/cancel")
def cancel_invoice(
    invoice_id: str,
    tenant_id: str = Depends(require_tenant),
    finalizer: InvoiceFinalizer = Depends(get_finalizer),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
) -> dict[str, Any]:
    start = time.time()
    trace_id = _trace(trace_header)
    with log_context(trace_id=trace_id, tenant_id=tenant_id):
        try:
            result = finalizer.cancel(tenant_id, invoice_id)
        except InvoicingError as exc:
            _raise_for(exc, trace_id)
        finally:
            observe_duration(start, "cancel_request_ms")
    return result.to_dict()


@router.post("/invoices/{invoice_id}/status")
def update_invoice_status(
    invoice_id: str,
    body: StatusIn,
    tenant_id: str = Depends(require_tenant),
    finalizer: InvoiceFinalizer = Depends(get_finalizer),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
) -> dict[str, Any]:
    trace_id = _trace(trace_header)
    with log_context(trace_id=trace_id, tenant_id=tenant_id):
        try:
            invoice = finalizer.update_status(tenant_id, invoice_id, body.status)
        except InvoicingError as exc:
            _raise_for(exc, trace_id)
    return invoice.to_dict()


@router.get("/invoices/{invoice_id}")
def get_invoice(
    invoice_id: str,
    tenant_id: str = Depends(require_tenant),
    finalizer: InvoiceFinalizer = Depends(get_finalizer),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
) -> dict[str, Any]:
    trace_id = _trace(trace_header)
    with log_context(trace_id=trace_id, tenant_id=tenant_id):
        try:
            invoice = finalizer.get(tenant_id, invoice_id)
        except InvoicingError as exc:
            _raise_for(exc, trace_id)
    data = invoice.to_dict()
    data["is_overdue"] = finalizer.is_overdue(invoice)
    return data


@router.get("/invoices/{invoice_id}/pdf", response_model=DocumentLinkOut)
def get_invoice_pdf(
    invoice_id: str,
    tenant_id: str = Depends(require_tenant),
    finalizer: InvoiceFinalizer = Depends(get_finalizer),
    storage: FileObjectStorage = Depends(get_storage),
    ttl: int | None = Query(None, ge=60, le=7 * 24 * 3600),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
):
    trace_id = _trace(trace_header)
    with log_context(trace_id=trace_id, tenant_id=tenant_id):
        try:
            invoice = finalizer.get(tenant_id, invoice_id)
        except InvoicingError as exc:
            _raise_for(exc, trace_id)
        if not invoice.pdf_url or not invoice.invoice_number:
            _error(status.HTTP_404_NOT_FOUND, "document_not_found", "Invoice has no PDF yet")
        expires_in = ttl or settings.PRESIGN_DEFAULT_TTL_SEC
        url = storage.presign(invoice.pdf_url, expires_in)
        logger.info("document_presigned", extra={"trace_id": trace_id, "invoice_id": invoice_id})
    return DocumentLinkOut(
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        url=url,
        expires_in=expires_in,
    )


@router.get("/files/{key:path}")
def download_file(
    key: str,
    request: Request,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: FileObjectStorage = Depends(get_storage),
):
    """Serve a stored document for a valid presigned link."""
    if not storage.verify(key, expires, signature):
        _error(status.HTTP_403_FORBIDDEN, "invalid_signature", "Link invalid or expired")
    try:
        data = storage.get(key)
    except InvoicingError:
        _error(status.HTTP_404_NOT_FOUND, "document_not_found", "Document not found")
    media_type = "application/pdf" if key.endswith(".pdf") else "application/xml"
    client = request.client.host if request.client else ""
    logger.info("document_downloaded", extra={"storage_key": key, "client": client})
    return Response(content=data, media_type=media_type)
