"""FastAPI application for invoice validation, conversion and extraction jobs.

Endpoints:
- Health, readiness and Prometheus metrics
- Format catalogue with generator and standard versions
- Synchronous validation of extracted data and conversion of canonical invoices
- Queued extraction (single and batch) and conversion, with job status

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import base64
import logging
import time
import uuid
from typing import Any

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from fastapi import (
    Body,
    FastAPI,
    File,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from einvoice.api import metrics
from einvoice.formats.factory import get_generator_factory
from einvoice.formats.service import generate_document
from einvoice.invoice.mapper import to_canonical_invoice
from einvoice.invoice.model import CanonicalInvoice
from einvoice.normalization.normalizer import normalize_extracted_data
from einvoice.queue.tasks import JobStatus, load_job, save_job
from einvoice.shared.config import get_settings
from einvoice.shared.errors import AppError, UnknownFormatError
from einvoice.storage.service import StorageService, source_object_name
from einvoice.validation.validator import ValidationIssue, validate_extraction

logger = logging.getLogger(__name__)

settings = get_settings()
app = FastAPI(
    title="E-Invoice Platform",
    description="Invoice extraction and EN 16931 e-invoice generation API",
    version=settings.service_version,
)

storage_service = StorageService(settings)

ALLOWED_CONTENT_TYPES = {"application/pdf", "image/png", "image/jpeg", "image/webp"}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

_arq_pool: ArqRedis | None = None


async def get_arq_pool() -> ArqRedis:
    """Get (or lazily create) the arq Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    return _arq_pool


def _require_queue() -> None:
    if not settings.queue_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Background queue is not enabled. Set APP_QUEUE_ENABLED=true.",
        )


def _resolve_format(format_id: str | None) -> str:
    """Requested format, or the configured default; unknown IDs raise UnknownFormatError."""
    resolved = format_id or settings.default_output_format
    available = get_generator_factory().get_available_formats()
    if resolved not in available:
        raise UnknownFormatError(resolved, available)
    return resolved


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render application errors as {error, message, details}."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Collect request count and duration by method and endpoint."""
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
    ).inc()
    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    storage: bool | None = None


class FormatInfo(BaseModel):
    """One supported output format."""

    format_id: str
    name: str
    version: str
    spec_version: str
    spec_date: str


class ValidationResponse(BaseModel):
    """Result of validating extracted invoice data."""

    valid: bool
    errors: list[ValidationIssue]
    invoice: CanonicalInvoice


class QueuedJobResponse(BaseModel):
    """A job accepted by the queue."""

    job_id: str
    invoice_id: str | None = None
    status: str = "queued"


class BatchDocument(BaseModel):
    filename: str
    job_id: str
    invoice_id: str


class BatchUploadResponse(BaseModel):
    """Batch accepted by the queue."""

    batch_id: str
    status: str
    total_documents: int
    documents: list[BatchDocument]
    skipped: list[str]


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness probe; reports storage reachability when storage is enabled."""
    if not settings.storage_enabled:
        return ReadinessResponse(ready=True)
    storage_ok = storage_service.health_check()
    return ReadinessResponse(ready=storage_ok, storage=storage_ok)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.get("/api/v1/formats", response_model=list[FormatInfo], tags=["Formats"])
def list_formats() -> list[FormatInfo]:
    """List supported output formats with generator and standard versions."""
    versions = get_generator_factory().get_engine_versions()
    return [
        FormatInfo(format_id=format_id, **info)  # type: ignore[arg-type]
        for format_id, info in versions.items()
    ]


@app.post("/api/v1/invoices/validate", response_model=ValidationResponse, tags=["Invoices"])
def validate_invoice_data(
    data: dict[str, Any] = Body(..., description="Extracted invoice fields"),  # noqa: B008
) -> ValidationResponse:
    """Normalize extracted invoice data and check its arithmetic.

    Accepts the JSON an extraction model produces. Numbers may be strings in
    German or English notation. Never fails on data-quality problems: they are
    listed in ``errors``.
    """
    extracted = normalize_extracted_data(data)
    invoice = to_canonical_invoice(extracted, _resolve_format(None))  # type: ignore[arg-type]
    result = validate_extraction(invoice)
    return ValidationResponse(valid=result.valid, errors=result.errors, invoice=invoice)


@app.post("/api/v1/invoices/convert", tags=["Invoices"])
def convert_invoice(
    invoice: CanonicalInvoice,
    format: str | None = Query(None, description="Output format ID (see /api/v1/formats)"),
) -> Response:
    """Generate an e-invoice from a canonical invoice.

    Returns the XML document, or the PDF/A-3 container for Factur-X. Structural
    findings are reported in the X-Validation-Status header.

    Raises:
        UnknownFormatError: 400 for an unregistered format
        GeneratorSchemaError: 422 when the format's mandatory fields are missing
    """
    result = generate_document(invoice, _resolve_format(format))
    content: bytes | str = result.pdf_content or result.xml_content
    return Response(
        content=content,
        media_type=result.mime_type,
        headers={
            "Content-Disposition": f'attachment; filename="{result.file_name}"',
            "X-Validation-Status": result.validation_status,
        },
    )


async def _read_upload(file: UploadFile) -> bytes:
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No filename provided")
    if file.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type: {file.content_type}. Only PDF and images are supported.",
        )
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit",
        )
    return content


def _source_args(
    invoice_id: str, filename: str, content: bytes, mime_type: str
) -> dict[str, Any]:
    """Job arguments pointing at the source document.

    The document goes to object storage when available; otherwise it travels
    in the job payload.
    """
    if storage_service.is_available():
        object_name = source_object_name(invoice_id, filename)
        if storage_service.upload_bytes(content, object_name, mime_type).success:
            return {"object_name": object_name}
    return {"file_content_b64": base64.b64encode(content).decode("ascii")}


@app.post("/api/v1/invoices/upload", response_model=QueuedJobResponse, tags=["Invoices"])
async def upload_invoice(
    file: UploadFile = File(..., description="PDF, PNG, JPEG or WebP document"),  # noqa: B008
    format: str | None = Query(None, description="Target output format"),
) -> QueuedJobResponse:
    """Queue an invoice document for AI extraction.

    Poll GET /api/v1/jobs/{job_id} for progress.
    """
    _require_queue()
    content = await _read_upload(file)
    metrics.document_upload_size_bytes.observe(len(content))

    invoice_id = str(uuid.uuid4())
    job_id = str(uuid.uuid4())
    output_format = _resolve_format(format)
    pool = await get_arq_pool()

    await save_job(
        pool,
        JobStatus(
            job_id=job_id, kind="extraction", invoice_id=invoice_id, output_format=output_format
        ),
    )
    await pool.enqueue_job(
        "process_extraction",
        job_id=job_id,
        invoice_id=invoice_id,
        mime_type=file.content_type,
        output_format=output_format,
        _job_id=job_id,
        **_source_args(invoice_id, file.filename or "", content, file.content_type or ""),
    )
    metrics.documents_uploaded_total.labels(status="queued").inc()
    logger.info(f"Queued extraction job {job_id} for invoice {invoice_id}")
    return QueuedJobResponse(job_id=job_id, invoice_id=invoice_id)


@app.post("/api/v1/invoices/upload/batch", response_model=BatchUploadResponse, tags=["Invoices"])
async def upload_batch(
    files: list[UploadFile] = File(..., description="Invoice documents"),  # noqa: B008
    format: str | None = Query(None, description="Target output format"),
) -> BatchUploadResponse:
    """Queue several invoice documents as one batch.

    Files with an unsupported type or size are skipped and listed in
    ``skipped``. Poll GET /api/v1/batches/{batch_id} for progress.
    """
    _require_queue()
    pool = await get_arq_pool()
    output_format = _resolve_format(format)

    documents: list[BatchDocument] = []
    items: list[dict[str, Any]] = []
    skipped: list[str] = []
    for file in files:
        try:
            content = await _read_upload(file)
        except HTTPException as e:
            logger.info(f"Skipping {file.filename} in batch: {e.detail}")
            metrics.documents_uploaded_total.labels(status="rejected").inc()
            skipped.append(file.filename or "")
            continue
        metrics.document_upload_size_bytes.observe(len(content))
        invoice_id = str(uuid.uuid4())
        job_id = str(uuid.uuid4())
        documents.append(
            BatchDocument(filename=file.filename or "", job_id=job_id, invoice_id=invoice_id)
        )
        items.append(
            {
                "job_id": job_id,
                "invoice_id": invoice_id,
                "mime_type": file.content_type,
                **_source_args(invoice_id, file.filename or "", content, file.content_type or ""),
            }
        )

    if not items:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No valid documents in batch"
        )

    batch_id = str(uuid.uuid4())
    await save_job(
        pool,
        JobStatus(
            job_id=batch_id,
            kind="batch",
            output_format=output_format,
            children=[item["job_id"] for item in items],
        ),
    )
    await pool.enqueue_job(
        "process_batch",
        batch_id=batch_id,
        items=items,
        output_format=output_format,
        _job_id=batch_id,
    )
    metrics.documents_uploaded_total.labels(status="queued").inc(len(items))
    logger.info(f"Queued batch {batch_id} with {len(items)} document(s)")
    return BatchUploadResponse(
        batch_id=batch_id,
        status="queued",
        total_documents=len(items),
        documents=documents,
        skipped=skipped,
    )


@app.post(
    "/api/v1/invoices/{invoice_id}/convert",
    response_model=QueuedJobResponse,
    tags=["Invoices"],
)
async def queue_conversion(
    invoice_id: str,
    format: str | None = Query(None, description="Output format ID"),
) -> QueuedJobResponse:
    """Queue conversion of a stored (extracted) invoice."""
    _require_queue()
    output_format = _resolve_format(format)

    pool = await get_arq_pool()
    job_id = str(uuid.uuid4())
    await save_job(
        pool,
        JobStatus(
            job_id=job_id, kind="conversion", invoice_id=invoice_id, output_format=output_format
        ),
    )
    await pool.enqueue_job(
        "process_conversion",
        job_id=job_id,
        invoice_id=invoice_id,
        output_format=output_format,
        _job_id=job_id,
    )
    return QueuedJobResponse(job_id=job_id, invoice_id=invoice_id)


@app.get("/api/v1/jobs/{job_id}", response_model=JobStatus, tags=["Jobs"])
async def get_job_status(job_id: str) -> JobStatus:
    """Status, progress and result of a queued job."""
    _require_queue()
    job = await load_job(await get_arq_pool(), job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@app.get("/api/v1/batches/{batch_id}", response_model=JobStatus, tags=["Jobs"])
async def get_batch_status(batch_id: str) -> JobStatus:
    """Status of a batch, including per-document outcome once finished."""
    _require_queue()
    batch = await load_job(await get_arq_pool(), batch_id)
    if batch is None or batch.kind != "batch":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return batch
