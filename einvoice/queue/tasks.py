"""Background jobs for invoice extraction, conversion and batches.

Uses arq (async Redis queue). Job state lives in Redis under ``job:{id}`` so
the API can report progress; progress only ever increases.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import asyncio
import base64
import logging
import time
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from einvoice.api import metrics
from einvoice.extraction.factory import create_extraction_service
from einvoice.extraction.orchestrator import ExtractionOrchestrator
from einvoice.extraction.throttle import TokenBucketThrottle
from einvoice.formats.service import generate_document
from einvoice.invoice.model import CanonicalInvoice, OutputFormat
from einvoice.persistence.optimistic_lock import (
    RecordStore,
    RedisRecordStore,
    update_with_version,
)
from einvoice.shared.config import Settings, get_settings
from einvoice.shared.errors import AppError, NotFoundError
from einvoice.storage.service import StorageService, output_object_name

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400  # 24h
INVOICES_TABLE = "invoices"

JobKind = Literal["extraction", "conversion", "batch"]
JobState = Literal["queued", "processing", "completed", "completed_with_errors", "failed"]
TERMINAL_STATES = {"completed", "completed_with_errors", "failed"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus(BaseModel):
    """State of a background job as stored in Redis.

    Attributes:
        job_id: Unique job identifier
        kind: extraction, conversion or batch
        status: queued, processing, completed, completed_with_errors or failed
        progress: Percentage (0-100), never decreases
        invoice_id: Invoice record the job works on
        output_format: Target format (conversion and batch jobs)
        result: Job-specific result payload once completed
        error: Error message if failed
        children: Child job IDs (batch jobs)
        created_at: Job creation timestamp
        updated_at: Last state change
    """

    job_id: str
    kind: JobKind
    status: JobState = "queued"
    progress: int = 0
    invoice_id: str | None = None
    output_format: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    children: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


async def load_job(redis: Any, job_id: str) -> JobStatus | None:
    raw = await redis.get(job_key(job_id))
    if raw is None:
        return None
    return JobStatus.model_validate_json(raw)


async def save_job(redis: Any, job: JobStatus) -> None:
    job.updated_at = _now()
    await redis.set(job_key(job.job_id), job.model_dump_json(), ex=JOB_TTL_SECONDS)


async def advance(
    redis: Any, job: JobStatus, progress: int, status: JobState | None = None
) -> None:
    """Move a job forward; a lower progress value than the current one is ignored."""
    job.progress = max(job.progress, min(progress, 100))
    if status is not None:
        job.status = status
    await save_job(redis, job)


async def _fail(redis: Any, job: JobStatus, error: Exception) -> dict[str, Any]:
    job.status = "failed"
    job.error = error.message if isinstance(error, AppError) else str(error)
    await save_job(redis, job)
    return job.model_dump()


def _services(ctx: dict[str, Any]) -> tuple[Settings, StorageService, RecordStore]:
    settings: Settings = ctx.get("settings") or get_settings()
    storage: StorageService = ctx.get("storage_service") or StorageService(settings)
    store: RecordStore = ctx.get("record_store") or RedisRecordStore(ctx["redis"])
    return settings, storage, store


async def process_extraction(
    ctx: dict[str, Any],
    job_id: str,
    invoice_id: str,
    mime_type: str,
    object_name: str | None = None,
    file_content_b64: str | None = None,
    output_format: OutputFormat = "xrechnung-cii",
) -> dict[str, Any]:
    """Extract an invoice document into a canonical invoice record.

    Progress: 10 started, 20 source loaded, 30 provider called, 80 extraction
    validated, 100 record saved. Saving is the last step, so a completed job
    always has its record.

    Args:
        ctx: arq context (contains redis connection and shared services)
        job_id: Job identifier
        invoice_id: Record ID to create or update
        mime_type: MIME type of the source document
        object_name: Source object in storage, if uploaded there
        file_content_b64: Source bytes (base64) when storage is disabled
        output_format: Target format recorded on the canonical invoice

    Returns:
        JobStatus as dict
    """
    logger.info(f"Processing extraction job {job_id} for invoice {invoice_id}")
    redis = ctx["redis"]
    settings, storage, store = _services(ctx)
    orchestrator: ExtractionOrchestrator = ctx.get("orchestrator") or ExtractionOrchestrator(
        create_extraction_service(settings)
    )

    job = await load_job(redis, job_id) or JobStatus(
        job_id=job_id, kind="extraction", invoice_id=invoice_id, output_format=output_format
    )
    await advance(redis, job, 10, "processing")

    try:
        if object_name and storage.is_available():
            file_bytes = await asyncio.to_thread(storage.download_bytes, object_name)
        elif file_content_b64:
            file_bytes = base64.b64decode(file_content_b64)
        else:
            raise NotFoundError(f"No source document for invoice {invoice_id}")
        await advance(redis, job, 20)

        await advance(redis, job, 30)
        outcome = await orchestrator.extract_invoice(file_bytes, mime_type, output_format)
        metrics.extraction_attempts_total.labels(provider=outcome.provider).inc(outcome.attempts)
        if not outcome.valid:
            metrics.extraction_validation_failures_total.labels(provider=outcome.provider).inc()
        await advance(redis, job, 80)

        fields = {
            "invoice": outcome.invoice.model_dump(mode="json"),
            "status": "extracted" if outcome.valid else "needs_review",
            "confidence": outcome.confidence,
            "validation_errors": [issue.model_dump() for issue in outcome.validation_errors],
            "source_object": object_name,
        }
        existing = await store.get(INVOICES_TABLE, invoice_id)
        if existing is None:
            record = await store.insert(INVOICES_TABLE, invoice_id, fields)
        else:
            record = await update_with_version(
                store, INVOICES_TABLE, invoice_id, existing["row_version"], fields
            )

        job.result = {
            "invoice_id": invoice_id,
            "valid": outcome.valid,
            "confidence": outcome.confidence,
            "attempts": outcome.attempts,
            "row_version": record["row_version"],
            "validation_errors": fields["validation_errors"],
        }
        await advance(redis, job, 100, "completed")

    except Exception as e:
        logger.exception(f"Extraction job {job_id} failed: {e}")
        return await _fail(redis, job, e)

    logger.info(f"Extraction job {job_id} completed (valid={outcome.valid})")
    return job.model_dump()


async def process_conversion(
    ctx: dict[str, Any],
    job_id: str,
    invoice_id: str,
    output_format: str,
) -> dict[str, Any]:
    """Convert a stored invoice record into an e-invoice document.

    The output is stored first; the record update that points at it is
    written through the optimistic lock, so a concurrent edit of the record
    fails this job instead of being overwritten.

    Returns:
        JobStatus as dict
    """
    logger.info(f"Processing conversion job {job_id}: {invoice_id} -> {output_format}")
    redis = ctx["redis"]
    _, storage, store = _services(ctx)

    job = await load_job(redis, job_id) or JobStatus(
        job_id=job_id, kind="conversion", invoice_id=invoice_id, output_format=output_format
    )
    await advance(redis, job, 10, "processing")

    try:
        record = await store.get(INVOICES_TABLE, invoice_id)
        if record is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        invoice = CanonicalInvoice.model_validate(record["invoice"])
        await advance(redis, job, 30)

        generated = generate_document(invoice, output_format)
        await advance(redis, job, 70)

        payload = generated.pdf_content or generated.xml_content.encode("utf-8")
        stored_as = None
        if storage.is_available():
            object_name = output_object_name(invoice_id, generated.file_name)
            upload = await asyncio.to_thread(
                storage.upload_bytes, payload, object_name, generated.mime_type
            )
            if upload.success:
                stored_as = object_name
        await advance(redis, job, 90)

        conversions = dict(record.get("conversions") or {})
        conversions[output_format] = {
            "file_name": generated.file_name,
            "object_name": stored_as,
            "validation_status": generated.validation_status,
            "validation_errors": generated.validation_errors,
            "validation_warnings": generated.validation_warnings,
            "converted_at": _now(),
        }
        updated = await update_with_version(
            store,
            INVOICES_TABLE,
            invoice_id,
            record["row_version"],
            {"conversions": conversions, "status": "converted"},
        )

        job.result = {
            "invoice_id": invoice_id,
            "format": output_format,
            "file_name": generated.file_name,
            "file_size": generated.file_size,
            "object_name": stored_as,
            "validation_status": generated.validation_status,
            "validation_errors": generated.validation_errors,
            "validation_warnings": generated.validation_warnings,
            "row_version": updated["row_version"],
        }
        await advance(redis, job, 100, "completed")

    except Exception as e:
        logger.exception(f"Conversion job {job_id} failed: {e}")
        return await _fail(redis, job, e)

    return job.model_dump()


async def process_batch(
    ctx: dict[str, Any],
    batch_id: str,
    items: list[dict[str, Any]],
    output_format: OutputFormat = "xrechnung-cii",
) -> dict[str, Any]:
    """Fan out one extraction job per document and schedule the first collection.

    The batch job does not wait for its children. Waiting happens in deferred
    ``collect_batch`` jobs so that a worker slot is never held while children
    are still queued behind it.

    Args:
        ctx: arq context
        batch_id: Batch job identifier
        items: One dict per document with job_id, invoice_id, mime_type and
            object_name or file_content_b64
        output_format: Target format for every invoice

    Returns:
        JobStatus as dict
    """
    logger.info(f"Processing batch {batch_id} with {len(items)} document(s)")
    redis = ctx["redis"]
    settings, _, _ = _services(ctx)

    batch = await load_job(redis, batch_id) or JobStatus(
        job_id=batch_id, kind="batch", output_format=output_format
    )
    batch.children = [item["job_id"] for item in items]
    await advance(redis, batch, 5, "processing")

    for item in items:
        child = JobStatus(
            job_id=item["job_id"],
            kind="extraction",
            invoice_id=item["invoice_id"],
            output_format=output_format,
        )
        await save_job(redis, child)
        await redis.enqueue_job(
            "process_extraction",
            job_id=item["job_id"],
            invoice_id=item["invoice_id"],
            mime_type=item["mime_type"],
            object_name=item.get("object_name"),
            file_content_b64=item.get("file_content_b64"),
            output_format=output_format,
            _job_id=item["job_id"],
        )

    deadline = time.time() + settings.batch_timeout
    await _schedule_collection(redis, batch_id, deadline, 1, settings.batch_poll_interval)
    return batch.model_dump()


async def _schedule_collection(
    redis: Any, batch_id: str, deadline: float, round_number: int, delay: float
) -> None:
    # arq refuses a job ID that is already in use, so every round gets its own
    await redis.enqueue_job(
        "collect_batch",
        batch_id=batch_id,
        deadline=deadline,
        round_number=round_number,
        _job_id=f"{batch_id}:collect:{round_number}",
        _defer_by=delay,
    )


async def collect_batch(
    ctx: dict[str, Any],
    batch_id: str,
    deadline: float,
    round_number: int = 1,
) -> dict[str, Any]:
    """Check a batch's children once and finish it or schedule the next check.

    A child that fails, disappears from Redis or is still unfinished at the
    deadline counts as failed. The batch ends as ``completed`` when all
    children succeeded, otherwise ``completed_with_errors``.

    Args:
        ctx: arq context
        batch_id: Batch job identifier
        deadline: Unix timestamp after which unfinished children are failed
        round_number: How many checks this batch has had, starting at 1

    Returns:
        JobStatus as dict
    """
    redis = ctx["redis"]
    settings, _, _ = _services(ctx)

    batch = await load_job(redis, batch_id)
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found")
    if batch.is_terminal:
        return batch.model_dump()

    states = {job_id: await load_job(redis, job_id) for job_id in batch.children}
    finished = [job for job in states.values() if job is None or job.is_terminal]
    total = len(batch.children) or 1
    await advance(redis, batch, 5 + int(95 * len(finished) / total))

    if len(finished) < len(batch.children) and time.time() < deadline:
        await _schedule_collection(
            redis, batch_id, deadline, round_number + 1, settings.batch_poll_interval
        )
        return batch.model_dump()

    succeeded, failed = [], []
    for job_id, child in states.items():
        if child is not None and child.status == "completed" and child.result:
            succeeded.append(job_id)
        else:
            failed.append(job_id)

    batch.result = {"total": len(batch.children), "succeeded": succeeded, "failed": failed}
    status: JobState = "completed" if not failed else "completed_with_errors"
    await advance(redis, batch, 100, status)
    logger.info(
        f"Batch {batch_id} finished after {round_number} check(s): "
        f"{len(succeeded)} succeeded, {len(failed)} failed"
    )
    return batch.model_dump()


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize shared services once per worker."""
    logger.info("Initializing worker services...")
    settings = get_settings()
    throttle = TokenBucketThrottle(settings.extraction_max_tokens, settings.extraction_refill_rate)
    ctx["settings"] = settings
    ctx["throttle"] = throttle
    ctx["orchestrator"] = ExtractionOrchestrator(create_extraction_service(settings), throttle)
    ctx["storage_service"] = StorageService(settings)
    ctx["record_store"] = RedisRecordStore(ctx["redis"])
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - release throttled callers."""
    logger.info("Worker shutting down...")
    throttle: TokenBucketThrottle | None = ctx.get("throttle")
    if throttle is not None:
        throttle.destroy()


class WorkerSettings:
    """arq worker settings."""

    functions = [process_extraction, process_conversion, process_batch, collect_batch]
    on_startup = startup
    on_shutdown = shutdown

    # Set from configuration in worker.main()
    redis_settings = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> Any:
        """Get Redis settings from configuration."""
        from arq.connections import RedisSettings

        return RedisSettings.from_dsn(get_settings().redis_url)
