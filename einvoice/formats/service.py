"""Single entry point for generating an e-invoice in a given format.

Wraps the generator factory with logging and Prometheus metrics so the API
and the queue workers report conversions the same way.
"""

import logging
import time

from einvoice.api import metrics
from einvoice.formats.base import GenerationResult
from einvoice.formats.factory import GeneratorFactory, get_generator_factory
from einvoice.invoice.model import CanonicalInvoice
from einvoice.shared.errors import GeneratorSchemaError

logger = logging.getLogger(__name__)


def generate_document(
    invoice: CanonicalInvoice,
    format_id: str,
    factory: GeneratorFactory | None = None,
) -> GenerationResult:
    """Generate the e-invoice document for one format.

    Args:
        invoice: Canonical invoice
        format_id: Registered format ID
        factory: Generator factory (defaults to the process-wide one)

    Returns:
        GenerationResult from the format generator

    Raises:
        UnknownFormatError: If the format is not registered
        GeneratorSchemaError: If the invoice lacks fields the format mandates
    """
    generator = (factory or get_generator_factory()).create(format_id)

    started = time.perf_counter()
    try:
        result = generator.generate(invoice)
    except GeneratorSchemaError as e:
        metrics.conversions_total.labels(format=format_id, status="rejected").inc()
        logger.warning(f"Conversion of {invoice.invoice_number} to {format_id} rejected: {e}")
        raise
    finally:
        metrics.generation_duration_seconds.labels(format=format_id).observe(
            time.perf_counter() - started
        )

    metrics.conversions_total.labels(format=format_id, status=result.validation_status).inc()
    if result.validation_errors:
        logger.warning(
            f"{format_id} output for {invoice.invoice_number} failed structural checks: "
            f"{result.validation_errors}"
        )
    return result
