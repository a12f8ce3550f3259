"""Extraction pipeline: provider call, normalization, validation, retries.

One run of ExtractionOrchestrator.extract_invoice():
1. Wait for a throttle token, then call the provider in a worker thread
   (text-assisted when the provider supports it and the PDF has a text layer)
2. Normalize the raw JSON and map it onto the canonical invoice
3. Validate the arithmetic; while invalid and the retry budget allows,
   send a correction prompt and repeat steps 2-3
4. An invoice that is still invalid keeps its issues and gets a reduced
   confidence so it is routed to manual review
"""

import asyncio
import logging
import time
from collections.abc import Callable

from pydantic import BaseModel, Field

from einvoice.extraction.base import (
    ExtractionCapability,
    ExtractionProvider,
    ExtractionResult,
)
from einvoice.extraction.schema import ExtractedInvoiceData
from einvoice.extraction.text import extract_pdf_text
from einvoice.extraction.throttle import TokenBucketThrottle
from einvoice.invoice.mapper import to_canonical_invoice
from einvoice.invoice.model import CanonicalInvoice, OutputFormat
from einvoice.normalization.normalizer import normalize_extracted_data
from einvoice.shared.errors import ExtractionError
from einvoice.validation.retry_prompt import build_retry_prompt, should_retry
from einvoice.validation.validator import (
    ExtractionValidationResult,
    ValidationIssue,
    validate_extraction,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
CONFIDENCE_PENALTY = 0.2
MIN_CONFIDENCE = 0.3


class ExtractionOutcome(BaseModel):
    """Final state of an extraction run.

    Attributes:
        invoice: Canonical invoice built from the last attempt
        data: Normalized extraction data of the last attempt
        raw_output: Raw provider output of the last attempt
        valid: Whether the last attempt passed validation
        validation_errors: Issues left after the last attempt
        confidence: Confidence after any penalty
        attempts: Provider calls made (1 + retries)
        provider: Provider name
        processing_time_ms: Total wall time including retries
    """

    invoice: CanonicalInvoice
    data: ExtractedInvoiceData
    raw_output: str
    valid: bool
    validation_errors: list[ValidationIssue] = Field(default_factory=list)
    confidence: float
    attempts: int
    provider: str
    processing_time_ms: int


class ExtractionOrchestrator:
    """Runs the extract-validate-retry loop against one provider."""

    def __init__(
        self,
        provider: ExtractionProvider,
        throttle: TokenBucketThrottle | None = None,
        text_extractor: Callable[[bytes], str] = extract_pdf_text,
    ) -> None:
        self.provider = provider
        self.throttle = throttle
        self._text_extractor = text_extractor

    async def _call(
        self, method: Callable[..., ExtractionResult], *args: object
    ) -> ExtractionResult:
        if self.throttle is not None:
            await self.throttle.acquire()
        return await asyncio.to_thread(method, *args)

    async def _first_attempt(
        self, file_bytes: bytes, mime_type: str
    ) -> tuple[ExtractionResult, str | None]:
        extracted_text = None
        if (
            self.provider.supports(ExtractionCapability.TEXT_ASSISTED)
            and mime_type == "application/pdf"
        ):
            extracted_text = await asyncio.to_thread(self._text_extractor, file_bytes) or None

        if extracted_text:
            logger.info(f"Text-assisted extraction ({len(extracted_text)} chars of PDF text)")
            result = await self._call(
                self.provider.extract_with_text, file_bytes, mime_type, extracted_text
            )
        else:
            result = await self._call(self.provider.extract, file_bytes, mime_type)
        return result, extracted_text

    @staticmethod
    def _evaluate(
        result: ExtractionResult, output_format: OutputFormat
    ) -> tuple[ExtractedInvoiceData, CanonicalInvoice, ExtractionValidationResult]:
        data = normalize_extracted_data(result.data)
        invoice = to_canonical_invoice(data, output_format)
        return data, invoice, validate_extraction(invoice)

    async def extract_invoice(
        self,
        file_bytes: bytes,
        mime_type: str,
        output_format: OutputFormat = "xrechnung-cii",
    ) -> ExtractionOutcome:
        """Extract, validate and (if needed) correct an invoice.

        Args:
            file_bytes: Source document
            mime_type: MIME type of the document
            output_format: Target format recorded on the canonical invoice

        Returns:
            ExtractionOutcome of the last attempt

        Raises:
            ExtractionError: If the first provider call fails
        """
        started = time.perf_counter()
        result, extracted_text = await self._first_attempt(file_bytes, mime_type)
        data, invoice, validation = self._evaluate(result, output_format)
        attempts = 1

        retry = 0
        while (
            not validation.valid
            and should_retry(retry)
            and self.provider.supports(ExtractionCapability.RETRY)
        ):
            retry += 1
            logger.info(
                f"Extraction failed {len(validation.errors)} check(s), "
                f"retry {retry} with {self.provider.provider_name}"
            )
            prompt = build_retry_prompt(
                result.raw_output, validation.errors, extracted_text, attempt=retry
            )
            try:
                retry_result = await self._call(
                    self.provider.extract_with_retry, file_bytes, mime_type, prompt
                )
            except ExtractionError as e:
                logger.warning(f"Retry {retry} failed, keeping previous result: {e}")
                break
            attempts += 1
            result = retry_result
            data, invoice, validation = self._evaluate(result, output_format)

        confidence = data.confidence
        if confidence is None:
            confidence = result.confidence if result.confidence is not None else DEFAULT_CONFIDENCE
        if not validation.valid:
            confidence = max(MIN_CONFIDENCE, confidence - CONFIDENCE_PENALTY)
            logger.warning(
                f"Extraction still invalid after {attempts} attempt(s): "
                f"{[issue.field for issue in validation.errors]}"
            )
        invoice = invoice.model_copy(update={"confidence": confidence})

        return ExtractionOutcome(
            invoice=invoice,
            data=data,
            raw_output=result.raw_output,
            valid=validation.valid,
            validation_errors=validation.errors,
            confidence=confidence,
            attempts=attempts,
            provider=self.provider.provider_name,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )
