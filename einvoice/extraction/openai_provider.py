"""OpenAI-based extraction provider for invoice field extraction.

Sends the document itself (PDF as a file part, images as a data URL) to a
vision-capable chat model and asks for a JSON object.

Includes retry logic with exponential backoff for transient API errors.
"""

import base64
import logging
import os
import time
from typing import Any

from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from einvoice.extraction.base import (
    ExtractionCapability,
    ExtractionProvider,
    ExtractionResult,
    reported_confidence,
)
from einvoice.extraction.prompts import build_extraction_prompt
from einvoice.normalization.numbers import parse_json_from_ai_response
from einvoice.shared.config import Settings
from einvoice.shared.errors import ExtractionError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an invoice data extraction assistant. You reply with JSON only."


def document_content_part(file_bytes: bytes, mime_type: str) -> dict[str, Any]:
    """Chat content part carrying the document."""
    encoded = base64.b64encode(file_bytes).decode("ascii")
    data_url = f"data:{mime_type};base64,{encoded}"
    if mime_type == "application/pdf":
        return {"type": "file", "file": {"filename": "invoice.pdf", "file_data": data_url}}
    return {"type": "image_url", "image_url": {"url": data_url}}


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider.

    Requires OPENAI_API_KEY environment variable.
    """

    capabilities = frozenset(
        {
            ExtractionCapability.BASIC,
            ExtractionCapability.TEXT_ASSISTED,
            ExtractionCapability.RETRY,
        }
    )

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None
        self._model = settings.openai_model

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def extract(self, file_bytes: bytes, mime_type: str) -> ExtractionResult:
        return self._run(file_bytes, mime_type, build_extraction_prompt())

    def extract_with_text(
        self, file_bytes: bytes, mime_type: str, extracted_text: str
    ) -> ExtractionResult:
        return self._run(file_bytes, mime_type, build_extraction_prompt(extracted_text))

    def extract_with_retry(
        self, file_bytes: bytes, mime_type: str, retry_prompt: str
    ) -> ExtractionResult:
        return self._run(file_bytes, mime_type, retry_prompt)

    def _run(self, file_bytes: bytes, mime_type: str, prompt: str) -> ExtractionResult:
        """Call the model and parse its JSON answer.

        Raises:
            ExtractionError: If the key is missing, the API fails or no JSON is returned
        """
        if not self.is_available():
            raise ExtractionError("OPENAI_API_KEY environment variable not set")
        if not file_bytes:
            raise ExtractionError("Empty document provided")

        api_key = os.getenv("OPENAI_API_KEY")
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(api_key=api_key)

        started = time.perf_counter()
        try:
            response = self._call_openai_with_retry(prompt, file_bytes, mime_type)
        except APIError as e:
            logger.error(f"OpenAI extraction failed: {e}")
            raise ExtractionError(f"OpenAI request failed: {e}") from e

        raw_output = response.choices[0].message.content or ""
        data = parse_json_from_ai_response(raw_output)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"OpenAI extraction completed in {elapsed_ms}ms ({self._model})")

        return ExtractionResult(
            data=data,
            raw_output=raw_output,
            confidence=reported_confidence(data),
            processing_time_ms=elapsed_ms,
            provider=self.provider_name,
        )

    @retry(
        retry=retry_if_exception_type(
            (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)
        ),
        wait=wait_exponential_jitter(initial=1, max=60),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_openai_with_retry(self, prompt: str, file_bytes: bytes, mime_type: str) -> Any:
        """Call OpenAI API with retry logic for transient errors.

        Retries up to 3 times with exponential backoff and jitter (max 60s).
        """
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        return self._client.chat.completions.create(  # type: ignore[call-overload]
            model=self._model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        document_content_part(file_bytes, mime_type),
                    ],
                },
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )

