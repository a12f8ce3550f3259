"""Ollama-based extraction provider for self-hosted LLM inference.

Uses a local Ollama server for structured data extraction. Supports data
sovereignty requirements by running entirely on-premises.

Images are passed to vision models through the ``images`` field; PDFs are
only supported together with their text layer (text-assisted extraction).

Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import base64
import logging
import time

import httpx
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


class OllamaExtractionProvider(ExtractionProvider):
    """Ollama-based extraction provider (Qwen2.5, Llama3, Mistral, ...)."""

    capabilities = frozenset(
        {
            ExtractionCapability.BASIC,
            ExtractionCapability.TEXT_ASSISTED,
            ExtractionCapability.RETRY,
        }
    )

    def __init__(self, settings: Settings) -> None:
        """Initialize Ollama extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = httpx.Client(timeout=120.0)  # LLMs can be slow

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except httpx.HTTPError:
            return False

    def extract(self, file_bytes: bytes, mime_type: str) -> ExtractionResult:
        if mime_type == "application/pdf":
            raise ExtractionError(
                "Ollama cannot read PDF files directly; use text-assisted extraction"
            )
        return self._run(build_extraction_prompt(), file_bytes, mime_type)

    def extract_with_text(
        self, file_bytes: bytes, mime_type: str, extracted_text: str
    ) -> ExtractionResult:
        return self._run(build_extraction_prompt(extracted_text), file_bytes, mime_type)

    def extract_with_retry(
        self, file_bytes: bytes, mime_type: str, retry_prompt: str
    ) -> ExtractionResult:
        return self._run(retry_prompt, file_bytes, mime_type)

    def _run(self, prompt: str, file_bytes: bytes, mime_type: str) -> ExtractionResult:
        images = None
        if mime_type.startswith("image/"):
            images = [base64.b64encode(file_bytes).decode("ascii")]

        started = time.perf_counter()
        try:
            raw_output = self._call_ollama_with_retry(prompt, images)
        except httpx.HTTPError as e:
            logger.error(f"Ollama extraction failed: {e}")
            raise ExtractionError(f"Ollama request failed: {e}") from e

        data = parse_json_from_ai_response(raw_output)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"Ollama extraction completed in {elapsed_ms}ms ({self._model})")

        return ExtractionResult(
            data=data,
            raw_output=raw_output,
            confidence=reported_confidence(data),
            processing_time_ms=elapsed_ms,
            provider=self.provider_name,
        )

    @retry(
        retry=retry_if_exception_type((httpx.HTTPError, httpx.TimeoutException)),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_ollama_with_retry(self, prompt: str, images: list[str] | None = None) -> str:
        """Call Ollama API with retry logic for transient errors.

        Args:
            prompt: Extraction prompt for the LLM
            images: Base64-encoded images for vision models

        Returns:
            Raw response text from Ollama

        Raises:
            httpx.HTTPError: After all retry attempts exhausted
        """
        payload = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": 0,
                "num_predict": 4096,
            },
        }
        if images:
            payload["images"] = images
        response = self._client.post(f"{self._base_url}/api/generate", json=payload)
        response.raise_for_status()
        result: str = response.json().get("response", "")
        return result
