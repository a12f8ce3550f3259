"""Abstract base class for extraction providers.

Enables switching between extraction providers (OpenAI, self-hosted Ollama)
behind one interface. Providers declare what they can do through a
capability set; the orchestrator picks the code path from the capabilities,
never from the provider's type.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from einvoice.shared.config import Settings
from einvoice.shared.errors import ExtractionError


class ExtractionCapability(str, Enum):
    """Optional features an extraction provider may support."""

    BASIC = "basic"
    TEXT_ASSISTED = "text_assisted"
    RETRY = "retry"


class ExtractionResult(BaseModel):
    """Result of one provider call.

    Attributes:
        data: Parsed JSON object as returned by the model (not yet normalized)
        raw_output: Raw model response, reused verbatim in retry prompts
        confidence: Model-reported confidence (0-1), if any
        processing_time_ms: Wall time of the provider call
        provider: Name of provider that performed extraction
    """

    data: dict[str, Any]
    raw_output: str
    confidence: float | None = Field(None, ge=0, le=1)
    processing_time_ms: int = 0
    provider: str


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    Calls are synchronous; the orchestrator runs them in a worker thread.
    Failures raise ExtractionError.
    """

    capabilities: frozenset[ExtractionCapability] = frozenset({ExtractionCapability.BASIC})

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    def supports(self, capability: ExtractionCapability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    def extract(self, file_bytes: bytes, mime_type: str) -> ExtractionResult:
        """Extract invoice fields from a document.

        Args:
            file_bytes: Source document (PDF or image)
            mime_type: MIME type of the document

        Returns:
            ExtractionResult with the raw model output

        Raises:
            ExtractionError: If the provider call or JSON parsing fails
        """
        pass

    def extract_with_text(
        self, file_bytes: bytes, mime_type: str, extracted_text: str
    ) -> ExtractionResult:
        """Extract using the document's text layer as additional context.

        Raises:
            ExtractionError: If the provider lacks TEXT_ASSISTED or the call fails
        """
        raise ExtractionError(
            f"Provider '{self.provider_name}' does not support text-assisted extraction"
        )

    def extract_with_retry(
        self, file_bytes: bytes, mime_type: str, retry_prompt: str
    ) -> ExtractionResult:
        """Re-run extraction with a correction prompt.

        Raises:
            ExtractionError: If the provider lacks RETRY or the call fails
        """
        raise ExtractionError(f"Provider '{self.provider_name}' does not support retries")

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics."""
        pass


def reported_confidence(data: dict[str, Any]) -> float | None:
    """Model-reported confidence, if it is a number between 0 and 1."""
    value = data.get("confidence")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value <= 1:
        return float(value)
    return None
