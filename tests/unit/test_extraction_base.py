"""Unit tests for extraction base classes and interfaces.

Tests cover:
- Abstract base class enforcement
- Capability defaults
- Model-reported confidence
- PDF text layer helpers
"""

import pytest
from fpdf import FPDF

from einvoice.extraction.base import (
    ExtractionCapability,
    ExtractionProvider,
    ExtractionResult,
    reported_confidence,
)
from einvoice.extraction.text import extract_pdf_text, looks_like_pdf
from einvoice.shared.config import Settings
from einvoice.shared.errors import ExtractionError


class BasicProvider(ExtractionProvider):
    """Provider with only the default capability."""

    def extract(self, file_bytes: bytes, mime_type: str) -> ExtractionResult:
        return ExtractionResult(data={}, raw_output="{}", provider="basic")

    def is_available(self) -> bool:
        return True

    @property
    def provider_name(self) -> str:
        return "basic"


def test_extraction_provider_is_abstract() -> None:
    """Test that ExtractionProvider cannot be instantiated directly."""
    with pytest.raises(TypeError, match="Can't instantiate abstract class"):
        ExtractionProvider(Settings())  # type: ignore[abstract]


def test_extraction_provider_requires_implementation() -> None:
    """Concrete providers must implement provider_name."""

    class IncompleteProvider(ExtractionProvider):
        def extract(self, file_bytes: bytes, mime_type: str) -> ExtractionResult:
            return ExtractionResult(data={}, raw_output="", provider="incomplete")

        def is_available(self) -> bool:
            return True

    with pytest.raises(TypeError, match="Can't instantiate abstract class"):
        IncompleteProvider(Settings())  # type: ignore[abstract]


def test_default_capabilities() -> None:
    """Providers support BASIC only unless they declare more."""
    provider = BasicProvider(Settings())

    assert provider.supports(ExtractionCapability.BASIC)
    assert not provider.supports(ExtractionCapability.TEXT_ASSISTED)
    assert not provider.supports(ExtractionCapability.RETRY)


def test_unsupported_optional_calls_raise() -> None:
    """Text-assisted and retry calls fail on a basic provider."""
    provider = BasicProvider(Settings())

    with pytest.raises(ExtractionError, match="text-assisted"):
        provider.extract_with_text(b"%PDF", "application/pdf", "text")
    with pytest.raises(ExtractionError, match="retries"):
        provider.extract_with_retry(b"%PDF", "application/pdf", "prompt")


def test_extraction_result_confidence_bounds() -> None:
    """Confidence outside 0-1 is rejected."""
    with pytest.raises(ValueError):
        ExtractionResult(data={}, raw_output="", confidence=1.5, provider="x")


@pytest.mark.parametrize(
    "data,expected",
    [
        ({"confidence": 0.9}, 0.9),
        ({"confidence": 1}, 1.0),
        ({"confidence": 1.2}, None),
        ({"confidence": "0.9"}, None),
        ({"confidence": True}, None),
        ({}, None),
    ],
)
def test_reported_confidence(data: dict, expected: float | None) -> None:
    """Only numbers between 0 and 1 count as a reported confidence."""
    assert reported_confidence(data) == expected


class TestPdfText:
    """Test the PDF text layer helpers."""

    def test_looks_like_pdf(self) -> None:
        """Magic bytes are found after a BOM and whitespace."""
        assert looks_like_pdf(b"%PDF-1.7")
        assert looks_like_pdf(b"\xef\xbb\xbf \n%PDF-1.4")
        assert not looks_like_pdf(b"\x89PNG")
        assert not looks_like_pdf(b"")

    def test_extract_text_from_born_digital_pdf(self) -> None:
        """Text drawn into the PDF is returned."""
        pdf = FPDF()
        pdf.add_page()
        pdf.set_font("Helvetica", size=12)
        pdf.cell(text="Rechnung RE-2024-001")

        assert "RE-2024-001" in extract_pdf_text(bytes(pdf.output()))

    def test_non_pdf_returns_empty(self) -> None:
        """Images have no text layer."""
        assert extract_pdf_text(b"\x89PNG data") == ""

