"""Unit tests for extraction consistency validation and retry prompts."""

import math

from einvoice.invoice.model import CanonicalInvoice, DocumentTotals, LineItem
from einvoice.validation.retry_prompt import (
    MAX_EXTRACTION_RETRIES,
    MAX_SOURCE_EXCERPT_CHARS,
    build_retry_prompt,
    should_retry,
)
from einvoice.validation.validator import ValidationIssue, validate_extraction


def _fields(invoice: CanonicalInvoice) -> list[str]:
    return [issue.field for issue in validate_extraction(invoice).errors]


class TestValidateExtraction:
    """Test validate_extraction arithmetic checks."""

    def test_consistent_invoice_is_valid(self, sample_invoice: CanonicalInvoice) -> None:
        """A consistent invoice has no issues."""
        result = validate_extraction(sample_invoice)

        assert result.valid is True
        assert result.errors == []

    def test_missing_required_fields(self, sample_invoice: CanonicalInvoice) -> None:
        """Empty invoice number and buyer name are reported."""
        invoice = sample_invoice.model_copy(
            update={
                "invoice_number": " ",
                "buyer": sample_invoice.buyer.model_copy(update={"name": ""}),
            }
        )

        assert _fields(invoice) == ["invoiceNumber", "buyerName"]

    def test_no_line_items(self, sample_invoice: CanonicalInvoice) -> None:
        """An invoice needs at least one line."""
        invoice = sample_invoice.model_copy(update={"line_items": ()})

        result = validate_extraction(invoice)

        assert result.valid is False
        assert result.errors[-1].field == "lineItems"

    def test_line_total_mismatch(self, sample_invoice: CanonicalInvoice) -> None:
        """unitPrice × quantity must match the line total."""
        line = sample_invoice.line_items[0].model_copy(update={"unit_price": 140.0})
        invoice = sample_invoice.model_copy(
            update={"line_items": (line, sample_invoice.line_items[1])}
        )

        errors = validate_extraction(invoice).errors

        assert errors[0].field == "lineItems[0].totalPrice"
        assert errors[0].expected == 1400.0
        assert errors[0].actual == 1500.0

    def test_line_tolerance(self, sample_invoice: CanonicalInvoice) -> None:
        """Rounding drift of up to 0.02 per line is accepted."""
        line = sample_invoice.line_items[1].model_copy(update={"total_price": 500.02})
        invoice = sample_invoice.model_copy(
            update={
                "line_items": (sample_invoice.line_items[0], line),
                "totals": DocumentTotals(subtotal=2000.02, tax_amount=380.0, total_amount=2380.02),
            }
        )

        assert validate_extraction(invoice).valid is True

    def test_subtotal_mismatch(self, sample_invoice: CanonicalInvoice) -> None:
        """Line totals must add up to the subtotal."""
        invoice = sample_invoice.model_copy(
            update={
                "totals": DocumentTotals(subtotal=1900.0, tax_amount=480.0, total_amount=2380.0)
            }
        )

        assert "subtotal" in _fields(invoice)

    def test_tax_mismatch_uses_line_rates(self, sample_invoice: CanonicalInvoice) -> None:
        """Tax is recomputed from line rates when lines carry them."""
        invoice = sample_invoice.model_copy(
            update={
                "totals": DocumentTotals(subtotal=2000.0, tax_amount=140.0, total_amount=2140.0)
            }
        )

        errors = validate_extraction(invoice).errors

        assert [issue.field for issue in errors] == ["taxAmount"]
        assert errors[0].expected == 380.0

    def test_tax_from_document_rate(self) -> None:
        """Without line rates the document rate is used."""
        invoice = CanonicalInvoice(
            invoice_number="1",
            invoice_date="2024-01-01",
            seller={"name": "S"},
            buyer={"name": "B"},
            line_items=(LineItem(description="x", quantity=1, unit_price=100, total_price=100),),
            totals=DocumentTotals(subtotal=100, tax_amount=7, total_amount=107),
            tax_rate=19.0,
        )

        errors = validate_extraction(invoice).errors

        assert errors[0].message == "taxAmount ≠ subtotal × taxRate / 100"
        assert errors[0].expected == 19.0

    def test_total_mismatch(self, sample_invoice: CanonicalInvoice) -> None:
        """subtotal + tax must equal total."""
        invoice = sample_invoice.model_copy(
            update={
                "totals": DocumentTotals(subtotal=2000.0, tax_amount=380.0, total_amount=2400.0)
            }
        )

        assert _fields(invoice) == ["totalAmount"]

    def test_nan_amounts_reported(self, sample_invoice: CanonicalInvoice) -> None:
        """NaN amounts are flagged instead of used in arithmetic."""
        invoice = sample_invoice.model_copy(
            update={
                "totals": DocumentTotals(subtotal=math.nan, tax_amount=380.0, total_amount=2380.0)
            }
        )

        errors = validate_extraction(invoice).errors

        assert [issue.field for issue in errors] == ["subtotal"]
        assert "not a valid number" in errors[0].message

    def test_negative_amount_reported(self, sample_invoice: CanonicalInvoice) -> None:
        """Negative totals are reported."""
        invoice = sample_invoice.model_copy(
            update={
                "totals": DocumentTotals(subtotal=2000.0, tax_amount=-380.0, total_amount=1620.0)
            }
        )

        assert "taxAmount" in _fields(invoice)

    def test_does_not_mutate_input(self, sample_invoice: CanonicalInvoice) -> None:
        """The validator is read-only."""
        before = sample_invoice.model_dump()

        validate_extraction(sample_invoice)

        assert sample_invoice.model_dump() == before


class TestRetryPrompt:
    """Test build_retry_prompt and should_retry."""

    def test_lists_every_issue(self) -> None:
        """Each issue appears with expected and actual values."""
        errors = [
            ValidationIssue(field="subtotal", message="mismatch", expected=100.0, actual=90.5),
            ValidationIssue(field="invoiceNumber", message="Missing invoice number"),
        ]

        prompt = build_retry_prompt('{"subtotal": 90.5}', errors, attempt=2)

        assert "(attempt 2) failed 2 consistency check(s)" in prompt
        assert "- subtotal: mismatch (expected 100.00, got 90.50)" in prompt
        assert "- invoiceNumber: Missing invoice number" in prompt
        assert '{"subtotal": 90.5}' in prompt
        assert "Return ONLY valid JSON" in prompt

    def test_source_text_truncated(self) -> None:
        """Long source text is cut and marked as truncated."""
        text = "x" * (MAX_SOURCE_EXCERPT_CHARS + 10)

        prompt = build_retry_prompt("{}", [], extracted_text=text)

        assert "SOURCE DOCUMENT TEXT:" in prompt
        assert "[... truncated]" in prompt
        assert "x" * (MAX_SOURCE_EXCERPT_CHARS + 1) not in prompt

    def test_deterministic(self) -> None:
        """Identical inputs give identical prompts."""
        errors = [ValidationIssue(field="totalAmount", message="m", actual=1.0)]

        assert build_retry_prompt("{}", errors) == build_retry_prompt("{}", errors)

    def test_should_retry_budget(self) -> None:
        """Retries stop once the budget is used."""
        assert should_retry(0) is True
        assert should_retry(MAX_EXTRACTION_RETRIES - 1) is True
        assert should_retry(MAX_EXTRACTION_RETRIES) is False
