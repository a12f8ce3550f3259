"""Arithmetic consistency checks for extracted invoices.

The validator is read-only and never raises for business-rule violations:
every problem is reported as a ValidationIssue so the extraction loop can
decide between retrying, accepting and rejecting.

Tolerances are fixed. They absorb floating-point and rounding drift, not
business flexibility.
"""

import math

from pydantic import BaseModel

from einvoice.invoice.model import CanonicalInvoice

LINE_ITEM_TOLERANCE = 0.02
SUBTOTAL_TOLERANCE = 0.05
TAX_TOLERANCE = 0.05
TOTAL_TOLERANCE = 0.02


class ValidationIssue(BaseModel):
    """Single consistency problem.

    Attributes:
        field: Field path (e.g. ``lineItems[0].totalPrice``)
        message: Human-readable description
        expected: Computed value, when the check is numeric
        actual: Stated value, when the check is numeric
    """

    field: str
    message: str
    expected: float | None = None
    actual: float | None = None


class ExtractionValidationResult(BaseModel):
    """Outcome of validate_extraction."""

    valid: bool
    errors: list[ValidationIssue]


def _is_number(value: float | None) -> bool:
    return value is not None and not math.isnan(value)


def _check_required(invoice: CanonicalInvoice, errors: list[ValidationIssue]) -> None:
    required = (
        ("invoiceNumber", invoice.invoice_number, "Missing invoice number"),
        ("invoiceDate", invoice.invoice_date, "Missing invoice date"),
        ("sellerName", invoice.seller.name, "Missing seller name"),
        ("buyerName", invoice.buyer.name, "Missing buyer name"),
    )
    for field, value, message in required:
        if not (value and value.strip()):
            errors.append(ValidationIssue(field=field, message=message))


def _check_number(field: str, value: float, errors: list[ValidationIssue]) -> bool:
    """Report NaN and negative amounts. Returns True if the value is usable."""
    if math.isnan(value):
        errors.append(ValidationIssue(field=field, message=f"{field} is not a valid number"))
        return False
    if value < 0:
        errors.append(
            ValidationIssue(field=field, message=f"{field} must be non-negative", actual=value)
        )
    return True


def validate_extraction(invoice: CanonicalInvoice) -> ExtractionValidationResult:
    """Check a canonical invoice for arithmetic consistency.

    Args:
        invoice: Invoice to check

    Returns:
        Result with ``valid`` set when no issue was found
    """
    errors: list[ValidationIssue] = []
    _check_required(invoice, errors)

    items = invoice.line_items
    if not items:
        errors.append(ValidationIssue(field="lineItems", message="At least 1 line item required"))
        return ExtractionValidationResult(valid=False, errors=errors)

    totals = invoice.totals
    subtotal_ok = _check_number("subtotal", totals.subtotal, errors)
    tax_ok = _check_number("taxAmount", totals.tax_amount, errors)
    total_ok = _check_number("totalAmount", totals.total_amount, errors)

    lines_ok = True
    for index, item in enumerate(items):
        prefix = f"lineItems[{index}]"
        unit_ok = _check_number(f"{prefix}.unitPrice", item.unit_price, errors)
        line_total_ok = _check_number(f"{prefix}.totalPrice", item.total_price, errors)
        quantity_ok = _is_number(item.quantity)
        if not quantity_ok:
            errors.append(
                ValidationIssue(
                    field=f"{prefix}.quantity", message=f"{prefix}.quantity is not a valid number"
                )
            )
        if not (unit_ok and line_total_ok and quantity_ok):
            lines_ok = False
            continue
        expected = item.unit_price * item.quantity
        if abs(expected - item.total_price) > LINE_ITEM_TOLERANCE:
            errors.append(
                ValidationIssue(
                    field=f"{prefix}.totalPrice",
                    message="unitPrice × quantity ≠ totalPrice",
                    expected=round(expected, 2),
                    actual=item.total_price,
                )
            )

    if lines_ok and subtotal_ok:
        line_sum = sum(item.total_price for item in items)
        if abs(line_sum - totals.subtotal) > SUBTOTAL_TOLERANCE:
            errors.append(
                ValidationIssue(
                    field="subtotal",
                    message="sum(lineItems.totalPrice) ≠ subtotal",
                    expected=round(line_sum, 2),
                    actual=totals.subtotal,
                )
            )

    if tax_ok:
        has_line_rates = any(_is_number(item.tax_rate) and item.tax_rate > 0 for item in items)
        if has_line_rates and lines_ok:
            expected_tax = sum(
                item.total_price * item.tax_rate / 100
                for item in items
                if _is_number(item.tax_rate)
            )
            if abs(expected_tax - totals.tax_amount) > TAX_TOLERANCE * len(items):
                errors.append(
                    ValidationIssue(
                        field="taxAmount",
                        message="sum(lineItems.totalPrice × taxRate / 100) ≠ taxAmount",
                        expected=round(expected_tax, 2),
                        actual=totals.tax_amount,
                    )
                )
        elif not has_line_rates and _is_number(invoice.tax_rate) and subtotal_ok:
            expected_tax = totals.subtotal * invoice.tax_rate / 100
            if abs(expected_tax - totals.tax_amount) > TAX_TOLERANCE:
                errors.append(
                    ValidationIssue(
                        field="taxAmount",
                        message="taxAmount ≠ subtotal × taxRate / 100",
                        expected=round(expected_tax, 2),
                        actual=totals.tax_amount,
                    )
                )

    if subtotal_ok and tax_ok and total_ok:
        expected_total = totals.subtotal + totals.tax_amount
        if abs(expected_total - totals.total_amount) > TOTAL_TOLERANCE:
            errors.append(
                ValidationIssue(
                    field="totalAmount",
                    message="subtotal + taxAmount ≠ totalAmount",
                    expected=round(expected_total, 2),
                    actual=totals.total_amount,
                )
            )

    return ExtractionValidationResult(valid=not errors, errors=errors)
