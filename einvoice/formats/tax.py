"""VAT breakdown shared by the format builders."""

from pydantic import BaseModel

from einvoice.invoice.model import CanonicalInvoice, LineItem
from einvoice.invoice.monetary import compute_tax, sum_money


class TaxGroup(BaseModel):
    """Net basis and tax for one VAT rate/category pair."""

    rate: float
    category_code: str
    basis: float
    tax: float


def line_rate(item: LineItem, invoice: CanonicalInvoice) -> float:
    """Effective VAT rate of a line (falls back to the document rate, then 0)."""
    if item.tax_rate is not None:
        return item.tax_rate
    if invoice.tax_rate is not None:
        return invoice.tax_rate
    return 0.0


def line_category(item: LineItem, invoice: CanonicalInvoice) -> str:
    """Effective VAT category of a line (S for positive rates, Z otherwise)."""
    if item.tax_category_code:
        return item.tax_category_code
    return "S" if line_rate(item, invoice) > 0 else "Z"


def group_by_rate(invoice: CanonicalInvoice) -> list[TaxGroup]:
    """Group line totals by VAT rate and category, higher rates first."""
    amounts: dict[tuple[float, str], list[float]] = {}
    for item in invoice.line_items:
        key = (line_rate(item, invoice), line_category(item, invoice))
        amounts.setdefault(key, []).append(item.total_price)

    groups = []
    for (rate, category), totals in amounts.items():
        basis = sum_money(totals)
        groups.append(
            TaxGroup(
                rate=rate,
                category_code=category,
                basis=basis,
                tax=compute_tax(basis, rate) if rate > 0 else 0.0,
            )
        )
    return sorted(groups, key=lambda group: (-group.rate, group.category_code))


def format_rate(rate: float) -> str:
    """Format a VAT percentage (``19`` rather than ``19.0``, ``5.5`` kept)."""
    return f"{rate:.2f}".rstrip("0").rstrip(".")
