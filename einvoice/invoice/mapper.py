"""Mapping from normalized extraction data to the canonical invoice."""

import logging
import math

from einvoice.extraction.schema import ExtractedInvoiceData, ExtractedLineItem
from einvoice.invoice.model import (
    CanonicalInvoice,
    DocumentTotals,
    LineItem,
    OutputFormat,
    PartyInfo,
    PaymentInfo,
)
from einvoice.normalization.numbers import is_eu_vat_id

logger = logging.getLogger(__name__)

_TAX_CATEGORIES = {"S", "Z", "E", "AE", "K", "G", "O", "L", "M"}


def _default_category(rate: float | None) -> str | None:
    if rate is None or math.isnan(rate):
        return None
    return "S" if rate > 0 else "Z"


def _map_line_item(item: ExtractedLineItem, document_rate: float | None) -> LineItem:
    quantity = item.quantity if item.quantity else 1.0
    unit_price = item.unit_price if item.unit_price is not None else 0.0
    if item.total_price is not None:
        total_price = item.total_price
    else:
        total_price = round(unit_price * quantity, 2)
    tax_rate = item.tax_rate if item.tax_rate is not None else document_rate
    category = item.tax_category_code if item.tax_category_code in _TAX_CATEGORIES else None
    return LineItem(
        description=item.description,
        quantity=quantity,
        unit_price=unit_price,
        total_price=total_price,
        tax_rate=tax_rate,
        tax_category_code=category or _default_category(tax_rate),
        unit_code=item.unit_code,
    )


def to_canonical_invoice(
    data: ExtractedInvoiceData,
    output_format: OutputFormat = "xrechnung-cii",
) -> CanonicalInvoice:
    """Build a canonical invoice from normalized extraction data.

    A combined seller tax ID is classified as a VAT ID when it carries an EU
    country prefix, otherwise as a local tax number. Parties without an
    electronic address fall back to their email with scheme ``EM``.

    Missing totals become 0; NaN values are kept so the validator can flag
    them.

    Args:
        data: Normalized extraction output
        output_format: Target format for the conversion

    Returns:
        Canonical invoice
    """
    seller_vat_id = data.seller_vat_id
    seller_tax_number = data.seller_tax_number
    if not seller_vat_id and not seller_tax_number and data.seller_tax_id:
        if is_eu_vat_id(data.seller_tax_id):
            seller_vat_id = data.seller_tax_id
        else:
            seller_tax_number = data.seller_tax_id

    buyer_vat_id = data.buyer_vat_id
    buyer_tax_number = None
    if not buyer_vat_id and data.buyer_tax_id:
        if is_eu_vat_id(data.buyer_tax_id):
            buyer_vat_id = data.buyer_tax_id
        else:
            buyer_tax_number = data.buyer_tax_id

    seller = PartyInfo(
        name=data.seller_name or "",
        email=data.seller_email,
        address=data.seller_address,
        city=data.seller_city,
        postal_code=data.seller_postal_code,
        country_code=data.seller_country_code,
        vat_id=seller_vat_id,
        tax_number=seller_tax_number,
        electronic_address=data.seller_electronic_address or data.seller_email,
        electronic_address_scheme=data.seller_electronic_address_scheme
        or ("EM" if data.seller_email and not data.seller_electronic_address else None),
        contact_name=data.seller_contact_name,
        phone=data.seller_phone,
    )
    buyer = PartyInfo(
        name=data.buyer_name or "",
        email=data.buyer_email,
        address=data.buyer_address,
        city=data.buyer_city,
        postal_code=data.buyer_postal_code,
        country_code=data.buyer_country_code,
        vat_id=buyer_vat_id,
        tax_number=buyer_tax_number,
        electronic_address=data.buyer_electronic_address or data.buyer_email,
        electronic_address_scheme=data.buyer_electronic_address_scheme
        or ("EM" if data.buyer_email and not data.buyer_electronic_address else None),
        phone=data.buyer_phone,
    )

    line_items = tuple(_map_line_item(item, data.tax_rate) for item in data.line_items)

    invoice = CanonicalInvoice(
        output_format=output_format,
        invoice_number=data.invoice_number or "",
        invoice_date=data.invoice_date or "",
        document_type_code=data.document_type_code or 380,
        currency=data.currency,
        buyer_reference=data.buyer_reference,
        notes=data.notes,
        seller=seller,
        buyer=buyer,
        payment=PaymentInfo(
            iban=data.seller_iban,
            bic=data.seller_bic,
            payment_terms=data.payment_terms,
            due_date=data.due_date,
        ),
        line_items=line_items,
        totals=DocumentTotals(
            subtotal=data.subtotal if data.subtotal is not None else 0.0,
            tax_amount=data.tax_amount if data.tax_amount is not None else 0.0,
            total_amount=data.total_amount,
        ),
        tax_rate=data.tax_rate,
        confidence=data.confidence,
    )
    logger.debug(
        f"Mapped invoice {invoice.invoice_number!r} to canonical model "
        f"({len(line_items)} lines, format={output_format})"
    )
    return invoice
