"""Normalization of raw provider output into ExtractedInvoiceData.

Providers disagree on key casing and number formatting. This module maps
camelCase or snake_case keys onto the extraction schema and runs every
numeric field through the locale-aware parser.
"""

import logging
import math
import re
from typing import Any

from einvoice.extraction.schema import ExtractedInvoiceData, ExtractedLineItem
from einvoice.normalization.numbers import normalize_iban, normalize_tax_rate, parse_number

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_STRING_FIELDS = (
    "invoice_number",
    "invoice_date",
    "due_date",
    "buyer_reference",
    "seller_name",
    "seller_email",
    "seller_address",
    "seller_city",
    "seller_postal_code",
    "seller_country_code",
    "seller_tax_id",
    "seller_vat_id",
    "seller_tax_number",
    "seller_phone",
    "seller_contact_name",
    "seller_electronic_address",
    "seller_electronic_address_scheme",
    "seller_bic",
    "buyer_name",
    "buyer_email",
    "buyer_address",
    "buyer_city",
    "buyer_postal_code",
    "buyer_country_code",
    "buyer_vat_id",
    "buyer_tax_id",
    "buyer_phone",
    "buyer_electronic_address",
    "buyer_electronic_address_scheme",
    "payment_terms",
    "notes",
)

_UPPERCASE_FIELDS = ("seller_country_code", "buyer_country_code", "seller_bic")

# Common provider spellings that differ from the schema beyond casing
_KEY_ALIASES = {
    "seller_phone_number": "seller_phone",
    "payment_due_date": "due_date",
    "vat_rate": "tax_rate",
    "leitweg_id": "buyer_reference",
}


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _snake_keys(data: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in data.items():
        snake = _snake(key)
        result[_KEY_ALIASES.get(snake, snake)] = value
    return result


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (list, dict)):
        return None
    text = str(value).strip()
    return text or None


def _optional_number(value: Any) -> float | None:
    """Parse a numeric field, keeping NaN for present-but-unparseable values."""
    if value is None:
        return None
    if isinstance(value, list):
        return None
    return parse_number(value)


def _optional_rate(value: Any) -> float | None:
    if value is None or isinstance(value, list):
        return None
    return normalize_tax_rate(value)


def _normalize_line_item(raw: Any) -> ExtractedLineItem:
    item = _snake_keys(raw) if isinstance(raw, dict) else {}
    tax_rate = _optional_rate(item.get("tax_rate", item.get("vat_rate")))
    return ExtractedLineItem(
        description=_text(item.get("description")) or _text(item.get("name")) or "",
        quantity=_optional_number(item.get("quantity")),
        unit_price=_optional_number(item.get("unit_price")),
        total_price=_optional_number(item.get("total_price", item.get("line_total"))),
        tax_rate=None if tax_rate is not None and math.isnan(tax_rate) else tax_rate,
        tax_category_code=_text(item.get("tax_category_code")),
        unit_code=_text(item.get("unit_code")),
    )


def normalize_extracted_data(raw: dict[str, Any]) -> ExtractedInvoiceData:
    """Normalize raw provider output.

    Every monetary and line-item numeric field goes through ``parse_number``.
    An unparseable ``total_amount`` is replaced with 0 so NaN never reaches
    persisted data; the validator then reports the total mismatch. All other
    unparseable numbers stay NaN. Scalars that arrive as lists (a provider
    reporting ``[19, 7]`` for a mixed-rate document) become None.

    Args:
        raw: Provider output with camelCase or snake_case keys

    Returns:
        Normalized extraction data
    """
    data = _snake_keys(raw)

    fields: dict[str, Any] = {name: _text(data.get(name)) for name in _STRING_FIELDS}
    for name in _UPPERCASE_FIELDS:
        if fields[name]:
            fields[name] = fields[name].upper()

    raw_items = data.get("line_items")
    if not isinstance(raw_items, list):
        raw_items = data.get("items") if isinstance(data.get("items"), list) else []
    line_items = [_normalize_line_item(item) for item in raw_items]

    total_amount = _optional_number(data.get("total_amount"))
    if total_amount is None or math.isnan(total_amount):
        logger.warning(
            f"Unparseable total amount {data.get('total_amount')!r}, defaulting to 0"
        )
        total_amount = 0.0

    subtotal = _optional_number(data.get("subtotal"))
    tax_amount = _optional_number(data.get("tax_amount"))
    tax_rate = _optional_rate(data.get("tax_rate"))
    if tax_rate is not None and math.isnan(tax_rate):
        logger.info(f"Discarding implausible document tax rate {data.get('tax_rate')!r}")
        tax_rate = None

    if tax_amount is None and subtotal is not None and not math.isnan(subtotal):
        if total_amount > subtotal:
            tax_amount = round(total_amount - subtotal, 2)
            logger.info(f"Derived missing tax amount {tax_amount} from totals")

    document_type_code = _optional_number(data.get("document_type_code"))
    confidence = _optional_number(data.get("confidence"))

    return ExtractedInvoiceData(
        **fields,
        document_type_code=(
            int(document_type_code)
            if document_type_code is not None and not math.isnan(document_type_code)
            else None
        ),
        seller_iban=normalize_iban(data.get("seller_iban") or data.get("iban")),
        line_items=line_items,
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        total_amount=total_amount,
        currency=(_text(data.get("currency")) or "EUR").upper(),
        confidence=(
            confidence if confidence is not None and not math.isnan(confidence) else None
        ),
    )
