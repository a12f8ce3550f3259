"""XML serialization helpers shared by all format generators.

Elements are built with the standard library ElementTree, which escapes
markup characters. Characters that XML 1.0 forbids outright are stripped
before text reaches the tree.
"""

import logging
import re
from xml.etree import ElementTree as ET

from einvoice.invoice.monetary import round_money
from einvoice.shared.errors import ValidationError

logger = logging.getLogger(__name__)

_INVALID_XML_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\uFFFE\uFFFF\uD800-\uDFFF]")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_GERMAN_DATE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$")
_COMPACT_DATE = re.compile(r"^\d{8}$")
_SLASH_DATE = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")


def clean_text(value: object) -> str:
    """Convert a value to text that is legal inside an XML document."""
    if value is None:
        return ""
    return _INVALID_XML_CHARS.sub("", str(value))


def _split_date(value: str) -> tuple[str, str, str]:
    text = value.strip()
    if match := _ISO_DATE.match(text):
        return match.group(1), match.group(2), match.group(3)
    if match := _GERMAN_DATE.match(text):
        day, month, year = match.groups()
        return year, month.zfill(2), day.zfill(2)
    if _COMPACT_DATE.match(text):
        return text[:4], text[4:6], text[6:8]
    if _SLASH_DATE.match(text):
        logger.warning(f"Ambiguous date format rejected: {text}")
        raise ValidationError(
            f'Ambiguous date format "{text}". Use ISO (YYYY-MM-DD) or German (DD.MM.YYYY)',
            details={"date": text},
        )
    logger.warning(f"Unrecognized date format rejected: {text}")
    raise ValidationError(
        f'Unrecognized date format "{text}". Expected YYYY-MM-DD, DD.MM.YYYY, or YYYYMMDD.',
        details={"date": text},
    )


def format_date_iso(value: str | None) -> str:
    """Format a date as YYYY-MM-DD (UBL, FatturaPA, KSeF).

    Args:
        value: Date in YYYY-MM-DD, DD.MM.YYYY or YYYYMMDD form

    Returns:
        ISO date string, or empty string for empty input

    Raises:
        ValidationError: If the date is ambiguous (slash form) or unrecognized
    """
    if not value:
        return ""
    year, month, day = _split_date(value)
    return f"{year}-{month}-{day}"


def format_date_cii(value: str | None) -> str:
    """Format a date as YYYYMMDD (CII date format 102).

    Raises:
        ValidationError: If the date is ambiguous (slash form) or unrecognized
    """
    if not value:
        return ""
    year, month, day = _split_date(value)
    return f"{year}{month}{day}"


def format_amount(amount: float) -> str:
    """Format an amount with exactly 2 decimals."""
    return f"{round_money(amount):.2f}"


def format_quantity(quantity: float) -> str:
    """Format a quantity without trailing zeros (``2`` rather than ``2.0``)."""
    text = f"{quantity:.4f}".rstrip("0").rstrip(".")
    return text or "0"


def sub_element(
    parent: ET.Element,
    tag: str,
    text: object = None,
    attrib: dict[str, str] | None = None,
) -> ET.Element:
    """Append a child element with optional cleaned text."""
    element = ET.SubElement(parent, tag, attrib or {})
    if text is not None:
        element.text = clean_text(text)
    return element


def to_xml_string(root: ET.Element) -> str:
    """Serialize an element tree as indented UTF-8 XML with a declaration."""
    tree = ET.ElementTree(root)
    ET.indent(tree, space="  ")
    body = ET.tostring(root, encoding="unicode")
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}\n'
