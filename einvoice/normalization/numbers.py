"""Locale-aware parsing of numbers and identifiers from AI extraction output.

Providers return amounts the way they appear on the document, so the same
field may arrive as ``1234.56``, ``"1.234,56"`` or ``"1,234.56"``. Parsers in
this module never pick a business default: anything unparseable becomes NaN
and the caller decides what to do with it.

The separator heuristic cannot tell a thousands-grouped integer such as
``"1.234"`` from a decimal. A lone dot is always read as a decimal point;
several dots separating 3-digit groups are thousands separators.
"""

import json
import logging
import math
import re
from typing import Any

from einvoice.shared.errors import ExtractionError

logger = logging.getLogger(__name__)

_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")
_COMMA_DECIMAL_TAIL = re.compile(r",\d{1,2}$")
_DOT_GROUPED = re.compile(r"^-?\d{1,3}(\.\d{3})+$")
_IBAN = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]+$")
_EU_VAT = re.compile(
    r"^(AT|BE|BG|CY|CZ|DE|DK|EE|EL|ES|FI|FR|HR|HU|IE|IT|LT|LU|LV|MT|NL|PL|PT|RO|SE|SI|SK|XI)"
    r"[A-Z0-9]{2,13}$"
)
_JSON_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

MAX_TAX_RATE = 30.0


def parse_number(value: Any) -> float:
    """Parse a possibly locale-formatted number.

    Args:
        value: Number, numeric string, or None

    Returns:
        Parsed value, or NaN when the input is empty or not numeric

    Example:
        >>> parse_number("1.234.567,89")
        1234567.89
    """
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return math.nan

    text = value.strip().replace(" ", "")
    if not text:
        return math.nan

    last_dot = text.rfind(".")
    last_comma = text.rfind(",")

    if last_dot >= 0 and last_comma >= 0:
        if last_comma > last_dot:
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif last_comma >= 0:
        if text.count(",") == 1 and _COMMA_DECIMAL_TAIL.search(text):
            text = text.replace(",", ".")
        else:
            text = text.replace(",", "")
    elif text.count(".") > 1 and _DOT_GROUPED.match(text):
        text = text.replace(".", "")

    if not _NUMERIC.match(text):
        return math.nan
    return float(text)


def normalize_tax_rate(value: Any) -> float:
    """Parse a VAT rate into percent.

    Fractions between 0 and 1 are scaled to percent (``0.19`` becomes ``19``).
    Rates above 30% or below zero are not plausible VAT rates.

    Returns:
        Rate in percent, or NaN when unparseable or implausible
    """
    rate = parse_number(value)
    if math.isnan(rate):
        return rate
    if 0 < rate < 1:
        rate = round(rate * 100, 4)
    if rate < 0 or rate > MAX_TAX_RATE:
        return math.nan
    return rate


def normalize_iban(value: Any) -> str | None:
    """Strip whitespace and uppercase an IBAN.

    Structurally invalid IBANs are logged and returned anyway so that a
    reviewer can correct them.
    """
    if not isinstance(value, str):
        return None
    iban = re.sub(r"\s+", "", value).upper()
    if not iban:
        return None
    if not (_IBAN.match(iban) and 15 <= len(iban) <= 34):
        logger.warning(f"Extracted IBAN has invalid structure: {iban[:4]}...")
    return iban


def is_eu_vat_id(value: str | None) -> bool:
    """Check whether a tax identifier looks like an EU VAT ID."""
    if not value:
        return False
    return bool(_EU_VAT.match(re.sub(r"[\s.-]", "", value).upper()))


def _extract_balanced_object(text: str) -> str | None:
    start = text.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_from_ai_response(response_text: str) -> dict[str, Any]:
    """Extract and parse a JSON object from an LLM response.

    Handles common LLM quirks like markdown code blocks and prose around the
    object.

    Args:
        response_text: Raw LLM response

    Returns:
        Parsed JSON dict

    Raises:
        ExtractionError: If no JSON object can be recovered
    """
    candidates = [response_text.strip()]
    if block := _JSON_BLOCK.search(response_text):
        candidates.append(block.group(1).strip())
    if balanced := _extract_balanced_object(response_text):
        candidates.append(balanced)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise ExtractionError(
        "Provider response did not contain a JSON object",
        details={"response_preview": response_text[:200]},
    )
