"""Corrective prompts for re-extraction after failed validation.

Formatting only: whether a retry happens at all is decided by should_retry,
purely by attempt count.
"""

from collections.abc import Sequence

from einvoice.validation.validator import ValidationIssue

MAX_EXTRACTION_RETRIES = 2
MAX_SOURCE_EXCERPT_CHARS = 4000


def _format_number(value: float) -> str:
    return f"{value:.2f}"


def _format_issue(issue: ValidationIssue) -> str:
    line = f"- {issue.field}: {issue.message}"
    if issue.expected is not None and issue.actual is not None:
        line += (
            f" (expected {_format_number(issue.expected)}, got {_format_number(issue.actual)})"
        )
    elif issue.expected is not None:
        line += f" (expected {_format_number(issue.expected)})"
    elif issue.actual is not None:
        line += f" (got {_format_number(issue.actual)})"
    return line


def build_retry_prompt(
    original_output: str,
    validation_errors: Sequence[ValidationIssue],
    extracted_text: str | None = None,
    attempt: int = 1,
) -> str:
    """Build a correction instruction for the extraction provider.

    Args:
        original_output: Raw provider output from the previous attempt
        validation_errors: Issues reported by the validator
        extracted_text: Optional source text for cross-reference
        attempt: Number of the retry being requested (1-based)

    Returns:
        Prompt text; identical inputs always give identical output
    """
    sections = [
        f"Your previous invoice extraction (attempt {attempt}) failed "
        f"{len(validation_errors)} consistency check(s):",
        "\n".join(_format_issue(issue) for issue in validation_errors),
        "PREVIOUS OUTPUT:",
        original_output,
    ]

    if extracted_text:
        excerpt = extracted_text[:MAX_SOURCE_EXCERPT_CHARS]
        if len(extracted_text) > MAX_SOURCE_EXCERPT_CHARS:
            excerpt += "\n[... truncated]"
        sections.extend(["SOURCE DOCUMENT TEXT:", excerpt])

    sections.append(
        "Re-read the document and correct the fields above. Check that every line "
        "totalPrice equals unitPrice × quantity, that the line totals add up to the "
        "subtotal, and that subtotal + taxAmount equals totalAmount. Return ONLY valid "
        "JSON with the same schema as before, with no explanation and no markdown."
    )
    return "\n\n".join(sections)


def should_retry(attempt: int) -> bool:
    """Decide whether another extraction attempt is allowed.

    Args:
        attempt: Number of retries already performed

    Returns:
        True while the retry budget is not exhausted
    """
    return attempt < MAX_EXTRACTION_RETRIES
