"""Abstract base class for e-invoice format generators.

Each output standard is a FormatGenerator driven by a FormatDescriptor. The
descriptor holds the data that differs between formats: identifiers, the
canonical fields the format mandates, and the elements a structurally sound
document must contain. Adding a format means registering a new descriptor
and, where the syntax is new, a builder.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Literal
from xml.etree import ElementTree as ET

from pydantic import BaseModel, ConfigDict, Field

from einvoice.invoice.model import CanonicalInvoice
from einvoice.shared.errors import GeneratorSchemaError

logger = logging.getLogger(__name__)


class FormatDescriptor(BaseModel):
    """Static description of one output format.

    Attributes:
        format_id: Registry key (e.g. 'xrechnung-cii')
        format_name: Human-readable name
        version: Version of this generator implementation
        spec_version: Version of the targeted standard
        spec_date: Release date of the targeted standard
        file_suffix: Suffix used in generated file names
        required_fields: Canonical field paths the format mandates;
            'a|b' is satisfied by either path
        required_elements: Element local names a valid document contains
        customization_id: Guideline / CustomizationID / SpecificationID
        profile_id: Business process / ProfileID, if the format uses one
        conformance_level: Factur-X conformance level, if applicable
    """

    model_config = ConfigDict(frozen=True)

    format_id: str
    format_name: str
    version: str
    spec_version: str
    spec_date: str
    file_suffix: str
    required_fields: tuple[str, ...] = ()
    required_elements: tuple[str, ...] = ()
    customization_id: str | None = None
    profile_id: str | None = None
    conformance_level: str | None = None


class StructuralValidation(BaseModel):
    """Result of a lightweight structural check of generated XML."""

    valid: bool
    errors: list[str] = Field(default_factory=list)


class GenerationResult(BaseModel):
    """Output of a generator run.

    Attributes:
        xml_content: Generated XML document
        pdf_content: PDF/A-3 container for hybrid formats, else None
        file_name: Suggested download file name
        file_size: Size of the primary output in bytes
        validation_status: 'valid', 'invalid' or 'warnings'
        validation_errors: Structural errors found in the output
        validation_warnings: Non-blocking findings
        mime_type: MIME type of the primary output
    """

    xml_content: str
    pdf_content: bytes | None = None
    file_name: str
    file_size: int
    validation_status: Literal["valid", "invalid", "warnings"]
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    mime_type: str = "application/xml"


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def resolve_field(invoice: CanonicalInvoice, path: str) -> Any:
    """Resolve a dotted attribute path on the invoice ('seller.vat_id')."""
    value: Any = invoice
    for part in path.split("."):
        value = getattr(value, part, None)
        if value is None:
            return None
    return value


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (tuple, list)):
        return len(value) > 0
    return True


class FormatGenerator(ABC):
    """Abstract base class for format generators.

    Subclasses implement build_xml; the shared generate() enforces the
    descriptor's mandatory fields first, so a non-compliant document is
    never produced silently.
    """

    def __init__(self, descriptor: FormatDescriptor) -> None:
        """Initialize generator with its descriptor.

        Args:
            descriptor: Static format description
        """
        self.descriptor = descriptor

    @property
    def format_id(self) -> str:
        return self.descriptor.format_id

    @property
    def format_name(self) -> str:
        return self.descriptor.format_name

    @property
    def version(self) -> str:
        return self.descriptor.version

    @property
    def spec_version(self) -> str:
        return self.descriptor.spec_version

    @property
    def spec_date(self) -> str:
        return self.descriptor.spec_date

    @abstractmethod
    def build_xml(self, invoice: CanonicalInvoice) -> str:
        """Serialize the invoice into this format's XML.

        Args:
            invoice: Canonical invoice (read-only)

        Returns:
            XML document as a string
        """
        pass

    def check_business_rules(self, invoice: CanonicalInvoice) -> None:
        """Format-specific checks beyond field presence.

        Raises:
            GeneratorSchemaError: If a country rule is violated
        """
        return None

    def collect_warnings(self, invoice: CanonicalInvoice) -> list[str]:
        """Non-blocking findings to attach to the result."""
        return []

    def check_required_fields(self, invoice: CanonicalInvoice) -> None:
        """Ensure every field the format mandates is present.

        Raises:
            GeneratorSchemaError: Listing all missing fields
        """
        missing = []
        for requirement in self.descriptor.required_fields:
            alternatives = requirement.split("|")
            if not any(_is_present(resolve_field(invoice, path)) for path in alternatives):
                missing.append(requirement)
        if missing:
            logger.warning(f"{self.format_id}: invoice is missing mandatory fields {missing}")
            raise GeneratorSchemaError(self.format_id, missing)

    def validate(self, xml: str) -> StructuralValidation:
        """Lightweight structural validation of generated XML.

        Args:
            xml: Generated XML string

        Returns:
            Validation result listing missing elements and identifiers
        """
        try:
            root = ET.fromstring(xml.encode("utf-8"))
        except ET.ParseError as e:
            return StructuralValidation(valid=False, errors=[f"Malformed XML: {e}"])

        present = {element.tag.rsplit("}", 1)[-1] for element in root.iter()}
        errors = [
            f"Missing required element: {name}"
            for name in self.descriptor.required_elements
            if name not in present
        ]
        for identifier in (self.descriptor.customization_id, self.descriptor.profile_id):
            if identifier and identifier not in xml:
                errors.append(f"Missing identifier: {identifier}")
        return StructuralValidation(valid=not errors, errors=errors)

    def file_name(self, invoice: CanonicalInvoice, extension: str = "xml") -> str:
        stem = _UNSAFE_FILENAME_CHARS.sub("_", invoice.invoice_number or "invoice")
        return f"{stem}_{self.descriptor.file_suffix}.{extension}"

    def generate(self, invoice: CanonicalInvoice) -> GenerationResult:
        """Generate an e-invoice document.

        Args:
            invoice: Canonical invoice (never mutated)

        Returns:
            GenerationResult with XML content and structural validation info

        Raises:
            GeneratorSchemaError: If a mandated field is missing or a format
                rule is violated
        """
        self.check_required_fields(invoice)
        self.check_business_rules(invoice)

        xml = self.build_xml(invoice)
        structural = self.validate(xml)
        warnings = self.collect_warnings(invoice)

        if not structural.valid:
            status: Literal["valid", "invalid", "warnings"] = "invalid"
        elif warnings:
            status = "warnings"
        else:
            status = "valid"

        logger.info(
            f"Generated {self.format_id} document for invoice {invoice.invoice_number} "
            f"(status={status})"
        )
        return GenerationResult(
            xml_content=xml,
            file_name=self.file_name(invoice),
            file_size=len(xml.encode("utf-8")),
            validation_status=status,
            validation_errors=structural.errors,
            validation_warnings=warnings,
        )
