"""Factur-X / ZUGFeRD 2.x hybrid invoice generator.

A Factur-X invoice is a PDF/A-3 document with the CII XML attached as
``factur-x.xml``. The visual page is drawn with fpdf2; pypdf embeds the XML
and writes the associated-file relationship and XMP metadata.

Reference: https://fnfe-mpe.org/factur-x/factur-x_en/ (Factur-X 1.0.07)
"""

import io
import logging
from datetime import datetime, timezone
from xml.sax.saxutils import escape

from fpdf import FPDF
from fpdf.enums import XPos, YPos
from pypdf import PdfReader, PdfWriter
from pypdf.generic import (
    ArrayObject,
    BooleanObject,
    DictionaryObject,
    NameObject,
)

from einvoice.formats.base import FormatDescriptor, FormatGenerator, GenerationResult
from einvoice.formats.cii import CII_REQUIRED_ELEMENTS, build_cii_document
from einvoice.formats.tax import format_rate, line_rate
from einvoice.invoice.model import CanonicalInvoice
from einvoice.invoice.xml_utils import format_amount
from einvoice.shared.errors import GeneratorSchemaError

logger = logging.getLogger(__name__)

FACTURX_XML_FILENAME = "factur-x.xml"
FACTURX_XMP_NAMESPACE = "urn:factur-x:pdfa:CrossIndustryDocument:invoice:1p0#"

FACTURX_EN16931_ID = "urn:cen.eu:en16931:2017#compliant#urn:factur-x.eu:1p0:en16931"
FACTURX_BASIC_ID = "urn:cen.eu:en16931:2017#compliant#urn:factur-x.eu:1p0:basic"

_FACTURX_REQUIRED_FIELDS = (
    "invoice_number",
    "invoice_date",
    "seller.name",
    "seller.country_code",
    "seller.vat_id|seller.tax_number",
    "buyer.name",
    "line_items",
)

FACTURX_EN16931 = FormatDescriptor(
    format_id="facturx-en16931",
    format_name="Factur-X EN 16931",
    version="1.0.0",
    spec_version="1.0.07",
    spec_date="2024-11-15",
    file_suffix="facturx",
    required_fields=_FACTURX_REQUIRED_FIELDS,
    required_elements=CII_REQUIRED_ELEMENTS,
    customization_id=FACTURX_EN16931_ID,
    conformance_level="EN 16931",
)

FACTURX_BASIC = FormatDescriptor(
    format_id="facturx-basic",
    format_name="Factur-X BASIC",
    version="1.0.0",
    spec_version="1.0.07",
    spec_date="2024-11-15",
    file_suffix="facturx",
    required_fields=_FACTURX_REQUIRED_FIELDS,
    required_elements=CII_REQUIRED_ELEMENTS,
    customization_id=FACTURX_BASIC_ID,
    conformance_level="BASIC",
)

# Smallest plausible PDF; anything shorter means rendering failed
MIN_PDF_SIZE = 100


def _latin1(text: str | None) -> str:
    """Core PDF fonts only cover latin-1."""
    return (text or "").encode("latin-1", "replace").decode("latin-1")


def _write_line(pdf: FPDF, width: float, text: str, height: float = 6) -> None:
    pdf.multi_cell(width, height, _latin1(text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)


def build_xmp_metadata(invoice: CanonicalInvoice, conformance_level: str) -> bytes:
    """Build the XMP packet declaring PDF/A-3B and the Factur-X extension."""
    title = escape(f"Invoice {invoice.invoice_number}")
    seller = escape(invoice.seller.name)
    packet = f"""<?xpacket begin="\ufeff" id="W5M0MpCehiHzreSzNTczkc9d"?>
<x:xmpmeta xmlns:x="adobe:ns:meta/">
 <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">
  <rdf:Description rdf:about=""
    xmlns:pdfaid="http://www.aiim.org/pdfa/ns/id/">
   <pdfaid:part>3</pdfaid:part>
   <pdfaid:conformance>B</pdfaid:conformance>
  </rdf:Description>
  <rdf:Description rdf:about=""
    xmlns:dc="http://purl.org/dc/elements/1.1/">
   <dc:title><rdf:Alt><rdf:li xml:lang="x-default">{title}</rdf:li></rdf:Alt></dc:title>
   <dc:creator><rdf:Seq><rdf:li>{seller}</rdf:li></rdf:Seq></dc:creator>
  </rdf:Description>
  <rdf:Description rdf:about=""
    xmlns:fx="{FACTURX_XMP_NAMESPACE}">
   <fx:DocumentType>INVOICE</fx:DocumentType>
   <fx:DocumentFileName>{FACTURX_XML_FILENAME}</fx:DocumentFileName>
   <fx:Version>1.0</fx:Version>
   <fx:ConformanceLevel>{conformance_level}</fx:ConformanceLevel>
  </rdf:Description>
 </rdf:RDF>
</x:xmpmeta>
<?xpacket end="w"?>"""
    return packet.encode("utf-8")


def render_invoice_pdf(invoice: CanonicalInvoice) -> bytes:
    """Draw the human-readable invoice page."""
    currency = invoice.currency
    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.set_margins(15, 15, 15)
    pdf.add_page()
    width = pdf.w - pdf.l_margin - pdf.r_margin

    title = "Credit Note" if invoice.is_credit_note else "Invoice"
    pdf.set_font("Helvetica", style="B", size=16)
    _write_line(pdf, width, f"{title} {invoice.invoice_number}", height=10)

    pdf.set_font("Helvetica", size=10)
    header_lines = [
        f"Date: {invoice.invoice_date}",
        f"Seller: {invoice.seller.name}",
        f"Seller VAT ID: {invoice.seller.vat_id or invoice.seller.tax_number or '-'}",
        f"Buyer: {invoice.buyer.name}",
    ]
    if invoice.buyer_reference:
        header_lines.append(f"Buyer reference: {invoice.buyer_reference}")
    if invoice.payment.due_date:
        header_lines.append(f"Due date: {invoice.payment.due_date}")
    for text in header_lines:
        _write_line(pdf, width, text, height=6)

    pdf.ln(4)
    pdf.set_font("Helvetica", style="B", size=11)
    _write_line(pdf, width, "Line items", height=8)
    pdf.set_font("Helvetica", size=10)
    for index, item in enumerate(invoice.line_items, start=1):
        text = (
            f"{index}. {item.description or f'Item {index}'}: "
            f"{item.quantity:g} x {format_amount(item.unit_price)} = "
            f"{format_amount(item.total_price)} {currency} "
            f"(VAT {format_rate(line_rate(item, invoice))}%)"
        )
        _write_line(pdf, width, text, height=6)

    pdf.ln(4)
    totals = invoice.totals
    _write_line(pdf, width, f"Net total: {format_amount(totals.subtotal)} {currency}", height=6)
    _write_line(pdf, width, f"VAT: {format_amount(totals.tax_amount)} {currency}", height=6)
    pdf.set_font("Helvetica", style="B", size=11)
    _write_line(pdf, width, f"Total: {format_amount(totals.total_amount)} {currency}", height=7)

    if invoice.payment.iban:
        pdf.set_font("Helvetica", size=10)
        _write_line(pdf, width, f"IBAN: {invoice.payment.iban}", height=6)

    return bytes(pdf.output())


def embed_facturx_xml(
    pdf_bytes: bytes,
    xml: str,
    invoice: CanonicalInvoice,
    conformance_level: str,
) -> bytes:
    """Attach the CII XML to a PDF as a Factur-X associated file.

    Args:
        pdf_bytes: Visual invoice PDF
        xml: CII XML to embed as factur-x.xml
        invoice: Invoice the PDF describes (for document metadata)
        conformance_level: Factur-X profile written to the XMP packet

    Returns:
        PDF bytes with the embedded XML
    """
    writer = PdfWriter(clone_from=PdfReader(io.BytesIO(pdf_bytes)))
    writer.add_attachment(FACTURX_XML_FILENAME, xml.encode("utf-8"))

    # Names array alternates [name, filespec, ...]
    names = writer.root_object["/Names"]["/EmbeddedFiles"]["/Names"]
    associated = ArrayObject()
    for position in range(0, len(names), 2):
        if names[position] != FACTURX_XML_FILENAME:
            continue
        reference = names[position + 1]
        filespec = reference.get_object()
        filespec[NameObject("/AFRelationship")] = NameObject("/Alternative")
        embedded = filespec["/EF"]["/F"].get_object()
        embedded[NameObject("/Subtype")] = NameObject("/text/xml")
        associated.append(reference)
    writer.root_object[NameObject("/AF")] = associated

    writer.xmp_metadata = build_xmp_metadata(invoice, conformance_level)
    metadata = writer.root_object["/Metadata"].get_object()
    metadata[NameObject("/Type")] = NameObject("/Metadata")
    metadata[NameObject("/Subtype")] = NameObject("/XML")

    mark_info = DictionaryObject()
    mark_info[NameObject("/Marked")] = BooleanObject(True)
    writer.root_object[NameObject("/MarkInfo")] = mark_info

    writer.add_metadata(
        {
            "/Title": f"Invoice {invoice.invoice_number}",
            "/Author": invoice.seller.name,
            "/Producer": "einvoice-platform",
            "/CreationDate": datetime.now(timezone.utc).strftime("D:%Y%m%d%H%M%SZ"),
        }
    )

    output = io.BytesIO()
    writer.write(output)
    return output.getvalue()


class FacturXGenerator(FormatGenerator):
    """Factur-X generator for the EN 16931 and BASIC profiles.

    The XML is the CII document with the profile's guideline ID and no
    business process parameter. generate() additionally returns the PDF.
    """

    def __init__(self, descriptor: FormatDescriptor = FACTURX_EN16931) -> None:
        super().__init__(descriptor)

    @property
    def conformance_level(self) -> str:
        return self.descriptor.conformance_level or "EN 16931"

    def build_xml(self, invoice: CanonicalInvoice) -> str:
        return build_cii_document(
            invoice,
            guideline_id=self.descriptor.customization_id or FACTURX_EN16931_ID,
            business_process_id=None,
        )

    def build_pdf(self, invoice: CanonicalInvoice, xml: str) -> bytes:
        """Render the visual PDF and embed the XML.

        Raises:
            GeneratorSchemaError: If the PDF could not be produced
        """
        pdf = embed_facturx_xml(render_invoice_pdf(invoice), xml, invoice, self.conformance_level)
        if len(pdf) <= MIN_PDF_SIZE:
            raise GeneratorSchemaError(
                self.format_id, [], reason=f"PDF rendering produced only {len(pdf)} bytes"
            )
        return pdf

    def generate(self, invoice: CanonicalInvoice) -> GenerationResult:
        result = super().generate(invoice)
        pdf = self.build_pdf(invoice, result.xml_content)
        logger.info(f"Embedded {FACTURX_XML_FILENAME} into {len(pdf)}-byte PDF/A-3 container")
        return result.model_copy(
            update={
                "pdf_content": pdf,
                "file_name": self.file_name(invoice, "pdf"),
                "file_size": len(pdf),
                "mime_type": "application/pdf",
            }
        )


def create_facturx_en16931() -> FacturXGenerator:
    return FacturXGenerator(FACTURX_EN16931)


def create_facturx_basic() -> FacturXGenerator:
    return FacturXGenerator(FACTURX_BASIC)
