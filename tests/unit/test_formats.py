"""Unit tests for the e-invoice format generators."""

import io
from xml.etree import ElementTree as ET

import pytest
from pypdf import PdfReader
from pypdf.generic import IndirectObject

from einvoice.formats.cii import XRECHNUNG_GUIDELINE_ID, XRechnungCIIGenerator
from einvoice.formats.facturx import (
    FACTURX_BASIC_ID,
    FACTURX_XML_FILENAME,
    build_xmp_metadata,
    create_facturx_basic,
    create_facturx_en16931,
)
from einvoice.formats.fatturapa import FatturaPAGenerator, natura_code, split_vat_id
from einvoice.formats.ksef import KSeFGenerator, extract_nip, invoice_kind, p12_code
from einvoice.formats.tax import format_rate, group_by_rate
from einvoice.formats.ubl import (
    CIUSROGenerator,
    create_nlcius,
    create_peppol_bis,
    create_xrechnung_ubl,
)
from einvoice.invoice.model import CanonicalInvoice, DocumentTotals, LineItem
from einvoice.shared.errors import GeneratorSchemaError

NS = {
    "rsm": "urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100",
    "ram": "urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100",
    "cbc": "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2",
    "cac": "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2",
    "ksef": "http://crd.gov.pl/wzor/2025/06/25/13775/",
}


def _parse(xml: str) -> ET.Element:
    return ET.fromstring(xml.encode("utf-8"))


@pytest.fixture
def polish_invoice(sample_invoice: CanonicalInvoice) -> CanonicalInvoice:
    """The sample invoice issued by a Polish seller at 23%."""
    lines = tuple(
        item.model_copy(update={"tax_rate": 23.0}) for item in sample_invoice.line_items
    )
    return sample_invoice.model_copy(
        update={
            "seller": sample_invoice.seller.model_copy(
                update={"vat_id": "PL 526-025-02-74", "country_code": "PL"}
            ),
            "line_items": lines,
            "tax_rate": 23.0,
            "totals": DocumentTotals(subtotal=2000.0, tax_amount=460.0, total_amount=2460.0),
        }
    )


class TestTaxGrouping:
    """Test VAT breakdown helpers."""

    def test_groups_by_rate_higher_first(self, sample_invoice: CanonicalInvoice) -> None:
        """Mixed rates produce one group per rate, sorted descending."""
        reduced = LineItem(
            description="Buch", quantity=1, unit_price=100, total_price=100, tax_rate=7.0
        )
        invoice = sample_invoice.model_copy(
            update={"line_items": (reduced, *sample_invoice.line_items)}
        )

        groups = group_by_rate(invoice)

        assert [(g.rate, g.basis, g.tax) for g in groups] == [
            (19.0, 2000.0, 380.0),
            (7.0, 100.0, 7.0),
        ]

    def test_format_rate(self) -> None:
        """Whole rates drop the decimals, fractional rates keep them."""
        assert format_rate(19.0) == "19"
        assert format_rate(5.5) == "5.5"


class TestXRechnungCII:
    """Test the XRechnung CII generator."""

    def test_generates_valid_document(self, sample_invoice: CanonicalInvoice) -> None:
        """Output carries the guideline, dates in format 102 and the totals."""
        result = XRechnungCIIGenerator().generate(sample_invoice)
        root = _parse(result.xml_content)

        assert result.validation_status == "valid"
        assert result.pdf_content is None
        assert result.file_name == "RE-2024-001_xrechnung.xml"
        assert result.file_size == len(result.xml_content.encode("utf-8"))
        assert XRECHNUNG_GUIDELINE_ID in result.xml_content
        assert root.find(".//ram:BuyerReference", NS).text == "04011000-12345-34"
        assert root.find(".//ram:GrandTotalAmount", NS).text == "2380.00"
        assert 'format="102">20240315<' in result.xml_content

    def test_missing_leitweg_id_rejected(self, sample_invoice: CanonicalInvoice) -> None:
        """buyer_reference is mandatory for XRechnung."""
        invoice = sample_invoice.model_copy(update={"buyer_reference": None})

        with pytest.raises(GeneratorSchemaError) as exc_info:
            XRechnungCIIGenerator().generate(invoice)

        assert exc_info.value.missing_fields == ["buyer_reference"]
        assert exc_info.value.status_code == 422

    def test_either_vat_id_or_tax_number(self, sample_invoice: CanonicalInvoice) -> None:
        """A tax number satisfies the seller tax identifier requirement."""
        seller = sample_invoice.seller.model_copy(
            update={"vat_id": None, "tax_number": "12/345/67890"}
        )

        invoice = sample_invoice.model_copy(update={"seller": seller})

        result = XRechnungCIIGenerator().generate(invoice)

        assert "12/345/67890" in result.xml_content

    def test_deterministic_and_read_only(self, sample_invoice: CanonicalInvoice) -> None:
        """Same input, same XML; the input is left untouched."""
        before = sample_invoice.model_dump()
        generator = XRechnungCIIGenerator()

        first = generator.generate(sample_invoice).xml_content
        second = generator.generate(sample_invoice).xml_content

        assert first == second
        assert sample_invoice.model_dump() == before

    def test_validate_reports_missing_elements(self) -> None:
        """Structural validation lists what is missing."""
        result = XRechnungCIIGenerator().validate("<root/>")

        assert result.valid is False
        assert "Missing required element: ExchangedDocument" in result.errors

    def test_validate_malformed_xml(self) -> None:
        """Unparseable XML is invalid, not an exception."""
        result = XRechnungCIIGenerator().validate("<root>")

        assert result.valid is False
        assert result.errors[0].startswith("Malformed XML")


class TestUBLFamily:
    """Test XRechnung UBL, Peppol BIS, NLCIUS and CIUS-RO."""

    @pytest.mark.parametrize(
        ("factory", "suffix"),
        [
            (create_xrechnung_ubl, "xrechnung_ubl"),
            (create_peppol_bis, "peppol"),
            (create_nlcius, "nlcius"),
        ],
    )
    def test_generates_invoice(self, sample_invoice: CanonicalInvoice, factory, suffix) -> None:
        """Each profile writes its CustomizationID and an InvoiceLine per item."""
        generator = factory()
        result = generator.generate(sample_invoice)
        root = _parse(result.xml_content)

        assert result.validation_status == "valid"
        assert result.file_name == f"RE-2024-001_{suffix}.xml"
        assert root.find("cbc:CustomizationID", NS).text == generator.descriptor.customization_id
        assert len(root.findall("cac:InvoiceLine", NS)) == 2
        assert root.find("cac:LegalMonetaryTotal/cbc:PayableAmount", NS).text == "2380.00"

    def test_credit_note_root(self, sample_invoice: CanonicalInvoice) -> None:
        """Type code 381 produces a CreditNote with CreditNoteLine elements."""
        invoice = sample_invoice.model_copy(
            update={"document_type_code": 381, "preceding_invoice_reference": "RE-2023-099"}
        )

        result = create_peppol_bis().generate(invoice)
        root = _parse(result.xml_content)

        assert root.tag.endswith("}CreditNote")
        assert len(root.findall("cac:CreditNoteLine", NS)) == 2
        assert root.find("cbc:CreditNoteTypeCode", NS).text == "381"
        assert result.validation_status == "valid"

    def test_peppol_requires_endpoints(self, sample_invoice: CanonicalInvoice) -> None:
        """Peppol needs electronic addresses for both parties."""
        buyer = sample_invoice.buyer.model_copy(update={"electronic_address": None})

        with pytest.raises(GeneratorSchemaError) as exc_info:
            create_peppol_bis().generate(sample_invoice.model_copy(update={"buyer": buyer}))

        assert exc_info.value.missing_fields == ["buyer.electronic_address"]

    def test_cius_ro_accepts_romanian_ids(self, sample_invoice: CanonicalInvoice) -> None:
        """A valid CUI and RO VAT ID pass without warnings."""
        seller = sample_invoice.seller.model_copy(
            update={"vat_id": "RO1234567", "tax_number": "1234567", "country_code": "RO"}
        )

        result = CIUSROGenerator().generate(sample_invoice.model_copy(update={"seller": seller}))

        assert result.validation_status == "valid"

    def test_cius_ro_rejects_bad_cui(self, sample_invoice: CanonicalInvoice) -> None:
        """A malformed CUI raises with the violated field."""
        seller = sample_invoice.seller.model_copy(
            update={"vat_id": "RO1", "tax_number": "RO-12AB", "country_code": "RO"}
        )

        with pytest.raises(GeneratorSchemaError) as exc_info:
            CIUSROGenerator().generate(sample_invoice.model_copy(update={"seller": seller}))

        assert exc_info.value.missing_fields == ["seller.tax_number", "seller.vat_id"]

    def test_cius_ro_warns_for_foreign_seller(self, sample_invoice: CanonicalInvoice) -> None:
        """A non-Romanian seller is a warning, not an error."""
        result = CIUSROGenerator().generate(sample_invoice)

        assert result.validation_status == "warnings"
        assert "Seller country is DE" in result.validation_warnings[0]


class TestFacturX:
    """Test the Factur-X hybrid PDF generators."""

    def test_pdf_embeds_xml(self, sample_invoice: CanonicalInvoice) -> None:
        """The PDF carries factur-x.xml identical to the returned XML."""
        result = create_facturx_en16931().generate(sample_invoice)

        assert result.mime_type == "application/pdf"
        assert result.file_name == "RE-2024-001_facturx.pdf"
        assert result.pdf_content is not None
        assert result.pdf_content.startswith(b"%PDF")
        assert result.file_size == len(result.pdf_content)

        reader = PdfReader(io.BytesIO(result.pdf_content))
        attachments = reader.attachments
        assert attachments[FACTURX_XML_FILENAME][0] == result.xml_content.encode("utf-8")

        catalog = reader.trailer["/Root"]
        assert "/AF" in catalog
        assert catalog["/MarkInfo"]["/Marked"].value is True
        metadata = catalog.raw_get("/Metadata")
        assert isinstance(metadata, IndirectObject)
        assert metadata.get_object()["/Type"] == "/Metadata"
        assert metadata.get_object()["/Subtype"] == "/XML"
        xmp = metadata.get_object().get_data()
        assert b"<fx:ConformanceLevel>EN 16931</fx:ConformanceLevel>" in xmp
        assert b"<pdfaid:part>3</pdfaid:part>" in xmp

    def test_basic_profile_xml(self, sample_invoice: CanonicalInvoice) -> None:
        """BASIC uses its own guideline and no business process."""
        generator = create_facturx_basic()

        xml = generator.build_xml(sample_invoice)

        assert FACTURX_BASIC_ID in xml
        assert "BusinessProcessSpecifiedDocumentContextParameter" not in xml
        assert generator.conformance_level == "BASIC"

    def test_xml_deterministic(self, sample_invoice: CanonicalInvoice) -> None:
        """Only the PDF wrapper varies between runs."""
        generator = create_facturx_en16931()

        assert generator.build_xml(sample_invoice) == generator.build_xml(sample_invoice)

    def test_xmp_escapes_markup(self, sample_invoice: CanonicalInvoice) -> None:
        """Party names with markup characters stay well-formed in XMP."""
        seller = sample_invoice.seller.model_copy(update={"name": "Müller & <Söhne>"})

        xmp = build_xmp_metadata(sample_invoice.model_copy(update={"seller": seller}), "BASIC")

        assert "Müller &amp; &lt;Söhne&gt;".encode() in xmp

    def test_missing_seller_tax_id_rejected(self, sample_invoice: CanonicalInvoice) -> None:
        """Factur-X needs a seller VAT ID or tax number."""
        seller = sample_invoice.seller.model_copy(update={"vat_id": None})

        with pytest.raises(GeneratorSchemaError):
            create_facturx_en16931().generate(sample_invoice.model_copy(update={"seller": seller}))


class TestFatturaPA:
    """Test the FatturaPA generator."""

    def test_generates_document(self, sample_invoice: CanonicalInvoice) -> None:
        """Seller VAT split into IdPaese/IdCodice, TD01, TP02 with MP05."""
        result = FatturaPAGenerator().generate(sample_invoice)
        root = _parse(result.xml_content)

        assert result.validation_status == "valid"
        assert root.attrib["versione"] == "FPR12"
        seller = root.find(".//CedentePrestatore/DatiAnagrafici/IdFiscaleIVA")
        assert seller.find("IdPaese").text == "DE"
        assert seller.find("IdCodice").text == "123456789"
        assert root.find(".//TipoDocumento").text == "TD01"
        assert root.find(".//RegimeFiscale").text == "RF01"
        assert root.find(".//CodiceDestinatario").text == "0000000"
        assert root.find(".//ModalitaPagamento").text == "MP05"
        assert root.find(".//DatiRiepilogo/Imposta").text == "380.00"

    def test_credit_note_and_natura(self, sample_invoice: CanonicalInvoice) -> None:
        """381 maps to TD04; exempt 0% lines carry a Natura code."""
        exempt = LineItem(
            description="Versicherung",
            quantity=1,
            unit_price=50,
            total_price=50,
            tax_rate=0.0,
            tax_category_code="E",
        )
        invoice = sample_invoice.model_copy(
            update={
                "document_type_code": 381,
                "line_items": (*sample_invoice.line_items, exempt),
            }
        )

        root = _parse(FatturaPAGenerator().generate(invoice).xml_content)

        assert root.find(".//TipoDocumento").text == "TD04"
        assert [n.text for n in root.iter("Natura")] == ["N4", "N4"]

    def test_requires_seller_vat(self, sample_invoice: CanonicalInvoice) -> None:
        """No seller VAT ID, no FatturaPA."""
        seller = sample_invoice.seller.model_copy(update={"vat_id": None})

        with pytest.raises(GeneratorSchemaError):
            FatturaPAGenerator().generate(sample_invoice.model_copy(update={"seller": seller}))

    def test_helpers(self) -> None:
        """VAT IDs split on the country prefix; Natura only for 0%."""
        assert split_vat_id("IT12345678901") == ("IT", "12345678901")
        assert split_vat_id("12345678901") == ("IT", "12345678901")
        assert split_vat_id("X") is None
        assert natura_code("Z", 0) == "N2.1"
        assert natura_code(None, 0) == "N2.2"
        assert natura_code("S", 22) is None


class TestKSeF:
    """Test the KSeF FA(3) generator."""

    def test_generates_document(self, polish_invoice: CanonicalInvoice) -> None:
        """NIP, 23% bucket, P_15 and bank transfer payment."""
        result = KSeFGenerator().generate(polish_invoice)
        root = _parse(result.xml_content)

        assert result.validation_status == "valid"
        assert root.find("ksef:Podmiot1/ksef:DaneIdentyfikacyjne/ksef:NIP", NS).text == (
            "5260250274"
        )
        assert root.find("ksef:Podmiot2/ksef:DaneIdentyfikacyjne/ksef:BrakID", NS).text == "1"
        assert root.find("ksef:Fa/ksef:P_13_1", NS).text == "2000.00"
        assert root.find("ksef:Fa/ksef:P_14_1", NS).text == "460.00"
        assert root.find("ksef:Fa/ksef:P_15", NS).text == "2460.00"
        assert root.find("ksef:Fa/ksef:RodzajFaktury", NS).text == "VAT"
        assert root.find(".//ksef:FormaPlatnosci", NS).text == "6"
        assert root.find("ksef:Naglowek/ksef:DataWytworzeniaFa", NS).text == (
            "2024-03-15T00:00:00Z"
        )
        assert [p.text for p in root.iter(f"{{{NS['ksef']}}}P_12")] == ["23", "23"]

    def test_non_standard_rate_warns(self, sample_invoice: CanonicalInvoice) -> None:
        """19% has no FA(3) bucket: warned about and left out of the P_13 totals."""
        seller = sample_invoice.seller.model_copy(update={"tax_number": "5260250274"})

        result = KSeFGenerator().generate(sample_invoice.model_copy(update={"seller": seller}))
        fa = _parse(result.xml_content).find("ksef:Fa", NS)

        assert result.validation_status == "warnings"
        assert "19%" in result.validation_warnings[0]
        assert not [child.tag for child in fa if "P_13_" in child.tag]
        assert fa.find("ksef:P_13_11", NS) is None
        assert [p.text for p in fa.iter(f"{{{NS['ksef']}}}P_12")] == ["19", "19"]

    def test_rate_buckets_follow_schema_order(self, polish_invoice: CanonicalInvoice) -> None:
        """22%, 8%, 5% and 0% lines come out as P_13_2, P_13_3, P_13_4, P_13_6_1."""
        lines = tuple(
            LineItem(description=f"Item {rate}", unit_price=100.0, total_price=100.0, tax_rate=rate)
            for rate in (22.0, 8.0, 5.0, 0.0)
        )
        invoice = polish_invoice.model_copy(
            update={
                "line_items": lines,
                "totals": DocumentTotals(subtotal=400.0, tax_amount=35.0, total_amount=435.0),
            }
        )

        result = KSeFGenerator().generate(invoice)
        fa = _parse(result.xml_content).find("ksef:Fa", NS)
        buckets = [
            (child.tag.split("}")[1], child.text)
            for child in fa
            if child.tag.split("}")[1].startswith(("P_13_", "P_14_"))
        ]

        assert buckets == [
            ("P_13_2", "100.00"),
            ("P_14_2", "8.00"),
            ("P_13_3", "100.00"),
            ("P_14_3", "5.00"),
            ("P_13_4", "100.00"),
            ("P_14_4", "22.00"),
            ("P_13_6_1", "100.00"),
        ]
        assert result.validation_status == "valid"

    def test_requires_ten_digit_nip(self, sample_invoice: CanonicalInvoice) -> None:
        """A 9-digit German VAT number is not a NIP."""
        with pytest.raises(GeneratorSchemaError) as exc_info:
            KSeFGenerator().generate(sample_invoice)

        assert "NIP" in exc_info.value.message

    def test_helpers(self, polish_invoice: CanonicalInvoice) -> None:
        """NIP extraction, invoice kind and P_12 codes."""
        assert extract_nip(polish_invoice.seller) == "5260250274"
        assert invoice_kind(381) == "KOR"
        assert invoice_kind(389) == "ZAL"
        assert invoice_kind(380) == "VAT"
        assert p12_code("E", 0) == "zw"
        assert p12_code("AE", 0) == "oo"
        assert p12_code("S", 8) == "8"
