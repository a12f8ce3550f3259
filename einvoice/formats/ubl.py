"""OASIS UBL 2.1 builder and the UBL-based format family.

XRechnung UBL, Peppol BIS Billing 3.0, NLCIUS and CIUS-RO share one
serializer and differ in CustomizationID, mandatory fields and a few
national rules, all carried by their descriptors.

Reference: https://docs.peppol.eu/poacc/billing/3.0/syntax/ubl-invoice/
"""

import logging
import re
from xml.etree import ElementTree as ET

from einvoice.formats.base import FormatDescriptor, FormatGenerator, StructuralValidation
from einvoice.formats.cii import PEPPOL_BUSINESS_PROCESS_ID, XRECHNUNG_GUIDELINE_ID
from einvoice.formats.tax import format_rate, group_by_rate, line_category, line_rate
from einvoice.invoice.model import CanonicalInvoice, PartyInfo
from einvoice.invoice.xml_utils import (
    format_amount,
    format_date_iso,
    format_quantity,
    sub_element,
    to_xml_string,
)
from einvoice.normalization.numbers import is_eu_vat_id
from einvoice.shared.errors import GeneratorSchemaError

logger = logging.getLogger(__name__)

NS_INVOICE = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
NS_CREDIT_NOTE = "urn:oasis:names:specification:ubl:schema:xsd:CreditNote-2"
NS_CAC = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
NS_CBC = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"

PEPPOL_CUSTOMIZATION_ID = (
    "urn:cen.eu:en16931:2017#compliant#urn:fdc:peppol.eu:2017:poacc:billing:3.0"
)
NLCIUS_CUSTOMIZATION_ID = "urn:cen.eu:en16931:2017#compliant#urn:fdc:nen.nl:nlcius:v1.0"
CIUS_RO_CUSTOMIZATION_ID = (
    "urn:cen.eu:en16931:2017#compliant#urn:efactura.mfinante.ro:CIUS-RO:1.0.1"
)

# Exemption reason text required by BR-E-10 / BR-AE-10 / BR-IC-10 / BR-G-10 / BR-O-10
_EXEMPTION_REASONS = {
    "E": "Exempt from VAT",
    "AE": "Reverse charge",
    "K": "Intra-community supply",
    "G": "Export outside the EU",
    "O": "Not subject to VAT",
}

UBL_REQUIRED_ELEMENTS = (
    "CustomizationID",
    "ProfileID",
    "ID",
    "IssueDate",
    "DocumentCurrencyCode",
    "AccountingSupplierParty",
    "AccountingCustomerParty",
    "TaxTotal",
    "LegalMonetaryTotal",
)

_BASE_REQUIRED_FIELDS = (
    "invoice_number",
    "invoice_date",
    "seller.name",
    "seller.country_code",
    "buyer.name",
    "buyer.country_code",
    "line_items",
)

XRECHNUNG_UBL = FormatDescriptor(
    format_id="xrechnung-ubl",
    format_name="XRechnung 3.0 (UBL)",
    version="1.0.0",
    spec_version="3.0.2",
    spec_date="2023-07-07",
    file_suffix="xrechnung_ubl",
    required_fields=(
        *_BASE_REQUIRED_FIELDS,
        "buyer_reference",
        "seller.email",
        "seller.city",
        "seller.postal_code",
        "seller.vat_id|seller.tax_number",
    ),
    required_elements=(*UBL_REQUIRED_ELEMENTS, "BuyerReference"),
    customization_id=XRECHNUNG_GUIDELINE_ID,
    profile_id=PEPPOL_BUSINESS_PROCESS_ID,
)

PEPPOL_BIS = FormatDescriptor(
    format_id="peppol-bis",
    format_name="PEPPOL BIS Billing 3.0",
    version="1.0.0",
    spec_version="3.0.18",
    spec_date="2024-11-15",
    file_suffix="peppol",
    required_fields=(
        *_BASE_REQUIRED_FIELDS,
        "seller.electronic_address",
        "buyer.electronic_address",
    ),
    required_elements=(*UBL_REQUIRED_ELEMENTS, "EndpointID"),
    customization_id=PEPPOL_CUSTOMIZATION_ID,
    profile_id=PEPPOL_BUSINESS_PROCESS_ID,
)

NLCIUS = FormatDescriptor(
    format_id="nlcius",
    format_name="NLCIUS / SI-UBL 2.0 (Netherlands)",
    version="1.0.0",
    spec_version="1.0",
    spec_date="2019-10-01",
    file_suffix="nlcius",
    required_fields=(
        *_BASE_REQUIRED_FIELDS,
        "seller.electronic_address",
        "buyer.electronic_address",
        "seller.vat_id|seller.tax_number",
    ),
    required_elements=(*UBL_REQUIRED_ELEMENTS, "EndpointID"),
    customization_id=NLCIUS_CUSTOMIZATION_ID,
    profile_id=PEPPOL_BUSINESS_PROCESS_ID,
)

CIUS_RO = FormatDescriptor(
    format_id="cius-ro",
    format_name="CIUS-RO (Romania e-Factura)",
    version="1.0.0",
    spec_version="1.0.1",
    spec_date="2022-01-01",
    file_suffix="ciusro",
    required_fields=(
        *_BASE_REQUIRED_FIELDS,
        "seller.city",
        "seller.address",
        "seller.vat_id|seller.tax_number",
    ),
    required_elements=UBL_REQUIRED_ELEMENTS,
    customization_id=CIUS_RO_CUSTOMIZATION_ID,
    profile_id=PEPPOL_BUSINESS_PROCESS_ID,
)

_CUI_PATTERN = re.compile(r"^(RO)?\d{1,10}$")
_RO_VAT_PATTERN = re.compile(r"^RO\d{2,10}$")


def _party(parent: ET.Element, tag: str, party: PartyInfo) -> None:
    wrapper = sub_element(parent, tag)
    node = sub_element(wrapper, "cac:Party")

    if party.electronic_address:
        sub_element(
            node,
            "cbc:EndpointID",
            party.electronic_address,
            {"schemeID": party.electronic_address_scheme or "EM"},
        )

    name = sub_element(node, "cac:PartyName")
    sub_element(name, "cbc:Name", party.name)

    address = sub_element(node, "cac:PostalAddress")
    if party.address:
        sub_element(address, "cbc:StreetName", party.address)
    if party.city:
        sub_element(address, "cbc:CityName", party.city)
    if party.postal_code:
        sub_element(address, "cbc:PostalZone", party.postal_code)
    country = sub_element(address, "cac:Country")
    sub_element(country, "cbc:IdentificationCode", (party.country_code or "").upper())

    if party.vat_id:
        scheme = sub_element(node, "cac:PartyTaxScheme")
        sub_element(scheme, "cbc:CompanyID", party.vat_id)
        tax_scheme = sub_element(scheme, "cac:TaxScheme")
        sub_element(tax_scheme, "cbc:ID", "VAT")
    if party.tax_number and not is_eu_vat_id(party.tax_number):
        scheme = sub_element(node, "cac:PartyTaxScheme")
        sub_element(scheme, "cbc:CompanyID", party.tax_number)
        tax_scheme = sub_element(scheme, "cac:TaxScheme")
        sub_element(tax_scheme, "cbc:ID", "FC")

    legal = sub_element(node, "cac:PartyLegalEntity")
    sub_element(legal, "cbc:RegistrationName", party.name)

    if party.contact_name or party.phone or party.email:
        contact = sub_element(node, "cac:Contact")
        if party.contact_name:
            sub_element(contact, "cbc:Name", party.contact_name)
        if party.phone:
            sub_element(contact, "cbc:Telephone", party.phone)
        if party.email:
            sub_element(contact, "cbc:ElectronicMail", party.email)


def _tax_category(parent: ET.Element, tag: str, category: str, rate: float) -> None:
    node = sub_element(parent, tag)
    sub_element(node, "cbc:ID", category)
    sub_element(node, "cbc:Percent", format_rate(rate))
    if tag == "cac:TaxCategory" and category in _EXEMPTION_REASONS:
        sub_element(node, "cbc:TaxExemptionReason", _EXEMPTION_REASONS[category])
    scheme = sub_element(node, "cac:TaxScheme")
    sub_element(scheme, "cbc:ID", "VAT")


def build_ubl_document(invoice: CanonicalInvoice, customization_id: str, profile_id: str) -> str:
    """Serialize a canonical invoice as UBL 2.1.

    Document type 381 produces a CreditNote document; everything else an
    Invoice.

    Args:
        invoice: Canonical invoice (read-only)
        customization_id: Value of cbc:CustomizationID
        profile_id: Value of cbc:ProfileID

    Returns:
        UBL XML document
    """
    credit_note = invoice.is_credit_note
    root_tag = "CreditNote" if credit_note else "Invoice"
    line_tag = "cac:CreditNoteLine" if credit_note else "cac:InvoiceLine"
    quantity_tag = "cbc:CreditedQuantity" if credit_note else "cbc:InvoicedQuantity"
    currency = {"currencyID": invoice.currency}

    root = ET.Element(
        root_tag,
        {
            "xmlns": NS_CREDIT_NOTE if credit_note else NS_INVOICE,
            "xmlns:cac": NS_CAC,
            "xmlns:cbc": NS_CBC,
        },
    )
    sub_element(root, "cbc:CustomizationID", customization_id)
    sub_element(root, "cbc:ProfileID", profile_id)
    sub_element(root, "cbc:ID", invoice.invoice_number)
    sub_element(root, "cbc:IssueDate", format_date_iso(invoice.invoice_date))
    if invoice.payment.due_date and not credit_note:
        sub_element(root, "cbc:DueDate", format_date_iso(invoice.payment.due_date))
    sub_element(
        root,
        "cbc:CreditNoteTypeCode" if credit_note else "cbc:InvoiceTypeCode",
        str(invoice.document_type_code),
    )
    if invoice.notes:
        sub_element(root, "cbc:Note", invoice.notes)
    sub_element(root, "cbc:DocumentCurrencyCode", invoice.currency)
    if invoice.buyer_reference:
        sub_element(root, "cbc:BuyerReference", invoice.buyer_reference)

    if invoice.billing_period_start or invoice.billing_period_end:
        period = sub_element(root, "cac:InvoicePeriod")
        if invoice.billing_period_start:
            sub_element(period, "cbc:StartDate", format_date_iso(invoice.billing_period_start))
        if invoice.billing_period_end:
            sub_element(period, "cbc:EndDate", format_date_iso(invoice.billing_period_end))

    if invoice.preceding_invoice_reference:
        billing = sub_element(root, "cac:BillingReference")
        reference = sub_element(billing, "cac:InvoiceDocumentReference")
        sub_element(reference, "cbc:ID", invoice.preceding_invoice_reference)

    _party(root, "cac:AccountingSupplierParty", invoice.seller)
    _party(root, "cac:AccountingCustomerParty", invoice.buyer)

    if invoice.payment.iban:
        means = sub_element(root, "cac:PaymentMeans")
        sub_element(means, "cbc:PaymentMeansCode", "58")
        if credit_note and invoice.payment.due_date:
            sub_element(means, "cbc:PaymentDueDate", format_date_iso(invoice.payment.due_date))
        sub_element(means, "cbc:PaymentID", invoice.invoice_number)
        account = sub_element(means, "cac:PayeeFinancialAccount")
        sub_element(account, "cbc:ID", invoice.payment.iban.replace(" ", ""))
        if invoice.payment.bic:
            branch = sub_element(account, "cac:FinancialInstitutionBranch")
            sub_element(branch, "cbc:ID", invoice.payment.bic)

    if invoice.payment.payment_terms:
        terms = sub_element(root, "cac:PaymentTerms")
        sub_element(terms, "cbc:Note", invoice.payment.payment_terms)

    totals = invoice.totals
    tax_total = sub_element(root, "cac:TaxTotal")
    sub_element(tax_total, "cbc:TaxAmount", format_amount(totals.tax_amount), currency)
    for group in group_by_rate(invoice):
        subtotal = sub_element(tax_total, "cac:TaxSubtotal")
        sub_element(subtotal, "cbc:TaxableAmount", format_amount(group.basis), currency)
        sub_element(subtotal, "cbc:TaxAmount", format_amount(group.tax), currency)
        _tax_category(subtotal, "cac:TaxCategory", group.category_code, group.rate)

    monetary = sub_element(root, "cac:LegalMonetaryTotal")
    sub_element(monetary, "cbc:LineExtensionAmount", format_amount(totals.subtotal), currency)
    sub_element(monetary, "cbc:TaxExclusiveAmount", format_amount(totals.subtotal), currency)
    sub_element(monetary, "cbc:TaxInclusiveAmount", format_amount(totals.total_amount), currency)
    sub_element(monetary, "cbc:PayableAmount", format_amount(totals.total_amount), currency)

    for index, item in enumerate(invoice.line_items, start=1):
        line = sub_element(root, line_tag)
        sub_element(line, "cbc:ID", str(index))
        sub_element(
            line,
            quantity_tag,
            format_quantity(item.quantity),
            {"unitCode": item.unit_code or "C62"},
        )
        sub_element(line, "cbc:LineExtensionAmount", format_amount(item.total_price), currency)
        product = sub_element(line, "cac:Item")
        sub_element(product, "cbc:Name", item.description or f"Item {index}")
        _tax_category(
            product,
            "cac:ClassifiedTaxCategory",
            line_category(item, invoice),
            line_rate(item, invoice),
        )
        price = sub_element(line, "cac:Price")
        sub_element(price, "cbc:PriceAmount", format_amount(item.unit_price), currency)

    return to_xml_string(root)


class UBLGenerator(FormatGenerator):
    """Generator for UBL-based formats, parametrized by descriptor."""

    def build_xml(self, invoice: CanonicalInvoice) -> str:
        return build_ubl_document(
            invoice,
            customization_id=self.descriptor.customization_id or PEPPOL_CUSTOMIZATION_ID,
            profile_id=self.descriptor.profile_id or PEPPOL_BUSINESS_PROCESS_ID,
        )

    def validate(self, xml: str) -> StructuralValidation:
        result = super().validate(xml)
        line_name = "CreditNoteLine" if "<CreditNote" in xml else "InvoiceLine"
        if f"<cac:{line_name}>" not in xml:
            result.errors.append(f"Missing required element: {line_name}")
            result.valid = False
        return result


class CIUSROGenerator(UBLGenerator):
    """CIUS-RO: Peppol-based UBL with Romanian identifier rules."""

    def __init__(self, descriptor: FormatDescriptor = CIUS_RO) -> None:
        super().__init__(descriptor)

    def check_business_rules(self, invoice: CanonicalInvoice) -> None:
        violations = []
        for role, party in (("seller", invoice.seller), ("buyer", invoice.buyer)):
            tax_number = (party.tax_number or "").strip()
            if tax_number and not _CUI_PATTERN.match(tax_number):
                violations.append(
                    f'{role}.tax_number: Romanian CUI/CIF must be optional "RO" prefix '
                    f'+ up to 10 digits, got "{tax_number}"'
                )
            vat_id = (party.vat_id or "").strip()
            if vat_id.startswith("RO") and not _RO_VAT_PATTERN.match(vat_id):
                violations.append(
                    f'{role}.vat_id: Romanian VAT ID must be RO + 2-10 digits, got "{vat_id}"'
                )
        if violations:
            logger.warning(f"CIUS-RO identifier rules violated: {violations}")
            raise GeneratorSchemaError(
                self.format_id,
                [violation.split(":", 1)[0] for violation in violations],
                reason="; ".join(violations),
            )

    def collect_warnings(self, invoice: CanonicalInvoice) -> list[str]:
        country = (invoice.seller.country_code or "").upper()
        if country and country != "RO":
            return [f"Seller country is {country}; CIUS-RO targets Romanian sellers"]
        return []


def create_xrechnung_ubl() -> UBLGenerator:
    return UBLGenerator(XRECHNUNG_UBL)


def create_peppol_bis() -> UBLGenerator:
    return UBLGenerator(PEPPOL_BIS)


def create_nlcius() -> UBLGenerator:
    return UBLGenerator(NLCIUS)
