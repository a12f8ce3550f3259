"""UN/CEFACT Cross Industry Invoice (CII D16B) builder.

Used directly by the XRechnung CII generator and reused by Factur-X, which
differs only in its guideline ID and the absence of a business process
parameter.

Reference: https://xeinkauf.de/xrechnung/ (XRechnung 3.0 CII syntax binding)
"""

from xml.etree import ElementTree as ET

from einvoice.formats.base import FormatDescriptor, FormatGenerator
from einvoice.formats.tax import format_rate, group_by_rate, line_category, line_rate
from einvoice.invoice.model import CanonicalInvoice, PartyInfo
from einvoice.invoice.xml_utils import (
    format_amount,
    format_date_cii,
    format_quantity,
    sub_element,
    to_xml_string,
)
from einvoice.normalization.numbers import is_eu_vat_id

NS_RSM = "urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100"
NS_RAM = "urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100"
NS_UDT = "urn:un:unece:uncefact:data:standard:UnqualifiedDataType:100"

XRECHNUNG_GUIDELINE_ID = "urn:cen.eu:en16931:2017#compliant#urn:xeinkauf.de:kosit:xrechnung_3.0"
PEPPOL_BUSINESS_PROCESS_ID = "urn:fdc:peppol.eu:2017:poacc:billing:01:1.0"

CII_REQUIRED_ELEMENTS = (
    "ExchangedDocumentContext",
    "ExchangedDocument",
    "SupplyChainTradeTransaction",
    "IncludedSupplyChainTradeLineItem",
    "ApplicableHeaderTradeAgreement",
    "SellerTradeParty",
    "BuyerTradeParty",
    "ApplicableHeaderTradeDelivery",
    "ApplicableHeaderTradeSettlement",
    "SpecifiedTradeSettlementHeaderMonetarySummation",
)

XRECHNUNG_CII = FormatDescriptor(
    format_id="xrechnung-cii",
    format_name="XRechnung 3.0 (CII)",
    version="1.0.0",
    spec_version="3.0.2",
    spec_date="2024-06-20",
    file_suffix="xrechnung",
    required_fields=(
        "invoice_number",
        "invoice_date",
        "buyer_reference",
        "seller.name",
        "seller.email",
        "seller.city",
        "seller.postal_code",
        "seller.country_code",
        "seller.vat_id|seller.tax_number",
        "buyer.name",
        "buyer.country_code",
        "line_items",
    ),
    required_elements=(*CII_REQUIRED_ELEMENTS, "BuyerReference"),
    customization_id=XRECHNUNG_GUIDELINE_ID,
    profile_id=PEPPOL_BUSINESS_PROCESS_ID,
)


def _date(parent: ET.Element, tag: str, value: str) -> None:
    wrapper = sub_element(parent, tag)
    sub_element(wrapper, "udt:DateTimeString", format_date_cii(value), {"format": "102"})


def _party(parent: ET.Element, tag: str, party: PartyInfo, with_contact: bool) -> None:
    node = sub_element(parent, tag)
    sub_element(node, "ram:Name", party.name)

    if with_contact and (party.contact_name or party.phone or party.email):
        contact = sub_element(node, "ram:DefinedTradeContact")
        sub_element(contact, "ram:PersonName", party.contact_name or party.name)
        if party.phone:
            phone = sub_element(contact, "ram:TelephoneUniversalCommunication")
            sub_element(phone, "ram:CompleteNumber", party.phone)
        if party.email:
            email = sub_element(contact, "ram:EmailURIUniversalCommunication")
            sub_element(email, "ram:URIID", party.email)

    address = sub_element(node, "ram:PostalTradeAddress")
    if party.postal_code:
        sub_element(address, "ram:PostcodeCode", party.postal_code)
    if party.address:
        sub_element(address, "ram:LineOne", party.address)
    if party.city:
        sub_element(address, "ram:CityName", party.city)
    sub_element(address, "ram:CountryID", (party.country_code or "DE").upper())

    if party.electronic_address:
        uri = sub_element(node, "ram:URIUniversalCommunication")
        sub_element(
            uri,
            "ram:URIID",
            party.electronic_address,
            {"schemeID": party.electronic_address_scheme or "EM"},
        )

    if party.vat_id:
        registration = sub_element(node, "ram:SpecifiedTaxRegistration")
        sub_element(registration, "ram:ID", party.vat_id, {"schemeID": "VA"})
    if party.tax_number and not is_eu_vat_id(party.tax_number):
        registration = sub_element(node, "ram:SpecifiedTaxRegistration")
        sub_element(registration, "ram:ID", party.tax_number, {"schemeID": "FC"})


def build_cii_document(
    invoice: CanonicalInvoice,
    guideline_id: str,
    business_process_id: str | None = None,
) -> str:
    """Serialize a canonical invoice as CII XML.

    Args:
        invoice: Canonical invoice (read-only)
        guideline_id: Value of GuidelineSpecifiedDocumentContextParameter
        business_process_id: Business process parameter, omitted when None

    Returns:
        CII XML document
    """
    currency = invoice.currency
    root = ET.Element(
        "rsm:CrossIndustryInvoice",
        {"xmlns:rsm": NS_RSM, "xmlns:ram": NS_RAM, "xmlns:udt": NS_UDT},
    )

    context = sub_element(root, "rsm:ExchangedDocumentContext")
    if business_process_id:
        process = sub_element(context, "ram:BusinessProcessSpecifiedDocumentContextParameter")
        sub_element(process, "ram:ID", business_process_id)
    guideline = sub_element(context, "ram:GuidelineSpecifiedDocumentContextParameter")
    sub_element(guideline, "ram:ID", guideline_id)

    document = sub_element(root, "rsm:ExchangedDocument")
    sub_element(document, "ram:ID", invoice.invoice_number)
    sub_element(document, "ram:TypeCode", str(invoice.document_type_code))
    _date(document, "ram:IssueDateTime", invoice.invoice_date)
    if invoice.notes:
        note = sub_element(document, "ram:IncludedNote")
        sub_element(note, "ram:Content", invoice.notes)

    transaction = sub_element(root, "rsm:SupplyChainTradeTransaction")

    for index, item in enumerate(invoice.line_items, start=1):
        line = sub_element(transaction, "ram:IncludedSupplyChainTradeLineItem")
        line_doc = sub_element(line, "ram:AssociatedDocumentLineDocument")
        sub_element(line_doc, "ram:LineID", str(index))
        product = sub_element(line, "ram:SpecifiedTradeProduct")
        sub_element(product, "ram:Name", item.description or f"Item {index}")
        agreement = sub_element(line, "ram:SpecifiedLineTradeAgreement")
        price = sub_element(agreement, "ram:NetPriceProductTradePrice")
        sub_element(price, "ram:ChargeAmount", format_amount(item.unit_price))
        delivery = sub_element(line, "ram:SpecifiedLineTradeDelivery")
        sub_element(
            delivery,
            "ram:BilledQuantity",
            format_quantity(item.quantity),
            {"unitCode": item.unit_code or "C62"},
        )
        settlement = sub_element(line, "ram:SpecifiedLineTradeSettlement")
        tax = sub_element(settlement, "ram:ApplicableTradeTax")
        sub_element(tax, "ram:TypeCode", "VAT")
        sub_element(tax, "ram:CategoryCode", line_category(item, invoice))
        sub_element(tax, "ram:RateApplicablePercent", format_rate(line_rate(item, invoice)))
        summation = sub_element(settlement, "ram:SpecifiedTradeSettlementLineMonetarySummation")
        sub_element(summation, "ram:LineTotalAmount", format_amount(item.total_price))

    agreement = sub_element(transaction, "ram:ApplicableHeaderTradeAgreement")
    if invoice.buyer_reference:
        sub_element(agreement, "ram:BuyerReference", invoice.buyer_reference)
    _party(agreement, "ram:SellerTradeParty", invoice.seller, with_contact=True)
    _party(agreement, "ram:BuyerTradeParty", invoice.buyer, with_contact=False)

    sub_element(transaction, "ram:ApplicableHeaderTradeDelivery")

    settlement = sub_element(transaction, "ram:ApplicableHeaderTradeSettlement")
    sub_element(settlement, "ram:InvoiceCurrencyCode", currency)

    if invoice.payment.iban:
        means = sub_element(settlement, "ram:SpecifiedTradeSettlementPaymentMeans")
        sub_element(means, "ram:TypeCode", "58")
        account = sub_element(means, "ram:PayeePartyCreditorFinancialAccount")
        sub_element(account, "ram:IBANID", invoice.payment.iban.replace(" ", ""))
        if invoice.payment.bic:
            institution = sub_element(means, "ram:PayeeSpecifiedCreditorFinancialInstitution")
            sub_element(institution, "ram:BICID", invoice.payment.bic)

    for group in group_by_rate(invoice):
        tax = sub_element(settlement, "ram:ApplicableTradeTax")
        sub_element(tax, "ram:CalculatedAmount", format_amount(group.tax))
        sub_element(tax, "ram:TypeCode", "VAT")
        sub_element(tax, "ram:BasisAmount", format_amount(group.basis))
        sub_element(tax, "ram:CategoryCode", group.category_code)
        sub_element(tax, "ram:RateApplicablePercent", format_rate(group.rate))

    if invoice.billing_period_start or invoice.billing_period_end:
        period = sub_element(settlement, "ram:BillingSpecifiedPeriod")
        if invoice.billing_period_start:
            _date(period, "ram:StartDateTime", invoice.billing_period_start)
        if invoice.billing_period_end:
            _date(period, "ram:EndDateTime", invoice.billing_period_end)

    if invoice.payment.payment_terms or invoice.payment.due_date:
        terms = sub_element(settlement, "ram:SpecifiedTradePaymentTerms")
        if invoice.payment.payment_terms:
            sub_element(terms, "ram:Description", invoice.payment.payment_terms)
        if invoice.payment.due_date:
            _date(terms, "ram:DueDateDateTime", invoice.payment.due_date)

    totals = invoice.totals
    summation = sub_element(settlement, "ram:SpecifiedTradeSettlementHeaderMonetarySummation")
    sub_element(summation, "ram:LineTotalAmount", format_amount(totals.subtotal))
    sub_element(summation, "ram:TaxBasisTotalAmount", format_amount(totals.subtotal))
    sub_element(
        summation,
        "ram:TaxTotalAmount",
        format_amount(totals.tax_amount),
        {"currencyID": currency},
    )
    sub_element(summation, "ram:GrandTotalAmount", format_amount(totals.total_amount))
    sub_element(summation, "ram:DuePayableAmount", format_amount(totals.total_amount))

    if invoice.preceding_invoice_reference:
        referenced = sub_element(settlement, "ram:InvoiceReferencedDocument")
        sub_element(referenced, "ram:IssuerAssignedID", invoice.preceding_invoice_reference)

    return to_xml_string(root)


class XRechnungCIIGenerator(FormatGenerator):
    """XRechnung 3.0 in CII syntax (German public-sector B2G invoices).

    The buyer reference carries the Leitweg-ID and is mandatory.
    """

    def __init__(self, descriptor: FormatDescriptor = XRECHNUNG_CII) -> None:
        super().__init__(descriptor)

    def build_xml(self, invoice: CanonicalInvoice) -> str:
        return build_cii_document(
            invoice,
            guideline_id=XRECHNUNG_GUIDELINE_ID,
            business_process_id=PEPPOL_BUSINESS_PROCESS_ID,
        )
