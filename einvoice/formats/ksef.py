"""KSeF FA(3) structured invoice generator (Poland).

Reference: https://www.podatki.gov.pl/ksef/ (schema FA(3), 1-0E)
"""

import logging
import re
from xml.etree import ElementTree as ET

from einvoice.formats.base import FormatDescriptor, FormatGenerator
from einvoice.formats.tax import format_rate, group_by_rate, line_category, line_rate
from einvoice.invoice.model import CanonicalInvoice, PartyInfo
from einvoice.invoice.monetary import sum_money
from einvoice.invoice.xml_utils import (
    format_amount,
    format_date_iso,
    format_quantity,
    sub_element,
    to_xml_string,
)
from einvoice.shared.errors import GeneratorSchemaError

logger = logging.getLogger(__name__)

NS_KSEF = "http://crd.gov.pl/wzor/2025/06/25/13775/"
SYSTEM_INFO = "einvoice-platform"

KSEF = FormatDescriptor(
    format_id="ksef",
    format_name="KSeF FA(3) (Poland)",
    version="2.0.0",
    spec_version="FA(3)",
    spec_date="2024-11-20",
    file_suffix="ksef",
    required_fields=(
        "invoice_number",
        "invoice_date",
        "seller.name",
        "seller.tax_number|seller.vat_id",
        "buyer.name",
        "line_items",
    ),
    required_elements=(
        "Naglowek",
        "Podmiot1",
        "Podmiot2",
        "Fa",
        "Adnotacje",
        "RodzajFaktury",
        "JST",
    ),
)

# Standard Polish VAT rates -> (P_13 net field, P_14 tax field), in FA(3) sequence order
RATE_FIELDS = {
    23.0: ("P_13_1", "P_14_1"),
    8.0: ("P_13_2", "P_14_2"),
    5.0: ("P_13_3", "P_14_3"),
    22.0: ("P_13_4", "P_14_4"),
    7.0: ("P_13_5", "P_14_5"),
}
ZERO_RATE_FIELD = "P_13_6_1"

# P_12 value for 0% lines, keyed by EN 16931 VAT category
ZERO_RATE_CODES = {
    "E": "zw",
    "O": "np",
    "K": "np",
    "G": "np",
    "AE": "oo",
    "Z": "0",
}

CORRECTION_TYPE_CODES = {381, 384}
ADVANCE_TYPE_CODE = 389


def extract_nip(party: PartyInfo) -> str | None:
    """Polish NIP: 10 digits after stripping the PL prefix and separators."""
    raw = party.tax_number or party.vat_id
    if not raw:
        return None
    digits = re.sub(r"\D", "", re.sub(r"^PL", "", raw.strip().upper()))
    return digits[:10] if len(digits) >= 10 else None


def invoice_kind(document_type_code: int) -> str:
    """RodzajFaktury for a UNTDID 1001 document type."""
    if document_type_code in CORRECTION_TYPE_CODES:
        return "KOR"
    if document_type_code == ADVANCE_TYPE_CODE:
        return "ZAL"
    return "VAT"


def p12_code(category: str | None, rate: float) -> str:
    """P_12 tax marker: the rate itself, or a code for 0% lines."""
    if rate > 0:
        return format_rate(rate)
    return ZERO_RATE_CODES.get(category or "", "0")


def _address(parent: ET.Element, party: PartyInfo) -> None:
    address = sub_element(parent, "Adres")
    sub_element(address, "KodKraju", (party.country_code or "PL").upper())
    sub_element(address, "AdresL1", party.address or "N/A")
    locality = " ".join(part for part in (party.postal_code, party.city) if part)
    if locality:
        sub_element(address, "AdresL2", locality)


def _contact(parent: ET.Element, party: PartyInfo) -> None:
    if not (party.email or party.phone):
        return
    contact = sub_element(parent, "DaneKontaktowe")
    if party.email:
        sub_element(contact, "Email", party.email)
    if party.phone:
        sub_element(contact, "Telefon", party.phone)


class KSeFGenerator(FormatGenerator):
    """FA(3) generator for the Polish National e-Invoice System."""

    def __init__(self, descriptor: FormatDescriptor = KSEF) -> None:
        super().__init__(descriptor)

    def check_business_rules(self, invoice: CanonicalInvoice) -> None:
        if extract_nip(invoice.seller) is None:
            raise GeneratorSchemaError(
                self.format_id,
                ["seller.tax_number"],
                reason="KSeF requires a 10-digit seller NIP",
            )

    def collect_warnings(self, invoice: CanonicalInvoice) -> list[str]:
        return [
            f"VAT rate {format_rate(group.rate)}% is not a standard Polish rate; "
            "net amount omitted from the P_13 totals"
            for group in group_by_rate(invoice)
            if group.rate > 0 and group.rate not in RATE_FIELDS
        ]

    def build_xml(self, invoice: CanonicalInvoice) -> str:
        seller_nip = extract_nip(invoice.seller)
        if seller_nip is None:
            raise GeneratorSchemaError(self.format_id, ["seller.tax_number"])
        issue_date = format_date_iso(invoice.invoice_date)
        kind = invoice_kind(invoice.document_type_code)

        root = ET.Element("Faktura", {"xmlns": NS_KSEF})

        header = sub_element(root, "Naglowek")
        sub_element(
            header, "KodFormularza", "FA", {"kodSystemowy": "FA (3)", "wersjaSchemy": "1-0E"}
        )
        sub_element(header, "WariantFormularza", "3")
        sub_element(header, "DataWytworzeniaFa", f"{issue_date}T00:00:00Z")
        sub_element(header, "SystemInfo", SYSTEM_INFO)

        seller = sub_element(root, "Podmiot1")
        identity = sub_element(seller, "DaneIdentyfikacyjne")
        sub_element(identity, "NIP", seller_nip)
        sub_element(identity, "Nazwa", invoice.seller.name)
        _address(seller, invoice.seller)
        _contact(seller, invoice.seller)

        buyer = sub_element(root, "Podmiot2")
        identity = sub_element(buyer, "DaneIdentyfikacyjne")
        buyer_nip = extract_nip(invoice.buyer)
        if buyer_nip:
            sub_element(identity, "NIP", buyer_nip)
        else:
            sub_element(identity, "BrakID", "1")
        sub_element(identity, "Nazwa", invoice.buyer.name)
        _address(buyer, invoice.buyer)
        _contact(buyer, invoice.buyer)
        sub_element(buyer, "JST", "2")
        sub_element(buyer, "GV", "2")

        fa = sub_element(root, "Fa")
        sub_element(fa, "KodWaluty", invoice.currency)
        sub_element(fa, "P_1", issue_date)
        sub_element(fa, "P_2", invoice.invoice_number)
        if invoice.billing_period_start and invoice.billing_period_end:
            period = sub_element(fa, "OkresFa")
            sub_element(period, "P_6_Od", format_date_iso(invoice.billing_period_start))
            sub_element(period, "P_6_Do", format_date_iso(invoice.billing_period_end))

        self._rate_totals(fa, invoice)
        sub_element(fa, "P_15", format_amount(invoice.totals.total_amount))

        annotations = sub_element(fa, "Adnotacje")
        sub_element(annotations, "P_16", "2")
        sub_element(annotations, "P_17", "2")
        sub_element(annotations, "P_18", "2")
        sub_element(annotations, "P_18A", "2")
        exemption = sub_element(annotations, "Zwolnienie")
        sub_element(exemption, "P_19N", "1")
        transport = sub_element(annotations, "NoweSrodkiTransportu")
        sub_element(transport, "P_22N", "1")
        sub_element(annotations, "P_23", "2")
        margin = sub_element(annotations, "PMarzy")
        sub_element(margin, "P_PMarzyN", "1")

        sub_element(fa, "RodzajFaktury", kind)
        if kind == "KOR" and invoice.preceding_invoice_reference:
            corrected = sub_element(fa, "DaneFaKorygowanej")
            sub_element(corrected, "NrFaKorygowanej", invoice.preceding_invoice_reference)

        for index, item in enumerate(invoice.line_items, start=1):
            rate = line_rate(item, invoice)
            row = sub_element(fa, "FaWiersz")
            sub_element(row, "NrWierszaFa", str(index))
            sub_element(row, "P_7", item.description or f"Item {index}")
            sub_element(row, "P_8A", item.unit_code or "C62")
            sub_element(row, "P_8B", format_quantity(item.quantity))
            sub_element(row, "P_9A", format_amount(item.unit_price))
            sub_element(row, "P_11", format_amount(item.total_price))
            sub_element(row, "P_12", p12_code(line_category(item, invoice), rate))

        payment = invoice.payment
        if payment.due_date or payment.iban:
            platnosc = sub_element(fa, "Platnosc")
            if payment.due_date:
                term = sub_element(platnosc, "TerminPlatnosci")
                sub_element(term, "Termin", format_date_iso(payment.due_date))
            sub_element(platnosc, "FormaPlatnosci", "6" if payment.iban else "1")
            if payment.iban:
                account = sub_element(platnosc, "RachunekBankowy")
                sub_element(account, "NrRB", payment.iban.replace(" ", ""))

        return to_xml_string(root)

    def _rate_totals(self, fa: ET.Element, invoice: CanonicalInvoice) -> None:
        """Write P_13_x (net) and P_14_x (tax) per VAT rate bucket.

        Buckets follow the schema sequence P_13_1 ... P_13_5, then P_13_6_1.
        Rates without an FA(3) bucket are left out of the totals.
        """
        bases: dict[float, list[float]] = {}
        taxes: dict[float, list[float]] = {}
        for group in group_by_rate(invoice):
            if group.rate > 0 and group.rate not in RATE_FIELDS:
                logger.warning(
                    f"Non-standard Polish VAT rate {group.rate}% on invoice "
                    f"{invoice.invoice_number}; omitted from P_13 totals"
                )
                continue
            bases.setdefault(group.rate, []).append(group.basis)
            taxes.setdefault(group.rate, []).append(group.tax)

        for rate, (net_field, tax_field) in RATE_FIELDS.items():
            if rate in bases:
                sub_element(fa, net_field, format_amount(sum_money(bases[rate])))
                sub_element(fa, tax_field, format_amount(sum_money(taxes[rate])))
        if 0.0 in bases:
            sub_element(fa, ZERO_RATE_FIELD, format_amount(sum_money(bases[0.0])))
