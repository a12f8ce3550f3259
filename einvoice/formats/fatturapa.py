"""FatturaPA 1.2 (Italy, Sistema di Interscambio) generator.

Reference: https://www.fatturapa.gov.it/en/norme-e-regole/documentazione-fattura-elettronica/
"""

import re
from xml.etree import ElementTree as ET

from einvoice.formats.base import FormatDescriptor, FormatGenerator
from einvoice.formats.tax import group_by_rate, line_category, line_rate
from einvoice.invoice.model import CanonicalInvoice, PartyInfo
from einvoice.invoice.xml_utils import format_amount, format_date_iso, sub_element, to_xml_string
from einvoice.shared.errors import GeneratorSchemaError

NS_FATTURAPA = "http://ivaservizi.agenziaentrate.gov.it/docs/xsd/fatture/v1.2"

FATTURAPA = FormatDescriptor(
    format_id="fatturapa",
    format_name="FatturaPA 1.2 (Italy)",
    version="1.0.0",
    spec_version="1.2.2",
    spec_date="2022-09-29",
    file_suffix="fatturapa",
    required_fields=(
        "invoice_number",
        "invoice_date",
        "seller.name",
        "seller.vat_id",
        "buyer.name",
        "line_items",
    ),
    required_elements=(
        "FatturaElettronicaHeader",
        "FatturaElettronicaBody",
        "DatiTrasmissione",
        "CedentePrestatore",
        "CessionarioCommittente",
        "DatiGeneraliDocumento",
        "DettaglioLinee",
        "DatiRiepilogo",
    ),
)

# Natura codes for 0% lines, keyed by EN 16931 VAT category
NATURA_CODES = {
    "E": "N4",
    "Z": "N2.1",
    "AE": "N6",
    "K": "N3.2",
    "G": "N3.1",
    "O": "N2.2",
}
DEFAULT_NATURA = "N2.2"

_DESTINATION_CODE = re.compile(r"^[A-Z0-9]{7}$")


def natura_code(category: str | None, rate: float) -> str | None:
    """Map a VAT category to a FatturaPA Natura code (only for 0% VAT)."""
    if rate > 0:
        return None
    return NATURA_CODES.get(category or "", DEFAULT_NATURA)


def split_vat_id(vat_id: str | None, fallback_country: str | None = None) -> tuple[str, str] | None:
    """Split 'IT12345678901' into ('IT', '12345678901').

    An ID without a country prefix is attributed to the fallback country
    (Italy by default).
    """
    compact = re.sub(r"\s", "", vat_id or "")
    if len(compact) < 2:
        return None
    if compact[:2].isalpha():
        return compact[:2].upper(), compact[2:]
    return (fallback_country or "IT").upper(), compact


def _tipo_documento(code: int) -> str:
    return "TD04" if code == 381 else "TD01"


def _address(parent: ET.Element, party: PartyInfo, country: str) -> None:
    sede = sub_element(parent, "Sede")
    sub_element(sede, "Indirizzo", party.address or "N/A")
    sub_element(sede, "CAP", party.postal_code or "00000")
    sub_element(sede, "Comune", party.city or "N/A")
    sub_element(sede, "Nazione", (party.country_code or country).upper())


def _fiscal_id(parent: ET.Element, country: str, code: str) -> None:
    fiscal = sub_element(parent, "IdFiscaleIVA")
    sub_element(fiscal, "IdPaese", country)
    sub_element(fiscal, "IdCodice", code)


class FatturaPAGenerator(FormatGenerator):
    """FatturaElettronica FPR12 (B2B) generator.

    The seller VAT ID is mandatory: it identifies both the transmitter and
    the CedentePrestatore.
    """

    def __init__(self, descriptor: FormatDescriptor = FATTURAPA) -> None:
        super().__init__(descriptor)

    def check_business_rules(self, invoice: CanonicalInvoice) -> None:
        if split_vat_id(invoice.seller.vat_id, invoice.seller.country_code) is None:
            raise GeneratorSchemaError(
                self.format_id,
                ["seller.vat_id"],
                reason="FatturaPA requires seller VAT ID (Italian format: IT + 11 digits)",
            )

    def build_xml(self, invoice: CanonicalInvoice) -> str:
        seller_vat = split_vat_id(invoice.seller.vat_id, invoice.seller.country_code)
        if seller_vat is None:
            raise GeneratorSchemaError(self.format_id, ["seller.vat_id"])
        buyer_vat = split_vat_id(invoice.buyer.vat_id, invoice.buyer.country_code)
        tipo = _tipo_documento(invoice.document_type_code)
        progressivo = re.sub(r"[^A-Za-z0-9]", "", invoice.invoice_number or "00001")[:10].rjust(
            5, "0"
        )

        root = ET.Element(
            "p:FatturaElettronica", {"xmlns:p": NS_FATTURAPA, "versione": "FPR12"}
        )
        header = sub_element(root, "FatturaElettronicaHeader")

        transmission = sub_element(header, "DatiTrasmissione")
        transmitter = sub_element(transmission, "IdTrasmittente")
        sub_element(transmitter, "IdPaese", seller_vat[0])
        sub_element(transmitter, "IdCodice", seller_vat[1])
        sub_element(transmission, "ProgressivoInvio", progressivo)
        sub_element(transmission, "FormatoTrasmissione", "FPR12")
        destination = (invoice.buyer.electronic_address or "").upper()
        sub_element(
            transmission,
            "CodiceDestinatario",
            destination if _DESTINATION_CODE.match(destination) else "0000000",
        )

        seller = sub_element(header, "CedentePrestatore")
        seller_data = sub_element(seller, "DatiAnagrafici")
        _fiscal_id(seller_data, *seller_vat)
        if invoice.seller.tax_number:
            sub_element(seller_data, "CodiceFiscale", invoice.seller.tax_number)
        registry = sub_element(seller_data, "Anagrafica")
        sub_element(registry, "Denominazione", invoice.seller.name)
        sub_element(seller_data, "RegimeFiscale", invoice.seller.tax_regime or "RF01")
        _address(seller, invoice.seller, seller_vat[0])

        buyer = sub_element(header, "CessionarioCommittente")
        buyer_data = sub_element(buyer, "DatiAnagrafici")
        if buyer_vat:
            _fiscal_id(buyer_data, *buyer_vat)
        if invoice.buyer.tax_number:
            sub_element(buyer_data, "CodiceFiscale", invoice.buyer.tax_number)
        registry = sub_element(buyer_data, "Anagrafica")
        sub_element(registry, "Denominazione", invoice.buyer.name)
        _address(buyer, invoice.buyer, buyer_vat[0] if buyer_vat else "IT")

        body = sub_element(root, "FatturaElettronicaBody")
        general = sub_element(body, "DatiGenerali")
        document = sub_element(general, "DatiGeneraliDocumento")
        sub_element(document, "TipoDocumento", tipo)
        sub_element(document, "Divisa", invoice.currency)
        sub_element(document, "Data", format_date_iso(invoice.invoice_date))
        sub_element(document, "Numero", invoice.invoice_number)
        sub_element(document, "ImportoTotaleDocumento", format_amount(invoice.totals.total_amount))
        if invoice.notes:
            sub_element(document, "Causale", invoice.notes[:200])
        if tipo == "TD04" and invoice.preceding_invoice_reference:
            linked = sub_element(general, "DatiFattureCollegate")
            sub_element(linked, "IdDocumento", invoice.preceding_invoice_reference)

        goods = sub_element(body, "DatiBeniServizi")
        for index, item in enumerate(invoice.line_items, start=1):
            rate = line_rate(item, invoice)
            line = sub_element(goods, "DettaglioLinee")
            sub_element(line, "NumeroLinea", str(index))
            sub_element(line, "Descrizione", item.description or f"Item {index}")
            sub_element(line, "Quantita", f"{item.quantity:.2f}")
            sub_element(line, "PrezzoUnitario", format_amount(item.unit_price))
            sub_element(line, "PrezzoTotale", format_amount(item.total_price))
            sub_element(line, "AliquotaIVA", f"{rate:.2f}")
            natura = natura_code(line_category(item, invoice), rate)
            if natura:
                sub_element(line, "Natura", natura)

        for group in group_by_rate(invoice):
            summary = sub_element(goods, "DatiRiepilogo")
            sub_element(summary, "AliquotaIVA", f"{group.rate:.2f}")
            natura = natura_code(group.category_code, group.rate)
            if natura:
                sub_element(summary, "Natura", natura)
            sub_element(summary, "ImponibileImporto", format_amount(group.basis))
            sub_element(summary, "Imposta", format_amount(group.tax))

        payment = sub_element(body, "DatiPagamento")
        sub_element(payment, "CondizioniPagamento", "TP02")
        detail = sub_element(payment, "DettaglioPagamento")
        sub_element(detail, "ModalitaPagamento", "MP05" if invoice.payment.iban else "MP01")
        if invoice.payment.due_date:
            sub_element(
                detail, "DataScadenzaPagamento", format_date_iso(invoice.payment.due_date)
            )
        sub_element(detail, "ImportoPagamento", format_amount(invoice.totals.total_amount))
        if invoice.payment.iban:
            sub_element(detail, "IBAN", invoice.payment.iban.replace(" ", ""))
        if invoice.payment.bic:
            sub_element(detail, "BIC", invoice.payment.bic)

        return to_xml_string(root)
