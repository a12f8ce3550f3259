"""Canonical invoice data model.

Format-agnostic representation consumed by every format generator. Field
names follow the EN 16931 semantic model (business term IDs in the field
descriptions).

Models are frozen: a new instance replaces the old one after re-extraction
or a manual review edit, and generators only ever read them.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

OutputFormat = Literal[
    "xrechnung-cii",
    "xrechnung-ubl",
    "peppol-bis",
    "facturx-en16931",
    "facturx-basic",
    "fatturapa",
    "ksef",
    "nlcius",
    "cius-ro",
]

# UNTDID 5305 VAT category codes
TaxCategoryCode = Literal["S", "Z", "E", "AE", "K", "G", "O", "L", "M"]


class PartyInfo(BaseModel):
    """Seller (BG-4) or buyer (BG-7) party."""

    model_config = ConfigDict(frozen=True)

    name: str = Field("", description="Party name (BT-27 / BT-44)")
    email: str | None = None
    address: str | None = Field(None, description="Street line (BT-35 / BT-50)")
    city: str | None = Field(None, description="City (BT-37 / BT-52)")
    postal_code: str | None = Field(None, description="Postal code (BT-38 / BT-53)")
    country_code: str | None = Field(None, description="ISO 3166-1 alpha-2 (BT-40 / BT-55)")
    vat_id: str | None = Field(None, description="VAT identifier with country prefix (BT-31)")
    tax_number: str | None = Field(None, description="Local tax registration number (BT-32)")
    electronic_address: str | None = Field(None, description="Endpoint ID (BT-34 / BT-49)")
    electronic_address_scheme: str | None = Field(None, description="Endpoint scheme (BT-34-1)")
    contact_name: str | None = Field(None, description="Contact point (BT-41 / BT-56)")
    phone: str | None = None
    tax_regime: str | None = Field(None, description="FatturaPA RegimeFiscale (RF01-RF19)")


class PaymentInfo(BaseModel):
    """Payment instructions (BG-16 / BG-17)."""

    model_config = ConfigDict(frozen=True)

    iban: str | None = Field(None, description="Payee IBAN (BT-84)")
    bic: str | None = Field(None, description="Payee BIC (BT-86)")
    payment_terms: str | None = Field(None, description="Payment terms text (BT-20)")
    due_date: str | None = Field(None, description="Payment due date (BT-9)")


class LineItem(BaseModel):
    """Invoice line (BG-25)."""

    model_config = ConfigDict(frozen=True)

    description: str = ""
    quantity: float = 1.0
    unit_price: float = 0.0
    total_price: float = 0.0
    tax_rate: float | None = Field(None, description="VAT rate percentage (BT-152)")
    tax_category_code: TaxCategoryCode | None = Field(None, description="VAT category (BT-151)")
    unit_code: str | None = Field(None, description="UNECE Rec 20 unit code (BT-130)")


class DocumentTotals(BaseModel):
    """Document totals (BG-22)."""

    model_config = ConfigDict(frozen=True)

    subtotal: float = 0.0
    tax_amount: float = 0.0
    total_amount: float = 0.0


class CanonicalInvoice(BaseModel):
    """Canonical invoice representation consumed by all generators."""

    model_config = ConfigDict(frozen=True)

    output_format: OutputFormat = "xrechnung-cii"
    invoice_number: str = Field("", description="Invoice number (BT-1)")
    invoice_date: str = Field("", description="Issue date (BT-2)")
    document_type_code: int = Field(380, description="380 invoice, 381 credit note (BT-3)")
    currency: str = Field("EUR", description="ISO 4217 currency (BT-5)")
    buyer_reference: str | None = Field(None, description="Buyer reference / Leitweg-ID (BT-10)")
    notes: str | None = None
    preceding_invoice_reference: str | None = Field(None, description="BT-25")
    billing_period_start: str | None = None
    billing_period_end: str | None = None

    seller: PartyInfo = Field(default_factory=PartyInfo)
    buyer: PartyInfo = Field(default_factory=PartyInfo)
    payment: PaymentInfo = Field(default_factory=PaymentInfo)
    line_items: tuple[LineItem, ...] = ()
    totals: DocumentTotals = Field(default_factory=DocumentTotals)
    tax_rate: float | None = Field(None, description="Document-level rate for single-rate invoices")

    confidence: float | None = None

    @property
    def is_credit_note(self) -> bool:
        return self.document_type_code == 381
