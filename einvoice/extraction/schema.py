"""Invoice data models for structured extraction.

Flat field set returned by extraction providers after normalization. Numeric
fields are floats so that unparseable values can travel as NaN to the
validator instead of being replaced with zero.
"""

from pydantic import BaseModel, Field


class ExtractedLineItem(BaseModel):
    """Line item as read from the source document."""

    description: str = ""
    quantity: float | None = Field(None, description="Invoiced quantity")
    unit_price: float | None = Field(None, description="Net unit price")
    total_price: float | None = Field(None, description="Net line total")
    tax_rate: float | None = Field(None, description="VAT rate in percent")
    tax_category_code: str | None = Field(None, description="UNTDID 5305 VAT category")
    unit_code: str | None = Field(None, description="UNECE Rec 20 unit code")


class ExtractedInvoiceData(BaseModel):
    """Structured invoice data extracted from a document."""

    invoice_number: str | None = Field(None, description="Unique invoice identifier")
    invoice_date: str | None = Field(None, description="Date invoice was issued")
    due_date: str | None = Field(None, description="Payment due date")
    document_type_code: int | None = Field(None, description="380 invoice, 381 credit note")
    buyer_reference: str | None = Field(None, description="Buyer reference / Leitweg-ID")

    # Seller information
    seller_name: str | None = Field(None, description="Seller/vendor company name")
    seller_email: str | None = None
    seller_address: str | None = None
    seller_city: str | None = None
    seller_postal_code: str | None = None
    seller_country_code: str | None = None
    seller_tax_id: str | None = Field(None, description="Combined VAT ID or tax number")
    seller_vat_id: str | None = None
    seller_tax_number: str | None = None
    seller_phone: str | None = None
    seller_contact_name: str | None = None
    seller_electronic_address: str | None = None
    seller_electronic_address_scheme: str | None = None
    seller_iban: str | None = None
    seller_bic: str | None = None

    # Buyer information
    buyer_name: str | None = Field(None, description="Customer/buyer company name")
    buyer_email: str | None = None
    buyer_address: str | None = None
    buyer_city: str | None = None
    buyer_postal_code: str | None = None
    buyer_country_code: str | None = None
    buyer_vat_id: str | None = None
    buyer_tax_id: str | None = None
    buyer_phone: str | None = None
    buyer_electronic_address: str | None = None
    buyer_electronic_address_scheme: str | None = None

    line_items: list[ExtractedLineItem] = Field(default_factory=list)

    # Financial details
    subtotal: float | None = Field(None, description="Subtotal before tax")
    tax_rate: float | None = Field(None, description="Document-level VAT rate in percent")
    tax_amount: float | None = Field(None, description="Tax amount")
    total_amount: float = Field(0.0, description="Total amount including tax")
    currency: str = Field("EUR", description="Currency code (ISO 4217)")
    payment_terms: str | None = None
    notes: str | None = None

    # Confidence tracking
    confidence: float | None = Field(None, description="Overall extraction confidence (0-1)")
