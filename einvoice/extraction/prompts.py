"""Extraction prompt shared by all providers.

Keys are camelCase because that is what models produce most reliably; the
normalizer maps them to the snake_case schema.
"""

EXTRACTION_SCHEMA = """{
  "invoiceNumber": string|null,
  "invoiceDate": string|null (YYYY-MM-DD),
  "dueDate": string|null (YYYY-MM-DD),
  "documentTypeCode": number|null (380 invoice, 381 credit note, 384 corrected, 389 self-billed),
  "buyerReference": string|null (Leitweg-ID, PO or contract reference),
  "sellerName": string|null,
  "sellerAddress": string|null (street and house number only),
  "sellerCity": string|null,
  "sellerPostalCode": string|null,
  "sellerCountryCode": string|null (ISO 3166-1 alpha-2),
  "sellerVatId": string|null (EU VAT ID with country prefix, e.g. DE123456789),
  "sellerTaxNumber": string|null (local tax number without country prefix),
  "sellerEmail": string|null,
  "sellerPhone": string|null,
  "sellerElectronicAddress": string|null,
  "sellerElectronicAddressScheme": string|null ("EM" for email addresses),
  "sellerIban": string|null,
  "sellerBic": string|null,
  "buyerName": string|null,
  "buyerAddress": string|null,
  "buyerCity": string|null,
  "buyerPostalCode": string|null,
  "buyerCountryCode": string|null,
  "buyerVatId": string|null,
  "buyerEmail": string|null,
  "buyerElectronicAddress": string|null,
  "lineItems": [
    {"description": string, "quantity": number, "unitPrice": number,
     "totalPrice": number, "taxRate": number|null, "taxCategoryCode": string|null}
  ],
  "subtotal": number|null,
  "taxRate": number|null (only if a single rate is printed),
  "taxAmount": number|null,
  "totalAmount": number|null,
  "currency": string|null (ISO 4217),
  "paymentTerms": string|null,
  "notes": string|null,
  "confidence": number (0-1)
}"""

EXTRACTION_INSTRUCTIONS = """INSTRUCTIONS:
- Extract EVERY row of the line item table; lineItems must not be empty
- totalPrice is the net line total (quantity x unitPrice)
- Only set taxRate on a line if it is printed for that line
- Convert dates to YYYY-MM-DD
- Convert European decimals: 1.234,56 -> 1234.56
- Never guess amounts; use null when a value is not visible
- Return ONLY valid JSON. No markdown. No explanation."""


def build_extraction_prompt(extracted_text: str | None = None) -> str:
    """Build the extraction prompt.

    Args:
        extracted_text: Text layer of the document, when available

    Returns:
        Prompt asking for the JSON schema above
    """
    prompt = (
        "You are an expert invoice extraction system. Extract the invoice data from the "
        "provided document and return ONLY a JSON object with this structure "
        f"(use null for missing fields):\n\n{EXTRACTION_SCHEMA}\n\n{EXTRACTION_INSTRUCTIONS}"
    )
    if extracted_text:
        prompt += (
            "\n\nThe text layer of the document is given below. Use it to verify numbers "
            f"and identifiers.\n\nDOCUMENT TEXT:\n{extracted_text}"
        )
    return prompt
