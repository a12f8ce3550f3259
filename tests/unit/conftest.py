"""Shared fixtures for unit tests."""

from typing import Any

import pytest

from einvoice.invoice.model import (
    CanonicalInvoice,
    DocumentTotals,
    LineItem,
    PartyInfo,
    PaymentInfo,
)


@pytest.fixture
def sample_invoice() -> CanonicalInvoice:
    """German B2G invoice: two lines at 19%, 2000.00 net, 2380.00 gross."""
    return CanonicalInvoice(
        invoice_number="RE-2024-001",
        invoice_date="2024-03-15",
        buyer_reference="04011000-12345-34",
        seller=PartyInfo(
            name="Muster GmbH",
            email="billing@muster.de",
            address="Hauptstr. 1",
            city="Berlin",
            postal_code="10115",
            country_code="DE",
            vat_id="DE123456789",
            electronic_address="billing@muster.de",
            electronic_address_scheme="EM",
        ),
        buyer=PartyInfo(
            name="Kunde AG",
            address="Marktplatz 5",
            city="Hamburg",
            postal_code="20095",
            country_code="DE",
            electronic_address="einkauf@kunde.de",
            electronic_address_scheme="EM",
        ),
        payment=PaymentInfo(
            iban="DE89370400440532013000",
            bic="COBADEFFXXX",
            payment_terms="Zahlbar innerhalb 14 Tagen",
            due_date="2024-03-29",
        ),
        line_items=(
            LineItem(
                description="Beratung",
                quantity=10,
                unit_price=150.0,
                total_price=1500.0,
                tax_rate=19.0,
                tax_category_code="S",
            ),
            LineItem(
                description="Reisekosten",
                quantity=1,
                unit_price=500.0,
                total_price=500.0,
                tax_rate=19.0,
                tax_category_code="S",
            ),
        ),
        totals=DocumentTotals(subtotal=2000.0, tax_amount=380.0, total_amount=2380.0),
        tax_rate=19.0,
    )


class FakeRedis:
    """Just enough of ArqRedis for job state and enqueueing."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}
        self.enqueued: list[tuple[str, dict[str, Any]]] = []

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.data[key] = value
        self.expiry[key] = ex

    async def enqueue_job(self, function: str, **kwargs: Any) -> None:
        self.enqueued.append((function, kwargs))


@pytest.fixture
def redis() -> FakeRedis:
    """Empty in-memory Redis double."""
    return FakeRedis()
