"""Unit tests for the invoice API.

Tests cover:
- Health, readiness and metrics endpoints
- Format catalogue
- Synchronous validation and conversion
- Queued upload, conversion and job status
"""

import io
from collections.abc import Iterator
from typing import Any
from unittest.mock import patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from pypdf import PdfReader

from einvoice.api import main
from einvoice.api.main import app
from einvoice.invoice.model import CanonicalInvoice
from einvoice.queue.tasks import JobStatus


@pytest.fixture
def client() -> TestClient:
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def queue(redis: Any) -> Iterator[Any]:
    """Enable the queue and route the arq pool to the Redis double."""
    with (
        patch.object(main.settings, "queue_enabled", True),
        patch("einvoice.api.main.get_arq_pool", return_value=redis),
    ):
        yield redis


@pytest.fixture
def raw_extraction() -> dict[str, Any]:
    """Extraction model output with German number formatting."""
    return {
        "invoiceNumber": "R-100",
        "invoiceDate": "2024-05-02",
        "sellerName": "Muster GmbH",
        "buyerName": "Kunde AG",
        "lineItems": [
            {"description": "Service", "quantity": "2", "unitPrice": "100,00",
             "totalPrice": "200,00", "taxRate": "19"},
        ],
        "subtotal": "200,00",
        "taxAmount": "38,00",
        "totalAmount": "238,00",
    }


def test_health_check(client: TestClient) -> None:
    """Test health check endpoint."""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert "service" in data


def test_readiness_without_storage(client: TestClient) -> None:
    """Without storage the service is always ready."""
    with patch.object(main.settings, "storage_enabled", False):
        response = client.get("/ready")

    assert response.json() == {"ready": True, "storage": None}


def test_readiness_reports_storage(client: TestClient) -> None:
    """An unreachable storage backend makes the service unready."""
    with (
        patch.object(main.settings, "storage_enabled", True),
        patch.object(main.storage_service, "health_check", return_value=False),
    ):
        response = client.get("/ready")

    assert response.json() == {"ready": False, "storage": False}


def test_metrics_endpoint(client: TestClient) -> None:
    """Prometheus metrics are exposed after a request."""
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == status.HTTP_200_OK
    assert "http_requests_total" in response.text


def test_list_formats(client: TestClient) -> None:
    """The catalogue lists every format with its standard version."""
    response = client.get("/api/v1/formats")

    assert response.status_code == status.HTTP_200_OK
    formats = {entry["format_id"]: entry for entry in response.json()}
    assert len(formats) == 9
    assert formats["xrechnung-cii"]["spec_version"] == "3.0.2"
    assert set(formats["xrechnung-ubl"]) == {
        "format_id",
        "name",
        "version",
        "spec_version",
        "spec_date",
    }


class TestValidateEndpoint:
    """Test POST /api/v1/invoices/validate."""

    def test_consistent_data(self, client: TestClient, raw_extraction: dict[str, Any]) -> None:
        """Normalized data that adds up is valid."""
        response = client.post("/api/v1/invoices/validate", json=raw_extraction)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["valid"] is True
        assert data["errors"] == []
        assert data["invoice"]["totals"]["total_amount"] == 238.0
        assert data["invoice"]["invoice_date"] == "2024-05-02"

    def test_inconsistent_data_listed(
        self, client: TestClient, raw_extraction: dict[str, Any]
    ) -> None:
        """Arithmetic problems are reported, not rejected."""
        raw_extraction["totalAmount"] = "300,00"

        response = client.post("/api/v1/invoices/validate", json=raw_extraction)

        assert response.status_code == status.HTTP_200_OK
        errors = response.json()["errors"]
        assert [error["field"] for error in errors] == ["totalAmount"]
        assert errors[0]["expected"] == 238.0


class TestConvertEndpoint:
    """Test POST /api/v1/invoices/convert."""

    def test_xml_conversion(self, client: TestClient, sample_invoice: CanonicalInvoice) -> None:
        """XML formats return the document with validation header."""
        response = client.post(
            "/api/v1/invoices/convert",
            params={"format": "xrechnung-ubl"},
            json=sample_invoice.model_dump(mode="json"),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("application/xml")
        assert response.headers["x-validation-status"] == "valid"
        assert 'filename="RE-2024-001_xrechnung_ubl.xml"' in response.headers["content-disposition"]
        assert "<cbc:ID>RE-2024-001</cbc:ID>" in response.text

    def test_facturx_returns_pdf(
        self, client: TestClient, sample_invoice: CanonicalInvoice
    ) -> None:
        """Factur-X is delivered as a PDF with the XML embedded."""
        response = client.post(
            "/api/v1/invoices/convert",
            params={"format": "facturx-en16931"},
            json=sample_invoice.model_dump(mode="json"),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "application/pdf"
        reader = PdfReader(io.BytesIO(response.content))
        assert "factur-x.xml" in reader.attachments

    def test_unknown_format(self, client: TestClient, sample_invoice: CanonicalInvoice) -> None:
        """Unregistered formats are a 400 listing the alternatives."""
        response = client.post(
            "/api/v1/invoices/convert",
            params={"format": "edifact"},
            json=sample_invoice.model_dump(mode="json"),
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        body = response.json()
        assert body["error"] == "UNKNOWN_FORMAT"
        assert "xrechnung-cii" in body["details"]["available"]

    def test_missing_mandatory_fields(
        self, client: TestClient, sample_invoice: CanonicalInvoice
    ) -> None:
        """Peppol without electronic addresses is a 422."""
        invoice = sample_invoice.model_copy(
            update={"seller": sample_invoice.seller.model_copy(update={"electronic_address": None})}
        )

        response = client.post(
            "/api/v1/invoices/convert",
            params={"format": "peppol-bis"},
            json=invoice.model_dump(mode="json"),
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert "seller.electronic_address" in response.json()["details"]["fields"]


class TestUploadEndpoint:
    """Test POST /api/v1/invoices/upload."""

    def test_requires_queue(self, client: TestClient) -> None:
        """Uploads need the background queue."""
        with patch.object(main.settings, "queue_enabled", False):
            response = client.post(
                "/api/v1/invoices/upload",
                files={"file": ("invoice.png", b"\x89PNG", "image/png")},
            )

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    def test_upload_queues_extraction(self, client: TestClient, queue: Any) -> None:
        """A valid upload is stored as a queued job and enqueued."""
        with patch.object(main.storage_service, "is_available", return_value=False):
            response = client.post(
                "/api/v1/invoices/upload",
                params={"format": "facturx-basic"},
                files={"file": ("invoice.png", b"\x89PNG data", "image/png")},
            )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "queued"
        function, kwargs = queue.enqueued[0]
        assert function == "process_extraction"
        assert kwargs["job_id"] == data["job_id"]
        assert kwargs["invoice_id"] == data["invoice_id"]
        assert kwargs["output_format"] == "facturx-basic"
        assert kwargs["file_content_b64"] == "iVBORyBkYXRh"
        assert "object_name" not in kwargs

    def test_upload_saves_job_state(self, client: TestClient, queue: Any) -> None:
        """The job can be polled right after upload."""
        response = client.post(
            "/api/v1/invoices/upload",
            files={"file": ("invoice.pdf", b"%PDF-1.7", "application/pdf")},
        )

        job = JobStatus.model_validate_json(queue.data[f"job:{response.json()['job_id']}"])
        assert job.kind == "extraction"
        assert job.output_format == "xrechnung-cii"

    def test_upload_to_storage(self, client: TestClient, queue: Any) -> None:
        """With storage available the job references the stored object."""
        with (
            patch.object(main.storage_service, "is_available", return_value=True),
            patch.object(main.storage_service, "upload_bytes") as mock_upload,
        ):
            mock_upload.return_value.success = True
            response = client.post(
                "/api/v1/invoices/upload",
                files={"file": ("Scan.PDF", b"%PDF-1.7", "application/pdf")},
            )

        invoice_id = response.json()["invoice_id"]
        _, kwargs = queue.enqueued[0]
        assert kwargs["object_name"] == f"sources/{invoice_id}/original.pdf"
        assert "file_content_b64" not in kwargs

    def test_invalid_file_type(self, client: TestClient, queue: Any) -> None:
        """Only PDFs and images are accepted."""
        response = client.post(
            "/api/v1/invoices/upload",
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Invalid file type" in response.json()["detail"]
        assert queue.enqueued == []

    def test_empty_file(self, client: TestClient, queue: Any) -> None:
        """Empty uploads are rejected."""
        response = client.post(
            "/api/v1/invoices/upload",
            files={"file": ("invoice.png", b"", "image/png")},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_too_large(self, client: TestClient, queue: Any) -> None:
        """Files above the limit are a 413."""
        with patch.object(main, "MAX_UPLOAD_BYTES", 4):
            response = client.post(
                "/api/v1/invoices/upload",
                files={"file": ("invoice.png", b"12345", "image/png")},
            )

        assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    def test_unknown_format_rejected_before_queueing(
        self, client: TestClient, queue: Any
    ) -> None:
        """Workers never see an unknown format."""
        response = client.post(
            "/api/v1/invoices/upload",
            params={"format": "edifact"},
            files={"file": ("invoice.png", b"\x89PNG", "image/png")},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert queue.enqueued == []

    def test_no_file(self, client: TestClient, queue: Any) -> None:
        """A request without a file fails validation."""
        response = client.post("/api/v1/invoices/upload")

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestQueuedConversion:
    """Test POST /api/v1/invoices/{invoice_id}/convert."""

    def test_conversion_queued(self, client: TestClient, queue: Any) -> None:
        """The conversion job targets the requested format."""
        response = client.post("/api/v1/invoices/inv-1/convert", params={"format": "fatturapa"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["invoice_id"] == "inv-1"
        function, kwargs = queue.enqueued[0]
        assert function == "process_conversion"
        assert kwargs["output_format"] == "fatturapa"
        assert kwargs["_job_id"] == response.json()["job_id"]


class TestJobStatusEndpoint:
    """Test GET /api/v1/jobs/{job_id}."""

    def test_job_not_found(self, client: TestClient, queue: Any) -> None:
        """Unknown jobs are a 404."""
        response = client.get("/api/v1/jobs/nope")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"] == "Job not found"

    def test_job_found(self, client: TestClient, queue: Any) -> None:
        """Stored job state is returned as is."""
        job = JobStatus(
            job_id="job-1",
            kind="conversion",
            status="completed",
            progress=100,
            invoice_id="inv-1",
            result={"format": "xrechnung-ubl"},
        )
        queue.data["job:job-1"] = job.model_dump_json()

        response = client.get("/api/v1/jobs/job-1")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["result"] == {"format": "xrechnung-ubl"}
