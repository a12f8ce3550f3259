"""Prometheus metrics for the e-invoice platform.

Exposes key metrics for monitoring:
- Request counts and durations by endpoint
- Conversions by format and outcome, generation duration
- Extraction attempts and validation failures

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Document intake
documents_uploaded_total = Counter(
    "documents_uploaded_total",
    "Total invoice documents uploaded",
    ["status"],  # queued, rejected
)

document_upload_size_bytes = Histogram(
    "document_upload_size_bytes",
    "Document upload size in bytes",
    buckets=(1024, 10240, 102400, 1048576, 10485760),  # 1KB to 10MB
)

# Conversion metrics
conversions_total = Counter(
    "conversions_total",
    "E-invoice conversions",
    ["format", "status"],  # valid, warnings, invalid, rejected
)

generation_duration_seconds = Histogram(
    "generation_duration_seconds",
    "Format generation duration in seconds",
    ["format"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Extraction metrics
extraction_attempts_total = Counter(
    "extraction_attempts_total",
    "Provider calls made for invoice extraction (including retries)",
    ["provider"],
)

extraction_validation_failures_total = Counter(
    "extraction_validation_failures_total",
    "Extractions that stayed invalid after all retries",
    ["provider"],
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
