"""Tests for the extraction client's outcome classification and retry."""

import base64
from unittest.mock import patch

import httpx
import pytest

from src.batch.state import DocumentPayload, FailureKind
from src.errors import TemplateLoadError
from src.extraction.client import ExtractionClient, ExtractionFailure, ExtractionSuccess
from src.utils.config import RetryConfig, ServiceConfig

PAYLOAD = DocumentPayload(content=b"\x89PNG fake", filename="factura.png", media_type="image/png")

SUCCESS_BODY = {
    "success": True,
    "extracted_data": {"furnizor_nume": "Acme SRL", "total_cu_tva": 1190, "moneda": None},
    "confidence_score": 87.5,
    "scan_id": "scan-42",
    "validation_errors": {"furnizor_cui": "CUI invalid", "total_cu_tva": "too high"},
}


@pytest.fixture
def client():
    """Create a client with a single attempt (no retry)."""
    c = ExtractionClient(ServiceConfig(base_url="http://fake-scan:3000"))
    yield c
    c.close()


@pytest.fixture
def retrying_client():
    """Create a client with fast retries for testing."""
    c = ExtractionClient(
        ServiceConfig(base_url="http://fake-scan:3000"),
        RetryConfig(max_attempts=3, initial_delay_seconds=0.01, backoff=1.0),
    )
    yield c
    c.close()


class TestExtractSuccess:
    def test_request_body(self, client: ExtractionClient) -> None:
        with patch.object(
            client._client, "post", return_value=httpx.Response(200, json=SUCCESS_BODY)
        ) as mock_post:
            client.extract(PAYLOAD, "invoice_ro", "org-1")

        path = mock_post.call_args.args[0]
        body = mock_post.call_args.kwargs["json"]
        assert path == "/api/scan-pipeline/extract"
        assert body == {
            "imageBase64": base64.b64encode(PAYLOAD.content).decode(),
            "templateKey": "invoice_ro",
            "orgId": "org-1",
            "filename": "factura.png",
        }

    def test_success_outcome(self, client: ExtractionClient) -> None:
        with patch.object(
            client._client, "post", return_value=httpx.Response(200, json=SUCCESS_BODY)
        ):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")

        assert isinstance(outcome, ExtractionSuccess)
        assert outcome.scan_id == "scan-42"
        assert outcome.confidence_score == 87.5
        assert outcome.extracted_data == {
            "furnizor_nume": "Acme SRL",
            "total_cu_tva": "1190",
            "moneda": "",
        }
        # Errors for keys that were not extracted are dropped.
        assert outcome.validation_errors == {"total_cu_tva": "too high"}
        assert outcome.detected_type is None

    def test_detected_type(self, client: ExtractionClient) -> None:
        body = dict(SUCCESS_BODY, detected_type="invoice_ro")
        with patch.object(client._client, "post", return_value=httpx.Response(200, json=body)):
            outcome = client.extract(PAYLOAD, "auto_detect", "org-1")
        assert outcome.detected_type == "invoice_ro"

    def test_confidence_clamped(self, client: ExtractionClient) -> None:
        body = dict(SUCCESS_BODY, confidence_score=140)
        with patch.object(client._client, "post", return_value=httpx.Response(200, json=body)):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")
        assert outcome.confidence_score == 100.0

    def test_missing_confidence_defaults_to_zero(self, client: ExtractionClient) -> None:
        body = {"success": True, "scan_id": "s", "extracted_data": {}}
        with patch.object(client._client, "post", return_value=httpx.Response(200, json=body)):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")
        assert isinstance(outcome, ExtractionSuccess)
        assert outcome.confidence_score == 0.0


class TestExtractFailures:
    def test_http_500_is_service_error(self, client: ExtractionClient) -> None:
        resp = httpx.Response(500, json={"success": False, "error": "Anthropic API error"})
        with patch.object(client._client, "post", return_value=resp):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")

        assert isinstance(outcome, ExtractionFailure)
        assert outcome.kind is FailureKind.SERVICE_ERROR
        assert "HTTP 500" in outcome.message
        assert "Anthropic API error" in outcome.message

    def test_success_false_is_service_error(self, client: ExtractionClient) -> None:
        resp = httpx.Response(200, json={"success": False, "error": "Template not found"})
        with patch.object(client._client, "post", return_value=resp):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")

        assert outcome == ExtractionFailure(FailureKind.SERVICE_ERROR, "Template not found")

    def test_non_json_body_is_malformed(self, client: ExtractionClient) -> None:
        resp = httpx.Response(200, text="<html>gateway</html>")
        with patch.object(client._client, "post", return_value=resp):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")
        assert outcome.kind is FailureKind.MALFORMED_RESPONSE

    def test_json_array_is_malformed(self, client: ExtractionClient) -> None:
        with patch.object(client._client, "post", return_value=httpx.Response(200, json=[1])):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")
        assert outcome.kind is FailureKind.MALFORMED_RESPONSE

    def test_missing_scan_id_is_malformed(self, client: ExtractionClient) -> None:
        body = {"success": True, "extracted_data": {}, "confidence_score": 50}
        with patch.object(client._client, "post", return_value=httpx.Response(200, json=body)):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")
        assert outcome.kind is FailureKind.MALFORMED_RESPONSE

    def test_non_numeric_confidence_is_malformed(self, client: ExtractionClient) -> None:
        body = dict(SUCCESS_BODY, confidence_score="high")
        with patch.object(client._client, "post", return_value=httpx.Response(200, json=body)):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")
        assert outcome.kind is FailureKind.MALFORMED_RESPONSE

    def test_connection_error_is_transport(self, client: ExtractionClient) -> None:
        with patch.object(
            client._client, "post", side_effect=httpx.ConnectError("Connection refused")
        ) as mock_post:
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")

        assert outcome.kind is FailureKind.TRANSPORT
        assert "Connection refused" in outcome.message
        assert mock_post.call_count == 1

    def test_timeout_is_transport(self, client: ExtractionClient) -> None:
        with patch.object(client._client, "post", side_effect=httpx.ReadTimeout("slow")):
            outcome = client.extract(PAYLOAD, "invoice_ro", "org-1")
        assert outcome.kind is FailureKind.TRANSPORT


class TestRetryPolicy:
    def test_transport_error_retried_then_succeeds(
        self, retrying_client: ExtractionClient
    ) -> None:
        call_count = 0

        def mock_post(*args, **kwargs):
            nonlocal call_count
            call_count += 1
            if call_count <= 2:
                raise httpx.ConnectError("Connection refused")
            return httpx.Response(200, json=SUCCESS_BODY)

        with patch.object(retrying_client._client, "post", side_effect=mock_post):
            outcome = retrying_client.extract(PAYLOAD, "invoice_ro", "org-1")

        assert isinstance(outcome, ExtractionSuccess)
        assert call_count == 3

    def test_retries_exhausted(self, retrying_client: ExtractionClient) -> None:
        with patch.object(
            retrying_client._client, "post", side_effect=httpx.ConnectError("down")
        ) as mock_post:
            outcome = retrying_client.extract(PAYLOAD, "invoice_ro", "org-1")

        assert outcome.kind is FailureKind.TRANSPORT
        assert mock_post.call_count == 3

    def test_service_error_not_retried(self, retrying_client: ExtractionClient) -> None:
        resp = httpx.Response(500, json={"error": "boom"})
        with patch.object(retrying_client._client, "post", return_value=resp) as mock_post:
            outcome = retrying_client.extract(PAYLOAD, "invoice_ro", "org-1")

        assert outcome.kind is FailureKind.SERVICE_ERROR
        assert mock_post.call_count == 1


class TestListTemplates:
    def test_success(self, client: ExtractionClient) -> None:
        body = {"success": True, "templates": [{"template_key": "invoice_ro"}]}
        with patch.object(client._client, "get", return_value=httpx.Response(200, json=body)):
            assert client.list_templates() == [{"template_key": "invoice_ro"}]

    def test_failure_status(self, client: ExtractionClient) -> None:
        with patch.object(
            client._client, "get", return_value=httpx.Response(503, json={"error": "down"})
        ):
            with pytest.raises(TemplateLoadError, match="down"):
                client.list_templates()

    def test_unreachable(self, client: ExtractionClient) -> None:
        with patch.object(client._client, "get", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(TemplateLoadError):
                client.list_templates()


def test_api_key_sent_as_bearer() -> None:
    c = ExtractionClient(ServiceConfig(api_key="secret"))
    try:
        assert c._client.headers["Authorization"] == "Bearer secret"
    finally:
        c.close()
