"""HTTP client for the remote OCR/AI extraction service.

Uses httpx with configurable timeouts. Every call resolves to a typed
outcome instead of raising: a success carrying the extracted fields, or
a failure classified as transport, service error, or malformed response.
Transport failures can optionally be retried with exponential backoff
through tenacity; by default each document gets exactly one attempt.
"""

import base64
import math
from dataclasses import dataclass, field
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.batch.state import DocumentPayload, FailureKind
from src.errors import TemplateLoadError
from src.utils.config import RetryConfig, ServiceConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)

EXTRACT_PATH = "/api/scan-pipeline/extract"
TEMPLATES_PATH = "/api/scan-pipeline/templates"


class ExtractionTransportError(Exception):
    """The service could not be reached (connection error, timeout)."""


class ExtractionServiceError(Exception):
    """The service answered with a failure status or ``success: false``."""


class MalformedResponseError(Exception):
    """The service answered successfully but the body is unusable."""


@dataclass(frozen=True)
class ExtractionSuccess:
    """Fields extracted from one document and the scan record created for it."""

    extracted_data: dict[str, str]
    confidence_score: float
    scan_id: str
    validation_errors: dict[str, str] = field(default_factory=dict)
    detected_type: str | None = None


@dataclass(frozen=True)
class ExtractionFailure:
    """A failed extraction call with a human-readable reason."""

    kind: FailureKind
    message: str


ExtractionOutcome = ExtractionSuccess | ExtractionFailure


def _auth_headers(api_key: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


def _error_detail(resp: httpx.Response) -> str:
    """Pull the most specific error text out of a failed response."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip()[:200] or resp.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or resp.reason_phrase)
    return resp.reason_phrase


class ExtractionClient:
    """Client for the extraction and template listing endpoints.

    Args:
        config: Service URL, timeouts and optional API key.
        retry_policy: Retry settings for transport failures. Defaults to a
            single attempt.
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        retry_policy: RetryConfig | None = None,
    ) -> None:
        self.config = config or ServiceConfig()
        self.retry_policy = retry_policy or RetryConfig()
        self._client = httpx.Client(
            base_url=self.config.base_url.rstrip("/"),
            headers=_auth_headers(self.config.api_key),
            timeout=httpx.Timeout(
                self.config.timeout_seconds,
                connect=self.config.connect_timeout_seconds,
            ),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ExtractionClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def extract(
        self,
        payload: DocumentPayload,
        template_key: str,
        organization_id: str,
        filename: str | None = None,
    ) -> ExtractionOutcome:
        """Ask the service to extract one document.

        Args:
            payload: Image bytes of the document.
            template_key: Concrete template key or ``auto_detect``.
            organization_id: Organization the scan record belongs to.
            filename: Name stored with the scan record. Defaults to the
                payload's filename.

        Returns:
            An ``ExtractionSuccess`` or an ``ExtractionFailure``; this method
            does not raise for service or transport problems.
        """
        body = {
            "imageBase64": base64.b64encode(payload.content).decode(),
            "templateKey": template_key,
            "orgId": organization_id,
            "filename": filename or payload.filename,
        }

        try:
            data = self._post_with_retry(body)
            return self._parse_success(data)
        except ExtractionTransportError as e:
            return ExtractionFailure(FailureKind.TRANSPORT, str(e))
        except ExtractionServiceError as e:
            return ExtractionFailure(FailureKind.SERVICE_ERROR, str(e))
        except MalformedResponseError as e:
            logger.warning("Malformed extraction response for %s: %s", body["filename"], e)
            return ExtractionFailure(FailureKind.MALFORMED_RESPONSE, str(e))

    def list_templates(self) -> list[dict[str, Any]]:
        """Fetch the template catalogue from the service.

        Raises:
            TemplateLoadError: If the listing cannot be fetched or parsed.
        """
        try:
            resp = self._client.get(TEMPLATES_PATH)
        except httpx.HTTPError as e:
            raise TemplateLoadError(f"Cannot fetch templates: {e}") from e

        if resp.status_code != 200:
            raise TemplateLoadError(
                f"Template listing failed (HTTP {resp.status_code}): {_error_detail(resp)}"
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise TemplateLoadError(f"Template listing is not JSON: {e}") from e

        if not isinstance(data, dict) or not data.get("success"):
            raise TemplateLoadError("Template listing reported failure")
        templates = data.get("templates") or []
        if not isinstance(templates, list):
            raise TemplateLoadError("Template listing has no template list")
        return templates

    def _post_with_retry(self, body: dict) -> dict:
        """Retry wrapper, configured from the retry policy."""
        attempts = self.retry_policy.max_attempts

        @retry(
            retry=retry_if_exception_type(ExtractionTransportError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self.retry_policy.initial_delay_seconds,
                exp_base=self.retry_policy.backoff,
                max=60,
            ),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Extraction service unreachable, retrying in %.1fs (attempt %d/%d)",
                state.next_action.sleep,  # type: ignore[union-attr]
                state.attempt_number,
                attempts,
            ),
        )
        def _do_post() -> dict:
            return self._send_extract(body)

        return _do_post()

    def _send_extract(self, body: dict) -> dict:
        """Send a single extraction request and return the decoded body."""
        try:
            resp = self._client.post(EXTRACT_PATH, json=body)
        except httpx.TimeoutException as e:
            logger.warning("Extraction service timed out: %s", e)
            raise ExtractionTransportError(f"Extraction service timed out: {e}") from e
        except httpx.TransportError as e:
            logger.warning("Extraction service connection failed: %s", e)
            raise ExtractionTransportError(f"Cannot connect to extraction service: {e}") from e
        except httpx.HTTPError as e:
            logger.error("Extraction request failed: %s", e)
            raise ExtractionTransportError(f"Extraction request failed: {e}") from e

        if not resp.is_success:
            detail = _error_detail(resp)
            logger.error("Extraction service error %d: %s", resp.status_code, detail)
            raise ExtractionServiceError(
                f"Extraction service error (HTTP {resp.status_code}): {detail}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"Response is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError("Response body is not a JSON object")

        if not data.get("success"):
            raise ExtractionServiceError(str(data.get("error") or "Extraction failed"))
        return data

    @staticmethod
    def _parse_success(data: dict) -> ExtractionSuccess:
        scan_id = data.get("scan_id")
        if not scan_id:
            raise MalformedResponseError("Response has no scan_id")

        raw_fields = data.get("extracted_data") or {}
        if not isinstance(raw_fields, dict):
            raise MalformedResponseError("extracted_data is not an object")
        extracted = {str(k): "" if v is None else str(v) for k, v in raw_fields.items()}

        raw_confidence = data.get("confidence_score") or 0
        if isinstance(raw_confidence, bool):
            raise MalformedResponseError("confidence_score is not numeric")
        try:
            confidence = float(raw_confidence)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"confidence_score is not numeric: {raw_confidence!r}") from e
        if math.isnan(confidence):
            raise MalformedResponseError("confidence_score is NaN")
        confidence = max(0.0, min(100.0, confidence))

        raw_errors = data.get("validation_errors") or {}
        if not isinstance(raw_errors, dict):
            raise MalformedResponseError("validation_errors is not an object")
        validation_errors = {str(k): str(v) for k, v in raw_errors.items() if str(k) in extracted}

        detected = data.get("detected_type")
        return ExtractionSuccess(
            extracted_data=extracted,
            confidence_score=confidence,
            scan_id=str(scan_id),
            validation_errors=validation_errors,
            detected_type=str(detected) if detected else None,
        )
