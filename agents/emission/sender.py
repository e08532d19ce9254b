"""HTTP transmission to the external service with bounded retries.

``send`` never raises for HTTP outcomes. Every call returns a ``SendResult``:

* 2xx: success, body returned verbatim.
* 4xx: terminal, the message is parsed from the error body, no retry.
* 5xx, timeout or network error: retried ``retries`` times with linear
  backoff (``retry_delay * attempt``), then reported with a friendlier message.
* Token acquisition failures stop immediately; renewing credentials needs an
  operator, retrying does not help.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import anyio
import httpx

from backend.core.config import settings
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import (
    increment_send_attempts,
    increment_send_retries,
    record_send_duration,
)

from .code_tables import CUSTOMIZATION_WITH_REFERENCE, CUSTOMIZATION_WITHOUT_REFERENCE
from .credentials import CredentialManager
from .dto import DocumentType, ValidationResult
from .errors import ConfigurationError, TokenError
from .responses import extract_error_message

logger = get_logger(__name__)

VALIDATE_PATHS: Dict[DocumentType, str] = {
    DocumentType.INVOICE: "/v1/bills/validate",
    DocumentType.EXPORT_INVOICE: "/v1/bills/validate",
    DocumentType.CREDIT_NOTE: "/v1/credit-notes/validate",
}

UNAVAILABLE_STATUSES = (502, 503, 504)


@dataclass(frozen=True)
class SendOptions:
    timeout: float
    retries: int
    retry_delay: float

    @classmethod
    def from_settings(cls) -> "SendOptions":
        return cls(
            timeout=settings.FACTUS_TIMEOUT_MS / 1000,
            retries=settings.FACTUS_RETRY_MAX,
            retry_delay=settings.FACTUS_RETRY_DELAY_MS / 1000,
        )


@dataclass
class SendResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    attempts: int = 0
    error_kind: Optional[str] = None  # client|transient|authentication|configuration|validation
    error_body: Any = None
    errors: List[str] = field(default_factory=list)

    @property
    def messages(self) -> List[str]:
        if self.errors:
            return list(self.errors)
        return [self.error] if self.error else []


def final_error_message(status_code: Optional[int], last_error: Optional[str], attempts: int) -> str:
    """Message reported once all attempts are exhausted."""
    if status_code in UNAVAILABLE_STATUSES:
        return f"Factus service unavailable (HTTP {status_code}), try again later"
    if status_code in (401, 403):
        return "Authentication error with Factus, check the configured credentials"
    if status_code is None:
        return f"Connectivity error: Factus could not be reached ({last_error or 'no response'})"
    return f"Error after {attempts} attempts: {last_error or 'unknown error'}"


def validate_credit_note_payload(payload: Mapping[str, Any]) -> ValidationResult:
    """Local checks run before a credit note payload goes on the wire."""
    errors: List[str] = []
    concept = payload.get("correction_concept_code")
    if not isinstance(concept, int) or not 1 <= concept <= 5:
        errors.append("correction_concept_code must be a number between 1 and 5")
    customization = payload.get("customization_id")
    if not customization:
        errors.append("customization_id is required (20 = with reference, 22 = without reference)")
    if not payload.get("reference_code"):
        errors.append("reference_code is required")
    if not payload.get("payment_method_code"):
        errors.append("payment_method_code is required")
    if customization == CUSTOMIZATION_WITH_REFERENCE and not payload.get("bill_id"):
        errors.append("bill_id is required when customization_id = 20")
    if customization == CUSTOMIZATION_WITHOUT_REFERENCE and not payload.get("billing_period"):
        errors.append("billing_period is required when customization_id = 22")

    items = payload.get("items") or []
    if not items:
        errors.append("items must contain at least one element")
    for index, item in enumerate(items):
        if not item.get("name"):
            errors.append(f"items[{index}].name is required")
        if not item.get("code_reference"):
            errors.append(f"items[{index}].code_reference is required")
        if not item.get("quantity") or item["quantity"] <= 0:
            errors.append(f"items[{index}].quantity must be greater than 0")
        if item.get("price") is None or item["price"] <= 0:
            errors.append(f"items[{index}].price must be greater than 0")
        if item.get("tax_rate") is None:
            errors.append(f"items[{index}].tax_rate is required")
        if not item.get("unit_measure_id"):
            errors.append(f"items[{index}].unit_measure_id is required")
    return ValidationResult(valid=not errors, errors=errors)


class TransmissionSender:
    def __init__(
        self,
        credentials: CredentialManager,
        *,
        client: Optional[httpx.AsyncClient] = None,
        options: Optional[SendOptions] = None,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    ) -> None:
        self._credentials = credentials
        self._client = client
        self._owns_client = client is None
        self._options = options or SendOptions.from_settings()
        self._sleep = sleep

    async def send(
        self,
        payload: Mapping[str, Any],
        doc_type: DocumentType = DocumentType.INVOICE,
        options: Optional[SendOptions] = None,
    ) -> SendResult:
        path = VALIDATE_PATHS.get(DocumentType(doc_type))
        if path is None:
            return SendResult(
                success=False,
                error=f"Document type {DocumentType(doc_type).value} cannot be transmitted",
                error_kind="validation",
            )
        return await self.request("POST", path, json=dict(payload), options=options)

    async def get(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        options: Optional[SendOptions] = None,
    ) -> SendResult:
        return await self.request("GET", path, params=params, options=options)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        options: Optional[SendOptions] = None,
    ) -> SendResult:
        options = options or self._options
        start = time.time()
        last_status: Optional[int] = None
        last_error: Optional[str] = None
        last_body: Any = None

        try:
            for attempt in range(options.retries + 1):
                if attempt > 0:
                    increment_send_retries()
                    delay = options.retry_delay * attempt
                    logger.info(
                        "Retrying Factus request",
                        extra={"path": path, "attempt": attempt + 1, "delay_s": delay},
                    )
                    await self._sleep(delay)

                increment_send_attempts()
                try:
                    token = await self._credentials.get_token()
                except ConfigurationError as exc:
                    return SendResult(
                        success=False, error=str(exc), attempts=attempt + 1, error_kind="configuration"
                    )
                except TokenError as exc:
                    return SendResult(
                        success=False,
                        error=f"Authentication error: {exc}",
                        status_code=exc.status_code,
                        attempts=attempt + 1,
                        error_kind="authentication",
                    )

                base_url = await self._credentials.load_base_url()
                try:
                    response = await self._http().request(
                        method,
                        f"{base_url}{path}",
                        json=json,
                        params=params,
                        headers={
                            "Authorization": f"Bearer {token}",
                            "Accept": "application/json",
                        },
                        timeout=options.timeout,
                    )
                except httpx.TimeoutException:
                    last_status, last_body = None, None
                    last_error = f"timeout after {options.timeout:g}s"
                    logger.warning("Factus request timed out", extra={"path": path, "attempt": attempt + 1})
                    continue
                except httpx.RequestError as exc:
                    last_status, last_body = None, None
                    last_error = str(exc) or exc.__class__.__name__
                    logger.warning(
                        "Factus request failed",
                        extra={"path": path, "attempt": attempt + 1, "error": last_error},
                    )
                    continue

                body = _decode_body(response)
                status_code = response.status_code
                if response.is_success:
                    return SendResult(
                        success=True, data=body, status_code=status_code, attempts=attempt + 1
                    )
                if response.is_redirect:
                    return SendResult(
                        success=True,
                        data={"redirect_url": response.headers.get("location")},
                        status_code=status_code,
                        attempts=attempt + 1,
                    )
                if 400 <= status_code < 500:
                    if status_code == 401:
                        await self._credentials.drop_token()
                    message = extract_error_message(body)
                    logger.warning(
                        "Factus rejected the request",
                        extra={"path": path, "status_code": status_code, "error": message},
                    )
                    return SendResult(
                        success=False,
                        error=message,
                        status_code=status_code,
                        attempts=attempt + 1,
                        error_kind="client",
                        error_body=body,
                    )

                last_status, last_body = status_code, body
                last_error = extract_error_message(body)
                logger.warning(
                    "Factus server error",
                    extra={"path": path, "status_code": status_code, "attempt": attempt + 1},
                )
        finally:
            record_send_duration((time.time() - start) * 1000)

        attempts = options.retries + 1
        return SendResult(
            success=False,
            error=final_error_message(last_status, last_error, attempts),
            status_code=last_status,
            attempts=attempts,
            error_kind="transient",
            error_body=last_body,
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client


def _decode_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    if content_type.startswith("application/pdf") or content_type.startswith(
        "application/octet-stream"
    ):
        return response.content
    try:
        return response.json()
    except ValueError:
        return response.text or None
