import httpx
import pytest

from agents.emission.credentials import CredentialManager
from agents.emission.dto import DocumentType
from agents.emission.sender import (
    SendOptions,
    TransmissionSender,
    final_error_message,
    validate_credit_note_payload,
)
from backend.core.observability import metrics
from tests.emission.factories import BASE_URL, bill_response, token_response

PAYLOAD = {"reference_code": "SETP-203", "items": []}


@pytest.fixture
def sender(credential_store, http_client, recorder, clock, fast_options, fake_sleep):
    recorder.on("/oauth/token", token_response("tok-1"))
    manager = CredentialManager(credential_store, client=http_client, clock=clock)
    return TransmissionSender(manager, client=http_client, options=fast_options, sleep=fake_sleep)


@pytest.mark.anyio
async def test_success_returns_body_verbatim(sender, recorder):
    recorder.on("/v1/bills/validate", bill_response())

    result = await sender.send(PAYLOAD, DocumentType.INVOICE)

    assert result.success is True
    assert result.attempts == 1
    assert result.status_code == 201
    assert result.data["data"]["bill"]["number"] == "SETP990000203"
    request = recorder.calls("/v1/bills/validate")[0]
    assert str(request.url) == f"{BASE_URL}/v1/bills/validate"
    assert request.headers["Authorization"] == "Bearer tok-1"
    assert recorder.json_of("/v1/bills/validate") == PAYLOAD


@pytest.mark.anyio
async def test_credit_notes_and_exports_use_their_endpoints(sender, recorder):
    recorder.on("/v1/bills/validate", bill_response())
    recorder.on("/v1/credit-notes/validate", lambda r: httpx.Response(201, json={"number": "NC1"}))

    assert (await sender.send(PAYLOAD, DocumentType.CREDIT_NOTE)).success
    assert (await sender.send(PAYLOAD, DocumentType.EXPORT_INVOICE)).success
    assert len(recorder.calls("/v1/credit-notes/validate")) == 1
    assert len(recorder.calls("/v1/bills/validate")) == 1


@pytest.mark.anyio
async def test_debit_notes_are_not_transmitted(sender, recorder):
    result = await sender.send(PAYLOAD, DocumentType.DEBIT_NOTE)

    assert result.success is False
    assert result.error_kind == "validation"
    assert recorder.calls("/oauth/token") == []


@pytest.mark.anyio
async def test_client_error_is_terminal(sender, recorder, sleeps):
    recorder.on(
        "/v1/bills/validate",
        lambda r: httpx.Response(
            422,
            json={
                "message": "",
                "errors": [{"field": "customer.identification", "message": "is required"}],
            },
        ),
    )

    result = await sender.send(PAYLOAD)

    assert result.success is False
    assert result.attempts == 1
    assert result.status_code == 422
    assert result.error_kind == "client"
    assert result.error == "[customer.identification] is required"
    assert len(recorder.calls("/v1/bills/validate")) == 1
    assert sleeps == []


@pytest.mark.parametrize("status", [400, 401, 404, 409, 422, 429])
@pytest.mark.anyio
async def test_every_client_error_is_sent_once(sender, recorder, sleeps, status):
    recorder.on("/v1/bills/validate", lambda r: httpx.Response(status, json={"message": f"HTTP {status}"}))

    result = await sender.send(PAYLOAD)

    assert result.success is False
    assert result.attempts == 1
    assert result.status_code == status
    assert result.error_kind == "client"
    assert len(recorder.calls("/v1/bills/validate")) == 1
    assert sleeps == []


@pytest.mark.anyio
async def test_unauthorized_response_drops_the_cached_token(sender, recorder, credential_store):
    recorder.on("/v1/bills/validate", lambda r: httpx.Response(401, json={"message": "Unauthenticated."}))

    result = await sender.send(PAYLOAD)

    assert result.success is False
    assert result.attempts == 1
    assert result.error == "Unauthenticated."
    assert credential_store.load().access_token is None


@pytest.mark.anyio
async def test_server_errors_are_retried_with_linear_backoff(sender, recorder, sleeps):
    recorder.on("/v1/bills/validate", lambda r: httpx.Response(503, json={"message": "down"}))

    result = await sender.send(PAYLOAD)

    assert result.success is False
    assert result.attempts == 3
    assert len(recorder.calls("/v1/bills/validate")) == 3
    assert sleeps == [0.5, 1.0]
    assert result.error == "Factus service unavailable (HTTP 503), try again later"
    assert result.error_kind == "transient"
    snapshot = metrics.get_metrics()
    assert snapshot["send_attempts_total"]["count"] == 3
    assert snapshot["send_retries_total"]["count"] == 2


@pytest.mark.anyio
async def test_transient_failure_then_success(sender, recorder):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(500, json={"message": "boom"})
        return bill_response()(request)

    recorder.on("/v1/bills/validate", handler)

    result = await sender.send(PAYLOAD)

    assert result.success is True
    assert result.attempts == 2


@pytest.mark.anyio
async def test_timeouts_end_in_connectivity_error(credential_store, clock, fake_sleep):
    def handler(request):
        if request.url.path == "/oauth/token":
            return token_response()(request)
        raise httpx.ReadTimeout("timed out", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = CredentialManager(credential_store, client=client, clock=clock)
    sender = TransmissionSender(
        manager, client=client, options=SendOptions(timeout=2.0, retries=1, retry_delay=0.1), sleep=fake_sleep
    )

    result = await sender.send(PAYLOAD)

    assert result.success is False
    assert result.attempts == 2
    assert result.status_code is None
    assert result.error == "Connectivity error: Factus could not be reached (timeout after 2s)"


@pytest.mark.anyio
async def test_token_failure_stops_without_retry(sender, recorder, sleeps):
    recorder.on("/oauth/token", lambda r: httpx.Response(401, json={"message": "Invalid credentials"}))

    result = await sender.send(PAYLOAD)

    assert result.success is False
    assert result.attempts == 1
    assert result.error_kind == "authentication"
    assert "Invalid credentials" in result.error
    assert recorder.calls("/v1/bills/validate") == []
    assert sleeps == []


@pytest.mark.anyio
async def test_redirect_is_reported_as_location(sender, recorder):
    recorder.on(
        "/v1/bills/download-pdf/SETP1",
        lambda r: httpx.Response(302, headers={"location": "https://cdn.factus.test/SETP1.pdf"}),
    )

    result = await sender.get("/v1/bills/download-pdf/SETP1")

    assert result.success is True
    assert result.data == {"redirect_url": "https://cdn.factus.test/SETP1.pdf"}


@pytest.mark.parametrize(
    "status, last_error, expected",
    [
        (502, "bad gateway", "Factus service unavailable (HTTP 502), try again later"),
        (504, None, "Factus service unavailable (HTTP 504), try again later"),
        (403, "nope", "Authentication error with Factus, check the configured credentials"),
        (None, "connection refused", "Connectivity error: Factus could not be reached (connection refused)"),
        (500, "Server Error", "Error after 3 attempts: Server Error"),
    ],
)
def test_final_error_message(status, last_error, expected):
    assert final_error_message(status, last_error, 3) == expected


def test_credit_note_payload_checks():
    payload = {
        "correction_concept_code": 2,
        "customization_id": 20,
        "reference_code": "NC-1",
        "payment_method_code": "10",
        "items": [
            {
                "name": "Producto",
                "code_reference": "P-1",
                "quantity": 1,
                "price": 100.0,
                "tax_rate": "19.00",
                "unit_measure_id": 70,
            }
        ],
    }

    result = validate_credit_note_payload(payload)
    assert result.valid is False
    assert result.errors == ["bill_id is required when customization_id = 20"]

    payload["bill_id"] = 203
    assert validate_credit_note_payload(payload).valid is True

    payload.update(customization_id=22, correction_concept_code=9, items=[{"quantity": 0}])
    errors = validate_credit_note_payload(payload).errors
    assert "correction_concept_code must be a number between 1 and 5" in errors
    assert "billing_period is required when customization_id = 22" in errors
    assert "items[0].quantity must be greater than 0" in errors
    assert "items[0].price must be greater than 0" in errors
