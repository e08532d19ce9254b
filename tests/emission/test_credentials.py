from datetime import timedelta
from urllib.parse import parse_qs

import anyio
import httpx
import pytest

from agents.emission.credentials import CredentialManager
from agents.emission.errors import (
    AuthenticationError,
    AuthServiceError,
    ConfigurationError,
    MalformedRequestError,
)
from agents.emission.store import InMemoryCredentialStore
from backend.core.observability import metrics
from tests.emission.factories import NOW, token_response


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _manager(store, http_client, clock):
    return CredentialManager(store, client=http_client, clock=clock, lead_time=timedelta(minutes=10))


@pytest.mark.anyio
async def test_password_grant_when_no_token_cached(credential_store, http_client, recorder, clock):
    recorder.on("/oauth/token", token_response("tok-1", expires_in=3600, refresh="ref-1"))
    manager = _manager(credential_store, http_client, clock)

    assert await manager.get_token() == "tok-1"

    form = _form(recorder.calls("/oauth/token")[0])
    assert form["grant_type"] == "password"
    assert form["username"] == "sandbox@factus.test"
    assert form["client_id"] == "client-id"
    stored = credential_store.load()
    assert stored.access_token == "tok-1"
    assert stored.refresh_token == "ref-1"
    assert stored.token_expires_at == NOW + timedelta(seconds=3600)
    assert metrics.get_metrics()["token_refreshes_total{grant_type=password}"]["count"] == 1


@pytest.mark.anyio
async def test_cached_token_is_reused_until_lead_time(credential_store, http_client, recorder, clock):
    recorder.on("/oauth/token", token_response("tok-1", expires_in=3600))
    manager = _manager(credential_store, http_client, clock)

    await manager.get_token()
    clock.advance(minutes=45)
    assert await manager.get_token() == "tok-1"
    assert len(recorder.calls("/oauth/token")) == 1

    # 9 minutes left is inside the 10 minute lead time
    clock.advance(minutes=6)
    recorder.on("/oauth/token", token_response("tok-2", refresh="ref-2"))
    assert await manager.get_token() == "tok-2"
    assert _form(recorder.calls("/oauth/token")[-1])["grant_type"] == "refresh_token"
    assert _form(recorder.calls("/oauth/token")[-1])["refresh_token"] == "ref-1"


@pytest.mark.anyio
async def test_expires_in_defaults_when_missing(credential_store, http_client, recorder, clock):
    recorder.on("/oauth/token", lambda request: httpx.Response(200, json={"access_token": "tok"}))
    manager = _manager(credential_store, http_client, clock)

    await manager.get_token()

    assert credential_store.load().token_expires_at == NOW + timedelta(seconds=3600)


@pytest.mark.anyio
async def test_failed_refresh_falls_back_to_password_grant(credentials, http_client, recorder, clock):
    credentials.refresh_token = "stale"
    store = InMemoryCredentialStore(credentials)

    def handler(request):
        if _form(request)["grant_type"] == "refresh_token":
            return httpx.Response(401, json={"message": "The refresh token is invalid."})
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 600})

    recorder.on("/oauth/token", handler)
    manager = _manager(store, http_client, clock)

    assert await manager.get_token() == "fresh"
    assert [_form(r)["grant_type"] for r in recorder.calls("/oauth/token")] == [
        "refresh_token",
        "password",
    ]


@pytest.mark.parametrize(
    "status, body, error",
    [
        (401, {"message": "Unauthenticated."}, AuthenticationError),
        (403, {"error": "invalid_client"}, AuthenticationError),
        (400, {"error": "unsupported_grant_type"}, MalformedRequestError),
        (500, {"message": "Server Error"}, AuthServiceError),
        (200, {"token_type": "Bearer"}, AuthServiceError),
    ],
)
@pytest.mark.anyio
async def test_token_endpoint_errors_are_classified(
    credential_store, http_client, recorder, clock, status, body, error
):
    recorder.on("/oauth/token", lambda request: httpx.Response(status, json=body))
    manager = _manager(credential_store, http_client, clock)

    with pytest.raises(error) as excinfo:
        await manager.get_token()

    assert excinfo.value.status_code == status


@pytest.mark.anyio
async def test_network_error_is_an_auth_service_error(credential_store, clock):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = _manager(credential_store, client, clock)

    with pytest.raises(AuthServiceError):
        await manager.get_token()


@pytest.mark.anyio
async def test_missing_client_configuration(credentials, http_client, recorder, clock):
    credentials.client_secret = ""
    manager = _manager(InMemoryCredentialStore(credentials), http_client, clock)

    with pytest.raises(ConfigurationError):
        await manager.get_token()
    assert recorder.requests == []


@pytest.mark.anyio
async def test_missing_credential_record(http_client, clock):
    manager = _manager(InMemoryCredentialStore(None), http_client, clock)

    with pytest.raises(ConfigurationError):
        await manager.get_token()


@pytest.mark.anyio
async def test_invalidate_forces_renewal(credential_store, http_client, recorder, clock):
    recorder.on("/oauth/token", token_response("tok-1"))
    manager = _manager(credential_store, http_client, clock)
    await manager.get_token()

    manager.invalidate_token()

    assert credential_store.load().access_token is None
    recorder.on("/oauth/token", token_response("tok-2"))
    assert await manager.get_token() == "tok-2"


@pytest.mark.anyio
async def test_token_info_and_connection_test(credential_store, http_client, recorder, clock):
    manager = _manager(credential_store, http_client, clock)
    info = manager.get_token_info()
    assert info["has_token"] is False
    assert info["is_expired"] is True

    recorder.on("/oauth/token", token_response("a" * 40, expires_in=900))
    result = await manager.test_connection()
    assert result["success"] is True
    assert result["data"]["token_preview"] == "a" * 30 + "..."

    info = manager.get_token_info()
    assert info["has_token"] is True
    assert info["minutes_until_expiry"] == 15
    assert info["should_refresh"] is False
    clock.advance(minutes=8)
    assert manager.get_token_info()["should_refresh"] is True


@pytest.mark.anyio
async def test_connection_test_reports_failure(credential_store, http_client, recorder, clock):
    recorder.on("/oauth/token", lambda request: httpx.Response(401, json={"message": "bad"}))
    manager = _manager(credential_store, http_client, clock)

    result = await manager.test_connection()

    assert result["success"] is False
    assert "Invalid Factus credentials" in result["error"]


@pytest.mark.anyio
async def test_concurrent_callers_share_one_renewal(credential_store, http_client, recorder, clock):
    recorder.on("/oauth/token", token_response("tok-1"))
    manager = _manager(credential_store, http_client, clock)
    tokens = []

    async def fetch():
        tokens.append(await manager.get_token())

    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(fetch)

    assert tokens == ["tok-1"] * 5
    assert len(recorder.calls("/oauth/token")) == 1


@pytest.mark.parametrize(
    "expires_in, lifetime",
    [("3600.0", 3600), (900.5, 900), ("soon", 3600), (0, 3600), (-5, 3600)],
)
@pytest.mark.anyio
async def test_unusual_expires_in_values(credential_store, http_client, recorder, clock, expires_in, lifetime):
    recorder.on(
        "/oauth/token",
        lambda request: httpx.Response(200, json={"access_token": "tok", "expires_in": expires_in}),
    )
    manager = _manager(credential_store, http_client, clock)

    assert await manager.get_token() == "tok"
    assert credential_store.load().token_expires_at == NOW + timedelta(seconds=lifetime)
