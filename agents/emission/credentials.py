"""Bearer token lifecycle against the external OAuth endpoint.

Tokens are cached in the injected ``CredentialStore``. A cached token is
reused while it stays valid for longer than the lead time; otherwise it is
renewed through the refresh grant, falling back to the password grant. One
lock per manager serializes renewals so concurrent emissions never race on
the cache.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import anyio
import httpx

from backend.core.config import settings
from backend.core.observability.logging import hash_secret
from backend.core.observability.metrics import increment_token_refreshes

from .dto import Credentials, EmissionResult
from .errors import (
    AuthenticationError,
    AuthServiceError,
    ConfigurationError,
    MalformedRequestError,
    TokenError,
)
from .responses import extract_error_message
from .store import CredentialStore

TOKEN_PATH = "/oauth/token"


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


class CredentialManager:
    def __init__(
        self,
        store: CredentialStore,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] | None = None,
        lead_time: Optional[timedelta] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self._store = store
        self._clock = clock or _default_clock
        self._lead_time = lead_time or timedelta(minutes=settings.FACTUS_TOKEN_LEAD_MINUTES)
        self._timeout = timeout if timeout is not None else settings.FACTUS_TIMEOUT_MS / 1000
        self._client = client
        self._owns_client = client is None
        self._lock = anyio.Lock()

    async def get_token(self) -> str:
        """Return a bearer token valid for at least the lead time."""
        credentials = await self._load()
        if self._is_fresh(credentials):
            return credentials.access_token  # type: ignore[return-value]

        async with self._lock:
            # Another task may have renewed while we waited
            credentials = await self._load()
            if self._is_fresh(credentials):
                return credentials.access_token  # type: ignore[return-value]

            if not credentials.client_id or not credentials.client_secret:
                raise ConfigurationError("Factus client_id and client_secret must be configured")

            if credentials.refresh_token:
                try:
                    return await self._refresh(credentials)
                except TokenError as exc:
                    self.logger.warning(
                        "Refresh grant failed, falling back to password grant",
                        extra={"error": str(exc), "status_code": exc.status_code},
                    )
            return await self._password_grant(credentials)

    async def load_base_url(self) -> str:
        credentials = await self._load()
        return credentials.base_url.rstrip("/")

    async def drop_token(self) -> None:
        """Async variant of ``invalidate_token`` for use inside the event loop."""
        await anyio.to_thread.run_sync(self.invalidate_token)

    def invalidate_token(self) -> None:
        """Force the next ``get_token`` call to renew."""
        credentials = self._store.load()
        credentials.access_token = None
        credentials.token_expires_at = self._clock() - timedelta(seconds=1)
        self._store.save(credentials)
        self.logger.info("Access token invalidated")

    def get_token_info(self) -> Dict[str, Any]:
        credentials = self._store.load()
        now = self._clock()
        expires_at = credentials.token_expires_at
        minutes: Optional[int] = None
        if expires_at is not None:
            minutes = int((expires_at - now).total_seconds() // 60)
        lead_minutes = self._lead_time.total_seconds() / 60
        return {
            "has_token": bool(credentials.access_token),
            "is_expired": expires_at is None or expires_at <= now,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "minutes_until_expiry": minutes,
            "should_refresh": minutes is not None and 0 < minutes < lead_minutes,
            "environment": credentials.environment,
            "api_url": credentials.base_url,
        }

    async def test_connection(self) -> Dict[str, Any]:
        try:
            token = await self.get_token()
        except (ConfigurationError, TokenError) as exc:
            return EmissionResult(
                success=False, message="Connection to Factus failed", error=str(exc)
            ).to_dict()
        credentials = await self._load()
        return EmissionResult(
            success=True,
            message="Connection to Factus established",
            data={
                "token_preview": f"{token[:30]}...",
                "environment": credentials.environment,
                "api_url": credentials.base_url,
            },
        ).to_dict()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _load(self) -> Credentials:
        # The store may be a database row
        return await anyio.to_thread.run_sync(self._store.load)

    def _is_fresh(self, credentials: Credentials) -> bool:
        if not credentials.access_token or credentials.token_expires_at is None:
            return False
        return credentials.token_expires_at - self._clock() > self._lead_time

    async def _refresh(self, credentials: Credentials) -> str:
        form = {
            "grant_type": "refresh_token",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "refresh_token": credentials.refresh_token,
        }
        return await self._exchange(credentials, form)

    async def _password_grant(self, credentials: Credentials) -> str:
        if not credentials.username or not credentials.password:
            raise ConfigurationError("Factus username and password must be configured")
        form = {
            "grant_type": "password",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "username": credentials.username,
            "password": credentials.password,
        }
        return await self._exchange(credentials, form)

    async def _exchange(self, credentials: Credentials, form: Dict[str, str]) -> str:
        grant_type = form["grant_type"]
        url = f"{credentials.base_url.rstrip('/')}{TOKEN_PATH}"
        try:
            response = await self._http().post(
                url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise AuthServiceError(f"Timeout contacting auth endpoint ({grant_type})") from exc
        except httpx.RequestError as exc:
            raise AuthServiceError(f"Cannot reach auth endpoint: {exc}") from exc

        body = _json_or_none(response)
        status_code = response.status_code
        if status_code in (401, 403):
            raise AuthenticationError(
                f"Invalid Factus credentials: {extract_error_message(body)}", status_code
            )
        if status_code == 400:
            raise MalformedRequestError(
                f"Malformed token request: {extract_error_message(body)}", status_code
            )
        if status_code >= 500 or not response.is_success:
            raise AuthServiceError(
                f"Auth endpoint error {status_code}: {extract_error_message(body)}", status_code
            )
        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthServiceError("Auth endpoint returned no access_token", status_code)

        access_token = str(body["access_token"])
        credentials.access_token = access_token
        lifetime = _lifetime(body.get("expires_in"))
        credentials.token_expires_at = self._clock() + timedelta(seconds=lifetime)
        if body.get("refresh_token"):
            credentials.refresh_token = str(body["refresh_token"])
        await anyio.to_thread.run_sync(self._store.save, credentials)

        increment_token_refreshes(grant_type)
        self.logger.info(
            "Access token obtained",
            extra={
                "grant_type": grant_type,
                "token_fingerprint": hash_secret(access_token),
                "expires_at": credentials.token_expires_at.isoformat(),
            },
        )
        return access_token

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client


def _lifetime(expires_in: Any) -> int:
    """Token lifetime in seconds; missing or unparsable values use the default."""
    try:
        seconds = int(float(expires_in))
    except (TypeError, ValueError):
        return settings.FACTUS_DEFAULT_EXPIRES_IN
    return seconds if seconds > 0 else settings.FACTUS_DEFAULT_EXPIRES_IN


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None
