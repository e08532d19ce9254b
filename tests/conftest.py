import inspect
import json
import socket
from pathlib import Path
from urllib.parse import urlsplit

import httpx
import pytest
from sqlalchemy.engine import make_url

from backend.core.config import settings

ARTIFACTS_DIR = Path("artifacts")
EGRESS_REPORT = ARTIFACTS_DIR / "egress-violations.json"

# Only test modules may build sync clients (fastapi TestClient)
SYNC_CLIENT_CALLERS = ("/tests/",)

blocked_calls: list[dict] = []


def _called_from(markers) -> bool:
    for frame in inspect.stack():
        path = (frame.filename or "").replace("\\", "/")
        if any(marker in path for marker in markers):
            return True
    return False


def _database_endpoint():
    """Host and port of a networked DATABASE_URL, or (None, None) for SQLite."""
    url = make_url(settings.database_url)
    if not url.host:
        return None, None
    return url.host, url.port or 5432


def _block(fn: str, target: str) -> RuntimeError:
    blocked_calls.append({"fn": fn, "target": target})
    return RuntimeError(f"Egress blocked in tests: {fn} -> {target}")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    """Keep every test off the network, the Factus sandbox included."""
    db_host, db_port = _database_endpoint()
    factus_host = urlsplit(settings.FACTUS_BASE_URL).hostname

    original = {
        "getaddrinfo": socket.getaddrinfo,
        "create_connection": socket.create_connection,
        "client_init": httpx.Client.__init__,
        "async_client_init": httpx.AsyncClient.__init__,
    }

    def getaddrinfo(host, *args, **kwargs):
        if db_host and host == db_host:
            return original["getaddrinfo"](host, *args, **kwargs)
        raise _block("getaddrinfo", f"{host} (factus)" if host == factus_host else str(host))

    def create_connection(address, *args, **kwargs):
        if isinstance(address, tuple) and db_host and address[0] == db_host and int(address[1]) == db_port:
            return original["create_connection"](address, *args, **kwargs)
        raise _block("create_connection", str(address))

    def client_init(self, *args, **kwargs):
        if not _called_from(SYNC_CLIENT_CALLERS):
            raise _block("httpx.Client", "outside test modules")
        return original["client_init"](self, *args, **kwargs)

    def async_client_init(self, *args, **kwargs):
        if not isinstance(kwargs.get("transport"), httpx.MockTransport):
            raise _block("httpx.AsyncClient", "missing MockTransport")
        return original["async_client_init"](self, *args, **kwargs)

    socket.getaddrinfo = getaddrinfo  # type: ignore[assignment]
    socket.create_connection = create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = client_init  # type: ignore[assignment]
    httpx.AsyncClient.__init__ = async_client_init  # type: ignore[assignment]

    yield

    socket.getaddrinfo = original["getaddrinfo"]  # type: ignore[assignment]
    socket.create_connection = original["create_connection"]  # type: ignore[assignment]
    httpx.Client.__init__ = original["client_init"]  # type: ignore[assignment]
    httpx.AsyncClient.__init__ = original["async_client_init"]  # type: ignore[assignment]

    ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
    EGRESS_REPORT.write_text(json.dumps(blocked_calls, indent=2))
