from __future__ import annotations

from typing import List

import httpx
import pytest

from agents.emission.dto import Credentials
from agents.emission.sender import SendOptions
from agents.emission.store import InMemoryCredentialStore, InMemoryDocumentStore, InMemoryRangeStore
from backend.core.observability import metrics
from tests.emission.factories import BASE_URL, FakeClock, Recorder, make_range


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def http_client(recorder: Recorder):
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(
        base_url=BASE_URL,
        client_id="client-id",
        client_secret="client-secret",
        username="sandbox@factus.test",
        password="secret",
    )


@pytest.fixture
def credential_store(credentials: Credentials) -> InMemoryCredentialStore:
    return InMemoryCredentialStore(credentials)


@pytest.fixture
def fast_options() -> SendOptions:
    return SendOptions(timeout=5.0, retries=2, retry_delay=0.5)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: List[float]):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def range_store() -> InMemoryRangeStore:
    return InMemoryRangeStore([make_range()])
