import pytest

from guestcode_client.infrastructure.events.bus import EventBus
from guestcode_client.models.domain.session_domain import StoredTokens
from guestcode_client.services.api_client import GuestCodeApiClient
from guestcode_client.services.token_service import TokenLifecycleManager
from guestcode_client.services.token_storage import MemoryTokenStore
from tests.factories import (
    BASE_URL,
    T0,
    USER_ID,
    FakeBackend,
    FakeClock,
    FakeSocketFactory,
    make_token,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_store():
    return MemoryTokenStore(
        StoredTokens(access_token=make_token(), refresh_token="refresh-1", user_id=USER_ID)
    )


@pytest.fixture
def backend():
    backend = FakeBackend()
    backend.add(
        "POST",
        "/auth/refresh-token",
        (200, {"token": make_token(issued_at=T0 + 3000), "refreshToken": "refresh-2"}),
    )
    return backend


@pytest.fixture
def tokens(token_store, clock):
    return TokenLifecycleManager(
        token_store, threshold=0.75, check_interval=300, ping_interval=120, clock=clock
    )


@pytest.fixture
def api(tokens, backend):
    return GuestCodeApiClient(tokens, base_url=BASE_URL, transport=backend.transport())


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def socket_factory():
    return FakeSocketFactory()
