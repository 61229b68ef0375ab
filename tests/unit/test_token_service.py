import asyncio
from unittest.mock import AsyncMock

import jwt
import pytest

from guestcode_client.errors import ApiError, AuthExpiredError
from guestcode_client.models.domain.session_domain import (
    MalformedTokenError,
    SessionToken,
    StoredTokens,
)
from guestcode_client.services.token_service import TokenLifecycleManager, TokenServiceError
from guestcode_client.services.token_storage import MemoryTokenStore
from tests.factories import T0, USER_ID, make_token


def test_threshold_boundary_is_inclusive(tokens, clock):
    token = make_token(issued_at=T0, lifetime=1000)

    clock.now = T0 + 749
    assert tokens.is_token_expired_or_near_expiry(token) is False

    clock.now = T0 + 750
    assert tokens.is_token_expired_or_near_expiry(token) is True

    clock.now = T0 + 2000
    assert tokens.is_token_expired_or_near_expiry(token) is True


def test_malformed_or_missing_token_is_stale(tokens):
    assert tokens.is_token_expired_or_near_expiry("not-a-jwt") is True
    assert tokens.is_token_expired_or_near_expiry("") is True

    tokens.clear_session()
    assert tokens.is_token_expired_or_near_expiry() is True
    assert tokens.seconds_until_refresh() is None


def test_token_without_iat_is_malformed():
    token = jwt.encode({"exp": T0 + 60}, "test-secret", algorithm="HS256")

    with pytest.raises(MalformedTokenError):
        SessionToken.decode(token)


def test_seconds_until_refresh(tokens, clock):
    clock.now = T0 + 100
    assert tokens.seconds_until_refresh() == pytest.approx(2600)

    clock.now = T0 + 5000
    assert tokens.seconds_until_refresh() == 0.0


def test_set_session_keeps_previous_refresh_token_and_user(tokens):
    tokens.set_session("new-access")

    stored = tokens.store.load()
    assert stored.access_token == "new-access"
    assert stored.refresh_token == "refresh-1"
    assert stored.user_id == USER_ID


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_call(token_store, clock):
    release = asyncio.Event()
    new_token = make_token(issued_at=T0 + 10)

    async def slow_refresh(refresh_token):
        await release.wait()
        return {"token": new_token}

    refresh_call = AsyncMock(side_effect=slow_refresh)
    tokens = TokenLifecycleManager(token_store, refresh_call=refresh_call, clock=clock)

    callers = [asyncio.create_task(tokens.refresh()) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*callers)

    assert results == [new_token, new_token, new_token]
    refresh_call.assert_awaited_once_with("refresh-1")
    assert tokens.refresh_count == 1
    assert tokens.access_token == new_token


@pytest.mark.asyncio
async def test_refresh_failure_is_shared_and_next_call_starts_fresh(token_store, clock):
    release = asyncio.Event()

    async def failing_refresh(refresh_token):
        await release.wait()
        raise ApiError("backend down", status_code=503)

    refresh_call = AsyncMock(side_effect=failing_refresh)
    tokens = TokenLifecycleManager(token_store, refresh_call=refresh_call, clock=clock)

    callers = [asyncio.create_task(tokens.refresh()) for _ in range(2)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*callers, return_exceptions=True)

    assert all(isinstance(r, TokenServiceError) for r in results)
    assert refresh_call.await_count == 1

    refresh_call.side_effect = None
    refresh_call.return_value = {"token": make_token(issued_at=T0 + 5)}
    await tokens.refresh()
    assert refresh_call.await_count == 2


@pytest.mark.asyncio
async def test_refresh_rejected_by_backend_is_not_recoverable(token_store, clock):
    refresh_call = AsyncMock(side_effect=AuthExpiredError("refresh token revoked"))
    tokens = TokenLifecycleManager(token_store, refresh_call=refresh_call, clock=clock)

    with pytest.raises(TokenServiceError) as exc_info:
        await tokens.refresh()

    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_refresh_without_token_in_response_fails(token_store, clock):
    tokens = TokenLifecycleManager(
        token_store, refresh_call=AsyncMock(return_value={"message": "ok"}), clock=clock
    )

    with pytest.raises(TokenServiceError, match="No token"):
        await tokens.refresh()


@pytest.mark.asyncio
async def test_listeners_receive_new_token(token_store, clock):
    new_token = make_token(issued_at=T0 + 20)
    tokens = TokenLifecycleManager(
        token_store, refresh_call=AsyncMock(return_value={"token": new_token}), clock=clock
    )
    received = []

    async def async_listener(token):
        received.append(("async", token))

    def broken_listener(token):
        raise RuntimeError("listener bug")

    tokens.on_refreshed(broken_listener)
    tokens.on_refreshed(lambda token: received.append(("sync", token)))
    tokens.on_refreshed(async_listener)

    await tokens.refresh()

    assert received == [("sync", new_token), ("async", new_token)]


@pytest.mark.asyncio
async def test_ensure_fresh_token_refreshes_only_when_stale(token_store, clock):
    new_token = make_token(issued_at=T0 + 3000)
    refresh_call = AsyncMock(return_value={"token": new_token})
    tokens = TokenLifecycleManager(token_store, refresh_call=refresh_call, clock=clock)

    assert await tokens.ensure_fresh_token() == make_token()
    refresh_call.assert_not_awaited()

    clock.advance(2700)
    assert await tokens.ensure_fresh_token() == new_token
    refresh_call.assert_awaited_once()


@pytest.mark.asyncio
async def test_ensure_fresh_token_without_session(clock):
    tokens = TokenLifecycleManager(MemoryTokenStore(), refresh_call=AsyncMock(), clock=clock)

    assert await tokens.ensure_fresh_token() is None


@pytest.mark.asyncio
async def test_schedule_arms_timer_for_fresh_token(tokens):
    tokens.schedule_proactive_refresh()

    assert tokens.has_pending_timer is True

    await tokens.stop()
    assert tokens.has_pending_timer is False


@pytest.mark.asyncio
async def test_schedule_refreshes_immediately_when_stale(token_store, clock):
    new_token = make_token(issued_at=T0 + 3000)
    refresh_call = AsyncMock(return_value={"token": new_token})
    tokens = TokenLifecycleManager(token_store, refresh_call=refresh_call, clock=clock)
    clock.advance(3000)

    tokens.schedule_proactive_refresh()
    for _ in range(5):
        await asyncio.sleep(0)

    refresh_call.assert_awaited_once()
    assert tokens.access_token == new_token
    # the replacement token is fresh, so a new timer is armed for it
    assert tokens.has_pending_timer is True
    await tokens.stop()


@pytest.mark.asyncio
async def test_stale_token_after_refresh_backs_off(token_store, clock):
    refresh_call = AsyncMock(return_value={"token": make_token(issued_at=T0)})
    tokens = TokenLifecycleManager(
        token_store, refresh_call=refresh_call, check_interval=300, clock=clock
    )
    clock.advance(10_000)

    tokens.schedule_proactive_refresh()
    for _ in range(50):
        await asyncio.sleep(0)

    # server handed back an already stale token; the retry waits for check_interval
    assert refresh_call.await_count == 1
    assert tokens.has_pending_timer is True
    await tokens.stop()


@pytest.mark.asyncio
async def test_schedule_without_token_does_nothing(clock):
    refresh_call = AsyncMock()
    tokens = TokenLifecycleManager(MemoryTokenStore(), refresh_call=refresh_call, clock=clock)

    tokens.schedule_proactive_refresh()
    await asyncio.sleep(0)

    assert tokens.has_pending_timer is False
    refresh_call.assert_not_awaited()


@pytest.mark.asyncio
async def test_stop_keeps_listeners(tokens):
    listener = AsyncMock()
    tokens.on_refreshed(listener)
    tokens.start()

    await tokens.stop()

    assert listener in tokens._listeners
    assert tokens._loops == []


@pytest.mark.asyncio
async def test_ping_session_statuses(token_store, clock):
    tokens = TokenLifecycleManager(
        token_store,
        refresh_call=AsyncMock(return_value={"token": make_token(issued_at=T0 + 1)}),
        ping_call=AsyncMock(return_value={"message": "pong"}),
        clock=clock,
    )

    assert await tokens.ping_session() == {"status": "ok", "message": "pong"}

    tokens._ping_call = AsyncMock(side_effect=ApiError("Unauthorized", status_code=401))
    assert await tokens.ping_session() == {"status": "refreshed"}

    tokens._ping_call = AsyncMock(side_effect=ApiError("Bad gateway", status_code=502))
    result = await tokens.ping_session()
    assert result["status"] == "error"

    tokens.clear_session()
    assert await tokens.ping_session() == {"status": "no-token"}


@pytest.mark.asyncio
async def test_ping_session_reports_failed_refresh(token_store, clock):
    tokens = TokenLifecycleManager(
        token_store,
        refresh_call=AsyncMock(side_effect=AuthExpiredError("revoked")),
        ping_call=AsyncMock(side_effect=AuthExpiredError("Unauthorized")),
        clock=clock,
    )

    result = await tokens.ping_session()

    assert result["status"] == "refresh-failed"


@pytest.mark.asyncio
async def test_visibility_regain_checks_token_and_pings(clock):
    store = MemoryTokenStore(StoredTokens(access_token=make_token(), refresh_token="r"))
    refresh_call = AsyncMock(return_value={"token": make_token(issued_at=T0 + 3000)})
    ping_call = AsyncMock(return_value={})
    tokens = TokenLifecycleManager(
        store, refresh_call=refresh_call, ping_call=ping_call, clock=clock
    )
    clock.advance(2800)

    tokens.handle_visibility_change(True)
    await asyncio.sleep(0)
    refresh_call.assert_not_awaited()

    tokens.handle_visibility_change(False)
    tokens.handle_visibility_change(True)
    for _ in range(5):
        await asyncio.sleep(0)

    refresh_call.assert_awaited_once()
    ping_call.assert_awaited_once()
    await tokens.stop()
