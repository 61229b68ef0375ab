from unittest.mock import AsyncMock

import pytest

from guestcode_client.errors import ApiError, AuthExpiredError
from guestcode_client.infrastructure.events.bus import EventBus
from guestcode_client.models.events import (
    NewNotification,
    NotificationDeleted,
    NotificationUpdated,
)
from guestcode_client.services.notification_service import (
    NotificationServiceError,
    NotificationStore,
)
from tests.factories import USER_ID


def _notification(notification_id: str, read: bool = False, title: str = "Update") -> dict:
    return {
        "_id": notification_id,
        "type": "system",
        "title": title,
        "message": "Something happened",
        "read": read,
        "createdAt": "2024-05-01T12:00:00Z",
    }


async def _loaded_store(*notifications) -> tuple[NotificationStore, EventBus, AsyncMock]:
    api = AsyncMock()
    api.list_notifications.return_value = list(notifications)
    bus = EventBus()
    store = NotificationStore(api, bus, USER_ID)
    await store.fetch_notifications()
    return store, bus, api


@pytest.mark.asyncio
async def test_fetch_counts_unread():
    store, _, api = await _loaded_store(
        _notification("n1"), _notification("n2", read=True), _notification("n3")
    )

    api.list_notifications.assert_awaited_once_with(USER_ID)
    assert [n.id for n in store.notifications] == ["n1", "n2", "n3"]
    assert store.unread_count == 2


@pytest.mark.asyncio
async def test_mark_as_read_decrements_once():
    store, _, api = await _loaded_store(_notification("n1"), _notification("n2"))

    await store.mark_as_read("n1")
    await store.mark_as_read("n1")

    assert store.get("n1").read is True
    assert store.unread_count == 1
    assert api.mark_notification_read.await_count == 2


@pytest.mark.asyncio
async def test_mark_as_read_failure_leaves_state_untouched():
    store, _, api = await _loaded_store(_notification("n1"))
    api.mark_notification_read.side_effect = AuthExpiredError("session over")

    with pytest.raises(AuthExpiredError):
        await store.mark_as_read("n1")

    assert store.get("n1").read is False
    assert store.unread_count == 1


@pytest.mark.asyncio
async def test_mark_as_read_survives_expired_token(api, backend, tokens):
    backend.add("GET", f"/notifications/user/{USER_ID}", (200, [_notification("n1")]))
    backend.add(
        "PUT",
        "/notifications/n1/read",
        (401, {"message": "Token expired"}),
        (200, _notification("n1", read=True)),
    )
    store = NotificationStore(api, EventBus(), USER_ID)
    await store.fetch_notifications()

    await store.mark_as_read("n1")

    assert store.unread_count == 0
    assert len(backend.calls("POST", "/auth/refresh-token")) == 1
    assert len(backend.calls("PUT", "/notifications/n1/read")) == 2
    await api.aclose()


@pytest.mark.asyncio
async def test_clear_all_keeps_failed_deletes():
    store, _, api = await _loaded_store(
        _notification("n1"), _notification("n2"), _notification("n3", read=True)
    )

    async def delete(notification_id):
        if notification_id == "n2":
            raise ApiError("boom", status_code=500)
        return {"message": "deleted"}

    api.delete_notification.side_effect = delete

    with pytest.raises(NotificationServiceError) as exc_info:
        await store.clear_all()

    assert exc_info.value.failed_ids == ["n2"]
    assert [n.id for n in store.notifications] == ["n2"]
    assert store.unread_count == 1
    assert api.delete_notification.await_count == 3


@pytest.mark.asyncio
async def test_clear_all_success_empties_store():
    store, _, api = await _loaded_store(_notification("n1"), _notification("n2"))
    api.delete_notification.return_value = {"message": "deleted"}

    await store.clear_all()

    assert store.notifications == []
    assert store.unread_count == 0


@pytest.mark.asyncio
async def test_new_notification_is_prepended_once():
    store, bus, _ = await _loaded_store(_notification("n1", read=True))
    event = NewNotification(notification=_notification("n2"))

    await bus.publish(event)
    await bus.publish(event)

    assert [n.id for n in store.notifications] == ["n2", "n1"]
    assert store.unread_count == 1


@pytest.mark.asyncio
async def test_update_for_unknown_notification_is_ignored():
    store, bus, _ = await _loaded_store(_notification("n1"))

    await bus.publish(NotificationUpdated(notification=_notification("ghost", read=True)))

    assert [n.id for n in store.notifications] == ["n1"]
    assert store.unread_count == 1


@pytest.mark.asyncio
async def test_update_replaces_and_recounts():
    store, bus, _ = await _loaded_store(_notification("n1"), _notification("n2"))

    updated = _notification("n1", read=True, title="Seen")
    await bus.publish(NotificationUpdated(notification=updated))

    assert store.get("n1").title == "Seen"
    assert store.unread_count == 1


@pytest.mark.asyncio
async def test_deleted_event_removes_and_recounts():
    store, bus, _ = await _loaded_store(_notification("n1"), _notification("n2", read=True))

    await bus.publish(NotificationDeleted(notification_id="n1"))
    await bus.publish(NotificationDeleted(notification_id="missing"))

    assert [n.id for n in store.notifications] == ["n2"]
    assert store.unread_count == 0
