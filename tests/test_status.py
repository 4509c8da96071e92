import pytest

from calmirror.status import ConnectionStatusProjector

from conftest import connect_user, make_event


@pytest.fixture
def projector(store):
    return ConnectionStatusProjector(store)


def test_unknown_user_is_not_connected(projector):
    status = projector.status("nobody")

    assert not status.connected
    assert not status.has_calendar_scope
    assert status.email is None
    assert status.last_sync is None


def test_connected_user(projector, store, clock):
    connect_user(store, clock)
    store.record_sync("user-1")

    status = projector.status("user-1")

    assert status.connected
    assert status.has_calendar_scope
    assert status.email == "user-1@example.com"
    assert status.last_sync == clock()
    assert status.error is None


def test_status_uses_wire_names(projector, store, clock):
    connect_user(store, clock)

    payload = projector.status("user-1").model_dump(mode="json", by_alias=True)

    assert set(payload) == {"connected", "hasCalendarScope", "email", "lastSync", "error"}


def test_connection_without_calendar_scope(projector, store, clock):
    connect_user(store, clock, has_calendar_scope=False)

    status = projector.status("user-1")

    assert not status.connected
    assert status.email == "user-1@example.com"


def test_recorded_error_is_reported(projector, store, clock):
    connect_user(store, clock)
    store.record_error("user-1", "Failed to fetch events: quota")

    assert projector.status("user-1").error == "Failed to fetch events: quota"


def test_reading_status_never_refreshes(projector, store, fake_google, clock):
    connect_user(store, clock, expires_in=0)
    clock.advance(days=1)

    assert projector.status("user-1").connected
    assert fake_google.refresh_calls == 0
    assert store.get("user-1").access_token == "access-user-1"


@pytest.mark.asyncio
async def test_disconnect_clears_status_and_mirror(projector, engine, store, fake_google, clock):
    connect_user(store, clock)
    fake_google.events = {'a': make_event('a'), 'b': make_event('b')}
    await engine.sync("user-1")
    assert engine.count_events("user-1") == 2

    store.disconnect("user-1")

    assert not projector.status("user-1").connected
    assert engine.count_events("user-1") == 0
