import datetime as dt

from bridgewatch.core.state import DeviceStateStore


def test_get_returns_default_without_inserting() -> None:
    store = DeviceStateStore()
    state = store.get("front")

    assert state.battery is None
    assert state.motion == "unknown"
    assert state.last_seen is None
    assert "front" not in store
    assert len(store) == 0


def test_updates_replace_state_and_keep_other_fields() -> None:
    store = DeviceStateStore()
    first = dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.UTC)
    second = first + dt.timedelta(seconds=30)

    store.record_battery("garden", 80, at=first)
    before = store.get("garden")
    store.record_motion("garden", "on", at=second)
    after = store.get("garden")

    assert before.motion == "unknown"
    assert after.battery == 80
    assert after.motion == "on"
    assert after.last_seen == second
    assert store.items() == {"garden": after}


def test_out_of_range_battery_is_stored_as_unknown() -> None:
    store = DeviceStateStore()
    seen = dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.UTC)

    store.record_battery("garden", 150, at=seen)
    assert store.get("garden").battery is None
    assert store.get("garden").last_seen == seen

    store.record_battery("garden", -3)
    assert store.get("garden").battery is None
