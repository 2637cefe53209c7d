import pytest
from PyQt6.QtTest import QSignalSpy

from bindings.models import NotifyConfig
from runtime_simulator.data_manager import InMemoryDataStore


@pytest.mark.asyncio
async def test_paths_follow_references(store):
    assert await store.read("pump-1", ["Motor", "Speed"]) == 1450
    await store.write("pump-1", ["Motor", "Speed"], 1200, writer_id="ui")
    assert store.value("motor-1", "Speed") == 1200
    assert store.get_entity("motor-1").fields["Speed"].writer_id == "ui"


@pytest.mark.asyncio
async def test_broken_chain_reads_none_and_refuses_writes(store):
    await store.write("pump-1", ["Motor"], None)
    assert await store.read("pump-1", ["Motor", "Speed"]) is None
    with pytest.raises(KeyError):
        await store.write("pump-1", ["Motor", "Speed"], 1)
    with pytest.raises(KeyError):
        await store.read("nobody", ["Name"])
    with pytest.raises(ValueError):
        await store.read("pump-1", [])


@pytest.mark.asyncio
async def test_field_types():
    store = InMemoryDataStore()
    assert await store.get_field_type("Anything") == "Anything"
    with pytest.raises(KeyError):
        await store.get_field_type("not a name")

    strict = InMemoryDataStore(schema=["Name"])
    strict.add_entity("a", {"Level": 1})
    assert await strict.get_field_type("Level") == "Level"
    with pytest.raises(KeyError):
        await strict.get_field_type("Pressure")


@pytest.mark.asyncio
async def test_notifications_carry_current_previous_and_context(store):
    seen = []
    config = NotifyConfig("pump-1", "Temperature", trigger_on_change=True, context=("Status",))
    await store.register_notification(config, seen.append)

    await store.write("pump-1", ["Temperature"], 43)
    await store.write("pump-1", ["Temperature"], 43)
    assert len(seen) == 1
    (notification,) = seen
    assert notification.current.value == 43
    assert notification.previous.value == 42
    assert notification.context["Status"].value == "running"
    assert notification.has_data

    assert await store.unregister_notification(config, seen.append) is False
    assert store.subscriptions_for("pump-1", "Temperature") == 1


@pytest.mark.asyncio
async def test_every_write_notifies_without_trigger_on_change(store):
    seen = []

    async def callback(notification):
        seen.append(notification.current.value)

    config = NotifyConfig("pump-1", "Status", trigger_on_change=False)
    await store.register_notification(config, callback)
    await store.write("pump-1", ["Status"], "running")
    await store.write("pump-1", ["Status"], "running")
    assert seen == ["running", "running"]

    assert await store.unregister_notification(config, callback) is True
    assert store.notification_count == 0


@pytest.mark.asyncio
async def test_failing_callback_is_logged(store, caplog):
    def callback(notification):
        raise RuntimeError("boom")

    seen = []
    await store.register_notification(NotifyConfig("pump-1", "Name"), callback)
    await store.register_notification(NotifyConfig("pump-1", "Name"), seen.append)
    await store.write("pump-1", ["Name"], "Renamed")
    assert len(seen) == 1
    assert "Notification callback for pump-1.Name failed" in caplog.text


@pytest.mark.asyncio
async def test_writes_are_mirrored_on_field_changed(store):
    spy = QSignalSpy(store.field_changed)
    await store.write("pump-2", ["Level"], "4")
    assert len(spy) == 1
    assert spy[0][0] == "pump-2"
    assert spy[0][1] == "Level"
    assert spy[0][2] == "4"


@pytest.mark.asyncio
async def test_entity_lifecycle():
    store = InMemoryDataStore()
    store.load({"tank-1": {"type": "Tank", "fields": {"Level": 3}, "name": "Tank 1"}})
    assert store.get_entity("tank-1").type == "Tank"
    assert await store.entity_exists("tank-1")

    entity_id = await store.create_entity("Valve", "tank-1", "Valve 1")
    assert store.get_entity(entity_id).parent_id == "tank-1"
    await store.register_notification(NotifyConfig(entity_id, "Open"), lambda n: None)

    await store.delete_entity(entity_id)
    assert not await store.entity_exists(entity_id)
    assert store.notification_count == 0
    with pytest.raises(KeyError):
        await store.delete_entity(entity_id)
    with pytest.raises(KeyError):
        await store.register_notification(NotifyConfig("ghost", "Open"), lambda n: None)
