import pytest
from PyQt6.QtTest import QSignalSpy

from bindings.constants import NotificationState
from bindings.indirect_notifier import IndirectFieldNotifier
from bindings.models import BindingDefinition, NotificationChannel
from bindings.runtime import FaceplateRuntime
from runtime_simulator.data_manager import InMemoryDataStore


@pytest.mark.asyncio
async def test_direct_push_updates_only_dependent_slots(bind, store):
    runtime = await bind([
        {"component": "Gauge1", "property": "value", "expression": "Temperature"},
        {"component": "Label1", "property": "text", "expression": "Name"},
    ])
    await runtime.wait_idle()
    assert runtime.notification_state is NotificationState.ACTIVE
    store.reads.clear()
    spy = QSignalSpy(runtime.binding_values_changed)

    await store.write("pump-1", ["Temperature"], 50)
    await runtime.wait_idle()

    assert runtime.binding_value("Gauge1", "value") == 50
    assert runtime.binding_value("Label1", "text") == "Pump 1"
    assert runtime.state.expression_values["field::Temperature"] == 50
    assert store.reads == []
    assert len(spy) == 1
    assert spy[0][0] == {"Gauge1:value": 50}


@pytest.mark.asyncio
async def test_computed_expression_is_reevaluated(bind, store):
    runtime = await bind([
        {"component": "Gauge1", "property": "value", "expression": "Temperature * 2 + Pressure"},
    ])
    assert runtime.binding_value("Gauge1", "value") == 87.5

    await store.write("pump-1", ["Pressure"], 0.5)
    await runtime.wait_idle()
    assert runtime.binding_value("Gauge1", "value") == 84.5


@pytest.mark.asyncio
async def test_script_with_declared_dependencies_is_reevaluated(bind, store):
    runtime = await bind([{
        "component": "Label1",
        "property": "text",
        "mode": "script",
        "expression": "return context.get('Status').upper()",
        "dependencies": ["Status"],
    }])
    assert runtime.binding_value("Label1", "text") == "RUNNING"

    await store.write("pump-1", ["Status"], "stopped")
    await runtime.wait_idle()
    assert runtime.binding_value("Label1", "text") == "STOPPED"


@pytest.mark.asyncio
async def test_indirect_dependency_follows_reference_changes(bind, store):
    runtime = await bind([{"component": "Label1", "property": "text", "expression": "Motor->Speed"}])
    await runtime.wait_idle()
    assert runtime.binding_value("Label1", "text") == 1450
    assert store.subscriptions_for("pump-1", "Motor") == 1
    assert store.subscriptions_for("motor-1", "Speed") == 1

    await store.write("motor-1", ["Speed"], 1500)
    await runtime.wait_idle()
    assert runtime.binding_value("Label1", "text") == 1500

    await store.write("pump-1", ["Motor"], "motor-2")
    await runtime.wait_idle()
    assert runtime.binding_value("Label1", "text") == 900
    assert store.subscriptions_for("motor-1", "Speed") == 0
    assert store.subscriptions_for("motor-2", "Speed") == 1

    # The old motor no longer drives the slot
    await store.write("motor-1", ["Speed"], 1)
    await runtime.wait_idle()
    assert runtime.binding_value("Label1", "text") == 900

    await store.write("pump-1", ["Motor"], None)
    await runtime.wait_idle()
    assert runtime.binding_value("Label1", "text") is None
    assert store.subscriptions_for("motor-2", "Speed") == 0


@pytest.mark.asyncio
async def test_shared_dependency_is_subscribed_once(bind, store):
    runtime = await bind([
        {"component": "Gauge1", "property": "value", "expression": "Temperature"},
        {"component": "Gauge2", "property": "value", "expression": "Temperature * 2"},
        {"component": "Label1", "property": "text", "expression": "return 1", "mode": "script",
         "dependencies": ["Temperature"]},
        {"component": "Label2", "property": "text", "expression": "'static'"},
    ])
    assert runtime.subscription_count == 1
    assert runtime.notifications.direct_dependencies == ["Temperature"]
    assert store.subscriptions_for("pump-1", "Temperature") == 1


@pytest.mark.asyncio
async def test_reregistering_does_not_leak_subscriptions(bind, store):
    runtime = await bind([
        {"component": "Gauge1", "property": "value", "expression": "Temperature"},
        {"component": "Label1", "property": "text", "expression": "Motor->Name"},
    ])
    assert store.notification_count == 3
    for _ in range(5):
        await runtime.register_notifications()
    assert store.notification_count == 3
    assert runtime.subscription_count == 2

    await runtime.cleanup_notifications()
    assert store.notification_count == 0
    assert runtime.notification_state is NotificationState.IDLE


@pytest.mark.asyncio
async def test_notification_without_data_is_skipped(bind, store):
    runtime = await bind([{"component": "Gauge1", "property": "value", "expression": "Temperature"}])
    await store.write("pump-1", ["Temperature"], None)
    await runtime.wait_idle()
    assert runtime.binding_value("Gauge1", "value") == 42


@pytest.mark.asyncio
async def test_channel_field_without_dependents_triggers_full_pass(runtime, bind, store):
    runtime.set_notification_channels([NotificationChannel(fields=("Status", " "))])
    await bind([{"component": "Gauge1", "property": "value", "expression": "Temperature"}])
    assert runtime.notifications.collect_dependencies() == ["Temperature", "Status"]
    store.reads.clear()

    await store.write("pump-1", ["Status"], "stopped")
    await runtime.wait_idle()
    assert ("pump-1", ("Temperature",)) in store.reads


@pytest.mark.asyncio
async def test_failed_registration_does_not_block_others(settings, populate, caplog):
    store = populate(InMemoryDataStore(schema=[]))
    runtime = FaceplateRuntime(store, settings=settings)
    runtime.entity_id = "pump-1"
    runtime.build_binding_maps([])
    runtime.notifications.set_channels([NotificationChannel(fields=("Missing", "Temperature"))])

    await runtime.register_notifications()
    assert runtime.notification_state is NotificationState.ACTIVE
    assert runtime.notifications.direct_dependencies == ["Temperature"]
    assert "Failed to register notification for 'Missing'" in caplog.text


class FlakyStore(InMemoryDataStore):
    async def unregister_notification(self, config, callback):
        raise RuntimeError("store offline")


@pytest.mark.asyncio
async def test_cleanup_failures_are_logged(settings, populate, caplog):
    store = populate(FlakyStore())
    runtime = FaceplateRuntime(store, settings=settings)
    runtime.entity_id = "pump-1"
    runtime.set_notification_channels([NotificationChannel(fields=("Temperature", "Motor->Name"))])
    await runtime.register_notifications()
    assert runtime.subscription_count == 2

    await runtime.cleanup_notifications()
    assert runtime.subscription_count == 0
    assert runtime.notification_state is NotificationState.IDLE
    assert "Failed to unregister hop" in caplog.text
    assert "Failed to clean up notification for 'Temperature'" in caplog.text


@pytest.mark.asyncio
async def test_not_live_or_unbound_stays_idle(settings, store):
    settings.set_value("live", False)
    runtime = FaceplateRuntime(store, settings=settings)
    runtime.entity_id = "pump-1"
    runtime.set_notification_channels([NotificationChannel(fields=("Temperature",))])
    await runtime.register_notifications()
    assert runtime.notification_state is NotificationState.IDLE
    assert store.notification_count == 0

    runtime.live = True
    runtime.entity_id = None
    await runtime.register_notifications()
    assert runtime.notification_state is NotificationState.IDLE
    assert store.notification_count == 0


@pytest.mark.asyncio
async def test_dispatch_is_ignored_when_idle(bind):
    runtime = await bind([{"component": "Gauge1", "property": "value", "expression": "Temperature"}])
    await runtime.cleanup_notifications()
    runtime.notifications.dispatch("Temperature", 99)
    await runtime.wait_idle()
    assert len(runtime.tasks) == 0
    assert runtime.binding_value("Gauge1", "value") == 42


@pytest.mark.asyncio
async def test_indirect_notifier_reports_broken_chain_as_none(store):
    await store.write("pump-2", ["Motor"], None)
    seen = []
    notifier = IndirectFieldNotifier(store, "pump-2", ["Motor", "Speed"], seen.append)
    await notifier.start()
    assert seen == [None]
    assert notifier.entity_chain == ["pump-2"]

    await store.write("pump-2", ["Motor"], "motor-1")
    assert seen == [None, 1450]
    assert notifier.entity_chain == ["pump-2", "motor-1"]

    await notifier.stop()
    assert not notifier.active
    assert notifier.subscription_count == 0
    assert store.notification_count == 0


@pytest.mark.asyncio
async def test_reference_notification_without_data_keeps_the_chain(store):
    seen = []
    notifier = IndirectFieldNotifier(store, "pump-1", ["Motor", "Speed"], seen.append)
    await notifier.start()
    assert seen == [1450]

    reference_hop = notifier._hops[0]
    await reference_hop.callback({"current": {"value": "motor-2", "timestamp": None}})
    assert seen == [1450]
    assert notifier.entity_chain == ["pump-1", "motor-1"]
    assert store.subscriptions_for("motor-2", "Speed") == 0
    await notifier.stop()


@pytest.mark.asyncio
async def test_broken_script_is_compiled_once_across_pushes(bind, store):
    runtime = await bind([{
        "component": "Label1",
        "property": "text",
        "mode": "script",
        "expression": "return (",
        "dependencies": ["Temperature"],
    }])
    spy = QSignalSpy(runtime.runtime_error)
    assert len(runtime.compile_errors) == 1

    for value in range(20):
        await store.write("pump-1", ["Temperature"], value)
    await runtime.wait_idle()

    assert len(runtime.compile_errors) == 1
    assert len(spy) == 0
    assert "return (" in runtime.state.script_cache
    assert runtime.binding_value("Label1", "text") is None


@pytest.mark.asyncio
async def test_evaluating_for_an_entity_binds_its_notifications(runtime, store):
    runtime.build_binding_maps([
        BindingDefinition.from_dict({"component": "Gauge1", "property": "value", "expression": "Temperature"}),
    ])
    await runtime.evaluate_all_bindings("pump-2")
    await runtime.register_notifications()
    assert runtime.entity_id == "pump-2"
    assert runtime.binding_value("Gauge1", "value") == 18
    assert store.subscriptions_for("pump-2", "Temperature") == 1
    assert store.subscriptions_for("pump-1", "Temperature") == 0

    await store.write("pump-2", ["Temperature"], 25)
    await runtime.wait_idle()
    assert runtime.binding_value("Gauge1", "value") == 25
