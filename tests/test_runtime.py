import asyncio
import json

import pytest
from PyQt6.QtTest import QSignalSpy

from bindings.constants import NotificationState
from bindings.models import BindingDefinition
from bindings.runtime import FaceplateRuntime
from runtime_simulator.data_manager import InMemoryDataStore


UNITS = "def to_f(c):\n    return c * 9 / 5 + 32"


@pytest.fixture
def faceplate(store):
    store.add_entity("fp-1", {
        "Name": "Pump faceplate",
        "TargetEntityType": "Pump",
        "Configuration": json.dumps({
            "scripts": [{"name": "units", "code": UNITS}, {"name": "broken", "code": "def (:"}],
        }),
        "Bindings": json.dumps([
            {"component": "Gauge1", "property": "value", "expression": "Temperature"},
            {
                "component": "Label1",
                "property": "text",
                "mode": "script",
                "expression": "return helpers.format(context.module('units').to_f(context.get('Temperature')), 1)",
                "dependencies": ["Temperature"],
            },
            {"component": "Label2", "property": "text", "expression": "Motor->Name",
             "transform": "lambda value: value.upper()"},
        ]),
        "NotificationChannels": json.dumps([{"fields": ["Status"]}]),
    }, entity_type="Faceplate")
    return "fp-1"


@pytest.mark.asyncio
async def test_load_faceplate_brings_bindings_live(runtime, store, faceplate):
    errors = QSignalSpy(runtime.runtime_error)
    record = await runtime.load_faceplate(faceplate, "pump-1")
    await runtime.wait_idle()

    assert record.name == "Pump faceplate"
    assert dict(runtime.binding_values) == {
        "Gauge1:value": 42,
        "Label1:text": "107.6",
        "Label2:text": "MOTOR A",
    }
    assert runtime.component_bindings("Label1") == {"text": "107.6"}
    assert runtime.notification_state is NotificationState.ACTIVE
    assert set(runtime.notifications.direct_dependencies) == {"Temperature", "Status"}
    assert runtime.notifications.indirect_dependencies == ["Motor->Name"]

    (compile_error,) = runtime.compile_errors
    assert compile_error.module == "broken"
    assert len(errors) == 1
    assert errors[0][0]["module"] == "broken"

    await store.write("pump-1", ["Temperature"], 100)
    await runtime.wait_idle()
    assert runtime.binding_value("Gauge1", "value") == 100
    assert runtime.binding_value("Label1", "text") == "212.0"


@pytest.mark.asyncio
async def test_binding_values_are_read_only(runtime, faceplate):
    await runtime.load_faceplate(faceplate, "pump-1")
    with pytest.raises(TypeError):
        runtime.binding_values["Gauge1:value"] = 0
    assert runtime.binding_value("Gauge1", "missing") is None


@pytest.mark.asyncio
async def test_load_without_entity_leaves_slots_empty(runtime, store, faceplate):
    await runtime.load_faceplate(faceplate)
    assert set(runtime.binding_values.values()) == {None}
    assert runtime.notification_state is NotificationState.IDLE
    assert store.notification_count == 0


@pytest.mark.asyncio
async def test_set_entity_rebinds_graph(runtime, store, faceplate):
    await runtime.load_faceplate(faceplate, "pump-1")
    await runtime.set_entity("pump-2")
    await runtime.wait_idle()

    assert runtime.binding_value("Gauge1", "value") == 18
    assert runtime.binding_value("Label2", "text") == "MOTOR B"
    assert runtime.binding_value("Label1", "text") == "64.4"
    assert store.subscriptions_for("pump-1", "Temperature") == 0
    assert store.subscriptions_for("pump-2", "Temperature") == 1

    await store.write("pump-1", ["Temperature"], 99)
    await runtime.wait_idle()
    assert runtime.binding_value("Gauge1", "value") == 18


@pytest.mark.asyncio
async def test_teardown_releases_everything(runtime, store, faceplate):
    await runtime.load_faceplate(faceplate, "pump-1")
    await runtime.teardown()

    assert dict(runtime.binding_values) == {}
    assert runtime.compile_errors == []
    assert runtime.subscription_count == 0
    assert store.notification_count == 0
    assert runtime.record is None
    assert runtime.entity_id is None
    assert runtime.state.module_exports == {}


@pytest.mark.asyncio
async def test_unknown_faceplate_raises(runtime):
    with pytest.raises(KeyError):
        await runtime.load_faceplate("fp-missing", "pump-1")


class GatedStore(InMemoryDataStore):
    gate = None

    async def read(self, entity_id, path):
        if self.gate is not None:
            await self.gate.wait()
        return await super().read(entity_id, path)


@pytest.mark.asyncio
async def test_teardown_cancels_pending_reevaluations(settings, populate):
    store = populate(GatedStore())
    runtime = FaceplateRuntime(store, settings=settings)
    runtime.build_binding_maps([
        BindingDefinition.from_dict({"component": "Gauge1", "property": "value", "expression": "Temperature * 2"}),
    ])
    await runtime.evaluate_all_bindings("pump-1")
    await runtime.register_notifications()
    assert runtime.binding_value("Gauge1", "value") == 84

    store.gate = asyncio.Event()
    await store.write("pump-1", ["Temperature"], 50)
    assert len(runtime.tasks) == 1
    spy = QSignalSpy(runtime.binding_values_changed)

    await runtime.teardown()
    assert len(runtime.tasks) == 0
    store.gate.set()
    for _ in range(5):
        await asyncio.sleep(0)
    assert len(spy) == 0
    assert dict(runtime.binding_values) == {}
