import os
import sys
import pytest
from PyQt6.QtWidgets import QApplication

from bindings.models import BindingDefinition
from bindings.runtime import FaceplateRuntime
from runtime_simulator.data_manager import InMemoryDataStore
from services.settings_service import SettingsService


@pytest.fixture(scope="session", autouse=True)
def qapp():
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
    app = QApplication.instance()
    if app is None:
        app = QApplication(sys.argv)
    return app


class CountingStore(InMemoryDataStore):
    """In-memory store that counts reads, for asserting what was re-read."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reads = []

    async def read(self, entity_id, path):
        self.reads.append((entity_id, tuple(path)))
        return await super().read(entity_id, path)


def _populate(store):
    store.add_entity("pump-1", {
        "Name": "Pump 1",
        "Temperature": 42,
        "Pressure": 3.5,
        "Level": "12.5",
        "Status": "running",
        "Motor": "motor-1",
    }, entity_type="Pump")
    store.add_entity("pump-2", {
        "Name": "Pump 2",
        "Temperature": 18,
        "Pressure": 1.0,
        "Level": "3",
        "Status": "stopped",
        "Motor": "motor-2",
    }, entity_type="Pump")
    store.add_entity("motor-1", {"Name": "Motor A", "Speed": 1450}, entity_type="Motor")
    store.add_entity("motor-2", {"Name": "Motor B", "Speed": 900}, entity_type="Motor")
    return store


@pytest.fixture
def populate():
    """Fill any store with the two pumps and their motors."""
    return _populate


@pytest.fixture
def store():
    return _populate(CountingStore())


@pytest.fixture
def settings(tmp_path):
    return SettingsService(str(tmp_path / "runtime_settings.json"))


@pytest.fixture
def runtime(store, settings):
    return FaceplateRuntime(store, settings=settings)


@pytest.fixture
def bind(runtime):
    """Build, evaluate and subscribe a list of binding dicts for an entity."""
    async def _bind(definitions, entity_id="pump-1"):
        runtime.build_binding_maps([BindingDefinition.from_dict(d) for d in definitions])
        await runtime.evaluate_all_bindings(entity_id)
        await runtime.register_notifications()
        return runtime
    return _bind
