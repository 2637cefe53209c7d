from PyQt6.QtTest import QSignalSpy

from services.data_context import DataContext
from services.settings_service import DEFAULT_SETTINGS, SettingsService


def test_missing_keys_fall_back_to_defaults(settings):
    assert settings.get_value("max_runtime_errors") == DEFAULT_SETTINGS["max_runtime_errors"]
    assert settings.get_value("live") is True
    assert settings.get_value("unknown", "x") == "x"


def test_save_and_reload(tmp_path):
    path = str(tmp_path / "settings.json")
    bus = DataContext()
    spy = QSignalSpy(bus.settings_changed)
    service = SettingsService(path, bus=bus)
    service.set_value("max_evaluation_depth", 5)
    service.save()

    assert len(spy) == 1
    assert spy[0][0] == {"key": "max_evaluation_depth", "value": 5}
    assert SettingsService(path).get_int("max_evaluation_depth") == 5


def test_invalid_files_are_ignored(tmp_path, caplog):
    broken = tmp_path / "broken.json"
    broken.write_text("{nope")
    assert SettingsService(str(broken)).settings == {}
    assert "Could not load settings" in caplog.text

    listing = tmp_path / "list.json"
    listing.write_text("[1, 2]")
    assert SettingsService(str(listing)).settings == {}
    assert "expected a JSON object" in caplog.text


def test_get_int_falls_back_on_bad_values(settings, caplog):
    settings.set_value("max_concurrent_evaluations", "many")
    assert settings.get_int("max_concurrent_evaluations") == 16
    assert "is not an integer" in caplog.text
    settings.set_value("max_concurrent_evaluations", "4")
    assert settings.get_int("max_concurrent_evaluations") == 4
