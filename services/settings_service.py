# services/settings_service.py
# Persists the tunables of the faceplate runtime.

import json
import logging
import os

from .data_context import DataContext, data_context

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "max_runtime_errors": 100,
    "max_evaluation_depth": 50,
    "max_concurrent_evaluations": 16,
    "script_iteration_limit": 10000,
    "live": True,
}


class SettingsService:
    """
    Manages loading and saving runtime settings from a JSON file.
    Missing keys fall back to DEFAULT_SETTINGS.
    """
    def __init__(self, file_name="runtime_settings.json", bus: DataContext = None):
        self.file_path = file_name
        self._bus = bus
        self.settings = self._load()

    def _load(self):
        """
        Loads the settings from the JSON file.
        Returns an empty dictionary if the file doesn't exist or is invalid.
        """
        try:
            if os.path.exists(self.file_path):
                with open(self.file_path, 'r') as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
                logger.warning("Ignoring settings file %s: expected a JSON object", self.file_path)
        except (IOError, json.JSONDecodeError) as e:
            logger.warning("Could not load settings: %s", e)
        return {}

    def save(self):
        """Saves the current settings dictionary to the JSON file."""
        try:
            with open(self.file_path, 'w') as f:
                json.dump(self.settings, f, indent=4)
        except IOError as e:
            logger.error("Could not save settings: %s", e)

    def get_value(self, key, default=None):
        """
        Retrieves a value from the settings for a given key.

        Args:
            key (str): The key for the setting.
            default: The value to return if the key is not found. When
                omitted, the built-in default for the key is used.

        Returns:
            The setting value or the default.
        """
        if default is None:
            default = DEFAULT_SETTINGS.get(key)
        return self.settings.get(key, default)

    def get_int(self, key, default=None):
        value = self.get_value(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("Setting %r is not an integer: %r", key, value)
            return int(DEFAULT_SETTINGS.get(key, default or 0))

    def set_value(self, key, value):
        """
        Sets a value in the settings for a given key.
        """
        self.settings[key] = value
        if self._bus is not None:
            self._bus.settings_changed.emit({"key": key, "value": value})

# Create a singleton instance to be used throughout the application
settings_service = SettingsService(bus=data_context)
