from PyQt6.QtCore import QObject, pyqtSignal

class DataContext(QObject):
    """Application-wide pub/sub bus for faceplate data events."""
    faceplates_changed = pyqtSignal(dict)
    components_changed = pyqtSignal(dict)
    settings_changed = pyqtSignal(dict)


data_context = DataContext()
