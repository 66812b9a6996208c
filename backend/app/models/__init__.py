from backend.app.models.dashboard_preferences import DashboardPreferences
from backend.app.models.printer import Printer
from backend.app.models.settings import Settings
from backend.app.models.uploaded_file import FileSource, UploadedFile

__all__ = [
    "DashboardPreferences",
    "FileSource",
    "Printer",
    "Settings",
    "UploadedFile",
]
