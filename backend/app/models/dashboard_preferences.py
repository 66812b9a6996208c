from sqlalchemy import JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base

# Module ids rendered by the dashboard when a printer has no saved preferences
DEFAULT_ENABLED_MODULES = [
    "status",
    "webcam",
    "temperature",
    "jogControls",
    "jobControls",
    "fileList",
]


class DashboardPreferences(Base):
    __tablename__ = "dashboard_preferences"

    id: Mapped[int] = mapped_column(primary_key=True)
    printer_id: Mapped[int] = mapped_column(ForeignKey("printers.id", ondelete="CASCADE"), unique=True)
    enabled_modules: Mapped[list] = mapped_column(JSON)
