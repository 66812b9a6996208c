from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base


class FileSource(str, Enum):
    """How a file found its way into the file list."""

    MANUAL = "manual"
    DRAG_DROP = "drag-drop"
    SLICER = "slicer"
    WATCH_FOLDER = "watch-folder"
    RELAY_CAPTURED = "relay-captured"
    LUBAN = "luban"  # Legacy tag written by older relay versions


class UploadedFile(Base):
    __tablename__ = "uploaded_files"

    id: Mapped[int] = mapped_column(primary_key=True)
    printer_id: Mapped[int] = mapped_column(ForeignKey("printers.id", ondelete="CASCADE"))
    filename: Mapped[str] = mapped_column(String(255))
    display_name: Mapped[str | None] = mapped_column(String(255))
    # Some ingestion paths only ever learn a filename
    file_content: Mapped[str | None] = mapped_column(Text)
    thumbnail: Mapped[str | None] = mapped_column(Text)  # data:image/png;base64,...
    source: Mapped[str] = mapped_column(String(20))
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
