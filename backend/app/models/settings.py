from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base


class Settings(Base):
    """Key/value application settings (watch folder path, relay target, ...)."""

    __tablename__ = "app_settings"

    id: Mapped[int] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(String(100), unique=True)
    value: Mapped[str | None] = mapped_column(Text)
