"""Persistence helpers shared by the routes, the folder watcher and the relay.

Every helper takes an open ``AsyncSession``; committing is left to the caller
except where noted.
"""

import logging
from pathlib import PurePath

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.dashboard_preferences import DEFAULT_ENABLED_MODULES, DashboardPreferences
from backend.app.models.printer import Printer
from backend.app.models.settings import Settings
from backend.app.models.uploaded_file import UploadedFile

logger = logging.getLogger(__name__)

# App setting keys
WATCH_FOLDER_KEY = "watch_folder_path"
RELAY_TARGET_KEY = "relay_target_ip"


def display_name_for(filename: str) -> str:
    """Strip the extension: ``part.gcode`` -> ``part``."""
    return PurePath(filename).stem or filename


async def list_printers(db: AsyncSession) -> list[Printer]:
    result = await db.execute(select(Printer).order_by(Printer.id))
    return list(result.scalars().all())


async def get_printer(db: AsyncSession, printer_id: int) -> Printer | None:
    result = await db.execute(select(Printer).where(Printer.id == printer_id))
    return result.scalar_one_or_none()


async def find_printers_by_ip(db: AsyncSession, ip_address: str) -> list[Printer]:
    result = await db.execute(select(Printer).where(Printer.ip_address == ip_address).order_by(Printer.id))
    return list(result.scalars().all())


async def pick_default_printer(db: AsyncSession) -> Printer | None:
    """Printer that receives files from sources that don't name one.

    A connected printer wins; otherwise the oldest record.
    """
    printers = await list_printers(db)
    for printer in printers:
        if printer.is_connected:
            return printer
    return printers[0] if printers else None


async def delete_printer(db: AsyncSession, printer_id: int) -> None:
    """Delete a printer together with its files and dashboard preferences."""
    await db.execute(delete(UploadedFile).where(UploadedFile.printer_id == printer_id))
    await db.execute(delete(DashboardPreferences).where(DashboardPreferences.printer_id == printer_id))
    await db.execute(delete(Printer).where(Printer.id == printer_id))


async def save_captured_token(db: AsyncSession, ip_address: str, token: str) -> list[Printer]:
    """Store a token on every printer at ``ip_address``.

    Empty tokens are ignored so a captured token is never blanked out.
    Returns the printers that were updated.
    """
    if not token:
        return []

    printers = await find_printers_by_ip(db, ip_address)
    for printer in printers:
        printer.token = token
    return printers


async def get_uploaded_files(db: AsyncSession, printer_id: int) -> list[UploadedFile]:
    result = await db.execute(
        select(UploadedFile)
        .where(UploadedFile.printer_id == printer_id)
        .order_by(UploadedFile.uploaded_at.desc(), UploadedFile.id.desc())
    )
    return list(result.scalars().all())


async def get_uploaded_file(db: AsyncSession, printer_id: int, file_id: int) -> UploadedFile | None:
    result = await db.execute(
        select(UploadedFile).where(UploadedFile.id == file_id, UploadedFile.printer_id == printer_id)
    )
    return result.scalar_one_or_none()


async def find_uploaded_file(db: AsyncSession, printer_id: int, filename: str) -> UploadedFile | None:
    result = await db.execute(
        select(UploadedFile).where(UploadedFile.printer_id == printer_id, UploadedFile.filename == filename).limit(1)
    )
    return result.scalar_one_or_none()


async def add_uploaded_file(
    db: AsyncSession,
    printer_id: int,
    filename: str,
    source: str,
    display_name: str | None = None,
    file_content: str | None = None,
    thumbnail: str | None = None,
) -> UploadedFile:
    uploaded = UploadedFile(
        printer_id=printer_id,
        filename=filename,
        display_name=display_name,
        file_content=file_content,
        thumbnail=thumbnail,
        source=source,
    )
    db.add(uploaded)
    await db.flush()
    await db.refresh(uploaded)
    return uploaded


async def get_dashboard_preferences(db: AsyncSession, printer_id: int) -> list[str]:
    result = await db.execute(select(DashboardPreferences).where(DashboardPreferences.printer_id == printer_id))
    prefs = result.scalar_one_or_none()
    if prefs:
        return list(prefs.enabled_modules)
    return list(DEFAULT_ENABLED_MODULES)


async def set_dashboard_preferences(db: AsyncSession, printer_id: int, enabled_modules: list[str]) -> None:
    result = await db.execute(select(DashboardPreferences).where(DashboardPreferences.printer_id == printer_id))
    prefs = result.scalar_one_or_none()

    if prefs:
        prefs.enabled_modules = list(enabled_modules)
    else:
        db.add(DashboardPreferences(printer_id=printer_id, enabled_modules=list(enabled_modules)))


async def get_setting(db: AsyncSession, key: str) -> str | None:
    """Get a single setting value by key."""
    result = await db.execute(select(Settings).where(Settings.key == key))
    setting = result.scalar_one_or_none()
    return setting.value if setting else None


async def set_setting(db: AsyncSession, key: str, value: str | None) -> None:
    """Set a single setting value. ``None`` removes the key."""
    result = await db.execute(select(Settings).where(Settings.key == key))
    setting = result.scalar_one_or_none()

    if value is None:
        if setting:
            await db.delete(setting)
        return

    if setting:
        setting.value = value
    else:
        db.add(Settings(key=key, value=value))
