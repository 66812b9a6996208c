import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.database import get_db
from backend.app.schemas.settings import AppSettings, WatchFolderResponse, WatchFolderUpdate
from backend.app.services.file_watcher import folder_watcher
from backend.app.services.printer_store import RELAY_TARGET_KEY, WATCH_FOLDER_KEY, get_setting, set_setting
from backend.app.services.relay import snapmaker_relay

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/settings", tags=["settings"])


@router.get("/", response_model=AppSettings)
async def get_settings(db: AsyncSession = Depends(get_db)):
    """Saved settings together with the live state of the watcher and relay."""
    return AppSettings(
        watch_folder_path=await get_setting(db, WATCH_FOLDER_KEY),
        watcher_active=folder_watcher.is_active,
        relay_target_ip=await get_setting(db, RELAY_TARGET_KEY),
        relay_enabled=snapmaker_relay.is_running,
    )


@router.put("/watch-folder", response_model=WatchFolderResponse)
async def update_watch_folder(request: WatchFolderUpdate, db: AsyncSession = Depends(get_db)):
    """Start watching a folder, or stop watching when ``path`` is empty."""
    path = (request.path or "").strip()

    if not path:
        await folder_watcher.stop()
        await set_setting(db, WATCH_FOLDER_KEY, None)
        await db.commit()
        return WatchFolderResponse(message="Watch folder disabled", active=False)

    if not await folder_watcher.start(path):
        raise HTTPException(400, "Invalid folder path or folder does not exist")

    await set_setting(db, WATCH_FOLDER_KEY, path)
    await db.commit()
    logger.info("Watch folder set to %s", path)
    return WatchFolderResponse(message="Watch folder enabled", active=True, path=path)
