"""Watch folder service - imports G-code dropped into a local directory.

The folder is polled rather than watched through OS notifications, so it
works the same on network shares. Files are imported once per watcher run
and assigned to the connected printer (or the first one configured).
"""

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.models.uploaded_file import FileSource
from backend.app.services.printer_store import (
    WATCH_FOLDER_KEY,
    add_uploaded_file,
    display_name_for,
    find_uploaded_file,
    get_setting,
    pick_default_printer,
    set_setting,
)
from backend.app.services.thumbnail import extract_thumbnail

logger = logging.getLogger(__name__)

WATCHED_EXTENSIONS = (".gcode", ".nc", ".cnc")

# Files modified more recently than this may still be being written
SETTLE_SECONDS = 0.5


class FolderWatcher:
    """Polls one directory and imports new G-code files."""

    def __init__(self, poll_interval: float | None = None, session_factory: Callable | None = None):
        self.poll_interval = poll_interval or settings.watch_poll_interval
        self._session_factory = session_factory
        self._path: Path | None = None
        self._task: asyncio.Task | None = None
        self._processed: set[str] = set()

    def set_session_factory(self, session_factory: Callable) -> None:
        self._session_factory = session_factory

    def _sessions(self) -> Callable[[], AsyncSession]:
        if self._session_factory is None:
            from backend.app.core.database import async_session

            return async_session
        return self._session_factory

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def path(self) -> str | None:
        return str(self._path) if self._path else None

    def get_status(self) -> dict:
        return {"active": self.is_active, "path": self.path if self.is_active else None}

    async def start(self, path: str) -> bool:
        """Start watching ``path``. Returns False if it isn't a directory."""
        await self.stop()

        folder = Path(path).expanduser()
        if not folder.is_dir():
            logger.error("Watch folder is not a directory: %s", path)
            return False

        self._path = folder
        self._processed.clear()

        try:
            await self.scan()
        except Exception as e:
            logger.error("Initial scan of %s failed: %s", folder, e)

        self._task = asyncio.create_task(self._run(), name="folder-watcher")
        logger.info("Started watching: %s", folder)
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped watching: %s", self._path)
        self._path = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.scan()
            except Exception as e:
                logger.error("Watch folder scan failed: %s", e)

    async def scan(self) -> int:
        """Import every new file in the folder. Returns how many were added."""
        if self._path is None:
            return 0

        try:
            candidates = sorted(self._path.iterdir())
        except OSError as e:
            logger.error("Error scanning watch folder %s: %s", self._path, e)
            return 0

        added = 0
        for file_path in candidates:
            if await self._process_file(file_path):
                added += 1
        return added

    async def _process_file(self, file_path: Path) -> bool:
        key = str(file_path)
        if key in self._processed:
            return False
        if file_path.suffix.lower() not in WATCHED_EXTENSIONS:
            return False

        try:
            stat = file_path.stat()
        except OSError:
            return False
        if not file_path.is_file():
            return False
        if time.time() - stat.st_mtime < SETTLE_SECONDS:
            # Picked up on the next poll
            return False

        filename = file_path.name
        try:
            async with self._sessions()() as db:
                printer = await pick_default_printer(db)
                if not printer:
                    logger.debug("No printer configured, skipping file: %s", filename)
                    return False

                if await find_uploaded_file(db, printer.id, filename):
                    logger.info("File already exists: %s", filename)
                    self._processed.add(key)
                    return False

                loop = asyncio.get_running_loop()
                content = await loop.run_in_executor(
                    None, lambda: file_path.read_text(encoding="utf-8", errors="replace")
                )
                thumbnail = extract_thumbnail(content)

                await add_uploaded_file(
                    db,
                    printer_id=printer.id,
                    filename=filename,
                    source=FileSource.WATCH_FOLDER.value,
                    display_name=display_name_for(filename),
                    file_content=content,
                    thumbnail=thumbnail,
                )
                await db.commit()
        except OSError as e:
            logger.error("Error reading watched file %s: %s", filename, e)
            return False

        self._processed.add(key)
        logger.info("Added file from watch folder: %s%s", filename, " (with thumbnail)" if thumbnail else "")
        return True


folder_watcher = FolderWatcher()


async def init_watcher(db: AsyncSession) -> bool:
    """Resume watching the saved folder; a path that no longer works is cleared."""
    saved_path = await get_setting(db, WATCH_FOLDER_KEY)
    if not saved_path:
        return False

    if await folder_watcher.start(saved_path):
        return True

    logger.warning("Saved watch folder path is invalid, clearing setting: %s", saved_path)
    await set_setting(db, WATCH_FOLDER_KEY, None)
    await db.commit()
    return False
