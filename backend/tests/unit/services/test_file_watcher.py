"""Tests for the watch folder service."""

import asyncio
import os
import time

import pytest
from sqlalchemy import delete, select

from backend.app.models.uploaded_file import UploadedFile
from backend.app.services.file_watcher import FolderWatcher, init_watcher
from backend.app.services.printer_store import WATCH_FOLDER_KEY, get_setting, set_setting


def write_settled(path, content: str = "G28\n") -> None:
    """Write a file and age it past the settle delay."""
    path.write_text(content)
    old = time.time() - 10
    os.utime(path, (old, old))


async def _files(session_factory) -> list[UploadedFile]:
    async with session_factory() as db:
        return list((await db.execute(select(UploadedFile).order_by(UploadedFile.filename))).scalars().all())


@pytest.fixture
async def watcher(session_factory):
    # Long interval: tests drive scan() themselves
    watcher = FolderWatcher(poll_interval=60, session_factory=session_factory)
    yield watcher
    await watcher.stop()


class TestFolderWatcherLifecycle:
    @pytest.mark.asyncio
    async def test_start_missing_folder(self, watcher, tmp_path):
        assert await watcher.start(str(tmp_path / "missing")) is False
        assert watcher.get_status() == {"active": False, "path": None}

    @pytest.mark.asyncio
    async def test_start_on_file_rejected(self, watcher, tmp_path):
        not_a_dir = tmp_path / "file.gcode"
        not_a_dir.write_text("G28")

        assert await watcher.start(str(not_a_dir)) is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self, watcher, tmp_path):
        assert await watcher.start(str(tmp_path)) is True
        assert watcher.get_status() == {"active": True, "path": str(tmp_path)}

        await watcher.stop()

        assert watcher.get_status() == {"active": False, "path": None}


class TestFolderWatcherImport:
    @pytest.mark.asyncio
    async def test_existing_files_imported_on_start(
        self, watcher, tmp_path, printer_factory, session_factory, sample_thumbnail_gcode
    ):
        printer = await printer_factory()
        write_settled(tmp_path / "benchy.gcode", sample_thumbnail_gcode)
        write_settled(tmp_path / "sign.nc")
        write_settled(tmp_path / "outline.CNC")
        write_settled(tmp_path / "notes.txt")

        await watcher.start(str(tmp_path))

        files = await _files(session_factory)
        assert [f.filename for f in files] == ["benchy.gcode", "outline.CNC", "sign.nc"]
        benchy = files[0]
        assert benchy.printer_id == printer.id
        assert benchy.source == "watch-folder"
        assert benchy.display_name == "benchy"
        assert benchy.file_content == sample_thumbnail_gcode
        assert benchy.thumbnail.startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_fresh_file_waits_until_settled(self, watcher, tmp_path, printer_factory, session_factory):
        """Verify a file still being written is only imported once it stops changing."""
        await printer_factory()
        await watcher.start(str(tmp_path))
        path = tmp_path / "large.gcode"
        path.write_text("G28\n")

        assert await watcher.scan() == 0

        write_settled(path)
        assert await watcher.scan() == 1
        assert [f.filename for f in await _files(session_factory)] == ["large.gcode"]

    @pytest.mark.asyncio
    async def test_existing_filename_skipped(
        self, watcher, tmp_path, printer_factory, uploaded_file_factory, session_factory
    ):
        printer = await printer_factory()
        await uploaded_file_factory(printer.id, filename="cube.gcode", file_content="old")
        write_settled(tmp_path / "cube.gcode", "new")

        await watcher.start(str(tmp_path))

        files = await _files(session_factory)
        assert len(files) == 1
        assert files[0].file_content == "old"

    @pytest.mark.asyncio
    async def test_file_imported_once_per_run(self, watcher, tmp_path, printer_factory, session_factory):
        """Verify a processed path isn't imported again even if its record is deleted."""
        await printer_factory()
        write_settled(tmp_path / "cube.gcode")
        await watcher.start(str(tmp_path))

        async with session_factory() as db:
            await db.execute(delete(UploadedFile))
            await db.commit()

        assert await watcher.scan() == 0
        assert await _files(session_factory) == []

    @pytest.mark.asyncio
    async def test_connected_printer_preferred(self, watcher, tmp_path, printer_factory, session_factory):
        await printer_factory(name="Idle")
        connected = await printer_factory(name="Connected", is_connected=True)
        write_settled(tmp_path / "cube.gcode")

        await watcher.start(str(tmp_path))

        assert [f.printer_id for f in await _files(session_factory)] == [connected.id]

    @pytest.mark.asyncio
    async def test_no_printer_retried_later(self, watcher, tmp_path, printer_factory, session_factory):
        """Verify files seen before any printer exists are imported once one is added."""
        write_settled(tmp_path / "cube.gcode")
        await watcher.start(str(tmp_path))
        assert await _files(session_factory) == []

        await printer_factory()

        assert await watcher.scan() == 1

    @pytest.mark.asyncio
    async def test_poll_loop_picks_up_new_files(self, tmp_path, printer_factory, session_factory):
        await printer_factory()
        watcher = FolderWatcher(poll_interval=0.05, session_factory=session_factory)
        await watcher.start(str(tmp_path))

        try:
            write_settled(tmp_path / "later.gcode")

            for _ in range(100):
                if await _files(session_factory):
                    break
                await asyncio.sleep(0.05)
        finally:
            await watcher.stop()

        assert [f.filename for f in await _files(session_factory)] == ["later.gcode"]


class TestInitWatcher:
    @pytest.mark.asyncio
    async def test_no_saved_path(self, db_session):
        assert await init_watcher(db_session) is False

    @pytest.mark.asyncio
    async def test_invalid_saved_path_cleared(self, db_session, session_factory, tmp_path):
        await set_setting(db_session, WATCH_FOLDER_KEY, str(tmp_path / "gone"))
        await db_session.commit()

        assert await init_watcher(db_session) is False

        async with session_factory() as db:
            assert await get_setting(db, WATCH_FOLDER_KEY) is None

    @pytest.mark.asyncio
    async def test_saved_path_resumed(self, db_session, session_factory, tmp_path):
        from backend.app.services import file_watcher

        await set_setting(db_session, WATCH_FOLDER_KEY, str(tmp_path))
        await db_session.commit()
        file_watcher.folder_watcher.set_session_factory(session_factory)

        try:
            assert await init_watcher(db_session) is True
            assert file_watcher.folder_watcher.get_status() == {"active": True, "path": str(tmp_path)}
        finally:
            await file_watcher.folder_watcher.stop()
            file_watcher.folder_watcher.set_session_factory(None)
