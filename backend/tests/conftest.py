"""Shared test fixtures for SnapDeck backend tests."""

import logging
import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# IMPORTANT: Set environment variables BEFORE any app imports
# This must happen before settings/config are loaded
os.environ["LOG_TO_FILE"] = "false"
os.environ["DEBUG"] = "false"

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

# Ensure settings use our env vars - import and override before database import
from backend.app.core.config import settings  # noqa: E402

settings.log_to_file = False

from backend.app.core.database import Base  # noqa: E402

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # Import all models to register them
    from backend.app.models import dashboard_preferences, printer, settings, uploaded_file  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session maker bound to the test engine, for services that open their own sessions."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def async_client(session_factory, db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    from backend.app.core.database import get_db
    from backend.app.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    # Also patch the module-level async_session used by services
    with (
        patch("backend.app.core.database.async_session", session_factory),
        patch("backend.app.main.async_session", session_factory),
    ):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.clear()


# ============================================================================
# Mock External Services
# ============================================================================


@pytest.fixture
def mock_snapmaker_client():
    """Replace the vendor API client in every route module that uses it.

    Yields the client instance the routes will receive.
    """
    client = MagicMock()
    client.connect = AsyncMock(return_value={"token": "new-token"})
    client.disconnect = AsyncMock(return_value={"status": 200})
    client.get_status = AsyncMock(
        return_value={
            "status": "RUNNING",
            "temperature": {"nozzle": 205.1, "bed": 60.0, "target_nozzle": 210, "target_bed": 60},
            "progress": 42.5,
            "current_file": "benchy.gcode",
            "time_remaining": 1800,
        }
    )
    client.execute_code = AsyncMock(return_value={"status": 200})
    client.jog = AsyncMock(return_value={"status": 200})
    client.home = AsyncMock(return_value={"status": 200})
    client.list_files = AsyncMock(return_value=[{"name": "benchy.gcode", "size": 2097152, "date": "2024-05-01"}])
    client.start_print = AsyncMock(return_value={"status": 200})
    client.upload_file = AsyncMock(return_value={"status": 200})
    client.ping = AsyncMock(return_value=True)

    with (
        patch("backend.app.api.routes.printers.SnapmakerClient", return_value=client),
        patch("backend.app.api.routes.uploaded_files.SnapmakerClient", return_value=client),
        patch("backend.app.api.routes.octoprint.SnapmakerClient", return_value=client),
    ):
        yield client


@pytest.fixture
def mock_relay():
    """Mock the relay singleton as seen by the relay and settings routes."""
    relay = MagicMock()
    relay.is_running = False
    relay.start = AsyncMock(return_value=True)
    relay.stop = AsyncMock()
    relay.get_status = MagicMock(
        return_value={
            "enabled": False,
            "state": "stopped",
            "port": 8080,
            "target_printer_ip": None,
            "token_captured": False,
            "last_error": None,
        }
    )

    with (
        patch("backend.app.api.routes.relay.snapmaker_relay", relay),
        patch("backend.app.api.routes.settings.snapmaker_relay", relay),
    ):
        yield relay


@pytest.fixture
def mock_folder_watcher():
    """Mock the folder watcher singleton as seen by the settings routes."""
    watcher = MagicMock()
    watcher.is_active = False
    watcher.start = AsyncMock(return_value=True)
    watcher.stop = AsyncMock()

    with patch("backend.app.api.routes.settings.folder_watcher", watcher):
        yield watcher


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def printer_factory(db_session):
    """Factory to create test printers."""
    _counter = [0]  # Use list to allow mutation in nested function

    async def _create_printer(**kwargs):
        from backend.app.models.printer import Printer

        _counter[0] += 1
        counter = _counter[0]

        defaults = {
            "name": f"Test Printer {counter}",
            "ip_address": f"192.168.1.{100 + counter}",  # Unique IP per printer
        }
        defaults.update(kwargs)

        printer = Printer(**defaults)
        db_session.add(printer)
        await db_session.commit()
        await db_session.refresh(printer)
        return printer

    return _create_printer


@pytest.fixture
def uploaded_file_factory(db_session):
    """Factory to create stored G-code files."""

    async def _create_file(printer_id: int, **kwargs):
        from backend.app.models.uploaded_file import FileSource, UploadedFile

        defaults = {
            "filename": "benchy.gcode",
            "display_name": "benchy",
            "file_content": "G28\nG1 X10 Y10\n",
            "source": FileSource.MANUAL.value,
        }
        defaults.update(kwargs)

        uploaded = UploadedFile(printer_id=printer_id, **defaults)
        db_session.add(uploaded)
        await db_session.commit()
        await db_session.refresh(uploaded)
        return uploaded

    return _create_file


@pytest.fixture
def sample_thumbnail_gcode():
    """G-code with a PrusaSlicer style thumbnail block."""
    payload = "iVBORw0KGgoAAAANSUhEUgAAABAAAAAQCAYAAAAf8/9h" * 4
    lines = [payload[i : i + 78] for i in range(0, len(payload), 78)]
    body = "\n".join(f"; {line}" for line in lines)
    return f"; generated by PrusaSlicer\n; thumbnail begin 16x16 {len(payload)}\n{body}\n; thumbnail end\nG28\n"


# ============================================================================
# Log Capture Fixtures for Error Detection
# ============================================================================


class LogCapture(logging.Handler):
    """Handler that captures log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord):
        self.records.append(record)

    def clear(self):
        self.records.clear()

    def get_errors(self) -> list[logging.LogRecord]:
        """Get all ERROR and CRITICAL level records."""
        return [r for r in self.records if r.levelno >= logging.ERROR]

    def get_messages(self, level: int = logging.INFO) -> list[str]:
        return [r.getMessage() for r in self.records if r.levelno >= level]

    def has_errors(self) -> bool:
        """Check if any errors were logged."""
        return len(self.get_errors()) > 0

    def format_errors(self) -> str:
        """Format all errors as a string for assertion messages."""
        errors = self.get_errors()
        if not errors:
            return "No errors"
        formatter = logging.Formatter("%(name)s - %(levelname)s - %(message)s")
        return "\n".join(formatter.format(r) for r in errors)


@pytest.fixture
def capture_logs():
    """Fixture that captures log output during a test.

    Usage:
        def test_something(capture_logs):
            some_function()
            assert not capture_logs.has_errors(), capture_logs.format_errors()
    """
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)

    # Attach to root logger to capture all logs
    root_logger = logging.getLogger()
    previous_level = root_logger.level
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(handler)

    yield handler

    root_logger.removeHandler(handler)
    root_logger.setLevel(previous_level)
