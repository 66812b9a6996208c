from pathlib import Path

from pydantic_settings import BaseSettings

# Application version - single source of truth
APP_VERSION = "0.3.0"

# Base directory for path calculations
_base_dir = Path(__file__).resolve().parent.parent.parent.parent


class Settings(BaseSettings):
    app_name: str = "SnapDeck"
    debug: bool = False  # Default to production mode

    # Paths
    base_dir: Path = _base_dir
    log_dir: Path = base_dir / "logs"
    database_url: str = f"sqlite+aiosqlite:///{_base_dir / 'snapdeck.db'}"

    # Logging
    log_level: str = "INFO"  # Override with LOG_LEVEL env var or DEBUG=true
    log_to_file: bool = True  # Set to false to disable file logging

    # API
    api_prefix: str = "/api/v1"

    # Snapmaker HTTP API
    printer_api_port: int = 8080
    printer_request_timeout: float = 5.0
    printer_upload_timeout: float = 120.0

    # Luban relay - listens on the printer's own API port
    relay_port: int = 8080
    relay_bind_address: str = "0.0.0.0"  # nosec B104
    relay_forward_timeout: float = 120.0

    # Watch folder
    watch_poll_interval: float = 2.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

if settings.log_to_file:
    settings.log_dir.mkdir(exist_ok=True)
