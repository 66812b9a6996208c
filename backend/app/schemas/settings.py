from pydantic import BaseModel


class AppSettings(BaseModel):
    """Persisted settings plus the live state of the services they control."""

    watch_folder_path: str | None = None
    watcher_active: bool = False
    relay_target_ip: str | None = None
    relay_enabled: bool = False


class WatchFolderUpdate(BaseModel):
    path: str | None = None


class WatchFolderResponse(BaseModel):
    message: str
    active: bool
    path: str | None = None
