import re
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

_IPV4_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")
_HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$")


def _validate_address(v: str) -> str:
    v = v.strip()
    if _IPV4_RE.match(v):
        if any(int(octet) > 255 for octet in v.split(".")):
            raise ValueError("Invalid IPv4 address")
        return v
    if not _HOSTNAME_RE.match(v):
        raise ValueError("Must be an IPv4 address or hostname")
    return v


class PrinterBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    ip_address: str = Field(..., min_length=1, max_length=253)

    @field_validator("ip_address")
    @classmethod
    def validate_ip_address(cls, v: str) -> str:
        return _validate_address(v)


class PrinterCreate(PrinterBase):
    token: str | None = None


class PrinterUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    ip_address: str | None = None

    @field_validator("ip_address")
    @classmethod
    def validate_ip_address(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_address(v)


class PrinterResponse(PrinterBase):
    id: int
    token: str | None = None
    is_connected: bool = False
    last_seen: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TemperatureStatus(BaseModel):
    nozzle: float = 0
    bed: float = 0
    target_nozzle: float = 0
    target_bed: float = 0


class PrinterStatus(BaseModel):
    state: str = "idle"
    temperature: TemperatureStatus
    progress: float = 0
    current_file: str | None = None
    time_remaining: int | None = None


class ConnectResponse(BaseModel):
    message: str
    requires_confirmation: bool = False


class AutoReconnectResponse(BaseModel):
    success: bool
    message: str | None = None
    error: str | None = None
    requires_confirmation: bool = False


class PingResponse(BaseModel):
    online: bool
    has_token: bool


class SaveTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class JogRequest(BaseModel):
    axis: str = Field(..., pattern=r"^[XYZxyz]$")
    distance: float


class HomeRequest(BaseModel):
    axes: str | None = Field(default=None, pattern=r"^[XYZxyz ]*$")


class PrintRequest(BaseModel):
    filename: str = Field(..., min_length=1)


class RemoteFile(BaseModel):
    """A file stored on the printer itself."""

    id: int
    name: str
    size: str
    date: str


class DashboardPreferencesUpdate(BaseModel):
    enabled_modules: list[str]


class DashboardPreferencesResponse(BaseModel):
    enabled_modules: list[str]
    message: str | None = None
