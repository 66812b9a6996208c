"""Client for the Snapmaker HTTP API (port 8080 on the printer)."""

import logging
from urllib.parse import quote

import httpx

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

JOG_FEEDRATE = 3000
DEFAULT_HOME_AXES = "XYZ"
PING_TIMEOUT = 2.0


class SnapmakerAPIError(Exception):
    """Raised when the printer can't be reached or rejects a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def build_jog_gcode(axis: str, distance: float) -> str:
    """Relative move on one axis, then back to absolute positioning."""
    return f"G91\nG0 {axis.upper()}{distance:g} F{JOG_FEEDRATE}\nG90"


def build_home_gcode(axes: str | None = None) -> str:
    return f"G28 {(axes or DEFAULT_HOME_AXES).upper()}"


def format_file_size(size: int | float | None) -> str:
    if not size:
        return "Unknown"
    return f"{size / 1024 / 1024:.1f} MB"


class SnapmakerClient:
    """Thin wrapper around the vendor endpoints of a single printer.

    Every call is a single attempt with a fixed timeout; the caller decides
    what a failure means (e.g. marking the printer disconnected).
    """

    def __init__(
        self,
        ip_address: str,
        port: int | None = None,
        timeout: float | None = None,
        upload_timeout: float | None = None,
    ):
        self.ip_address = ip_address
        self.port = port or settings.printer_api_port
        self.timeout = timeout if timeout is not None else settings.printer_request_timeout
        self.upload_timeout = upload_timeout if upload_timeout is not None else settings.printer_upload_timeout
        self.base_url = f"http://{ip_address}:{self.port}"

    async def _request(
        self,
        endpoint: str,
        method: str = "GET",
        data: dict | None = None,
        files: dict | None = None,
        timeout: float | None = None,
    ) -> dict:
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
                response = await client.request(method, url, data=data, files=files)
        except httpx.HTTPError as e:
            raise SnapmakerAPIError(f"Failed to connect to printer at {self.ip_address}: {e}") from e

        if response.status_code == 204:
            return {"status": 204}

        if not response.is_success:
            raise SnapmakerAPIError(
                f"Failed to connect to printer at {self.ip_address}: Snapmaker API error: {response.status_code}",
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError as e:
                raise SnapmakerAPIError(f"Invalid JSON from printer at {self.ip_address}: {e}") from e

        return {"status": response.status_code}

    async def connect(self, token: str | None = None) -> dict:
        """Open (or resume) a session.

        The first connect returns 204 until the request is confirmed on the
        touchscreen; the next one returns the token.
        """
        return await self._request("/api/v1/connect", "POST", data={"token": token or ""})

    async def disconnect(self, token: str) -> dict:
        return await self._request("/api/v1/disconnect", "POST", data={"token": token})

    async def get_status(self, token: str) -> dict:
        return await self._request(f"/api/v1/status?token={quote(token)}")

    async def execute_code(self, token: str, code: str) -> dict:
        logger.debug("Sending G-code to %s: %r", self.ip_address, code)
        return await self._request("/api/v1/execute_code", "POST", data={"token": token, "code": code})

    async def jog(self, token: str, axis: str, distance: float) -> dict:
        return await self.execute_code(token, build_jog_gcode(axis, distance))

    async def home(self, token: str, axes: str | None = None) -> dict:
        return await self.execute_code(token, build_home_gcode(axes))

    async def list_files(self, token: str) -> list[dict]:
        result = await self._request(f"/api/v1/files?token={quote(token)}")
        return result.get("files") or []

    async def start_print(self, token: str, filename: str) -> dict:
        return await self._request("/api/v1/start_print", "POST", data={"token": token, "filename": filename})

    async def upload_file(self, token: str, filename: str, content: bytes | str) -> dict:
        if isinstance(content, str):
            content = content.encode("utf-8")
        logger.info("Uploading %s (%d bytes) to %s", filename, len(content), self.ip_address)
        return await self._request(
            "/api/v1/upload",
            "POST",
            data={"token": token},
            files={"file": (filename, content, "application/octet-stream")},
            timeout=self.upload_timeout,
        )

    async def ping(self) -> bool:
        """Reachability check; an auth error still means the printer is up."""
        try:
            async with httpx.AsyncClient(timeout=PING_TIMEOUT) as client:
                response = await client.get(f"{self.base_url}/api/v1/status")
        except httpx.HTTPError as e:
            logger.debug("Ping to %s failed: %s", self.ip_address, e)
            return False
        return response.is_success or response.status_code in (401, 403)


def normalize_status(data: dict) -> dict:
    """Map the vendor status payload onto the dashboard's status shape."""
    temperature = data.get("temperature") or {}
    return {
        "state": data.get("status") or data.get("state") or "idle",
        "temperature": {
            "nozzle": temperature.get("nozzle") or 0,
            "bed": temperature.get("bed") or 0,
            "target_nozzle": temperature.get("target_nozzle") or 0,
            "target_bed": temperature.get("target_bed") or 0,
        },
        "progress": data.get("progress") or 0,
        "current_file": data.get("current_file") or None,
        "time_remaining": data.get("time_remaining") or None,
    }


def normalize_files(files: list[dict]) -> list[dict]:
    return [
        {
            "id": index,
            "name": f.get("name") or f.get("filename") or "Unknown",
            "size": format_file_size(f.get("size")),
            "date": str(f.get("date") or f.get("modified") or "Unknown"),
        }
        for index, f in enumerate(files, start=1)
    ]
