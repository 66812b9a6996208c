import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.database import get_db
from backend.app.models.printer import Printer
from backend.app.schemas.printer import (
    AutoReconnectResponse,
    ConnectResponse,
    DashboardPreferencesResponse,
    DashboardPreferencesUpdate,
    HomeRequest,
    JogRequest,
    PingResponse,
    PrinterCreate,
    PrinterResponse,
    PrinterStatus,
    PrinterUpdate,
    PrintRequest,
    RemoteFile,
    SaveTokenRequest,
)
from backend.app.services import printer_store
from backend.app.services.snapmaker_api import SnapmakerAPIError, SnapmakerClient, normalize_files, normalize_status

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/printers", tags=["printers"])

CONFIRM_ON_TOUCHSCREEN = "Please confirm connection on printer touchscreen, then click Connect again"


async def _get_printer_or_404(db: AsyncSession, printer_id: int) -> Printer:
    printer = await printer_store.get_printer(db, printer_id)
    if not printer:
        raise HTTPException(404, "Printer not found")
    return printer


def _require_token(printer: Printer) -> str:
    if not printer.token:
        raise HTTPException(400, "Printer not connected")
    return printer.token


def _mark_seen(printer: Printer, token: str | None = None) -> None:
    if token:
        printer.token = token
    printer.is_connected = True
    printer.last_seen = datetime.now()


@router.get("/", response_model=list[PrinterResponse])
async def list_printers(db: AsyncSession = Depends(get_db)):
    """List all configured printers."""
    return await printer_store.list_printers(db)


@router.post("/", response_model=PrinterResponse, status_code=201)
async def create_printer(printer_data: PrinterCreate, db: AsyncSession = Depends(get_db)):
    """Add a new printer."""
    printer = Printer(**printer_data.model_dump())
    db.add(printer)
    await db.commit()
    await db.refresh(printer)
    logger.info("Added printer %s at %s", printer.name, printer.ip_address)
    return printer


@router.get("/{printer_id}", response_model=PrinterResponse)
async def get_printer(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Get a specific printer."""
    return await _get_printer_or_404(db, printer_id)


@router.patch("/{printer_id}", response_model=PrinterResponse)
async def update_printer(printer_id: int, printer_data: PrinterUpdate, db: AsyncSession = Depends(get_db)):
    """Update a printer."""
    printer = await _get_printer_or_404(db, printer_id)

    update_data = printer_data.model_dump(exclude_unset=True)
    if update_data.get("ip_address") and update_data["ip_address"] != printer.ip_address:
        # A token is bound to the printer that issued it
        printer.token = None
        printer.is_connected = False
    for field, value in update_data.items():
        if value is not None:
            setattr(printer, field, value)

    await db.commit()
    await db.refresh(printer)
    return printer


@router.delete("/{printer_id}")
async def delete_printer(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Delete a printer together with its uploaded files and preferences."""
    await _get_printer_or_404(db, printer_id)
    await printer_store.delete_printer(db, printer_id)
    await db.commit()
    return {"message": "Printer deleted successfully"}


# =============================================================================
# Connection
# =============================================================================


@router.post("/{printer_id}/connect", response_model=ConnectResponse)
async def connect_printer(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Open a session with the printer.

    Without a valid token the printer answers 204 and shows a prompt on its
    touchscreen; once accepted, connecting again returns the token.
    """
    printer = await _get_printer_or_404(db, printer_id)

    try:
        result = await SnapmakerClient(printer.ip_address).connect(printer.token)
    except SnapmakerAPIError as e:
        raise HTTPException(500, str(e))

    if result.get("token"):
        _mark_seen(printer, result["token"])
        await db.commit()
        return ConnectResponse(message="Connected successfully")

    if result.get("status") == 204:
        return ConnectResponse(message=CONFIRM_ON_TOUCHSCREEN, requires_confirmation=True)

    _mark_seen(printer)
    await db.commit()
    return ConnectResponse(message="Connected successfully")


@router.get("/{printer_id}/status", response_model=PrinterStatus)
async def get_printer_status(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a printer."""
    printer = await _get_printer_or_404(db, printer_id)
    if not printer.token:
        raise HTTPException(400, "Printer not connected. Connect first.")

    try:
        data = await SnapmakerClient(printer.ip_address).get_status(printer.token)
    except SnapmakerAPIError as e:
        printer.is_connected = False
        await db.commit()
        raise HTTPException(500, str(e))

    _mark_seen(printer)
    await db.commit()
    return normalize_status(data)


@router.post("/{printer_id}/disconnect")
async def disconnect_printer(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Close the session and forget the token."""
    printer = await _get_printer_or_404(db, printer_id)

    if printer.token:
        try:
            await SnapmakerClient(printer.ip_address).disconnect(printer.token)
        except SnapmakerAPIError as e:
            raise HTTPException(500, str(e))

    printer.token = None
    printer.is_connected = False
    await db.commit()
    return {"message": "Disconnected successfully"}


@router.post("/{printer_id}/save-token")
async def save_token(printer_id: int, request: SaveTokenRequest, db: AsyncSession = Depends(get_db)):
    """Store a token obtained elsewhere (e.g. copied from Luban)."""
    printer = await _get_printer_or_404(db, printer_id)
    printer.token = request.token
    await db.commit()
    return {"message": "Token saved successfully"}


@router.get("/{printer_id}/ping", response_model=PingResponse)
async def ping_printer(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Check whether the printer answers on its API port."""
    printer = await _get_printer_or_404(db, printer_id)
    online = await SnapmakerClient(printer.ip_address).ping()
    return PingResponse(online=online, has_token=bool(printer.token))


@router.post("/{printer_id}/auto-reconnect", response_model=AutoReconnectResponse)
async def auto_reconnect(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Reconnect with the saved token without a touchscreen prompt."""
    printer = await _get_printer_or_404(db, printer_id)
    if not printer.token:
        raise HTTPException(400, "No saved token. Manual connection required first.")

    try:
        result = await SnapmakerClient(printer.ip_address).connect(printer.token)
    except SnapmakerAPIError as e:
        logger.info("Auto-reconnect to %s failed: %s", printer.name, e)
        return AutoReconnectResponse(success=False, error=str(e))

    if result.get("token") or result.get("status") == 200:
        _mark_seen(printer, result.get("token"))
        await db.commit()
        return AutoReconnectResponse(success=True, message="Auto-reconnected successfully")

    if result.get("status") == 204:
        return AutoReconnectResponse(
            success=False,
            requires_confirmation=True,
            message="Touchscreen confirmation required",
        )

    return AutoReconnectResponse(success=False, error="Could not reconnect")


# =============================================================================
# Commands
# =============================================================================


@router.post("/{printer_id}/jog")
async def jog_printer(printer_id: int, request: JogRequest, db: AsyncSession = Depends(get_db)):
    """Move one axis by a relative distance (mm)."""
    printer = await _get_printer_or_404(db, printer_id)
    token = _require_token(printer)

    try:
        await SnapmakerClient(printer.ip_address).jog(token, request.axis, request.distance)
    except SnapmakerAPIError as e:
        raise HTTPException(500, str(e))
    return {"message": "Jog command sent"}


@router.post("/{printer_id}/home")
async def home_printer(printer_id: int, request: HomeRequest | None = None, db: AsyncSession = Depends(get_db)):
    """Home the given axes (all by default)."""
    printer = await _get_printer_or_404(db, printer_id)
    token = _require_token(printer)
    axes = request.axes.replace(" ", "") if request and request.axes else None

    try:
        await SnapmakerClient(printer.ip_address).home(token, axes)
    except SnapmakerAPIError as e:
        raise HTTPException(500, str(e))
    return {"message": "Home command sent"}


@router.get("/{printer_id}/files", response_model=list[RemoteFile])
async def list_printer_files(printer_id: int, db: AsyncSession = Depends(get_db)):
    """List files stored on the printer."""
    printer = await _get_printer_or_404(db, printer_id)
    token = _require_token(printer)

    try:
        files = await SnapmakerClient(printer.ip_address).list_files(token)
    except SnapmakerAPIError as e:
        raise HTTPException(500, str(e))
    return normalize_files(files)


@router.post("/{printer_id}/print")
async def start_print(printer_id: int, request: PrintRequest, db: AsyncSession = Depends(get_db)):
    """Start printing a file already on the printer."""
    printer = await _get_printer_or_404(db, printer_id)
    token = _require_token(printer)

    try:
        await SnapmakerClient(printer.ip_address).start_print(token, request.filename)
    except SnapmakerAPIError as e:
        raise HTTPException(500, str(e))

    logger.info("Started print of %s on %s", request.filename, printer.name)
    return {"message": "Print started"}


# =============================================================================
# Dashboard preferences
# =============================================================================


@router.get("/{printer_id}/dashboard-preferences", response_model=DashboardPreferencesResponse)
async def get_dashboard_preferences(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Dashboard modules shown for this printer, in order."""
    await _get_printer_or_404(db, printer_id)
    enabled_modules = await printer_store.get_dashboard_preferences(db, printer_id)
    return DashboardPreferencesResponse(enabled_modules=enabled_modules)


@router.put("/{printer_id}/dashboard-preferences", response_model=DashboardPreferencesResponse)
async def update_dashboard_preferences(
    printer_id: int,
    request: DashboardPreferencesUpdate,
    db: AsyncSession = Depends(get_db),
):
    await _get_printer_or_404(db, printer_id)
    await printer_store.set_dashboard_preferences(db, printer_id, request.enabled_modules)
    await db.commit()
    return DashboardPreferencesResponse(enabled_modules=request.enabled_modules, message="Preferences saved")
