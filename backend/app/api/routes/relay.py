import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.database import get_db
from backend.app.schemas.relay import RelayStartRequest, RelayStatus
from backend.app.services import printer_store
from backend.app.services.relay import snapmaker_relay

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/relay", tags=["relay"])


@router.get("/status", response_model=RelayStatus)
async def get_relay_status():
    return snapmaker_relay.get_status()


@router.post("/start", response_model=RelayStatus)
async def start_relay(request: RelayStartRequest, db: AsyncSession = Depends(get_db)):
    """Start relaying Luban traffic to a printer.

    The target is remembered so the relay comes back after a restart.
    """
    target_ip = request.printer_ip
    if request.printer_id is not None:
        printer = await printer_store.get_printer(db, request.printer_id)
        if not printer:
            raise HTTPException(404, "Printer not found")
        target_ip = printer.ip_address

    if not await snapmaker_relay.start(target_ip):
        raise HTTPException(409, snapmaker_relay.get_status()["last_error"] or "Relay failed to start")

    await printer_store.set_setting(db, printer_store.RELAY_TARGET_KEY, target_ip)
    await db.commit()
    return snapmaker_relay.get_status()


@router.post("/stop", response_model=RelayStatus)
async def stop_relay(db: AsyncSession = Depends(get_db)):
    await snapmaker_relay.stop()
    await printer_store.set_setting(db, printer_store.RELAY_TARGET_KEY, None)
    await db.commit()
    return snapmaker_relay.get_status()
