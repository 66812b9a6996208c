"""OctoPrint-compatible upload endpoint.

Slicers with an "OctoPrint" physical printer profile (PrusaSlicer, Cura,
SuperSlicer) can send G-code straight to SnapDeck. Only the two calls those
slicers make are implemented.
"""

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import APP_VERSION
from backend.app.core.database import get_db
from backend.app.models.uploaded_file import FileSource
from backend.app.services import printer_store
from backend.app.services.snapmaker_api import SnapmakerAPIError, SnapmakerClient
from backend.app.services.thumbnail import extract_thumbnail

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["octoprint"])

OCTOPRINT_API_VERSION = "0.1"


def _is_true(value: str | None) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


@router.get("/version")
async def get_version():
    """Version probe slicers use to validate the connection."""
    return {
        "api": OCTOPRINT_API_VERSION,
        "server": APP_VERSION,
        "text": f"OctoPrint {APP_VERSION} (SnapDeck)",
    }


@router.post("/files/local", status_code=201)
async def upload_local_file(
    file: UploadFile = File(...),
    print_: str | None = Form(default=None, alias="print"),
    db: AsyncSession = Depends(get_db),
):
    """Store an uploaded file for the default printer and optionally print it."""
    filename = file.filename or "upload.gcode"

    printer = await printer_store.pick_default_printer(db)
    if not printer:
        raise HTTPException(409, "No printer configured")

    raw = await file.read()
    content = raw.decode("utf-8", errors="replace")

    uploaded = await printer_store.find_uploaded_file(db, printer.id, filename)
    if uploaded:
        # Re-exporting from the slicer replaces the stored copy
        uploaded.file_content = content
        uploaded.thumbnail = extract_thumbnail(content)
        uploaded.source = FileSource.SLICER.value
    else:
        uploaded = await printer_store.add_uploaded_file(
            db,
            printer_id=printer.id,
            filename=filename,
            source=FileSource.SLICER.value,
            display_name=printer_store.display_name_for(filename),
            file_content=content,
            thumbnail=extract_thumbnail(content),
        )
    await db.commit()
    logger.info("Received %s from slicer (%d bytes) for %s", filename, len(raw), printer.name)

    if _is_true(print_):
        if not printer.token:
            raise HTTPException(409, "Printer not connected")
        client = SnapmakerClient(printer.ip_address)
        try:
            await client.upload_file(printer.token, filename, raw)
            await client.start_print(printer.token, filename)
        except SnapmakerAPIError as e:
            raise HTTPException(500, str(e))
        logger.info("Started print of %s on %s", filename, printer.name)

    return {
        "files": {
            "local": {
                "name": filename,
                "origin": "local",
                "refs": {"resource": f"/api/files/local/{filename}"},
            }
        },
        "done": True,
    }
