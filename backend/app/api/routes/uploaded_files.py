import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.database import get_db
from backend.app.schemas.uploaded_file import (
    SendFileRequest,
    UploadedFileCreate,
    UploadedFileDetail,
    UploadedFileResponse,
)
from backend.app.services import printer_store
from backend.app.services.snapmaker_api import SnapmakerAPIError, SnapmakerClient
from backend.app.services.thumbnail import extract_thumbnail

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/printers/{printer_id}/uploaded-files", tags=["uploaded-files"])


async def _get_printer_or_404(db: AsyncSession, printer_id: int):
    printer = await printer_store.get_printer(db, printer_id)
    if not printer:
        raise HTTPException(404, "Printer not found")
    return printer


async def _get_file_or_404(db: AsyncSession, printer_id: int, file_id: int):
    uploaded = await printer_store.get_uploaded_file(db, printer_id, file_id)
    if not uploaded:
        raise HTTPException(404, "File not found")
    return uploaded


@router.get("/", response_model=list[UploadedFileResponse])
async def list_uploaded_files(printer_id: int, db: AsyncSession = Depends(get_db)):
    """List files stored for a printer, newest first (without content)."""
    await _get_printer_or_404(db, printer_id)
    files = await printer_store.get_uploaded_files(db, printer_id)
    return [UploadedFileResponse.from_model(f) for f in files]


@router.post("/", response_model=UploadedFileResponse, status_code=201)
async def add_uploaded_file(printer_id: int, data: UploadedFileCreate, db: AsyncSession = Depends(get_db)):
    """Store a G-code file for a printer (manual entry or drag-drop)."""
    await _get_printer_or_404(db, printer_id)

    if await printer_store.find_uploaded_file(db, printer_id, data.filename):
        raise HTTPException(409, f"File already exists: {data.filename}")

    uploaded = await printer_store.add_uploaded_file(
        db,
        printer_id=printer_id,
        filename=data.filename,
        source=data.source.value,
        display_name=data.display_name or printer_store.display_name_for(data.filename),
        file_content=data.file_content,
        thumbnail=extract_thumbnail(data.file_content),
    )
    await db.commit()

    logger.info("Stored %s for printer %s (source: %s)", data.filename, printer_id, data.source.value)
    return UploadedFileResponse.from_model(uploaded)


@router.get("/{file_id}", response_model=UploadedFileDetail)
async def get_uploaded_file(printer_id: int, file_id: int, db: AsyncSession = Depends(get_db)):
    """Get a stored file including its content."""
    uploaded = await _get_file_or_404(db, printer_id, file_id)
    return UploadedFileDetail.from_model(uploaded)


@router.delete("/{file_id}")
async def delete_uploaded_file(printer_id: int, file_id: int, db: AsyncSession = Depends(get_db)):
    uploaded = await _get_file_or_404(db, printer_id, file_id)
    await db.delete(uploaded)
    await db.commit()
    return {"message": "File deleted successfully"}


@router.post("/{file_id}/send")
async def send_uploaded_file(
    printer_id: int,
    file_id: int,
    request: SendFileRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Upload a stored file to the printer, optionally starting the print."""
    printer = await _get_printer_or_404(db, printer_id)
    uploaded = await _get_file_or_404(db, printer_id, file_id)

    if not printer.token:
        raise HTTPException(400, "Printer not connected")
    if not uploaded.file_content:
        raise HTTPException(400, "File has no stored content")

    start = bool(request and request.start_print)
    client = SnapmakerClient(printer.ip_address)
    try:
        await client.upload_file(printer.token, uploaded.filename, uploaded.file_content)
        if start:
            await client.start_print(printer.token, uploaded.filename)
    except SnapmakerAPIError as e:
        raise HTTPException(500, str(e))

    logger.info("Sent %s to %s%s", uploaded.filename, printer.name, " and started print" if start else "")
    return {"message": "Print started" if start else "File sent to printer"}
