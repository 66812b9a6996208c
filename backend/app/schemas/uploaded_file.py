from datetime import datetime

from pydantic import BaseModel, Field

from backend.app.models.uploaded_file import FileSource


class UploadedFileCreate(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    display_name: str | None = Field(default=None, max_length=255)
    file_content: str | None = None
    source: FileSource = FileSource.MANUAL


class UploadedFileResponse(BaseModel):
    """File list entry (content omitted)."""

    id: int
    printer_id: int
    filename: str
    display_name: str | None = None
    source: str
    has_content: bool = False
    thumbnail: str | None = None
    uploaded_at: datetime

    @classmethod
    def from_model(cls, uploaded) -> "UploadedFileResponse":
        return cls(
            id=uploaded.id,
            printer_id=uploaded.printer_id,
            filename=uploaded.filename,
            display_name=uploaded.display_name,
            source=uploaded.source,
            has_content=uploaded.file_content is not None,
            thumbnail=uploaded.thumbnail,
            uploaded_at=uploaded.uploaded_at,
        )


class UploadedFileDetail(UploadedFileResponse):
    file_content: str | None = None

    @classmethod
    def from_model(cls, uploaded) -> "UploadedFileDetail":
        base = UploadedFileResponse.from_model(uploaded).model_dump()
        return cls(**base, file_content=uploaded.file_content)


class SendFileRequest(BaseModel):
    start_print: bool = False
