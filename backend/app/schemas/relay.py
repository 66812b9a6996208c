from pydantic import BaseModel, model_validator


class RelayStartRequest(BaseModel):
    """Either a raw address or a stored printer to relay to."""

    printer_ip: str | None = None
    printer_id: int | None = None

    @model_validator(mode="after")
    def require_target(self) -> "RelayStartRequest":
        if not self.printer_ip and self.printer_id is None:
            raise ValueError("printer_ip or printer_id is required")
        return self


class RelayStatus(BaseModel):
    enabled: bool
    state: str
    port: int
    target_printer_ip: str | None = None
    token_captured: bool = False
    last_error: str | None = None
