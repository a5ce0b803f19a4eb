from typing import Any, Optional

from pydantic import BaseModel


class ApiResponse(BaseModel):
    success: bool = True
    data: Any = None
    error: Optional[str] = None


class ControlResult(BaseModel):
    scheduler_running: bool
    shutdown_state: str
