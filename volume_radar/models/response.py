"""HTTP response envelope for the scan API"""

from typing import Any, List, Optional
from pydantic import BaseModel, Field


class ApiResponse(BaseModel):
    """Standard envelope; warnings carry non-fatal issues such as failed symbols."""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, data: Any = None, message: str = "success", warnings: List[str] = None) -> "ApiResponse":
        return cls(success=True, data=data, message=message, warnings=warnings or [])

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)
