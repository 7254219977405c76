"""
Scan routes
GET  /api/scan/config  - default run configuration
POST /api/scan         - scan a watchlist once
"""

from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field, ValidationError

from volume_radar.config import ScanConfig
from volume_radar.models.response import ApiResponse
from volume_radar.services.scan_service import get_scan_service

router = APIRouter(prefix="/api/scan", tags=["scan"])


class ScanRequest(BaseModel):
    symbols: List[str] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict, description="ScanConfig overrides")
    force: bool = False


@router.get("/config", response_model=ApiResponse)
async def get_default_config():
    """Run configuration built from environment settings"""
    return ApiResponse.ok(data=ScanConfig.from_settings().model_dump())


@router.post("", response_model=ApiResponse)
async def run_scan(body: ScanRequest):
    """
    Scan the given watchlist

    - invalid config or an empty watchlist → 400 before any provider is called
    - failed symbols are returned in `data.failed` and listed in `warnings`
    """
    try:
        config = ScanConfig.from_settings(**body.config)
    except (ValidationError, TypeError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"invalid scan config: {exc}",
        )

    svc = get_scan_service()
    try:
        result = await svc.run(body.symbols, config=config, force=body.force)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    warnings = [f"no data for {symbol}" for symbol in result.failed]
    message = result.message or f"{len(result.signals)} signals from {result.total_scanned} symbols"
    return ApiResponse.ok(data=result.model_dump(mode="json"), message=message, warnings=warnings)
