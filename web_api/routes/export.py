from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query
from fastapi.responses import FileResponse
from pydantic import BaseModel

from xiaoji_booking.exporter import DataExporter

router = APIRouter(prefix="/export", tags=["export"])


class ExportRequest(BaseModel):
    format: str = "json"


@router.post("/all-data")
async def export_all_data(payload: Optional[ExportRequest] = None) -> Dict[str, Any]:
    """导出全部业务数据与数据库备份为 zip"""
    result = DataExporter().export_all_data((payload or ExportRequest()).format)
    return {"success": True, "data": result.to_dict()}


@router.get("/history")
async def export_history() -> Dict[str, Any]:
    return {"success": True, "data": DataExporter().export_history()}


@router.get("/download/{filename}")
async def download_export(filename: str) -> FileResponse:
    path = DataExporter().resolve_export(filename)
    return FileResponse(path, media_type="application/zip", filename=path.name)


@router.delete("/cleanup")
async def cleanup_exports(keep: int = Query(5, ge=0)) -> Dict[str, Any]:
    removed = DataExporter().cleanup_exports(keep)
    return {"success": True, "data": {"deleted": removed, "kept": keep}}
