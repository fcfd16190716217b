from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from xiaoji_booking.bind_codes import BindCodeService
from xiaoji_booking.merchants import MerchantService
from xiaoji_booking.regions import RegionService

router = APIRouter(tags=["merchants"])


class RegionPayload(BaseModel):
    name: Optional[str] = None
    sort_order: Optional[int] = None
    active: Optional[bool] = None


class MerchantPayload(BaseModel):
    teacher_name: Optional[str] = None
    username: Optional[str] = None
    bind_code: Optional[str] = None
    region_id: Optional[int] = None
    contact: Optional[str] = None
    advantages: Optional[str] = None
    disadvantages: Optional[str] = None
    price1: Optional[int] = None
    price2: Optional[int] = None
    skill_teaching: Optional[str] = None
    skill_communication: Optional[str] = None
    skill_patience: Optional[str] = None
    skill_preparation: Optional[str] = None
    channel_link: Optional[str] = None
    status: Optional[str] = None

    def fields(self) -> Dict[str, Any]:
        return {key: value for key, value in self.model_dump().items() if value is not None and key != "bind_code"}


class StatusPayload(BaseModel):
    status: str


class BindCodePayload(BaseModel):
    description: Optional[str] = None


# 地区 ---------------------------------------------------------------------------


@router.get("/regions")
async def list_regions(active_only: bool = Query(False, alias="activeOnly")) -> Dict[str, Any]:
    return {"success": True, "data": RegionService().list_regions(active_only)}


@router.post("/regions")
async def create_region(payload: RegionPayload) -> Dict[str, Any]:
    region = RegionService().create_region(payload.name or "", payload.sort_order or 0)
    return {"success": True, "data": region}


@router.put("/regions/{region_id}")
async def update_region(region_id: int, payload: RegionPayload) -> Dict[str, Any]:
    region = RegionService().update_region(region_id, payload.name, payload.sort_order, payload.active)
    return {"success": True, "data": region}


@router.delete("/regions/{region_id}")
async def delete_region(region_id: int) -> Dict[str, Any]:
    RegionService().delete_region(region_id)
    return {"success": True, "data": {"id": region_id}}


# 商家 ---------------------------------------------------------------------------


@router.get("/merchants")
async def list_merchants(status: Optional[str] = None) -> Dict[str, Any]:
    return {"success": True, "data": MerchantService().list_merchants(status)}


@router.post("/merchants")
async def create_merchant(payload: MerchantPayload) -> Dict[str, Any]:
    """管理员创建商家，未提供绑定码时自动生成"""
    fields = payload.fields()
    teacher_name = fields.pop("teacher_name", "")
    username = fields.pop("username", "")
    result = MerchantService().create_merchant_by_admin(teacher_name, username, payload.bind_code, **fields)
    return {"success": True, "data": result}


@router.get("/merchants/{merchant_id}")
async def get_merchant(merchant_id: int) -> Dict[str, Any]:
    return {"success": True, "data": MerchantService().get_merchant(merchant_id)}


@router.put("/merchants/{merchant_id}")
async def update_merchant(merchant_id: int, payload: MerchantPayload) -> Dict[str, Any]:
    return {"success": True, "data": MerchantService().update_merchant(merchant_id, **payload.fields())}


@router.delete("/merchants/{merchant_id}")
async def delete_merchant(merchant_id: int) -> Dict[str, Any]:
    MerchantService().delete_merchant(merchant_id)
    return {"success": True, "data": {"id": merchant_id}}


@router.put("/merchants/{merchant_id}/status")
async def set_merchant_status(merchant_id: int, payload: StatusPayload) -> Dict[str, Any]:
    return {"success": True, "data": MerchantService().set_status(merchant_id, payload.status)}


@router.post("/merchants/{merchant_id}/toggle-status")
async def toggle_merchant_status(merchant_id: int) -> Dict[str, Any]:
    return {"success": True, "data": MerchantService().toggle_status(merchant_id)}


# 绑定码 -------------------------------------------------------------------------


@router.get("/bind-codes")
async def list_bind_codes() -> Dict[str, Any]:
    service = BindCodeService()
    return {"success": True, "data": service.list_bind_codes(), "stats": service.stats()}


@router.post("/bind-codes")
async def create_bind_code(payload: BindCodePayload) -> Dict[str, Any]:
    return {"success": True, "data": BindCodeService().create_bind_code(payload.description)}


@router.delete("/bind-codes/{bind_code_id}")
async def delete_bind_code(bind_code_id: int) -> Dict[str, Any]:
    BindCodeService().delete_bind_code(bind_code_id)
    return {"success": True, "data": {"id": bind_code_id}}


@router.delete("/bind-codes/{bind_code_id}/force")
async def force_delete_bind_code(bind_code_id: int) -> Dict[str, Any]:
    """删除已使用的绑定码，同时删除使用它的商家"""
    return {"success": True, "data": BindCodeService().force_delete_bind_code(bind_code_id)}
