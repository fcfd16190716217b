from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, Request

from xiaoji_booking.orders import OrderFilters
from xiaoji_booking.stats import StatsService

router = APIRouter(tags=["stats"])


def _filters(request: Request) -> OrderFilters:
    return OrderFilters.from_query(request.query_params)


@router.get("/stats")
async def basic_stats() -> Dict[str, Any]:
    return {"success": True, "data": StatsService().basic_stats()}


@router.get("/stats/optimized")
async def optimized_stats(request: Request) -> Dict[str, Any]:
    """订单统计卡片，支持与订单列表相同的筛选参数"""
    return {"success": True, "data": StatsService().optimized_stats(_filters(request))}


@router.get("/stats/dashboard")
async def dashboard_stats() -> Dict[str, Any]:
    return {"success": True, "data": StatsService().dashboard_stats()}


@router.get("/merchant-bookings")
async def merchant_bookings() -> Dict[str, Any]:
    return {"success": True, "data": StatsService().merchant_bookings()}


@router.get("/recent-bookings")
async def recent_bookings(limit: int = Query(20, ge=1, le=200)) -> Dict[str, Any]:
    return {"success": True, "data": StatsService().recent_bookings(limit)}


@router.get("/message-stats")
async def message_stats() -> Dict[str, Any]:
    return {"success": True, "data": StatsService().message_stats()}


@router.get("/button-stats")
async def button_stats() -> Dict[str, Any]:
    return {"success": True, "data": StatsService().button_stats()}


@router.get("/simple-count/{table}")
async def simple_count(table: str) -> Dict[str, Any]:
    return {"success": True, "data": {"table": table, "count": StatsService().simple_count(table)}}


@router.get("/refresh-data")
async def refresh_data() -> Dict[str, Any]:
    service = StatsService()
    return {
        "success": True,
        "data": {"stats": service.optimized_stats(), "dashboard": service.dashboard_stats()},
    }


# 图表 ---------------------------------------------------------------------------


@router.get("/charts/orders-trend")
async def orders_trend(request: Request, period: str = Query("daily")) -> Dict[str, Any]:
    return {"success": True, "data": StatsService().orders_trend(period, _filters(request))}


@router.get("/charts/region-distribution")
async def region_distribution(request: Request) -> Dict[str, Any]:
    return {"success": True, "data": StatsService().region_distribution(_filters(request))}


@router.get("/charts/price-distribution")
async def price_distribution(request: Request) -> Dict[str, Any]:
    return {"success": True, "data": StatsService().price_distribution(_filters(request))}


@router.get("/charts/status-distribution")
async def status_distribution(request: Request) -> Dict[str, Any]:
    return {"success": True, "data": StatsService().status_distribution(_filters(request))}


# 排行榜 -------------------------------------------------------------------------


@router.get("/rankings/merchants")
async def merchant_rankings(
    limit: int = Query(50, ge=1, le=500),
    region_id: Optional[int] = Query(None, alias="regionId"),
) -> Dict[str, Any]:
    return {"success": True, "data": StatsService().merchant_rankings(limit, region_id)}


@router.get("/rankings/users")
async def user_rankings(limit: int = Query(50, ge=1, le=500)) -> Dict[str, Any]:
    return {"success": True, "data": StatsService().user_rankings(limit)}
