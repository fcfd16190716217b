from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, Request

from xiaoji_booking.evaluations import EvaluationService
from xiaoji_booking.orders import OrderFilters, OrderService

router = APIRouter(tags=["orders"])


@router.get("/orders")
async def list_orders(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500, alias="pageSize"),
) -> Dict[str, Any]:
    """订单列表：dateFrom/dateTo/timeRange/regionId/status/search 等筛选参数"""
    filters = OrderFilters.from_query(request.query_params)
    return {"success": True, "data": OrderService().list_orders(filters, page=page, page_size=page_size)}


@router.get("/orders/{order_id}")
async def get_order(order_id: int) -> Dict[str, Any]:
    return {"success": True, "data": OrderService().get_order_detail(order_id)}


@router.get("/evaluation-stats")
async def evaluation_stats() -> Dict[str, Any]:
    return {"success": True, "data": EvaluationService().evaluation_stats()}


@router.get("/evaluations")
async def list_evaluations(
    limit: int = Query(100, ge=1, le=1000),
    evaluator_type: Optional[str] = Query(None, alias="type"),
) -> Dict[str, Any]:
    return {"success": True, "data": EvaluationService().list_evaluations(limit, evaluator_type)}


@router.get("/evaluations/{evaluation_id}")
async def get_evaluation(evaluation_id: int) -> Dict[str, Any]:
    return {"success": True, "data": EvaluationService().get_evaluation_detail(evaluation_id)}
