from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from xiaoji_booking.notification import get_notifier
from xiaoji_booking.scheduler import TemplateScheduler, parse_schedule
from xiaoji_booking.templates import TemplateService

router = APIRouter(tags=["templates"])


class TemplatePayload(BaseModel):
    name: Optional[str] = None
    content: Optional[str] = None
    image_url: Optional[str] = None
    buttons_config: Optional[List[Any]] = None


class TriggerPayload(BaseModel):
    word: Optional[str] = None
    template_id: Optional[int] = None
    chat_id: Optional[int] = None
    match_type: Optional[str] = None
    active: Optional[bool] = None


class TaskPayload(BaseModel):
    name: Optional[str] = None
    template_id: Optional[int] = None
    chat_id: Optional[int] = None
    schedule_type: Optional[str] = None
    schedule_time: Optional[str] = None
    sequence_order: Optional[int] = None
    sequence_delay: Optional[int] = None
    active: Optional[bool] = None


# 消息模板 -----------------------------------------------------------------------


@router.get("/templates")
async def list_templates() -> Dict[str, Any]:
    return {"success": True, "data": TemplateService().list_templates()}


@router.post("/templates")
async def create_template(payload: TemplatePayload) -> Dict[str, Any]:
    template = TemplateService().create_template(
        payload.name or "", payload.content or "", payload.image_url, payload.buttons_config
    )
    return {"success": True, "data": template}


@router.put("/templates/{template_id}")
async def update_template(template_id: int, payload: TemplatePayload) -> Dict[str, Any]:
    return {"success": True, "data": TemplateService().update_template(template_id, **payload.model_dump())}


@router.delete("/templates/{template_id}")
async def delete_template(template_id: int) -> Dict[str, Any]:
    TemplateService().delete_template(template_id)
    return {"success": True, "data": {"id": template_id}}


# 触发词 -------------------------------------------------------------------------


@router.get("/triggers")
async def list_triggers() -> Dict[str, Any]:
    return {"success": True, "data": TemplateService().list_triggers()}


@router.post("/triggers")
async def create_trigger(payload: TriggerPayload) -> Dict[str, Any]:
    trigger = TemplateService().create_trigger(
        payload.word or "",
        payload.template_id or 0,
        payload.chat_id or 0,
        payload.match_type or "exact",
    )
    return {"success": True, "data": trigger}


@router.put("/triggers/{trigger_id}")
async def update_trigger(trigger_id: int, payload: TriggerPayload) -> Dict[str, Any]:
    return {"success": True, "data": TemplateService().update_trigger(trigger_id, **payload.model_dump())}


@router.delete("/triggers/{trigger_id}")
async def delete_trigger(trigger_id: int) -> Dict[str, Any]:
    TemplateService().delete_trigger(trigger_id)
    return {"success": True, "data": {"id": trigger_id}}


# 定时任务 -----------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks() -> Dict[str, Any]:
    return {"success": True, "data": TemplateService().list_tasks()}


@router.post("/tasks")
async def create_task(payload: TaskPayload) -> Dict[str, Any]:
    """创建定时任务，调度规则无法解析时返回 400"""
    parse_schedule(payload.schedule_type or "", payload.schedule_time or "")
    task = TemplateService().create_task(
        payload.name or "",
        payload.template_id or 0,
        payload.chat_id or 0,
        payload.schedule_type or "",
        payload.schedule_time or "",
        payload.sequence_order or 0,
        payload.sequence_delay or 0,
    )
    return {"success": True, "data": task}


@router.put("/tasks/{task_id}")
async def update_task(task_id: int, payload: TaskPayload) -> Dict[str, Any]:
    service = TemplateService()
    if payload.schedule_type or payload.schedule_time:
        current = service.get_task(task_id)
        parse_schedule(
            payload.schedule_type or current["schedule_type"],
            payload.schedule_time or current["schedule_time"],
        )
    return {"success": True, "data": service.update_task(task_id, **payload.model_dump())}


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: int) -> Dict[str, Any]:
    TemplateService().delete_task(task_id)
    return {"success": True, "data": {"id": task_id}}


@router.post("/tasks/{task_id}/run")
async def run_task(task_id: int) -> Dict[str, Any]:
    """立即执行一次定时任务"""
    service = TemplateService()
    service.get_task(task_id)
    sent = await TemplateScheduler(get_notifier(), db=service.db).run_task(task_id)
    return {"success": sent, "data": {"id": task_id, "sent": sent}}
