from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

import config as CFG
from xiaoji_booking.notification import get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


class BroadcastRequest(BaseModel):
    message: str
    chat_ids: Optional[List[Union[int, str]]] = None


class PasswordRequest(BaseModel):
    password: str = ""


@router.post("/manual-broadcast")
async def manual_broadcast(payload: BroadcastRequest) -> Dict[str, Any]:
    """向指定聊天（默认播报群）发送一条文字消息"""
    if not payload.message.strip():
        raise HTTPException(status_code=400, detail="消息内容不能为空")
    targets = payload.chat_ids or ([CFG.GROUP_CHAT_ID] if CFG.GROUP_CHAT_ID else [])
    if not targets:
        raise HTTPException(status_code=400, detail="未指定目标聊天且未配置 GROUP_CHAT_ID")
    result = await get_notifier().broadcast(payload.message, targets)
    logger.info("手动播报完成: 成功 %s 个，失败 %s 个", len(result["sent"]), len(result["failed"]))
    return {"success": not result["failed"], "data": result}


@router.get("/bot-username")
async def bot_username() -> Dict[str, Any]:
    return {"success": True, "data": {"username": CFG.BOT_USERNAME}}


@router.post("/admin/verify-password")
async def verify_password(payload: PasswordRequest) -> Dict[str, Any]:
    valid = hmac.compare_digest(payload.password.encode("utf-8"), CFG.ADMIN_PASSWORD.encode("utf-8"))
    if not valid:
        logger.warning("管理后台密码验证失败")
        raise HTTPException(status_code=401, detail="密码错误")
    return {"success": True, "data": {"valid": True}}
