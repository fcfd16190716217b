"""商家管理与绑定"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .bind_codes import BindCodeService, normalize_code
from .database import DatabaseManager, get_db_manager, now_ts
from .errors import BindCodeError, NotFoundError, ValidationError
from .models import MerchantStatus, TelegramUser

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "teacher_name",
    "username",
    "region_id",
    "contact",
    "advantages",
    "disadvantages",
    "price1",
    "price2",
    "skill_teaching",
    "skill_communication",
    "skill_patience",
    "skill_preparation",
    "channel_link",
    "status",
}

BIND_COMPLETED_STEP = 5

_MERCHANT_SELECT = """
    SELECT m.*, r.name AS region_name
    FROM merchants m
    LEFT JOIN regions r ON r.id = m.region_id
"""


def format_merchant_card(merchant: Dict[str, Any]) -> str:
    """商家信息卡片（不含联系方式）"""

    def _value(key: str) -> Any:
        value = merchant.get(key)
        return value if value not in (None, "") else "未填写"

    return (
        f"地区：#{merchant.get('region_name') or 'xx'}              艺名：{_value('teacher_name')}\n"
        f"优点：{_value('advantages')}\n"
        f"缺点：{_value('disadvantages')}\n"
        f"价格：{_value('price1')}p              {_value('price2')}pp\n\n"
        f"老师💃自填基本功：\n"
        f"📚教学:{_value('skill_teaching')}\n"
        f"💬沟通:{_value('skill_communication')}\n"
        f"🤝耐心:{_value('skill_patience')}\n"
        f"📝备课:{_value('skill_preparation')}"
    )


def format_contact_link(contact: Optional[str]) -> str:
    """@username 形式的联系方式转成 Markdown 链接"""
    if contact and contact.startswith("@"):
        return f"[{contact}](https://t.me/{contact[1:]})"
    return contact or "未设置"


class MerchantService:
    """商家的增删改查、绑定与状态切换"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()
        self.bind_codes = BindCodeService(self.db)

    # 查询 -----------------------------------------------------------------------

    def find_merchant(self, merchant_id: Any) -> Optional[Dict[str, Any]]:
        try:
            merchant_id = int(merchant_id)
        except (TypeError, ValueError):
            return None
        return self.db.query_one(_MERCHANT_SELECT + " WHERE m.id = ?", (merchant_id,))

    def get_merchant(self, merchant_id: Any) -> Dict[str, Any]:
        merchant = self.find_merchant(merchant_id)
        if merchant is None:
            raise NotFoundError("商家信息不存在")
        return merchant

    def get_by_user_id(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.db.query_one(_MERCHANT_SELECT + " WHERE m.user_id = ?", (user_id,))

    def get_by_bind_code(self, code: str) -> Optional[Dict[str, Any]]:
        return self.db.query_one(_MERCHANT_SELECT + " WHERE m.bind_code = ?", (normalize_code(code),))

    def list_merchants(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status:
            return self.db.query(_MERCHANT_SELECT + " WHERE m.status = ? ORDER BY m.id DESC", (status,))
        return self.db.query(_MERCHANT_SELECT + " ORDER BY m.id DESC")

    # 创建与绑定 -----------------------------------------------------------------

    def _detect_user_id(self, username: str) -> Optional[int]:
        row = self.db.query_one(
            """
            SELECT i.user_id FROM interactions i
            WHERE LOWER(i.username) = LOWER(?) AND i.user_id IS NOT NULL
              AND i.user_id NOT IN (SELECT user_id FROM merchants WHERE user_id IS NOT NULL)
            ORDER BY i.timestamp DESC LIMIT 1
            """,
            (username,),
        )
        return row["user_id"] if row else None

    def create_merchant_by_admin(
        self,
        teacher_name: str,
        username: str,
        bind_code: Optional[str] = None,
        **fields: Any,
    ) -> Dict[str, Any]:
        """管理员创建商家：自动生成绑定码，并尝试按用户名识别 Telegram ID"""
        teacher_name = (teacher_name or "").strip()
        username = (username or "").strip().lstrip("@")
        if not teacher_name or not username:
            raise ValidationError("艺名和用户名不能为空")

        if bind_code:
            record = self.bind_codes.get_bind_code(bind_code)
            if record is None or record["used"]:
                raise ValidationError("提供的绑定码无效或已被使用")
            code = record["code"]
        else:
            code = self.bind_codes.create_bind_code(f"管理员创建: {teacher_name}")["code"]

        detected_user_id = self._detect_user_id(username)
        values = {key: value for key, value in fields.items() if key in EDITABLE_FIELDS}
        values.update(
            {
                "user_id": detected_user_id,
                "username": username,
                "teacher_name": teacher_name,
                "bind_code": code,
                "bind_step": BIND_COMPLETED_STEP,
                "status": values.get("status") or MerchantStatus.ACTIVE.value,
                "channel_clicks": 0,
                "created_at": now_ts(),
            }
        )
        merchant_id = self.db.insert("merchants", values)
        if detected_user_id:
            self.bind_codes.mark_used(code, detected_user_id)
            message = f"商家创建成功，已自动检测到Telegram ID: {detected_user_id}"
        else:
            message = "商家创建成功，等待用户使用绑定码进行绑定"
        logger.info("管理员创建商家 %s (ID %s, 绑定码 %s)", teacher_name, merchant_id, code)
        return {
            "merchantId": merchant_id,
            "bindCode": code,
            "detectedUserId": detected_user_id,
            "message": message,
        }

    def bind_merchant(self, code: str, user: TelegramUser) -> Dict[str, Any]:
        """/bind 流程：已有管理员创建的记录则认领，否则新建商家"""
        code = normalize_code(code)
        if self.get_by_user_id(user.id):
            raise BindCodeError("您已经绑定过账户了！")

        record = self.bind_codes.get_bind_code(code)
        if record is None:
            raise BindCodeError("绑定码不存在")
        if record["used"]:
            raise BindCodeError("绑定码已被使用")

        self.bind_codes.use_bind_code(code, user.id)
        existing = self.get_by_bind_code(code)
        if existing:
            self.db.update(
                "merchants",
                existing["id"],
                {
                    "user_id": user.id,
                    "username": user.username or existing.get("username"),
                    "bind_step": BIND_COMPLETED_STEP,
                    "status": MerchantStatus.ACTIVE.value,
                },
            )
            merchant_id = existing["id"]
            logger.info("商家 %s 认领管理员创建的记录 %s", user.id, merchant_id)
        else:
            merchant_id = self.db.insert(
                "merchants",
                {
                    "user_id": user.id,
                    "username": user.username,
                    "teacher_name": user.username or f"用户{user.id}",
                    "bind_code": code,
                    "bind_step": BIND_COMPLETED_STEP,
                    "status": MerchantStatus.ACTIVE.value,
                    "channel_clicks": 0,
                    "created_at": now_ts(),
                },
            )
        logger.info("商家 %s (%s) 绑定成功，绑定码 %s", user.id, user.username, code)
        return self.get_merchant(merchant_id)

    # 修改 -----------------------------------------------------------------------

    def update_merchant(self, merchant_id: int, **fields: Any) -> Dict[str, Any]:
        self.get_merchant(merchant_id)
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"不允许修改的字段: {', '.join(sorted(unknown))}")
        if "status" in fields:
            self._check_status(fields["status"])
        if "username" in fields and fields["username"]:
            fields["username"] = str(fields["username"]).lstrip("@")
        self.db.update("merchants", merchant_id, fields)
        return self.get_merchant(merchant_id)

    @staticmethod
    def _check_status(status: str) -> None:
        if status not in {item.value for item in MerchantStatus}:
            raise ValidationError(f"无效的商家状态: {status}")

    def set_status(self, merchant_id: int, status: str) -> Dict[str, Any]:
        self._check_status(status)
        self.get_merchant(merchant_id)
        self.db.update("merchants", merchant_id, {"status": status})
        logger.info("商家 %s 状态更新为 %s", merchant_id, status)
        return self.get_merchant(merchant_id)

    def toggle_status(self, merchant_id: int) -> Dict[str, Any]:
        merchant = self.get_merchant(merchant_id)
        new_status = (
            MerchantStatus.SUSPENDED.value
            if merchant["status"] == MerchantStatus.ACTIVE.value
            else MerchantStatus.ACTIVE.value
        )
        return self.set_status(merchant_id, new_status)

    def record_channel_click(self, merchant_id: int) -> int:
        self.db.execute(
            "UPDATE merchants SET channel_clicks = COALESCE(channel_clicks, 0) + 1 WHERE id = ?",
            (merchant_id,),
        )
        return self.db.scalar("SELECT channel_clicks FROM merchants WHERE id = ?", (merchant_id,))

    def delete_merchant(self, merchant_id: int) -> None:
        """删除商家及其评价、订单、预约会话"""
        merchant = self.get_merchant(merchant_id)
        with self.db.connect() as conn:
            session_ids = [
                row[0]
                for row in conn.execute("SELECT id FROM booking_sessions WHERE merchant_id = ?", (merchant_id,))
            ]
            if session_ids:
                marks = ", ".join("?" for _ in session_ids)
                conn.execute(
                    f"""
                    DELETE FROM evaluation_sessions WHERE evaluation_id IN (
                        SELECT id FROM evaluations WHERE booking_session_id IN ({marks})
                    )
                    """,
                    session_ids,
                )
                conn.execute(f"DELETE FROM evaluations WHERE booking_session_id IN ({marks})", session_ids)
                conn.execute(f"DELETE FROM orders WHERE booking_session_id IN ({marks})", session_ids)
            conn.execute("DELETE FROM orders WHERE merchant_id = ?", (merchant_id,))
            conn.execute("DELETE FROM booking_sessions WHERE merchant_id = ?", (merchant_id,))
            conn.execute("DELETE FROM merchant_ratings WHERE merchant_id = ?", (merchant_id,))
            conn.execute("DELETE FROM merchants WHERE id = ?", (merchant_id,))
            if merchant.get("bind_code"):
                conn.execute(
                    "UPDATE bind_codes SET used = 0, used_by = NULL, used_at = NULL WHERE code = ?",
                    (merchant["bind_code"],),
                )
        logger.warning("删除商家 %s (%s) 及其关联数据", merchant_id, merchant.get("teacher_name"))
