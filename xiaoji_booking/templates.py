"""消息模板、触发词、定时任务与交互日志"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .database import DatabaseManager, dumps, get_db_manager, loads, now_ts
from .errors import NotFoundError, ValidationError
from .models import Button, Keyboard, TelegramUser

logger = logging.getLogger(__name__)

MATCH_TYPES = {"exact", "contains"}
SCHEDULE_TYPES = {"daily", "weekly", "cron", "interval", "once"}


def parse_buttons_config(config: Any) -> Keyboard:
    """buttons_config 是按行组织的按钮列表：[[{"text":..,"url":..}], ...]"""
    rows = loads(config, []) if isinstance(config, str) else (config or [])
    keyboard: Keyboard = []
    for row in rows:
        if isinstance(row, dict):
            row = [row]
        buttons = []
        for item in row or []:
            if not isinstance(item, dict) or not item.get("text"):
                continue
            if item.get("url"):
                buttons.append(Button(text=item["text"], url=item["url"]))
            elif item.get("callback_data"):
                buttons.append(Button(text=item["text"], callback_data=item["callback_data"]))
        if buttons:
            keyboard.append(buttons)
    return keyboard


async def send_template(messenger: Any, chat_id: Any, template: Dict[str, Any]) -> Any:
    """通过 messenger 发送模板（文字、可选图片与按钮）"""
    return await messenger.send(
        chat_id,
        template["content"],
        parse_buttons_config(template.get("buttons_config")) or None,
        photo=template.get("image_url") or None,
    )


class TemplateService:
    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()

    # 模板 -----------------------------------------------------------------------

    def list_templates(self) -> List[Dict[str, Any]]:
        rows = self.db.query("SELECT * FROM message_templates ORDER BY id DESC")
        for row in rows:
            row["buttons_config"] = loads(row.get("buttons_config"), [])
        return rows

    def get_template(self, template_id: int) -> Dict[str, Any]:
        row = self.db.query_one("SELECT * FROM message_templates WHERE id = ?", (template_id,))
        if row is None:
            raise NotFoundError(f"模板 {template_id} 不存在")
        row["buttons_config"] = loads(row.get("buttons_config"), [])
        return row

    def create_template(
        self,
        name: str,
        content: str,
        image_url: Optional[str] = None,
        buttons_config: Optional[List[Any]] = None,
    ) -> Dict[str, Any]:
        if not (name or "").strip() or not (content or "").strip():
            raise ValidationError("模板名称和内容不能为空")
        template_id = self.db.insert(
            "message_templates",
            {
                "name": name.strip(),
                "content": content,
                "image_url": image_url,
                "buttons_config": dumps(buttons_config or []),
                "created_at": now_ts(),
            },
        )
        return self.get_template(template_id)

    def update_template(self, template_id: int, **fields: Any) -> Dict[str, Any]:
        self.get_template(template_id)
        values = {key: fields[key] for key in ("name", "content", "image_url") if fields.get(key) is not None}
        if "buttons_config" in fields and fields["buttons_config"] is not None:
            values["buttons_config"] = dumps(fields["buttons_config"])
        self.db.update("message_templates", template_id, values)
        return self.get_template(template_id)

    def delete_template(self, template_id: int) -> None:
        self.get_template(template_id)
        in_use = self.db.scalar(
            "SELECT (SELECT COUNT(*) FROM trigger_words WHERE template_id = ?) + "
            "(SELECT COUNT(*) FROM scheduled_tasks WHERE template_id = ?)",
            (template_id, template_id),
        )
        if in_use:
            raise ValidationError("模板仍被触发词或定时任务引用，无法删除")
        self.db.execute("DELETE FROM message_templates WHERE id = ?", (template_id,))

    # 触发词 ---------------------------------------------------------------------

    def list_triggers(self) -> List[Dict[str, Any]]:
        return self.db.query(
            """
            SELECT tw.*, mt.name AS template_name
            FROM trigger_words tw LEFT JOIN message_templates mt ON mt.id = tw.template_id
            ORDER BY tw.id DESC
            """
        )

    def get_trigger(self, trigger_id: int) -> Dict[str, Any]:
        row = self.db.query_one("SELECT * FROM trigger_words WHERE id = ?", (trigger_id,))
        if row is None:
            raise NotFoundError(f"触发词 {trigger_id} 不存在")
        return row

    def create_trigger(self, word: str, template_id: int, chat_id: int, match_type: str = "exact") -> Dict[str, Any]:
        if not (word or "").strip():
            raise ValidationError("触发词不能为空")
        if match_type not in MATCH_TYPES:
            raise ValidationError(f"无效的匹配方式: {match_type}")
        self.get_template(template_id)
        trigger_id = self.db.insert(
            "trigger_words",
            {
                "word": word.strip(),
                "template_id": template_id,
                "match_type": match_type,
                "chat_id": chat_id,
                "active": 1,
                "trigger_count": 0,
                "created_at": now_ts(),
            },
        )
        return self.get_trigger(trigger_id)

    def update_trigger(self, trigger_id: int, **fields: Any) -> Dict[str, Any]:
        self.get_trigger(trigger_id)
        if fields.get("match_type") and fields["match_type"] not in MATCH_TYPES:
            raise ValidationError(f"无效的匹配方式: {fields['match_type']}")
        values = {
            key: fields[key]
            for key in ("word", "template_id", "match_type", "chat_id")
            if fields.get(key) is not None
        }
        if fields.get("active") is not None:
            values["active"] = 1 if fields["active"] else 0
        self.db.update("trigger_words", trigger_id, values)
        return self.get_trigger(trigger_id)

    def delete_trigger(self, trigger_id: int) -> None:
        self.get_trigger(trigger_id)
        self.db.execute("DELETE FROM trigger_words WHERE id = ?", (trigger_id,))

    def match_triggers(self, chat_id: int, text: str) -> List[Dict[str, Any]]:
        """返回当前聊天中与文本匹配的启用触发词（不区分大小写）"""
        text = (text or "").strip().lower()
        if not text:
            return []
        matched = []
        for trigger in self.db.query(
            "SELECT * FROM trigger_words WHERE chat_id = ? AND active = 1 ORDER BY id",
            (chat_id,),
        ):
            word = (trigger["word"] or "").lower()
            if trigger["match_type"] == "contains":
                hit = word in text
            else:
                hit = text == word
            if hit:
                matched.append(trigger)
        return matched

    def record_trigger(self, trigger_id: int) -> None:
        self.db.execute(
            "UPDATE trigger_words SET trigger_count = trigger_count + 1, last_triggered = ? WHERE id = ?",
            (now_ts(), trigger_id),
        )

    # 定时任务 -------------------------------------------------------------------

    def list_tasks(self, active_only: bool = False) -> List[Dict[str, Any]]:
        sql = """
            SELECT st.*, mt.name AS template_name
            FROM scheduled_tasks st LEFT JOIN message_templates mt ON mt.id = st.template_id
        """
        if active_only:
            sql += " WHERE st.active = 1"
        return self.db.query(sql + " ORDER BY st.sequence_order, st.id")

    def get_task(self, task_id: int) -> Dict[str, Any]:
        row = self.db.query_one("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
        if row is None:
            raise NotFoundError(f"定时任务 {task_id} 不存在")
        return row

    def create_task(
        self,
        name: str,
        template_id: int,
        chat_id: int,
        schedule_type: str,
        schedule_time: str,
        sequence_order: int = 0,
        sequence_delay: int = 0,
    ) -> Dict[str, Any]:
        if not (name or "").strip():
            raise ValidationError("任务名称不能为空")
        if schedule_type not in SCHEDULE_TYPES:
            raise ValidationError(f"无效的调度类型: {schedule_type}")
        self.get_template(template_id)
        task_id = self.db.insert(
            "scheduled_tasks",
            {
                "name": name.strip(),
                "template_id": template_id,
                "chat_id": chat_id,
                "schedule_type": schedule_type,
                "schedule_time": schedule_time,
                "sequence_order": sequence_order,
                "sequence_delay": sequence_delay,
                "active": 1,
                "created_at": now_ts(),
            },
        )
        return self.get_task(task_id)

    def update_task(self, task_id: int, **fields: Any) -> Dict[str, Any]:
        self.get_task(task_id)
        if fields.get("schedule_type") and fields["schedule_type"] not in SCHEDULE_TYPES:
            raise ValidationError(f"无效的调度类型: {fields['schedule_type']}")
        values = {
            key: fields[key]
            for key in (
                "name",
                "template_id",
                "chat_id",
                "schedule_type",
                "schedule_time",
                "sequence_order",
                "sequence_delay",
                "next_run",
            )
            if fields.get(key) is not None
        }
        if fields.get("active") is not None:
            values["active"] = 1 if fields["active"] else 0
        self.db.update("scheduled_tasks", task_id, values)
        return self.get_task(task_id)

    def delete_task(self, task_id: int) -> None:
        self.get_task(task_id)
        self.db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))

    def due_tasks(self, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """next_run 已到期的启用任务"""
        return self.db.query(
            "SELECT * FROM scheduled_tasks WHERE active = 1 AND next_run IS NOT NULL AND next_run <= ? "
            "ORDER BY sequence_order, id",
            (now if now is not None else now_ts(),),
        )

    def mark_run(self, task_id: int, next_run: Optional[int] = None) -> None:
        self.db.execute(
            "UPDATE scheduled_tasks SET last_run = ?, next_run = ? WHERE id = ?",
            (now_ts(), next_run, task_id),
        )

    # 交互日志 -------------------------------------------------------------------

    def log_interaction(
        self,
        user: Optional[TelegramUser],
        action_type: str,
        chat_id: Optional[int] = None,
        button_id: Optional[int] = None,
        template_id: Optional[int] = None,
    ) -> int:
        return self.db.insert(
            "interactions",
            {
                "user_id": user.id if user else None,
                "username": user.username if user else None,
                "first_name": user.first_name if user else None,
                "last_name": user.last_name if user else None,
                "button_id": button_id,
                "template_id": template_id,
                "action_type": action_type,
                "chat_id": chat_id,
                "timestamp": now_ts(),
            },
        )

    def list_interactions(self, limit: int = 100, action_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if action_type:
            return self.db.query(
                "SELECT * FROM interactions WHERE action_type = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (action_type, limit),
            )
        return self.db.query("SELECT * FROM interactions ORDER BY timestamp DESC, id DESC LIMIT ?", (limit,))
