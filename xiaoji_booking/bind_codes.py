"""绑定码管理"""

from __future__ import annotations

import logging
import secrets
import string
from typing import Any, Dict, List, Optional

from .database import DatabaseManager, get_db_manager, now_ts
from .errors import BindCodeError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
MAX_ATTEMPTS = 100


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class BindCodeService:
    """绑定码的生成、核销与删除"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()

    def create_bind_code(self, description: Optional[str] = None) -> Dict[str, Any]:
        for _ in range(MAX_ATTEMPTS):
            code = generate_code()
            if self.get_bind_code(code) is None:
                break
        else:
            raise BindCodeError("无法生成唯一绑定码，请重试")

        bind_code_id = self.db.insert(
            "bind_codes",
            {"code": code, "description": description, "used": 0, "created_at": now_ts()},
        )
        logger.info("生成绑定码 %s (%s)", code, description or "无描述")
        return self.get_by_id(bind_code_id)

    def get_bind_code(self, code: str) -> Optional[Dict[str, Any]]:
        return self.db.query_one("SELECT * FROM bind_codes WHERE code = ?", (normalize_code(code),))

    def get_by_id(self, bind_code_id: int) -> Dict[str, Any]:
        row = self.db.query_one("SELECT * FROM bind_codes WHERE id = ?", (bind_code_id,))
        if row is None:
            raise NotFoundError("绑定码不存在")
        return row

    def list_bind_codes(self) -> List[Dict[str, Any]]:
        return self.db.query(
            """
            SELECT bc.*, m.teacher_name AS merchant_name, m.username AS merchant_username, m.id AS merchant_id
            FROM bind_codes bc
            LEFT JOIN merchants m ON m.bind_code = bc.code
            ORDER BY bc.created_at DESC, bc.id DESC
            """
        )

    def list_available(self) -> List[Dict[str, Any]]:
        return self.db.query("SELECT * FROM bind_codes WHERE used = 0 ORDER BY created_at DESC, id DESC")

    def use_bind_code(self, code: str, user_id: int) -> Dict[str, Any]:
        """核销绑定码，检查与更新在同一事务内完成"""
        code = normalize_code(code)
        with self.db.connect() as conn:
            row = conn.execute("SELECT id, used FROM bind_codes WHERE code = ?", (code,)).fetchone()
            if row is None:
                raise BindCodeError("绑定码不存在")
            if row[1]:
                raise BindCodeError("绑定码已被使用")
            conn.execute(
                "UPDATE bind_codes SET used = 1, used_by = ?, used_at = ? WHERE id = ?",
                (user_id, now_ts(), row[0]),
            )
        logger.info("绑定码 %s 已被用户 %s 使用", code, user_id)
        return self.get_by_id(row[0])

    def mark_used(self, code: str, user_id: Optional[int]) -> None:
        self.db.execute(
            "UPDATE bind_codes SET used = 1, used_by = ?, used_at = ? WHERE code = ?",
            (user_id, now_ts(), normalize_code(code)),
        )

    def delete_bind_code(self, bind_code_id: int) -> None:
        bind_code = self.get_by_id(bind_code_id)
        if bind_code["used"]:
            raise ValidationError("绑定码已被使用，无法删除")
        self.db.execute("DELETE FROM bind_codes WHERE id = ?", (bind_code_id,))
        logger.info("删除绑定码 %s", bind_code["code"])

    def force_delete_bind_code(self, bind_code_id: int) -> Dict[str, Any]:
        """强制删除绑定码，同时删除使用该码的商家及其关联数据"""
        from .merchants import MerchantService  # pylint: disable=import-outside-toplevel

        bind_code = self.get_by_id(bind_code_id)
        merchants = MerchantService(self.db)
        removed: List[int] = []
        for merchant in self.db.query("SELECT id FROM merchants WHERE bind_code = ?", (bind_code["code"],)):
            merchants.delete_merchant(merchant["id"])
            removed.append(merchant["id"])
        self.db.execute("DELETE FROM bind_codes WHERE id = ?", (bind_code_id,))
        logger.warning("强制删除绑定码 %s，级联删除商家 %s", bind_code["code"], removed or "无")
        return {"code": bind_code["code"], "deletedMerchants": removed}

    def stats(self) -> Dict[str, int]:
        total = self.db.scalar("SELECT COUNT(*) FROM bind_codes")
        used = self.db.scalar("SELECT COUNT(*) FROM bind_codes WHERE used = 1")
        return {"total": total, "used": used, "available": total - used}
