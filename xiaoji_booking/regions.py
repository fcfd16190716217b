from __future__ import annotations

from typing import Any, Dict, List, Optional

from .database import DatabaseManager, get_db_manager
from .errors import NotFoundError, ValidationError


class RegionService:
    """地区管理"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()

    def list_regions(self, active_only: bool = True) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM regions"
        if active_only:
            sql += " WHERE active = 1"
        return self.db.query(sql + " ORDER BY sort_order, name")

    def get_region(self, region_id: int) -> Dict[str, Any]:
        row = self.db.query_one("SELECT * FROM regions WHERE id = ?", (region_id,))
        if row is None:
            raise NotFoundError("地区不存在")
        return row

    def create_region(self, name: str, sort_order: int = 0) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValidationError("地区名称不能为空")
        if self.db.query_one("SELECT id FROM regions WHERE name = ?", (name,)):
            raise ValidationError(f"地区 {name} 已存在")
        region_id = self.db.insert("regions", {"name": name, "sort_order": sort_order, "active": 1})
        return self.get_region(region_id)

    def update_region(
        self,
        region_id: int,
        name: Optional[str] = None,
        sort_order: Optional[int] = None,
        active: Optional[bool] = None,
    ) -> Dict[str, Any]:
        self.get_region(region_id)
        values: Dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("地区名称不能为空")
            name = name.strip()
            if self.db.query_one("SELECT id FROM regions WHERE name = ? AND id != ?", (name, region_id)):
                raise ValidationError(f"地区 {name} 已存在")
            values["name"] = name
        if sort_order is not None:
            values["sort_order"] = sort_order
        if active is not None:
            values["active"] = 1 if active else 0
        self.db.update("regions", region_id, values)
        return self.get_region(region_id)

    def delete_region(self, region_id: int) -> None:
        self.get_region(region_id)
        in_use = self.db.scalar("SELECT COUNT(*) FROM merchants WHERE region_id = ?", (region_id,))
        if in_use:
            raise ValidationError(f"仍有 {in_use} 位商家属于该地区，无法删除")
        self.db.execute("DELETE FROM regions WHERE id = ?", (region_id,))
