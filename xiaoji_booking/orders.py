"""订单与预约会话"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from datetime import date, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .database import DatabaseManager, get_db_manager, loads, now_ts
from .errors import NotFoundError, ValidationError
from .models import CourseType, OrderStatus

logger = logging.getLogger(__name__)

ORDER_FIELDS = {
    "booking_session_id",
    "user_id",
    "user_name",
    "user_username",
    "merchant_id",
    "merchant_user_id",
    "teacher_name",
    "teacher_contact",
    "course_type",
    "course_content",
    "price_range",
    "booking_time",
    "status",
    "user_evaluation",
    "merchant_evaluation",
    "report_content",
}

PRICE_BUCKETS: Dict[str, Tuple[float, Optional[float]]] = {
    "0-500": (0, 500),
    "500-700": (500, 700),
    "700-900": (700, 900),
    "900-1100": (900, 1100),
    "1100+": (1100, None),
}

# 实际价格：订单里记录的数字价格优先，其次按课程类型取商家价格
ACTUAL_PRICE_SQL = """
    CASE
        WHEN CAST(o.price_range AS REAL) > 0 THEN CAST(o.price_range AS REAL)
        WHEN o.course_type = 'p' THEN CAST(m.price1 AS REAL)
        WHEN o.course_type = 'pp' THEN CAST(m.price2 AS REAL)
        ELSE NULL
    END
"""

_EVAL_EXISTS = """EXISTS (
    SELECT 1 FROM evaluations e
    WHERE e.booking_session_id = o.booking_session_id
      AND e.evaluator_type = '{kind}' AND e.status = 'completed'
)"""

_EVALUATION_CONDITIONS = {
    "user_completed": _EVAL_EXISTS.format(kind="user"),
    "user_pending": "NOT " + _EVAL_EXISTS.format(kind="user"),
    "merchant_completed": _EVAL_EXISTS.format(kind="merchant"),
    "merchant_pending": "NOT " + _EVAL_EXISTS.format(kind="merchant"),
    "all_completed": f"{_EVAL_EXISTS.format(kind='user')} AND {_EVAL_EXISTS.format(kind='merchant')}",
    "none_completed": f"NOT {_EVAL_EXISTS.format(kind='user')} AND NOT {_EVAL_EXISTS.format(kind='merchant')}",
}

ORDERS_FROM = """
    FROM orders o
    LEFT JOIN merchants m ON m.id = o.merchant_id
    LEFT JOIN regions r ON r.id = m.region_id
    LEFT JOIN booking_sessions bs ON bs.id = o.booking_session_id
"""


def price_for(merchant: Mapping[str, Any], course_type: str) -> str:
    if course_type == CourseType.P.value:
        return str(merchant.get("price1") or "未设置")
    if course_type == CourseType.PP.value:
        return str(merchant.get("price2") or "未设置")
    return "其他"


def compute_real_status(order: Mapping[str, Any]) -> str:
    """评价完成情况优先于存储的状态"""
    status = order.get("status") or OrderStatus.PENDING.value
    has_user = bool(order.get("user_evaluation"))
    has_merchant = bool(order.get("merchant_evaluation"))
    if has_user and has_merchant:
        return OrderStatus.COMPLETED.value
    if (has_user or has_merchant) and status == OrderStatus.CONFIRMED.value:
        return OrderStatus.COMPLETED.value
    return status


def _range_start(time_range: str, today: date) -> Optional[date]:
    if time_range in ("today", "本日"):
        return today
    if time_range in ("week", "本周"):
        return today - timedelta(days=today.weekday())
    if time_range in ("month", "本月"):
        return today.replace(day=1)
    if time_range in ("quarter", "本季度"):
        return today.replace(month=(today.month - 1) // 3 * 3 + 1, day=1)
    if time_range in ("year", "本年"):
        return today.replace(month=1, day=1)
    return None


@dataclass
class OrderFilters:
    """订单列表与统计共用的筛选条件"""
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    region_id: Optional[int] = None
    price_range: Optional[str] = None
    merchant_id: Optional[str] = None
    status: Optional[str] = None
    course_type: Optional[str] = None
    search: Optional[str] = None
    order_id: Optional[str] = None
    user_name: Optional[str] = None
    merchant_name: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    evaluation_status: Optional[str] = None

    _QUERY_KEYS = {
        "dateFrom": "date_from",
        "dateTo": "date_to",
        "regionId": "region_id",
        "priceRange": "price_range",
        "merchantId": "merchant_id",
        "status": "status",
        "courseType": "course_type",
        "search": "search",
        "orderId": "order_id",
        "userName": "user_name",
        "merchantName": "merchant_name",
        "minPrice": "min_price",
        "maxPrice": "max_price",
        "evaluationStatus": "evaluation_status",
    }

    @classmethod
    def from_query(cls, query: Mapping[str, Any], today: Optional[date] = None) -> "OrderFilters":
        values: Dict[str, Any] = {}
        for key, attr in cls._QUERY_KEYS.items():
            raw = query.get(key)
            if raw in (None, ""):
                continue
            values[attr] = raw

        for attr in ("min_price", "max_price"):
            if attr in values:
                try:
                    values[attr] = float(values[attr])
                except (TypeError, ValueError):
                    values.pop(attr)
        if "region_id" in values:
            try:
                values["region_id"] = int(values["region_id"])
            except (TypeError, ValueError):
                values.pop("region_id")

        time_range = query.get("timeRange")
        if time_range:
            today = today or date.today()
            start = _range_start(str(time_range), today)
            if start is not None:
                values["date_from"] = start.isoformat()
                values["date_to"] = today.isoformat()

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    def build_where(self) -> Tuple[str, List[Any]]:
        conditions = ["1=1"]
        params: List[Any] = []

        if self.date_from:
            conditions.append("date(o.created_at, 'unixepoch', 'localtime') >= date(?)")
            params.append(self.date_from)
        if self.date_to:
            conditions.append("date(o.created_at, 'unixepoch', 'localtime') <= date(?)")
            params.append(self.date_to)
        if self.merchant_id:
            conditions.append("(CAST(o.merchant_id AS TEXT) = ? OR m.teacher_name = ?)")
            params.extend([str(self.merchant_id), str(self.merchant_id)])
        if self.region_id:
            conditions.append("m.region_id = ?")
            params.append(self.region_id)
        if self.price_range:
            bucket = PRICE_BUCKETS.get(self.price_range)
            if bucket is None:
                raise ValidationError(f"无效的价格区间: {self.price_range}")
            low, high = bucket
            if high is None:
                conditions.append(f"({ACTUAL_PRICE_SQL}) >= ?")
                params.append(low)
            else:
                conditions.append(f"({ACTUAL_PRICE_SQL}) >= ? AND ({ACTUAL_PRICE_SQL}) < ?")
                params.extend([low, high])
        if self.status:
            clause, clause_params = _status_condition(self.status)
            conditions.append(clause)
            params.extend(clause_params)
        if self.course_type:
            conditions.append("(o.course_type = ? OR o.course_content = ?)")
            params.extend([self.course_type, self.course_type])
        if self.search:
            term = f"%{self.search}%"
            conditions.append(
                """(
                    CAST(o.id AS TEXT) LIKE ? OR o.user_username LIKE ? OR o.user_name LIKE ?
                    OR m.teacher_name LIKE ? OR m.username LIKE ? OR o.course_content LIKE ?
                    OR CAST(o.price_range AS TEXT) LIKE ?
                )"""
            )
            params.extend([term] * 7)
        if self.order_id:
            conditions.append("CAST(o.id AS TEXT) = ?")
            params.append(str(self.order_id))
        if self.user_name:
            term = f"%{self.user_name}%"
            conditions.append("(o.user_username LIKE ? OR o.user_name LIKE ?)")
            params.extend([term, term])
        if self.merchant_name:
            term = f"%{self.merchant_name}%"
            conditions.append("(m.teacher_name LIKE ? OR m.username LIKE ?)")
            params.extend([term, term])
        if self.min_price is not None:
            conditions.append(f"({ACTUAL_PRICE_SQL}) >= ?")
            params.append(self.min_price)
        if self.max_price is not None:
            conditions.append(f"({ACTUAL_PRICE_SQL}) <= ?")
            params.append(self.max_price)
        if self.evaluation_status:
            clause = _EVALUATION_CONDITIONS.get(self.evaluation_status)
            if clause is None:
                raise ValidationError(f"无效的评价状态: {self.evaluation_status}")
            conditions.append(clause)

        return " AND ".join(conditions), params


def _status_condition(status: str) -> Tuple[str, List[Any]]:
    if status == OrderStatus.COMPLETED.value:
        return "(o.status = 'completed' OR bs.user_course_status = 'completed')", []
    if status == "incomplete":
        return "bs.user_course_status = 'incomplete'", []
    if status in {item.value for item in OrderStatus}:
        return (
            "o.status = ? AND (bs.user_course_status IS NULL OR bs.user_course_status NOT IN ('completed', 'incomplete'))",
            [status],
        )
    raise ValidationError(f"无效的订单状态: {status}")


class OrderService:
    """预约会话与订单"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()

    # 预约会话 -------------------------------------------------------------------

    def create_session(self, user_id: int, merchant_id: int, course_type: str) -> int:
        ts = now_ts()
        return self.db.insert(
            "booking_sessions",
            {
                "user_id": user_id,
                "merchant_id": merchant_id,
                "course_type": course_type,
                "status": "notified",
                "user_course_status": "pending",
                "merchant_course_status": "pending",
                "created_at": ts,
                "updated_at": ts,
            },
        )

    def find_session(self, session_id: Any) -> Optional[Dict[str, Any]]:
        try:
            session_id = int(session_id)
        except (TypeError, ValueError):
            return None
        return self.db.query_one("SELECT * FROM booking_sessions WHERE id = ?", (session_id,))

    def get_session(self, session_id: Any) -> Dict[str, Any]:
        session = self.find_session(session_id)
        if session is None:
            raise NotFoundError("预约信息不存在")
        return session

    def set_course_status(self, session_id: int, side: str, status: str) -> Dict[str, Any]:
        if side not in ("user", "merchant"):
            raise ValidationError(f"未知的确认方: {side}")
        self.db.execute(
            f"UPDATE booking_sessions SET {side}_course_status = ?, updated_at = ? WHERE id = ?",
            (status, now_ts(), session_id),
        )
        return self.get_session(session_id)

    def set_session_status(self, session_id: int, status: str) -> None:
        self.db.execute(
            "UPDATE booking_sessions SET status = ?, updated_at = ? WHERE id = ?",
            (status, now_ts(), session_id),
        )

    # 订单 -----------------------------------------------------------------------

    def create_order(self, **values: Any) -> int:
        unknown = set(values) - ORDER_FIELDS
        if unknown:
            raise ValidationError(f"未知的订单字段: {', '.join(sorted(unknown))}")
        ts = now_ts()
        values.setdefault("status", OrderStatus.ATTEMPTING.value)
        values.setdefault("booking_time", ts)
        values["created_at"] = ts
        values["updated_at"] = ts
        order_id = self.db.insert("orders", values)
        logger.info("创建订单 %s (用户 %s, 商家 %s, 状态 %s)", order_id, values.get("user_id"), values.get("merchant_id"), values["status"])
        return order_id

    def get_order(self, order_id: int) -> Dict[str, Any]:
        row = self.db.query_one("SELECT * FROM orders WHERE id = ?", (order_id,))
        if row is None:
            raise NotFoundError("订单不存在")
        return row

    def get_by_session(self, session_id: int) -> Optional[Dict[str, Any]]:
        return self.db.query_one(
            "SELECT * FROM orders WHERE booking_session_id = ? ORDER BY id DESC LIMIT 1",
            (session_id,),
        )

    def find_recent(self, user_id: int, merchant_id: int, *statuses: str) -> Optional[Dict[str, Any]]:
        """查找用户对某商家最近一笔指定状态的订单"""
        if not statuses:
            statuses = (OrderStatus.ATTEMPTING.value,)
        marks = ", ".join("?" for _ in statuses)
        return self.db.query_one(
            f"""
            SELECT * FROM orders
            WHERE user_id = ? AND merchant_id = ? AND status IN ({marks})
            ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (user_id, merchant_id, *statuses),
        )

    def update_order(self, order_id: int, **values: Any) -> None:
        unknown = set(values) - ORDER_FIELDS
        if unknown:
            raise ValidationError(f"未知的订单字段: {', '.join(sorted(unknown))}")
        values["updated_at"] = now_ts()
        self.db.update("orders", order_id, values)

    # 列表 -----------------------------------------------------------------------

    def _decorate(self, order: Dict[str, Any]) -> Dict[str, Any]:
        order["real_status"] = compute_real_status(order)
        order["user_evaluation_status"] = "completed" if order.get("user_evaluation") else "pending"
        order["merchant_evaluation_status"] = "completed" if order.get("merchant_evaluation") else "pending"
        return order

    def list_orders(
        self,
        filters: Optional[OrderFilters] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        filters = filters or OrderFilters()
        page = max(1, int(page))
        page_size = max(1, min(int(page_size), 500))
        where, params = filters.build_where()

        total = self.db.scalar(f"SELECT COUNT(*) {ORDERS_FROM} WHERE {where}", params)
        rows = self.db.query(
            f"""
            SELECT o.*, m.username AS merchant_username, m.region_id, r.name AS region_name,
                   ({ACTUAL_PRICE_SQL}) AS actual_price,
                   bs.user_course_status, bs.merchant_course_status
            {ORDERS_FROM}
            WHERE {where}
            ORDER BY o.created_at DESC, o.id DESC
            LIMIT ? OFFSET ?
            """,
            [*params, page_size, (page - 1) * page_size],
        )
        return {
            "orders": [self._decorate(row) for row in rows],
            "total": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": math.ceil(total / page_size) if total else 0,
        }

    def get_order_detail(self, order_id: int) -> Dict[str, Any]:
        row = self.db.query_one(
            f"""
            SELECT o.*, m.username AS merchant_username, m.contact AS merchant_contact,
                   r.name AS region_name, ({ACTUAL_PRICE_SQL}) AS actual_price,
                   bs.user_course_status, bs.merchant_course_status
            {ORDERS_FROM}
            WHERE o.id = ?
            """,
            (order_id,),
        )
        if row is None:
            raise NotFoundError("订单不存在")
        row = self._decorate(row)
        row["user_evaluation"] = loads(row.get("user_evaluation"))
        row["merchant_evaluation"] = loads(row.get("merchant_evaluation"))
        if row.get("booking_session_id"):
            row["evaluations"] = [
                dict(evaluation, detailed_scores=loads(evaluation.get("detailed_scores"), {}))
                for evaluation in self.db.query(
                    "SELECT * FROM evaluations WHERE booking_session_id = ? ORDER BY id",
                    (row["booking_session_id"],),
                )
            ]
        else:
            row["evaluations"] = []
        return row
