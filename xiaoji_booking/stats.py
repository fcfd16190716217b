"""后台统计、图表与排行榜数据"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .database import DatabaseManager, get_db_manager
from .errors import ValidationError
from .models import ORDER_STATUS_LABELS
from .orders import ACTUAL_PRICE_SQL, ORDERS_FROM, PRICE_BUCKETS, OrderFilters

logger = logging.getLogger(__name__)

COUNTABLE_TABLES = {"merchants", "message_templates", "bind_codes", "regions", "orders"}

TREND_FORMATS = {
    "hourly": "%Y-%m-%d %H:00",
    "daily": "%Y-%m-%d",
    "weekly": "%Y-W%W",
    "monthly": "%Y-%m",
}

TREND_BUCKETS = 30


def _round(value: Optional[float], digits: int = 1) -> float:
    return round(value, digits) if value is not None else 0


class StatsService:
    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()

    def optimized_stats(self, filters: Optional[OrderFilters] = None) -> Dict[str, Any]:
        where, params = (filters or OrderFilters()).build_where()
        counts = self.db.query_one(
            f"""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN o.status = 'confirmed' OR bs.user_course_status = 'confirmed' THEN 1 ELSE 0 END) AS booked,
                SUM(CASE WHEN bs.user_course_status IS NULL OR bs.user_course_status != 'completed' THEN 1 ELSE 0 END) AS incomplete,
                SUM(CASE WHEN bs.user_course_status = 'completed' THEN 1 ELSE 0 END) AS completed,
                AVG({ACTUAL_PRICE_SQL}) AS avg_price
            {ORDERS_FROM}
            WHERE {where}
            """,
            params,
        ) or {}

        def _avg_rating(kind: str) -> Optional[float]:
            return self.db.scalar(
                f"""
                SELECT AVG(e.overall_score)
                FROM evaluations e
                INNER JOIN orders o ON o.booking_session_id = e.booking_session_id
                LEFT JOIN merchants m ON m.id = o.merchant_id
                LEFT JOIN regions r ON r.id = m.region_id
                LEFT JOIN booking_sessions bs ON bs.id = o.booking_session_id
                WHERE e.evaluator_type = ? AND e.status = 'completed' AND e.overall_score IS NOT NULL
                  AND {where}
                """,
                [kind, *params],
                default=None,
            )

        total = counts.get("total") or 0
        completed = counts.get("completed") or 0
        return {
            "totalOrders": total,
            "bookedOrders": counts.get("booked") or 0,
            "incompleteOrders": counts.get("incomplete") or 0,
            "completedOrders": completed,
            "avgPrice": round(counts["avg_price"]) if counts.get("avg_price") else 0,
            "avgUserRating": _round(_avg_rating("user")),
            "avgMerchantRating": _round(_avg_rating("merchant")),
            "completionRate": _round(completed / total * 100) if total else 0,
        }

    def dashboard_stats(self) -> Dict[str, Any]:
        today = datetime.now().strftime("%Y-%m-%d")
        return {
            "totalMerchants": self.db.scalar("SELECT COUNT(*) FROM merchants"),
            "activeMerchants": self.db.scalar("SELECT COUNT(*) FROM merchants WHERE status = 'active'"),
            "boundMerchants": self.db.scalar("SELECT COUNT(*) FROM merchants WHERE user_id IS NOT NULL"),
            "totalBindCodes": self.db.scalar("SELECT COUNT(*) FROM bind_codes"),
            "usedBindCodes": self.db.scalar("SELECT COUNT(*) FROM bind_codes WHERE used = 1"),
            "totalRegions": self.db.scalar("SELECT COUNT(*) FROM regions"),
            "totalTemplates": self.db.scalar("SELECT COUNT(*) FROM message_templates"),
            "totalOrders": self.db.scalar("SELECT COUNT(*) FROM orders"),
            "todayInteractions": self.db.scalar(
                "SELECT COUNT(*) FROM interactions WHERE date(timestamp, 'unixepoch', 'localtime') = ?",
                (today,),
            ),
            "totalInteractions": self.db.scalar("SELECT COUNT(*) FROM interactions"),
        }

    def basic_stats(self) -> Dict[str, int]:
        return {table: self.simple_count(table) for table in sorted(COUNTABLE_TABLES)}

    def simple_count(self, table: str) -> int:
        if table not in COUNTABLE_TABLES:
            raise ValidationError("不允许查询的表")
        return self.db.scalar(f"SELECT COUNT(*) FROM {table}")

    # 图表 -----------------------------------------------------------------------

    def orders_trend(self, period: str = "daily", filters: Optional[OrderFilters] = None) -> Dict[str, List[Any]]:
        fmt = TREND_FORMATS.get(period)
        if fmt is None:
            raise ValidationError(f"无效的统计周期: {period}")
        where, params = (filters or OrderFilters()).build_where()
        rows = self.db.query(
            f"""
            SELECT strftime('{fmt}', o.created_at, 'unixepoch', 'localtime') AS bucket,
                   COUNT(*) AS total,
                   SUM(CASE WHEN o.status = 'completed' OR bs.user_course_status = 'completed' THEN 1 ELSE 0 END) AS completed
            {ORDERS_FROM}
            WHERE {where}
            GROUP BY bucket
            ORDER BY bucket DESC
            LIMIT {TREND_BUCKETS}
            """,
            params,
        )
        rows.reverse()
        return {
            "labels": [row["bucket"] for row in rows],
            "values": [row["total"] for row in rows],
            "completedValues": [row["completed"] or 0 for row in rows],
        }

    def region_distribution(self, filters: Optional[OrderFilters] = None) -> Dict[str, List[Any]]:
        where, params = (filters or OrderFilters()).build_where()
        rows = self.db.query(
            f"""
            SELECT COALESCE(r.name, '未知地区') AS region, COUNT(*) AS total
            {ORDERS_FROM}
            WHERE {where}
            GROUP BY region
            ORDER BY total DESC
            LIMIT 10
            """,
            params,
        )
        return {"labels": [row["region"] for row in rows], "values": [row["total"] for row in rows]}

    def price_distribution(self, filters: Optional[OrderFilters] = None) -> Dict[str, List[Any]]:
        where, params = (filters or OrderFilters()).build_where()
        prices = [
            row["price"]
            for row in self.db.query(
                f"SELECT ({ACTUAL_PRICE_SQL}) AS price {ORDERS_FROM} WHERE {where}",
                params,
            )
            if row["price"] is not None
        ]
        counts = {label: 0 for label in PRICE_BUCKETS}
        for price in prices:
            for label, (low, high) in PRICE_BUCKETS.items():
                if price >= low and (high is None or price < high):
                    counts[label] += 1
                    break
        return {"labels": list(counts), "values": list(counts.values())}

    def status_distribution(self, filters: Optional[OrderFilters] = None) -> Dict[str, List[Any]]:
        where, params = (filters or OrderFilters()).build_where()
        rows = self.db.query(
            f"""
            SELECT COALESCE(o.status, 'pending') AS order_status, COUNT(*) AS total
            {ORDERS_FROM}
            WHERE {where}
            GROUP BY order_status
            ORDER BY total DESC
            """,
            params,
        )
        return {
            "labels": [ORDER_STATUS_LABELS.get(row["order_status"], row["order_status"]) for row in rows],
            "values": [row["total"] for row in rows],
            "statuses": [row["order_status"] for row in rows],
        }

    # 列表类统计 -----------------------------------------------------------------

    def merchant_bookings(self) -> List[Dict[str, Any]]:
        return self.db.query(
            """
            SELECT m.id, m.teacher_name, m.username, m.status, m.channel_clicks,
                   COUNT(o.id) AS total_orders,
                   SUM(CASE WHEN o.status = 'confirmed' THEN 1 ELSE 0 END) AS confirmed_orders,
                   SUM(CASE WHEN o.status = 'completed' THEN 1 ELSE 0 END) AS completed_orders
            FROM merchants m
            LEFT JOIN orders o ON o.merchant_id = m.id
            GROUP BY m.id
            ORDER BY total_orders DESC, m.id
            """
        )

    def recent_bookings(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.db.query(
            f"""
            SELECT o.id, o.user_name, o.user_username, o.teacher_name, o.course_content,
                   o.price_range, o.status, o.created_at, r.name AS region_name
            {ORDERS_FROM}
            ORDER BY o.created_at DESC, o.id DESC
            LIMIT ?
            """,
            (limit,),
        )

    def message_stats(self) -> List[Dict[str, Any]]:
        return self.db.query(
            """
            SELECT action_type, COUNT(*) AS total, COUNT(DISTINCT user_id) AS users, MAX(timestamp) AS last_seen
            FROM interactions
            GROUP BY action_type
            ORDER BY total DESC
            """
        )

    def button_stats(self) -> List[Dict[str, Any]]:
        return self.db.query(
            """
            SELECT action_type, COUNT(*) AS clicks, COUNT(DISTINCT user_id) AS users
            FROM interactions
            WHERE action_type IN ('attack_click', 'channel_click') OR action_type LIKE 'book_%'
               OR action_type LIKE 'rebook_%' OR button_id IS NOT NULL
            GROUP BY action_type
            ORDER BY clicks DESC
            """
        )

    # 排行榜 ---------------------------------------------------------------------

    def merchant_rankings(self, limit: int = 50, region_id: Optional[int] = None) -> List[Dict[str, Any]]:
        sql = """
            SELECT m.id AS merchant_id, m.teacher_name, m.username, r.name AS region_name,
                   mr.total_evaluations, mr.avg_overall_score, mr.avg_detail_score
            FROM merchant_ratings mr
            INNER JOIN merchants m ON m.id = mr.merchant_id
            LEFT JOIN regions r ON r.id = m.region_id
        """
        params: List[Any] = []
        if region_id:
            sql += " WHERE m.region_id = ?"
            params.append(region_id)
        sql += " ORDER BY mr.avg_overall_score DESC, mr.total_evaluations DESC LIMIT ?"
        params.append(limit)
        rows = self.db.query(sql, params)
        for rank, row in enumerate(rows, start=1):
            row["rank"] = rank
        return rows

    def user_rankings(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.db.query(
            """
            SELECT ur.user_id, ur.total_evaluations, ur.avg_overall_score, ur.avg_detail_score,
                   (SELECT o.user_name FROM orders o WHERE o.user_id = ur.user_id ORDER BY o.id DESC LIMIT 1) AS user_name,
                   (SELECT o.user_username FROM orders o WHERE o.user_id = ur.user_id ORDER BY o.id DESC LIMIT 1) AS user_username
            FROM user_ratings ur
            ORDER BY ur.avg_overall_score DESC, ur.total_evaluations DESC
            LIMIT ?
            """,
            (limit,),
        )
        for rank, row in enumerate(rows, start=1):
            row["rank"] = rank
        return rows
