"""双向评价：评价记录、评价会话与评分汇总"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .database import DatabaseManager, dumps, get_db_manager, loads, now_ts
from .errors import NotFoundError, ValidationError
from .models import EvaluatorType
from .orders import OrderService

logger = logging.getLogger(__name__)

EVALUATION_STATUSES = {"pending", "overall_completed", "detail_completed", "completed"}


def _numeric_scores(scores: Optional[Dict[str, Any]]) -> List[float]:
    values: List[float] = []
    for value in (scores or {}).values():
        if isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if 1 <= number <= 10:
            values.append(number)
    return values


class EvaluationService:
    """评价记录的读写"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or get_db_manager()
        self.orders = OrderService(self.db)

    # 评价记录 -------------------------------------------------------------------

    def create_evaluation(
        self,
        booking_session_id: int,
        evaluator_type: str,
        evaluator_id: int,
        target_id: int,
    ) -> int:
        EvaluatorType(evaluator_type)
        return self.db.insert(
            "evaluations",
            {
                "booking_session_id": booking_session_id,
                "evaluator_type": evaluator_type,
                "evaluator_id": evaluator_id,
                "target_id": target_id,
                "status": "pending",
                "created_at": now_ts(),
            },
        )

    def find_evaluation(self, evaluation_id: Any) -> Optional[Dict[str, Any]]:
        try:
            evaluation_id = int(evaluation_id)
        except (TypeError, ValueError):
            return None
        row = self.db.query_one("SELECT * FROM evaluations WHERE id = ?", (evaluation_id,))
        if row is not None:
            row["detailed_scores"] = loads(row.get("detailed_scores"), {})
        return row

    def get_evaluation(self, evaluation_id: Any) -> Dict[str, Any]:
        evaluation = self.find_evaluation(evaluation_id)
        if evaluation is None:
            raise NotFoundError("评价信息不存在")
        return evaluation

    def find_for_session(self, booking_session_id: int, evaluator_type: str) -> Optional[Dict[str, Any]]:
        row = self.db.query_one(
            """
            SELECT * FROM evaluations
            WHERE booking_session_id = ? AND evaluator_type = ?
            ORDER BY id DESC LIMIT 1
            """,
            (booking_session_id, evaluator_type),
        )
        if row is not None:
            row["detailed_scores"] = loads(row.get("detailed_scores"), {})
        return row

    def update_evaluation(
        self,
        evaluation_id: int,
        overall_score: Optional[int] = None,
        detailed_scores: Optional[Dict[str, Any]] = None,
        comments: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """只更新传入的字段"""
        self.get_evaluation(evaluation_id)
        values: Dict[str, Any] = {}
        if overall_score is not None:
            if not 1 <= int(overall_score) <= 10:
                raise ValidationError("评分必须在 1-10 之间")
            values["overall_score"] = int(overall_score)
        if detailed_scores is not None:
            values["detailed_scores"] = dumps(detailed_scores)
        if comments is not None:
            values["comments"] = comments
        if status is not None:
            if status not in EVALUATION_STATUSES:
                raise ValidationError(f"无效的评价状态: {status}")
            values["status"] = status
        self.db.update("evaluations", evaluation_id, values)
        return self.get_evaluation(evaluation_id)

    # 评价会话 -------------------------------------------------------------------

    def create_session(self, user_id: int, evaluation_id: int, step: str = "start") -> int:
        ts = now_ts()
        return self.db.insert(
            "evaluation_sessions",
            {
                "user_id": user_id,
                "evaluation_id": evaluation_id,
                "current_step": step,
                "temp_data": dumps({}),
                "created_at": ts,
                "updated_at": ts,
            },
        )

    def _session(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row is not None:
            row["temp_data"] = loads(row.get("temp_data"), {})
        return row

    def get_session(self, user_id: int, evaluation_id: int) -> Optional[Dict[str, Any]]:
        return self._session(
            self.db.query_one(
                """
                SELECT * FROM evaluation_sessions
                WHERE user_id = ? AND evaluation_id = ?
                ORDER BY id DESC LIMIT 1
                """,
                (user_id, evaluation_id),
            )
        )

    def get_active_session(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self._session(
            self.db.query_one(
                "SELECT * FROM evaluation_sessions WHERE user_id = ? ORDER BY updated_at DESC, id DESC LIMIT 1",
                (user_id,),
            )
        )

    def update_session(self, session_id: int, step: str, temp_data: Dict[str, Any]) -> None:
        self.db.update(
            "evaluation_sessions",
            session_id,
            {"current_step": step, "temp_data": dumps(temp_data), "updated_at": now_ts()},
        )

    def delete_session(self, session_id: int) -> None:
        self.db.execute("DELETE FROM evaluation_sessions WHERE id = ?", (session_id,))

    # 同步与汇总 -----------------------------------------------------------------

    def sync_to_order(self, evaluation: Dict[str, Any]) -> Optional[int]:
        """把评价摘要写入订单的 user_evaluation / merchant_evaluation 字段"""
        if not evaluation.get("booking_session_id"):
            return None
        order = self.orders.get_by_session(evaluation["booking_session_id"])
        if order is None:
            return None
        scores = dict(evaluation.get("detailed_scores") or {})
        text_comment = evaluation.get("comments") or scores.pop("textComment", None)
        summary = {
            "overall_score": evaluation.get("overall_score"),
            "scores": scores,
            "textComment": text_comment,
            "created_at": now_ts(),
        }
        column = (
            "user_evaluation"
            if evaluation["evaluator_type"] == EvaluatorType.USER.value
            else "merchant_evaluation"
        )
        self.orders.update_order(order["id"], **{column: dumps(summary)})
        logger.info("评价 %s 已同步到订单 %s (%s)", evaluation["id"], order["id"], column)
        return order["id"]

    def refresh_ratings(self, evaluation: Dict[str, Any]) -> Dict[str, Any]:
        """重新计算被评价方的评分汇总"""
        evaluator_type = evaluation["evaluator_type"]
        target_id = evaluation["target_id"]
        rows = self.db.query(
            """
            SELECT overall_score, detailed_scores FROM evaluations
            WHERE evaluator_type = ? AND target_id = ? AND status IN ('completed', 'detail_completed', 'overall_completed')
            """,
            (evaluator_type, target_id),
        )
        overall = [float(row["overall_score"]) for row in rows if row["overall_score"] is not None]
        details: List[float] = []
        for row in rows:
            details.extend(_numeric_scores(loads(row["detailed_scores"], {})))

        summary = {
            "total_evaluations": len(rows),
            "avg_overall_score": round(sum(overall) / len(overall), 2) if overall else None,
            "avg_detail_score": round(sum(details) / len(details), 2) if details else None,
            "updated_at": now_ts(),
        }
        if evaluator_type == EvaluatorType.USER.value:
            table, key = "merchant_ratings", "merchant_id"
        else:
            table, key = "user_ratings", "user_id"
        self.db.execute(
            f"""
            INSERT INTO {table} ({key}, total_evaluations, avg_overall_score, avg_detail_score, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT({key}) DO UPDATE SET
                total_evaluations = excluded.total_evaluations,
                avg_overall_score = excluded.avg_overall_score,
                avg_detail_score = excluded.avg_detail_score,
                updated_at = excluded.updated_at
            """,
            (
                target_id,
                summary["total_evaluations"],
                summary["avg_overall_score"],
                summary["avg_detail_score"],
                summary["updated_at"],
            ),
        )
        return summary

    # 后台查询 -------------------------------------------------------------------

    def list_evaluations(self, limit: int = 100, evaluator_type: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = """
            SELECT e.*, o.id AS order_id, o.teacher_name, o.user_name, o.user_username
            FROM evaluations e
            LEFT JOIN orders o ON o.booking_session_id = e.booking_session_id
        """
        params: List[Any] = []
        if evaluator_type:
            sql += " WHERE e.evaluator_type = ?"
            params.append(evaluator_type)
        sql += " GROUP BY e.id ORDER BY e.created_at DESC, e.id DESC LIMIT ?"
        params.append(limit)
        rows = self.db.query(sql, params)
        for row in rows:
            row["detailed_scores"] = loads(row.get("detailed_scores"), {})
        return rows

    def get_evaluation_detail(self, evaluation_id: int) -> Dict[str, Any]:
        evaluation = self.get_evaluation(evaluation_id)
        session = self.orders.find_session(evaluation["booking_session_id"])
        evaluation["booking_session"] = session
        evaluation["order"] = (
            self.orders.get_by_session(evaluation["booking_session_id"]) if session else None
        )
        return evaluation

    def evaluation_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "total": self.db.scalar("SELECT COUNT(*) FROM evaluations"),
            "completed": self.db.scalar("SELECT COUNT(*) FROM evaluations WHERE status = 'completed'"),
            "pending": self.db.scalar("SELECT COUNT(*) FROM evaluations WHERE status = 'pending'"),
        }
        for kind in EvaluatorType:
            stats[f"{kind.value}Evaluations"] = self.db.scalar(
                "SELECT COUNT(*) FROM evaluations WHERE evaluator_type = ?", (kind.value,)
            )
            avg = self.db.scalar(
                "SELECT AVG(overall_score) FROM evaluations WHERE evaluator_type = ? AND overall_score IS NOT NULL",
                (kind.value,),
                default=None,
            )
            stats[f"{kind.value}AvgScore"] = round(avg, 2) if avg is not None else None
        return stats
