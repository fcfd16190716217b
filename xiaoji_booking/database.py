"""
数据库模块
提供 SQLite 数据库持久化支持
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "3"

_TABLES: Dict[str, str] = {
    "db_meta": """
        CREATE TABLE IF NOT EXISTS db_meta (
            key TEXT PRIMARY KEY,
            value TEXT,
            created_at INTEGER,
            updated_at INTEGER
        )
    """,
    "bind_codes": """
        CREATE TABLE IF NOT EXISTS bind_codes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT UNIQUE NOT NULL,
            description TEXT,
            used INTEGER DEFAULT 0,
            used_by INTEGER,
            created_at INTEGER,
            used_at INTEGER
        )
    """,
    "regions": """
        CREATE TABLE IF NOT EXISTS regions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            sort_order INTEGER DEFAULT 0,
            active INTEGER DEFAULT 1
        )
    """,
    "merchants": """
        CREATE TABLE IF NOT EXISTS merchants (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER UNIQUE,
            username TEXT,
            teacher_name TEXT,
            region_id INTEGER,
            contact TEXT,
            bind_code TEXT,
            bind_step INTEGER DEFAULT 0,
            bind_data TEXT,
            status TEXT DEFAULT 'active',
            created_at INTEGER
        )
    """,
    "message_templates": """
        CREATE TABLE IF NOT EXISTS message_templates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            content TEXT NOT NULL,
            image_url TEXT,
            buttons_config TEXT,
            created_at INTEGER
        )
    """,
    "trigger_words": """
        CREATE TABLE IF NOT EXISTS trigger_words (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            word TEXT NOT NULL,
            template_id INTEGER,
            match_type TEXT DEFAULT 'exact',
            chat_id INTEGER,
            active INTEGER DEFAULT 1,
            trigger_count INTEGER DEFAULT 0,
            last_triggered INTEGER,
            created_at INTEGER
        )
    """,
    "scheduled_tasks": """
        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            template_id INTEGER,
            chat_id INTEGER,
            schedule_type TEXT,
            schedule_time TEXT,
            sequence_order INTEGER DEFAULT 0,
            sequence_delay INTEGER DEFAULT 0,
            active INTEGER DEFAULT 1,
            next_run INTEGER,
            last_run INTEGER,
            created_at INTEGER
        )
    """,
    "interactions": """
        CREATE TABLE IF NOT EXISTS interactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            username TEXT,
            first_name TEXT,
            last_name TEXT,
            button_id INTEGER,
            template_id INTEGER,
            action_type TEXT DEFAULT 'click',
            chat_id INTEGER,
            timestamp INTEGER
        )
    """,
    "booking_sessions": """
        CREATE TABLE IF NOT EXISTS booking_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            merchant_id INTEGER NOT NULL,
            course_type TEXT,
            status TEXT DEFAULT 'notified',
            user_course_status TEXT DEFAULT 'pending',
            merchant_course_status TEXT DEFAULT 'pending',
            created_at INTEGER,
            updated_at INTEGER
        )
    """,
    "evaluations": """
        CREATE TABLE IF NOT EXISTS evaluations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_session_id INTEGER,
            evaluator_type TEXT,
            evaluator_id INTEGER,
            target_id INTEGER,
            overall_score INTEGER,
            detailed_scores TEXT,
            comments TEXT,
            status TEXT DEFAULT 'pending',
            created_at INTEGER
        )
    """,
    "evaluation_sessions": """
        CREATE TABLE IF NOT EXISTS evaluation_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            evaluation_id INTEGER,
            current_step TEXT,
            temp_data TEXT,
            created_at INTEGER,
            updated_at INTEGER
        )
    """,
    "orders": """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_session_id INTEGER,
            user_id INTEGER NOT NULL,
            user_name TEXT,
            user_username TEXT,
            merchant_id INTEGER NOT NULL,
            teacher_name TEXT,
            teacher_contact TEXT,
            course_type TEXT,
            course_content TEXT,
            price_range TEXT,
            booking_time INTEGER,
            status TEXT DEFAULT 'attempting',
            user_evaluation TEXT,
            merchant_evaluation TEXT,
            report_content TEXT,
            created_at INTEGER,
            updated_at INTEGER
        )
    """,
    "merchant_ratings": """
        CREATE TABLE IF NOT EXISTS merchant_ratings (
            merchant_id INTEGER PRIMARY KEY,
            total_evaluations INTEGER DEFAULT 0,
            avg_overall_score REAL,
            avg_detail_score REAL,
            updated_at INTEGER
        )
    """,
    "user_ratings": """
        CREATE TABLE IF NOT EXISTS user_ratings (
            user_id INTEGER PRIMARY KEY,
            total_evaluations INTEGER DEFAULT 0,
            avg_overall_score REAL,
            avg_detail_score REAL,
            updated_at INTEGER
        )
    """,
}

# 老库缺失的列：表名 -> [(列名, 类型定义)]
_COLUMN_MIGRATIONS: Dict[str, List[tuple]] = {
    "merchants": [
        ("advantages", "TEXT"),
        ("disadvantages", "TEXT"),
        ("price1", "INTEGER"),
        ("price2", "INTEGER"),
        ("skill_teaching", "TEXT"),
        ("skill_communication", "TEXT"),
        ("skill_patience", "TEXT"),
        ("skill_preparation", "TEXT"),
        ("channel_link", "TEXT"),
        ("channel_clicks", "INTEGER DEFAULT 0"),
    ],
    "orders": [
        ("merchant_user_id", "INTEGER"),
    ],
}

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_orders_merchant ON orders(merchant_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_evaluations_session ON evaluations(booking_session_id)",
    "CREATE INDEX IF NOT EXISTS idx_interactions_ts ON interactions(timestamp)",
]


def now_ts() -> int:
    return int(time.time())


def dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def loads(value: Any, default: Any = None) -> Any:
    if value in (None, ""):
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("JSON 字段解析失败: %s", value[:100])
        return default


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, db_path: str = "data/xiaoji.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """打开连接，正常退出时提交，异常时回滚"""
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_database(self) -> None:
        """初始化数据库表并补齐缺失的列"""
        with self.connect() as conn:
            cursor = conn.cursor()
            for ddl in _TABLES.values():
                cursor.execute(ddl)

            for table, columns in _COLUMN_MIGRATIONS.items():
                cursor.execute(f"PRAGMA table_info({table})")
                existing = {row[1] for row in cursor.fetchall()}
                for name, definition in columns:
                    if name not in existing:
                        cursor.execute(f"ALTER TABLE {table} ADD COLUMN {name} {definition}")
                        logger.info("数据库迁移: %s 新增列 %s", table, name)

            for ddl in _INDEXES:
                cursor.execute(ddl)

            ts = now_ts()
            cursor.execute(
                """
                INSERT INTO db_meta (key, value, created_at, updated_at) VALUES ('schema_version', ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (SCHEMA_VERSION, ts, ts),
            )

    # 基础查询 -------------------------------------------------------------------

    @staticmethod
    def _rows(cursor: sqlite3.Cursor, rows: Sequence[Sequence[Any]]) -> List[Dict[str, Any]]:
        columns = [description[0] for description in cursor.description]
        return [dict(zip(columns, row)) for row in rows]

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            cursor = conn.execute(sql, tuple(params))
            return self._rows(cursor, cursor.fetchall())

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            cursor = conn.execute(sql, tuple(params))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._rows(cursor, [row])[0]

    def scalar(self, sql: str, params: Sequence[Any] = (), default: Any = 0) -> Any:
        with self.connect() as conn:
            row = conn.execute(sql, tuple(params)).fetchone()
        if row is None or row[0] is None:
            return default
        return row[0]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """执行写语句，INSERT 返回新行 id，其他返回影响行数"""
        with self.connect() as conn:
            cursor = conn.execute(sql, tuple(params))
            if sql.lstrip().upper().startswith("INSERT"):
                return int(cursor.lastrowid)
            return cursor.rowcount

    def insert(self, table: str, values: Dict[str, Any]) -> int:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        return self.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            list(values.values()),
        )

    def update(self, table: str, row_id: int, values: Dict[str, Any], key: str = "id") -> int:
        if not values:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in values)
        return self.execute(
            f"UPDATE {table} SET {assignments} WHERE {key} = ?",
            [*values.values(), row_id],
        )

    def list_tables(self) -> List[str]:
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row["name"] for row in rows]

    def table_columns(self, table: str) -> List[str]:
        with self.connect() as conn:
            return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]

    # 元数据 ---------------------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        row = self.query_one("SELECT value FROM db_meta WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        ts = now_ts()
        self.execute(
            """
            INSERT INTO db_meta (key, value, created_at, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, ts, ts),
        )


# 全局数据库管理器实例
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """获取数据库管理器实例"""
    global _db_manager
    if _db_manager is None:
        import config as CFG  # pylint: disable=import-outside-toplevel

        _db_manager = DatabaseManager(CFG.DB_PATH)
    return _db_manager


def reset_db_manager(db: Optional[DatabaseManager] = None) -> None:
    """替换全局实例，测试时指向临时数据库"""
    global _db_manager
    _db_manager = db
