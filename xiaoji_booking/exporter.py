"""全量数据导出：业务表 JSON/CSV、数据库文件备份与元数据，打包为 zip"""

from __future__ import annotations

import csv
import json
import logging
import re
import shutil
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import config as CFG

from .database import SCHEMA_VERSION, DatabaseManager, get_db_manager
from .errors import NotFoundError, ValidationError
from .models import ExportResult

logger = logging.getLogger(__name__)

EXPORT_FORMATS = {"json", "csv"}

TABLE_CATEGORIES: Dict[str, List[str]] = {
    "core_business": ["merchants", "orders", "booking_sessions", "evaluations", "evaluation_sessions"],
    "configuration": ["regions", "bind_codes", "message_templates", "trigger_words", "scheduled_tasks"],
    "statistics": ["merchant_ratings", "user_ratings"],
    "interactions": ["interactions"],
}

_EXPORT_NAME = re.compile(r"^export_[\w\-]+\.zip$")


def format_file_size(size: float) -> str:
    """字节数转成 B/KB/MB/GB，保留两位小数"""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{size:.2f} {units[index]}"


def _write_csv(rows: List[Dict[str, Any]], path: Path) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        if not rows:
            return
        writer = csv.DictWriter(handle, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        writer.writerows(rows)


class DataExporter:
    def __init__(self, db: Optional[DatabaseManager] = None, export_dir: Optional[str] = None):
        self.db = db or get_db_manager()
        self.export_dir = Path(export_dir or CFG.EXPORT_DIR)
        self.export_dir.mkdir(parents=True, exist_ok=True)

    def export_all_data(self, fmt: str = "json") -> ExportResult:
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"不支持的导出格式: {fmt}")
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        work_dir = self.export_dir / f"export_{timestamp}"
        work_dir.mkdir(parents=True)
        logger.info("开始数据导出 (%s)...", fmt)
        try:
            tables, records = self._export_tables(work_dir / "business_data", fmt)
            self._export_statistics(work_dir / "business_data")
            self._backup_database_files(work_dir / "database_backup")
            self._write_metadata(work_dir, fmt, tables, records)
            zip_path = self.export_dir / f"export_{timestamp}.zip"
            with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for path in sorted(work_dir.rglob("*")):
                    if path.is_file():
                        archive.write(path, path.relative_to(work_dir).as_posix())
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        size = zip_path.stat().st_size
        logger.info("数据导出完成: %s (%s)", zip_path, format_file_size(size))
        return ExportResult(
            filename=zip_path.name,
            path=str(zip_path),
            size=size,
            formatted_size=format_file_size(size),
            tables=tables,
            records=records,
        )

    def _export_tables(self, data_dir: Path, fmt: str) -> Tuple[int, int]:
        existing = set(self.db.list_tables())
        categorized = {table for tables in TABLE_CATEGORIES.values() for table in tables}
        layout = {category: [table for table in tables if table in existing] for category, tables in TABLE_CATEGORIES.items()}
        layout["other_tables"] = sorted(existing - categorized)

        table_count = record_count = 0
        for category, tables in layout.items():
            if not tables:
                continue
            category_dir = data_dir / category
            category_dir.mkdir(parents=True, exist_ok=True)
            for table in tables:
                rows = self.db.query(f"SELECT * FROM {table}")
                target = category_dir / f"{table}.{fmt}"
                if fmt == "json":
                    target.write_text(json.dumps(rows, ensure_ascii=False, indent=2), encoding="utf-8")
                else:
                    _write_csv(rows, target)
                table_count += 1
                record_count += len(rows)
                logger.debug("导出 %s/%s: %s 条", category, table, len(rows))
        return table_count, record_count

    def _export_statistics(self, data_dir: Path) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        stats = {
            "export_time": datetime.now().isoformat(),
            "database_info": {
                "total_regions": self.db.scalar("SELECT COUNT(*) FROM regions"),
                "total_merchants": self.db.scalar("SELECT COUNT(*) FROM merchants"),
                "active_merchants": self.db.scalar("SELECT COUNT(*) FROM merchants WHERE status = 'active'"),
                "total_bind_codes": self.db.scalar("SELECT COUNT(*) FROM bind_codes"),
                "used_bind_codes": self.db.scalar("SELECT COUNT(*) FROM bind_codes WHERE used = 1"),
                "total_orders": self.db.scalar("SELECT COUNT(*) FROM orders"),
                "total_evaluations": self.db.scalar("SELECT COUNT(*) FROM evaluations"),
                "total_templates": self.db.scalar("SELECT COUNT(*) FROM message_templates"),
            },
            "table_summary": {table: self.db.scalar(f"SELECT COUNT(*) FROM {table}") for table in self.db.list_tables()},
            "merchant_summary": self.db.query(
                """
                SELECT r.name AS region_name, COUNT(m.id) AS merchant_count,
                       SUM(CASE WHEN m.status = 'active' THEN 1 ELSE 0 END) AS active_count
                FROM regions r LEFT JOIN merchants m ON m.region_id = r.id
                GROUP BY r.id, r.name
                ORDER BY merchant_count DESC
                """
            ),
        }
        (data_dir / "database_statistics.json").write_text(
            json.dumps(stats, ensure_ascii=False, indent=2), encoding="utf-8"
        )

    def _backup_database_files(self, backup_dir: Path) -> None:
        backup_dir.mkdir(parents=True, exist_ok=True)
        db_path = Path(self.db.db_path)
        for suffix in ("", "-wal", "-shm"):
            source = db_path.with_name(db_path.name + suffix)
            if source.exists():
                shutil.copy2(source, backup_dir / source.name)
                logger.debug("备份数据库文件: %s", source.name)

    def _write_metadata(self, work_dir: Path, fmt: str, tables: int, records: int) -> None:
        metadata = {
            "export_info": {
                "timestamp": datetime.now().isoformat(),
                "system": "Telegram Bot - 小鸡预约系统",
                "export_type": "complete_backup",
                "format": fmt,
                "schema_version": SCHEMA_VERSION,
                "main_database": Path(self.db.db_path).name,
                "tables": tables,
                "records": records,
            },
            "file_structure": {
                "business_data": {
                    "core_business": "核心业务数据（商家、订单、预约、评价等）",
                    "configuration": "配置数据（地区、绑定码、消息模板、触发词、定时任务）",
                    "statistics": "统计数据（评分汇总）",
                    "interactions": "用户交互日志",
                    "other_tables": "其他未分类表数据",
                },
                "database_backup": "原始数据库文件备份",
                "database_statistics": "数据库统计信息和表记录数汇总",
            },
            "restoration_guide": [
                "1. 停止 Bot 与管理后台服务",
                "2. 备份当前 data 目录",
                "3. 将 database_backup 中的文件复制到 data 目录",
                "4. 重启服务并验证数据完整性",
            ],
        }
        (work_dir / "export_metadata.json").write_text(
            json.dumps(metadata, ensure_ascii=False, indent=2), encoding="utf-8"
        )

    def export_history(self) -> List[Dict[str, Any]]:
        files = sorted(
            self.export_dir.glob("export_*.zip"),
            key=lambda path: path.stat().st_mtime,
            reverse=True,
        )
        return [
            {
                "filename": path.name,
                "size": path.stat().st_size,
                "formattedSize": format_file_size(path.stat().st_size),
                "created": datetime.fromtimestamp(path.stat().st_mtime).isoformat(),
            }
            for path in files
        ]

    def cleanup_exports(self, keep: int = 5) -> int:
        """只保留最近 keep 个导出文件，返回删除数量"""
        stale = self.export_history()[max(0, keep):]
        for item in stale:
            (self.export_dir / item["filename"]).unlink(missing_ok=True)
            logger.info("删除旧导出文件: %s", item["filename"])
        return len(stale)

    def resolve_export(self, filename: str) -> Path:
        if not _EXPORT_NAME.match(filename or "") or "/" in filename or "\\" in filename:
            raise ValidationError("无效的文件名")
        path = (self.export_dir / filename).resolve()
        if path.parent != self.export_dir.resolve():
            raise ValidationError("无效的文件名")
        if not path.is_file():
            raise NotFoundError("导出文件不存在")
        return path
