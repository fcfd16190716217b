from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from tzlocal import get_localzone

import config as CFG

from .database import DatabaseManager, get_db_manager
from .errors import BookingError, DeliveryError, ValidationError
from .models import TelegramUser
from .templates import TemplateService, send_template

logger = logging.getLogger(__name__)

# weekly 规则里 0 表示周日
_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
_INTERVAL_UNITS = {"秒": "seconds", "s": "seconds", "分钟": "minutes", "m": "minutes", "小时": "hours", "h": "hours"}
_INTERVAL_PATTERNS = [
    re.compile(r"^每(\d+)(秒|分钟|小时)$"),
    re.compile(r"^(\d+)\s*([smh])$", re.IGNORECASE),
]
_SYSTEM_USER = TelegramUser(id=0, username="system", first_name="System", last_name="Bot")


def _parse_clock(value: str) -> Tuple[int, int]:
    match = re.match(r"^(\d{1,2}):(\d{2})$", value)
    if not match:
        raise ValueError(value)
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(value)
    return hour, minute


def parse_schedule(schedule_type: str, schedule_time: str, timezone: Any = None) -> BaseTrigger:
    """把任务的 schedule_type / schedule_time 转成 APScheduler 触发器"""
    tz = timezone or get_localzone()
    value = (schedule_time or "").strip()
    try:
        if schedule_type == "daily":
            hour, minute = _parse_clock(value)
            return CronTrigger(hour=hour, minute=minute, timezone=tz)
        if schedule_type == "weekly":
            day, _, clock = value.partition(":")
            hour, minute = _parse_clock(clock)
            if not 0 <= int(day) <= 6:
                raise ValueError(value)
            return CronTrigger(day_of_week=_WEEKDAYS[int(day)], hour=hour, minute=minute, timezone=tz)
        if schedule_type == "cron":
            if len(value.split()) != 5:
                raise ValueError(value)
            return CronTrigger.from_crontab(value, timezone=tz)
        if schedule_type == "interval":
            for pattern in _INTERVAL_PATTERNS:
                match = pattern.match(value)
                if match and int(match.group(1)) > 0:
                    unit = _INTERVAL_UNITS[match.group(2).lower()]
                    return IntervalTrigger(timezone=tz, **{unit: int(match.group(1))})
            raise ValueError(value)
        if schedule_type == "once":
            return DateTrigger(run_date=datetime.fromisoformat(value), timezone=tz)
    except (ValueError, IndexError):
        pass
    raise ValidationError(f"无法解析的调度规则: {schedule_type} {schedule_time}")


class TemplateScheduler:
    """按 scheduled_tasks 表定时向聊天发送消息模板。

    schedule_type 与 schedule_time 相同的任务合并为一个作业，按 sequence_order
    依次发送，每个任务发送前等待自己的 sequence_delay 秒。
    """

    def __init__(self, sender: Any, db: Optional[DatabaseManager] = None, timezone: Any = None):
        self.sender = sender
        self.db = db or get_db_manager()
        self.templates = TemplateService(self.db)
        if isinstance(timezone, str):
            timezone = ZoneInfo(timezone)
        self.timezone = timezone or get_localzone()
        self.scheduler = AsyncIOScheduler(timezone=str(self.timezone))
        self.debug = CFG.SCHEDULE_DEBUG
        self._groups: Dict[str, List[int]] = {}
        self._debug_runs: Set[asyncio.Future] = set()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> int:
        if self.debug:
            # 调试模式：立即执行全部启用的任务一次
            tasks = self.templates.list_tasks(active_only=True)
            for task in tasks:
                run = asyncio.ensure_future(self.run_task(task["id"]))
                self._debug_runs.add(run)
                run.add_done_callback(self._debug_runs.discard)
            count = len(tasks)
            logger.info("SCHEDULE_DEBUG 已开启，立即执行 %s 个定时任务", count)
        else:
            count = self._load_jobs()
            logger.info("模板定时任务调度器已启动，载入 %s 个作业", count)
        # 周期作业（如状态清理）在两种模式下都需要调度器运行
        if not self.scheduler.running:
            self.scheduler.start()
        return count

    def reload(self) -> int:
        for job_id in list(self._groups):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
        self._groups.clear()
        return self._load_jobs()

    def add_interval_job(self, func: Callable[[], Awaitable[Any]], seconds: int, job_id: str) -> None:
        """注册与模板无关的周期作业（例如清理过期的内存状态）。

        只接受协程函数，作业在事件循环线程内执行。
        """
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"周期作业 {job_id} 必须是协程函数")
        self.scheduler.add_job(
            func,
            IntervalTrigger(seconds=seconds, timezone=self.timezone),
            id=job_id,
            replace_existing=True,
        )

    def _load_jobs(self) -> int:
        now = datetime.now(self.timezone)
        groups: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        for task in self.templates.list_tasks(active_only=True):
            groups.setdefault((task["schedule_type"], task["schedule_time"]), []).append(task)

        for (schedule_type, schedule_time), tasks in groups.items():
            try:
                trigger = parse_schedule(schedule_type, schedule_time, self.timezone)
            except ValidationError as exc:
                logger.error("定时任务 %s 无法调度: %s", [task["id"] for task in tasks], exc)
                continue
            if trigger.get_next_fire_time(None, now) is None or (
                isinstance(trigger, DateTrigger) and trigger.run_date < now
            ):
                logger.info("定时任务 %s 的执行时间已过，跳过", [task["id"] for task in tasks])
                continue
            job_id = f"template_{schedule_type}_{schedule_time}"
            task_ids = [task["id"] for task in sorted(tasks, key=lambda item: (item["sequence_order"] or 0, item["id"]))]
            self._groups[job_id] = task_ids
            job = self.scheduler.add_job(
                self._run_group,
                trigger,
                args=[job_id],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=60,
            )
            next_run = self._next_run_ts(job)
            for task_id in task_ids:
                self.templates.update_task(task_id, next_run=next_run)
        return len(self._groups)

    def _next_run_ts(self, job: Any) -> Optional[int]:
        next_time = getattr(job, "next_run_time", None)
        if next_time is None and job is not None:
            next_time = job.trigger.get_next_fire_time(None, datetime.now(self.timezone))
        return int(next_time.timestamp()) if next_time else None

    async def _run_group(self, job_id: str) -> None:
        for task_id in self._groups.get(job_id, []):
            await self.run_task(task_id, job_id=job_id, use_delay=True)

    async def run_task(self, task_id: int, job_id: Optional[str] = None, use_delay: bool = False) -> bool:
        """发送任务对应的模板，记录执行时间与交互日志"""
        try:
            task = self.templates.get_task(task_id)
            if use_delay and task.get("sequence_delay"):
                await asyncio.sleep(task["sequence_delay"])
            template = self.templates.get_template(task["template_id"])
            await send_template(self.sender, task["chat_id"], template)
        except (BookingError, DeliveryError) as exc:
            logger.error("定时任务 %s 执行失败: %s", task_id, exc)
            return False
        except Exception:
            logger.exception("定时任务 %s 执行异常", task_id)
            return False

        job = self.scheduler.get_job(job_id) if job_id else None
        self.templates.mark_run(task_id, self._next_run_ts(job) if job else task.get("next_run"))
        self.templates.log_interaction(_SYSTEM_USER, "scheduled_send", task["chat_id"], template_id=template["id"])
        logger.info("定时任务 \"%s\" 执行完成", task["name"])
        return True

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("模板定时任务调度器已停止")
