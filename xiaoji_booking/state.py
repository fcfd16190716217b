"""对话流程的内存状态：防重复点击、冷却时间、消息历史"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Hashable, List, Optional

from .models import UserEvaluationState

DEDUP_WINDOW = 3
BOOKING_COOLDOWN = 30 * 60
TRIGGER_COOLDOWN = 5 * 60
MAX_USER_HISTORY = 20


class TTLMap:
    """记录 key 最近一次触发的时间，超过 ttl 秒视为过期"""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, float] = {}

    def active(self, key: Hashable) -> bool:
        stamp = self._entries.get(key)
        return stamp is not None and self._clock() - stamp < self.ttl

    def hit(self, key: Hashable) -> bool:
        """key 仍在有效期内返回 True（不刷新时间）；否则记录当前时间并返回 False"""
        if self.active(key):
            return True
        self._entries[key] = self._clock()
        return False

    def touch(self, key: Hashable) -> None:
        self._entries[key] = self._clock()

    def clear(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def purge(self) -> int:
        now = self._clock()
        expired = [key for key, stamp in self._entries.items() if now - stamp >= self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class HistoryEntry:
    message_id: int
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class MessageHistory:
    """每个用户最近发送的消息，用于删旧发新"""

    def __init__(self, limit: int = MAX_USER_HISTORY):
        self.limit = limit
        self._history: Dict[int, Deque[HistoryEntry]] = {}

    def add(self, user_id: int, message_id: int, kind: str = "general", data: Optional[Dict[str, Any]] = None) -> None:
        entries = self._history.setdefault(user_id, deque(maxlen=self.limit))
        entries.append(HistoryEntry(message_id=message_id, kind=kind, data=data or {}))

    def last(self, user_id: int) -> Optional[HistoryEntry]:
        entries = self._history.get(user_id)
        return entries[-1] if entries else None

    def remove(self, user_id: int, message_id: int) -> None:
        entries = self._history.get(user_id)
        if not entries:
            return
        self._history[user_id] = deque(
            (entry for entry in entries if entry.message_id != message_id),
            maxlen=self.limit,
        )

    def take(self, user_id: int, *kinds: str) -> List[HistoryEntry]:
        """移除并返回指定类型的记录，返回上一步时用来清理当前步骤的消息"""
        entries = self._history.get(user_id)
        if not entries:
            return []
        taken = [entry for entry in entries if entry.kind in kinds]
        if taken:
            self._history[user_id] = deque(
                (entry for entry in entries if entry.kind not in kinds),
                maxlen=self.limit,
            )
        return taken

    def pop_all(self, user_id: int) -> List[HistoryEntry]:
        entries = self._history.pop(user_id, None)
        return list(entries) if entries else []

    def entries(self, user_id: int) -> List[HistoryEntry]:
        return list(self._history.get(user_id, ()))


class FlowState:
    """对话流程用到的全部内存映射"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.recent_actions = TTLMap(DEDUP_WINDOW, clock)
        self.booking_cooldowns = TTLMap(BOOKING_COOLDOWN, clock)
        self.trigger_cooldowns = TTLMap(TRIGGER_COOLDOWN, clock)
        self.history = MessageHistory()
        self.user_evaluations: Dict[int, UserEvaluationState] = {}
        self.broadcast_timers: Dict[int, asyncio.Task] = {}

    def purge(self) -> Dict[str, int]:
        return {
            "recent_actions": self.recent_actions.purge(),
            "booking_cooldowns": self.booking_cooldowns.purge(),
            "trigger_cooldowns": self.trigger_cooldowns.purge(),
        }
