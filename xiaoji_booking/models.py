from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderStatus(str, Enum):
    """订单状态"""
    ATTEMPTING = "attempting"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ORDER_STATUS_LABELS: Dict[str, str] = {
    OrderStatus.ATTEMPTING.value: "尝试预约",
    OrderStatus.PENDING.value: "待确认",
    OrderStatus.CONFIRMED.value: "已确认",
    OrderStatus.COMPLETED.value: "已完成",
    OrderStatus.FAILED.value: "已失败",
    OrderStatus.CANCELLED.value: "已取消",
}


class MerchantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class EvaluatorType(str, Enum):
    USER = "user"
    MERCHANT = "merchant"


class CourseType(str, Enum):
    """课程类型"""
    P = "p"
    PP = "pp"
    OTHER = "other"

    @property
    def label(self) -> str:
        return {"p": "p", "pp": "pp", "other": "其他时长"}[self.value]

    @classmethod
    def parse(cls, value: str) -> "CourseType":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"未知课程类型: {value}") from None


@dataclass
class Button:
    """内联键盘按钮，callback_data 与 url 二选一"""
    text: str
    callback_data: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"text": self.text}
        if self.url:
            data["url"] = self.url
        else:
            data["callback_data"] = self.callback_data or ""
        return data


Keyboard = List[List[Button]]


@dataclass
class SentMessage:
    chat_id: int
    message_id: int


@dataclass
class TelegramUser:
    """Telegram 用户信息"""
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def full_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "未设置名称"

    @property
    def mention(self) -> str:
        return f"@{self.username}" if self.username else "未设置用户名"


@dataclass
class CallbackContext:
    """一次按钮回调"""
    callback_id: str
    user: TelegramUser
    chat_id: int
    message_id: Optional[int]
    data: str


@dataclass(frozen=True)
class EvaluationItem:
    key: str
    name: str


USER_HARDWARE_ITEMS: List[EvaluationItem] = [
    EvaluationItem("professionalism", "专业度"),
    EvaluationItem("punctuality", "守时"),
    EvaluationItem("environment", "环境"),
    EvaluationItem("appearance", "形象"),
    EvaluationItem("equipment", "设施"),
    EvaluationItem("value", "性价比"),
]

USER_SOFTWARE_ITEMS: List[EvaluationItem] = [
    EvaluationItem("attitude", "态度"),
    EvaluationItem("communication", "沟通"),
    EvaluationItem("patience", "耐心"),
    EvaluationItem("skill", "技术"),
    EvaluationItem("atmosphere", "氛围"),
    EvaluationItem("initiative", "主动"),
]

USER_EVALUATION_KEYS: List[str] = [item.key for item in USER_HARDWARE_ITEMS + USER_SOFTWARE_ITEMS]

# 商家详细评价：前两项 1-10 分，最后一项为时长选项
MERCHANT_DETAIL_STEPS: List[str] = ["punctuality", "courtesy", "duration"]

MERCHANT_DETAIL_PROMPTS: Dict[str, str] = {
    "punctuality": "守时程度（输入数字1-10评分）：",
    "courtesy": "礼貌程度（输入数字1-10评分）：",
    "duration": "实际课程时长：",
}

DURATION_OPTIONS: List[EvaluationItem] = [
    EvaluationItem("30min", "30分钟内"),
    EvaluationItem("1hour", "1小时"),
    EvaluationItem("90min", "1.5小时"),
    EvaluationItem("2hour", "2小时"),
    EvaluationItem("3hour", "3小时"),
    EvaluationItem("3hourplus", "3小时以上"),
    EvaluationItem("none", "未上课"),
]


@dataclass
class UserEvaluationState:
    """用户 12 项评价的内存状态"""
    evaluation_id: int
    session_id: Optional[int] = None
    scores: Dict[str, int] = field(default_factory=dict)
    hardware_message_id: Optional[int] = None
    software_message_id: Optional[int] = None
    text_comment: Optional[str] = None
    awaiting_text: bool = False

    @property
    def completed_count(self) -> int:
        return sum(1 for key in USER_EVALUATION_KEYS if key in self.scores)

    @property
    def is_complete(self) -> bool:
        return self.completed_count == len(USER_EVALUATION_KEYS)


@dataclass
class ExportResult:
    filename: str
    path: str
    size: int
    formatted_size: str
    tables: int
    records: int
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "path": self.path,
            "size": self.size,
            "formattedSize": self.formatted_size,
            "tables": self.tables,
            "records": self.records,
            **self.extra,
        }
