from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from xiaoji_booking.database import DatabaseManager, reset_db_manager
from xiaoji_booking.errors import DeliveryError
from xiaoji_booking.flow import BookingFlow, FlowSettings
from xiaoji_booking.merchants import MerchantService
from xiaoji_booking.models import CallbackContext, SentMessage, TelegramUser
from xiaoji_booking.state import FlowState


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMessenger:
    """记录所有发送、编辑、删除与回调应答"""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.edited: List[Dict[str, Any]] = []
        self.deleted: List[tuple] = []
        self.pinned: List[tuple] = []
        self.answers: List[Dict[str, Any]] = []
        self.failures: Dict[Any, str] = {}
        self._next_id = 100

    async def send(self, chat_id, text, keyboard=None, markdown=False, photo=None) -> SentMessage:
        if chat_id in self.failures:
            raise DeliveryError(self.failures[chat_id])
        self._next_id += 1
        self.sent.append(
            {
                "chat_id": chat_id,
                "text": text,
                "keyboard": keyboard,
                "markdown": markdown,
                "photo": photo,
                "message_id": self._next_id,
            }
        )
        return SentMessage(chat_id=chat_id, message_id=self._next_id)

    async def edit(self, chat_id, message_id, text, keyboard=None) -> None:
        self.edited.append({"chat_id": chat_id, "message_id": message_id, "text": text, "keyboard": keyboard})

    async def delete(self, chat_id, message_id) -> None:
        self.deleted.append((chat_id, message_id))

    async def pin(self, chat_id, message_id) -> None:
        self.pinned.append((chat_id, message_id))

    async def answer(self, callback_id, text=None, alert=False) -> None:
        self.answers.append({"callback_id": callback_id, "text": text, "alert": alert})

    def texts(self, chat_id: Optional[Any] = None) -> List[str]:
        return [item["text"] for item in self.sent if chat_id is None or item["chat_id"] == chat_id]

    def last(self, chat_id: Any) -> Dict[str, Any]:
        return [item for item in self.sent if item["chat_id"] == chat_id][-1]

    def callbacks(self, chat_id: Any) -> List[str]:
        """最后一条消息键盘上的全部 callback_data"""
        keyboard = self.last(chat_id)["keyboard"] or []
        return [button.callback_data for row in keyboard for button in row if button.callback_data]


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(str(tmp_path / "xiaoji_test.db"))
    reset_db_manager(manager)
    yield manager
    reset_db_manager(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def settings():
    return FlowSettings(
        booking_check_delay=0,
        completion_check_delay=0,
        broadcast_timeout=3600,
        bind_followup_delay=0,
        merchant_thanks_delay=0,
        group_chat_id="-100200300",
    )


@pytest.fixture
async def flow(db, messenger, settings, clock):
    booking_flow = BookingFlow(messenger, db=db, settings=settings, state=FlowState(clock=clock))
    yield booking_flow
    await booking_flow.shutdown()


@pytest.fixture
def customer():
    return TelegramUser(id=1001, username="brave_chick", first_name="小", last_name="鸡")


@pytest.fixture
def teacher_user():
    return TelegramUser(id=2002, username="teacher_lin", first_name="Lin")


@pytest.fixture
def merchant(db, teacher_user):
    """已绑定 Telegram 账号的商家"""
    service = MerchantService(db)
    created = service.create_merchant_by_admin(
        "林老师", "teacher_lin", contact="@teacher_lin", price1=500, price2=900
    )
    return service.bind_merchant(created["bindCode"], teacher_user)


@pytest.fixture
def unbound_merchant(db):
    service = MerchantService(db)
    created = service.create_merchant_by_admin("周老师", "teacher_zhou", contact="@teacher_zhou", price1=600)
    return service.get_merchant(created["merchantId"])


def make_callback(user: TelegramUser, data: str, chat_id: Optional[int] = None, message_id: Optional[int] = None):
    return CallbackContext(
        callback_id=f"cb-{data}",
        user=user,
        chat_id=chat_id if chat_id is not None else user.id,
        message_id=message_id,
        data=data,
    )


@pytest.fixture
def click(flow, clock):
    """模拟一次按钮点击，点击之间间隔超过防重复窗口"""

    async def _click(user: TelegramUser, data: str, chat_id: Optional[int] = None, message_id: Optional[int] = None):
        clock.advance(5)
        await flow.handle_callback(make_callback(user, data, chat_id, message_id))
        await flow.drain()

    return _click
