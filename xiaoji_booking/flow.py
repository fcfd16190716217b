"""
小鸡管家对话流程
从 /start 进入商家页面、出击预约、约课确认、课程完成到双向评价与群内播报。

流程本身只依赖 Messenger 协议，bot 进程用 nonebot 的 Telegram Bot 实现，
管理后台与测试分别用 httpx 客户端和内存假对象实现。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple, Union

import config as CFG

from .database import DatabaseManager, get_db_manager
from .errors import BookingError, DeliveryError, PermissionDenied
from .evaluations import EvaluationService
from .merchants import MerchantService, format_contact_link, format_merchant_card
from .models import (
    DURATION_OPTIONS,
    MERCHANT_DETAIL_PROMPTS,
    MERCHANT_DETAIL_STEPS,
    USER_EVALUATION_KEYS,
    USER_HARDWARE_ITEMS,
    USER_SOFTWARE_ITEMS,
    Button,
    CallbackContext,
    CourseType,
    EvaluationItem,
    EvaluatorType,
    Keyboard,
    MerchantStatus,
    OrderStatus,
    SentMessage,
    TelegramUser,
    UserEvaluationState,
)
from .orders import OrderService, price_for
from .state import FlowState
from .templates import TemplateService, send_template

logger = logging.getLogger(__name__)

ChatId = Union[int, str]

WELCOME_TEXT = "各位小鸡勇士，欢迎来到🐥小鸡管家\n关注机器人并置顶！\n避免后续要出击时找不到哦～"
OFFLINE_TEXT = "😔 抱歉，目前老师已下线，请看看其他老师吧～\n\n您可以使用 /start 命令重新查看可用的老师列表。"
HELP_TEXT = "📖 使用说明：\n\n/start - 开始使用\n/bind <绑定码> - 商家绑定账户\n/help - 查看帮助"
BIND_USAGE_TEXT = "请输入绑定码，例如：/bind ABC123"
BIND_SUCCESS_TEXT = "🎉 欢迎加入小鸡榜单！\n✅ 您已绑定成功！\n⏳ 接下来您只需要等待咨询即可。"
BIND_FOLLOWUP_TEXT = "📌 请置顶🐥小鸡管家机器人\n⚠️ 避免错过小鸡的客人通知哦～\n❓ 如有问题请从群内联系客服 {support}"

ATTACK_NOTICE = (
    "✅本榜单老师均已通过视频认证，请小鸡们放心预约。\n"
    "————————————————————————————\n"
    "🔔提示：\n"
    "1.定金大多数不会超过100哦～ \n"
    "2.如果老师以前不需要定金，突然需要定金了，请跟管理员核实。"
)
CONTACT_TEXT = "🐤小鸡出征！\n已将出击信息发送给{link}老师。\n请点击 *联系方式主动私聊老师* 进行预约。"
MERCHANT_BOOKING_NOTICE = (
    "老师您好，\n"
    "用户名称 {full_name}（{mention}）即将与您进行联系。他想跟您{action}{course}课程\n"
    "请及时关注私聊信息。\n"
    "————————————————————————\n"
    "🐤小鸡出征！请尽力服务好我们的勇士～\n"
    "如遇任何问题，请群内联系小鸡管理员。"
)
BOOKING_CHECK_TEXT = "⚠️ 预约后再点击本条信息 ⚠️\n\n跟老师约课成功了吗？\n\n⚠️ 预约后再点击本条信息 ⚠️\n\n跟老师约课成功了吗？"
BOOKING_SUCCESS_TEXT = "✅ 约课成功！\n\n👩🏻‍🏫 上完课后返回此处\n\n✍🏻 完成老师课程评价\n\n😭 这将对老师有很大帮助！"
COOLDOWN_TEXT = "⏳ 您刚刚已经预约过该老师，请稍后再试"
REBOOK_QUESTION = "是否重新预约？"
REBOOK_NO_TEXT = "欢迎下次预约课程📅 🐤小鸡与你同在。"
REBOOK_PROGRESS_TEXT = "正在为您重新安排预约..."
COURSE_CONFIRMED_TEXT = "✅ 您已确认课程完成，即将进入评价环节"
ALREADY_EVALUATED_TEXT = "✅ 您已完成对该订单的评价。"
BACK_LABEL = "⬅️ 返回"
EVALUATION_EXPIRED_TEXT = "评价会话已失效，请重新开始评价。"

USER_FORM_HEADER = (
    "📋 请根据您的体验进行老师综合评价：\n"
    "🫶 这会对老师的数据有帮助\n\n"
    "{section}：\n\n"
    "💡 点击下方按钮评分（1-10分）："
)
USER_TEXT_STEP = (
    "✅ 您的12项评价已提交成功！\n\n"
    "额外点评（额外输入文字点评，任何都行）：\n\n"
    "请输入您的额外点评，或直接点击按钮完成。"
)
SCORE_HINT = "请点击右侧数字按钮进行评分"
INCOMPLETE_ALERT = "请完成所有12项评价后再提交！"
TEXT_MISSING_ALERT = "请先输入您的文字评价内容，然后再点击提交"

MERCHANT_SCORE_PROMPT = "出击总体素质："
MERCHANT_DETAIL_QUESTION = "是否进行详细评价？"
MERCHANT_DONE_TEXT = "🎉 评价提交成功！\n\n感谢老师您的评价～\n\n欢迎下次为小鸡服务！"
MERCHANT_COMMENT_PROMPT = "额外点评（额外输入文字点评，任何都行）：\n\n请输入您的额外点评，或直接点击提交按钮完成评价。"
MERCHANT_DETAIL_DONE_TEXT = (
    "🎉 详细评价提交成功！\n\n"
    "🙏 感谢老师您耐心评价，这将会纳入您的评价数据\n"
    "📊 未来小鸡会总结您的全面总结上课报告数据！"
)
MERCHANT_FAREWELL_TEXT = "欢迎下次为小鸡服务！"

BROADCAST_CHOICE_TEXT = (
    "🎉 恭喜您完成一次评价～ \n"
    "经管理员审核后为您添加积分，等级会自动更新！\n"
    "————————————————\n"
    "是否在大群播报本次出击记录？"
)
BROADCAST_TEXT = "🎉 恭喜小鸡的勇士：{who}出击了 #{teacher} 老师！\n🐤 小鸡出征！咯咯哒咯咯哒～"
BROADCAST_NO_GROUP = "❌ 播报失败：群组配置未设置，请联系管理员。"
BROADCAST_DONE = {
    False: "✅ 实名播报成功！您的出击记录已在群内公布。",
    True: "✅ 匿名播报成功！您的出击记录已在群内公布。",
}

_BROADCAST_ERRORS = [
    ("chat not found", "❌ 播报失败：群组未找到，请检查群组ID配置。"),
    ("not enough rights", "❌ 播报失败：机器人没有发送消息权限，请联系群组管理员。"),
    ("bot was blocked", "❌ 播报失败：机器人被群组封禁，请联系群组管理员。"),
]

# 评价表单的点击：不删除消息、不做防重复
_FORM_PREFIXES = ("eval_score_", "eval_info_", "eval_submit_")


class Messenger(Protocol):
    """流程对外发送消息所需的最小接口，失败时抛出 DeliveryError"""

    async def send(
        self,
        chat_id: ChatId,
        text: str,
        keyboard: Optional[Keyboard] = None,
        markdown: bool = False,
        photo: Optional[str] = None,
    ) -> SentMessage:
        ...

    async def edit(self, chat_id: ChatId, message_id: int, text: str, keyboard: Optional[Keyboard] = None) -> None:
        ...

    async def delete(self, chat_id: ChatId, message_id: int) -> None:
        ...

    async def pin(self, chat_id: ChatId, message_id: int) -> None:
        ...

    async def answer(self, callback_id: str, text: Optional[str] = None, alert: bool = False) -> None:
        ...


@dataclass
class FlowSettings:
    booking_check_delay: float = 2
    completion_check_delay: float = 10 * 60
    broadcast_timeout: float = 5 * 60
    bind_followup_delay: float = 0.5
    merchant_thanks_delay: float = 1
    group_chat_id: Optional[str] = None
    ranking_url: str = "https://t.me/xiaoji233"
    support_contact: str = "@xiaoji57"

    @classmethod
    def from_config(cls) -> "FlowSettings":
        return cls(
            group_chat_id=CFG.GROUP_CHAT_ID or None,
            ranking_url=CFG.RANKING_URL,
            support_contact=CFG.SUPPORT_CONTACT,
            **CFG.FLOW_DELAYS,
        )


def is_form_click(data: str) -> bool:
    return data == "eval_incomplete" or data.startswith(_FORM_PREFIXES)


def extract_action_type(data: str) -> str:
    """回调数据的动作类型，防重复以 (用户, 动作类型) 为单位"""
    if data.startswith("attack_"):
        return "attack"
    if data.startswith("book_"):
        return "_".join(data.split("_")[:2])
    if data.startswith("course_completed_"):
        return "course_completed"
    if data.startswith("course_incomplete_"):
        return "course_incomplete"
    if data.startswith(("broadcast_", "back_")):
        return "_".join(data.split("_")[:2])
    if data.startswith("merchant_detail_eval_"):
        parts = data.split("_")
        if len(parts) >= 4:
            return f"merchant_detail_eval_{parts[3]}"
    return data.split("_")[0] or data


def broadcast_error_message(exc: Exception) -> str:
    description = str(exc).lower()
    for needle, message in _BROADCAST_ERRORS:
        if needle in description:
            return message
    return "❌ 播报失败，请联系管理员。"


def _score_rows(prefix: str, suffix: str, selected: Optional[int] = None) -> Keyboard:
    def _button(value: int) -> Button:
        text = f"✅{value}" if value == selected else str(value)
        return Button(text, callback_data=f"{prefix}{value}{suffix}")

    return [[_button(value) for value in range(1, 6)], [_button(value) for value in range(6, 11)]]


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class BookingFlow:
    """一个 bot 实例对应一个流程对象，内存状态保存在 FlowState 中"""

    def __init__(
        self,
        messenger: Messenger,
        db: Optional[DatabaseManager] = None,
        settings: Optional[FlowSettings] = None,
        state: Optional[FlowState] = None,
    ):
        self.messenger = messenger
        self.db = db or get_db_manager()
        self.settings = settings or FlowSettings.from_config()
        self.state = state or FlowState()
        self.merchants = MerchantService(self.db)
        self.orders = OrderService(self.db)
        self.evaluations = EvaluationService(self.db)
        self.templates = TemplateService(self.db)
        self._tasks: Set[asyncio.Task] = set()
        self._routes: List[Tuple[str, Callable[[CallbackContext, str], Awaitable[None]]]] = [
            ("attack_", self._on_attack),
            ("channel_", self._on_channel),
            ("merchant_detail_eval_", self._on_merchant_detail),
            ("merchant_", self._on_merchant_card),
            ("booking_success_", self._on_booking_success),
            ("booking_failed_", self._on_booking_failed),
            ("book_", self._on_book),
            ("course_completed_", self._on_course_completed),
            ("course_incomplete_", self._on_course_incomplete),
            ("rebook_yes_", self._on_rebook_yes),
            ("rebook_no_", self._on_rebook_no),
            ("rebook_", self._on_rebook),
            ("eval_score_", self._on_eval_score),
            ("eval_submit_", self._on_eval_submit),
            ("eval_confirm_", self._on_eval_confirm),
            ("eval_modify_", self._on_eval_modify),
            ("user_text_skip_", self._on_user_text_skip),
            ("user_text_submit_", self._on_user_text_submit),
            ("broadcast_real_", self._on_broadcast_real),
            ("broadcast_anon_", self._on_broadcast_anon),
            ("back_contact_", self._back_to_contact),
            ("back_booking_", self._back_to_booking_check),
            ("back_completion_", self._back_to_completion),
            ("back_evaluation_", self._back_from_evaluation),
            ("back_detail_", self._back_in_detail),
        ]

    # 发送工具 -------------------------------------------------------------------

    async def _send(
        self,
        chat_id: ChatId,
        text: str,
        keyboard: Optional[Keyboard] = None,
        *,
        markdown: bool = False,
        kind: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        replace: bool = False,
    ) -> SentMessage:
        """发送消息；kind 不为空时记入消息历史，replace 时先删除上一条记录的消息"""
        if replace:
            last = self.state.history.last(chat_id)
            if last is not None:
                self.state.history.remove(chat_id, last.message_id)
                await self._safe_delete(chat_id, last.message_id)
        sent = await self.messenger.send(chat_id, text, keyboard, markdown=markdown)
        if kind:
            self.state.history.add(chat_id, sent.message_id, kind, data)
        return sent

    async def _notify(self, chat_id: ChatId, text: str, keyboard: Optional[Keyboard] = None, kind: Optional[str] = None) -> bool:
        """发给商家的通知，失败只记录日志"""
        try:
            await self._send(chat_id, text, keyboard, kind=kind)
        except DeliveryError as exc:
            logger.warning("无法发送通知给 %s: %s", chat_id, exc)
            return False
        return True

    async def _safe_delete(self, chat_id: ChatId, message_id: Optional[int]) -> None:
        if not message_id:
            return
        try:
            await self.messenger.delete(chat_id, message_id)
        except DeliveryError as exc:
            if "message to delete not found" not in str(exc).lower():
                logger.warning("删除消息 %s/%s 失败: %s", chat_id, message_id, exc)

    async def _safe_edit(self, chat_id: ChatId, message_id: Optional[int], text: str, keyboard: Keyboard) -> None:
        if not message_id:
            return
        try:
            await self.messenger.edit(chat_id, message_id, text, keyboard)
        except DeliveryError as exc:
            if "message is not modified" not in str(exc).lower():
                logger.warning("编辑消息 %s/%s 失败: %s", chat_id, message_id, exc)

    def _later(self, delay: float, func: Callable[..., Awaitable[Any]], *args: Any) -> asyncio.Task:
        async def _runner() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await func(*args)
            except (BookingError, DeliveryError) as exc:
                logger.warning("延迟任务 %s 执行失败: %s", func.__name__, exc)
            except Exception:
                logger.exception("延迟任务 %s 异常", func.__name__)

        task = asyncio.ensure_future(_runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """等待所有延迟任务执行完毕（不含播报计时器）"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def clear_conversation(self, user_id: int) -> None:
        for entry in self.state.history.pop_all(user_id):
            await self._safe_delete(user_id, entry.message_id)

    async def shutdown(self) -> None:
        pending = list(self._tasks) + list(self.state.broadcast_timers.values())
        self.state.broadcast_timers.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("对话流程已停止，取消 %s 个待执行任务", len(pending))

    # 命令 -----------------------------------------------------------------------

    async def handle_start(self, user: TelegramUser, chat_id: int, payload: Optional[str] = None) -> None:
        self.templates.log_interaction(user, "start", chat_id)
        payload = (payload or "").strip()
        if payload.startswith("merchant_"):
            merchant = self.merchants.find_merchant(payload[len("merchant_"):])
            if merchant is not None:
                await self._send_merchant_card(chat_id, merchant)
                return
            logger.warning("用户 %s 通过未知商家链接进入: %s", user.id, payload)
        await self._send(chat_id, WELCOME_TEXT, kind="welcome")

    async def handle_bind(self, user: TelegramUser, chat_id: int, code: Optional[str]) -> Optional[Dict[str, Any]]:
        code = (code or "").strip().upper()
        if not code:
            await self._send(chat_id, BIND_USAGE_TEXT)
            return None
        try:
            merchant = self.merchants.bind_merchant(code, user)
        except BookingError as exc:
            await self._send(chat_id, f"❌ {exc}")
            return None
        self.templates.log_interaction(user, "bind", chat_id)
        await self._send(chat_id, BIND_SUCCESS_TEXT)
        self._later(
            self.settings.bind_followup_delay,
            self._send,
            chat_id,
            BIND_FOLLOWUP_TEXT.format(support=self.settings.support_contact),
        )
        return merchant

    async def handle_help(self, chat_id: int) -> None:
        await self._send(chat_id, HELP_TEXT)

    # 按钮回调 -------------------------------------------------------------------

    def _callback_toast(self, callback: CallbackContext) -> Tuple[Optional[str], bool]:
        data = callback.data
        if data.startswith("eval_info_"):
            return SCORE_HINT, False
        if data == "eval_incomplete":
            return INCOMPLETE_ALERT, True
        if data.startswith("eval_submit_"):
            state = self._user_state(callback.user.id, data[len("eval_submit_"):])
            if state is not None and not state.is_complete:
                return INCOMPLETE_ALERT, True
        if data.startswith("user_text_submit_"):
            state = self._user_state(callback.user.id, data[len("user_text_submit_"):])
            if state is None or not state.text_comment:
                return TEXT_MISSING_ALERT, True
        return None, False

    async def handle_callback(self, callback: CallbackContext) -> None:
        data = callback.data or ""
        text, alert = self._callback_toast(callback)
        try:
            await self.messenger.answer(callback.callback_id, text, alert)
        except DeliveryError as exc:
            logger.warning("回调应答失败 %s: %s", data, exc)

        if not is_form_click(data):
            if callback.message_id:
                self.state.history.remove(callback.chat_id, callback.message_id)
                await self._safe_delete(callback.chat_id, callback.message_id)
            if self.state.recent_actions.hit((callback.user.id, extract_action_type(data))):
                logger.info("拦截重复操作: %s %s", callback.user.id, data)
                return

        for prefix, handler in self._routes:
            if data.startswith(prefix):
                try:
                    await handler(callback, data[len(prefix):])
                except BookingError as exc:
                    logger.warning("处理回调 %s 失败: %s", data, exc)
                    await self._notify(callback.chat_id, f"❌ {exc}")
                except DeliveryError as exc:
                    logger.error("处理回调 %s 时发送消息失败: %s", data, exc)
                return
        if not data.startswith("eval_info_") and data != "eval_incomplete":
            logger.info("未处理的回调数据: %s", data)

    # 商家页面与出击 -------------------------------------------------------------

    async def _send_merchant_card(self, chat_id: int, merchant: Dict[str, Any]) -> None:
        if merchant.get("status") != MerchantStatus.ACTIVE.value:
            await self._send(chat_id, OFFLINE_TEXT)
            return
        merchant_id = merchant["id"]
        keyboard: Keyboard = [[Button("预约老师课程", callback_data=f"attack_{merchant_id}")]]
        if merchant.get("channel_link"):
            keyboard.append([Button("关注老师频道", callback_data=f"channel_{merchant_id}")])
        keyboard.append([Button("返回榜单", url=self.settings.ranking_url)])
        await self._send(
            chat_id,
            format_merchant_card(merchant),
            keyboard,
            kind="merchant_info",
            data={"merchant_id": merchant_id},
        )

    def _active_merchant(self, merchant_id: Any) -> Optional[Dict[str, Any]]:
        merchant = self.merchants.get_merchant(merchant_id)
        return merchant if merchant.get("status") == MerchantStatus.ACTIVE.value else None

    @staticmethod
    def _order_base(user: TelegramUser, merchant: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "user_id": user.id,
            "user_name": user.full_name,
            "user_username": user.mention,
            "merchant_id": merchant["id"],
            "merchant_user_id": merchant.get("user_id"),
            "teacher_name": merchant.get("teacher_name"),
            "teacher_contact": merchant.get("contact"),
        }

    def _course_keyboard(self, prefix: str, merchant_id: int) -> Keyboard:
        return [
            [Button("预约p", callback_data=f"{prefix}_p_{merchant_id}")],
            [Button("预约pp", callback_data=f"{prefix}_pp_{merchant_id}")],
            [Button("其他时长", callback_data=f"{prefix}_other_{merchant_id}")],
        ]

    async def _on_attack(self, callback: CallbackContext, merchant_id: str) -> None:
        merchant = self._active_merchant(merchant_id)
        if merchant is None:
            await self._send(callback.chat_id, OFFLINE_TEXT)
            return
        self.orders.create_order(
            **self._order_base(callback.user, merchant),
            course_content="待确定课程",
            price_range="待确定价格",
            status=OrderStatus.ATTEMPTING.value,
        )
        self.templates.log_interaction(callback.user, "attack_click", callback.chat_id)
        await self._send(
            callback.chat_id,
            ATTACK_NOTICE,
            self._course_keyboard("book", merchant["id"]),
            kind="attack_notice",
            data={"merchant_id": merchant["id"]},
        )

    async def _on_channel(self, callback: CallbackContext, merchant_id: str) -> None:
        merchant = self.merchants.get_merchant(merchant_id)
        link = merchant.get("channel_link")
        if not link:
            await self._send(callback.chat_id, "❌ 该老师暂未设置频道链接")
            return
        clicks = self.merchants.record_channel_click(merchant["id"])
        self.templates.log_interaction(callback.user, "channel_click", callback.chat_id)
        logger.info("用户 %s 查看商家 %s 的频道，累计 %s 次", callback.user.id, merchant["id"], clicks)
        if merchant.get("user_id"):
            await self._notify(
                merchant["user_id"],
                f"🐥小鸡提醒：用户（{callback.user.mention}）通过管家查看了您的频道。",
            )
        keyboard: Keyboard = [
            [Button("打开频道", url=link)],
            [Button("预约上课", callback_data=f"merchant_{merchant['id']}")],
            [Button("返回榜单", url=self.settings.ranking_url)],
        ]
        await self._send(
            callback.chat_id,
            f"🔗 {merchant.get('teacher_name')} 老师的频道：\n{link}",
            keyboard,
            kind="channel_link",
        )

    async def _on_merchant_card(self, callback: CallbackContext, merchant_id: str) -> None:
        await self._send_merchant_card(callback.chat_id, self.merchants.get_merchant(merchant_id))

    async def _send_contact(self, chat_id: int, merchant: Dict[str, Any]) -> None:
        await self._send(
            chat_id,
            CONTACT_TEXT.format(link=format_contact_link(merchant.get("contact"))),
            markdown=True,
            kind="contact_info",
            data={"merchant_id": merchant["id"]},
        )

    # 预约 -----------------------------------------------------------------------

    async def _on_book(self, callback: CallbackContext, rest: str) -> None:
        await self._book(callback, rest, rebook=False)

    async def _on_rebook(self, callback: CallbackContext, rest: str) -> None:
        await self._book(callback, rest, rebook=True)

    async def _book(self, callback: CallbackContext, rest: str, rebook: bool) -> None:
        type_value, _, merchant_id = rest.partition("_")
        try:
            course = CourseType.parse(type_value)
        except ValueError:
            logger.warning("无法解析预约回调: %s", callback.data)
            return
        user, chat_id = callback.user, callback.chat_id
        merchant = self._active_merchant(merchant_id)
        if merchant is None:
            await self._send(chat_id, OFFLINE_TEXT)
            return
        if self.state.booking_cooldowns.hit((user.id, merchant["id"])):
            await self._send(chat_id, COOLDOWN_TEXT)
            return

        session_id = self.orders.create_session(user.id, merchant["id"], course.value)
        values = {
            "booking_session_id": session_id,
            "course_type": course.value,
            "course_content": course.label,
            "price_range": price_for(merchant, course.value),
            "status": OrderStatus.PENDING.value,
        }
        attempt = None if rebook else self.orders.find_recent(user.id, merchant["id"], OrderStatus.ATTEMPTING.value)
        if attempt is not None:
            self.orders.update_order(attempt["id"], **values)
        else:
            self.orders.create_order(**self._order_base(user, merchant), **values)
        self.templates.log_interaction(user, f"{'rebook' if rebook else 'book'}_{course.value}", chat_id)

        await self._send_contact(chat_id, merchant)
        if merchant.get("user_id"):
            await self._notify(
                merchant["user_id"],
                MERCHANT_BOOKING_NOTICE.format(
                    full_name=user.full_name,
                    mention=user.mention,
                    action="重新预约" if rebook else "预约",
                    course=course.label,
                ),
            )
        else:
            logger.warning("商家 %s (%s) 尚未绑定 Telegram 账户，无法接收预约通知", merchant["id"], merchant.get("teacher_name"))
        self._later(self.settings.booking_check_delay, self._send_booking_check, chat_id, session_id)

    async def _send_booking_check(self, chat_id: int, session_id: int) -> None:
        keyboard: Keyboard = [
            [
                Button("成功✅", callback_data=f"booking_success_{session_id}"),
                Button("未约成❌", callback_data=f"booking_failed_{session_id}"),
            ]
        ]
        await self._send(chat_id, BOOKING_CHECK_TEXT, keyboard, kind="booking_check", data={"session_id": session_id})

    async def _on_booking_success(self, callback: CallbackContext, session_id: str) -> None:
        session = self.orders.get_session(session_id)
        order = self.orders.get_by_session(session["id"])
        if order is not None:
            self.orders.update_order(order["id"], status=OrderStatus.CONFIRMED.value)
        else:
            merchant = self.merchants.get_merchant(session["merchant_id"])
            course = CourseType.parse(session.get("course_type") or CourseType.OTHER.value)
            self.orders.create_order(
                **self._order_base(callback.user, merchant),
                booking_session_id=session["id"],
                course_type=course.value,
                course_content=course.label,
                price_range=price_for(merchant, course.value),
                status=OrderStatus.CONFIRMED.value,
            )
        self.orders.set_session_status(session["id"], "confirmed")
        await self._send(callback.chat_id, BOOKING_SUCCESS_TEXT, kind="booking_success")
        self._later(self.settings.completion_check_delay, self._send_completion_check, session["id"])

    def _completion_keyboard(self, session_id: int) -> Keyboard:
        return [
            [
                Button("已完成", callback_data=f"course_completed_{session_id}"),
                Button("未完成", callback_data=f"course_incomplete_{session_id}"),
            ]
        ]

    def _completion_prompt(self, side: str, session: Dict[str, Any], merchant: Dict[str, Any]) -> Tuple[str, Keyboard]:
        keyboard = self._completion_keyboard(session["id"])
        if side == EvaluatorType.USER.value:
            teacher = " ".join(part for part in (merchant.get("teacher_name"), merchant.get("contact")) if part)
            keyboard.append([Button(BACK_LABEL, callback_data=f"back_contact_{session['id']}")])
            return f"是否完成该老师（{teacher}）的课程？", keyboard
        order = self.orders.get_by_session(session["id"])
        full_name = order["user_name"] if order else "未设置名称"
        return f"是否完成该用户（{full_name}）的课程？", keyboard

    async def _send_completion_check(self, session_id: int) -> None:
        session = self.orders.get_session(session_id)
        merchant = self.merchants.get_merchant(session["merchant_id"])
        user_id = session["user_id"]

        await self.clear_conversation(user_id)
        text, keyboard = self._completion_prompt(EvaluatorType.USER.value, session, merchant)
        await self._send(user_id, text, keyboard, kind="course_completion_check")
        if merchant.get("user_id"):
            text, keyboard = self._completion_prompt(EvaluatorType.MERCHANT.value, session, merchant)
            await self._notify(merchant["user_id"], text, keyboard, kind="course_completion_check")

    async def _send_rebook_question(self, chat_id: int, session_id: int, back_to: str) -> None:
        """back_to 为 booking（约课失败）或 completion（课程未完成），决定返回按钮回到哪一步"""
        keyboard: Keyboard = [
            [
                Button("是", callback_data=f"rebook_yes_{session_id}"),
                Button("否", callback_data=f"rebook_no_{session_id}"),
            ],
            [Button(BACK_LABEL, callback_data=f"back_{back_to}_{session_id}")],
        ]
        await self._send(chat_id, REBOOK_QUESTION, keyboard, kind="rebook_question")

    async def _on_booking_failed(self, callback: CallbackContext, session_id: str) -> None:
        session = self.orders.get_session(session_id)
        order = self.orders.get_by_session(session["id"])
        if order is not None:
            self.orders.update_order(order["id"], status=OrderStatus.FAILED.value)
        self.orders.set_session_status(session["id"], "failed")
        await self._send_rebook_question(callback.chat_id, session["id"], back_to="booking")

    def _side(self, user_id: int, session: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        merchant = self.merchants.get_merchant(session["merchant_id"])
        if session["user_id"] == user_id:
            return EvaluatorType.USER.value, merchant
        if merchant.get("user_id") == user_id:
            return EvaluatorType.MERCHANT.value, merchant
        raise PermissionDenied("您无权操作该预约")

    async def _on_course_completed(self, callback: CallbackContext, session_id: str) -> None:
        session = self.orders.get_session(session_id)
        side, merchant = self._side(callback.user.id, session)
        session = self.orders.set_course_status(session["id"], side, "completed")
        await self._send(callback.chat_id, COURSE_CONFIRMED_TEXT, kind="course_completed")

        merchant_done = session["merchant_course_status"] == "completed" or not merchant.get("user_id")
        if session["user_course_status"] == "completed" and merchant_done:
            order = self.orders.get_by_session(session["id"])
            if order is not None:
                self.orders.update_order(order["id"], status=OrderStatus.COMPLETED.value)
            self.orders.set_session_status(session["id"], "completed")
            logger.info("预约 %s 双方确认完成", session["id"])

        if side == EvaluatorType.USER.value:
            await self._start_user_evaluation(callback.user.id, session)
        else:
            await self._start_merchant_evaluation(callback.user.id, session)

    async def _on_course_incomplete(self, callback: CallbackContext, session_id: str) -> None:
        session = self.orders.get_session(session_id)
        side, _ = self._side(callback.user.id, session)
        self.orders.set_course_status(session["id"], side, "incomplete")
        if side == EvaluatorType.USER.value:
            await self._send_rebook_question(callback.chat_id, session["id"], back_to="completion")
        else:
            await self._send(callback.chat_id, "您已标记课程未完成")

    async def _on_rebook_no(self, callback: CallbackContext, session_id: str) -> None:
        session = self.orders.get_session(session_id)
        order = self.orders.get_by_session(session["id"])
        if order is not None:
            self.orders.update_order(order["id"], status=OrderStatus.CANCELLED.value)
        self.orders.set_session_status(session["id"], "cancelled")
        await self.clear_conversation(callback.user.id)
        await self._send(callback.chat_id, REBOOK_NO_TEXT)

    async def _on_rebook_yes(self, callback: CallbackContext, session_id: str) -> None:
        session = self.orders.get_session(session_id)
        merchant = self._active_merchant(session["merchant_id"])
        if merchant is None:
            await self._send(callback.chat_id, OFFLINE_TEXT)
            return
        await self._send(callback.chat_id, REBOOK_PROGRESS_TEXT, kind="rebook_progress")
        self.state.booking_cooldowns.clear((callback.user.id, merchant["id"]))
        await self.clear_conversation(callback.user.id)
        await self._send_contact(callback.chat_id, merchant)
        await self._send(
            callback.chat_id,
            ATTACK_NOTICE,
            self._course_keyboard("rebook", merchant["id"]),
            kind="attack_notice",
            data={"merchant_id": merchant["id"]},
        )

    # 用户评价 -------------------------------------------------------------------

    def _user_state(self, user_id: int, evaluation_id: Any = None) -> Optional[UserEvaluationState]:
        """内存中的评价状态；进程重启后从评价会话恢复"""
        wanted = _parse_int(evaluation_id) if evaluation_id is not None else None
        state = self.state.user_evaluations.get(user_id)
        if state is not None and (wanted is None or state.evaluation_id == wanted):
            return state
        session = (
            self.evaluations.get_session(user_id, wanted)
            if wanted is not None
            else self.evaluations.get_active_session(user_id)
        )
        if session is None or session["current_step"] not in ("user_form", "text_comment"):
            return None
        temp = session["temp_data"]
        state = UserEvaluationState(
            evaluation_id=session["evaluation_id"],
            session_id=session["id"],
            scores={key: int(value) for key, value in (temp.get("scores") or {}).items()},
            hardware_message_id=temp.get("hardware_message_id"),
            software_message_id=temp.get("software_message_id"),
            text_comment=temp.get("text_comment"),
            awaiting_text=session["current_step"] == "text_comment",
        )
        self.state.user_evaluations[user_id] = state
        return state

    def _save_user_state(self, state: UserEvaluationState) -> None:
        if state.session_id is None:
            return
        self.evaluations.update_session(
            state.session_id,
            "text_comment" if state.awaiting_text else "user_form",
            {
                "scores": state.scores,
                "hardware_message_id": state.hardware_message_id,
                "software_message_id": state.software_message_id,
                "text_comment": state.text_comment,
            },
        )

    def _render_section(
        self, title: str, items: List[EvaluationItem], state: UserEvaluationState, with_submit: bool
    ) -> Tuple[str, Keyboard]:
        keyboard: Keyboard = []
        eid = state.evaluation_id
        for item in items:
            score = state.scores.get(item.key)
            label = f"{item.name} ✅{score}分" if score else f"{item.name} (未评分)"
            keyboard.append([Button(label, callback_data=f"eval_info_{item.key}")])
            keyboard.extend(_score_rows(f"eval_score_{item.key}_", f"_{eid}", score))
        if with_submit:
            back = Button(BACK_LABEL, callback_data=f"back_evaluation_{eid}")
            if state.is_complete:
                keyboard.append([Button("🎉 提交完整评价", callback_data=f"eval_submit_{eid}"), back])
            else:
                total = len(USER_EVALUATION_KEYS)
                keyboard.append(
                    [Button(f"⏳ 请完成所有评价 ({state.completed_count}/{total})", callback_data="eval_incomplete"), back]
                )
        return USER_FORM_HEADER.format(section=title), keyboard

    def _render_user_form(self, state: UserEvaluationState) -> Tuple[Tuple[str, Keyboard], Tuple[str, Keyboard]]:
        return (
            self._render_section("🔧 硬件评价", USER_HARDWARE_ITEMS, state, with_submit=False),
            self._render_section("💎 软件评价", USER_SOFTWARE_ITEMS, state, with_submit=True),
        )

    async def _start_user_evaluation(self, user_id: int, session: Dict[str, Any]) -> None:
        existing = self.evaluations.find_for_session(session["id"], EvaluatorType.USER.value)
        if existing is not None and existing["status"] == "completed":
            await self._send(user_id, ALREADY_EVALUATED_TEXT)
            return
        evaluation_id = (
            existing["id"]
            if existing is not None
            else self.evaluations.create_evaluation(session["id"], EvaluatorType.USER.value, user_id, session["merchant_id"])
        )
        state = UserEvaluationState(
            evaluation_id=evaluation_id,
            session_id=self.evaluations.create_session(user_id, evaluation_id, "user_form"),
        )
        self.state.user_evaluations[user_id] = state

        (hw_text, hw_keyboard), (sw_text, sw_keyboard) = self._render_user_form(state)
        hardware = await self._send(user_id, hw_text, hw_keyboard, kind="user_evaluation")
        software = await self._send(user_id, sw_text, sw_keyboard, kind="user_evaluation")
        state.hardware_message_id = hardware.message_id
        state.software_message_id = software.message_id
        self._save_user_state(state)

    async def _on_eval_score(self, callback: CallbackContext, rest: str) -> None:
        parts = rest.split("_")
        if len(parts) == 2:
            await self._on_merchant_score(callback, parts[0], parts[1])
            return
        if len(parts) != 3:
            logger.warning("无法解析评分回调: %s", callback.data)
            return
        key, score, evaluation_id = parts[0], _parse_int(parts[1]), parts[2]
        if key not in USER_EVALUATION_KEYS or score is None or not 1 <= score <= 10:
            return
        state = self._user_state(callback.user.id, evaluation_id)
        if state is None or state.awaiting_text:
            logger.info("用户 %s 的评价 %s 已失效", callback.user.id, evaluation_id)
            return
        state.scores[key] = score
        self._save_user_state(state)
        (hw_text, hw_keyboard), (sw_text, sw_keyboard) = self._render_user_form(state)
        await self._safe_edit(callback.chat_id, state.hardware_message_id, hw_text, hw_keyboard)
        await self._safe_edit(callback.chat_id, state.software_message_id, sw_text, sw_keyboard)

    async def _on_eval_submit(self, callback: CallbackContext, evaluation_id: str) -> None:
        user_id = callback.user.id
        state = self._user_state(user_id, evaluation_id)
        if state is None or state.awaiting_text or not state.is_complete:
            return
        scores = {key: state.scores[key] for key in USER_EVALUATION_KEYS}
        evaluation = self.evaluations.update_evaluation(
            state.evaluation_id,
            overall_score=round(sum(scores.values()) / len(scores)),
            detailed_scores=scores,
            status="completed",
        )
        self.evaluations.sync_to_order(evaluation)
        self.evaluations.refresh_ratings(evaluation)
        logger.info("用户 %s 提交评价 %s", user_id, state.evaluation_id)

        for message_id in (state.hardware_message_id, state.software_message_id):
            self.state.history.remove(user_id, message_id)
            await self._safe_delete(callback.chat_id, message_id)
        state.hardware_message_id = state.software_message_id = None
        state.awaiting_text = True
        self._save_user_state(state)

        eid = state.evaluation_id
        keyboard: Keyboard = [
            [Button("跳过文字评价📋", callback_data=f"user_text_skip_{eid}")],
            [Button("提交文字报告📝", callback_data=f"user_text_submit_{eid}")],
        ]
        await self._send(callback.chat_id, USER_TEXT_STEP, keyboard, kind="user_text_comment")

    async def _finish_user_evaluation(self, user_id: int, state: UserEvaluationState) -> None:
        if state.text_comment:
            evaluation = self.evaluations.update_evaluation(state.evaluation_id, comments=state.text_comment)
            self.evaluations.sync_to_order(evaluation)
        self.state.user_evaluations.pop(user_id, None)
        if state.session_id is not None:
            self.evaluations.delete_session(state.session_id)
        await self._show_broadcast_choice(user_id, state.evaluation_id)

    async def _on_user_text_skip(self, callback: CallbackContext, evaluation_id: str) -> None:
        state = self._user_state(callback.user.id, evaluation_id)
        if state is None or not state.awaiting_text:
            return
        state.text_comment = None
        await self._finish_user_evaluation(callback.user.id, state)

    async def _on_user_text_submit(self, callback: CallbackContext, evaluation_id: str) -> None:
        state = self._user_state(callback.user.id, evaluation_id)
        if state is None or not state.awaiting_text or not state.text_comment:
            return
        await self._finish_user_evaluation(callback.user.id, state)

    # 播报 -----------------------------------------------------------------------

    async def _show_broadcast_choice(self, user_id: int, evaluation_id: int) -> None:
        keyboard: Keyboard = [
            [
                Button("实名播报", callback_data=f"broadcast_real_{evaluation_id}"),
                Button("匿名播报", callback_data=f"broadcast_anon_{evaluation_id}"),
            ]
        ]
        await self._send(user_id, BROADCAST_CHOICE_TEXT, keyboard, kind="broadcast_choice")
        previous = self.state.broadcast_timers.pop(evaluation_id, None)
        if previous is not None:
            previous.cancel()
        self.state.broadcast_timers[evaluation_id] = asyncio.ensure_future(
            self._auto_broadcast(user_id, evaluation_id)
        )

    async def _auto_broadcast(self, user_id: int, evaluation_id: int) -> None:
        await asyncio.sleep(self.settings.broadcast_timeout)
        self.state.broadcast_timers.pop(evaluation_id, None)
        for entry in self.state.history.take(user_id, "broadcast_choice"):
            await self._safe_delete(user_id, entry.message_id)
        logger.info("用户 %s 未选择播报方式，评价 %s 自动匿名播报", user_id, evaluation_id)
        try:
            await self.broadcast(user_id, evaluation_id, anonymous=True)
        except (BookingError, DeliveryError) as exc:
            logger.warning("自动播报失败: %s", exc)

    async def _on_broadcast_real(self, callback: CallbackContext, evaluation_id: str) -> None:
        await self._on_broadcast(callback, evaluation_id, anonymous=False)

    async def _on_broadcast_anon(self, callback: CallbackContext, evaluation_id: str) -> None:
        await self._on_broadcast(callback, evaluation_id, anonymous=True)

    async def _on_broadcast(self, callback: CallbackContext, evaluation_id: str, anonymous: bool) -> None:
        eid = _parse_int(evaluation_id)
        timer = self.state.broadcast_timers.pop(eid, None)
        if timer is not None:
            timer.cancel()
        await self.broadcast(callback.user.id, eid, anonymous=anonymous, user=callback.user)

    async def broadcast(
        self,
        user_id: int,
        evaluation_id: Any,
        anonymous: bool = True,
        user: Optional[TelegramUser] = None,
    ) -> bool:
        """在大群播报一次出击记录并置顶，结果告知用户"""
        evaluation = self.evaluations.get_evaluation(evaluation_id)
        session = self.orders.find_session(evaluation["booking_session_id"])
        merchant = self.merchants.find_merchant(session["merchant_id"]) if session else None
        teacher = merchant.get("teacher_name") if merchant else "未知"

        group = self.settings.group_chat_id
        if not group:
            await self._send(user_id, BROADCAST_NO_GROUP)
            return False

        if anonymous or user is None:
            who = "隐藏用户"
        else:
            who = f"用户（{user.mention}）"
        try:
            sent = await self.messenger.send(group, BROADCAST_TEXT.format(who=who, teacher=teacher))
        except DeliveryError as exc:
            logger.error("群内播报失败: %s", exc)
            await self._send(user_id, broadcast_error_message(exc))
            return False
        try:
            await self.messenger.pin(group, sent.message_id)
        except DeliveryError as exc:
            logger.warning("播报消息置顶失败: %s", exc)

        self.templates.log_interaction(
            user or TelegramUser(id=user_id),
            "broadcast_anon" if anonymous else "broadcast_real",
            _parse_int(group),
        )
        await self._send(user_id, BROADCAST_DONE[anonymous])
        return True

    # 商家评价 -------------------------------------------------------------------

    def _own_evaluation(self, user_id: int, evaluation_id: Any) -> Dict[str, Any]:
        evaluation = self.evaluations.get_evaluation(evaluation_id)
        if evaluation["evaluator_id"] != user_id:
            raise PermissionDenied("您无权操作该评价")
        return evaluation

    async def _start_merchant_evaluation(self, user_id: int, session: Dict[str, Any]) -> None:
        existing = self.evaluations.find_for_session(session["id"], EvaluatorType.MERCHANT.value)
        if existing is not None and existing["status"] == "completed":
            await self._send(user_id, ALREADY_EVALUATED_TEXT)
            return
        evaluation_id = (
            existing["id"]
            if existing is not None
            else self.evaluations.create_evaluation(
                session["id"], EvaluatorType.MERCHANT.value, user_id, session["user_id"]
            )
        )
        self.evaluations.create_session(user_id, evaluation_id, "overall_score")
        await self._send_merchant_score_keyboard(user_id, evaluation_id)

    async def _send_merchant_score_keyboard(self, chat_id: int, evaluation_id: int) -> None:
        keyboard = _score_rows("eval_score_", f"_{evaluation_id}")
        keyboard.append([Button(BACK_LABEL, callback_data=f"back_evaluation_{evaluation_id}")])
        await self._send(
            chat_id,
            MERCHANT_SCORE_PROMPT,
            keyboard,
            kind="merchant_evaluation",
            data={"evaluation_id": evaluation_id},
        )

    async def _on_merchant_score(self, callback: CallbackContext, score_value: str, evaluation_id: str) -> None:
        score = _parse_int(score_value)
        if score is None or not 1 <= score <= 10:
            return
        evaluation = self._own_evaluation(callback.user.id, evaluation_id)
        eid = evaluation["id"]
        keyboard: Keyboard = [
            [
                Button("确认✅", callback_data=f"eval_confirm_{score}_{eid}"),
                Button("修改✍️", callback_data=f"eval_modify_{eid}"),
            ]
        ]
        await self._send(
            callback.chat_id,
            f"是否确认提交该勇士素质为 {score} 分？",
            keyboard,
            kind="merchant_score_confirm",
            replace=True,
        )

    async def _on_eval_modify(self, callback: CallbackContext, evaluation_id: str) -> None:
        evaluation = self._own_evaluation(callback.user.id, evaluation_id)
        await self._send_merchant_score_keyboard(callback.chat_id, evaluation["id"])

    async def _on_eval_confirm(self, callback: CallbackContext, rest: str) -> None:
        score_value, _, evaluation_id = rest.partition("_")
        evaluation = self._own_evaluation(callback.user.id, evaluation_id)
        evaluation = self.evaluations.update_evaluation(
            evaluation["id"], overall_score=_parse_int(score_value), status="overall_completed"
        )
        self.evaluations.sync_to_order(evaluation)
        self.evaluations.refresh_ratings(evaluation)
        session = self.evaluations.get_session(callback.user.id, evaluation["id"])
        if session is not None:
            self.evaluations.update_session(session["id"], "detail_choice", session["temp_data"])
        await self._send_detail_choice(callback.chat_id, evaluation["id"])

    async def _send_detail_choice(self, chat_id: int, evaluation_id: int) -> None:
        keyboard: Keyboard = [
            [
                Button("确认✅", callback_data=f"merchant_detail_eval_start_{evaluation_id}"),
                Button("不了👋", callback_data=f"merchant_detail_eval_no_{evaluation_id}"),
            ]
        ]
        await self._send(chat_id, MERCHANT_DETAIL_QUESTION, keyboard, kind="merchant_detail_choice")

    async def _send_detail_step(self, chat_id: int, evaluation_id: int, step: str) -> None:
        if step == "duration":
            buttons = [
                Button(option.name, callback_data=f"merchant_detail_eval_duration_{option.key}_{evaluation_id}")
                for option in DURATION_OPTIONS
            ]
            keyboard: Keyboard = [buttons[index:index + 2] for index in range(0, len(buttons), 2)]
        else:
            keyboard = _score_rows(f"merchant_detail_eval_{step}_", f"_{evaluation_id}")
        keyboard.append([Button(BACK_LABEL, callback_data=f"back_detail_{evaluation_id}")])
        await self._send(chat_id, MERCHANT_DETAIL_PROMPTS[step], keyboard, kind="merchant_detail_step")

    async def _send_detail_comment_step(self, chat_id: int, evaluation_id: int, replace: bool = False) -> None:
        keyboard: Keyboard = [
            [Button("确认提交报告🎫", callback_data=f"merchant_detail_eval_confirm_{evaluation_id}")],
            [Button(BACK_LABEL, callback_data=f"back_detail_{evaluation_id}")],
        ]
        await self._send(chat_id, MERCHANT_COMMENT_PROMPT, keyboard, kind="merchant_detail_comment", replace=replace)

    def _detail_session(self, user_id: int, evaluation_id: int) -> Dict[str, Any]:
        session = self.evaluations.get_session(user_id, evaluation_id)
        if session is None:
            session_id = self.evaluations.create_session(user_id, evaluation_id, "detail_choice")
            session = {"id": session_id, "current_step": "detail_choice", "temp_data": {}}
        return session

    async def _on_merchant_detail(self, callback: CallbackContext, rest: str) -> None:
        user_id, chat_id = callback.user.id, callback.chat_id
        if rest.startswith("duration_"):
            option, _, evaluation_id = rest[len("duration_"):].rpartition("_")
            action, value = "duration", option
        else:
            parts = rest.split("_")
            action, evaluation_id = parts[0], parts[-1]
            value = parts[1] if len(parts) == 3 else None

        evaluation = self._own_evaluation(user_id, evaluation_id)
        eid = evaluation["id"]
        if action == "no":
            await self._complete_merchant_evaluation(user_id, evaluation, detailed=False)
            await self._send(chat_id, MERCHANT_DONE_TEXT)
            return

        session = self._detail_session(user_id, eid)
        temp = session["temp_data"]
        if action == "start":
            temp = {"scores": {}}
            self.evaluations.update_session(session["id"], MERCHANT_DETAIL_STEPS[0], temp)
            await self._send_detail_step(chat_id, eid, MERCHANT_DETAIL_STEPS[0])
            return
        if action == "confirm":
            await self._complete_merchant_evaluation(user_id, evaluation, detailed=True, temp=temp)
            await self._send(chat_id, MERCHANT_DETAIL_DONE_TEXT)
            self._later(self.settings.merchant_thanks_delay, self._send, chat_id, MERCHANT_FAREWELL_TEXT)
            return
        if action not in MERCHANT_DETAIL_STEPS:
            logger.warning("未知的详细评价步骤: %s", callback.data)
            return

        if action == "duration":
            if value not in {option.key for option in DURATION_OPTIONS}:
                return
            recorded: Any = value
        else:
            recorded = _parse_int(value)
            if recorded is None or not 1 <= recorded <= 10:
                return
        scores = dict(temp.get("scores") or {})
        scores[action] = recorded
        temp["scores"] = scores

        index = MERCHANT_DETAIL_STEPS.index(action)
        if index + 1 < len(MERCHANT_DETAIL_STEPS):
            next_step = MERCHANT_DETAIL_STEPS[index + 1]
            self.evaluations.update_session(session["id"], next_step, temp)
            await self._send_detail_step(chat_id, eid, next_step)
        else:
            self.evaluations.update_session(session["id"], "detail_comment", temp)
            await self._send_detail_comment_step(chat_id, eid)

    async def _complete_merchant_evaluation(
        self,
        user_id: int,
        evaluation: Dict[str, Any],
        detailed: bool,
        temp: Optional[Dict[str, Any]] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": "completed"}
        if detailed and temp:
            values["detailed_scores"] = dict(temp.get("scores") or {})
            if temp.get("comment"):
                values["comments"] = temp["comment"]
        evaluation = self.evaluations.update_evaluation(evaluation["id"], **values)
        self.evaluations.sync_to_order(evaluation)
        self.evaluations.refresh_ratings(evaluation)
        session = self.evaluations.get_session(user_id, evaluation["id"])
        if session is not None:
            self.evaluations.delete_session(session["id"])
        logger.info("商家 %s 完成评价 %s (详细: %s)", user_id, evaluation["id"], detailed)

    # 返回上一步 -----------------------------------------------------------------
    #
    # 被点击的消息已在 handle_callback 中删除，这里清理同一步骤的其余消息后重发上一步。

    async def _drop_step(self, chat_id: int, *kinds: str) -> None:
        for entry in self.state.history.take(chat_id, *kinds):
            await self._safe_delete(chat_id, entry.message_id)

    def _own_session(self, user_id: int, session_id: Any) -> Dict[str, Any]:
        session = self.orders.get_session(session_id)
        if session["user_id"] != user_id:
            raise PermissionDenied("您无权操作该预约")
        return session

    async def _back_to_contact(self, callback: CallbackContext, session_id: str) -> None:
        """课程完成确认 → 联系老师"""
        session = self._own_session(callback.user.id, session_id)
        merchant = self.merchants.get_merchant(session["merchant_id"])
        await self._drop_step(callback.chat_id, "course_completion_check")
        await self._send_contact(callback.chat_id, merchant)
        await self._send_booking_check(callback.chat_id, session["id"])

    async def _back_to_booking_check(self, callback: CallbackContext, session_id: str) -> None:
        """重新预约询问 → 约课确认"""
        session = self._own_session(callback.user.id, session_id)
        await self._drop_step(callback.chat_id, "rebook_question")
        await self._send_booking_check(callback.chat_id, session["id"])

    async def _back_to_completion(self, callback: CallbackContext, session_id: Any) -> None:
        """评价或重新预约询问 → 课程完成确认，只发给点击的一方"""
        session = self.orders.get_session(session_id)
        side, merchant = self._side(callback.user.id, session)
        await self._drop_step(callback.chat_id, "rebook_question")
        text, keyboard = self._completion_prompt(side, session, merchant)
        await self._send(callback.chat_id, text, keyboard, kind="course_completion_check")

    async def _back_from_evaluation(self, callback: CallbackContext, evaluation_id: str) -> None:
        user_id = callback.user.id
        evaluation = self._own_evaluation(user_id, evaluation_id)
        if evaluation["status"] != "pending":
            await self._send(callback.chat_id, ALREADY_EVALUATED_TEXT)
            return
        await self._drop_step(callback.chat_id, "user_evaluation", "merchant_evaluation", "merchant_score_confirm")
        self.state.user_evaluations.pop(user_id, None)
        session = self.evaluations.get_session(user_id, evaluation["id"])
        if session is not None:
            self.evaluations.delete_session(session["id"])
        await self._back_to_completion(callback, evaluation["booking_session_id"])

    async def _back_in_detail(self, callback: CallbackContext, evaluation_id: str) -> None:
        """商家详细评价：额外点评 → 时长 → 礼貌 → 守时 → 是否详细评价"""
        user_id, chat_id = callback.user.id, callback.chat_id
        evaluation = self._own_evaluation(user_id, evaluation_id)
        eid = evaluation["id"]
        session = self.evaluations.get_session(user_id, eid)
        if session is None or evaluation["status"] == "completed":
            await self._send(chat_id, EVALUATION_EXPIRED_TEXT)
            return
        await self._drop_step(chat_id, "merchant_detail_step", "merchant_detail_comment")

        step = session["current_step"]
        if step == "detail_comment":
            previous: Optional[str] = MERCHANT_DETAIL_STEPS[-1]
        elif step in MERCHANT_DETAIL_STEPS[1:]:
            previous = MERCHANT_DETAIL_STEPS[MERCHANT_DETAIL_STEPS.index(step) - 1]
        else:
            previous = None
        if previous is None:
            self.evaluations.update_session(session["id"], "detail_choice", session["temp_data"])
            await self._send_detail_choice(chat_id, eid)
            return
        self.evaluations.update_session(session["id"], previous, session["temp_data"])
        await self._send_detail_step(chat_id, eid, previous)

    # 文字输入 -------------------------------------------------------------------

    async def handle_text(self, user: TelegramUser, chat_id: int, text: str) -> bool:
        """处理非命令文字；返回是否被某个流程消费"""
        text = (text or "").strip()
        if not text or text.startswith("/"):
            return False

        if chat_id == user.id:
            state = self._user_state(user.id)
            if state is not None and state.awaiting_text:
                state.text_comment = text
                self._save_user_state(state)
                await self.clear_conversation(user.id)
                await self._finish_user_evaluation(user.id, state)
                return True

            session = self.evaluations.get_active_session(user.id)
            if session is not None and session["current_step"] == "detail_comment":
                temp = session["temp_data"]
                temp["comment"] = text
                self.evaluations.update_session(session["id"], "detail_comment", temp)
                await self._send_detail_comment_step(chat_id, session["evaluation_id"], replace=True)
                return True

        return await self.check_triggers(user, chat_id, text)

    async def check_triggers(self, user: TelegramUser, chat_id: int, text: str) -> bool:
        sent = False
        for trigger in self.templates.match_triggers(chat_id, text):
            if self.state.trigger_cooldowns.hit((chat_id, trigger["id"])):
                logger.debug("触发词 %s 冷却中", trigger["word"])
                continue
            try:
                template = self.templates.get_template(trigger["template_id"])
                await send_template(self.messenger, chat_id, template)
            except (BookingError, DeliveryError) as exc:
                logger.warning("触发词 %s 发送模板失败: %s", trigger["word"], exc)
                continue
            self.templates.record_trigger(trigger["id"])
            self.templates.log_interaction(user, "trigger", chat_id, template_id=template["id"])
            sent = True
        return sent
