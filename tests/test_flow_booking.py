from xiaoji_booking import flow as booking_flow
from xiaoji_booking.bind_codes import BindCodeService
from xiaoji_booking.merchants import MerchantService
from xiaoji_booking.models import TelegramUser
from xiaoji_booking.orders import OrderService
from xiaoji_booking.templates import TemplateService

from conftest import make_callback


def _orders(db):
    return db.query("SELECT * FROM orders ORDER BY id")


def _session_from(messenger, chat_id, prefix):
    data = [item for item in messenger.callbacks(chat_id) if item.startswith(prefix)]
    return int(data[0].rsplit("_", 1)[1])


async def _book(click, messenger, customer, merchant, course="p"):
    await click(customer, f"attack_{merchant['id']}")
    await click(customer, f"book_{course}_{merchant['id']}")
    return _session_from(messenger, customer.id, "booking_success_")


async def test_start_sends_welcome(flow, messenger, customer):
    await flow.handle_start(customer, customer.id)
    assert messenger.texts(customer.id) == [booking_flow.WELCOME_TEXT]


async def test_start_with_merchant_payload(flow, messenger, customer, merchant):
    await flow.handle_start(customer, customer.id, f"merchant_{merchant['id']}")
    card = messenger.last(customer.id)
    assert "林老师" in card["text"]
    assert messenger.callbacks(customer.id) == [f"attack_{merchant['id']}"]
    assert card["keyboard"][-1][0].url == flow.settings.ranking_url


async def test_start_with_offline_merchant(flow, messenger, db, customer, merchant):
    MerchantService(db).set_status(merchant["id"], "suspended")
    await flow.handle_start(customer, customer.id, f"merchant_{merchant['id']}")
    assert messenger.texts(customer.id) == [booking_flow.OFFLINE_TEXT]


async def test_start_with_unknown_payload_falls_back(flow, messenger, customer):
    await flow.handle_start(customer, customer.id, "merchant_999")
    assert messenger.texts(customer.id) == [booking_flow.WELCOME_TEXT]


async def test_bind_success_and_followup(flow, messenger, db):
    user = TelegramUser(id=3003, username="teacher_wu", first_name="Wu")
    code = BindCodeService(db).create_bind_code()["code"]
    merchant = await flow.handle_bind(user, user.id, code.lower())
    await flow.drain()
    assert merchant["user_id"] == 3003
    texts = messenger.texts(user.id)
    assert texts[0] == booking_flow.BIND_SUCCESS_TEXT
    assert flow.settings.support_contact in texts[1]


async def test_bind_errors(flow, messenger, customer):
    assert await flow.handle_bind(customer, customer.id, "  ") is None
    assert messenger.texts(customer.id) == [booking_flow.BIND_USAGE_TEXT]
    assert await flow.handle_bind(customer, customer.id, "NOPE12") is None
    assert messenger.last(customer.id)["text"].startswith("❌")


async def test_attack_creates_attempting_order(flow, click, messenger, db, customer, merchant):
    await click(customer, f"attack_{merchant['id']}", message_id=55)
    assert (customer.id, 55) in messenger.deleted
    assert messenger.answers[-1]["callback_id"] == f"cb-attack_{merchant['id']}"
    [order] = _orders(db)
    assert order["status"] == "attempting"
    assert order["course_content"] == "待确定课程"
    assert messenger.last(customer.id)["text"] == booking_flow.ATTACK_NOTICE
    assert messenger.callbacks(customer.id) == [
        f"book_p_{merchant['id']}",
        f"book_pp_{merchant['id']}",
        f"book_other_{merchant['id']}",
    ]


async def test_book_notifies_both_sides(flow, click, messenger, db, customer, merchant):
    session_id = await _book(click, messenger, customer, merchant)

    [order] = _orders(db)
    assert order["status"] == "pending"
    assert order["booking_session_id"] == session_id
    assert order["course_type"] == "p"
    assert order["price_range"] == "500"

    contact = [item for item in messenger.sent if item["chat_id"] == customer.id and item["markdown"]]
    assert "[@teacher_lin](https://t.me/teacher_lin)" in contact[0]["text"]
    notice = messenger.texts(2002)[0]
    assert "小 鸡（@brave_chick）" in notice
    assert "预约p课程" in notice
    assert messenger.last(customer.id)["text"] == booking_flow.BOOKING_CHECK_TEXT
    assert messenger.callbacks(customer.id) == [f"booking_success_{session_id}", f"booking_failed_{session_id}"]


async def test_book_cooldown(flow, click, messenger, db, customer, merchant):
    await _book(click, messenger, customer, merchant)
    await click(customer, f"book_pp_{merchant['id']}")
    assert messenger.last(customer.id)["text"] == booking_flow.COOLDOWN_TEXT
    assert len(_orders(db)) == 1


async def test_book_unbound_merchant_creates_order(flow, click, messenger, db, customer, unbound_merchant):
    await click(customer, f"book_other_{unbound_merchant['id']}")
    [order] = _orders(db)
    assert order["status"] == "pending"
    assert order["course_content"] == "其他时长"
    assert order["price_range"] == "其他"
    assert messenger.texts(2002) == []


async def test_offline_merchant_blocks_booking(flow, click, messenger, db, customer, merchant):
    MerchantService(db).set_status(merchant["id"], "suspended")
    await click(customer, f"attack_{merchant['id']}")
    await click(customer, f"book_p_{merchant['id']}")
    assert messenger.texts(customer.id) == [booking_flow.OFFLINE_TEXT, booking_flow.OFFLINE_TEXT]
    assert _orders(db) == []


async def test_duplicate_click_is_ignored(flow, messenger, db, customer, merchant):
    callback = make_callback(customer, f"attack_{merchant['id']}")
    await flow.handle_callback(callback)
    await flow.handle_callback(callback)
    assert len(_orders(db)) == 1
    assert len(messenger.answers) == 2


async def test_booking_success_starts_completion_check(flow, click, messenger, db, customer, merchant):
    session_id = await _book(click, messenger, customer, merchant)
    await click(customer, f"booking_success_{session_id}")

    assert _orders(db)[0]["status"] == "confirmed"
    assert OrderService(db).get_session(session_id)["status"] == "confirmed"
    assert booking_flow.BOOKING_SUCCESS_TEXT in messenger.texts(customer.id)
    assert messenger.last(customer.id)["text"] == "是否完成该老师（林老师 @teacher_lin）的课程？"
    assert messenger.last(2002)["text"] == "是否完成该用户（小 鸡）的课程？"
    assert messenger.callbacks(2002) == [f"course_completed_{session_id}", f"course_incomplete_{session_id}"]


async def test_booking_failed_then_cancel(flow, click, messenger, db, customer, merchant):
    session_id = await _book(click, messenger, customer, merchant)
    await click(customer, f"booking_failed_{session_id}")
    assert _orders(db)[0]["status"] == "failed"
    assert messenger.last(customer.id)["text"] == booking_flow.REBOOK_QUESTION

    await click(customer, f"rebook_no_{session_id}")
    assert _orders(db)[0]["status"] == "cancelled"
    assert messenger.last(customer.id)["text"] == booking_flow.REBOOK_NO_TEXT


async def test_rebook_yes_clears_cooldown(flow, click, messenger, db, customer, merchant):
    session_id = await _book(click, messenger, customer, merchant)
    await click(customer, f"booking_failed_{session_id}")
    await click(customer, f"rebook_yes_{session_id}")
    assert messenger.callbacks(customer.id) == [
        f"rebook_p_{merchant['id']}",
        f"rebook_pp_{merchant['id']}",
        f"rebook_other_{merchant['id']}",
    ]

    await click(customer, f"rebook_pp_{merchant['id']}")
    orders = _orders(db)
    assert [order["status"] for order in orders] == ["failed", "pending"]
    assert orders[1]["price_range"] == "900"
    assert "重新预约pp课程" in messenger.last(2002)["text"]


async def test_stranger_cannot_confirm_course(flow, click, messenger, db, customer, merchant):
    session_id = await _book(click, messenger, customer, merchant)
    stranger = TelegramUser(id=4004, username="nobody")
    await click(stranger, f"course_completed_{session_id}")
    assert messenger.last(stranger.id)["text"] == "❌ 您无权操作该预约"
    assert OrderService(db).get_session(session_id)["user_course_status"] == "pending"


async def test_unknown_session_reports_error(flow, click, messenger, customer):
    await click(customer, "booking_success_999")
    assert messenger.last(customer.id)["text"] == "❌ 预约信息不存在"


async def test_channel_click_notifies_merchant(flow, click, messenger, db, customer, merchant):
    MerchantService(db).update_merchant(merchant["id"], channel_link="https://t.me/lin_channel")
    await click(customer, f"channel_{merchant['id']}")
    assert "https://t.me/lin_channel" in messenger.last(customer.id)["text"]
    assert "@brave_chick" in messenger.last(2002)["text"]
    assert MerchantService(db).get_merchant(merchant["id"])["channel_clicks"] == 1


async def test_trigger_words_respect_cooldown(flow, messenger, db, clock, customer):
    templates = TemplateService(db)
    template = templates.create_template("榜单", "👉 小鸡榜单 https://t.me/xiaoji233")
    trigger = templates.create_trigger("榜单", template["id"], -100200300)

    assert await flow.handle_text(customer, -100200300, "榜单") is True
    assert await flow.handle_text(customer, -100200300, "榜单") is False
    clock.advance(301)
    assert await flow.handle_text(customer, -100200300, "榜单") is True
    assert messenger.texts(-100200300) == ["👉 小鸡榜单 https://t.me/xiaoji233"] * 2
    assert templates.get_trigger(trigger["id"])["trigger_count"] == 2
    assert await flow.handle_text(customer, -100200300, "/start") is False


async def test_back_from_completion_check_to_contact(flow, click, messenger, customer, merchant):
    session_id = await _book(click, messenger, customer, merchant)
    await click(customer, f"booking_success_{session_id}")
    check = messenger.last(customer.id)
    assert messenger.callbacks(customer.id)[-1] == f"back_contact_{session_id}"

    await click(customer, f"back_contact_{session_id}", message_id=check["message_id"])
    assert (customer.id, check["message_id"]) in messenger.deleted
    assert messenger.texts(customer.id)[-2].startswith("🐤小鸡出征！")
    assert messenger.callbacks(customer.id) == [f"booking_success_{session_id}", f"booking_failed_{session_id}"]


async def test_back_from_rebook_question_to_booking_check(flow, click, messenger, db, customer, merchant):
    session_id = await _book(click, messenger, customer, merchant)
    await click(customer, f"booking_failed_{session_id}")
    assert messenger.callbacks(customer.id)[-1] == f"back_booking_{session_id}"

    await click(customer, f"back_booking_{session_id}")
    assert messenger.last(customer.id)["text"] == booking_flow.BOOKING_CHECK_TEXT
    await click(customer, f"booking_success_{session_id}")
    assert _orders(db)[0]["status"] == "confirmed"


async def test_stranger_cannot_go_back(flow, click, messenger, customer, merchant):
    session_id = await _book(click, messenger, customer, merchant)
    stranger = TelegramUser(id=4004, username="nobody")
    await click(stranger, f"back_contact_{session_id}")
    assert messenger.last(stranger.id)["text"] == "❌ 您无权操作该预约"
    await click(stranger, f"back_completion_{session_id}")
    assert messenger.texts(stranger.id)[-1] == "❌ 您无权操作该预约"
