import asyncio

import pytest

from xiaoji_booking import flow as booking_flow
from xiaoji_booking.database import loads
from xiaoji_booking.evaluations import EvaluationService
from xiaoji_booking.flow import BookingFlow
from xiaoji_booking.models import USER_EVALUATION_KEYS
from xiaoji_booking.state import FlowState

from conftest import make_callback

GROUP = "-100200300"

# 总和 95，平均 7.92
SCORES = dict(zip(USER_EVALUATION_KEYS, [10, 9, 8, 7, 6, 5, 10, 10, 9, 8, 7, 6]))


def _id_from(messenger, chat_id, prefix):
    data = [item for item in messenger.callbacks(chat_id) if item.startswith(prefix)]
    return int(data[0].rsplit("_", 1)[1])


async def _confirmed_session(click, messenger, customer, merchant):
    await click(customer, f"attack_{merchant['id']}")
    await click(customer, f"book_p_{merchant['id']}")
    session_id = _id_from(messenger, customer.id, "booking_success_")
    await click(customer, f"booking_success_{session_id}")
    return session_id


async def _open_user_form(click, messenger, customer, merchant):
    session_id = await _confirmed_session(click, messenger, customer, merchant)
    await click(customer, f"course_completed_{session_id}")
    return session_id, _id_from(messenger, customer.id, "eval_score_")


async def _fill_scores(click, customer, evaluation_id, scores=SCORES):
    for key, score in scores.items():
        await click(customer, f"eval_score_{key}_{score}_{evaluation_id}")


async def _submit_user_evaluation(click, messenger, customer, merchant):
    session_id, evaluation_id = await _open_user_form(click, messenger, customer, merchant)
    await _fill_scores(click, customer, evaluation_id)
    await click(customer, f"eval_submit_{evaluation_id}")
    return session_id, evaluation_id


async def test_user_form_has_two_sections(flow, click, messenger, customer, merchant):
    _, evaluation_id = await _open_user_form(click, messenger, customer, merchant)
    hardware, software = messenger.sent[-2:]
    assert "🔧 硬件评价" in hardware["text"]
    assert "💎 软件评价" in software["text"]
    # 每项一行标题加两行分数
    assert len(hardware["keyboard"]) == 18
    assert software["keyboard"][-1][0].callback_data == "eval_incomplete"
    assert f"eval_score_attitude_10_{evaluation_id}" in messenger.callbacks(customer.id)


async def test_score_click_edits_both_sections(flow, click, messenger, customer, merchant):
    _, evaluation_id = await _open_user_form(click, messenger, customer, merchant)
    await click(customer, f"eval_score_skill_7_{evaluation_id}")
    assert len(messenger.edited) == 2
    software = messenger.edited[-1]
    labels = [row[0].text for row in software["keyboard"] if row[0].callback_data.startswith("eval_info_")]
    assert "技术 ✅7分" in labels
    assert "⏳ 请完成所有评价 (1/12)" == software["keyboard"][-1][0].text
    selected = [button.text for row in software["keyboard"] for button in row if button.text == "✅7"]
    assert selected == ["✅7"]


async def test_incomplete_submit_is_rejected(flow, click, messenger, db, customer, merchant):
    _, evaluation_id = await _open_user_form(click, messenger, customer, merchant)
    await click(customer, f"eval_score_skill_7_{evaluation_id}")
    await click(customer, f"eval_submit_{evaluation_id}")
    assert messenger.answers[-1] == {
        "callback_id": f"cb-eval_submit_{evaluation_id}",
        "text": booking_flow.INCOMPLETE_ALERT,
        "alert": True,
    }
    assert EvaluationService(db).get_evaluation(evaluation_id)["status"] == "pending"


async def test_info_button_shows_hint(flow, click, messenger, customer, merchant):
    await _open_user_form(click, messenger, customer, merchant)
    await click(customer, "eval_info_skill")
    assert messenger.answers[-1]["text"] == booking_flow.SCORE_HINT
    assert messenger.answers[-1]["alert"] is False


async def test_submit_stores_rounded_mean(flow, click, messenger, db, customer, merchant):
    session_id, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    evaluation = EvaluationService(db).get_evaluation(evaluation_id)
    assert evaluation["status"] == "completed"
    assert evaluation["overall_score"] == 8
    assert evaluation["detailed_scores"] == SCORES

    order = db.query_one("SELECT * FROM orders WHERE booking_session_id = ?", (session_id,))
    assert loads(order["user_evaluation"])["overall_score"] == 8
    rating = db.query_one("SELECT * FROM merchant_ratings WHERE merchant_id = ?", (merchant["id"],))
    assert rating["total_evaluations"] == 1
    assert rating["avg_overall_score"] == 8

    assert messenger.last(customer.id)["text"] == booking_flow.USER_TEXT_STEP
    assert messenger.callbacks(customer.id) == [f"user_text_skip_{evaluation_id}", f"user_text_submit_{evaluation_id}"]


async def test_scores_survive_restart(db, messenger, settings, clock, click, flow, customer, merchant):
    _, evaluation_id = await _open_user_form(click, messenger, customer, merchant)
    await click(customer, f"eval_score_skill_7_{evaluation_id}")

    restarted = BookingFlow(messenger, db=db, settings=settings, state=FlowState(clock))
    await restarted.handle_callback(make_callback(customer, f"eval_score_value_4_{evaluation_id}"))
    session = EvaluationService(db).get_session(customer.id, evaluation_id)
    assert session["temp_data"]["scores"] == {"skill": 7, "value": 4}


async def test_text_comment_then_broadcast_choice(flow, click, messenger, db, customer, merchant):
    session_id, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"user_text_submit_{evaluation_id}")
    assert messenger.answers[-1]["text"] == booking_flow.TEXT_MISSING_ALERT

    assert await flow.handle_text(customer, customer.id, "老师很耐心") is True
    evaluation = EvaluationService(db).get_evaluation(evaluation_id)
    assert evaluation["comments"] == "老师很耐心"
    order = db.query_one("SELECT * FROM orders WHERE booking_session_id = ?", (session_id,))
    assert loads(order["user_evaluation"])["textComment"] == "老师很耐心"
    assert EvaluationService(db).get_session(customer.id, evaluation_id) is None

    assert messenger.last(customer.id)["text"] == booking_flow.BROADCAST_CHOICE_TEXT
    assert evaluation_id in flow.state.broadcast_timers


async def test_skip_text_and_broadcast_real(flow, click, messenger, customer, merchant):
    _, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"user_text_skip_{evaluation_id}")
    await click(customer, f"broadcast_real_{evaluation_id}")

    group_message = messenger.last(GROUP)
    assert group_message["text"] == booking_flow.BROADCAST_TEXT.format(who="用户（@brave_chick）", teacher="林老师")
    assert messenger.pinned == [(GROUP, group_message["message_id"])]
    assert messenger.last(customer.id)["text"] == booking_flow.BROADCAST_DONE[False]
    assert flow.state.broadcast_timers == {}


async def test_broadcast_anonymous(flow, click, messenger, customer, merchant):
    _, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"user_text_skip_{evaluation_id}")
    await click(customer, f"broadcast_anon_{evaluation_id}")
    assert "隐藏用户" in messenger.last(GROUP)["text"]
    assert messenger.last(customer.id)["text"] == booking_flow.BROADCAST_DONE[True]


async def test_broadcast_times_out_to_anonymous(flow, click, messenger, customer, merchant):
    flow.settings.broadcast_timeout = 0
    _, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"user_text_skip_{evaluation_id}")
    choice = messenger.last(customer.id)
    await flow.state.broadcast_timers[evaluation_id]

    assert "隐藏用户" in messenger.last(GROUP)["text"]
    assert (customer.id, choice["message_id"]) in messenger.deleted


async def test_broadcast_without_group(flow, click, messenger, customer, merchant):
    flow.settings.group_chat_id = None
    _, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"user_text_skip_{evaluation_id}")
    await click(customer, f"broadcast_real_{evaluation_id}")
    assert messenger.last(customer.id)["text"] == booking_flow.BROADCAST_NO_GROUP


@pytest.mark.parametrize(
    "error, expected",
    [
        ("Bad Request: chat not found", "❌ 播报失败：群组未找到，请检查群组ID配置。"),
        ("Forbidden: bot was blocked by the user", "❌ 播报失败：机器人被群组封禁，请联系群组管理员。"),
        ("Internal Server Error", "❌ 播报失败，请联系管理员。"),
    ],
)
async def test_broadcast_errors_are_explained(flow, click, messenger, customer, merchant, error, expected):
    _, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"user_text_skip_{evaluation_id}")
    messenger.failures[GROUP] = error
    await click(customer, f"broadcast_real_{evaluation_id}")
    assert messenger.last(customer.id)["text"] == expected
    assert messenger.pinned == []


async def test_second_completion_click_is_already_evaluated(flow, click, messenger, customer, merchant):
    session_id, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"user_text_skip_{evaluation_id}")
    await click(customer, f"course_completed_{session_id}")
    assert messenger.last(customer.id)["text"] == booking_flow.ALREADY_EVALUATED_TEXT


async def test_order_completes_after_both_sides(flow, click, messenger, db, customer, teacher_user, merchant):
    session_id = await _confirmed_session(click, messenger, customer, merchant)
    await click(customer, f"course_completed_{session_id}")
    order = db.query_one("SELECT * FROM orders WHERE booking_session_id = ?", (session_id,))
    assert order["status"] == "confirmed"

    await click(teacher_user, f"course_completed_{session_id}")
    order = db.query_one("SELECT * FROM orders WHERE booking_session_id = ?", (session_id,))
    assert order["status"] == "completed"
    assert db.query_one("SELECT status FROM booking_sessions WHERE id = ?", (session_id,))["status"] == "completed"


async def test_unbound_merchant_completes_with_user_only(flow, click, messenger, db, customer, unbound_merchant):
    await click(customer, f"book_p_{unbound_merchant['id']}")
    session_id = _id_from(messenger, customer.id, "booking_success_")
    await click(customer, f"booking_success_{session_id}")
    await click(customer, f"course_completed_{session_id}")
    order = db.query_one("SELECT * FROM orders WHERE booking_session_id = ?", (session_id,))
    assert order["status"] == "completed"


async def test_course_incomplete_asks_to_rebook(flow, click, messenger, db, customer, merchant):
    session_id = await _confirmed_session(click, messenger, customer, merchant)
    await click(customer, f"course_incomplete_{session_id}")
    assert messenger.last(customer.id)["text"] == booking_flow.REBOOK_QUESTION
    session = db.query_one("SELECT * FROM booking_sessions WHERE id = ?", (session_id,))
    assert session["user_course_status"] == "incomplete"


async def _merchant_evaluation(click, messenger, customer, teacher_user, merchant):
    session_id = await _confirmed_session(click, messenger, customer, merchant)
    await click(teacher_user, f"course_completed_{session_id}")
    assert messenger.last(teacher_user.id)["text"] == booking_flow.MERCHANT_SCORE_PROMPT
    return session_id, _id_from(messenger, teacher_user.id, "eval_score_")


async def test_merchant_detailed_evaluation(flow, click, messenger, db, customer, teacher_user, merchant):
    session_id, evaluation_id = await _merchant_evaluation(click, messenger, customer, teacher_user, merchant)
    prompt = messenger.last(teacher_user.id)

    await click(teacher_user, f"eval_score_7_{evaluation_id}")
    assert (teacher_user.id, prompt["message_id"]) in messenger.deleted
    assert messenger.callbacks(teacher_user.id) == [f"eval_confirm_7_{evaluation_id}", f"eval_modify_{evaluation_id}"]

    await click(teacher_user, f"eval_confirm_7_{evaluation_id}")
    evaluations = EvaluationService(db)
    assert evaluations.get_evaluation(evaluation_id)["status"] == "overall_completed"
    assert messenger.last(teacher_user.id)["text"] == booking_flow.MERCHANT_DETAIL_QUESTION

    await click(teacher_user, f"merchant_detail_eval_start_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == "守时程度（输入数字1-10评分）："
    await click(teacher_user, f"merchant_detail_eval_punctuality_9_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_courtesy_8_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == "实际课程时长："
    assert len(messenger.callbacks(teacher_user.id)) == 8
    assert messenger.callbacks(teacher_user.id)[-1] == f"back_detail_{evaluation_id}"
    await click(teacher_user, f"merchant_detail_eval_duration_90min_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == booking_flow.MERCHANT_COMMENT_PROMPT

    assert await flow.handle_text(teacher_user, teacher_user.id, "勇士很准时") is True
    await click(teacher_user, f"merchant_detail_eval_confirm_{evaluation_id}")

    evaluation = evaluations.get_evaluation(evaluation_id)
    assert evaluation["status"] == "completed"
    assert evaluation["overall_score"] == 7
    assert evaluation["detailed_scores"] == {"punctuality": 9, "courtesy": 8, "duration": "90min"}
    assert evaluation["comments"] == "勇士很准时"
    assert evaluations.get_session(teacher_user.id, evaluation_id) is None
    assert messenger.texts(teacher_user.id)[-2:] == [
        booking_flow.MERCHANT_DETAIL_DONE_TEXT,
        booking_flow.MERCHANT_FAREWELL_TEXT,
    ]

    order = db.query_one("SELECT * FROM orders WHERE booking_session_id = ?", (session_id,))
    assert loads(order["merchant_evaluation"])["textComment"] == "勇士很准时"
    rating = db.query_one("SELECT * FROM user_ratings WHERE user_id = ?", (customer.id,))
    assert rating["avg_overall_score"] == 7
    assert rating["avg_detail_score"] == 8.5


async def test_merchant_skips_details(flow, click, messenger, db, customer, teacher_user, merchant):
    _, evaluation_id = await _merchant_evaluation(click, messenger, customer, teacher_user, merchant)
    await click(teacher_user, f"eval_score_3_{evaluation_id}")
    await click(teacher_user, f"eval_modify_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == booking_flow.MERCHANT_SCORE_PROMPT
    await click(teacher_user, f"eval_score_6_{evaluation_id}")
    await click(teacher_user, f"eval_confirm_6_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_no_{evaluation_id}")

    evaluation = EvaluationService(db).get_evaluation(evaluation_id)
    assert evaluation["status"] == "completed"
    assert evaluation["overall_score"] == 6
    assert messenger.last(teacher_user.id)["text"] == booking_flow.MERCHANT_DONE_TEXT


async def test_user_cannot_touch_merchant_evaluation(flow, click, messenger, customer, teacher_user, merchant):
    _, evaluation_id = await _merchant_evaluation(click, messenger, customer, teacher_user, merchant)
    await click(customer, f"eval_confirm_9_{evaluation_id}")
    assert messenger.last(customer.id)["text"] == "❌ 您无权操作该评价"


async def test_shutdown_cancels_broadcast_timer(flow, click, messenger, customer, merchant):
    _, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"user_text_skip_{evaluation_id}")
    timer = flow.state.broadcast_timers[evaluation_id]
    await flow.shutdown()
    assert timer.cancelled()
    assert flow.state.broadcast_timers == {}
    await asyncio.sleep(0)
    assert messenger.texts(GROUP) == []


async def test_back_from_user_form_to_completion_check(flow, click, messenger, db, customer, merchant):
    session_id, evaluation_id = await _open_user_form(click, messenger, customer, merchant)
    hardware, software = messenger.sent[-2:]
    assert software["keyboard"][-1][1].callback_data == f"back_evaluation_{evaluation_id}"
    await click(customer, f"eval_score_skill_7_{evaluation_id}")

    await click(customer, f"back_evaluation_{evaluation_id}", message_id=software["message_id"])
    assert (customer.id, hardware["message_id"]) in messenger.deleted
    assert (customer.id, software["message_id"]) in messenger.deleted
    assert messenger.last(customer.id)["text"] == "是否完成该老师（林老师 @teacher_lin）的课程？"
    assert EvaluationService(db).get_session(customer.id, evaluation_id) is None

    await click(customer, f"course_completed_{session_id}")
    assert _id_from(messenger, customer.id, "eval_score_") == evaluation_id
    assert "⏳ 请完成所有评价 (0/12)" == messenger.last(customer.id)["keyboard"][-1][0].text


async def test_back_after_submit_is_already_evaluated(flow, click, messenger, customer, merchant):
    _, evaluation_id = await _submit_user_evaluation(click, messenger, customer, merchant)
    await click(customer, f"back_evaluation_{evaluation_id}")
    assert messenger.last(customer.id)["text"] == booking_flow.ALREADY_EVALUATED_TEXT


async def test_back_from_rebook_question_to_completion_check(flow, click, messenger, customer, merchant):
    session_id = await _confirmed_session(click, messenger, customer, merchant)
    await click(customer, f"course_incomplete_{session_id}")
    assert messenger.callbacks(customer.id)[-1] == f"back_completion_{session_id}"

    await click(customer, f"back_completion_{session_id}")
    assert messenger.callbacks(customer.id) == [
        f"course_completed_{session_id}",
        f"course_incomplete_{session_id}",
        f"back_contact_{session_id}",
    ]


async def test_merchant_back_from_score_to_completion_check(flow, click, messenger, customer, teacher_user, merchant):
    session_id, evaluation_id = await _merchant_evaluation(click, messenger, customer, teacher_user, merchant)
    assert messenger.callbacks(teacher_user.id)[-1] == f"back_evaluation_{evaluation_id}"

    await click(teacher_user, f"back_evaluation_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == "是否完成该用户（小 鸡）的课程？"
    assert messenger.callbacks(teacher_user.id) == [f"course_completed_{session_id}", f"course_incomplete_{session_id}"]

    await click(teacher_user, f"course_completed_{session_id}")
    assert _id_from(messenger, teacher_user.id, "eval_score_") == evaluation_id


async def test_merchant_detail_back_steps(flow, click, messenger, db, customer, teacher_user, merchant):
    _, evaluation_id = await _merchant_evaluation(click, messenger, customer, teacher_user, merchant)
    evaluations = EvaluationService(db)
    await click(teacher_user, f"eval_score_8_{evaluation_id}")
    await click(teacher_user, f"eval_confirm_8_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_start_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_punctuality_9_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == "礼貌程度（输入数字1-10评分）："

    await click(teacher_user, f"back_detail_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == "守时程度（输入数字1-10评分）："
    assert evaluations.get_session(teacher_user.id, evaluation_id)["current_step"] == "punctuality"

    await click(teacher_user, f"back_detail_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == booking_flow.MERCHANT_DETAIL_QUESTION

    await click(teacher_user, f"merchant_detail_eval_start_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_punctuality_9_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_courtesy_8_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_duration_30min_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == booking_flow.MERCHANT_COMMENT_PROMPT

    await click(teacher_user, f"back_detail_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == "实际课程时长："
    await click(teacher_user, f"merchant_detail_eval_duration_2hour_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_confirm_{evaluation_id}")
    assert evaluations.get_evaluation(evaluation_id)["detailed_scores"] == {
        "punctuality": 9,
        "courtesy": 8,
        "duration": "2hour",
    }


async def test_detail_back_after_completion_is_expired(flow, click, messenger, customer, teacher_user, merchant):
    _, evaluation_id = await _merchant_evaluation(click, messenger, customer, teacher_user, merchant)
    await click(teacher_user, f"eval_score_5_{evaluation_id}")
    await click(teacher_user, f"eval_confirm_5_{evaluation_id}")
    await click(teacher_user, f"merchant_detail_eval_no_{evaluation_id}")
    await click(teacher_user, f"back_detail_{evaluation_id}")
    assert messenger.last(teacher_user.id)["text"] == booking_flow.EVALUATION_EXPIRED_TEXT
