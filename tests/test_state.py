from xiaoji_booking.flow import extract_action_type, is_form_click
from xiaoji_booking.state import BOOKING_COOLDOWN, FlowState, MessageHistory, TTLMap


def test_ttl_map_hit_and_expiry(clock):
    cooldowns = TTLMap(10, clock)
    assert cooldowns.hit("a") is False
    assert cooldowns.hit("a") is True
    clock.advance(10)
    assert cooldowns.hit("a") is False
    cooldowns.clear("a")
    assert cooldowns.active("a") is False


def test_flow_state_purge(clock):
    state = FlowState(clock)
    state.recent_actions.hit((1, "attack"))
    state.booking_cooldowns.hit((1, 2))
    clock.advance(60)
    assert state.purge() == {"recent_actions": 1, "booking_cooldowns": 0, "trigger_cooldowns": 0}
    clock.advance(BOOKING_COOLDOWN)
    assert state.purge()["booking_cooldowns"] == 1
    assert len(state.booking_cooldowns) == 0


def test_message_history_limit_and_remove():
    history = MessageHistory(limit=3)
    for message_id in range(1, 6):
        history.add(7, message_id, "general")
    assert [entry.message_id for entry in history.entries(7)] == [3, 4, 5]
    history.remove(7, 4)
    assert history.last(7).message_id == 5
    assert [entry.message_id for entry in history.pop_all(7)] == [3, 5]
    assert history.last(7) is None


def test_message_history_take_by_kind():
    history = MessageHistory()
    history.add(7, 1, "user_evaluation")
    history.add(7, 2, "general")
    history.add(7, 3, "user_evaluation")
    assert [entry.message_id for entry in history.take(7, "user_evaluation")] == [1, 3]
    assert [entry.message_id for entry in history.entries(7)] == [2]
    assert history.take(7, "user_evaluation") == []
    assert history.take(8, "general") == []


def test_extract_action_type():
    assert extract_action_type("attack_3") == "attack"
    assert extract_action_type("book_pp_3") == "book_pp"
    assert extract_action_type("course_completed_9") == "course_completed"
    assert extract_action_type("broadcast_anon_4") == "broadcast_anon"
    assert extract_action_type("merchant_detail_eval_courtesy_8_4") == "merchant_detail_eval_courtesy"
    assert extract_action_type("rebook_yes_2") == "rebook"
    assert extract_action_type("back_detail_4") == "back_detail"


def test_form_clicks():
    assert is_form_click("eval_score_skill_7_3")
    assert is_form_click("eval_incomplete")
    assert not is_form_click("eval_confirm_7_3")
