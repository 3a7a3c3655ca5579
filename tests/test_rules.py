"""Pure helpers: keyword/tag trigger rules, condition evaluation, step parsing, variables, media paths."""

from __future__ import annotations

from database.models import AutomationStep, Channel, Client, Conversation
from helpdesk.services.automation_conditions import ConditionState, evaluate_condition
from helpdesk.services.automation_steps import (
    AddTag,
    AssignOperator,
    CloseConversation,
    Condition,
    Delay,
    Group,
    RemoveTag,
    SendMedia,
    SendText,
    SendTextWithButtons,
    UnknownStep,
    parse_kind,
    parse_step,
    parse_steps,
)
from helpdesk.services.automation_triggers import keyword_matches, parse_keywords, tag_trigger_matches
from helpdesk.services.tag_service import default_color
from helpdesk.utils.storage import is_remote, local_path, public_url
from helpdesk.utils.variables import build_variables, render


class TestKeywords:
    def test_parse_trims_and_lowercases(self) -> None:
        assert parse_keywords(" Refund, Возврат ,, ") == ["refund", "возврат"]

    def test_parse_accepts_list(self) -> None:
        assert parse_keywords(["Price ", "cost"]) == ["price", "cost"]

    def test_substring_match_is_case_insensitive(self) -> None:
        config = {"keywords": "refund, возврат"}
        assert keyword_matches(config, "Хочу оформить ВОЗВРАТ")
        assert keyword_matches(config, "REFUNDS please")

    def test_substring_not_token(self) -> None:
        assert keyword_matches({"keywords": "pay"}, "repayment")

    def test_no_match(self) -> None:
        assert not keyword_matches({"keywords": "refund"}, "hello")

    def test_empty_keyword_list_never_matches(self) -> None:
        assert not keyword_matches({"keywords": " , "}, "anything")
        assert not keyword_matches({}, "anything")
        assert not keyword_matches(None, "anything")

    def test_missing_text(self) -> None:
        assert not keyword_matches({"keywords": "a"}, None)


class TestTagTriggerRule:
    def test_without_tag_id_any_change_matches(self) -> None:
        assert tag_trigger_matches({}, (3,))

    def test_configured_tag_must_be_among_changed(self) -> None:
        assert tag_trigger_matches({"tag_id": "5"}, (4, 5))
        assert not tag_trigger_matches({"tag_id": 5}, (4,))

    def test_invalid_tag_id(self) -> None:
        assert not tag_trigger_matches({"tag_id": "vip"}, (5,))


class TestConditions:
    def test_has_tag(self) -> None:
        state = ConditionState(client_tag_ids=frozenset({7}))
        assert evaluate_condition(state, "has_tag", "7")
        assert not evaluate_condition(state, "has_tag", "8")
        assert not evaluate_condition(state, "has_tag", "")

    def test_message_contains_uses_latest_incoming(self) -> None:
        state = ConditionState(latest_incoming_text="My ORDER is late")
        assert evaluate_condition(state, "message_contains", "order")
        assert not evaluate_condition(state, "message_contains", "refund")
        assert not evaluate_condition(state, "message_contains", "")

    def test_message_contains_without_messages(self) -> None:
        assert not evaluate_condition(ConditionState(), "message_contains", "x")

    def test_any_message(self) -> None:
        assert evaluate_condition(ConditionState(), "any_message", "")

    def test_is_new_client(self) -> None:
        assert evaluate_condition(ConditionState(client_conversation_count=1), "is_new_client", "")
        assert not evaluate_condition(ConditionState(client_conversation_count=2), "is_new_client", "")

    def test_unknown_kind_is_false(self) -> None:
        assert not evaluate_condition(ConditionState(), "weather_is_nice", "yes")
        assert not evaluate_condition(ConditionState(), None, None)


class TestStepParsing:
    def test_kinds(self) -> None:
        assert parse_kind("send_text", {"text": "hi"}) == SendText(text="hi")
        assert parse_kind("send_image", {"url": "a.png", "text": "cap"}) == SendMedia("image", "a.png", "cap")
        assert parse_kind("send_file", {"url": "a.pdf"}) == SendMedia("file", "a.pdf", "")
        assert parse_kind("delay", {"delay_seconds": "15"}) == Delay(seconds=15)
        assert parse_kind("delay", {"delay_seconds": "soon"}) == Delay(seconds=0)
        assert parse_kind("condition", {"condition_type": "has_tag", "condition_value": 7}) == Condition("has_tag", "7")
        assert parse_kind("assign_operator", {"operator_id": "3"}) == AssignOperator(operator_id=3)
        assert parse_kind("close_conversation", {}) == CloseConversation()
        assert parse_kind("close_chat", {}) == CloseConversation()
        assert parse_kind("teleport", {}) == UnknownStep(type="teleport")

    def test_tag_ids_merge_and_dedupe(self) -> None:
        kind = parse_kind("add_tag", {"tag_ids": [3, "4", 0, "x", 3], "tag_id": 5})
        assert kind == AddTag(tag_ids=(3, 4, 5))
        assert parse_kind("remove_tag", {"tag_name": " VIP "}) == RemoveTag(tag_ids=(), tag_name="VIP")

    def test_delay_bounds(self) -> None:
        assert Delay(1).is_valid and Delay(300).is_valid
        assert not Delay(0).is_valid
        assert not Delay(301).is_valid
        assert not Delay(-5).is_valid

    def test_buttons_keep_positions(self) -> None:
        kind = parse_kind(
            "send_text_with_buttons",
            {"text": "t", "url": "pic.png", "buttons": [{"text": "Site", "url": "https://x"}, "junk", {"text": "Go", "action": "send_text"}]},
        )
        assert isinstance(kind, SendTextWithButtons)
        assert kind.image_url == "pic.png"
        assert [b.text for b in kind.buttons] == ["Site", "", "Go"]

    def test_group_members_get_positional_ids(self) -> None:
        kind = parse_kind(
            "group",
            {"name": "Intro", "steps": [{"type": "send_text", "config": {"text": "a"}}, {"step_id": "own", "type": "delay"}]},
            step_id="g1",
        )
        assert isinstance(kind, Group)
        assert [s.step_id for s in kind.steps] == ["g1-s0", "own"]
        assert [s.callback_key for s in kind.steps] == ["g1-s0", "g1-s1"]

    def test_branch_pointers_are_carried_not_used_for_order(self) -> None:
        rows = [
            AutomationStep(id=2, step_id="b", type="send_text", config={"text": "b"}, order=2, next_step_id="a"),
            AutomationStep(id=1, step_id="a", type="send_text", config={"text": "a"}, order=1, next_step_id="zzz"),
        ]
        steps = parse_steps(rows)
        assert [s.step_id for s in steps] == ["a", "b"]
        assert steps[0].next_step_id == "zzz"

    def test_missing_step_id_falls_back_to_row_id(self) -> None:
        row = AutomationStep(id=9, step_id=None, type="send_text", config=None, order=0)
        assert parse_step(row).step_id == "step-9"


class TestVariables:
    def _conversation(self, name="Anna Maria", phone=None) -> Conversation:
        conversation = Conversation(id=42, channel_id=1, meta={})
        conversation.client = Client(id=1, name=name, phone=phone, email="a@example.com")
        conversation.channel = Channel(id=1, name="Support")
        return conversation

    def test_all_tokens(self) -> None:
        text = "{client_name}|{client_first_name}|{client_phone}|{client_email}|{conversation_id}|{chat_id}|{channel_name}"
        assert render(text, build_variables(self._conversation())) == "Anna Maria|Anna||a@example.com|42|42|Support"

    def test_missing_client_name_renders_empty(self) -> None:
        assert render("Hi {client_name}!", build_variables(self._conversation(name=None))) == "Hi !"

    def test_no_escaping(self) -> None:
        variables = build_variables(self._conversation(name="<b>Bob</b>"))
        assert render("Hi {client_first_name}", variables) == "Hi <b>Bob</b>"

    def test_unknown_tokens_left_alone(self) -> None:
        assert render("{unknown}", {"client_name": "x"}) == "{unknown}"


class TestStorage:
    def test_remote(self) -> None:
        assert is_remote("https://cdn/x.png")
        assert not is_remote("automation/x.png")

    def test_public_url(self) -> None:
        assert public_url("automation/images/a.png") == "/storage/automation/images/a.png"
        assert public_url("/storage/a.png") == "/storage/a.png"
        assert public_url("https://cdn/a.png") == "https://cdn/a.png"

    def test_local_path_strips_public_prefix(self, tmp_path) -> None:
        assert local_path("/storage/a/b.png", str(tmp_path)) == tmp_path / "a" / "b.png"
        assert local_path("a/b.png", str(tmp_path)) == tmp_path / "a" / "b.png"

    def test_default_tag_color(self) -> None:
        color = default_color("VIP")
        assert color.startswith("#") and len(color) == 7
        assert color == default_color("VIP")
