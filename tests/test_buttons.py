"""Inline buttons: keyboard rendering, callback data and click actions."""

from __future__ import annotations

from database.db import db
from database.models import Automation, AutomationStep
from helpdesk.services.automation_runs import AutomationRunLogger
from helpdesk.services.automation_steps import Button, parse_kind, parse_step
from helpdesk.services.button_service import (
    CALLBACK_DATA_LIMIT,
    build_callback_data,
    build_keyboard,
    parse_callback_data,
)
from tests.factories import create_automation, create_channel, create_conversation, create_tag

BUTTONS = [
    {"text": "Website", "url": "https://example.com"},
    {"text": "Docs", "action": "send_text", "action_config": {"text": "Docs for {client_name}"}},
    {"text": "Nothing"},
    {"text": "VIP", "action": "add_tag", "action_config": {"tag_id": 5}},
    {"text": "Brochure", "action": "send_file", "action_config": {"url": "automation/files/brochure.pdf"}},
    {"text": "Unlink", "action": "remove_tag", "action_config": {"tag_ids": [5]}},
]


class TestCallbackData:
    def test_short_form(self) -> None:
        assert build_callback_data("s1", 2) == "s1:2"
        ref = parse_callback_data("s1-s0:3")
        assert (ref.step_key, ref.index, ref.digest) == ("s1-s0", 3, None)

    def test_long_step_ids_are_hashed(self) -> None:
        data = build_callback_data("welcome-" + "x" * 60, 1)
        assert data.startswith("b") and data.endswith("_1")
        assert len(data) <= CALLBACK_DATA_LIMIT
        ref = parse_callback_data(data)
        assert ref.index == 1 and ref.step_key is None and len(ref.digest) == 16

    def test_garbage(self) -> None:
        assert parse_callback_data("hello") is None
        assert parse_callback_data("s1:x") is None
        assert parse_callback_data(None) is None

    def test_keyboard_skips_buttons_without_target(self) -> None:
        kind = parse_kind("send_text_with_buttons", {"text": "Pick", "buttons": BUTTONS[:3]})
        step = parse_step(AutomationStep(id=1, step_id="s1", type="send_text_with_buttons", config={}, order=0))
        assert build_keyboard(step, kind.buttons) == [
            [{"text": "Website", "url": "https://example.com"}],
            [{"text": "Docs", "callback_data": "s1:1"}],
        ]

    def test_button_without_text_is_skipped(self) -> None:
        step = parse_step(AutomationStep(id=1, step_id="s1", type="send_text", config={}, order=0))
        assert build_keyboard(step, (Button(text="", action="send_text"),)) == []


async def _buttons_flow(engine, conversation):
    await create_automation(
        "new_conversation",
        [("send_text_with_buttons", {"text": "Pick, {client_first_name}", "buttons": BUTTONS})],
    )
    await engine.trigger_new_conversation(conversation.id)


async def test_step_sends_keyboard_and_records_buttons(engine, gateway, conversations):
    channel = await create_channel()
    conversation = await create_conversation(channel)

    await _buttons_flow(engine, conversation)

    [call] = gateway.calls
    assert call["text"] == "Pick, Anna"
    assert call["buttons"][:2] == [
        [{"text": "Website", "url": "https://example.com"}],
        [{"text": "Docs", "callback_data": "s1:1"}],
    ]
    assert len(call["buttons"]) == 5
    [message] = await conversations.get_messages(conversation.id)
    assert [b["text"] for b in message.meta["inline_buttons"]] == [b["text"] for b in BUTTONS]


async def test_step_with_image_sends_photo(engine, gateway, conversations):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await create_automation(
        "new_conversation",
        [("send_text_with_buttons", {"text": "Look", "url": "automation/images/promo.png", "buttons": BUTTONS[:1]})],
    )

    await engine.trigger_new_conversation(conversation.id)

    [call] = gateway.calls
    assert call["method"] == "send_photo"
    assert call["caption"] == "Look"
    [message] = await conversations.get_messages(conversation.id)
    assert message.attachments == [{"url": "/storage/automation/images/promo.png", "type": "image"}]


async def test_url_button_keeps_keyboard(engine, buttons):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await _buttons_flow(engine, conversation)

    outcome = await buttons.handle_callback(conversation.id, "s1:0")

    assert outcome.handled and not outcome.hide_buttons


async def test_send_text_action(engine, buttons, gateway, conversations):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await _buttons_flow(engine, conversation)

    outcome = await buttons.handle_callback(conversation.id, "s1:1")

    assert outcome.handled and outcome.hide_buttons
    assert gateway.texts()[-1] == "Docs for Anna"
    last = (await conversations.get_messages(conversation.id))[-1]
    assert last.meta["sent_by"] == "button"


async def test_button_without_action_hides_keyboard(engine, buttons):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await _buttons_flow(engine, conversation)

    outcome = await buttons.handle_callback(conversation.id, "s1:2")

    assert not outcome.handled and outcome.hide_buttons


async def test_unknown_button(engine, buttons):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await _buttons_flow(engine, conversation)

    for data in ("s1:42", "nope:0", "garbage"):
        outcome = await buttons.handle_callback(conversation.id, data)
        assert not outcome.handled and not outcome.hide_buttons


async def test_tag_actions_do_not_fire_tag_automations(engine, buttons, tags, conversations):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await create_tag("VIP", tag_id=5)
    tag_flow = await create_automation("tag_added", [("send_text", {"text": "tagged"})])
    await _buttons_flow(engine, conversation)

    await buttons.handle_callback(conversation.id, "s1:3")
    assert await tags.client_tag_ids(conversation.client_id) == {5}
    await buttons.handle_callback(conversation.id, "s1:5")
    assert await tags.client_tag_ids(conversation.client_id) == set()

    assert await AutomationRunLogger().list_runs(tag_flow.id) == []
    actions = [m.meta.get("system_action") for m in await conversations.get_messages(conversation.id)]
    assert actions == [None, "tag_added", "tag_removed"]


async def test_file_action(engine, buttons, gateway, conversations):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await _buttons_flow(engine, conversation)

    await buttons.handle_callback(conversation.id, "s1:4")

    call = gateway.calls[-1]
    assert call["method"] == "send_document"
    assert call["media"] == "automation/files/brochure.pdf"
    last = (await conversations.get_messages(conversation.id))[-1]
    assert last.type == "file"
    assert last.attachments == [{"url": "/storage/automation/files/brochure.pdf", "type": "file"}]


async def test_hashed_callback_resolves(database, buttons):
    long_id = "welcome-" + "x" * 60
    async with db.session() as session:
        automation = Automation(name="Long ids", trigger="new_conversation", trigger_config={})
        session.add(automation)
        await session.flush()
        session.add(
            AutomationStep(
                automation_id=automation.id,
                step_id=long_id,
                type="send_text_with_buttons",
                config={"text": "Pick", "buttons": BUTTONS},
                order=0,
            )
        )

    button = await buttons.find_button(build_callback_data(long_id, 1))

    assert button is not None and button.text == "Docs"


async def test_group_member_buttons(engine, buttons, gateway):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await create_automation(
        "new_conversation",
        [("group", {"name": "Menu", "steps": [{"type": "send_text_with_buttons", "config": {"text": "Pick", "buttons": BUTTONS}}]})],
    )
    await engine.trigger_new_conversation(conversation.id)

    assert gateway.calls[0]["buttons"][1] == [{"text": "Docs", "callback_data": "s1-s0:1"}]
    button = await buttons.find_button("s1-s0:1")
    assert button.text == "Docs"
    assert (await buttons.handle_callback(conversation.id, "s1-s0:1")).handled


async def test_click_ignores_plain_step_with_same_step_id(engine, buttons):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    await create_automation("tag_added", [("send_text", {"text": "tagged"})])
    await _buttons_flow(engine, conversation)

    button = await buttons.find_button("s1:1")

    assert button is not None and button.text == "Docs"


async def test_click_prefers_automation_that_ran_in_conversation(engine, buttons, gateway):
    channel = await create_channel()
    conversation = await create_conversation(channel)
    sales_buttons = [{"text": "Prices", "action": "send_text", "action_config": {"text": "Price list"}}]
    await create_automation(
        "new_conversation", [("send_text_with_buttons", {"text": "Sales", "buttons": sales_buttons})], is_active=False
    )
    await _buttons_flow(engine, conversation)

    assert (await buttons.find_button("s1:0")).text == "Prices"
    assert (await buttons.find_button("s1:0", conversation.id)).text == "Website"

    await buttons.handle_callback(conversation.id, "s1:1")
    assert gateway.texts()[-1] == "Docs for Anna"


async def test_duplicate_callback_ids(buttons):
    assert not buttons.is_duplicate_callback("q1")
    assert buttons.is_duplicate_callback("q1")
    assert not buttons.is_duplicate_callback("q2")
    assert not buttons.is_duplicate_callback(None)
