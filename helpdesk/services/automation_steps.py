"""
Automation step kinds.

Each stored `automation_steps` row (or a nested entry of a group step) is
parsed into exactly one variant below. The interpreter dispatches on the
variant with a `match` statement closed by `assert_never`, so a new kind has
to be handled there before type checking passes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Union

from database.models import AutomationStep

logger = logging.getLogger(__name__)

MAX_DELAY_SECONDS = 300

MediaKind = Literal["image", "video", "file"]


@dataclass(frozen=True)
class SendText:
    text: str


@dataclass(frozen=True)
class Button:
    text: str
    url: str | None = None
    action: str | None = None
    action_config: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SendTextWithButtons:
    text: str
    image_url: str
    buttons: tuple[Button, ...]


@dataclass(frozen=True)
class SendMedia:
    kind: MediaKind
    url: str
    caption: str


@dataclass(frozen=True)
class Delay:
    seconds: int

    @property
    def is_valid(self) -> bool:
        return 0 < self.seconds <= MAX_DELAY_SECONDS


@dataclass(frozen=True)
class Condition:
    condition_type: str
    condition_value: str

    def to_config(self) -> dict:
        return {"condition_type": self.condition_type, "condition_value": self.condition_value}


@dataclass(frozen=True)
class AddTag:
    tag_ids: tuple[int, ...]
    tag_name: str | None = None


@dataclass(frozen=True)
class RemoveTag:
    tag_ids: tuple[int, ...]
    tag_name: str | None = None


@dataclass(frozen=True)
class AssignOperator:
    operator_id: int | None


@dataclass(frozen=True)
class CloseConversation:
    pass


@dataclass(frozen=True)
class Group:
    name: str
    steps: tuple["StepSpec", ...]


@dataclass(frozen=True)
class UnknownStep:
    type: str


StepKind = Union[
    SendText,
    SendTextWithButtons,
    SendMedia,
    Delay,
    Condition,
    AddTag,
    RemoveTag,
    AssignOperator,
    CloseConversation,
    Group,
    UnknownStep,
]


@dataclass(frozen=True)
class StepSpec:
    """
    A parsed step plus its sequencing data.

    `next_step_id` and the condition branch ids are carried for the flow
    editor only; execution order comes from `order`.
    """

    step_id: str
    type: str
    kind: StepKind
    order: int = 0
    db_id: int | None = None
    next_step_id: str | None = None
    condition_true_step_id: str | None = None
    condition_false_step_id: str | None = None
    # Group members answer button callbacks as `<group step_id>-s<index>`.
    button_key: str | None = None

    @property
    def callback_key(self) -> str:
        return self.button_key or self.step_id


def parse_step(row: AutomationStep) -> StepSpec:
    step_id = row.step_id or f"step-{row.id}"
    return StepSpec(
        step_id=step_id,
        type=row.type,
        kind=parse_kind(row.type, row.config or {}, step_id=step_id),
        order=int(row.order or 0),
        db_id=int(row.id) if row.id is not None else None,
        next_step_id=row.next_step_id,
        condition_true_step_id=row.condition_true_step_id,
        condition_false_step_id=row.condition_false_step_id,
    )


def parse_steps(rows: list[AutomationStep]) -> list[StepSpec]:
    """Steps in execution order (`order`, then row id for ties)."""
    ordered = sorted(rows, key=lambda r: (int(r.order or 0), int(r.id or 0)))
    return [parse_step(r) for r in ordered]


def parse_kind(step_type: str, config: dict, *, step_id: str = "") -> StepKind:
    config = config if isinstance(config, dict) else {}
    match step_type:
        case "send_text":
            return SendText(text=str(config.get("text") or ""))
        case "send_text_with_buttons":
            return SendTextWithButtons(
                text=str(config.get("text") or ""),
                image_url=str(config.get("url") or ""),
                buttons=tuple(_parse_buttons(config.get("buttons"))),
            )
        case "send_image" | "send_video" | "send_file":
            return SendMedia(
                kind=step_type.removeprefix("send_"),
                url=str(config.get("url") or ""),
                caption=str(config.get("text") or ""),
            )
        case "delay":
            return Delay(seconds=_int(config.get("delay_seconds"), default=0))
        case "condition":
            return Condition(
                condition_type=str(config.get("condition_type") or ""),
                condition_value=str(config.get("condition_value") or ""),
            )
        case "add_tag":
            return AddTag(tag_ids=_tag_ids(config), tag_name=_str_or_none(config.get("tag_name")))
        case "remove_tag":
            return RemoveTag(tag_ids=_tag_ids(config), tag_name=_str_or_none(config.get("tag_name")))
        case "assign_operator":
            return AssignOperator(operator_id=_int(config.get("operator_id"), default=None))
        case "close_conversation" | "close_chat":
            return CloseConversation()
        case "group":
            return Group(
                name=str(config.get("name") or "Unnamed group"),
                steps=tuple(_parse_group_steps(step_id, config.get("steps"))),
            )
        case _:
            return UnknownStep(type=str(step_type))


def group_member_id(group_step_id: str, index: int) -> str:
    """Identity of the `index`-th step inside a group step."""
    return f"{group_step_id}-s{index}"


def _parse_group_steps(group_step_id: str, raw) -> list[StepSpec]:
    if not isinstance(raw, list):
        return []
    steps: list[StepSpec] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            logger.warning(f"Group {group_step_id}: ignoring malformed nested step at index {index}")
            continue
        step_type = str(item.get("type") or "send_text")
        member_id = group_member_id(group_step_id, index)
        nested_id = str(item.get("step_id") or member_id)
        steps.append(
            StepSpec(
                step_id=nested_id,
                type=step_type,
                kind=parse_kind(step_type, item.get("config") or {}, step_id=member_id),
                order=index,
                button_key=member_id,
            )
        )
    return steps


def _parse_buttons(raw) -> list[Button]:
    """Keeps list positions: button index `i` always refers to `config.buttons[i]`."""
    if not isinstance(raw, list):
        return []
    buttons = []
    for item in raw:
        item = item if isinstance(item, dict) else {}
        action_config = item.get("action_config")
        buttons.append(
            Button(
                text=str(item.get("text") or ""),
                url=_str_or_none(item.get("url")),
                action=_str_or_none(item.get("action")),
                action_config=action_config if isinstance(action_config, dict) else {},
            )
        )
    return buttons


def _tag_ids(config: dict) -> tuple[int, ...]:
    raw = config.get("tag_ids")
    values = list(raw) if isinstance(raw, (list, tuple)) else []
    if config.get("tag_id") not in (None, ""):
        values.append(config.get("tag_id"))
    ids: list[int] = []
    for value in values:
        tag_id = _int(value, default=None)
        if tag_id and tag_id > 0 and tag_id not in ids:
            ids.append(tag_id)
    return tuple(ids)


def _int(value, *, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _str_or_none(value) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None
