"""
Canonical shot types. Platform-wide source of truth for what can be uploaded
per look (input views) and what gets generated (output shot types).

Camera rules are enforced, not user-configurable: a back shot is only ever
generated from a back input.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class InputView(str, Enum):
    FRONT_FULL = "INPUT_FRONT_FULL"
    BACK_FULL = "INPUT_BACK_FULL"
    DETAIL = "INPUT_DETAIL"
    SIDE = "INPUT_SIDE"


class ShotType(str, Enum):
    FRONT_FULL = "FRONT_FULL"
    FRONT_CROPPED = "FRONT_CROPPED"
    DETAIL = "DETAIL"
    BACK_FULL = "BACK_FULL"


ALL_OUTPUT_SHOT_TYPES = [
    ShotType.FRONT_FULL,
    ShotType.FRONT_CROPPED,
    ShotType.DETAIL,
    ShotType.BACK_FULL,
]

OUTPUT_SHOT_LABELS = {
    ShotType.FRONT_FULL: "Front (Full)",
    ShotType.FRONT_CROPPED: "Front (Cropped)",
    ShotType.DETAIL: "Detail",
    ShotType.BACK_FULL: "Back (Full)",
}

INPUT_VIEW_LABELS = {
    InputView.FRONT_FULL: "Static Full Front",
    InputView.BACK_FULL: "Static Full Back",
    InputView.DETAIL: "Static Detail",
    InputView.SIDE: "Static Side",
}

# Export folder per shot type
SHOT_TYPE_FOLDER_NAMES = {
    ShotType.FRONT_FULL: "front_full",
    ShotType.FRONT_CROPPED: "front_cropped",
    ShotType.DETAIL: "detail",
    ShotType.BACK_FULL: "back_full",
}

# ── Legacy slots ─────────────────────────────────────────────────────

SLOT_TO_SHOT_TYPE = {
    "A": ShotType.FRONT_FULL,
    "B": ShotType.FRONT_CROPPED,
    "C": ShotType.BACK_FULL,
    "D": ShotType.DETAIL,
}

SHOT_TYPE_TO_SLOT = {shot: slot for slot, shot in SLOT_TO_SHOT_TYPE.items()}


def slot_to_shot_type(slot: Optional[str]) -> Optional[ShotType]:
    if not slot:
        return None
    return SLOT_TO_SHOT_TYPE.get(slot.upper())


def shot_type_to_slot(shot_type: ShotType) -> str:
    return SHOT_TYPE_TO_SLOT[ShotType(shot_type)]


def resolve_shot_type(shot_type: Optional[str], slot: Optional[str] = None) -> Optional[ShotType]:
    """Prefer the explicit shot type, fall back to the legacy slot."""
    if shot_type:
        try:
            return ShotType(shot_type)
        except ValueError:
            pass
    return slot_to_shot_type(slot)


# ── Camera → output rules ────────────────────────────────────────────

INPUT_TO_OUTPUT_RULES = {
    InputView.FRONT_FULL: [ShotType.FRONT_FULL, ShotType.FRONT_CROPPED, ShotType.DETAIL],
    InputView.BACK_FULL: [ShotType.BACK_FULL],
    InputView.DETAIL: [ShotType.DETAIL],
    InputView.SIDE: [],
}

OUTPUT_REQUIRED_INPUT = {
    ShotType.FRONT_FULL: InputView.FRONT_FULL,
    ShotType.FRONT_CROPPED: InputView.FRONT_FULL,
    ShotType.DETAIL: InputView.FRONT_FULL,
    ShotType.BACK_FULL: InputView.BACK_FULL,
}


def parse_view(view: str) -> Optional[InputView]:
    """Map a free-form view label ("Front View - IMG_0042.jpg") to an input view."""
    lower = (view or "").lower()
    if "front" in lower:
        return InputView.FRONT_FULL
    if "back" in lower:
        return InputView.BACK_FULL
    if "detail" in lower:
        return InputView.DETAIL
    if "side" in lower:
        return InputView.SIDE
    return None


def allowed_outputs_for_input(input_view: InputView) -> list[ShotType]:
    return list(INPUT_TO_OUTPUT_RULES[InputView(input_view)])


@dataclass
class OutputAvailability:
    can_generate: bool
    source: Optional[InputView]
    is_derived: bool


def can_generate_output(
    shot_type: ShotType, available_inputs: list[InputView]
) -> OutputAvailability:
    shot_type = ShotType(shot_type)
    required = OUTPUT_REQUIRED_INPUT[shot_type]
    if required in available_inputs:
        return OutputAvailability(True, required, False)

    # Detail may be cut from the front photo
    if shot_type == ShotType.DETAIL and InputView.FRONT_FULL in available_inputs:
        return OutputAvailability(True, InputView.FRONT_FULL, True)

    return OutputAvailability(False, None, False)


@dataclass
class OutputPlanItem:
    shot_type: ShotType
    label: str
    can_generate: bool
    source: Optional[InputView]
    source_label: str
    is_derived: bool
    missing_reason: Optional[str] = None


def calculate_output_plan(available_inputs: list[InputView]) -> list[OutputPlanItem]:
    plan = []
    for shot_type in ALL_OUTPUT_SHOT_TYPES:
        availability = can_generate_output(shot_type, available_inputs)
        source_label = ""
        missing_reason = None
        if availability.source:
            prefix = "derived from" if availability.is_derived else "from"
            source_label = f"{prefix} {INPUT_VIEW_LABELS[availability.source]}"
        else:
            required = OUTPUT_REQUIRED_INPUT[shot_type]
            missing_reason = f"Missing {INPUT_VIEW_LABELS[required]}"

        plan.append(OutputPlanItem(
            shot_type=shot_type,
            label=OUTPUT_SHOT_LABELS[shot_type],
            can_generate=availability.can_generate,
            source=availability.source,
            source_label=source_label,
            is_derived=availability.is_derived,
            missing_reason=missing_reason,
        ))
    return plan
