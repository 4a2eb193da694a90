from repose.services.shot_types import (
    InputView, ShotType,
    allowed_outputs_for_input, calculate_output_plan, can_generate_output,
    parse_view, resolve_shot_type, shot_type_to_slot, slot_to_shot_type,
)


def test_parse_free_form_views():
    assert parse_view("Front View - IMG_0042.jpg") == InputView.FRONT_FULL
    assert parse_view("back") == InputView.BACK_FULL
    assert parse_view("DETAIL shot") == InputView.DETAIL
    assert parse_view("side") == InputView.SIDE
    assert parse_view("flat lay") is None
    assert parse_view("") is None


def test_back_input_only_produces_back_output():
    assert allowed_outputs_for_input(InputView.BACK_FULL) == [ShotType.BACK_FULL]
    assert ShotType.BACK_FULL not in allowed_outputs_for_input(InputView.FRONT_FULL)
    assert allowed_outputs_for_input(InputView.SIDE) == []


def test_detail_can_be_derived_from_front():
    availability = can_generate_output(ShotType.DETAIL, [InputView.FRONT_FULL])
    assert availability.can_generate
    assert availability.source == InputView.FRONT_FULL
    assert not can_generate_output(ShotType.BACK_FULL, [InputView.FRONT_FULL]).can_generate


def test_output_plan_reports_missing_inputs():
    plan = {p.shot_type: p for p in calculate_output_plan([InputView.FRONT_FULL])}
    assert plan[ShotType.FRONT_FULL].can_generate
    assert plan[ShotType.FRONT_CROPPED].source_label == "from Static Full Front"
    assert not plan[ShotType.BACK_FULL].can_generate
    assert plan[ShotType.BACK_FULL].missing_reason == "Missing Static Full Back"


def test_legacy_slots():
    assert slot_to_shot_type("a") == ShotType.FRONT_FULL
    assert slot_to_shot_type("C") == ShotType.BACK_FULL
    assert slot_to_shot_type(None) is None
    assert shot_type_to_slot(ShotType.DETAIL) == "D"


def test_explicit_shot_type_wins_over_slot():
    assert resolve_shot_type("DETAIL", "A") == ShotType.DETAIL
    assert resolve_shot_type("nonsense", "B") == ShotType.FRONT_CROPPED
    assert resolve_shot_type(None, None) is None
