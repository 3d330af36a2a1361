from decimal import Decimal

from sync_engine.services.warehouse_transform import ACTION_MAPPINGS, ActionMapping, map_actions


def test_map_actions_matches_fixed_action_types():
    mapped = map_actions(
        [
            {"action_type": "lead", "value": "2"},
            {"action_type": "add_to_cart", "value": "7"},
            {"action_type": "video_view", "value": "500"},
        ],
        [],
    )
    assert mapped["leads"] == Decimal("2")
    assert mapped["add_to_cart"] == Decimal("7")
    assert mapped["purchases"] is None
    assert mapped["view_content"] is None
    # 未声明的 action_type 不会出现在输出列里
    assert set(mapped) == {m.column for m in ACTION_MAPPINGS}


def test_map_actions_prefers_first_nonzero_alias():
    mapped = map_actions(
        [
            {"action_type": "purchase", "value": "0"},
            {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "4"},
        ],
        [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": "80.25"}],
    )
    assert mapped["purchases"] == Decimal("4")
    assert mapped["purchase_value"] == Decimal("80.25")


def test_map_actions_keeps_explicit_zero():
    mapped = map_actions([{"action_type": "purchase", "value": "0"}], None)
    assert mapped["purchases"] == Decimal("0")


def test_custom_mapping_table():
    mappings = (ActionMapping("subscribers", ("subscribe", "complete_registration")),)
    mapped = map_actions([{"action_type": "complete_registration", "value": "5"}], None, mappings)
    assert mapped == {"subscribers": Decimal("5")}
