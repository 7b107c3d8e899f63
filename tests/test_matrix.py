from datetime import datetime, timedelta

import pytest

from product_rec.matrix import (
    InteractionEvent,
    build_affinity_matrix,
    build_item_user_index,
    filter_window,
    matrix_fingerprint,
    purchase_weight,
)


def test_purchase_weight_scales_price():
    assert purchase_weight(2, 150.0) == pytest.approx(3.0)
    assert purchase_weight(1, 50.0, price_scale=10.0) == pytest.approx(5.0)


def test_purchase_weight_ignores_non_positive_lines():
    assert purchase_weight(0, 100.0) == 0.0
    assert purchase_weight(3, 0.0) == 0.0
    assert purchase_weight(-1, 20.0) == 0.0


def test_repeated_events_accumulate():
    events = [
        InteractionEvent("u1", "a", 1.5),
        InteractionEvent("u1", "a", 2.0),
        InteractionEvent("u1", "b", 1.0),
        InteractionEvent("u2", "a", 0.5),
    ]

    matrix = build_affinity_matrix(events)

    assert matrix == {"u1": {"a": 3.5, "b": 1.0}, "u2": {"a": 0.5}}


def test_each_event_is_clamped_before_summing():
    events = [
        InteractionEvent("u1", "a", 50.0),
        InteractionEvent("u1", "a", 4.0),
        InteractionEvent("u1", "b", -3.0),
    ]

    matrix = build_affinity_matrix(events, max_weight=10.0)

    assert matrix["u1"]["a"] == pytest.approx(14.0)
    # Zero-weight interactions are still observed interactions
    assert matrix["u1"]["b"] == 0.0


def test_filter_window_drops_old_events_and_keeps_undated():
    now = datetime(2024, 6, 1)
    events = [
        InteractionEvent("u1", "a", 1.0, now - timedelta(days=10)),
        InteractionEvent("u1", "b", 1.0, now - timedelta(days=100)),
        InteractionEvent("u1", "c", 1.0, None),
    ]

    kept = filter_window(events, window_days=90, now=now)

    assert [e.item_id for e in kept] == ["a", "c"]


def test_item_user_index_is_catalog_wide():
    matrix = {"u1": {"a": 1.0, "b": 2.0}, "u2": {"a": 1.0}, "u3": {}}

    index = build_item_user_index(matrix)

    assert index == {"a": {"u1", "u2"}, "b": {"u1"}}


def test_matrix_fingerprint_counts():
    matrix = {"u1": {"a": 1.0, "b": 2.0}, "u2": {"a": 1.0}}

    assert matrix_fingerprint(matrix) == {"n_users": 2, "n_items": 2, "n_interactions": 3}
