"""
tests/test_scoring.py

Unit tests for ChangeScoringPolicy.
"""

from __future__ import annotations

import pytest

from app.monitoring.scoring import ChangeScoringPolicy


@pytest.fixture()
def policy() -> ChangeScoringPolicy:
    return ChangeScoringPolicy(
        field_weights={"price": 1.0, "revenue": 0.8, "title": 0.1},
        numeric_fields=("price", "revenue"),
        default_weight=0.2,
        max_relative_delta=1.0,
        entity_event_score=1.0,
    )


# ---------------------------------------------------------------------------
# Numeric fields
# ---------------------------------------------------------------------------


class TestNumericScoring:
    def test_ten_percent_price_increase(self, policy: ChangeScoringPolicy) -> None:
        scored = policy.score_field("price", 100_000, 110_000)
        assert scored.score == pytest.approx(1.1)
        assert scored.percentage == pytest.approx(10.0)

    def test_decrease_has_negative_percentage(self, policy: ChangeScoringPolicy) -> None:
        scored = policy.score_field("price", 200, 150)
        assert scored.score == pytest.approx(1.25)
        assert scored.percentage == pytest.approx(-25.0)

    def test_relative_delta_is_capped(self, policy: ChangeScoringPolicy) -> None:
        scored = policy.score_field("revenue", 100, 400)
        assert scored.score == pytest.approx(0.8 * 2.0)
        assert scored.percentage == pytest.approx(300.0)

    def test_move_away_from_zero_scores_maximum(self, policy: ChangeScoringPolicy) -> None:
        scored = policy.score_field("price", 0, 5)
        assert scored.score == pytest.approx(2.0)
        assert scored.percentage is None

    def test_field_appearing_scores_weight_only(self, policy: ChangeScoringPolicy) -> None:
        scored = policy.score_field("price", None, 100)
        assert scored.score == pytest.approx(1.0)
        assert scored.percentage is None


# ---------------------------------------------------------------------------
# Non-numeric fields and weights
# ---------------------------------------------------------------------------


class TestWeights:
    def test_text_change_scores_weight(self, policy: ChangeScoringPolicy) -> None:
        scored = policy.score_field("title", "Old", "New")
        assert scored.score == pytest.approx(0.1)
        assert scored.percentage is None

    def test_unknown_field_uses_default_weight(self, policy: ChangeScoringPolicy) -> None:
        assert policy.weight_for("seller_rating") == pytest.approx(0.2)

    def test_weight_lookup_is_case_insensitive(self, policy: ChangeScoringPolicy) -> None:
        assert policy.weight_for("PRICE") == pytest.approx(1.0)

    def test_is_numeric(self, policy: ChangeScoringPolicy) -> None:
        assert policy.is_numeric("Price")
        assert not policy.is_numeric("title")

    def test_entity_event_score(self, policy: ChangeScoringPolicy) -> None:
        assert policy.entity_event_score == pytest.approx(1.0)
