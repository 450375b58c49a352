"""
Tests for American odds arithmetic.
"""
import pytest

from shared.odds_math import (
    allocate_stakes,
    american_to_decimal,
    decimal_to_american,
    implied_probability,
    payout_for,
    percentage_change,
    profit_margin,
)


class TestImpliedProbability:
    """American odds -> implied probability."""

    def test_favorite(self):
        """-200 means risk 200 to win 100: 2/3."""
        assert implied_probability(-200) == pytest.approx(0.6667, abs=1e-4)

    def test_underdog(self):
        """+150 means risk 100 to win 150: 0.4."""
        assert implied_probability(150) == pytest.approx(0.400)

    def test_even_money(self):
        assert implied_probability(100) == pytest.approx(0.5)
        assert implied_probability(-100) == pytest.approx(0.5)

    @pytest.mark.parametrize("odds", [-10000, -1500, -350, -101, -100, 100, 101, 275, 900, 20000])
    def test_always_strictly_between_zero_and_one(self, odds):
        assert 0.0 < implied_probability(odds) < 1.0

    @pytest.mark.parametrize("odds", [0, 50, -99, 99])
    def test_rejects_unrealistic_magnitude(self, odds):
        with pytest.raises(ValueError):
            implied_probability(odds)

    def test_longer_odds_mean_lower_probability(self):
        ladder = [-500, -200, -110, 120, 250, 800]
        probs = [implied_probability(o) for o in ladder]
        assert probs == sorted(probs, reverse=True)


class TestConversions:
    """Decimal / American conversions and margin helpers."""

    def test_american_to_decimal(self):
        assert american_to_decimal(150) == pytest.approx(2.5)
        assert american_to_decimal(-200) == pytest.approx(1.5)

    def test_decimal_to_american(self):
        assert decimal_to_american(2.5) == 150
        assert decimal_to_american(1.5) == -200

    def test_decimal_is_inverse_of_probability(self):
        for odds in (-300, -120, 110, 400):
            assert american_to_decimal(odds) == pytest.approx(1 / implied_probability(odds))

    def test_percentage_change_sign(self):
        assert percentage_change(0.5, 0.55) == pytest.approx(10.0)
        assert percentage_change(0.5, 0.45) == pytest.approx(-10.0)

    def test_profit_margin(self):
        assert profit_margin(0.95) == pytest.approx(5.0)
        assert profit_margin(1.02) == pytest.approx(-2.0)


class TestStakeAllocation:
    """Proportional stakes equalize payouts."""

    def test_stakes_sum_to_total(self):
        stakes = allocate_stakes([0.357, 0.333], 1000.0)
        assert sum(stakes) == pytest.approx(1000.0)

    def test_payouts_are_equal(self):
        odds = [180, 200]
        probs = [implied_probability(o) for o in odds]
        stakes = allocate_stakes(probs, 1000.0)
        payouts = [payout_for(s, o) for s, o in zip(stakes, odds)]
        assert payouts[0] == pytest.approx(payouts[1])
        assert payouts[0] == pytest.approx(1000.0 / sum(probs))

    def test_three_leg_payouts_are_equal(self):
        odds = [250, 300, 400]
        probs = [implied_probability(o) for o in odds]
        stakes = allocate_stakes(probs, 500.0)
        payouts = [payout_for(s, o) for s, o in zip(stakes, odds)]
        assert payouts == pytest.approx([payouts[0]] * 3)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
