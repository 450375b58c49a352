"""
American-odds arithmetic shared by the detectors and the aggregator.
"""
from __future__ import annotations

from typing import List, Sequence

MIN_ODDS_MAGNITUDE = 100


def implied_probability(odds: int) -> float:
    """
    Convert American odds to the probability the price encodes.

    +150 -> 100/250 = 0.400, -200 -> 200/300 = 0.667.
    """
    if abs(odds) < MIN_ODDS_MAGNITUDE:
        raise ValueError(f"American odds must satisfy |odds| >= 100, got {odds}")
    if odds > 0:
        return 100.0 / (odds + 100.0)
    return abs(odds) / (abs(odds) + 100.0)


def percentage_change(old_prob: float, new_prob: float) -> float:
    """Signed percent change between two implied probabilities."""
    if old_prob <= 0:
        raise ValueError("old probability must be positive")
    return (new_prob - old_prob) / old_prob * 100.0


def american_to_decimal(odds: int) -> float:
    if odds > 0:
        return 1.0 + odds / 100.0
    return 1.0 + 100.0 / abs(odds)


def decimal_to_american(decimal_odds: float) -> int:
    if decimal_odds <= 1.0:
        raise ValueError(f"decimal odds must exceed 1.0, got {decimal_odds}")
    if decimal_odds >= 2.0:
        return int(round((decimal_odds - 1.0) * 100))
    return int(round(-100.0 / (decimal_odds - 1.0)))


def profit_margin(prob_sum: float) -> float:
    """Guaranteed return, in percent of the total stake, for an arb."""
    return (1.0 - prob_sum) * 100.0


def allocate_stakes(probabilities: Sequence[float], total_stake: float) -> List[float]:
    """
    Split total_stake across legs so every outcome pays the same.

    stake_i = total * p_i / sum(p). Each leg then returns stake_i / p_i,
    which is total / sum(p) for every i.
    """
    prob_sum = sum(probabilities)
    if prob_sum <= 0:
        raise ValueError("probabilities must sum to a positive value")
    return [total_stake * p / prob_sum for p in probabilities]


def payout_for(stake: float, odds: int) -> float:
    """Total return (stake included) of a winning bet."""
    return stake * american_to_decimal(odds)
