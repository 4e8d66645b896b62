from datetime import datetime, timedelta, timezone

import pytest

from services.graph.models import TransactionGraph, TransferEdge, WalletNode
from services.scoring.factors import (
    CircularFlowFactor,
    CounterpartyDiversityFactor,
    HighRiskConnectionFactor,
    LargeAmountFactor,
    MultiHopFactor,
    PrivacyToolFactor,
    RoundAmountFactor,
    RoundNumberFactor,
    TransactionVelocityFactor,
    UnusualHourFactor,
    UnusualTimingFactor,
    WalletAgeFactor,
)

A, B, C, D, E, F = ("A" * 32, "B" * 32, "C" * 32, "D" * 32, "E" * 32, "F" * 32)
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def edge(src, dst, value=1.5, hours=0, tx_id=None):
    return TransferEdge(src, dst, value, T0 + timedelta(hours=hours), tx_id=tx_id)


def graph(edges, wallets=(), **kwargs):
    return TransactionGraph.from_transfers(edges, wallets=wallets, **kwargs)


# --- high-risk connections ----------------------------------------------------


def test_high_risk_neighbour_is_weighted_by_hop():
    g = graph(
        [edge(A, B), edge(B, C)],
        wallets=[WalletNode(B, labels={"mixer"})],
    )
    r = HighRiskConnectionFactor().evaluate(g, A)
    assert r.impact == 60  # 0.8 * 75
    assert r.details == (B,)

    g2 = graph([edge(A, B), edge(B, C)], wallets=[WalletNode(C, labels={"scam:rugpull"})])
    assert HighRiskConnectionFactor().evaluate(g2, A).impact == 30  # 0.4 * 75


def test_prior_high_level_counts_as_flagged():
    g = graph([edge(A, B)], wallets=[WalletNode(A, risk_level="high")])
    assert HighRiskConnectionFactor().evaluate(g, A).impact == 75


def test_high_risk_factor_abstains_for_isolated_wallet():
    g = TransactionGraph([WalletNode(A)])
    assert HighRiskConnectionFactor().evaluate(g, A).applicable is False


def test_clean_neighbourhood_scores_zero():
    g = graph([edge(A, B)])
    r = HighRiskConnectionFactor().evaluate(g, A)
    assert r.applicable and r.impact == 0


# --- velocity / age -----------------------------------------------------------


def test_velocity_above_threshold_saturates():
    as_of = T0 + timedelta(days=10)
    w = WalletNode(A, transaction_count=300, first_activity=T0, last_activity=as_of)
    g = graph([edge(A, B)], wallets=[w], as_of=as_of)
    assert TransactionVelocityFactor().evaluate(g, A).impact == 100


def test_velocity_below_half_threshold_is_zero():
    as_of = T0 + timedelta(days=10)
    w = WalletNode(A, transaction_count=20, first_activity=T0, last_activity=as_of)
    g = graph([edge(A, B)], wallets=[w], as_of=as_of)
    assert TransactionVelocityFactor().evaluate(g, A).impact == 0


@pytest.mark.parametrize(
    "age_days,expected",
    [
        (1, 81),  # 30 + 60 * (1 - 1/7)
        (100, 30),
        (730, 0),
    ],
)
def test_wallet_age_impact(age_days, expected):
    as_of = T0 + timedelta(days=age_days)
    w = WalletNode(A, first_activity=T0, last_activity=T0)
    g = graph([edge(A, B)], wallets=[w], as_of=as_of)
    assert WalletAgeFactor().evaluate(g, A).impact == expected


def test_wallet_age_abstains_without_activity():
    g = TransactionGraph([WalletNode(A)])
    assert WalletAgeFactor().evaluate(g, A).applicable is False


# --- per-wallet transfer patterns ---------------------------------------------


def test_round_number_share():
    g = graph([edge(A, B, 10), edge(A, C, 20), edge(A, D, 3.5)])
    assert RoundNumberFactor().evaluate(g, A).impact == 67


def test_counterparty_diversity():
    spread = graph([edge(A, x) for x in (B, C, D, E, F)])
    assert CounterpartyDiversityFactor().evaluate(spread, A).impact == 100

    repeat = graph([edge(A, B, hours=h) for h in range(3)] + [edge(C, A, hours=h) for h in range(3)])
    assert CounterpartyDiversityFactor().evaluate(repeat, A).impact == 0

    few = graph([edge(A, B), edge(A, C)])
    assert CounterpartyDiversityFactor().evaluate(few, A).applicable is False


def test_circular_flow_detects_cycle_through_subject():
    g = graph([edge(A, B), edge(B, C), edge(C, A), edge(C, D)])
    r = CircularFlowFactor().evaluate(g, A)
    assert r.impact == 40
    assert CircularFlowFactor().evaluate(g, D).impact == 0


def test_unusual_timing_uses_reference_timezone():
    night_utc = TransferEdge(A, B, 1.0, datetime(2024, 3, 1, 3, 0, tzinfo=timezone.utc))
    # 08:00 UTC is 03:00 in New York in March (EST)
    morning_utc = TransferEdge(A, C, 1.0, datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc))

    utc = graph([night_utc, morning_utc])
    assert UnusualTimingFactor().evaluate(utc, A).impact == 50

    ny = graph([night_utc, morning_utc], reference_tz="America/New_York")
    # 03:00 UTC is 22:00 the previous evening in New York
    assert UnusualTimingFactor().evaluate(ny, A).impact == 50
    assert UnusualHourFactor().evaluate(ny, morning_utc).impact == 100
    assert UnusualHourFactor().evaluate(ny, night_utc).impact == 0


# --- transaction factors ------------------------------------------------------


@pytest.mark.parametrize("value,expected", [(1500, 100), (750, 75), (150, 50), (75, 25), (10, 0)])
def test_large_amount_tiers(value, expected):
    e = edge(A, B, value)
    assert LargeAmountFactor().evaluate(graph([e]), e).impact == expected


@pytest.mark.parametrize("value,expected", [(500, 100), (12.5, 50), (12.37, 0)])
def test_round_amount(value, expected):
    e = edge(A, B, value)
    assert RoundAmountFactor().evaluate(graph([e]), e).impact == expected


def test_privacy_tool_endpoint():
    e = edge(A, B, 10)
    g = graph([e], wallets=[WalletNode(B, labels={"tornado_cash"})])
    r = PrivacyToolFactor().evaluate(g, e)
    assert r.impact == 100
    assert r.details == (B,)
    assert PrivacyToolFactor().evaluate(graph([e]), e).impact == 0


def test_multi_hop_chain_length():
    first = edge(A, B)
    g = graph([first, edge(B, C, hours=1), edge(C, D, hours=2)])
    assert MultiHopFactor().evaluate(g, first).impact == 60

    direct = edge(E, F)
    assert MultiHopFactor().evaluate(graph([direct]), direct).impact == 0
