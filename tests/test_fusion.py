from __future__ import annotations

import math

import pytest

from phishshield_agent.fusion import (
    TRUSTED_SCORE,
    apply_ledger_boost,
    derive_label,
    error_result,
    fuse_scores,
    trusted_result,
)


def test_both_absent_is_zero():
    assert fuse_scores(None, None) == (0.0, [])
    assert fuse_scores(math.nan, math.inf) == (0.0, [])


def test_one_absent_uses_the_other_clamped():
    assert fuse_scores(0.42, None) == (pytest.approx(0.42), [])
    assert fuse_scores(None, 1.4) == (1.0, [])
    assert fuse_scores(-0.2, math.nan) == (0.0, [])


def test_agreeing_models_are_blended():
    score, signals = fuse_scores(0.8, 0.6)
    assert score == pytest.approx(0.65 * 0.8 + 0.35 * 0.6)
    assert signals == []


def test_equal_scores_fuse_to_themselves():
    assert fuse_scores(0.5, 0.5)[0] == pytest.approx(0.5)


def test_disagreement_damps_toward_low_score():
    score, signals = fuse_scores(0.9, 0.1)
    assert score == pytest.approx(0.7 * 0.1 + 0.3 * 0.9)
    assert signals == ["model disagreement"]
    # Same result whichever model holds the high score.
    assert fuse_scores(0.1, 0.9)[0] == pytest.approx(score)


@pytest.mark.parametrize("u,t", [(0.95, 0.0), (0.6, 0.05), (0.0, 0.8), (0.34, 0.99)])
def test_damped_result_bounds(u, t):
    high, low = max(u, t), min(u, t)
    score, _ = fuse_scores(u, t)
    assert low <= score <= 0.7 * low + 0.3 * high + 1e-12


def test_disagreement_with_confident_low_still_blends():
    score, signals = fuse_scores(0.95, 0.4)
    assert score == pytest.approx(0.65 * 0.95 + 0.35 * 0.4)
    assert signals == ["model disagreement"]


def test_derive_label():
    assert derive_label(0.7, 0.7, None, 0.7) == "phishing"
    # Damping hid a high sub-score.
    assert derive_label(0.34, 0.9, 0.1, 0.7) == "review"
    # Review needs both sub-scores.
    assert derive_label(0.34, 0.9, None, 0.7) == "legitimate"
    assert derive_label(0.2, 0.2, 0.2, 0.7) == "legitimate"


def test_ledger_boost():
    assert apply_ledger_boost(0.5, 0, 0.18) == (0.5, [])
    score, signals = apply_ledger_boost(0.5, 2, 0.18)
    assert score == pytest.approx(0.68)
    assert signals == ["ledger reports"]
    # Configured boost is capped at 0.35 and the result at 0.98.
    assert apply_ledger_boost(0.5, 1, 0.9)[0] == pytest.approx(0.85)
    assert apply_ledger_boost(0.9, 1, 0.35)[0] == pytest.approx(0.98)


def test_boost_can_push_over_threshold():
    score, _ = apply_ledger_boost(0.6, 1, 0.18)
    assert derive_label(score, 0.6, None, 0.7) == "phishing"


def test_trusted_result():
    res = trusted_result("https://mail.example.com", 0.7, 123)
    assert res.risk_score == TRUSTED_SCORE
    assert res.label == "trusted domain"
    assert res.engine == "trusted list"
    assert res.url_label == "trusted list"
    assert res.text_label == "trusted list"
    assert res.ledger_count == 0
    assert res.threshold == 0.7


def test_error_result():
    res = error_result("collector offline", "https://x.example", 1)
    assert res.label == "error"
    assert res.risk_score == 0
    assert res.threshold == 1
    assert res.signals == ["collector offline"]
