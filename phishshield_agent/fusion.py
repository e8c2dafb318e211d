"""Blend URL-model and text-model scores into one risk score and label."""

from __future__ import annotations

import math
from typing import Any

from .config import LEDGER_BOOST_CAP
from .models import FusedResult

DISAGREEMENT_GAP = 0.45
DISAGREEMENT_LOW_CEILING = 0.35
URL_WEIGHT = 0.65
TEXT_WEIGHT = 0.35

TRUSTED_SCORE = 0.02
MAX_BOOSTED_SCORE = 0.98


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _finite(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def fuse_scores(url_score: Any, text_score: Any) -> tuple[float, list[str]]:
    """Return (fused score, extra signals)."""
    u = _finite(url_score)
    t = _finite(text_score)
    if u is None and t is None:
        return 0.0, []
    if t is None:
        return _clamp(u), []
    if u is None:
        return _clamp(t), []

    signals: list[str] = []
    high, low = max(u, t), min(u, t)
    disagree = high - low >= DISAGREEMENT_GAP
    if disagree:
        signals.append("model disagreement")

    if disagree and low < DISAGREEMENT_LOW_CEILING:
        # A lone high score the other model found nothing behind is treated
        # as a probable false positive.
        fused = 0.7 * low + 0.3 * high
    else:
        fused = URL_WEIGHT * u + TEXT_WEIGHT * t
    return _clamp(fused), signals


def derive_label(fused_score: float, url_score: Any, text_score: Any, threshold: float) -> str:
    if fused_score >= threshold:
        return "phishing"
    u = _finite(url_score)
    t = _finite(text_score)
    # Surfaces pages the disagreement damping pulled under the threshold.
    if u is not None and t is not None and max(u, t) >= threshold:
        return "review"
    return "legitimate"


def apply_ledger_boost(score: float, report_count: int, boost: float) -> tuple[float, list[str]]:
    if report_count < 1:
        return score, []
    bump = max(0.0, min(boost, LEDGER_BOOST_CAP))
    return min(MAX_BOOSTED_SCORE, score + bump), ["ledger reports"]


def trusted_result(url: str, threshold: float, at: int) -> FusedResult:
    return FusedResult(
        risk_score=TRUSTED_SCORE,
        label="trusted domain",
        signals=["trusted domain"],
        engine="trusted list",
        url_score=TRUSTED_SCORE,
        url_label="trusted list",
        text_score=None,
        text_label="trusted list",
        threshold=threshold,
        ledger_count=0,
        at=at,
        url=url,
    )


def error_result(message: str, url: str, at: int) -> FusedResult:
    return FusedResult(
        risk_score=0.0,
        label="error",
        signals=[message or "analysis failed"],
        engine="error",
        threshold=1.0,
        ledger_count=0,
        at=at,
        url=url,
    )
