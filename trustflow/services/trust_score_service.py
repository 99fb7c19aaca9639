"""Deterministic trust score over verification state and behavioural signals."""

import math

from trustflow.schemas.verification import (
    OverallStatus,
    TrustScore,
    TrustSignals,
    VerificationRecord,
)

BASE_SCORE = 50
VERIFIED_BONUS = 30
MAX_RESPONSE_BONUS = 10.0
MAX_ORDER_BONUS = 10.0
MIN_TRUST_SCORE = 0
MAX_TRUST_SCORE = 100


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (Python's round() is banker's)."""
    return math.floor(value + 0.5)


class TrustScoreAggregator:
    """Computes a 0-100 trust score from its inputs alone.

    score = clamp(round(50 + verified + min(rate / 10, 10) + min(orders / 10, 10)), 0, 100)
    """

    def score(self, record: VerificationRecord, signals: TrustSignals) -> TrustScore:
        verified_bonus = VERIFIED_BONUS if record.overall_status == OverallStatus.VERIFIED else 0
        response_bonus = min(signals.response_rate / 10, MAX_RESPONSE_BONUS)
        order_bonus = min(signals.total_orders / 10, MAX_ORDER_BONUS)

        raw = BASE_SCORE + verified_bonus + response_bonus + order_bonus
        score = max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, round_half_up(raw)))

        return TrustScore(
            company_id=record.company_id,
            score=score,
            factors={
                "base": float(BASE_SCORE),
                "verified_bonus": float(verified_bonus),
                "response_bonus": float(response_bonus),
                "order_bonus": float(order_bonus),
            },
        )
