"""
Intrinsic value and safety margin calculation.

Pure functions only; nothing here performs I/O or suspends.

    weighted EPS  = most recent x3, prior x2, one before x1, over applied weights
    basic value   = (weighted EPS x 10 + latest BPS) / 2
    adjusted      = basic x 100 / (100 - treasury ratio), for 0 < ratio < 100
    safety margin = (adjusted - price) / price x 100
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Union

from src.data_collector.krx_valuation.data_models import Recommendation
from src.data_collector.krx_valuation.errors import (
    InsufficientDataError,
    InvalidValuationInput,
    ValuationError,
)

# Weights keyed by sample count, most recent first
_EPS_WEIGHTS = {
    1: (1,),
    2: (3, 2),
    3: (3, 2, 1),
}

# Inclusive lower bounds, descending
_RECOMMENDATION_BUCKETS = (
    (50.0, Recommendation.STRONGLY_UNDERVALUED),
    (30.0, Recommendation.UNDERVALUED),
    (10.0, Recommendation.MILDLY_UNDERVALUED),
    (-10.0, Recommendation.NEAR_FAIR_VALUE),
    (-30.0, Recommendation.MILDLY_OVERVALUED),
)


@dataclass(frozen=True)
class ValuationComputation:
    weighted_eps: float
    basic_value: float
    intrinsic_value: float
    safety_margin: float
    recommendation: Recommendation


@dataclass(frozen=True)
class NoValuation:
    reason: str


@dataclass(frozen=True)
class DerivedRatios:
    roe: Optional[float] = None
    per: Optional[float] = None
    pbr: Optional[float] = None


def weighted_eps(eps_samples: Sequence[float]) -> float:
    """Weighted EPS over the three most recent samples (input is oldest -> newest)."""
    if not eps_samples:
        raise InsufficientDataError("At least one EPS sample is required")
    recent = list(eps_samples[-3:])[::-1]
    weights = _EPS_WEIGHTS[len(recent)]
    return sum(w * eps for w, eps in zip(weights, recent)) / sum(weights)


def basic_value(weighted: float, latest_bps: float) -> float:
    if latest_bps <= 0:
        raise InvalidValuationInput(f"BPS must be positive, got {latest_bps}", reason="non_positive_bps")
    return (weighted * 10 + latest_bps) / 2


def adjust_for_treasury(value: float, treasury_ratio_percent: float) -> float:
    if treasury_ratio_percent >= 100:
        raise InvalidValuationInput(
            f"Treasury ratio must be below 100%, got {treasury_ratio_percent}",
            reason="invalid_treasury_ratio",
        )
    if treasury_ratio_percent > 0:
        return value * (100 / (100 - treasury_ratio_percent))
    return value


def safety_margin(intrinsic_value: float, current_price: float) -> Optional[float]:
    if current_price <= 0:
        return None
    return ((intrinsic_value - current_price) / current_price) * 100


def recommend(margin: float) -> Recommendation:
    for lower_bound, bucket in _RECOMMENDATION_BUCKETS:
        if margin >= lower_bound:
            return bucket
    return Recommendation.OVERVALUED


def derive_ratios(eps: Optional[float], bps: Optional[float], price: Optional[float]) -> DerivedRatios:
    """ROE, PER and PBR from scraped per-share values; each is None when undefined."""
    roe = round(eps / bps * 100, 2) if eps is not None and bps is not None and bps > 0 else None
    per = round(price / eps, 2) if price is not None and eps is not None and eps > 0 else None
    pbr = round(price / bps, 2) if price is not None and bps is not None and bps > 0 else None
    return DerivedRatios(roe=roe, per=per, pbr=pbr)


def evaluate(
    eps_samples: Sequence[float],
    latest_bps: Optional[float],
    treasury_ratio_percent: Optional[float],
    current_price: Optional[float],
) -> Union[ValuationComputation, NoValuation]:
    """Run the full valuation, turning precondition failures into NoValuation.

    Intrinsic value and margin are rounded to 2 decimals.
    """
    if current_price is None or current_price <= 0:
        return NoValuation("non_positive_price")
    if latest_bps is None:
        return NoValuation("missing_bps")

    try:
        weighted = weighted_eps(eps_samples)
        basic = basic_value(weighted, latest_bps)
        adjusted = adjust_for_treasury(basic, treasury_ratio_percent or 0.0)
    except ValuationError as e:
        return NoValuation(e.reason)

    margin = safety_margin(adjusted, current_price)
    rounded_margin = round(margin, 2)
    return ValuationComputation(
        weighted_eps=weighted,
        basic_value=basic,
        intrinsic_value=round(adjusted, 2),
        safety_margin=rounded_margin,
        recommendation=recommend(rounded_margin),
    )
