"""Risk Metrics Engine.

Pure computation: turns a set of positions and the recent snapshot window into
concentration, volatility, drawdown, liquidity and composite risk-score numbers.
No I/O and no exceptions for numeric edge cases; an empty or zero-value portfolio
scores 0 rather than NaN.
"""
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

import numpy as np

from dexguard.core.models import (
    PortfolioSnapshot,
    PositionSnapshot,
    RiskLevel,
    RiskMetrics,
    RiskThresholds,
)

# Number of snapshot values, the current one included, used for return statistics
VOLATILITY_WINDOW = 10

# Composite score weights
CONCENTRATION_WEIGHT = 40.0
VOLATILITY_CAP = 30.0
DRAWDOWN_WEIGHT = 30.0

DEFAULT_LIQUID_TOKENS = frozenset({"GALA", "GUSDC", "USDC", "USDT"})


def _ratio(part: Decimal, whole: Decimal) -> float:
    if whole <= 0:
        return 0.0
    return float(part / whole)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def calculate_returns(values: Sequence[Decimal]) -> List[float]:
    """Fractional returns between consecutive values, skipping zero bases."""
    returns = []
    for previous, current in zip(values, values[1:]):
        if previous > 0:
            returns.append(float((current - previous) / previous))
    return returns


def _window_values(
    total_value: Decimal, recent_snapshots: Sequence[PortfolioSnapshot]
) -> List[Decimal]:
    history = [s.total_value for s in recent_snapshots[-(VOLATILITY_WINDOW - 1):]]
    return history + [total_value]


def calculate_max_concentration(
    positions: Iterable[PositionSnapshot], total_value: Decimal
) -> float:
    """Largest single-position share of portfolio value."""
    shares = [_ratio(p.value_usd, total_value) for p in positions]
    if not shares:
        return 0.0
    return _clamp(max(shares), 0.0, 1.0)


def calculate_drawdown(
    total_value: Decimal, recent_snapshots: Sequence[PortfolioSnapshot]
) -> float:
    """Decline from the peak of the snapshot window, current value included."""
    peak = max([s.total_value for s in recent_snapshots] + [total_value])
    if peak <= 0:
        return 0.0
    return _clamp(float((peak - total_value) / peak), 0.0, 1.0)


def calculate_volatility_score(
    total_value: Decimal, recent_snapshots: Sequence[PortfolioSnapshot]
) -> float:
    """Population stddev of returns over the recent window, as a percentage."""
    returns = calculate_returns(_window_values(total_value, recent_snapshots))
    if len(returns) < 2:
        return 0.0
    return float(np.std(returns)) * 100


def calculate_sharpe_ratio(
    total_value: Decimal, recent_snapshots: Sequence[PortfolioSnapshot]
) -> float:
    returns = calculate_returns(_window_values(total_value, recent_snapshots))
    if len(returns) < 2:
        return 0.0
    std = float(np.std(returns))
    if std == 0:
        return 0.0
    return float(np.mean(returns)) / std


def calculate_liquidity_score(
    positions: Sequence[PositionSnapshot],
    total_value: Decimal,
    liquid_tokens: Optional[Iterable[str]] = None,
) -> float:
    """Value-weighted liquidity heuristic in [0, 100].

    Each position starts at 100 and is discounted for heavy concentration and
    for tokens outside the known liquid set. An empty portfolio scores 100.
    """
    liquid = frozenset(liquid_tokens) if liquid_tokens is not None else DEFAULT_LIQUID_TOKENS
    if not positions or total_value <= 0:
        return 100.0

    weighted = 0.0
    weight_total = 0.0
    for position in positions:
        share = _ratio(position.value_usd, total_value)
        score = 100.0
        if share > 0.5:
            score *= 0.6
        elif share > 0.3:
            score *= 0.8
        if position.token not in liquid:
            score *= 0.7
        weight = float(position.value_usd)
        weighted += score * weight
        weight_total += weight

    if weight_total <= 0:
        return 100.0
    return _clamp(weighted / weight_total, 0.0, 100.0)


def calculate_risk_score(
    max_concentration: float, volatility_score: float, drawdown: float
) -> float:
    """Composite 0-100 score.

    Concentration carries the largest weight; volatility is capped at 30 points.
    Non-decreasing in each argument.
    """
    score = (
        CONCENTRATION_WEIGHT * max_concentration
        + min(VOLATILITY_CAP, volatility_score)
        + DRAWDOWN_WEIGHT * drawdown
    )
    return _clamp(score, 0.0, 100.0)


def compute_risk_metrics(
    positions: Sequence[PositionSnapshot],
    total_value: Decimal,
    recent_snapshots: Sequence[PortfolioSnapshot] = (),
    liquid_tokens: Optional[Iterable[str]] = None,
) -> RiskMetrics:
    """Derive every risk metric for one snapshot."""
    max_concentration = calculate_max_concentration(positions, total_value)
    drawdown = calculate_drawdown(total_value, recent_snapshots)
    volatility_score = calculate_volatility_score(total_value, recent_snapshots)

    return RiskMetrics(
        total_exposure=sum((p.value_usd for p in positions), Decimal("0")),
        max_concentration=max_concentration,
        volatility_score=volatility_score,
        liquidity_score=calculate_liquidity_score(positions, total_value, liquid_tokens),
        drawdown=drawdown,
        sharpe_ratio=calculate_sharpe_ratio(total_value, recent_snapshots),
        risk_score=calculate_risk_score(max_concentration, volatility_score, drawdown),
    )


def classify_risk_level(risk_score: float, thresholds: RiskThresholds) -> RiskLevel:
    """Map a risk score onto a level using a profile's cutoffs."""
    if risk_score >= thresholds.critical:
        return RiskLevel.CRITICAL
    if risk_score >= thresholds.high:
        return RiskLevel.HIGH
    if risk_score >= thresholds.medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
