"""Risk profiles per trading mode.

Arbitrage holds concentrated inventory for seconds, so it tolerates far more
concentration than a long-lived portfolio. Each profile carries its own risk-score
cutoffs and the checks it opts out of.
"""
from typing import Dict, Iterable, List

import structlog

from dexguard.core.models import RiskProfile, RiskThresholds, TradingMode

logger = structlog.get_logger(__name__)

CHECK_CONCENTRATION = "concentration"
CHECK_POSITION_AGE = "position_age"


RISK_PROFILES: Dict[TradingMode, RiskProfile] = {
    TradingMode.ARBITRAGE: RiskProfile(
        mode=TradingMode.ARBITRAGE,
        description="Short-lived concentrated inventory between legs",
        max_concentration=0.85,
        risk_thresholds=RiskThresholds(low=20, medium=35, high=60, critical=80),
        ignore_checks=[CHECK_CONCENTRATION, CHECK_POSITION_AGE],
    ),
    TradingMode.MARKET_MAKING: RiskProfile(
        mode=TradingMode.MARKET_MAKING,
        description="Two-sided liquidity provision",
        max_concentration=0.70,
        risk_thresholds=RiskThresholds(low=10, medium=20, high=40, critical=60),
    ),
    TradingMode.PORTFOLIO: RiskProfile(
        mode=TradingMode.PORTFOLIO,
        description="Diversified long-term holdings",
        max_concentration=0.30,
        risk_thresholds=RiskThresholds(low=10, medium=15, high=30, critical=45),
    ),
    TradingMode.MIXED: RiskProfile(
        mode=TradingMode.MIXED,
        description="Several strategies sharing one wallet",
        max_concentration=0.50,
        risk_thresholds=RiskThresholds(low=10, medium=20, high=35, critical=55),
    ),
}

_MARKET_MAKING_STRATEGIES = {"market_making", "market-making", "liquidity"}
_PORTFOLIO_STRATEGIES = {
    "portfolio", "rebalance", "buy_and_hold", "buy-and-hold", "conservative",
}


def get_risk_profile(mode: TradingMode) -> RiskProfile:
    return RISK_PROFILES[TradingMode(mode)]


def get_all_risk_profiles() -> List[RiskProfile]:
    return list(RISK_PROFILES.values())


def detect_trading_mode(strategies: Iterable[str]) -> TradingMode:
    """Infer the trading mode from the active strategy names.

    A single known strategy selects its mode; several strategies share a wallet
    and fall back to MIXED. Unknown single strategies get the conservative
    PORTFOLIO profile.
    """
    names = [s.strip().lower() for s in strategies if s and s.strip()]

    if not names:
        return TradingMode.MIXED

    if len(names) > 1:
        return TradingMode.MIXED

    name = names[0]
    if name == "arbitrage":
        return TradingMode.ARBITRAGE
    if name in _MARKET_MAKING_STRATEGIES:
        return TradingMode.MARKET_MAKING
    if name in _PORTFOLIO_STRATEGIES:
        return TradingMode.PORTFOLIO

    logger.warning(
        "risk_profiles.unknown_strategy",
        strategy=name,
        fallback=TradingMode.PORTFOLIO.value,
    )
    return TradingMode.PORTFOLIO
