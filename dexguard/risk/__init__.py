"""Risk management module for DexGuard.

This module provides the DEX risk core:
- Portfolio risk metrics and classification
- Continuous portfolio monitoring with fail-closed checks
- Position and exposure limits
- Slippage protection
- Emergency circuit breaker with prioritized liquidation
"""

from dexguard.risk.emergency import EmergencyCircuitBreaker, LiquidationError
from dexguard.risk.engine import RiskEngine, create_risk_engine
from dexguard.risk.monitor import PortfolioRiskMonitor
from dexguard.risk.position_limits import PositionLimiter
from dexguard.risk.profiles import detect_trading_mode, get_risk_profile
from dexguard.risk.slippage import SlippageGuard

__all__ = [
    'EmergencyCircuitBreaker',
    'LiquidationError',
    'PortfolioRiskMonitor',
    'PositionLimiter',
    'RiskEngine',
    'SlippageGuard',
    'create_risk_engine',
    'detect_trading_mode',
    'get_risk_profile',
]
