"""Data models for the DexGuard risk engine.

This module defines the data structures shared by the five risk components:
- Risk Metrics Engine: per-snapshot concentration, volatility, drawdown and risk score
- Portfolio Risk Monitor: portfolio snapshots, anomalies and risk-check results
- Position & Exposure Limiter: exposures, limit checks and violations
- Slippage Guard: slippage validation, dynamic tolerance and split advice
- Emergency Circuit Breaker: emergency state, liquidation plans and audit history

All monetary values use Decimal for precision.
Ratios, scores and slippage fractions are floats.
All timestamps are timezone-aware UTC datetime objects.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class RiskLevel(str, Enum):
    """Risk and severity levels, ordered from least to most severe."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class TradingMode(str, Enum):
    """Trading mode that selects the active risk profile."""
    ARBITRAGE = "arbitrage"
    MARKET_MAKING = "market_making"
    PORTFOLIO = "portfolio"
    MIXED = "mixed"


class AnomalyType(str, Enum):
    """Market anomaly categories raised by the monitor."""
    VOLATILITY_SPIKE = "volatility_spike"
    LIQUIDITY_DROP = "liquidity_drop"
    PRICE_SPIKE = "price_spike"


class MonitorAction(str, Enum):
    """Emergency actions requested by a risk check."""
    STOP_ALL_TRADING = "STOP_ALL_TRADING"
    EMERGENCY_LIQUIDATION = "EMERGENCY_LIQUIDATION"
    REDUCE_EXPOSURE = "REDUCE_EXPOSURE"
    EMERGENCY_STOP = "EMERGENCY_STOP"


class EmergencyType(str, Enum):
    """Reason category for an emergency stop."""
    MANUAL_STOP = "MANUAL_STOP"
    PORTFOLIO_LOSS = "PORTFOLIO_LOSS"
    DAILY_LOSS = "DAILY_LOSS"
    MARKET_CRASH = "MARKET_CRASH"
    LIQUIDITY_CRISIS = "LIQUIDITY_CRISIS"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    API_FAILURE = "API_FAILURE"
    VOLATILITY_SPIKE = "VOLATILITY_SPIKE"


class EmergencyActionType(str, Enum):
    """Steps executed by the circuit breaker on activation."""
    STOP_TRADING = "STOP_TRADING"
    LIQUIDATE_POSITIONS = "LIQUIDATE_POSITIONS"
    REDUCE_EXPOSURE = "REDUCE_EXPOSURE"
    ALERT_ADMIN = "ALERT_ADMIN"
    SAFE_MODE = "SAFE_MODE"


class LiquidationMethod(str, Enum):
    """How a single position is unwound during an emergency."""
    MARKET_SELL = "MARKET_SELL"
    REMOVE_LIQUIDITY = "REMOVE_LIQUIDITY"
    EMERGENCY_SWAP = "EMERGENCY_SWAP"


class BreakerPhase(str, Enum):
    """Circuit breaker lifecycle label.

    RECOVERY is reported after a manual deactivation and does not block trading.
    """
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    RECOVERY = "RECOVERY"


class HistoryAction(str, Enum):
    """Audit history entry kinds."""
    ACTIVATE = "ACTIVATE_EMERGENCY_STOP"
    DEACTIVATE = "DEACTIVATE_EMERGENCY_STOP"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
    LIQUIDATION = "EMERGENCY_LIQUIDATION"


class MarketCondition(str, Enum):
    """Pool condition used to scale slippage tolerance."""
    NORMAL = "normal"
    VOLATILE = "volatile"
    ILLIQUID = "illiquid"


class ViolationType(str, Enum):
    """Limit breach categories reported by the limiter."""
    POSITION_SIZE = "position_size"
    CONCENTRATION = "concentration"
    POSITION_COUNT = "position_count"
    TOTAL_EXPOSURE = "total_exposure"
    ERROR = "error"


class ViolationSeverity(str, Enum):
    """Limit breach severity."""
    WARNING = "warning"
    CRITICAL = "critical"


# =============================================================================
# Gateway Models
# =============================================================================

class TokenBalance(BaseModel):
    """Raw token balance returned by the market state gateway."""
    token: str = Field(..., min_length=1, description="Token symbol")
    amount: Decimal = Field(..., description="Token amount held")


class WalletBalance(BaseModel):
    """A plain token balance held in the wallet, priced for liquidation."""
    kind: Literal["wallet"] = "wallet"
    token: str = Field(..., description="Token symbol")
    amount: Decimal = Field(..., description="Token amount held")
    value_usd: Decimal = Field(default=Decimal("0"), description="Current USD value")
    percent_of_portfolio: float = Field(default=0.0, ge=0, le=1, description="Share of portfolio")
    age_hours: float = Field(default=0.0, ge=0, description="Hours the position has been held")


class LiquidityPosition(BaseModel):
    """A concentrated-liquidity position in a pool."""
    kind: Literal["liquidity"] = "liquidity"
    position_id: str = Field(..., description="Pool position identifier")
    token0: str = Field(..., description="First pool token")
    token1: str = Field(..., description="Second pool token")
    liquidity: Decimal = Field(..., ge=0, description="Position liquidity")
    fee: int = Field(default=0, description="Pool fee tier")
    tick_lower: int = Field(default=0, description="Lower tick")
    tick_upper: int = Field(default=0, description="Upper tick")
    value_usd: Decimal = Field(default=Decimal("0"), description="Current USD value")
    percent_of_portfolio: float = Field(default=0.0, ge=0, le=1, description="Share of portfolio")
    age_hours: float = Field(default=0.0, ge=0, description="Hours the position has been held")

    @property
    def token(self) -> str:
        """Pool pair label."""
        return f"{self.token0}/{self.token1}"

    @property
    def amount(self) -> Decimal:
        return self.liquidity


LiquidationCandidate = Annotated[
    Union[WalletBalance, LiquidityPosition], Field(discriminator="kind")
]


class SwapRequest(BaseModel):
    """Swap instruction passed to the execution gateway."""
    token_in: str
    token_out: str
    amount_in: Decimal = Field(..., gt=0)
    user_address: str
    slippage_tolerance: float = Field(..., ge=0, le=1)
    urgency: Literal["low", "normal", "high"] = "normal"
    deadline: Optional[datetime] = None


class SwapResult(BaseModel):
    """Outcome of a swap reported by the execution gateway."""
    success: bool
    transaction_id: Optional[str] = None
    amount_out: Optional[Decimal] = None
    error: Optional[str] = None


class RemoveLiquidityRequest(BaseModel):
    """Liquidity withdrawal instruction passed to the execution gateway."""
    position_id: str
    liquidity: Decimal = Field(..., ge=0)
    user_address: str
    deadline: Optional[datetime] = None


class RemoveLiquidityResult(BaseModel):
    """Outcome of a liquidity withdrawal."""
    success: bool
    transaction_id: Optional[str] = None
    amount0: Optional[Decimal] = None
    amount1: Optional[Decimal] = None
    error: Optional[str] = None


# =============================================================================
# Snapshot & Metrics Models
# =============================================================================

class PositionSnapshot(BaseModel):
    """One token's exposure within a portfolio snapshot.

    Immutable once stored in the monitor's history.
    """
    model_config = ConfigDict(frozen=True)

    token: str = Field(..., description="Token symbol")
    amount: Decimal = Field(..., description="Token amount")
    price: Decimal = Field(default=Decimal("0"), ge=0, description="USD price at capture")
    value_usd: Decimal = Field(..., description="USD value")
    percent_of_portfolio: float = Field(..., ge=0, le=1, description="Share of portfolio value")
    age_hours: float = Field(default=0.0, ge=0, description="Hours since first seen")
    unrealized_pnl: Decimal = Field(default=Decimal("0"), description="PnL against first seen price")


class RiskMetrics(BaseModel):
    """Derived risk scores for a snapshot. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    total_exposure: Decimal = Field(default=Decimal("0"), description="Sum of position values")
    max_concentration: float = Field(default=0.0, ge=0, le=1, description="Largest position share")
    volatility_score: float = Field(default=0.0, ge=0, description="Stddev of returns, percent")
    liquidity_score: float = Field(default=100.0, ge=0, le=100, description="0-100, higher is more liquid")
    drawdown: float = Field(default=0.0, ge=0, le=1, description="Decline from window peak")
    sharpe_ratio: float = Field(default=0.0, description="Mean return over return stddev")
    risk_score: float = Field(default=0.0, ge=0, le=100, description="Composite 0-100 score")


class PortfolioSnapshot(BaseModel):
    """Whole-portfolio state at a point in time."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()), description="Snapshot ID")
    address: str = Field(default="", description="Wallet address")
    timestamp: datetime = Field(default_factory=utc_now, description="Capture time")
    total_value: Decimal = Field(..., ge=0, description="Total USD value")
    positions: List[PositionSnapshot] = Field(default_factory=list)
    daily_pnl: Decimal = Field(default=Decimal("0"), description="Value change since daily start")
    total_pnl: Decimal = Field(default=Decimal("0"), description="Value change since baseline")
    daily_volume: Decimal = Field(default=Decimal("0"), description="Value turnover over 24h")
    risk_metrics: RiskMetrics = Field(default_factory=RiskMetrics)

    @property
    def tokens(self) -> List[str]:
        return [p.token for p in self.positions]

    def get_position(self, token: str) -> Optional[PositionSnapshot]:
        """Find the snapshot entry for a token."""
        for position in self.positions:
            if position.token == token:
                return position
        return None


class RiskThresholds(BaseModel):
    """Risk-score cutoffs for each risk level."""
    model_config = ConfigDict(frozen=True)

    low: float = Field(..., ge=0, le=100)
    medium: float = Field(..., ge=0, le=100)
    high: float = Field(..., ge=0, le=100)
    critical: float = Field(..., ge=0, le=100)


class RiskProfile(BaseModel):
    """Mode-specific risk thresholds."""
    model_config = ConfigDict(frozen=True)

    mode: TradingMode
    description: str = ""
    max_concentration: float = Field(..., gt=0, le=1)
    risk_thresholds: RiskThresholds
    ignore_checks: List[str] = Field(default_factory=list)

    def ignores(self, check: str) -> bool:
        return check in self.ignore_checks


# =============================================================================
# Monitor Models
# =============================================================================

class MarketAnomaly(BaseModel):
    """An abnormal market or portfolio condition detected from history."""
    type: AnomalyType
    severity: RiskLevel
    description: str
    detected_at: datetime = Field(default_factory=utc_now)
    affected_tokens: List[str] = Field(default_factory=list)


class RiskCheckResult(BaseModel):
    """Result of a single monitor risk check.

    Attributes:
        risk_level: Level mapped from the snapshot's risk score
        should_continue_trading: False when halted by a check or critical risk
        alerts: Human-readable alert messages
        emergency_actions: Emergency actions requested by the checks
        anomalies: Anomalies detected in this cycle
        snapshot_id: Snapshot the check was computed from, if any
        failure: "data_fetch" or "computation" when the check could not complete
    """
    risk_level: RiskLevel
    should_continue_trading: bool
    alerts: List[str] = Field(default_factory=list)
    emergency_actions: List[MonitorAction] = Field(default_factory=list)
    anomalies: List[MarketAnomaly] = Field(default_factory=list)
    snapshot_id: Optional[str] = None
    failure: Optional[Literal["data_fetch", "computation"]] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def fail_closed(
        cls, alert: str, failure: Literal["data_fetch", "computation"]
    ) -> "RiskCheckResult":
        """Result used whenever the check itself could not complete."""
        return cls(
            risk_level=RiskLevel.CRITICAL,
            should_continue_trading=False,
            alerts=[alert],
            emergency_actions=[MonitorAction.EMERGENCY_STOP],
            failure=failure,
        )


class MarketConditions(BaseModel):
    """Market context supplied with a trade or slippage request."""
    volatility: float = Field(default=0.0, ge=0, description="Volatility as a fraction")
    liquidity: Decimal = Field(default=Decimal("0"), ge=0, description="Pool liquidity, USD")
    volume: Decimal = Field(default=Decimal("0"), ge=0, description="24h volume, USD")
    spread: float = Field(default=0.0, ge=0, description="Bid/ask spread as a fraction")
    gas_price: Optional[float] = Field(default=None, ge=0, description="Gas price")


class TradeRequest(BaseModel):
    """A proposed trade submitted for pre-trade validation."""
    token_in: str
    token_out: str
    amount_in: Decimal = Field(..., gt=0)
    user_address: Optional[str] = None
    current_portfolio: Optional[PortfolioSnapshot] = None
    market_conditions: Optional[MarketConditions] = None


class TradeValidation(BaseModel):
    """Monitor verdict for a proposed trade."""
    approved: bool
    risk_level: RiskLevel
    reason: Optional[str] = None
    adjusted_amount: Optional[Decimal] = None


class RiskStatus(BaseModel):
    """Monitor status report."""
    is_monitoring: bool
    monitored_address: Optional[str] = None
    trading_mode: TradingMode
    risk_profile: RiskProfile
    risk_config: Dict[str, Any] = Field(default_factory=dict)
    latest_snapshot: Optional[PortfolioSnapshot] = None
    snapshot_count: int = 0
    baseline_value: Optional[Decimal] = None
    daily_start_value: Optional[Decimal] = None


# =============================================================================
# Limiter Models
# =============================================================================

class PositionExposure(BaseModel):
    """Per-token exposure as seen by the limiter."""
    token: str
    total_amount: Decimal = Field(..., description="USD value of the holding")
    position_count: int = Field(default=1, ge=0)
    percent_of_portfolio: float = Field(default=0.0, ge=0, le=1)
    is_within_limits: bool = True


class PositionCheck(BaseModel):
    """Verdict of can_open_position."""
    allowed: bool
    reason: Optional[str] = None


class LimitViolation(BaseModel):
    """A severity-tagged limit breach, for reporting."""
    type: ViolationType
    severity: ViolationSeverity
    token: Optional[str] = None
    current: float = 0.0
    limit: float = 0.0
    message: str = ""


class SizeAdjustment(BaseModel):
    """Result of auto-adjusting a requested position size."""
    adjusted_amount: Decimal
    was_adjusted: bool
    reason: Optional[str] = None


class ConcentrationViolation(BaseModel):
    token: str
    concentration: float
    limit: float


class ConcentrationCheck(BaseModel):
    """Portfolio-wide concentration validation."""
    is_valid: bool
    violations: List[ConcentrationViolation] = Field(default_factory=list)


# =============================================================================
# Slippage Models
# =============================================================================

class PoolContext(BaseModel):
    """Pool and market context for slippage and price-impact math."""
    pool_liquidity: Decimal = Field(..., ge=0, description="Pool liquidity, USD")
    volume_24h: Decimal = Field(default=Decimal("0"), ge=0, description="24h volume, USD")
    volatility: float = Field(default=0.0, ge=0, description="Volatility as a fraction")
    spread: float = Field(default=0.0, ge=0, description="Spread as a fraction")
    current_price: Decimal = Field(default=Decimal("1"), gt=0, description="Price of token_in")
    gas_price: Optional[float] = Field(default=None, ge=0)


class SlippageValidation(BaseModel):
    valid: bool
    actual_slippage: float
    reason: Optional[str] = None


class SlippageAnalysis(BaseModel):
    """Pre-trade slippage analysis for a pool."""
    expected_price: Decimal
    price_impact: float
    recommended_slippage: float
    market_condition: MarketCondition
    should_proceed: bool
    warnings: List[str] = Field(default_factory=list)


class PriceImpactBreakdown(BaseModel):
    price_impact: float
    fee_impact: float
    spread_impact: float
    total_impact: float
    risk_level: RiskLevel


class DynamicSlippage(BaseModel):
    """Volatility and liquidity adjusted slippage tolerance."""
    adjusted_slippage: float
    adjustment_factor: float
    reasons: List[str] = Field(default_factory=list)


class SplitRecommendation(BaseModel):
    should_split: bool
    chunk_count: int = 1
    chunk_size: Decimal
    estimated_total_impact: float = 0.0
    time_estimate_minutes: float = 0.0


class ExecutionSlippageReport(BaseModel):
    actual_slippage: float
    within_tolerance: bool
    alert: bool
    message: str = ""


class SlippageStats(BaseModel):
    pair: str
    average: float = 0.0
    maximum: float = 0.0
    minimum: float = 0.0
    count: int = 0


class SlippageAlert(BaseModel):
    pair: str
    type: str
    severity: RiskLevel
    value: float
    message: str


class ProtectionSettings(BaseModel):
    emergency_mode: bool
    emergency_limit: float
    max_slippage: float
    high_impact_threshold: float
    default_tolerance: float


class TradeSlippageVerdict(BaseModel):
    """Combined slippage verdict for a single proposed trade."""
    approved: bool
    recommended_slippage: float
    price_impact: PriceImpactBreakdown
    split: SplitRecommendation
    warnings: List[str] = Field(default_factory=list)
    reason: Optional[str] = None


# =============================================================================
# Emergency Models
# =============================================================================

class PortfolioData(BaseModel):
    """Portfolio figures evaluated by check_emergency_conditions."""
    total_value: Decimal = Field(..., ge=0)
    baseline_value: Decimal = Field(..., ge=0)
    daily_start_value: Decimal = Field(default=Decimal("0"), ge=0)
    total_pnl: Decimal = Decimal("0")
    daily_pnl: Decimal = Decimal("0")
    volatility: float = Field(default=0.0, ge=0, description="Volatility as a fraction")


class EmergencyAction(BaseModel):
    """Outcome of one emergency step."""
    type: EmergencyActionType
    success: bool
    timestamp: datetime = Field(default_factory=utc_now)
    details: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class EmergencyState(BaseModel):
    """Circuit breaker state. One instance per breaker."""
    is_emergency_active: bool = False
    emergency_type: Optional[EmergencyType] = None
    trigger_time: Optional[datetime] = None
    trigger_reason: Optional[str] = None
    actions_executed: List[EmergencyAction] = Field(default_factory=list)
    total_positions_liquidated: int = 0
    total_value_liquidated: Decimal = Decimal("0")
    recovery_mode: bool = False

    @property
    def phase(self) -> BreakerPhase:
        if self.is_emergency_active:
            return BreakerPhase.ACTIVE
        if self.recovery_mode:
            return BreakerPhase.RECOVERY
        return BreakerPhase.INACTIVE


class LiquidationPlan(BaseModel):
    """One ordered liquidation step."""
    priority: int = Field(..., ge=1, description="Lower runs first")
    token: str
    amount: Decimal
    estimated_value: Decimal
    liquidation_method: LiquidationMethod
    max_slippage: float = Field(..., ge=0, le=1)
    position: LiquidationCandidate


class LiquidationResult(BaseModel):
    success: bool
    positions_liquidated: int = 0
    total_value_liquidated: Decimal = Decimal("0")
    errors: List[str] = Field(default_factory=list)
    plans: List[LiquidationPlan] = Field(default_factory=list)


class EmergencyHistoryEntry(BaseModel):
    """Append-only audit record."""
    timestamp: datetime = Field(default_factory=utc_now)
    action: HistoryAction
    type: Optional[EmergencyType] = None
    reason: str = ""
    success: bool = True


class EmergencyConditionCheck(BaseModel):
    should_trigger: bool
    severity: RiskLevel = RiskLevel.LOW
    emergency_type: Optional[EmergencyType] = None
    reason: Optional[str] = None


class ErrorCounters(BaseModel):
    system_errors: int = 0
    api_failures: int = 0
    consecutive_failures: int = 0


class EmergencyStatus(BaseModel):
    """Breaker status report."""
    phase: BreakerPhase
    is_emergency_stop_enabled: bool
    manual_override: bool
    safe_mode: bool
    state: EmergencyState
    triggers: Dict[str, Any] = Field(default_factory=dict)
    error_counts: ErrorCounters = Field(default_factory=ErrorCounters)


class EmergencyRehearsal(BaseModel):
    """Dry-run of the emergency path. Nothing is executed."""
    success: bool
    plans: List[LiquidationPlan] = Field(default_factory=list)
    estimated_total_value: Decimal = Decimal("0")
    condition_check: Optional[EmergencyConditionCheck] = None
    errors: List[str] = Field(default_factory=list)


# =============================================================================
# Alert & Engine Models
# =============================================================================

class Alert(BaseModel):
    """Operator notification."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    message: str
    severity: RiskLevel = RiskLevel.MEDIUM
    source: str = "dexguard"
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TradeDecision(BaseModel):
    """Combined pre-trade verdict from the breaker, limiter and monitor."""
    approved: bool
    risk_level: RiskLevel
    reason: Optional[str] = None
    adjusted_amount: Optional[Decimal] = None
    checks_performed: List[str] = Field(default_factory=list)
