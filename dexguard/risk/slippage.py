"""Slippage Guard.

Validates realised slippage against a tolerance, scales tolerance with market
conditions, estimates pool price impact and recommends splitting large trades.
A rolling per-pair history feeds abnormal-slippage alerts.

While emergency limits are active every validation is also held to the tighter
emergency tolerance.
"""
import math
import threading
from collections import deque
from datetime import datetime
from decimal import Decimal
from typing import Callable, Deque, Dict, List, Optional

import structlog

from dexguard.core.config import SlippageConfig
from dexguard.core.models import (
    DynamicSlippage,
    ExecutionSlippageReport,
    MarketCondition,
    MarketConditions,
    PoolContext,
    PriceImpactBreakdown,
    ProtectionSettings,
    RiskLevel,
    SlippageAlert,
    SlippageAnalysis,
    SlippageStats,
    SlippageValidation,
    SplitRecommendation,
    TradeSlippageVerdict,
    utc_now,
)

logger = structlog.get_logger(__name__)


class SlippageGuard:
    """Per-trade slippage protection."""

    # Market condition thresholds
    ILLIQUID_VOLUME_RATIO = Decimal("0.1")
    VOLATILE_THRESHOLD = 0.1

    # Dynamic tolerance inputs
    THIN_LIQUIDITY = Decimal("10000")
    LOW_VOLUME = Decimal("1000")
    WIDE_SPREAD = 0.01
    HIGH_GAS = 100.0

    # Splitting and alerting
    DEFAULT_MAX_SPLIT_IMPACT = 0.02
    SPLIT_IMPACT_OVERHEAD = 1.1
    MINUTES_PER_CHUNK = 0.5
    EXECUTION_ALERT_MULTIPLE = 1.5
    SPIKE_WINDOW = 3
    RECENT_WINDOW = 10
    HIGH_SLIPPAGE = 0.1

    def __init__(
        self,
        config: Optional[SlippageConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or SlippageConfig()
        self._clock = clock

        self.emergency_mode = False
        self.emergency_limit = self.config.emergency_limit

        # Guards the per-pair history
        self._lock = threading.Lock()
        self._history: Dict[str, Deque[float]] = {}

    # === Validation ===

    def validate_slippage(
        self, tolerance: float, expected_out: Decimal, actual_out: Decimal
    ) -> SlippageValidation:
        """
        Compare realised output against expectation.

        Args:
            tolerance: Maximum acceptable slippage as a fraction
            expected_out: Quoted output amount
            actual_out: Output actually received or simulated

        Returns:
            SlippageValidation with the measured slippage
        """
        expected_out = Decimal(str(expected_out))
        actual_out = Decimal(str(actual_out))

        if expected_out <= 0:
            return SlippageValidation(
                valid=False,
                actual_slippage=0.0,
                reason="Expected output must be positive",
            )

        actual_slippage = float((expected_out - actual_out) / expected_out)

        if self.emergency_mode and actual_slippage > self.emergency_limit:
            reason = (
                f"Slippage {actual_slippage:.2%} exceeds emergency limit "
                f"{self.emergency_limit:.2%}"
            )
            logger.warning(
                "slippage.emergency_limit_exceeded",
                actual_slippage=actual_slippage,
                emergency_limit=self.emergency_limit,
            )
            return SlippageValidation(valid=False, actual_slippage=actual_slippage, reason=reason)

        if actual_slippage > tolerance:
            reason = f"Slippage {actual_slippage:.2%} exceeds tolerance {tolerance:.2%}"
            logger.warning(
                "slippage.tolerance_exceeded",
                actual_slippage=actual_slippage,
                tolerance=tolerance,
            )
            return SlippageValidation(valid=False, actual_slippage=actual_slippage, reason=reason)

        return SlippageValidation(valid=True, actual_slippage=actual_slippage)

    def monitor_execution_slippage(
        self, expected_out: Decimal, actual_out: Decimal, tolerance: float
    ) -> ExecutionSlippageReport:
        """Post-execution check; alerts when slippage is well past tolerance."""
        expected_out = Decimal(str(expected_out))
        actual_out = Decimal(str(actual_out))
        if expected_out <= 0:
            return ExecutionSlippageReport(
                actual_slippage=0.0,
                within_tolerance=False,
                alert=True,
                message="Expected output must be positive",
            )

        actual_slippage = float((expected_out - actual_out) / expected_out)
        alert = actual_slippage > tolerance * self.EXECUTION_ALERT_MULTIPLE
        message = ""
        if alert:
            message = (
                f"Execution slippage {actual_slippage:.2%} is more than "
                f"{self.EXECUTION_ALERT_MULTIPLE}x tolerance {tolerance:.2%}"
            )
            logger.warning(
                "slippage.execution_alert",
                actual_slippage=actual_slippage,
                tolerance=tolerance,
            )

        return ExecutionSlippageReport(
            actual_slippage=actual_slippage,
            within_tolerance=actual_slippage <= tolerance,
            alert=alert,
            message=message,
        )

    # === Pool Math ===

    def calculate_price_impact(self, amount: Decimal, liquidity: Decimal) -> float:
        """Approximate constant-product impact, capped at 1."""
        amount = Decimal(str(amount))
        liquidity = Decimal(str(liquidity))
        if liquidity <= 0:
            return 1.0
        ratio = float(amount / liquidity)
        return min(1.0, ratio * (1 + ratio))

    def assess_market_condition(self, pool: PoolContext) -> MarketCondition:
        if pool.volume_24h < pool.pool_liquidity * self.ILLIQUID_VOLUME_RATIO:
            return MarketCondition.ILLIQUID
        if pool.volatility > self.VOLATILE_THRESHOLD:
            return MarketCondition.VOLATILE
        return MarketCondition.NORMAL

    def _recommended_slippage(self, condition: MarketCondition, impact: float) -> float:
        slippage = self.config.default_tolerance
        if condition == MarketCondition.VOLATILE:
            slippage *= 2
        elif condition == MarketCondition.ILLIQUID:
            slippage *= 3
        if impact > self.config.high_impact_threshold:
            slippage += impact
        return min(slippage, self.config.max_slippage)

    def analyze_slippage(self, amount: Decimal, pool: PoolContext) -> SlippageAnalysis:
        """Pre-trade analysis of impact, condition and recommended tolerance."""
        impact = self.calculate_price_impact(amount, pool.pool_liquidity)
        condition = self.assess_market_condition(pool)
        recommended = self._recommended_slippage(condition, impact)

        warnings = []
        if impact > self.config.high_impact_threshold:
            warnings.append(f"High price impact: {impact:.2%}")
        if condition != MarketCondition.NORMAL:
            warnings.append(f"Market condition is {condition.value}")
        if impact > self.config.max_slippage:
            warnings.append(
                f"Price impact exceeds maximum slippage {self.config.max_slippage:.2%}"
            )

        expected_price = pool.current_price * (Decimal("1") - Decimal(str(impact)))

        return SlippageAnalysis(
            expected_price=expected_price,
            price_impact=impact,
            recommended_slippage=recommended,
            market_condition=condition,
            should_proceed=impact <= self.config.max_slippage,
            warnings=warnings,
        )

    def should_execute_trade(
        self, analysis: SlippageAnalysis, max_acceptable_impact: Optional[float] = None
    ) -> bool:
        limit = self.config.max_slippage if max_acceptable_impact is None else max_acceptable_impact
        return analysis.price_impact <= limit and analysis.recommended_slippage <= self.config.max_slippage

    def calculate_optimal_trade_size(
        self, liquidity: Decimal, max_impact: Optional[float] = None
    ) -> Decimal:
        """Largest trade whose estimated impact stays within max_impact."""
        liquidity = Decimal(str(liquidity))
        if liquidity <= 0:
            return Decimal("0")
        target = Decimal(str(self.config.high_impact_threshold if max_impact is None else max_impact))
        # Inverse of r * (1 + r) = target
        ratio = ((1 + 4 * target).sqrt() - 1) / 2
        return liquidity * ratio

    def calculate_minimum_output(self, expected_out: Decimal, tolerance: float) -> Decimal:
        expected_out = Decimal(str(expected_out))
        return expected_out * (Decimal("1") - Decimal(str(tolerance)))

    def calculate_advanced_price_impact(
        self, amount: Decimal, pool: PoolContext
    ) -> PriceImpactBreakdown:
        """Impact including swap fee and spread, with a coarse risk level."""
        amount = Decimal(str(amount))
        fee = self.config.trading_fee

        if pool.pool_liquidity <= 0:
            return PriceImpactBreakdown(
                price_impact=1.0,
                fee_impact=fee,
                spread_impact=0.0,
                total_impact=1.0,
                risk_level=RiskLevel.HIGH,
            )

        ratio = float(amount / pool.pool_liquidity)
        price_impact = ratio / (1 + ratio)
        spread_impact = min(2 * ratio, 0.01)
        total = price_impact + fee + spread_impact

        if total < 0.01:
            level = RiskLevel.LOW
        elif total < 0.05:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.HIGH

        volume_ratio = float(pool.volume_24h / pool.pool_liquidity)
        if volume_ratio < 0.1:
            level = RiskLevel.MEDIUM if level == RiskLevel.LOW else RiskLevel.HIGH

        return PriceImpactBreakdown(
            price_impact=price_impact,
            fee_impact=fee,
            spread_impact=spread_impact,
            total_impact=total,
            risk_level=level,
        )

    def calculate_dynamic_slippage(
        self, base_tolerance: float, conditions: MarketConditions
    ) -> DynamicSlippage:
        """
        Scale a base tolerance with market conditions.

        Tolerance never decreases as volatility rises or liquidity thins. The
        result is capped at the maximum slippage, and at the emergency limit while
        emergency limits are active.
        """
        factor = 1.0
        reasons: List[str] = []

        if conditions.volatility > self.VOLATILE_THRESHOLD:
            factor *= 1 + (conditions.volatility - self.VOLATILE_THRESHOLD) * 2
            reasons.append(f"High volatility: {conditions.volatility:.2%}")

        if conditions.liquidity < self.THIN_LIQUIDITY:
            factor *= 1.5
            reasons.append(f"Low liquidity: ${conditions.liquidity}")

        if conditions.volume < self.LOW_VOLUME:
            factor *= 1.3
            reasons.append(f"Low volume: ${conditions.volume}")

        if conditions.spread > self.WIDE_SPREAD:
            factor *= 1 + conditions.spread
            reasons.append(f"Wide spread: {conditions.spread:.2%}")

        if conditions.gas_price is not None and conditions.gas_price > self.HIGH_GAS:
            factor *= 1.2
            reasons.append(f"High gas price: {conditions.gas_price}")

        adjusted = min(base_tolerance * factor, self.config.max_slippage)
        if adjusted < base_tolerance * factor:
            reasons.append(f"Capped at maximum slippage {self.config.max_slippage:.2%}")

        if self.emergency_mode and adjusted > self.emergency_limit:
            adjusted = self.emergency_limit
            reasons.append(f"Emergency slippage limit {self.emergency_limit:.2%} active")

        return DynamicSlippage(
            adjusted_slippage=adjusted,
            adjustment_factor=factor,
            reasons=reasons,
        )

    def recommend_trade_splitting(
        self,
        amount: Decimal,
        context: PoolContext,
        max_acceptable_impact: Optional[float] = None,
    ) -> SplitRecommendation:
        """Split a trade into chunks that each stay within the impact bound."""
        amount = Decimal(str(amount))
        max_impact = (
            self.DEFAULT_MAX_SPLIT_IMPACT if max_acceptable_impact is None else max_acceptable_impact
        )
        liquidity = context.pool_liquidity

        single_impact = self.calculate_price_impact(amount, liquidity)
        if liquidity <= 0 or single_impact <= max_impact:
            return SplitRecommendation(
                should_split=False,
                chunk_count=1,
                chunk_size=amount,
                estimated_total_impact=single_impact,
            )

        max_chunk = self.calculate_optimal_trade_size(liquidity, max_impact)
        chunk_count = max(2, math.ceil(amount / max_chunk))
        chunk_size = amount / chunk_count
        chunk_impact = self.calculate_price_impact(chunk_size, liquidity)

        logger.info(
            "slippage.split_recommended",
            amount=str(amount),
            chunks=chunk_count,
            single_impact=single_impact,
        )

        return SplitRecommendation(
            should_split=True,
            chunk_count=chunk_count,
            chunk_size=chunk_size,
            estimated_total_impact=chunk_impact * chunk_count * self.SPLIT_IMPACT_OVERHEAD,
            time_estimate_minutes=chunk_count * self.MINUTES_PER_CHUNK,
        )

    def validate_trade_slippage(
        self, amount: Decimal, pool: PoolContext, requested_tolerance: float
    ) -> TradeSlippageVerdict:
        """Combine dynamic tolerance, fee-aware impact and split advice."""
        conditions = MarketConditions(
            volatility=pool.volatility,
            liquidity=pool.pool_liquidity,
            volume=pool.volume_24h,
            spread=pool.spread,
            gas_price=pool.gas_price,
        )
        dynamic = self.calculate_dynamic_slippage(requested_tolerance, conditions)
        impact = self.calculate_advanced_price_impact(amount, pool)
        split = self.recommend_trade_splitting(amount, pool)

        warnings = list(dynamic.reasons)
        if split.should_split:
            warnings.append(f"Consider splitting into {split.chunk_count} trades")

        reason = None
        if impact.total_impact > dynamic.adjusted_slippage:
            reason = (
                f"Estimated impact {impact.total_impact:.2%} exceeds allowed "
                f"slippage {dynamic.adjusted_slippage:.2%}"
            )

        return TradeSlippageVerdict(
            approved=reason is None,
            recommended_slippage=dynamic.adjusted_slippage,
            price_impact=impact,
            split=split,
            warnings=warnings,
            reason=reason,
        )

    # === History & Alerts ===

    def record_slippage(self, pair: str, slippage: float):
        with self._lock:
            history = self._history.get(pair)
            if history is None:
                history = deque(maxlen=self.config.history_size)
                self._history[pair] = history
            history.append(float(slippage))

    def get_slippage_stats(self, pair: str) -> SlippageStats:
        with self._lock:
            values = list(self._history.get(pair, ()))
        if not values:
            return SlippageStats(pair=pair)
        return SlippageStats(
            pair=pair,
            average=sum(values) / len(values),
            maximum=max(values),
            minimum=min(values),
            count=len(values),
        )

    def get_slippage_alerts(self) -> List[SlippageAlert]:
        """Abnormal slippage per pair. Pairs with little history are skipped."""
        with self._lock:
            snapshot = {pair: list(values) for pair, values in self._history.items()}

        alerts: List[SlippageAlert] = []
        high_average = self.config.default_tolerance * self.config.alert_multiple

        for pair, values in snapshot.items():
            if len(values) < self.config.min_history_for_alerts:
                continue

            average = sum(values) / len(values)
            spike = values[-self.SPIKE_WINDOW:]
            spike_average = sum(spike) / len(spike)
            recent = values[-self.RECENT_WINDOW:]
            recent_average = sum(recent) / len(recent)
            worst = max(values)

            if average > 0 and spike_average > average * 2:
                alerts.append(
                    SlippageAlert(
                        pair=pair,
                        type="SLIPPAGE_SPIKE",
                        severity=RiskLevel.HIGH,
                        value=spike_average,
                        message=f"Recent slippage {spike_average:.2%} is over twice the average {average:.2%}",
                    )
                )

            if recent_average > high_average:
                alerts.append(
                    SlippageAlert(
                        pair=pair,
                        type="HIGH_AVG_SLIPPAGE",
                        severity=RiskLevel.MEDIUM,
                        value=recent_average,
                        message=(
                            f"Recent average slippage {recent_average:.2%} exceeds "
                            f"{self.config.alert_multiple}x tolerance"
                        ),
                    )
                )

            if worst > self.HIGH_SLIPPAGE:
                alerts.append(
                    SlippageAlert(
                        pair=pair,
                        type="HIGH_SLIPPAGE",
                        severity=RiskLevel.CRITICAL,
                        value=worst,
                        message=f"Slippage of {worst:.2%} recorded",
                    )
                )

        return alerts

    # === Emergency Limits ===

    def activate_emergency_limits(self, limit: Optional[float] = None):
        """Hold every validation to a tighter emergency tolerance."""
        self.emergency_mode = True
        if limit is not None:
            self.emergency_limit = limit
        logger.warning("slippage.emergency_limits_activated", emergency_limit=self.emergency_limit)

    def deactivate_emergency_limits(self):
        self.emergency_mode = False
        self.emergency_limit = self.config.emergency_limit
        logger.info("slippage.emergency_limits_deactivated")

    def get_protection_settings(self) -> ProtectionSettings:
        return ProtectionSettings(
            emergency_mode=self.emergency_mode,
            emergency_limit=self.emergency_limit,
            max_slippage=self.config.max_slippage,
            high_impact_threshold=self.config.high_impact_threshold,
            default_tolerance=self.config.default_tolerance,
        )
