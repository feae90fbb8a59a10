"""Position & Exposure Limiter.

Enforces per-token position size, position count, portfolio concentration and
daily volume caps before a trade is placed. Amounts are USD notionals.

Checks in can_open_position run in a fixed precedence order; the first failing
rule decides the reason returned to the caller.
"""
import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from dexguard.core.config import ConfigUpdateResult, PositionLimitsConfig, apply_update
from dexguard.core.exceptions import GatewayError
from dexguard.core.models import (
    ConcentrationCheck,
    ConcentrationViolation,
    LimitViolation,
    PositionCheck,
    PositionExposure,
    SizeAdjustment,
    ViolationSeverity,
    ViolationType,
    utc_now,
)
from dexguard.exchange.gateway import MarketStateGateway

logger = structlog.get_logger(__name__)


@dataclass
class LimitRule:
    """Post-trade limit rule evaluated against current exposures.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Returns a rejection reason, or None when the trade fits
        priority: Lower numbers are checked first
    """
    name: str
    check_fn: Callable[[str, Decimal, List[PositionExposure]], Optional[str]]
    priority: int


class PositionLimiter:
    """Pre-trade position and exposure limits for one wallet."""

    # Safe-size buffer against price movement between check and execution
    AUTO_ADJUST_FACTOR = Decimal("0.9")

    # Violation escalation multiples
    SIZE_CRITICAL_MULTIPLE = Decimal("1.2")
    CONCENTRATION_CRITICAL_MULTIPLE = 1.3
    EXPOSURE_CRITICAL_MULTIPLE = Decimal("1.5")

    # Emergency exit thresholds
    EMERGENCY_CONCENTRATION = 0.8

    def __init__(
        self,
        market: MarketStateGateway,
        config: Optional[PositionLimitsConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.market = market
        self.limits = config or PositionLimitsConfig()
        self._clock = clock

        # Guards the daily volume map and its reset date
        self._lock = threading.Lock()
        self._daily_volume: Dict[str, Decimal] = {}
        self._volume_date: date = clock().date()

        self._rules: List[LimitRule] = []
        self._register_default_rules()

    def _register_default_rules(self):
        """Register post-trade rules in precedence order.

        Daily volume is not a rule here; it is checked before exposures are fetched.
        """
        self._rules = [
            LimitRule(
                name="position_size",
                check_fn=self._check_position_size,
                priority=2,
            ),
            LimitRule(
                name="position_count",
                check_fn=self._check_position_count,
                priority=3,
            ),
            LimitRule(
                name="total_exposure",
                check_fn=self._check_total_exposure,
                priority=4,
            ),
        ]
        self._rules.sort(key=lambda r: r.priority)

    # === Exposures ===

    async def _fetch_exposures(self, address: str) -> List[PositionExposure]:
        balances = await self.market.get_balances(address)
        held = [b for b in balances if b.amount > 0]
        if not held:
            return []

        prices = await self.market.get_prices([b.token for b in held])

        values: Dict[str, Decimal] = {}
        for balance in held:
            price = prices.get(balance.token)
            if price is None:
                raise GatewayError(
                    f"No price for held token {balance.token}", operation="get_prices"
                )
            values[balance.token] = values.get(balance.token, Decimal("0")) + balance.amount * Decimal(str(price))

        total = sum(values.values(), Decimal("0"))
        exposures = []
        for token, value in values.items():
            share = float(value / total) if total > 0 else 0.0
            exposures.append(
                PositionExposure(
                    token=token,
                    total_amount=value,
                    position_count=1,
                    percent_of_portfolio=min(1.0, max(0.0, share)),
                    is_within_limits=(
                        value <= self.limits.max_position_size
                        and share <= self.limits.concentration_limit
                    ),
                )
            )
        return exposures

    async def calculate_exposures(self, address: str) -> List[PositionExposure]:
        """Current per-token exposures.

        Returns an empty list when the gateway fails. An empty list is not
        "no risk"; can_open_position denies on the same failure.
        """
        try:
            return await self._fetch_exposures(address)
        except Exception as e:
            logger.error(
                "position_limits.exposure_fetch_failed",
                address=address,
                error=str(e),
                exc_info=True,
            )
            return []

    # === Daily Volume ===

    def _reset_daily_limits_if_needed(self):
        # Caller holds self._lock
        today = self._clock().date()
        if today != self._volume_date:
            logger.info(
                "position_limits.daily_reset",
                previous_date=self._volume_date.isoformat(),
                tokens=len(self._daily_volume),
            )
            self._daily_volume.clear()
            self._volume_date = today

    def record_trade(self, token: str, amount: Decimal):
        """Accrue executed volume for a token."""
        amount = Decimal(str(amount))
        with self._lock:
            self._reset_daily_limits_if_needed()
            total = self._daily_volume.get(token, Decimal("0")) + abs(amount)
            self._daily_volume[token] = total

        logger.debug(
            "position_limits.volume_recorded",
            token=token,
            amount=str(amount),
            daily_volume=str(total),
        )

    def get_daily_volume(self, token: str) -> Decimal:
        with self._lock:
            self._reset_daily_limits_if_needed()
            return self._daily_volume.get(token, Decimal("0"))

    # === Pre-trade Checks ===

    async def can_open_position(
        self, token: str, amount: Decimal, address: str
    ) -> PositionCheck:
        """
        Check whether a new position fits every limit.

        Evaluated in order: daily volume, position size, position count,
        total exposure. The first failure is returned.

        Args:
            token: Token to buy
            amount: Trade size as USD notional
            address: Wallet address

        Returns:
            PositionCheck with allowed flag and rejection reason
        """
        amount = Decimal(str(amount))

        volume_reason = self._check_daily_volume(token, amount)
        if volume_reason:
            return self._reject(token, amount, "daily_volume", volume_reason)

        try:
            exposures = await self._fetch_exposures(address)
        except Exception as e:
            logger.error(
                "position_limits.check_failed",
                token=token,
                amount=str(amount),
                error=str(e),
                exc_info=True,
            )
            return PositionCheck(allowed=False, reason="Error checking position limits")

        for rule in self._rules:
            try:
                reason = rule.check_fn(token, amount, exposures)
            except Exception as e:
                logger.error(
                    "position_limits.rule_error",
                    rule=rule.name,
                    token=token,
                    error=str(e),
                )
                return PositionCheck(
                    allowed=False,
                    reason=f"Limit rule '{rule.name}' encountered an error",
                )
            if reason:
                return self._reject(token, amount, rule.name, reason)

        return PositionCheck(allowed=True)

    def _reject(self, token: str, amount: Decimal, rule: str, reason: str) -> PositionCheck:
        logger.warning(
            "position_limits.position_rejected",
            token=token,
            amount=str(amount),
            rule=rule,
            reason=reason,
        )
        return PositionCheck(allowed=False, reason=reason)

    def _check_daily_volume(self, token: str, amount: Decimal) -> Optional[str]:
        with self._lock:
            self._reset_daily_limits_if_needed()
            projected = self._daily_volume.get(token, Decimal("0")) + amount
        if projected > self.limits.max_daily_volume:
            return (
                f"Daily volume would exceed limit: "
                f"{projected} > {self.limits.max_daily_volume}"
            )
        return None

    def _check_position_size(
        self, token: str, amount: Decimal, exposures: List[PositionExposure]
    ) -> Optional[str]:
        current = _exposure_for(token, exposures)
        projected = (current.total_amount if current else Decimal("0")) + amount
        if projected > self.limits.max_position_size:
            return (
                f"Position size would exceed limit: "
                f"{projected} > {self.limits.max_position_size}"
            )
        return None

    def _check_position_count(
        self, token: str, amount: Decimal, exposures: List[PositionExposure]
    ) -> Optional[str]:
        current = _exposure_for(token, exposures)
        projected = (current.position_count if current else 0) + 1
        if projected > self.limits.max_positions_per_token:
            return (
                f"Position count would exceed limit: "
                f"{projected} > {self.limits.max_positions_per_token}"
            )
        return None

    def _check_total_exposure(
        self, token: str, amount: Decimal, exposures: List[PositionExposure]
    ) -> Optional[str]:
        projected = _total_exposure(exposures) + amount
        if projected > self.limits.total_exposure_limit:
            return (
                f"Total exposure would exceed limit: "
                f"{projected} > {self.limits.total_exposure_limit}"
            )
        return None

    # === Safe Sizing ===

    def calculate_max_safe_position_size(
        self,
        token: str,
        exposures: List[PositionExposure],
        portfolio_value: Decimal,
    ) -> Decimal:
        """Tightest of the concentration, position-size and total-exposure capacities."""
        current = _exposure_for(token, exposures)
        current_value = current.total_amount if current else Decimal("0")

        concentration_capacity = (
            Decimal(str(portfolio_value)) * Decimal(str(self.limits.concentration_limit))
            - current_value
        )
        position_capacity = self.limits.max_position_size - current_value
        exposure_capacity = self.limits.total_exposure_limit - _total_exposure(exposures)

        return max(
            Decimal("0"),
            min(concentration_capacity, position_capacity, exposure_capacity),
        )

    def auto_adjust_position_size(
        self,
        requested: Decimal,
        token: str,
        exposures: List[PositionExposure],
        portfolio_value: Decimal,
    ) -> SizeAdjustment:
        """Shrink a requested size to 90% of the safe maximum when it does not fit."""
        requested = Decimal(str(requested))
        safe = self.calculate_max_safe_position_size(token, exposures, portfolio_value)

        if requested <= safe:
            return SizeAdjustment(adjusted_amount=requested, was_adjusted=False)

        adjusted = safe * self.AUTO_ADJUST_FACTOR
        reason = (
            f"Position size reduced from {requested} to {adjusted} "
            f"to comply with risk limits"
        )
        logger.info(
            "position_limits.size_adjusted",
            token=token,
            requested=str(requested),
            adjusted=str(adjusted),
            max_safe=str(safe),
        )
        return SizeAdjustment(adjusted_amount=adjusted, was_adjusted=True, reason=reason)

    # === Reporting ===

    async def get_violations(self, address: str) -> List[LimitViolation]:
        """Severity-tagged list of current limit breaches. Reporting only."""
        try:
            exposures = await self._fetch_exposures(address)
        except Exception as e:
            logger.error(
                "position_limits.violations_failed",
                address=address,
                error=str(e),
            )
            return [
                LimitViolation(
                    type=ViolationType.ERROR,
                    severity=ViolationSeverity.CRITICAL,
                    message=f"Unable to evaluate limits: {e}",
                )
            ]

        violations: List[LimitViolation] = []
        max_size = self.limits.max_position_size
        concentration_limit = self.limits.concentration_limit

        for exposure in exposures:
            if exposure.total_amount > max_size:
                critical = exposure.total_amount > max_size * self.SIZE_CRITICAL_MULTIPLE
                violations.append(
                    LimitViolation(
                        type=ViolationType.POSITION_SIZE,
                        severity=_severity(critical),
                        token=exposure.token,
                        current=float(exposure.total_amount),
                        limit=float(max_size),
                        message=f"{exposure.token} position {exposure.total_amount} exceeds {max_size}",
                    )
                )

            if exposure.percent_of_portfolio > concentration_limit:
                critical = (
                    exposure.percent_of_portfolio
                    > concentration_limit * self.CONCENTRATION_CRITICAL_MULTIPLE
                )
                violations.append(
                    LimitViolation(
                        type=ViolationType.CONCENTRATION,
                        severity=_severity(critical),
                        token=exposure.token,
                        current=exposure.percent_of_portfolio,
                        limit=concentration_limit,
                        message=(
                            f"{exposure.token} concentration "
                            f"{exposure.percent_of_portfolio:.1%} exceeds {concentration_limit:.1%}"
                        ),
                    )
                )

            if exposure.position_count > self.limits.max_positions_per_token:
                violations.append(
                    LimitViolation(
                        type=ViolationType.POSITION_COUNT,
                        severity=ViolationSeverity.WARNING,
                        token=exposure.token,
                        current=float(exposure.position_count),
                        limit=float(self.limits.max_positions_per_token),
                        message=f"{exposure.token} has {exposure.position_count} positions",
                    )
                )

        total = _total_exposure(exposures)
        max_total = self.limits.total_exposure_limit
        if total > max_total:
            critical = total > max_total * self.EXPOSURE_CRITICAL_MULTIPLE
            violations.append(
                LimitViolation(
                    type=ViolationType.TOTAL_EXPOSURE,
                    severity=_severity(critical),
                    current=float(total),
                    limit=float(max_total),
                    message=f"Total exposure {total} exceeds {max_total}",
                )
            )

        if violations:
            logger.warning(
                "position_limits.violations_found",
                address=address,
                count=len(violations),
                critical=sum(1 for v in violations if v.severity == ViolationSeverity.CRITICAL),
            )
        return violations

    async def should_emergency_exit(self, address: str) -> bool:
        """True when exposures are far enough outside limits to warrant an exit.

        A fetch failure also returns True.
        """
        try:
            exposures = await self._fetch_exposures(address)
        except Exception as e:
            logger.error("position_limits.emergency_exit_check_failed", error=str(e))
            return True

        if any(e.percent_of_portfolio > self.EMERGENCY_CONCENTRATION for e in exposures):
            return True
        return _total_exposure(exposures) > (
            self.limits.total_exposure_limit * self.EXPOSURE_CRITICAL_MULTIPLE
        )

    async def validate_portfolio_concentration(self, address: str) -> ConcentrationCheck:
        """List tokens whose share exceeds the portfolio concentration limit."""
        if self.limits.disable_portfolio_limits:
            return ConcentrationCheck(is_valid=True)

        try:
            exposures = await self._fetch_exposures(address)
        except Exception as e:
            logger.error("position_limits.concentration_check_failed", error=str(e))
            return ConcentrationCheck(is_valid=False)

        limit = self.limits.max_portfolio_concentration
        violations = [
            ConcentrationViolation(
                token=e.token, concentration=e.percent_of_portfolio, limit=limit
            )
            for e in exposures
            if e.percent_of_portfolio > limit
        ]
        return ConcentrationCheck(is_valid=not violations, violations=violations)

    # === Configuration ===

    def update_limits(self, updates: Dict[str, Any]) -> ConfigUpdateResult:
        """Apply a partial limits update. Nothing changes if validation fails."""
        updated, result = apply_update(self.limits, updates)
        if result.success:
            self.limits = updated
            logger.info("position_limits.limits_updated", **{k: str(v) for k, v in updates.items()})
        else:
            logger.warning("position_limits.limits_update_rejected", error=result.error)
        return result

    def get_current_limits(self) -> PositionLimitsConfig:
        return self.limits.model_copy()


def _exposure_for(token: str, exposures: List[PositionExposure]) -> Optional[PositionExposure]:
    for exposure in exposures:
        if exposure.token == token:
            return exposure
    return None


def _total_exposure(exposures: List[PositionExposure]) -> Decimal:
    return sum((e.total_amount for e in exposures), Decimal("0"))


def _severity(critical: bool) -> ViolationSeverity:
    return ViolationSeverity.CRITICAL if critical else ViolationSeverity.WARNING
