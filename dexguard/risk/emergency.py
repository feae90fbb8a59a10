"""Emergency Circuit Breaker.

The top-level state machine of the risk core:

    INACTIVE -> ACTIVE -> RECOVERY -> INACTIVE

Activation is first-wins. The check-then-set on the emergency flag happens under
a lock with no await in between, so racing activations (from the monitor loop,
from error counters or from the trading engine) produce exactly one active
emergency carrying the winner's type and reason.

Once the flag is set, the stop is never unwound by a later failure. Alerting and
liquidation are best-effort steps recorded in the emergency state. Deactivation is
manual only.
"""
import inspect
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from dexguard.core.config import (
    ConfigUpdateResult,
    EmergencyConfig,
    EmergencyTriggers,
    apply_update,
)
from dexguard.core.exceptions import DexGuardError
from dexguard.core.models import (
    Alert,
    EmergencyAction,
    EmergencyActionType,
    EmergencyConditionCheck,
    EmergencyHistoryEntry,
    EmergencyRehearsal,
    EmergencyState,
    EmergencyStatus,
    EmergencyType,
    ErrorCounters,
    HistoryAction,
    LiquidationMethod,
    LiquidationPlan,
    LiquidationResult,
    LiquidityPosition,
    PortfolioData,
    RemoveLiquidityRequest,
    RiskLevel,
    SwapRequest,
    WalletBalance,
    utc_now,
)
from dexguard.exchange.gateway import ExecutionGateway, MarketStateGateway
from dexguard.notifications.alerts import AlertDispatcher

logger = structlog.get_logger(__name__)

HistoryListener = Callable[[EmergencyHistoryEntry], Any]
AgeProvider = Callable[[], Dict[str, float]]


class LiquidationError(DexGuardError):
    """A single liquidation plan could not be executed."""


class EmergencyCircuitBreaker:
    """Emergency stop, error counters and prioritized liquidation."""

    # Liquidation priority scoring
    BASE_PRIORITY = 50
    HIGH_CONCENTRATION = 0.5
    MEDIUM_CONCENTRATION = 0.3
    LARGE_POSITION = Decimal("1000")
    MEDIUM_POSITION = Decimal("500")
    AGED_POSITION_HOURS = 24.0

    def __init__(
        self,
        market: MarketStateGateway,
        execution: ExecutionGateway,
        wallet_address: str,
        triggers: Optional[EmergencyTriggers] = None,
        config: Optional[EmergencyConfig] = None,
        alerts: Optional[AlertDispatcher] = None,
        clock: Callable[[], datetime] = utc_now,
        age_provider: Optional[AgeProvider] = None,
    ):
        self.market = market
        self.execution = execution
        self.wallet_address = wallet_address
        self.triggers = triggers or EmergencyTriggers()
        self.config = config or EmergencyConfig()
        self.alerts = alerts or AlertDispatcher()
        self._clock = clock
        self.age_provider = age_provider

        # Guards emergency state, override flags, counters and history
        self._lock = threading.RLock()
        self.state = EmergencyState()
        self.manual_override = self.config.emergency_stop
        self.safe_mode = False
        self._counters = ErrorCounters()
        self._history: List[EmergencyHistoryEntry] = []
        self._listeners: List[HistoryListener] = []

        if self.manual_override:
            logger.critical(
                "emergency.manual_override_engaged",
                source="environment",
                wallet=wallet_address,
            )

    # === State ===

    def is_emergency_stop_enabled(self) -> bool:
        """True if trading must not proceed."""
        with self._lock:
            return self.manual_override or self.state.is_emergency_active

    def add_listener(self, listener: HistoryListener):
        """Register a callback run with every new history entry."""
        self._listeners.append(listener)

    async def _emit(self, entry: EmergencyHistoryEntry):
        for listener in self._listeners:
            try:
                result = listener(entry)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "emergency.listener_failed",
                    action=entry.action.value,
                    error=str(e),
                )

    def _append_history(
        self,
        action: HistoryAction,
        emergency_type: Optional[EmergencyType],
        reason: str,
        success: bool = True,
    ) -> EmergencyHistoryEntry:
        # Caller holds self._lock
        entry = EmergencyHistoryEntry(
            timestamp=self._clock(),
            action=action,
            type=emergency_type,
            reason=reason,
            success=success,
        )
        self._history.append(entry)
        if len(self._history) > self.config.history_limit:
            self._history = self._history[-self.config.history_limit:]
        return entry

    def _record_action(self, action: EmergencyAction):
        with self._lock:
            self.state.actions_executed.append(action)
        if not action.success:
            logger.error(
                "emergency.action_failed",
                action=action.type.value,
                error=action.error,
            )

    # === Activation ===

    async def activate_emergency_stop(
        self,
        emergency_type: EmergencyType,
        reason: str,
        auto_liquidate: bool = False,
    ) -> bool:
        """
        Halt trading and run the emergency steps.

        First-wins: if an emergency is already active this logs and returns
        without touching the existing state.

        Listeners see the ACTIVATE entry before any step runs. Steps, each
        recorded and none able to unwind the halt: STOP_TRADING, ALERT_ADMIN,
        optionally LIQUIDATE_POSITIONS, then SAFE_MODE even if the call is
        cancelled mid-liquidation.

        Args:
            emergency_type: Category of the emergency
            reason: Human-readable trigger reason
            auto_liquidate: Liquidate all positions after halting

        Returns:
            True if this call activated the emergency stop
        """
        with self._lock:
            if self.state.is_emergency_active:
                logger.warning(
                    "emergency.already_active",
                    active_type=self.state.emergency_type.value if self.state.emergency_type else None,
                    requested_type=emergency_type.value,
                    requested_reason=reason,
                )
                return False

            self.state = EmergencyState(
                is_emergency_active=True,
                emergency_type=emergency_type,
                trigger_time=self._clock(),
                trigger_reason=reason,
            )
            entry = self._append_history(HistoryAction.ACTIVATE, emergency_type, reason)

        logger.critical(
            "emergency.stop_activated",
            type=emergency_type.value,
            reason=reason,
            auto_liquidate=auto_liquidate,
            wallet=self.wallet_address,
        )

        try:
            await self._emit(entry)
            self._record_action(self._stop_trading())
            self._record_action(self._alert_admin(emergency_type, reason))
            if auto_liquidate:
                self._record_action(await self._liquidate_positions())
        except Exception as e:
            # The halt stands regardless
            logger.critical(
                "emergency.activation_steps_failed",
                type=emergency_type.value,
                error=str(e),
                exc_info=True,
            )
        finally:
            self._record_action(self._enter_safe_mode())

        return True

    def _stop_trading(self) -> EmergencyAction:
        with self._lock:
            halted = self.state.is_emergency_active
        return EmergencyAction(
            type=EmergencyActionType.STOP_TRADING,
            success=True,
            timestamp=self._clock(),
            details={"halted": halted},
        )

    def _alert_admin(self, emergency_type: EmergencyType, reason: str) -> EmergencyAction:
        try:
            queued = self.alerts.notify(
                Alert(
                    title=f"Emergency stop: {emergency_type.value}",
                    message=reason,
                    severity=RiskLevel.CRITICAL,
                    source="emergency",
                    metadata={"wallet": self.wallet_address},
                )
            )
        except Exception as e:
            return EmergencyAction(
                type=EmergencyActionType.ALERT_ADMIN,
                success=False,
                timestamp=self._clock(),
                error=str(e),
            )
        return EmergencyAction(
            type=EmergencyActionType.ALERT_ADMIN,
            success=queued,
            timestamp=self._clock(),
            error=None if queued else "Alert could not be queued",
        )

    async def _liquidate_positions(self) -> EmergencyAction:
        result = await self.emergency_liquidate_all_positions()
        return EmergencyAction(
            type=EmergencyActionType.LIQUIDATE_POSITIONS,
            success=result.success,
            timestamp=self._clock(),
            details={
                "positions_liquidated": result.positions_liquidated,
                "value_liquidated": str(result.total_value_liquidated),
                "plans": len(result.plans),
            },
            error="; ".join(result.errors) if result.errors else None,
        )

    def _enter_safe_mode(self) -> EmergencyAction:
        with self._lock:
            self.safe_mode = True
        return EmergencyAction(
            type=EmergencyActionType.SAFE_MODE,
            success=True,
            timestamp=self._clock(),
        )

    async def deactivate_emergency_stop(self, reason: str) -> bool:
        """
        Clear the emergency stop and enter recovery.

        Resets every error counter and the manual override. Must only be
        called by a human operator.

        Returns:
            True if an emergency stop or manual override was in effect
        """
        with self._lock:
            was_active = self.state.is_emergency_active or self.manual_override
            previous_type = self.state.emergency_type
            self.state.is_emergency_active = False
            self.state.recovery_mode = True
            self.manual_override = False
            self.safe_mode = False
            self._counters = ErrorCounters()
            entry = self._append_history(HistoryAction.DEACTIVATE, previous_type, reason)

        logger.warning(
            "emergency.stop_deactivated",
            reason=reason,
            previous_type=previous_type.value if previous_type else None,
            was_active=was_active,
        )

        if self.alerts.config.notify_on_recovery:
            self.alerts.notify(
                Alert(
                    title="Emergency stop deactivated",
                    message=reason,
                    severity=RiskLevel.MEDIUM,
                    source="emergency",
                    metadata={"wallet": self.wallet_address},
                )
            )

        await self._emit(entry)
        return was_active

    async def set_manual_override(self, enabled: bool, reason: str):
        """Engage or release the manual kill switch.

        Releasing it does not clear an active emergency; use
        deactivate_emergency_stop for that.
        """
        with self._lock:
            self.manual_override = enabled
            entry = self._append_history(
                HistoryAction.MANUAL_OVERRIDE,
                EmergencyType.MANUAL_STOP if enabled else None,
                reason,
            )

        logger.warning("emergency.manual_override_set", enabled=enabled, reason=reason)
        await self._emit(entry)

    # === Trigger Evaluation ===

    def check_emergency_conditions(self, data: PortfolioData) -> EmergencyConditionCheck:
        """
        Evaluate trip conditions in order; the first met wins.

        Order: portfolio loss, daily loss, volatility, system errors, API failures.
        Loss triggers are critical, the rest high. An evaluation error
        is itself reported as a critical system error.
        """
        try:
            triggers = self.triggers

            if data.baseline_value > 0 and data.total_pnl < 0:
                loss = float(-data.total_pnl / data.baseline_value)
                if loss >= triggers.portfolio_loss_percent:
                    return self._triggered(
                        EmergencyType.PORTFOLIO_LOSS,
                        f"Portfolio loss {loss:.2%} exceeds emergency threshold "
                        f"{triggers.portfolio_loss_percent:.2%}",
                        RiskLevel.CRITICAL,
                    )

            if data.daily_start_value > 0 and data.daily_pnl < 0:
                loss = float(-data.daily_pnl / data.daily_start_value)
                if loss >= triggers.daily_loss_percent:
                    return self._triggered(
                        EmergencyType.DAILY_LOSS,
                        f"Daily loss {loss:.2%} exceeds emergency threshold "
                        f"{triggers.daily_loss_percent:.2%}",
                        RiskLevel.CRITICAL,
                    )

            if data.volatility >= triggers.volatility_threshold:
                return self._triggered(
                    EmergencyType.VOLATILITY_SPIKE,
                    f"Volatility {data.volatility:.2%} exceeds emergency threshold "
                    f"{triggers.volatility_threshold:.2%}",
                    RiskLevel.HIGH,
                )

            with self._lock:
                counters = self._counters.model_copy()

            if counters.system_errors >= triggers.system_error_count:
                return self._triggered(
                    EmergencyType.SYSTEM_ERROR,
                    f"System errors {counters.system_errors} reached threshold "
                    f"{triggers.system_error_count}",
                    RiskLevel.HIGH,
                )

            if counters.api_failures >= triggers.api_failure_count:
                return self._triggered(
                    EmergencyType.API_FAILURE,
                    f"API failures {counters.api_failures} reached threshold "
                    f"{triggers.api_failure_count}",
                    RiskLevel.HIGH,
                )

            return EmergencyConditionCheck(should_trigger=False, severity=RiskLevel.LOW)

        except Exception as e:
            logger.error("emergency.condition_check_failed", error=str(e), exc_info=True)
            return EmergencyConditionCheck(
                should_trigger=True,
                emergency_type=EmergencyType.SYSTEM_ERROR,
                reason=f"Emergency condition check failed: {e}",
                severity=RiskLevel.CRITICAL,
            )

    def _triggered(
        self, emergency_type: EmergencyType, reason: str, severity: RiskLevel
    ) -> EmergencyConditionCheck:
        logger.warning(
            "emergency.condition_met",
            type=emergency_type.value,
            reason=reason,
            severity=severity.value,
        )
        return EmergencyConditionCheck(
            should_trigger=True,
            emergency_type=emergency_type,
            reason=reason,
            severity=severity,
        )

    # === Error Counters ===

    async def record_system_error(self, error: Union[Exception, str]) -> bool:
        """Count a system error; trips the breaker at the threshold.

        Returns:
            True if this error activated the emergency stop
        """
        with self._lock:
            self._counters.system_errors += 1
            self._counters.consecutive_failures += 1
            count = self._counters.system_errors
            threshold = self.triggers.system_error_count
            should_trip = count >= threshold and not self.state.is_emergency_active

        logger.error("emergency.system_error_recorded", error=str(error), count=count, threshold=threshold)

        if should_trip:
            return await self.activate_emergency_stop(
                EmergencyType.SYSTEM_ERROR,
                f"System error count {count} reached threshold {threshold}: {error}",
            )
        return False

    async def record_api_failure(self, error: Union[Exception, str]) -> bool:
        """Count an API failure; trips the breaker at the threshold.

        Returns:
            True if this failure activated the emergency stop
        """
        with self._lock:
            self._counters.api_failures += 1
            self._counters.consecutive_failures += 1
            count = self._counters.api_failures
            threshold = self.triggers.api_failure_count
            should_trip = count >= threshold and not self.state.is_emergency_active

        logger.warning("emergency.api_failure_recorded", error=str(error), count=count, threshold=threshold)

        if should_trip:
            return await self.activate_emergency_stop(
                EmergencyType.API_FAILURE,
                f"API failure count {count} reached threshold {threshold}: {error}",
            )
        return False

    def record_success(self):
        """Reset the consecutive-failure counter. Cumulative counters are kept."""
        with self._lock:
            self._counters.consecutive_failures = 0

    def get_error_counts(self) -> ErrorCounters:
        with self._lock:
            return self._counters.model_copy()

    # === Liquidation ===

    async def _collect_candidates(self) -> List[Union[WalletBalance, LiquidityPosition]]:
        address = self.wallet_address
        quote = self.config.quote_token

        balances = await self.market.get_balances(address)
        pool_positions = await self.market.get_positions(address)

        amounts: Dict[str, Decimal] = {}
        for balance in balances:
            if balance.amount > 0:
                amounts[balance.token] = amounts.get(balance.token, Decimal("0")) + balance.amount

        prices = await self.market.get_prices(list(amounts)) if amounts else {}

        values: Dict[str, Decimal] = {}
        for token, amount in amounts.items():
            price = prices.get(token)
            if price is None:
                logger.warning("emergency.unpriced_token", token=token, amount=str(amount))
                values[token] = Decimal("0")
            else:
                values[token] = amount * Decimal(str(price))

        total = sum(values.values(), Decimal("0")) + sum(
            (p.value_usd for p in pool_positions), Decimal("0")
        )
        ages = self.age_provider() if self.age_provider else {}

        def share(value: Decimal) -> float:
            return min(1.0, max(0.0, float(value / total))) if total > 0 else 0.0

        candidates: List[Union[WalletBalance, LiquidityPosition]] = []
        for token, amount in amounts.items():
            if token == quote:
                continue
            candidates.append(
                WalletBalance(
                    token=token,
                    amount=amount,
                    value_usd=values[token],
                    percent_of_portfolio=share(values[token]),
                    age_hours=ages.get(token, 0.0),
                )
            )
        for position in pool_positions:
            if position.liquidity <= 0:
                continue
            candidates.append(
                position.model_copy(update={"percent_of_portfolio": share(position.value_usd)})
            )
        return candidates

    def calculate_priority(self, candidate: Union[WalletBalance, LiquidityPosition]) -> int:
        """Lower numbers are liquidated first.

        Large and concentrated positions move up; positions held over a day
        move down.
        """
        priority = self.BASE_PRIORITY

        if candidate.percent_of_portfolio > self.HIGH_CONCENTRATION:
            priority -= 20
        elif candidate.percent_of_portfolio > self.MEDIUM_CONCENTRATION:
            priority -= 10

        if candidate.value_usd > self.LARGE_POSITION:
            priority -= 15
        elif candidate.value_usd > self.MEDIUM_POSITION:
            priority -= 5

        if candidate.age_hours > self.AGED_POSITION_HOURS:
            priority += 10

        return max(1, priority)

    @staticmethod
    def select_liquidation_method(
        candidate: Union[WalletBalance, LiquidityPosition],
    ) -> LiquidationMethod:
        if isinstance(candidate, LiquidityPosition):
            return LiquidationMethod.REMOVE_LIQUIDITY
        if isinstance(candidate, WalletBalance):
            if candidate.amount > 0 and candidate.value_usd > 0:
                return LiquidationMethod.MARKET_SELL
            return LiquidationMethod.EMERGENCY_SWAP
        raise TypeError(f"Unsupported position type: {type(candidate).__name__}")

    def create_liquidation_plan(
        self, candidates: List[Union[WalletBalance, LiquidityPosition]]
    ) -> List[LiquidationPlan]:
        """Build liquidation plans ordered by ascending priority."""
        plans = [
            LiquidationPlan(
                priority=self.calculate_priority(candidate),
                token=candidate.token,
                amount=candidate.amount,
                estimated_value=candidate.value_usd,
                liquidation_method=self.select_liquidation_method(candidate),
                max_slippage=self.config.liquidation_max_slippage,
                position=candidate,
            )
            for candidate in candidates
        ]
        plans.sort(key=lambda p: p.priority)
        return plans

    async def _execute_plan(self, plan: LiquidationPlan) -> Decimal:
        """Execute one plan and return the USD value realised."""
        deadline = self._clock() + timedelta(seconds=self.config.liquidation_deadline_seconds)
        position = plan.position

        if plan.liquidation_method == LiquidationMethod.REMOVE_LIQUIDITY:
            result = await self.execution.remove_liquidity(
                RemoveLiquidityRequest(
                    position_id=position.position_id,
                    liquidity=position.liquidity,
                    user_address=self.wallet_address,
                    deadline=deadline,
                )
            )
            if not result.success:
                raise LiquidationError(result.error or "Liquidity removal failed")
            return plan.estimated_value

        result = await self.execution.execute_swap(
            SwapRequest(
                token_in=plan.token,
                token_out=self.config.quote_token,
                amount_in=plan.amount,
                user_address=self.wallet_address,
                slippage_tolerance=plan.max_slippage,
                urgency="high",
                deadline=deadline,
            )
        )
        if not result.success:
            raise LiquidationError(result.error or "Swap failed")
        if result.amount_out is not None:
            return result.amount_out
        return plan.estimated_value

    async def emergency_liquidate_all_positions(self) -> LiquidationResult:
        """
        Liquidate every position in priority order.

        Individual failures are collected and do not stop later plans. Success
        means at least one position was liquidated.
        """
        try:
            candidates = await self._collect_candidates()
        except Exception as e:
            logger.critical("emergency.liquidation_fetch_failed", error=str(e), exc_info=True)
            return LiquidationResult(success=False, errors=[f"Failed to fetch positions: {e}"])

        plans = self.create_liquidation_plan(candidates)
        logger.critical(
            "emergency.liquidation_started",
            plans=len(plans),
            estimated_value=str(sum((p.estimated_value for p in plans), Decimal("0"))),
        )

        liquidated = 0
        value = Decimal("0")
        errors: List[str] = []

        for plan in plans:
            try:
                realised = await self._execute_plan(plan)
            except Exception as e:
                errors.append(f"{plan.token}: {e}")
                logger.error(
                    "emergency.liquidation_plan_failed",
                    token=plan.token,
                    method=plan.liquidation_method.value,
                    priority=plan.priority,
                    error=str(e),
                )
                continue

            liquidated += 1
            value += realised
            logger.info(
                "emergency.position_liquidated",
                token=plan.token,
                method=plan.liquidation_method.value,
                priority=plan.priority,
                value=str(realised),
            )

        success = liquidated > 0
        with self._lock:
            self.state.total_positions_liquidated += liquidated
            self.state.total_value_liquidated += value
            entry = self._append_history(
                HistoryAction.LIQUIDATION,
                self.state.emergency_type,
                f"Liquidated {liquidated}/{len(plans)} positions worth {value}",
                success=success,
            )

        logger.critical(
            "emergency.liquidation_completed",
            liquidated=liquidated,
            planned=len(plans),
            value=str(value),
            errors=len(errors),
        )
        await self._emit(entry)

        return LiquidationResult(
            success=success,
            positions_liquidated=liquidated,
            total_value_liquidated=value,
            errors=errors,
            plans=plans,
        )

    # === Status & Configuration ===

    def get_emergency_status(self) -> EmergencyStatus:
        with self._lock:
            return EmergencyStatus(
                phase=self.state.phase,
                is_emergency_stop_enabled=self.manual_override or self.state.is_emergency_active,
                manual_override=self.manual_override,
                safe_mode=self.safe_mode,
                state=self.state.model_copy(deep=True),
                triggers=self.triggers.model_dump(),
                error_counts=self._counters.model_copy(),
            )

    def get_emergency_history(self, limit: Optional[int] = None) -> List[EmergencyHistoryEntry]:
        """Audit entries, oldest first."""
        with self._lock:
            history = list(self._history)
        if limit is not None:
            return history[-limit:] if limit > 0 else []
        return history

    def update_triggers(self, updates: Dict[str, Any]) -> ConfigUpdateResult:
        """Apply a partial trigger update. Nothing changes if validation fails."""
        updated, result = apply_update(self.triggers, updates)
        if result.success:
            with self._lock:
                self.triggers = updated
            logger.info("emergency.triggers_updated", **{k: str(v) for k, v in updates.items()})
        else:
            logger.warning("emergency.triggers_update_rejected", error=result.error)
        return result

    async def rehearse_emergency_procedures(self) -> EmergencyRehearsal:
        """Dry run: build the liquidation plan and evaluate triggers without acting."""
        try:
            candidates = await self._collect_candidates()
        except Exception as e:
            logger.error("emergency.rehearsal_failed", error=str(e))
            return EmergencyRehearsal(success=False, errors=[f"Failed to fetch positions: {e}"])

        plans = self.create_liquidation_plan(candidates)
        estimated = sum((p.estimated_value for p in plans), Decimal("0"))
        check = self.check_emergency_conditions(
            PortfolioData(total_value=estimated, baseline_value=estimated)
        )

        logger.info(
            "emergency.rehearsal_completed",
            plans=len(plans),
            estimated_value=str(estimated),
            would_trigger=check.should_trigger,
        )
        return EmergencyRehearsal(
            success=True,
            plans=plans,
            estimated_total_value=estimated,
            condition_check=check,
        )
