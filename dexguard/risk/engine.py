"""RiskEngine: the risk core, constructed once and passed to the trading engine.

Wires the monitor, limiter, slippage guard and circuit breaker together:
- every completed monitor check is evaluated against the breaker's triggers
- monitor fetch and computation failures feed the breaker's error counters
- breaker activation tightens slippage tolerance until deactivation
- history entries and snapshots go to the audit store without blocking
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from dexguard.core.config import ConfigUpdateResult, DexGuardConfig
from dexguard.core.exceptions import ConfigurationError
from dexguard.core.models import (
    EmergencyHistoryEntry,
    EmergencyStatus,
    EmergencyType,
    HistoryAction,
    PortfolioData,
    PortfolioSnapshot,
    RiskCheckResult,
    RiskLevel,
    TradeDecision,
    TradeRequest,
    utc_now,
)
from dexguard.exchange.gateway import ExecutionGateway, MarketStateGateway
from dexguard.notifications.alerts import AlertDispatcher, AlertSink
from dexguard.risk.emergency import EmergencyCircuitBreaker
from dexguard.risk.monitor import PortfolioRiskMonitor
from dexguard.risk.position_limits import PositionLimiter
from dexguard.risk.slippage import SlippageGuard
from dexguard.storage.database import AuditStore
from dexguard.utils.logging_config import bind_wallet_context, clear_wallet_context

logger = structlog.get_logger(__name__)


class RiskEngine:
    """Risk management core for one trading wallet."""

    def __init__(
        self,
        config: DexGuardConfig,
        market: MarketStateGateway,
        execution: ExecutionGateway,
        wallet_address: str,
        audit_store: Optional[AuditStore] = None,
        alert_sinks: Optional[List[AlertSink]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if not wallet_address:
            raise ConfigurationError("RiskEngine requires a wallet address")
        if not isinstance(market, MarketStateGateway):
            raise ConfigurationError("market must implement MarketStateGateway")
        if not isinstance(execution, ExecutionGateway):
            raise ConfigurationError("execution must implement ExecutionGateway")

        self.config = config
        self.wallet_address = wallet_address
        self.audit_store = audit_store

        self.alerts = AlertDispatcher(config.alerts, sinks=alert_sinks)
        self.monitor = PortfolioRiskMonitor(market, config.monitor, config.limits, clock)
        self.limiter = PositionLimiter(market, config.limits, clock)
        self.slippage = SlippageGuard(config.slippage, clock)
        self.breaker = EmergencyCircuitBreaker(
            market,
            execution,
            wallet_address,
            triggers=config.triggers,
            config=config.emergency,
            alerts=self.alerts,
            clock=clock,
            age_provider=self._position_ages,
        )

        self.monitor.add_listener(self._on_risk_check)
        self.breaker.add_listener(self._on_emergency_event)

        if self.breaker.is_emergency_stop_enabled():
            self.slippage.activate_emergency_limits(config.emergency.emergency_slippage_limit)

        self.last_check: Optional[RiskCheckResult] = None
        self.is_running = False
        self._background: Set[asyncio.Task] = set()

    # === Lifecycle ===

    async def start(self) -> bool:
        """Start alert delivery, the audit store and the monitoring loop."""
        bind_wallet_context(self.wallet_address)
        await self.alerts.start()
        if self.audit_store:
            await self.audit_store.initialize()

        started = await self.monitor.start_monitoring(self.wallet_address)
        self.is_running = started

        logger.info(
            "risk_engine.started",
            wallet=self.wallet_address,
            monitoring=started,
            emergency_stop=self.breaker.is_emergency_stop_enabled(),
        )
        return started

    async def stop(self):
        """Stop monitoring, flush pending audit writes and close the audit store."""
        await self.monitor.stop_monitoring()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self.audit_store:
            await self.audit_store.close()
        await self.alerts.stop()
        self.is_running = False
        logger.info("risk_engine.stopped", wallet=self.wallet_address)
        clear_wallet_context()

    # === Wiring ===

    def _position_ages(self) -> Dict[str, float]:
        snapshot = self.monitor.get_latest_snapshot()
        if snapshot is None:
            return {}
        return {p.token: p.age_hours for p in snapshot.positions}

    def _spawn(self, coro: Awaitable[Any], operation: str):
        task = asyncio.create_task(self._persist(coro, operation))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, coro: Awaitable[Any], operation: str):
        try:
            await coro
        except Exception as e:
            logger.error("risk_engine.audit_write_failed", operation=operation, error=str(e))

    async def _on_risk_check(
        self, snapshot: Optional[PortfolioSnapshot], result: RiskCheckResult
    ):
        self.last_check = result

        if result.failure == "data_fetch":
            await self.breaker.record_api_failure("Portfolio state unavailable")
            return
        if result.failure == "computation":
            await self.breaker.record_system_error("Risk check computation failed")
            return

        self.breaker.record_success()
        if snapshot is None:
            return

        if self.audit_store:
            self._spawn(self.audit_store.save_risk_snapshot(snapshot, result), "save_risk_snapshot")

        if self.breaker.state.is_emergency_active:
            return

        data = PortfolioData(
            total_value=snapshot.total_value,
            baseline_value=self.monitor.baseline_value or Decimal("0"),
            daily_start_value=self.monitor.daily_start_value or Decimal("0"),
            total_pnl=snapshot.total_pnl,
            daily_pnl=snapshot.daily_pnl,
            volatility=snapshot.risk_metrics.volatility_score / 100,
        )
        check = self.breaker.check_emergency_conditions(data)
        if check.should_trigger:
            auto_liquidate = (
                check.severity == RiskLevel.CRITICAL
                and self.config.emergency.auto_liquidate_on_critical
            )
            await self.breaker.activate_emergency_stop(
                check.emergency_type, check.reason, auto_liquidate=auto_liquidate
            )

    async def _on_emergency_event(self, entry: EmergencyHistoryEntry):
        if entry.action == HistoryAction.ACTIVATE or (
            entry.action == HistoryAction.MANUAL_OVERRIDE
            and self.breaker.is_emergency_stop_enabled()
        ):
            self.slippage.activate_emergency_limits(self.config.emergency.emergency_slippage_limit)
        elif entry.action == HistoryAction.DEACTIVATE or (
            entry.action == HistoryAction.MANUAL_OVERRIDE
            and not self.breaker.is_emergency_stop_enabled()
        ):
            self.slippage.deactivate_emergency_limits()

        if self.audit_store:
            self._spawn(self.audit_store.save_emergency_event(entry), "save_emergency_event")

    # === Trading Engine Interface ===

    def is_trading_allowed(self) -> bool:
        if self.breaker.is_emergency_stop_enabled():
            return False
        return self.last_check is None or self.last_check.should_continue_trading

    async def evaluate(self) -> RiskCheckResult:
        """Run one monitor cycle now."""
        return await self.monitor.perform_risk_check(self.wallet_address)

    async def pre_trade_check(self, request: TradeRequest) -> TradeDecision:
        """
        Combined pre-trade gate.

        Order: emergency stop, position limits, portfolio risk. The first
        rejection is returned.
        """
        checks: List[str] = []

        checks.append("emergency_stop")
        if self.breaker.is_emergency_stop_enabled():
            return self._reject(request, "Emergency stop active", RiskLevel.CRITICAL, checks)

        checks.append("position_limits")
        limit_check = await self.limiter.can_open_position(
            request.token_out, request.amount_in, request.user_address or self.wallet_address
        )
        if not limit_check.allowed:
            return self._reject(request, limit_check.reason, RiskLevel.HIGH, checks)

        checks.append("portfolio_risk")
        if request.user_address is None:
            request = request.model_copy(update={"user_address": self.wallet_address})
        validation = await self.monitor.validate_trade(request)
        if not validation.approved:
            return self._reject(request, validation.reason, validation.risk_level, checks)

        # The check above may have tripped the breaker through the monitor listener
        if self.breaker.is_emergency_stop_enabled():
            return self._reject(request, "Emergency stop active", RiskLevel.CRITICAL, checks)

        return TradeDecision(
            approved=True,
            risk_level=validation.risk_level,
            reason=validation.reason,
            adjusted_amount=validation.adjusted_amount,
            checks_performed=checks,
        )

    def _reject(
        self,
        request: TradeRequest,
        reason: Optional[str],
        risk_level: RiskLevel,
        checks: List[str],
    ) -> TradeDecision:
        logger.warning(
            "risk_engine.trade_rejected",
            token_in=request.token_in,
            token_out=request.token_out,
            amount=str(request.amount_in),
            check=checks[-1],
            reason=reason,
        )
        return TradeDecision(
            approved=False,
            risk_level=risk_level,
            reason=reason,
            checks_performed=checks,
        )

    async def record_trade_execution(
        self, token: str, amount: Decimal, success: bool, error: Optional[str] = None
    ):
        """Feed an execution outcome back into volume tracking and error counters."""
        if success:
            self.limiter.record_trade(token, amount)
            self.breaker.record_success()
        else:
            await self.breaker.record_api_failure(error or f"Trade execution failed for {token}")

    # === Emergency Controls ===

    def is_emergency_stop_enabled(self) -> bool:
        return self.breaker.is_emergency_stop_enabled()

    async def activate_emergency_stop(
        self, emergency_type: EmergencyType, reason: str, auto_liquidate: bool = False
    ) -> bool:
        return await self.breaker.activate_emergency_stop(emergency_type, reason, auto_liquidate)

    async def deactivate_emergency_stop(self, reason: str) -> bool:
        return await self.breaker.deactivate_emergency_stop(reason)

    def get_emergency_status(self) -> EmergencyStatus:
        return self.breaker.get_emergency_status()

    def update_triggers(self, updates: Dict[str, Any]) -> ConfigUpdateResult:
        return self.breaker.update_triggers(updates)

    def update_limits(self, updates: Dict[str, Any]) -> ConfigUpdateResult:
        """Update limits for both the limiter and the monitor's size cap."""
        result = self.limiter.update_limits(updates)
        if result.success:
            self.monitor.limits = self.limiter.limits
        return result

    # === Status ===

    def get_status(self) -> Dict[str, Any]:
        """Get current risk engine status."""
        emergency = self.breaker.get_emergency_status()
        latest = self.monitor.get_latest_snapshot()
        return {
            'running': self.is_running,
            'wallet': self.wallet_address,
            'trading_allowed': self.is_trading_allowed(),
            'emergency': {
                'phase': emergency.phase.value,
                'active': emergency.state.is_emergency_active,
                'type': emergency.state.emergency_type.value if emergency.state.emergency_type else None,
                'reason': emergency.state.trigger_reason,
                'manual_override': emergency.manual_override,
                'safe_mode': emergency.safe_mode,
                'error_counts': emergency.error_counts.model_dump(),
            },
            'monitor': {
                'monitoring': self.monitor.is_monitoring,
                'trading_mode': self.monitor.risk_profile.mode.value,
                'snapshots': len(self.monitor.get_risk_snapshots()),
                'total_value': str(latest.total_value) if latest else None,
                'risk_score': latest.risk_metrics.risk_score if latest else None,
                'last_risk_level': self.last_check.risk_level.value if self.last_check else None,
            },
            'slippage': self.slippage.get_protection_settings().model_dump(),
            'alerts': {
                'pending': self.alerts.pending,
                'delivered': self.alerts.delivered_count,
                'dropped': self.alerts.dropped_count,
            },
        }


def create_risk_engine(
    market: MarketStateGateway,
    execution: ExecutionGateway,
    wallet_address: str,
    config: Optional[DexGuardConfig] = None,
    alert_sinks: Optional[List[AlertSink]] = None,
) -> RiskEngine:
    """Factory function to create a configured RiskEngine instance."""
    config = config or DexGuardConfig()
    audit_store = AuditStore(config.database.url) if config.database.enabled else None
    return RiskEngine(
        config,
        market,
        execution,
        wallet_address,
        audit_store=audit_store,
        alert_sinks=alert_sinks,
    )
