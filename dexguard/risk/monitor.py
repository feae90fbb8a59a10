"""Portfolio Risk Monitor.

Owns the periodic snapshot loop, the rolling snapshot history, anomaly detection
and the risk-check and trade-validation contract.

Any failure inside a check produces a critical, trading-halted result. A check
never raises, so one bad cycle cannot kill the periodic loop.
"""
import asyncio
import threading
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from dexguard.core.config import ConfigUpdateResult, MonitorConfig, PositionLimitsConfig, apply_update
from dexguard.core.exceptions import GatewayError
from dexguard.core.models import (
    AnomalyType,
    MarketAnomaly,
    MonitorAction,
    PortfolioSnapshot,
    PositionSnapshot,
    RiskCheckResult,
    RiskLevel,
    RiskProfile,
    RiskStatus,
    TradeRequest,
    TradeValidation,
    TradingMode,
    utc_now,
)
from dexguard.exchange.gateway import MarketStateGateway
from dexguard.risk.metrics import classify_risk_level, compute_risk_metrics
from dexguard.risk.profiles import CHECK_CONCENTRATION, CHECK_POSITION_AGE, get_risk_profile

logger = structlog.get_logger(__name__)

CheckListener = Callable[[Optional[PortfolioSnapshot], RiskCheckResult], Awaitable[None]]


class PortfolioRiskMonitor:
    """
    Periodic portfolio risk monitoring for one wallet.

    Loss tracking is measured against two reference values: the baseline taken
    when monitoring starts, and the daily start value that rolls over at the UTC
    date boundary.
    """

    # Anomaly thresholds
    RAPID_CHANGE_WINDOW = timedelta(minutes=5)
    RAPID_CHANGE_THRESHOLD = 0.10
    VOLATILITY_MULTIPLE_THRESHOLD = 3.0
    CONCENTRATION_ANOMALY = 0.5
    DRAWDOWN_ANOMALY = 0.15
    LIQUIDITY_ANOMALY = 30.0

    def __init__(
        self,
        market: MarketStateGateway,
        config: Optional[MonitorConfig] = None,
        limits: Optional[PositionLimitsConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.market = market
        self.config = config or MonitorConfig()
        self.limits = limits or PositionLimitsConfig()
        self._clock = clock

        self.risk_profile: RiskProfile = get_risk_profile(self.config.trading_mode)

        # Guards snapshot history and the loss reference values
        self._lock = threading.Lock()
        self._snapshots: List[PortfolioSnapshot] = []
        # token -> (first seen, entry price), kept past the history window while held
        self._opened: Dict[str, Tuple[datetime, Decimal]] = {}
        self.baseline_value: Optional[Decimal] = None
        self.daily_start_value: Optional[Decimal] = None
        self._daily_start_date: Optional[date] = None

        # Monitoring loop
        self.is_monitoring = False
        self.monitored_address: Optional[str] = None
        self._monitor_task: Optional[asyncio.Task] = None

        self._listeners: List[CheckListener] = []

    # === Lifecycle ===

    async def start_monitoring(self, address: str) -> bool:
        """
        Take the baseline snapshot and start the periodic check loop.

        Returns:
            True if monitoring started, False if already running or the
            baseline snapshot could not be taken
        """
        if self.is_monitoring:
            logger.warning(
                "risk_monitor.already_monitoring",
                address=self.monitored_address,
            )
            return False

        try:
            snapshot = await self._capture_snapshot(address, reset_baseline=True)
        except Exception as e:
            logger.error(
                "risk_monitor.start_failed",
                address=address,
                error=str(e),
                exc_info=True,
            )
            return False

        self._record_snapshot(snapshot)
        self.monitored_address = address
        self.is_monitoring = True
        self._monitor_task = asyncio.create_task(self._monitor_loop(address))

        logger.info(
            "risk_monitor.started",
            address=address,
            baseline=str(self.baseline_value),
            interval_seconds=self.config.check_interval_seconds,
            trading_mode=self.risk_profile.mode.value,
        )
        return True

    async def stop_monitoring(self):
        """Cancel the periodic loop. Safe to call when not monitoring."""
        was_monitoring = self.is_monitoring
        self.is_monitoring = False

        task = self._monitor_task
        self._monitor_task = None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if was_monitoring:
            logger.info("risk_monitor.stopped", address=self.monitored_address)

    async def _monitor_loop(self, address: str):
        while self.is_monitoring:
            await asyncio.sleep(self.config.check_interval_seconds)
            if not self.is_monitoring:
                break
            await self.perform_risk_check(address)

    def add_listener(self, listener: CheckListener):
        """Register an async callback run after every completed check."""
        self._listeners.append(listener)

    async def _notify_listeners(
        self, snapshot: Optional[PortfolioSnapshot], result: RiskCheckResult
    ):
        for listener in self._listeners:
            try:
                await listener(snapshot, result)
            except Exception as e:
                logger.error(
                    "risk_monitor.listener_failed",
                    listener=getattr(listener, "__name__", type(listener).__name__),
                    error=str(e),
                    exc_info=True,
                )

    # === Risk Check ===

    async def perform_risk_check(self, address: str) -> RiskCheckResult:
        """
        Snapshot the portfolio and run every risk check against it.

        Checks: daily loss, total loss, drawdown, concentration, position age,
        daily volume and anomaly detection. The risk level comes from the
        snapshot's risk score mapped through the active profile.

        Args:
            address: Wallet address to evaluate

        Returns:
            RiskCheckResult; critical and halted if the check cannot complete
        """
        try:
            snapshot = await self._capture_snapshot(address)
        except Exception as e:
            logger.error(
                "risk_monitor.snapshot_failed",
                address=address,
                error=str(e),
                exc_info=True,
            )
            result = RiskCheckResult.fail_closed(
                "Risk monitoring system error: portfolio state unavailable",
                failure="data_fetch",
            )
            await self._notify_listeners(None, result)
            return result

        try:
            self._record_snapshot(snapshot)
            result = self._evaluate(snapshot)
        except Exception as e:
            logger.error(
                "risk_monitor.check_failed",
                address=address,
                error=str(e),
                exc_info=True,
            )
            result = RiskCheckResult.fail_closed(
                "Risk monitoring system error", failure="computation"
            )
            await self._notify_listeners(snapshot, result)
            return result

        log = logger.info if result.should_continue_trading else logger.warning
        log(
            "risk_monitor.check_completed",
            address=address,
            risk_level=result.risk_level.value,
            risk_score=round(snapshot.risk_metrics.risk_score, 2),
            total_value=str(snapshot.total_value),
            should_continue_trading=result.should_continue_trading,
            alerts=len(result.alerts),
            emergency_actions=[a.value for a in result.emergency_actions],
        )

        await self._notify_listeners(snapshot, result)
        return result

    def _evaluate(self, snapshot: PortfolioSnapshot) -> RiskCheckResult:
        cfg = self.config
        profile = self.risk_profile
        metrics = snapshot.risk_metrics
        alerts: List[str] = []
        actions: List[MonitorAction] = []

        with self._lock:
            baseline = self.baseline_value
            daily_start = self.daily_start_value

        # Daily loss
        if daily_start and daily_start > 0 and snapshot.daily_pnl < 0:
            daily_loss = float(-snapshot.daily_pnl / daily_start)
            if daily_loss >= cfg.max_daily_loss:
                alerts.append(
                    f"Daily loss {daily_loss:.2%} exceeds limit {cfg.max_daily_loss:.2%}"
                )
                actions.append(MonitorAction.STOP_ALL_TRADING)

        # Total loss
        if baseline and baseline > 0 and snapshot.total_pnl < 0:
            total_loss = float(-snapshot.total_pnl / baseline)
            if total_loss >= cfg.max_total_loss:
                alerts.append(
                    f"Total loss {total_loss:.2%} exceeds limit {cfg.max_total_loss:.2%}"
                )
                actions.append(MonitorAction.EMERGENCY_LIQUIDATION)

        if metrics.drawdown >= cfg.max_drawdown:
            alerts.append(
                f"Drawdown {metrics.drawdown:.2%} exceeds limit {cfg.max_drawdown:.2%}"
            )

        # Concentration
        if not profile.ignores(CHECK_CONCENTRATION):
            for position in snapshot.positions:
                if position.percent_of_portfolio > profile.max_concentration:
                    alerts.append(
                        f"{position.token} concentration {position.percent_of_portfolio:.1%} "
                        f"exceeds limit {profile.max_concentration:.1%}"
                    )

        # Position age
        if not profile.ignores(CHECK_POSITION_AGE):
            for position in snapshot.positions:
                if position.age_hours > cfg.max_position_age_hours:
                    alerts.append(
                        f"{position.token} position held {position.age_hours:.1f}h, "
                        f"limit {cfg.max_position_age_hours:.0f}h"
                    )

        # Daily volume
        if snapshot.daily_volume > cfg.max_daily_volume:
            alerts.append(
                f"Daily volume {snapshot.daily_volume} exceeds limit {cfg.max_daily_volume}"
            )

        anomalies = self.detect_anomalies(snapshot)
        for anomaly in anomalies:
            alerts.append(f"{anomaly.type.value}: {anomaly.description}")
            if (
                anomaly.severity == RiskLevel.CRITICAL
                and MonitorAction.REDUCE_EXPOSURE not in actions
            ):
                actions.append(MonitorAction.REDUCE_EXPOSURE)

        risk_level = classify_risk_level(metrics.risk_score, profile.risk_thresholds)

        return RiskCheckResult(
            risk_level=risk_level,
            should_continue_trading=not actions and risk_level != RiskLevel.CRITICAL,
            alerts=alerts,
            emergency_actions=actions,
            anomalies=anomalies,
            snapshot_id=snapshot.id,
        )

    # === Snapshots ===

    async def _capture_snapshot(
        self, address: str, reset_baseline: bool = False
    ) -> PortfolioSnapshot:
        balances = await self.market.get_balances(address)

        amounts: Dict[str, Decimal] = {}
        for balance in balances:
            if balance.amount > 0:
                amounts[balance.token] = amounts.get(balance.token, Decimal("0")) + balance.amount

        prices = await self.market.get_prices(list(amounts)) if amounts else {}
        now = self._clock()

        values: Dict[str, Decimal] = {}
        unit_prices: Dict[str, Decimal] = {}
        for token, amount in amounts.items():
            price = prices.get(token)
            if price is None:
                raise GatewayError(f"No price for held token {token}", operation="get_prices")
            unit_prices[token] = Decimal(str(price))
            values[token] = amount * unit_prices[token]

        total = sum(values.values(), Decimal("0"))

        with self._lock:
            if reset_baseline or self.baseline_value is None:
                self.baseline_value = total
                self.daily_start_value = total
                self._daily_start_date = now.date()
            elif now.date() != self._daily_start_date:
                logger.info(
                    "risk_monitor.daily_reset",
                    previous_start=str(self.daily_start_value),
                    new_start=str(total),
                )
                self.daily_start_value = total
                self._daily_start_date = now.date()

            baseline = self.baseline_value
            daily_start = self.daily_start_value
            history = list(self._snapshots)
            opened = dict(self._opened)

        positions = []
        for token, value in values.items():
            age_hours = 0.0
            entry_price = unit_prices[token]
            if token in opened:
                first_seen, entry_price = opened[token]
                age_hours = max(0.0, (now - first_seen).total_seconds() / 3600)
            share = float(value / total) if total > 0 else 0.0
            positions.append(
                PositionSnapshot(
                    token=token,
                    amount=amounts[token],
                    price=unit_prices[token],
                    value_usd=value,
                    percent_of_portfolio=min(1.0, max(0.0, share)),
                    age_hours=age_hours,
                    unrealized_pnl=(unit_prices[token] - entry_price) * amounts[token],
                )
            )

        window = self._within_history(history, now)

        return PortfolioSnapshot(
            address=address,
            timestamp=now,
            total_value=total,
            positions=positions,
            daily_pnl=total - daily_start,
            total_pnl=total - baseline,
            daily_volume=_value_turnover(window, total),
            risk_metrics=compute_risk_metrics(
                positions, total, window, liquid_tokens=self.config.liquid_tokens
            ),
        )

    def _within_history(
        self, snapshots: List[PortfolioSnapshot], now: datetime
    ) -> List[PortfolioSnapshot]:
        cutoff = now - timedelta(hours=self.config.history_hours)
        return [s for s in snapshots if s.timestamp >= cutoff]

    def _record_snapshot(self, snapshot: PortfolioSnapshot):
        with self._lock:
            self._snapshots.append(snapshot)
            held = {p.token for p in snapshot.positions}
            for position in snapshot.positions:
                self._opened.setdefault(position.token, (snapshot.timestamp, position.price))
            for token in set(self._opened) - held:
                del self._opened[token]
            pruned = self._within_history(self._snapshots, snapshot.timestamp)
            removed = len(self._snapshots) - len(pruned)
            self._snapshots = pruned

        if removed:
            logger.debug("risk_monitor.snapshots_pruned", removed=removed, retained=len(pruned))

    # === Anomaly Detection ===

    def detect_anomalies(self, snapshot: PortfolioSnapshot) -> List[MarketAnomaly]:
        """Evaluate anomaly detectors against the rolling snapshot window."""
        with self._lock:
            history = [s for s in self._snapshots if s.id != snapshot.id]

        if len(history) + 1 < self.config.anomaly_min_snapshots:
            return []

        anomalies: List[MarketAnomaly] = []
        metrics = snapshot.risk_metrics
        now = snapshot.timestamp

        # Rapid value change against any snapshot in the last five minutes
        cutoff = now - self.RAPID_CHANGE_WINDOW
        changes = [
            abs(float((snapshot.total_value - s.total_value) / s.total_value))
            for s in history
            if cutoff <= s.timestamp < now and s.total_value > 0
        ]
        if changes and max(changes) > self.RAPID_CHANGE_THRESHOLD:
            change = max(changes)
            if change > 0.25:
                severity = RiskLevel.CRITICAL
            elif change > 0.15:
                severity = RiskLevel.HIGH
            else:
                severity = RiskLevel.MEDIUM
            anomalies.append(
                MarketAnomaly(
                    type=AnomalyType.VOLATILITY_SPIKE,
                    severity=severity,
                    description=f"Portfolio value moved {change:.1%} within 5 minutes",
                    detected_at=now,
                    affected_tokens=snapshot.tokens,
                )
            )

        # Rolling volatility against the configured normal baseline
        multiple = metrics.volatility_score / self.config.normal_volatility
        if multiple > self.VOLATILITY_MULTIPLE_THRESHOLD:
            if multiple > 10:
                severity = RiskLevel.CRITICAL
            elif multiple > 6:
                severity = RiskLevel.HIGH
            else:
                severity = RiskLevel.MEDIUM
            anomalies.append(
                MarketAnomaly(
                    type=AnomalyType.VOLATILITY_SPIKE,
                    severity=severity,
                    description=f"Volatility {metrics.volatility_score:.2f}% is {multiple:.1f}x normal",
                    detected_at=now,
                    affected_tokens=snapshot.tokens,
                )
            )

        # Single-position concentration
        if (
            metrics.max_concentration > self.CONCENTRATION_ANOMALY
            and not self.risk_profile.ignores(CHECK_CONCENTRATION)
        ):
            concentrated = [
                p.token for p in snapshot.positions
                if p.percent_of_portfolio > self.CONCENTRATION_ANOMALY
            ]
            anomalies.append(
                MarketAnomaly(
                    type=AnomalyType.LIQUIDITY_DROP,
                    severity=RiskLevel.CRITICAL if metrics.max_concentration > 0.8 else RiskLevel.HIGH,
                    description=f"Single position holds {metrics.max_concentration:.1%} of the portfolio",
                    detected_at=now,
                    affected_tokens=concentrated,
                )
            )

        # Drawdown from the window peak
        if metrics.drawdown > self.DRAWDOWN_ANOMALY:
            anomalies.append(
                MarketAnomaly(
                    type=AnomalyType.PRICE_SPIKE,
                    severity=RiskLevel.CRITICAL if metrics.drawdown > 0.25 else RiskLevel.HIGH,
                    description=f"Drawdown of {metrics.drawdown:.1%} from recent peak",
                    detected_at=now,
                    affected_tokens=snapshot.tokens,
                )
            )

        if metrics.liquidity_score < self.LIQUIDITY_ANOMALY:
            anomalies.append(
                MarketAnomaly(
                    type=AnomalyType.LIQUIDITY_DROP,
                    severity=RiskLevel.CRITICAL if metrics.liquidity_score < 10 else RiskLevel.MEDIUM,
                    description=f"Liquidity score {metrics.liquidity_score:.0f} below {self.LIQUIDITY_ANOMALY:.0f}",
                    detected_at=now,
                    affected_tokens=snapshot.tokens,
                )
            )

        for anomaly in anomalies:
            logger.warning(
                "risk_monitor.anomaly_detected",
                type=anomaly.type.value,
                severity=anomaly.severity.value,
                description=anomaly.description,
            )
        return anomalies

    # === Trade Validation ===

    async def validate_trade(self, request: TradeRequest) -> TradeValidation:
        """
        Re-run the risk check and test a proposed trade against it.

        Oversized trades are cut to a fraction of the position-size cap. Trades
        that would push the bought token past the profile's concentration limit
        are rejected. amount_in is a USD notional.
        """
        address = request.user_address or self.monitored_address
        if not address:
            return TradeValidation(
                approved=False,
                risk_level=RiskLevel.HIGH,
                reason="No wallet address available for trade validation",
            )

        try:
            check = await self.perform_risk_check(address)
            if not check.should_continue_trading:
                return self._reject_trade(
                    request,
                    f"Trading halted due to risk conditions: {'; '.join(check.alerts)}",
                    check.risk_level,
                )

            snapshot = self.get_latest_snapshot()
            amount = request.amount_in
            risk_level = check.risk_level
            adjusted_amount = None
            reason = None

            cap = self.limits.max_position_size
            if amount > cap:
                adjusted_amount = cap * Decimal(str(self.config.trade_size_fraction))
                reason = f"Trade size reduced from {amount} to {adjusted_amount} to fit position limit {cap}"
                amount = adjusted_amount
                if risk_level.rank < RiskLevel.MEDIUM.rank:
                    risk_level = RiskLevel.MEDIUM

            if not self.risk_profile.ignores(CHECK_CONCENTRATION):
                held = snapshot.get_position(request.token_out) if snapshot else None
                held_value = held.value_usd if held else Decimal("0")
                total = snapshot.total_value if snapshot else Decimal("0")
                post_trade = float((held_value + amount) / (total + amount))
                if post_trade > self.risk_profile.max_concentration:
                    return self._reject_trade(
                        request,
                        f"Trade would raise {request.token_out} concentration to "
                        f"{post_trade:.1%}, above limit {self.risk_profile.max_concentration:.1%}",
                        RiskLevel.HIGH,
                    )

            return TradeValidation(
                approved=True,
                risk_level=risk_level,
                reason=reason,
                adjusted_amount=adjusted_amount,
            )

        except Exception as e:
            logger.error(
                "risk_monitor.trade_validation_failed",
                token_in=request.token_in,
                token_out=request.token_out,
                error=str(e),
                exc_info=True,
            )
            return TradeValidation(
                approved=False,
                risk_level=RiskLevel.CRITICAL,
                reason="Trade validation error",
            )

    def _reject_trade(
        self, request: TradeRequest, reason: str, risk_level: RiskLevel
    ) -> TradeValidation:
        logger.warning(
            "risk_monitor.trade_rejected",
            token_in=request.token_in,
            token_out=request.token_out,
            amount=str(request.amount_in),
            reason=reason,
            risk_level=risk_level.value,
        )
        return TradeValidation(approved=False, risk_level=risk_level, reason=reason)

    # === Status & Configuration ===

    def get_latest_snapshot(self) -> Optional[PortfolioSnapshot]:
        with self._lock:
            return self._snapshots[-1] if self._snapshots else None

    def get_risk_snapshots(self, count: Optional[int] = None) -> List[PortfolioSnapshot]:
        """Most recent snapshots, oldest first."""
        with self._lock:
            snapshots = list(self._snapshots)
        if count is not None:
            return snapshots[-count:] if count > 0 else []
        return snapshots

    def get_risk_status(self) -> RiskStatus:
        with self._lock:
            latest = self._snapshots[-1] if self._snapshots else None
            count = len(self._snapshots)
            baseline = self.baseline_value
            daily_start = self.daily_start_value

        return RiskStatus(
            is_monitoring=self.is_monitoring,
            monitored_address=self.monitored_address,
            trading_mode=self.risk_profile.mode,
            risk_profile=self.risk_profile,
            risk_config=self.config.model_dump(mode="json"),
            latest_snapshot=latest,
            snapshot_count=count,
            baseline_value=baseline,
            daily_start_value=daily_start,
        )

    def set_trading_mode(self, mode: TradingMode):
        """Swap the active risk profile."""
        previous = self.risk_profile.mode
        self.risk_profile = get_risk_profile(mode)
        logger.info(
            "risk_monitor.trading_mode_changed",
            previous=previous.value,
            current=self.risk_profile.mode.value,
        )

    def update_risk_config(self, updates: Dict[str, Any]) -> ConfigUpdateResult:
        updated, result = apply_update(self.config, updates)
        if not result.success:
            logger.warning("risk_monitor.config_update_rejected", error=result.error)
            return result

        self.config = updated
        if updated.trading_mode != self.risk_profile.mode:
            self.set_trading_mode(updated.trading_mode)
        logger.info("risk_monitor.config_updated", fields=sorted(updates))
        return result

    def reset_daily_metrics(self):
        """Restart daily loss tracking from the latest portfolio value."""
        with self._lock:
            latest = self._snapshots[-1] if self._snapshots else None
            if latest is not None:
                self.daily_start_value = latest.total_value
            self._daily_start_date = self._clock().date()
            daily_start = self.daily_start_value

        logger.info("risk_monitor.daily_metrics_reset", daily_start=str(daily_start))


def _value_turnover(window: List[PortfolioSnapshot], current_total: Decimal) -> Decimal:
    """Sum of absolute value changes between consecutive snapshots."""
    values = [s.total_value for s in window] + [current_total]
    return sum(
        (abs(current - previous) for previous, current in zip(values, values[1:])),
        Decimal("0"),
    )
