"""Unit tests for the emergency circuit breaker."""
import asyncio

import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from dexguard.core.config import AlertConfig, EmergencyConfig
from dexguard.core.models import (
    BreakerPhase,
    EmergencyActionType,
    EmergencyType,
    HistoryAction,
    LiquidationMethod,
    LiquidityPosition,
    PortfolioData,
    RiskLevel,
    WalletBalance,
)
from dexguard.notifications.alerts import AlertDispatcher
from dexguard.risk.emergency import EmergencyCircuitBreaker

from conftest import WALLET


def portfolio_data(baseline="1000", total_pnl="0", daily_start="1000", daily_pnl="0", volatility=0.0):
    baseline = Decimal(baseline)
    return PortfolioData(
        total_value=baseline + Decimal(total_pnl),
        baseline_value=baseline,
        daily_start_value=Decimal(daily_start),
        total_pnl=Decimal(total_pnl),
        daily_pnl=Decimal(daily_pnl),
        volatility=volatility,
    )


@pytest.fixture
def liquidation_market(market):
    """Portfolio with one large concentrated position, one small one and quote cash."""
    market.set_values({"GALA": Decimal("2000"), "ETH": Decimal("100"), "USDC": Decimal("1233")})
    return market


# =============================================================================
# Activation Tests
# =============================================================================

class TestActivation:
    """Test emergency stop activation."""

    @pytest.mark.asyncio
    async def test_activation_halts_and_records_steps(self, breaker, alerts):
        activated = await breaker.activate_emergency_stop(EmergencyType.MANUAL_STOP, "operator request")

        assert activated
        assert breaker.is_emergency_stop_enabled()
        assert breaker.state.trigger_reason == "operator request"
        assert breaker.safe_mode
        assert [a.type for a in breaker.state.actions_executed] == [
            EmergencyActionType.STOP_TRADING,
            EmergencyActionType.ALERT_ADMIN,
            EmergencyActionType.SAFE_MODE,
        ]

        await alerts.stop()
        assert len(alerts.received) == 1
        assert alerts.received[0].severity == RiskLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_concurrent_activations_first_wins(self, breaker, alerts):
        results = await asyncio.gather(
            breaker.activate_emergency_stop(EmergencyType.PORTFOLIO_LOSS, "first"),
            breaker.activate_emergency_stop(EmergencyType.DAILY_LOSS, "second"),
            breaker.activate_emergency_stop(EmergencyType.API_FAILURE, "third"),
        )

        assert results == [True, False, False]
        assert breaker.state.emergency_type == EmergencyType.PORTFOLIO_LOSS
        assert breaker.state.trigger_reason == "first"
        activations = [e for e in breaker.get_emergency_history() if e.action == HistoryAction.ACTIVATE]
        assert len(activations) == 1
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_second_activation_keeps_original_state(self, breaker, alerts):
        await breaker.activate_emergency_stop(EmergencyType.DAILY_LOSS, "daily")
        trigger_time = breaker.state.trigger_time

        assert not await breaker.activate_emergency_stop(EmergencyType.SYSTEM_ERROR, "errors")
        assert breaker.state.emergency_type == EmergencyType.DAILY_LOSS
        assert breaker.state.trigger_time == trigger_time
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_failing_alert_sink_does_not_block(self, market, execution, clock):
        def broken_sink(alert):
            raise ConnectionError("webhook down")

        alerts = AlertDispatcher(AlertConfig(), sinks=[broken_sink])
        breaker = EmergencyCircuitBreaker(market, execution, WALLET, alerts=alerts, clock=clock)

        assert await breaker.activate_emergency_stop(EmergencyType.MANUAL_STOP, "test")
        assert breaker.is_emergency_stop_enabled()

        await alerts.stop()
        assert alerts.failed_count == 1

    @pytest.mark.asyncio
    async def test_disabled_alerts_recorded_as_failed_step(self, market, execution, clock):
        alerts = AlertDispatcher(AlertConfig(enabled=False))
        breaker = EmergencyCircuitBreaker(market, execution, WALLET, alerts=alerts, clock=clock)

        await breaker.activate_emergency_stop(EmergencyType.MANUAL_STOP, "test")

        alert_step = breaker.state.actions_executed[1]
        assert alert_step.type == EmergencyActionType.ALERT_ADMIN
        assert not alert_step.success
        assert breaker.is_emergency_stop_enabled()

    @pytest.mark.asyncio
    async def test_auto_liquidate(self, breaker, liquidation_market, execution, alerts):
        await breaker.activate_emergency_stop(
            EmergencyType.PORTFOLIO_LOSS, "loss", auto_liquidate=True
        )

        types = [a.type for a in breaker.state.actions_executed]
        assert EmergencyActionType.LIQUIDATE_POSITIONS in types
        assert breaker.state.total_positions_liquidated == 2
        assert execution.execute_swap.await_count == 2
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_liquidation_failure_never_unwinds_halt(self, breaker, market, alerts):
        market.fail(ConnectionError("rpc down"))

        await breaker.activate_emergency_stop(
            EmergencyType.PORTFOLIO_LOSS, "loss", auto_liquidate=True
        )

        liquidation = [
            a for a in breaker.state.actions_executed
            if a.type == EmergencyActionType.LIQUIDATE_POSITIONS
        ][0]
        assert not liquidation.success
        assert breaker.is_emergency_stop_enabled()
        assert breaker.state.actions_executed[-1].type == EmergencyActionType.SAFE_MODE
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_cancelled_liquidation_still_enters_safe_mode(
        self, breaker, liquidation_market, execution, alerts
    ):
        async def stuck_swap(request):
            await asyncio.Event().wait()

        execution.execute_swap.side_effect = stuck_swap
        received = []
        breaker.add_listener(lambda entry: received.append(entry.action))

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                breaker.activate_emergency_stop(
                    EmergencyType.MANUAL_STOP, "ops", auto_liquidate=True
                ),
                timeout=0.2,
            )

        assert breaker.is_emergency_stop_enabled()
        assert breaker.safe_mode
        assert received == [HistoryAction.ACTIVATE]
        assert [a.type for a in breaker.state.actions_executed] == [
            EmergencyActionType.STOP_TRADING,
            EmergencyActionType.ALERT_ADMIN,
            EmergencyActionType.SAFE_MODE,
        ]
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_listeners_notified_before_liquidation(
        self, breaker, liquidation_market, execution, alerts
    ):
        swaps_at_notify = []
        breaker.add_listener(lambda entry: swaps_at_notify.append(execution.execute_swap.await_count))

        await breaker.activate_emergency_stop(
            EmergencyType.PORTFOLIO_LOSS, "loss", auto_liquidate=True
        )

        assert swaps_at_notify == [0]
        assert execution.execute_swap.await_count == 2
        await alerts.stop()


# =============================================================================
# Deactivation & Override Tests
# =============================================================================

class TestDeactivation:
    """Test deactivation, recovery and manual override."""

    @pytest.mark.asyncio
    async def test_deactivate_enters_recovery(self, breaker, alerts):
        await breaker.activate_emergency_stop(EmergencyType.MANUAL_STOP, "test")

        assert await breaker.deactivate_emergency_stop("resolved")

        status = breaker.get_emergency_status()
        assert not status.is_emergency_stop_enabled
        assert status.phase == BreakerPhase.RECOVERY
        assert not status.safe_mode
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_deactivate_when_inactive(self, breaker, alerts):
        assert not await breaker.deactivate_emergency_stop("nothing to do")
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_deactivation_resets_error_counters(self, breaker, alerts):
        for _ in range(5):
            await breaker.record_system_error("db timeout")
        assert breaker.state.emergency_type == EmergencyType.SYSTEM_ERROR

        await breaker.deactivate_emergency_stop("db restored")
        assert breaker.get_error_counts().system_errors == 0

        # A full threshold of fresh errors is needed to trip again
        for _ in range(4):
            assert not await breaker.record_system_error("db timeout")
        assert not breaker.is_emergency_stop_enabled()
        assert await breaker.record_system_error("db timeout")
        assert breaker.is_emergency_stop_enabled()
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_manual_override_from_config(self, market, execution, alerts, clock):
        breaker = EmergencyCircuitBreaker(
            market,
            execution,
            WALLET,
            config=EmergencyConfig(emergency_stop=True),
            alerts=alerts,
            clock=clock,
        )
        assert breaker.is_emergency_stop_enabled()
        assert not breaker.state.is_emergency_active

        await breaker.set_manual_override(False, "cleared by operator")

        assert not breaker.is_emergency_stop_enabled()
        assert breaker.get_emergency_history()[-1].action == HistoryAction.MANUAL_OVERRIDE

    @pytest.mark.asyncio
    async def test_releasing_override_keeps_active_emergency(self, breaker, alerts):
        await breaker.set_manual_override(True, "maintenance")
        await breaker.activate_emergency_stop(EmergencyType.MARKET_CRASH, "crash")

        await breaker.set_manual_override(False, "maintenance done")

        assert breaker.is_emergency_stop_enabled()
        await alerts.stop()


# =============================================================================
# Trigger Evaluation Tests
# =============================================================================

class TestEmergencyConditions:
    """Test check_emergency_conditions."""

    def test_portfolio_loss_triggers_critical(self, breaker):
        check = breaker.check_emergency_conditions(portfolio_data(total_pnl="-220"))

        assert check.should_trigger
        assert check.emergency_type == EmergencyType.PORTFOLIO_LOSS
        assert check.severity == RiskLevel.CRITICAL
        assert check.reason == "Portfolio loss 22.00% exceeds emergency threshold 20.00%"

    def test_daily_loss_triggers_critical(self, breaker):
        check = breaker.check_emergency_conditions(
            portfolio_data(total_pnl="-50", daily_start="900", daily_pnl="-95")
        )
        assert check.emergency_type == EmergencyType.DAILY_LOSS
        assert check.severity == RiskLevel.CRITICAL

    def test_portfolio_loss_checked_before_daily(self, breaker):
        check = breaker.check_emergency_conditions(
            portfolio_data(total_pnl="-300", daily_pnl="-300")
        )
        assert check.emergency_type == EmergencyType.PORTFOLIO_LOSS

    def test_volatility_triggers_high(self, breaker):
        check = breaker.check_emergency_conditions(portfolio_data(volatility=0.6))
        assert check.emergency_type == EmergencyType.VOLATILITY_SPIKE
        assert check.severity == RiskLevel.HIGH

    def test_gains_do_not_trigger(self, breaker):
        check = breaker.check_emergency_conditions(
            portfolio_data(total_pnl="500", daily_pnl="400")
        )
        assert not check.should_trigger

    @pytest.mark.asyncio
    async def test_error_counters_trigger(self, breaker):
        for _ in range(9):
            await breaker.record_api_failure("timeout")
        assert not breaker.check_emergency_conditions(portfolio_data()).should_trigger

        breaker.update_triggers({"api_failure_count": 9})

        check = breaker.check_emergency_conditions(portfolio_data())
        assert check.emergency_type == EmergencyType.API_FAILURE
        assert check.severity == RiskLevel.HIGH

    def test_evaluation_error_reported_as_system_error(self, breaker):
        breaker.triggers = None
        check = breaker.check_emergency_conditions(portfolio_data())
        assert check.should_trigger
        assert check.emergency_type == EmergencyType.SYSTEM_ERROR
        assert check.severity == RiskLevel.CRITICAL


# =============================================================================
# Error Counter Tests
# =============================================================================

class TestErrorCounters:
    """Test error and failure counting."""

    @pytest.mark.asyncio
    async def test_api_failures_trip_at_threshold(self, breaker, alerts):
        for _ in range(9):
            assert not await breaker.record_api_failure("timeout")
        assert await breaker.record_api_failure("timeout")
        assert breaker.state.emergency_type == EmergencyType.API_FAILURE
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_record_success_resets_consecutive_only(self, breaker):
        await breaker.record_api_failure("timeout")
        await breaker.record_system_error("bug")
        breaker.record_success()

        counts = breaker.get_error_counts()
        assert counts.consecutive_failures == 0
        assert counts.api_failures == 1
        assert counts.system_errors == 1


# =============================================================================
# Liquidation Tests
# =============================================================================

class TestLiquidation:
    """Test prioritized liquidation."""

    @pytest.mark.asyncio
    async def test_plans_ordered_by_priority(self, breaker, liquidation_market):
        candidates = await breaker._collect_candidates()
        plans = breaker.create_liquidation_plan(candidates)

        assert [p.token for p in plans] == ["GALA", "ETH"]
        assert plans[0].priority == 15
        assert plans[1].priority == 50
        assert all(p.liquidation_method == LiquidationMethod.MARKET_SELL for p in plans)

    @pytest.mark.asyncio
    async def test_quote_token_excluded(self, breaker, liquidation_market):
        candidates = await breaker._collect_candidates()
        assert "USDC" not in [c.token for c in candidates]

    @pytest.mark.asyncio
    async def test_swaps_to_quote_with_deadline(self, breaker, liquidation_market, execution, clock):
        result = await breaker.emergency_liquidate_all_positions()

        assert result.success
        assert result.positions_liquidated == 2
        first = execution.execute_swap.await_args_list[0].args[0]
        assert first.token_in == "GALA"
        assert first.token_out == "USDC"
        assert first.urgency == "high"
        assert first.slippage_tolerance == 0.10
        assert first.deadline == clock() + timedelta(seconds=300)

    @pytest.mark.asyncio
    async def test_partial_failure_counts_as_success(self, breaker, liquidation_market, execution):
        execution.failing_tokens = {"GALA"}

        result = await breaker.emergency_liquidate_all_positions()

        assert result.success
        assert result.positions_liquidated == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("GALA")
        assert execution.execute_swap.await_count == 2

    @pytest.mark.asyncio
    async def test_total_failure(self, breaker, liquidation_market, execution):
        execution.failing_tokens = {"GALA", "ETH"}
        result = await breaker.emergency_liquidate_all_positions()
        assert not result.success
        assert result.positions_liquidated == 0

    @pytest.mark.asyncio
    async def test_fetch_failure(self, breaker, market, execution):
        market.fail(ConnectionError("rpc down"))
        result = await breaker.emergency_liquidate_all_positions()
        assert not result.success
        assert "Failed to fetch positions" in result.errors[0]
        execution.execute_swap.assert_not_called()

    @pytest.mark.asyncio
    async def test_liquidity_positions_removed(self, breaker, liquidation_market, execution):
        liquidation_market.positions = [
            LiquidityPosition(
                position_id="pool-1",
                token0="GALA",
                token1="USDC",
                liquidity=Decimal("5000"),
                value_usd=Decimal("600"),
            )
        ]

        result = await breaker.emergency_liquidate_all_positions()

        lp_plans = [p for p in result.plans if p.liquidation_method == LiquidationMethod.REMOVE_LIQUIDITY]
        assert len(lp_plans) == 1
        assert lp_plans[0].token == "GALA/USDC"
        request = execution.remove_liquidity.await_args.args[0]
        assert request.position_id == "pool-1"
        assert request.liquidity == Decimal("5000")

    @pytest.mark.asyncio
    async def test_unpriced_token_uses_emergency_swap(self, breaker, liquidation_market):
        liquidation_market.balances["OBSCURE"] = Decimal("42")

        candidates = await breaker._collect_candidates()
        plans = {p.token: p for p in breaker.create_liquidation_plan(candidates)}

        assert plans["OBSCURE"].liquidation_method == LiquidationMethod.EMERGENCY_SWAP
        assert plans["OBSCURE"].estimated_value == Decimal("0")

    @pytest.mark.asyncio
    async def test_aged_positions_deprioritized(self, liquidation_market, execution, alerts, clock):
        breaker = EmergencyCircuitBreaker(
            liquidation_market,
            execution,
            WALLET,
            alerts=alerts,
            clock=clock,
            age_provider=lambda: {"ETH": 30.0},
        )
        candidates = await breaker._collect_candidates()
        plans = {p.token: p for p in breaker.create_liquidation_plan(candidates)}
        assert plans["ETH"].priority == 60

    def test_priority_scoring(self, breaker):
        medium = WalletBalance(token="A", amount=Decimal("1"), value_usd=Decimal("600"), percent_of_portfolio=0.35)
        assert breaker.calculate_priority(medium) == 35

    def test_unsupported_candidate(self, breaker):
        with pytest.raises(TypeError):
            breaker.select_liquidation_method(MagicMock())

    @pytest.mark.asyncio
    async def test_liquidation_recorded_in_history(self, breaker, liquidation_market):
        await breaker.emergency_liquidate_all_positions()
        entry = breaker.get_emergency_history()[-1]
        assert entry.action == HistoryAction.LIQUIDATION
        assert entry.success


# =============================================================================
# History, Status & Configuration Tests
# =============================================================================

class TestHistoryAndStatus:
    """Test history, listeners, status and trigger updates."""

    @pytest.mark.asyncio
    async def test_listeners_receive_entries(self, breaker, alerts):
        received = []

        async def async_listener(entry):
            received.append(("async", entry.action))

        breaker.add_listener(async_listener)
        breaker.add_listener(lambda entry: received.append(("sync", entry.action)))

        await breaker.activate_emergency_stop(EmergencyType.MANUAL_STOP, "test")

        assert received == [
            ("async", HistoryAction.ACTIVATE),
            ("sync", HistoryAction.ACTIVATE),
        ]
        await alerts.stop()

    @pytest.mark.asyncio
    async def test_history_bounded(self, market, execution, alerts, clock):
        breaker = EmergencyCircuitBreaker(
            market, execution, WALLET, config=EmergencyConfig(history_limit=3), alerts=alerts, clock=clock
        )
        for i in range(5):
            await breaker.set_manual_override(i % 2 == 0, f"toggle {i}")

        history = breaker.get_emergency_history()
        assert len(history) == 3
        assert history[-1].reason == "toggle 4"
        assert len(breaker.get_emergency_history(limit=2)) == 2

    def test_status_inactive(self, breaker):
        status = breaker.get_emergency_status()
        assert status.phase == BreakerPhase.INACTIVE
        assert not status.is_emergency_stop_enabled
        assert status.triggers["portfolio_loss_percent"] == 0.20

    def test_update_triggers(self, breaker):
        result = breaker.update_triggers({"daily_loss_percent": 0.05})
        assert result.success
        assert breaker.triggers.daily_loss_percent == 0.05

        check = breaker.check_emergency_conditions(portfolio_data(daily_pnl="-60"))
        assert check.emergency_type == EmergencyType.DAILY_LOSS

    def test_invalid_trigger_update(self, breaker):
        result = breaker.update_triggers({"daily_loss_percent": 3})
        assert not result.success
        assert breaker.triggers.daily_loss_percent == 0.10

    @pytest.mark.asyncio
    async def test_rehearsal_takes_no_action(self, breaker, liquidation_market, execution):
        rehearsal = await breaker.rehearse_emergency_procedures()

        assert rehearsal.success
        assert [p.token for p in rehearsal.plans] == ["GALA", "ETH"]
        assert rehearsal.estimated_total_value == Decimal("2100")
        assert not rehearsal.condition_check.should_trigger
        execution.execute_swap.assert_not_called()
        assert not breaker.is_emergency_stop_enabled()
