"""Pytest fixtures and utilities for the DexGuard test suite."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

from dexguard.core.models import (
    LiquidityPosition,
    PortfolioSnapshot,
    PositionSnapshot,
    RemoveLiquidityResult,
    SwapResult,
    TokenBalance,
)

from dexguard.core.config import (
    AlertConfig,
    DexGuardConfig,
    EmergencyConfig,
    EmergencyTriggers,
    MonitorConfig,
    PositionLimitsConfig,
    SlippageConfig,
)

from dexguard.notifications.alerts import AlertDispatcher
from dexguard.risk.emergency import EmergencyCircuitBreaker
from dexguard.risk.monitor import PortfolioRiskMonitor
from dexguard.risk.position_limits import PositionLimiter
from dexguard.risk.slippage import SlippageGuard
from dexguard.storage.database import AuditStore


WALLET = "eth|0xabc123"


# =============================================================================
# Test Doubles
# =============================================================================

class FakeClock:
    """Controllable UTC clock passed to components as their clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMarket:
    """Market state gateway backed by in-memory balances and prices."""

    def __init__(
        self,
        balances: Optional[Dict[str, Decimal]] = None,
        prices: Optional[Dict[str, Decimal]] = None,
        positions: Optional[List[LiquidityPosition]] = None,
    ):
        self.balances = dict(balances or {})
        self.prices = dict(prices or {})
        self.positions = list(positions or [])

        self.get_balances = AsyncMock(side_effect=self._balances)
        self.get_prices = AsyncMock(side_effect=self._prices)
        self.get_positions = AsyncMock(side_effect=self._positions)

    async def _balances(self, address):
        return [TokenBalance(token=t, amount=a) for t, a in self.balances.items()]

    async def _prices(self, tokens):
        return {t: self.prices[t] for t in tokens if t in self.prices}

    async def _positions(self, address):
        return list(self.positions)

    def set_values(self, values: Dict[str, Decimal]):
        """Hold each token at amount 1 so its price equals its USD value."""
        self.balances = {t: Decimal("1") for t in values}
        self.prices = dict(values)

    def fail(self, error: Exception):
        self.get_balances.side_effect = error


class FakeExecution:
    """Execution gateway that succeeds unless told otherwise per token."""

    def __init__(self):
        self.failing_tokens = set()
        self.execute_swap = AsyncMock(side_effect=self._swap)
        self.remove_liquidity = AsyncMock(
            return_value=RemoveLiquidityResult(success=True, transaction_id="tx-lp")
        )

    async def _swap(self, request):
        if request.token_in in self.failing_tokens:
            return SwapResult(success=False, error="Insufficient liquidity")
        return SwapResult(success=True, transaction_id=f"tx-{request.token_in}")


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def monitor_config():
    """Create a test monitor configuration."""
    return MonitorConfig(
        max_daily_loss=0.05,
        max_total_loss=0.15,
        max_drawdown=0.10,
        max_daily_volume=Decimal("5000"),
        check_interval_seconds=30,
    )


@pytest.fixture
def limits_config():
    """Create a test position limits configuration."""
    return PositionLimitsConfig(
        max_position_size=Decimal("1000"),
        max_total_exposure=Decimal("10000"),
        max_positions_per_token=10,
        concentration_limit=1.0,
        max_daily_volume=Decimal("10000"),
    )


@pytest.fixture
def slippage_config():
    """Create a test slippage configuration."""
    return SlippageConfig(
        default_tolerance=0.01,
        max_slippage=0.05,
        high_impact_threshold=0.02,
        emergency_limit=0.01,
    )


@pytest.fixture
def triggers():
    """Create test emergency triggers."""
    return EmergencyTriggers(
        portfolio_loss_percent=0.20,
        daily_loss_percent=0.10,
        volatility_threshold=0.50,
        system_error_count=5,
        api_failure_count=10,
    )


@pytest.fixture
def emergency_config():
    """Create a test emergency configuration."""
    return EmergencyConfig(emergency_stop=False, quote_token="USDC")


@pytest.fixture
def dexguard_config(
    monitor_config, limits_config, slippage_config, triggers, emergency_config
):
    """Create a full DexGuard configuration."""
    return DexGuardConfig(
        monitor=monitor_config,
        limits=limits_config,
        slippage=slippage_config,
        triggers=triggers,
        emergency=emergency_config,
        alerts=AlertConfig(queue_size=100),
    )


# =============================================================================
# Gateway Fixtures
# =============================================================================

@pytest.fixture
def market():
    """Create a market gateway holding a diversified 1000 USD portfolio."""
    return FakeMarket(
        balances={"GALA": Decimal("10000"), "GUSDC": Decimal("400"), "ETH": Decimal("0.1")},
        prices={"GALA": Decimal("0.03"), "GUSDC": Decimal("1"), "ETH": Decimal("3000")},
    )


@pytest.fixture
def execution():
    """Create an execution gateway."""
    return FakeExecution()


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def alerts():
    """Create an alert dispatcher with a recording sink."""
    received = []
    dispatcher = AlertDispatcher(AlertConfig(queue_size=100), sinks=[received.append])
    dispatcher.received = received
    return dispatcher


@pytest.fixture
def limiter(market, limits_config, clock):
    """Create a position limiter."""
    return PositionLimiter(market, limits_config, clock=clock)


@pytest.fixture
def slippage_guard(slippage_config, clock):
    """Create a slippage guard."""
    return SlippageGuard(slippage_config, clock=clock)


@pytest.fixture
def monitor(market, monitor_config, limits_config, clock):
    """Create a portfolio risk monitor."""
    return PortfolioRiskMonitor(market, monitor_config, limits_config, clock=clock)


@pytest.fixture
def breaker(market, execution, triggers, emergency_config, alerts, clock):
    """Create an emergency circuit breaker."""
    return EmergencyCircuitBreaker(
        market,
        execution,
        WALLET,
        triggers=triggers,
        config=emergency_config,
        alerts=alerts,
        clock=clock,
    )


@pytest_asyncio.fixture
async def audit_store():
    """Create an in-memory audit store."""
    store = AuditStore("sqlite+aiosqlite:///:memory:")
    await store.initialize()
    yield store
    await store.close()


# =============================================================================
# Helper Functions
# =============================================================================

def create_test_snapshot(
    values: Dict[str, Decimal],
    timestamp: Optional[datetime] = None,
    address: str = WALLET,
) -> PortfolioSnapshot:
    """Helper to create a portfolio snapshot from token values."""
    total = sum(values.values(), Decimal("0"))
    positions = [
        PositionSnapshot(
            token=token,
            amount=Decimal("1"),
            price=value,
            value_usd=value,
            percent_of_portfolio=float(value / total) if total > 0 else 0.0,
        )
        for token, value in values.items()
    ]
    kwargs = {"timestamp": timestamp} if timestamp else {}
    return PortfolioSnapshot(
        address=address,
        total_value=total,
        positions=positions,
        **kwargs,
    )


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        # Add unit marker by default
        if not any(marker.name in ["unit", "integration"] for marker in item.own_markers):
            item.add_marker(pytest.mark.unit)
