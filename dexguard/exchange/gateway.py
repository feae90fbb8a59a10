"""Gateway interfaces the risk core consumes.

The exchange wire client and the execution layer live outside this package.
They are plugged in through these protocols, so the risk components can be
driven by a live DEX client, a paper-trading stub or an AsyncMock in tests.
"""
from decimal import Decimal
from typing import Dict, List, Protocol, runtime_checkable

from dexguard.core.models import (
    LiquidityPosition,
    RemoveLiquidityRequest,
    RemoveLiquidityResult,
    SwapRequest,
    SwapResult,
    TokenBalance,
)


@runtime_checkable
class MarketStateGateway(Protocol):
    """Read-only portfolio and price data for an address."""

    async def get_balances(self, address: str) -> List[TokenBalance]:
        ...

    async def get_prices(self, tokens: List[str]) -> Dict[str, Decimal]:
        ...

    async def get_positions(self, address: str) -> List[LiquidityPosition]:
        ...


@runtime_checkable
class ExecutionGateway(Protocol):
    """Executes explicit swap and liquidity-withdrawal instructions."""

    async def execute_swap(self, request: SwapRequest) -> SwapResult:
        ...

    async def remove_liquidity(
        self, request: RemoveLiquidityRequest
    ) -> RemoveLiquidityResult:
        ...
