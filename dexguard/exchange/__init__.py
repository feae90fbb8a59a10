"""Exchange integration boundary for DexGuard."""

from dexguard.exchange.gateway import (
    ExecutionGateway,
    MarketStateGateway,
)

__all__ = [
    "ExecutionGateway",
    "MarketStateGateway",
]
