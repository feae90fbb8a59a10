"""DexGuard: risk management and emergency circuit breaker for DEX trading."""

__version__ = "0.1.0"
