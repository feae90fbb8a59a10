"""Configuration management for the DexGuard risk engine.

Every concern has its own settings class, loaded from the environment (and an
optional .env file) once at process start. The aggregated DexGuardConfig is built
explicitly by the caller and passed to the RiskEngine; nothing here is a global.
"""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dexguard.core.models import TradingMode

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: Optional[str] = Field(default=None, description="Optional log file path")
    format: Literal["json", "console"] = "json"


# =============================================================================
# Portfolio Risk Monitor Configuration
# =============================================================================


class MonitorConfig(BaseSettings):
    """Loss, drawdown, volume and age thresholds for the portfolio monitor."""

    model_config = SettingsConfigDict(
        env_prefix="RISK_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Loss thresholds (fraction of baseline / daily start)
    max_daily_loss: float = 0.05
    max_total_loss: float = 0.15
    max_drawdown: float = 0.10

    # Turnover and holding period
    max_daily_volume: Decimal = Decimal("5000")
    max_position_age_hours: float = 24.0

    # Scheduling and history
    check_interval_seconds: float = 30.0
    history_hours: float = 24.0
    anomaly_min_snapshots: int = 5

    # Volatility baseline, in percent, for anomaly multiples
    normal_volatility: float = 2.0

    # Oversized trades are cut to this fraction of the position-size cap
    trade_size_fraction: float = 0.8

    trading_mode: TradingMode = TradingMode.MIXED
    liquid_tokens: List[str] = Field(default_factory=lambda: ["GALA", "GUSDC", "USDC", "USDT"])

    @field_validator(
        "max_daily_loss", "max_total_loss", "max_drawdown", "trade_size_fraction"
    )
    @classmethod
    def validate_fraction(cls, v):
        """Validate that the value is a fraction in (0, 1]."""
        if v <= 0 or v > 1:
            raise ValueError("Value must be between 0 and 1")
        return v

    @field_validator(
        "max_daily_volume", "max_position_age_hours", "check_interval_seconds",
        "history_hours", "normal_volatility",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("anomaly_min_snapshots")
    @classmethod
    def validate_min_snapshots(cls, v):
        if v < 2:
            raise ValueError("At least two snapshots are needed for anomaly detection")
        return v


# =============================================================================
# Position & Exposure Limits Configuration
# =============================================================================


class PositionLimitsConfig(BaseSettings):
    """Per-token position, exposure and daily volume limits."""

    model_config = SettingsConfigDict(
        env_prefix="LIMITS_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    max_position_size: Decimal = Decimal("1000")
    # Defaults to 10x max_position_size when not set
    max_total_exposure: Optional[Decimal] = None
    max_positions_per_token: int = 10
    concentration_limit: float = 1.0
    max_daily_volume: Decimal = Decimal("10000")
    max_portfolio_concentration: float = 0.5
    disable_portfolio_limits: bool = False

    @field_validator("max_position_size", "max_daily_volume")
    @classmethod
    def validate_positive_amount(cls, v):
        if v <= 0:
            raise ValueError("Limit must be positive")
        return v

    @field_validator("max_total_exposure")
    @classmethod
    def validate_total_exposure(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Total exposure limit must be positive")
        return v

    @field_validator("max_positions_per_token")
    @classmethod
    def validate_position_count(cls, v):
        if v < 1:
            raise ValueError("At least one position per token must be allowed")
        return v

    @field_validator("concentration_limit", "max_portfolio_concentration")
    @classmethod
    def validate_concentration(cls, v):
        if v <= 0 or v > 1:
            raise ValueError("Concentration must be between 0 and 1")
        return v

    @property
    def total_exposure_limit(self) -> Decimal:
        """Explicit exposure cap, or 10x the position size while unset."""
        if self.max_total_exposure is None:
            return self.max_position_size * 10
        return self.max_total_exposure


# =============================================================================
# Slippage Configuration
# =============================================================================


class SlippageConfig(BaseSettings):
    """Slippage tolerances and alert thresholds."""

    model_config = SettingsConfigDict(
        env_prefix="SLIPPAGE_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    default_tolerance: float = 0.01
    max_slippage: float = 0.05
    high_impact_threshold: float = 0.02
    emergency_limit: float = 0.01
    trading_fee: float = 0.003

    # Alerts
    alert_multiple: float = 2.0
    history_size: int = 100
    min_history_for_alerts: int = 5

    @field_validator(
        "default_tolerance", "max_slippage", "high_impact_threshold",
        "emergency_limit", "trading_fee",
    )
    @classmethod
    def validate_fraction(cls, v):
        if v < 0 or v > 1:
            raise ValueError("Slippage values must be between 0 and 1")
        return v

    @field_validator("history_size", "min_history_for_alerts")
    @classmethod
    def validate_count(cls, v):
        if v < 1:
            raise ValueError("Count must be at least 1")
        return v


# =============================================================================
# Emergency Configuration
# =============================================================================


class EmergencyTriggers(BaseSettings):
    """Circuit breaker trip thresholds. Updatable at runtime."""

    model_config = SettingsConfigDict(
        env_prefix="EMERGENCY_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    portfolio_loss_percent: float = 0.20
    daily_loss_percent: float = 0.10
    volatility_threshold: float = 0.50
    liquidity_threshold: float = 0.10
    price_drop_threshold: float = 0.30
    system_error_count: int = 5
    api_failure_count: int = 10

    @field_validator(
        "portfolio_loss_percent", "daily_loss_percent", "volatility_threshold",
        "liquidity_threshold", "price_drop_threshold",
    )
    @classmethod
    def validate_threshold(cls, v):
        """Validate that threshold is between 0 and 1."""
        if v <= 0 or v > 1:
            raise ValueError("Threshold must be between 0 and 1")
        return v

    @field_validator("system_error_count", "api_failure_count")
    @classmethod
    def validate_count(cls, v):
        if v < 1:
            raise ValueError("Error count threshold must be at least 1")
        return v


class EmergencyConfig(BaseSettings):
    """Emergency stop behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="EMERGENCY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Manual kill switch, set EMERGENCY_STOP=true
    emergency_stop: bool = Field(default=False, validation_alias="EMERGENCY_STOP")

    quote_token: str = "USDC"
    liquidation_max_slippage: float = 0.10
    liquidation_deadline_seconds: int = 300
    auto_liquidate_on_critical: bool = False
    emergency_slippage_limit: float = 0.01
    history_limit: int = 1000

    @field_validator("liquidation_max_slippage", "emergency_slippage_limit")
    @classmethod
    def validate_slippage(cls, v):
        if v <= 0 or v > 1:
            raise ValueError("Slippage must be between 0 and 1")
        return v

    @field_validator("liquidation_deadline_seconds", "history_limit")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v


# =============================================================================
# Alert & Database Configuration
# =============================================================================


class AlertConfig(BaseSettings):
    """Alert dispatch configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ALERT_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    enabled: bool = True
    queue_size: int = 1000
    notify_on_recovery: bool = True


class DatabaseConfig(BaseSettings):
    """Audit store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DB_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    enabled: bool = False
    url: str = "sqlite+aiosqlite:///./data/dexguard.db"


# =============================================================================
# Runtime Updates
# =============================================================================


class ConfigUpdateResult(BaseModel):
    """Outcome of a runtime configuration update."""

    success: bool
    error: Optional[str] = None
    applied: Dict[str, Any] = Field(default_factory=dict)


SettingsT = TypeVar("SettingsT", bound=BaseSettings)


def apply_update(
    current: SettingsT, updates: Dict[str, Any]
) -> Tuple[SettingsT, ConfigUpdateResult]:
    """Merge a partial update into a settings object and revalidate it.

    The current object is never mutated. On failure the original is returned
    alongside the error so callers can keep using it.
    """
    fields = type(current).model_fields
    unknown = sorted(key for key in updates if key not in fields)
    if unknown:
        return current, ConfigUpdateResult(
            success=False, error=f"Unknown settings: {', '.join(unknown)}"
        )

    merged = current.model_dump()
    merged.update(updates)
    try:
        updated = type(current)(**merged)
    except ValidationError as e:
        return current, ConfigUpdateResult(success=False, error=str(e))

    return updated, ConfigUpdateResult(success=True, applied=dict(updates))


# =============================================================================
# Configuration Container
# =============================================================================


class DexGuardConfig:
    """
    Container for all DexGuard configurations.

    Usage:
        from dexguard.core.config import load_config

        config = load_config()
        engine = create_risk_engine(market, execution, wallet_address, config=config)

        # Override a section in tests
        config = DexGuardConfig(limits=PositionLimitsConfig(max_position_size=500))
    """

    def __init__(
        self,
        logging: Optional[LoggingConfig] = None,
        monitor: Optional[MonitorConfig] = None,
        limits: Optional[PositionLimitsConfig] = None,
        slippage: Optional[SlippageConfig] = None,
        triggers: Optional[EmergencyTriggers] = None,
        emergency: Optional[EmergencyConfig] = None,
        alerts: Optional[AlertConfig] = None,
        database: Optional[DatabaseConfig] = None,
    ):
        self.logging = logging or LoggingConfig()
        self.monitor = monitor or MonitorConfig()
        self.limits = limits or PositionLimitsConfig()
        self.slippage = slippage or SlippageConfig()
        self.triggers = triggers or EmergencyTriggers()
        self.emergency = emergency or EmergencyConfig()
        self.alerts = alerts or AlertConfig()
        self.database = database or DatabaseConfig()

    def validate_configuration(self) -> dict:
        """
        Cross-check thresholds that live in different sections.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.triggers.daily_loss_percent < self.monitor.max_daily_loss:
            issues.append(
                "Emergency daily loss trigger is below the monitor's daily loss limit"
            )
        if self.triggers.portfolio_loss_percent < self.monitor.max_total_loss:
            issues.append(
                "Emergency portfolio loss trigger is below the monitor's total loss limit"
            )
        if self.slippage.emergency_limit > self.slippage.max_slippage:
            issues.append("Emergency slippage limit exceeds the maximum slippage")
        if self.limits.total_exposure_limit < self.limits.max_position_size:
            issues.append("Total exposure limit is below the single position limit")

        return {"valid": len(issues) == 0, "issues": issues}


def load_config() -> DexGuardConfig:
    """Load every configuration section from the environment."""
    return DexGuardConfig()


__all__ = [
    "LoggingConfig",
    "MonitorConfig",
    "PositionLimitsConfig",
    "SlippageConfig",
    "EmergencyTriggers",
    "EmergencyConfig",
    "AlertConfig",
    "DatabaseConfig",
    "ConfigUpdateResult",
    "apply_update",
    "DexGuardConfig",
    "load_config",
]
