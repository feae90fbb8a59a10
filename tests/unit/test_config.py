"""Unit tests for configuration."""
import logging

import pytest
import structlog
from decimal import Decimal

from dexguard.core.config import (
    DatabaseConfig,
    DexGuardConfig,
    EmergencyConfig,
    EmergencyTriggers,
    LoggingConfig,
    MonitorConfig,
    PositionLimitsConfig,
    SlippageConfig,
    apply_update,
    load_config,
)
from dexguard.core.models import TradingMode
from dexguard.utils.logging_config import bind_wallet_context, clear_wallet_context, setup_logging


# =============================================================================
# Defaults
# =============================================================================

class TestDefaults:
    """Test default values."""

    def test_monitor_defaults(self):
        config = MonitorConfig()
        assert config.max_daily_loss == 0.05
        assert config.max_total_loss == 0.15
        assert config.max_drawdown == 0.10
        assert config.max_daily_volume == Decimal("5000")
        assert config.max_position_age_hours == 24.0
        assert config.check_interval_seconds == 30.0
        assert config.trading_mode == TradingMode.MIXED

    def test_total_exposure_defaults_to_ten_positions(self):
        config = PositionLimitsConfig(max_position_size=Decimal("250"))
        assert config.max_total_exposure is None
        assert config.total_exposure_limit == Decimal("2500")

    def test_trigger_defaults(self):
        triggers = EmergencyTriggers()
        assert triggers.portfolio_loss_percent == 0.20
        assert triggers.daily_loss_percent == 0.10
        assert triggers.volatility_threshold == 0.50
        assert triggers.system_error_count == 5
        assert triggers.api_failure_count == 10

    def test_emergency_defaults(self):
        config = EmergencyConfig()
        assert config.quote_token == "USDC"
        assert config.liquidation_max_slippage == 0.10
        assert config.liquidation_deadline_seconds == 300
        assert config.auto_liquidate_on_critical is False

    def test_database_disabled_by_default(self):
        assert DatabaseConfig().enabled is False

    def test_load_config(self):
        config = load_config()
        assert isinstance(config, DexGuardConfig)
        assert config.validate_configuration()["valid"]


# =============================================================================
# Environment
# =============================================================================

class TestEnvironment:
    """Test loading from environment variables."""

    def test_emergency_stop_env(self, monkeypatch):
        monkeypatch.setenv("EMERGENCY_STOP", "true")
        assert EmergencyConfig().emergency_stop is True

    def test_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("RISK_MAX_DAILY_LOSS", "0.03")
        monkeypatch.setenv("LIMITS_MAX_POSITION_SIZE", "750")
        monkeypatch.setenv("SLIPPAGE_MAX_SLIPPAGE", "0.04")
        assert MonitorConfig().max_daily_loss == 0.03
        assert PositionLimitsConfig().max_position_size == Decimal("750")
        assert SlippageConfig().max_slippage == 0.04


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Test field validators."""

    @pytest.mark.parametrize("value", [0, -0.1, 1.5])
    def test_loss_fraction_rejected(self, value):
        with pytest.raises(ValueError):
            MonitorConfig(max_daily_loss=value)

    def test_threshold_rejected(self):
        with pytest.raises(ValueError):
            EmergencyTriggers(portfolio_loss_percent=1.2)

    def test_error_count_rejected(self):
        with pytest.raises(ValueError):
            EmergencyTriggers(system_error_count=0)

    def test_position_limit_rejected(self):
        with pytest.raises(ValueError):
            PositionLimitsConfig(max_position_size=Decimal("0"))

    def test_cross_section_issues(self):
        config = DexGuardConfig(
            monitor=MonitorConfig(max_daily_loss=0.2),
            triggers=EmergencyTriggers(daily_loss_percent=0.1),
            slippage=SlippageConfig(emergency_limit=0.1, max_slippage=0.05),
        )
        result = config.validate_configuration()
        assert not result["valid"]
        assert len(result["issues"]) == 2


# =============================================================================
# Runtime Updates
# =============================================================================

class TestApplyUpdate:
    """Test partial runtime updates."""

    def test_valid_update(self):
        current = EmergencyTriggers()
        updated, result = apply_update(current, {"daily_loss_percent": 0.08})
        assert result.success
        assert result.applied == {"daily_loss_percent": 0.08}
        assert updated.daily_loss_percent == 0.08
        assert current.daily_loss_percent == 0.10

    def test_invalid_value_keeps_current(self):
        current = EmergencyTriggers()
        updated, result = apply_update(current, {"daily_loss_percent": 5})
        assert not result.success
        assert updated is current

    def test_unknown_key_rejected(self):
        current = SlippageConfig()
        updated, result = apply_update(current, {"max_slipage": 0.02})
        assert not result.success
        assert "max_slipage" in result.error
        assert updated is current

    def test_derived_exposure_follows_position_size(self):
        current = PositionLimitsConfig(max_position_size=Decimal("1000"))
        updated, result = apply_update(current, {"max_position_size": Decimal("500")})
        assert result.success
        assert updated.total_exposure_limit == Decimal("5000")

    def test_explicit_exposure_kept_on_update(self):
        current = PositionLimitsConfig(
            max_position_size=Decimal("1000"), max_total_exposure=Decimal("8000")
        )
        updated, _ = apply_update(current, {"max_position_size": Decimal("500")})
        assert updated.total_exposure_limit == Decimal("8000")


# =============================================================================
# Logging
# =============================================================================

class TestLogging:
    """Test logging setup."""

    def test_setup_console_logging(self):
        setup_logging(LoggingConfig(level="DEBUG", format="console"))
        assert structlog.is_configured()
        structlog.get_logger("dexguard.test").info("test.console_event", value=1)

    def test_setup_file_logging(self, tmp_path):
        log_file = tmp_path / "logs" / "dexguard.log"
        setup_logging(LoggingConfig(level="INFO", file=str(log_file)))
        assert log_file.parent.exists()
        handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
        assert [h.baseFilename for h in handlers] == [str(log_file)]

        # Reconfiguring swaps the file handler
        other = tmp_path / "other.log"
        setup_logging(LoggingConfig(level="INFO", file=str(other)))
        handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
        assert [h.baseFilename for h in handlers] == [str(other)]

        setup_logging(LoggingConfig(level="INFO"))
        assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)

    def test_wallet_context(self):
        bind_wallet_context("eth|0xabc123")
        assert structlog.contextvars.get_contextvars()["wallet"] == "eth|0xabc123"

        clear_wallet_context()
        assert "wallet" not in structlog.contextvars.get_contextvars()
