"""
Configuration models for stopguard.

Uses Pydantic for validation and type safety. Durations are milliseconds in
config and converted to seconds at the point of use.
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stopguard.domain.models import Instrument

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


class InstrumentConfig(BaseSettings):
    """Instrument trading rules."""
    model_config = SettingsConfigDict(extra="ignore")

    symbol: str = "ES"
    tick_size: Decimal = Field(default=Decimal("0.25"), gt=0, description="Minimum price increment")
    lot_step: Decimal = Field(default=Decimal("1"), gt=0, description="Quantity increment")
    min_lot: Decimal = Field(default=Decimal("1"), gt=0, description="Minimum order quantity")

    def to_instrument(self) -> Instrument:
        return Instrument(
            symbol=self.symbol,
            tick_size=self.tick_size,
            lot_step=self.lot_step,
            min_lot=self.min_lot,
        )


class PlacementConfig(BaseSettings):
    """Protective order placement and validation."""
    model_config = SettingsConfigDict(extra="ignore")

    max_attempts: int = Field(default=3, ge=1, le=10, description="Submissions per leg before Failure")
    retry_delay_ms: int = Field(default=200, ge=0, le=5000, description="Backoff step; delay = step * attempt")
    validation_timeout_ms: int = Field(default=2000, ge=100, le=30000, description="Wait for the order to appear")
    validation_poll_ms: int = Field(default=50, ge=10, le=1000)
    price_tolerance_ticks: Decimal = Field(default=Decimal("0.1"), gt=0, description="Placed-vs-expected price match")
    proximity_tolerance_ticks: Decimal = Field(default=Decimal("2"), gt=0, description="Order discovery by price")

    @model_validator(mode="after")
    def validate_poll_interval(self):
        if self.validation_poll_ms > self.validation_timeout_ms:
            raise ValueError("validation_poll_ms must not exceed validation_timeout_ms")
        return self


class PricingConfig(BaseSettings):
    """Stop-loss / take-profit calculation."""
    model_config = SettingsConfigDict(extra="ignore")

    min_sl_ticks: int = Field(default=10, ge=1, le=1000, description="Wrong-side correction distance for SL")
    min_tp_ticks: int = Field(default=20, ge=1, le=2000, description="Wrong-side correction distance for TP")
    default_atr_ticks: Decimal = Field(default=Decimal("20"), gt=0, description="Hard volatility fallback")
    sl_atr_multiplier: Decimal = Field(default=Decimal("1.0"), gt=0, description="SL distance when no pivot")
    tp_atr_multiplier: Decimal = Field(default=Decimal("2.0"), gt=0)
    pivot_offset_ticks: int = Field(default=0, ge=0, le=100, description="Extra ticks beyond the pivot")


class ReversalConfig(BaseSettings):
    """Atomic reversal."""
    model_config = SettingsConfigDict(extra="ignore")

    cancel_ordering: Literal["on_flatten_fill", "before_submit"] = Field(
        default="on_flatten_fill",
        description="When old protection is cancelled relative to the reversal order",
    )
    new_position_quantity: Decimal = Field(default=Decimal("1"), gt=0, description="Re-entry size (lots)")
    cancel_settle_ms: int = Field(default=200, ge=0, le=5000, description="before_submit: pause after cancel")
    settle_after_fill_ms: int = Field(default=500, ge=0, le=5000, description="Pause before locating new position")
    new_position_wait_ms: int = Field(default=5000, ge=0, le=30000, description="Max wait for the new position")
    new_position_poll_ms: int = Field(default=100, ge=10, le=1000)
    max_pending_ms: int = Field(default=30000, ge=1000, le=600000, description="Abort a reversal not fully filled by then")
    label: str = "REVERSAL"

    @model_validator(mode="after")
    def validate_pending_window(self):
        if self.max_pending_ms <= self.settle_after_fill_ms + self.new_position_wait_ms:
            raise ValueError("max_pending_ms must exceed settle_after_fill_ms + new_position_wait_ms")
        return self


class EnforcerConfig(BaseSettings):
    """Per-tick invariant enforcement."""
    model_config = SettingsConfigDict(extra="ignore")

    sl_verify_delay_ms: int = Field(default=200, ge=0, le=5000, description="Settle before re-checking a repaired SL")
    tp_retry_interval_ms: int = Field(default=30000, ge=0, le=600000, description="Pause after a failed TP repair")
    emergency_label_prefix: str = "EMERGENCY"


class HealthConfig(BaseSettings):
    """Periodic health monitor."""
    model_config = SettingsConfigDict(extra="ignore")

    max_repair_attempts: int = Field(default=3, ge=1, le=10)
    emergency_flatten_threshold_ms: int = Field(default=10000, ge=1000, le=120000)
    orphan_sweep_interval_ms: int = Field(default=2000, ge=100, le=60000)
    check_interval_ms: int = Field(default=1000, ge=0, le=60000, description="Coordinator cadence for health checks")


class LiquidationConfig(BaseSettings):
    """Emergency liquidation."""
    model_config = SettingsConfigDict(extra="ignore")

    max_market_attempts: int = Field(default=3, ge=1, le=10)
    verify_polls: int = Field(default=3, ge=1, le=20)
    verify_interval_ms: int = Field(default=1000, ge=10, le=10000)
    submit_retry_delay_ms: int = Field(default=1000, ge=0, le=10000)
    fallback_verify_ms: int = Field(default=1000, ge=0, le=10000)


class RiskConfig(BaseSettings):
    """Pre-trade guards."""
    model_config = SettingsConfigDict(extra="ignore")

    max_session_loss: Decimal = Field(default=Decimal("1000"), gt=0, description="Absolute session loss limit")
    max_open_positions: int = Field(default=1, ge=1, le=100)
    entry_quantity: Decimal = Field(default=Decimal("1"), gt=0)


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None
    log_file_max_mb: int = Field(default=10, ge=1, le=1024, description="Rotate the log file at this size")
    log_file_backups: int = Field(default=5, ge=0, le=100)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    instrument: InstrumentConfig = Field(default_factory=InstrumentConfig)
    placement: PlacementConfig = Field(default_factory=PlacementConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    reversal: ReversalConfig = Field(default_factory=ReversalConfig)
    enforcer: EnforcerConfig = Field(default_factory=EnforcerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    liquidation: LiquidationConfig = Field(default_factory=LiquidationConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Expand ${VAR} or $VAR from the environment
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform cross-section validation checks."""
        if self.health.emergency_flatten_threshold_ms <= self.placement.validation_timeout_ms:
            raise ValueError(
                "health.emergency_flatten_threshold_ms must exceed placement.validation_timeout_ms"
            )
        if self.reversal.new_position_quantity < self.instrument.min_lot:
            raise ValueError("reversal.new_position_quantity is below instrument.min_lot")
        if self.pricing.min_tp_ticks < self.pricing.min_sl_ticks:
            raise ValueError("pricing.min_tp_ticks must be >= pricing.min_sl_ticks")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml. If None, uses the packaged stopguard/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    config = Config.from_yaml(config_path)
    config.validate_config()
    return config
