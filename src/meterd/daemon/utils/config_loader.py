import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .logging_config import StructuredLogger

logger = StructuredLogger(__name__)

# --- Schema Models ---


class SettlementSettings(BaseModel):
    attempts: int = Field(5, ge=1, le=100)
    backoff_seconds: float = Field(0.05, ge=0.0, le=30.0)


class StoreSettings(BaseModel):
    conflict_attempts: int = Field(8, ge=1, le=100)
    conflict_backoff_seconds: float = Field(0.02, ge=0.0, le=10.0)
    sqlite_busy_timeout_seconds: float = Field(30.0, gt=0.0)


class DriverSettings(BaseModel):
    batch_size: int = Field(5, ge=1, le=1000)
    default_max_attempts: int = Field(3, ge=1, le=100)
    stall_timeout_seconds: int = Field(600, ge=1)
    poll_interval_seconds: float = Field(2.0, gt=0.0)


class RecoverySettings(BaseModel):
    orphan_grace_seconds: int = Field(600, ge=0)
    orphan_lookback_seconds: int = Field(7 * 24 * 3600, ge=1)
    pending_ttl_seconds: int = Field(3600, ge=1)
    sweep_interval_seconds: int = Field(60, ge=1)


class FeaturePricing(BaseModel):
    estimate: int = Field(..., ge=0)


class LedgerConfig(BaseModel):
    version: int = Field(1, ge=1, le=1)
    settlement: SettlementSettings = Field(default_factory=SettlementSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    driver: DriverSettings = Field(default_factory=DriverSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    features: Dict[str, FeaturePricing] = Field(default_factory=dict)

    @field_validator("features")
    def validate_feature_names(cls, v):
        for name in v:
            if not name.strip():
                raise ValueError("Feature names must be non-empty")
        return v

    def estimate_for(self, feature: str) -> Optional[int]:
        pricing = self.features.get(feature)
        return pricing.estimate if pricing else None


# --- Config Loader (Atomic Reload) ---


class ConfigLoader:
    def __init__(self):
        self.config_dir = Path(os.getenv("METERD_CONFIG_DIR", os.path.expanduser("~/.meterd/config")))
        self.config_file = self.config_dir / "ledger.yaml"
        self.config: Optional[LedgerConfig] = None

    def load_config(self) -> LedgerConfig:
        """
        Loads and validates configuration from ledger.yaml.
        ATOMIC: On failure, previous config is preserved.
        A missing file yields built-in defaults.
        """
        if not self.config_file.exists():
            if self.config is None:
                logger.info("Config file not found, using defaults", path=str(self.config_file))
                self.config = LedgerConfig()
            return self.config

        try:
            with open(self.config_file, "r") as f:
                raw_data = yaml.safe_load(f) or {}

            logger.info("Loading configuration", path=str(self.config_file))

            # Validate into temporary, swap only on success
            new_config = LedgerConfig(**raw_data)
            self.config = new_config

            logger.info(
                "Configuration loaded successfully",
                version=self.config.version,
                features=sorted(self.config.features.keys()),
            )
            return self.config

        except Exception as e:
            logger.error("Configuration validation failed", error=str(e))
            if self.config is not None:
                logger.warning("Keeping previous valid configuration")
                raise ValueError(f"Invalid configuration (previous config retained): {e}")
            logger.critical("No previous configuration to fall back to")
            raise ValueError(f"Invalid configuration (no fallback): {e}")

    def get(self) -> LedgerConfig:
        if not self.config:
            self.load_config()
        return self.config

    def estimate_for(self, feature: str) -> Optional[int]:
        return self.get().estimate_for(feature)


config_loader = ConfigLoader()
