"""Typed settings loader for the market resolution engine."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import AnyUrl, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigError


class Settings(BaseSettings):
    """Application settings loaded from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    app_env: Literal["dev", "staging", "prod"] = Field(default="dev", alias="APP_ENV")

    dispute_window_hours: float = Field(default=168.0, alias="DISPUTE_WINDOW_HOURS")
    dispute_min_bond: int = Field(default=100, alias="DISPUTE_MIN_BOND")
    bond_slash_percent: int = Field(default=50, alias="BOND_SLASH_PERCENT")
    confidence_threshold: float = Field(default=80.0, alias="CONFIDENCE_THRESHOLD")
    resolution_ceiling_days: float = Field(default=100.0, alias="RESOLUTION_CEILING_DAYS")
    fallback_outcome: Literal["yes", "no", "invalid"] = Field(
        default="invalid",
        alias="FALLBACK_OUTCOME",
    )

    confidence_weight_market: float = Field(default=0.50, alias="CONFIDENCE_WEIGHT_MARKET")
    confidence_weight_evidence: float = Field(default=0.20, alias="CONFIDENCE_WEIGHT_EVIDENCE")
    confidence_weight_external: float = Field(default=0.30, alias="CONFIDENCE_WEIGHT_EXTERNAL")
    confidence_adaptive_weights: bool = Field(default=False, alias="CONFIDENCE_ADAPTIVE_WEIGHTS")
    evidence_multiplier_contrarian: float = Field(
        default=3.0,
        alias="EVIDENCE_MULTIPLIER_CONTRARIAN",
    )
    evidence_multiplier_legitimate: float = Field(
        default=1.5,
        alias="EVIDENCE_MULTIPLIER_LEGITIMATE",
    )
    evidence_multiplier_regular: float = Field(default=1.0, alias="EVIDENCE_MULTIPLIER_REGULAR")
    evidence_prior_weight: float = Field(default=1.0, alias="CONFIDENCE_EVIDENCE_PRIOR_WEIGHT")

    amm_virtual_liquidity: int = Field(default=1_000, alias="AMM_VIRTUAL_LIQUIDITY")
    default_fee_rate_bps: int = Field(default=100, alias="DEFAULT_FEE_RATE_BPS")
    collateral_token: str = Field(default="CAST", alias="COLLATERAL_TOKEN")
    price_sum_tolerance: float = Field(default=0.0001, alias="PRICE_SUM_TOLERANCE")

    admin_accounts: str = Field(default="admin", alias="ADMIN_ACCOUNTS")
    resolver_account: str = Field(default="resolver", alias="RESOLVER_ACCOUNT")
    treasury_account: str = Field(default="treasury", alias="TREASURY_ACCOUNT")

    monitor_interval_seconds: float = Field(default=15.0, alias="MONITOR_INTERVAL_SECONDS")
    sync_interval_seconds: float = Field(default=60.0, alias="SYNC_INTERVAL_SECONDS")
    monitor_batch_size: int = Field(default=50, alias="MONITOR_BATCH_SIZE")

    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_base_ms: int = Field(default=250, alias="RETRY_BASE_MS")
    retry_jitter_ms: int = Field(default=100, alias="RETRY_JITTER_MS")

    signal_api_base_url: AnyUrl | None = Field(default=None, alias="SIGNAL_API_BASE_URL")
    signal_api_token: str | None = Field(default=None, alias="SIGNAL_API_TOKEN", repr=False)
    signal_timeout_seconds: float = Field(default=10.0, alias="SIGNAL_TIMEOUT_SECONDS")
    signal_endpoint_template: str = Field(
        default="/v1/signals/{market_id}",
        alias="SIGNAL_ENDPOINT_TEMPLATE",
    )

    store_database_url: str = Field(
        default="sqlite:///./data/store.db",
        alias="STORE_DATABASE_URL",
    )
    ledger_state_path: Path = Field(
        default=Path("./data/ledger.json"),
        alias="LEDGER_STATE_PATH",
    )
    journal_dir: Path = Field(default=Path("./data/journal"), alias="JOURNAL_DIR")

    @field_validator("signal_api_base_url", "signal_api_token", mode="before")
    @classmethod
    def empty_string_to_none(cls, value: Any) -> Any:
        """Treat empty env-string values as unset optional settings."""
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @model_validator(mode="after")
    def validate_ranges(self) -> Settings:
        """Validate numeric ranges and cross-field consistency."""
        if self.dispute_window_hours <= 0:
            raise ValueError("DISPUTE_WINDOW_HOURS must be > 0.")
        if self.dispute_min_bond <= 0:
            raise ValueError("DISPUTE_MIN_BOND must be > 0.")
        if not (0 <= self.bond_slash_percent <= 100):
            raise ValueError("BOND_SLASH_PERCENT must be between 0 and 100.")
        if not (50 < self.confidence_threshold <= 100):
            raise ValueError("CONFIDENCE_THRESHOLD must be in (50, 100].")
        if self.resolution_ceiling_days <= 0:
            raise ValueError("RESOLUTION_CEILING_DAYS must be > 0.")
        if self.resolution_ceiling_days * 24 < self.dispute_window_hours:
            raise ValueError("RESOLUTION_CEILING_DAYS cannot be shorter than DISPUTE_WINDOW_HOURS.")

        weights = (
            self.confidence_weight_market,
            self.confidence_weight_evidence,
            self.confidence_weight_external,
        )
        if any(weight < 0 for weight in weights):
            raise ValueError("CONFIDENCE_WEIGHT_* values must be >= 0.")
        if abs(sum(weights) - 1.0) > 1e-6:
            raise ValueError("CONFIDENCE_WEIGHT_* values must sum to 1.0.")
        if self.evidence_multiplier_regular <= 0:
            raise ValueError("EVIDENCE_MULTIPLIER_REGULAR must be > 0.")
        if self.evidence_multiplier_legitimate < self.evidence_multiplier_regular:
            raise ValueError(
                "EVIDENCE_MULTIPLIER_LEGITIMATE cannot be below EVIDENCE_MULTIPLIER_REGULAR."
            )
        if self.evidence_multiplier_contrarian < self.evidence_multiplier_legitimate:
            raise ValueError(
                "EVIDENCE_MULTIPLIER_CONTRARIAN cannot be below EVIDENCE_MULTIPLIER_LEGITIMATE."
            )
        if self.evidence_prior_weight < 0:
            raise ValueError("CONFIDENCE_EVIDENCE_PRIOR_WEIGHT must be >= 0.")

        if self.amm_virtual_liquidity <= 0:
            raise ValueError("AMM_VIRTUAL_LIQUIDITY must be > 0.")
        if not (0 <= self.default_fee_rate_bps < 10_000):
            raise ValueError("DEFAULT_FEE_RATE_BPS must be between 0 and 9999.")
        if not self.collateral_token.strip():
            raise ValueError("COLLATERAL_TOKEN must not be empty.")
        if not (0 < self.price_sum_tolerance < 1):
            raise ValueError("PRICE_SUM_TOLERANCE must be between 0 and 1.")

        if not self.admin_account_set:
            raise ValueError("ADMIN_ACCOUNTS must list at least one account.")
        if not self.resolver_account.strip():
            raise ValueError("RESOLVER_ACCOUNT must not be empty.")
        if not self.treasury_account.strip():
            raise ValueError("TREASURY_ACCOUNT must not be empty.")
        if self.treasury_account in self.admin_account_set:
            raise ValueError("TREASURY_ACCOUNT must not be an admin account.")

        if self.monitor_interval_seconds <= 0:
            raise ValueError("MONITOR_INTERVAL_SECONDS must be > 0.")
        if self.sync_interval_seconds <= 0:
            raise ValueError("SYNC_INTERVAL_SECONDS must be > 0.")
        if self.monitor_batch_size <= 0:
            raise ValueError("MONITOR_BATCH_SIZE must be > 0.")
        if self.retry_max_attempts <= 0:
            raise ValueError("RETRY_MAX_ATTEMPTS must be > 0.")
        if self.retry_base_ms < 0:
            raise ValueError("RETRY_BASE_MS must be >= 0.")
        if self.retry_jitter_ms < 0:
            raise ValueError("RETRY_JITTER_MS must be >= 0.")
        if self.signal_timeout_seconds <= 0:
            raise ValueError("SIGNAL_TIMEOUT_SECONDS must be > 0.")
        if not self.signal_endpoint_template.startswith("/"):
            raise ValueError("SIGNAL_ENDPOINT_TEMPLATE must start with '/'.")
        if "{market_id}" not in self.signal_endpoint_template:
            raise ValueError("SIGNAL_ENDPOINT_TEMPLATE must include '{market_id}'.")
        return self

    @property
    def admin_account_set(self) -> frozenset[str]:
        return frozenset(
            account.strip() for account in self.admin_accounts.split(",") if account.strip()
        )

    def safe_summary(self) -> dict[str, Any]:
        """Return config summary safe for journaling (no credentials)."""
        return {
            "app_env": self.app_env,
            "dispute_window_hours": self.dispute_window_hours,
            "dispute_min_bond": self.dispute_min_bond,
            "bond_slash_percent": self.bond_slash_percent,
            "confidence_threshold": self.confidence_threshold,
            "resolution_ceiling_days": self.resolution_ceiling_days,
            "fallback_outcome": self.fallback_outcome,
            "confidence_weights": {
                "market": self.confidence_weight_market,
                "evidence": self.confidence_weight_evidence,
                "external": self.confidence_weight_external,
            },
            "confidence_adaptive_weights": self.confidence_adaptive_weights,
            "amm_virtual_liquidity": self.amm_virtual_liquidity,
            "default_fee_rate_bps": self.default_fee_rate_bps,
            "collateral_token": self.collateral_token,
            "resolver_account": self.resolver_account,
            "treasury_account": self.treasury_account,
            "monitor_interval_seconds": self.monitor_interval_seconds,
            "sync_interval_seconds": self.sync_interval_seconds,
            "retry_max_attempts": self.retry_max_attempts,
            "signal_api_configured": self.signal_api_base_url is not None,
            "store_backend": self.store_database_url.split(":", 1)[0],
        }


def load_settings(**overrides: Any) -> Settings:
    """Load and validate settings, raising ConfigError on failure."""
    try:
        settings = Settings(**overrides)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed reading environment/.env: {exc}") from exc

    settings.journal_dir.mkdir(parents=True, exist_ok=True)
    settings.ledger_state_path.parent.mkdir(parents=True, exist_ok=True)
    return settings
