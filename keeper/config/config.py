"""
Configuration models for the perpetual keeper.

Uses Pydantic for validation and type safety. Values come from
config.yaml with ${VAR} / ${VAR:-default} expansion from the environment.
"""
import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from keeper.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# ${VAR}, ${VAR:-default} or $VAR
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")


class _Section(BaseSettings):
    """Base for config sections: blank strings count as unset."""
    model_config = SettingsConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class ChainConfig(_Section):
    """RPC endpoints and the bot's signing key."""

    rpc_http_url: Optional[str] = None
    # Absent WebSocket endpoint disables live events
    rpc_ws_url: Optional[str] = None
    chain_id: int = Field(default=11155111, ge=1)
    private_key: Optional[SecretStr] = None

    request_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    tx_receipt_timeout_seconds: float = Field(default=120.0, gt=0, le=1800)


class ContractsConfig(_Section):
    """On-chain contract addresses."""

    position_manager: Optional[str] = None
    price_source: Optional[str] = None
    position_registry: Optional[str] = None


class StorageConfig(_Section):
    """Position store connection."""

    database_url: Optional[str] = None


class IndexerConfig(_Section):
    """Event indexing configuration."""

    # latest: live events from head+1 only; checkpoint: backfill from the stored checkpoint, then live
    start_block: Literal["latest", "checkpoint"] = "latest"
    batch_size: int = Field(default=2000, ge=1, le=100_000, description="Blocks per backfill get_logs request")
    retry_delay_seconds: float = Field(default=5.0, ge=0.0, le=600.0, description="Backoff before retrying a failed batch")
    genesis_block: Optional[int] = Field(
        default=None, ge=0,
        description="Replay from this block when no checkpoint is stored (default: start at head)",
    )
    live_event_retries: int = Field(default=3, ge=0, le=10, description="Handler retries for one live event")


class LiquidatorConfig(_Section):
    """Solvency sweep configuration."""

    interval_seconds: float = Field(default=60.0, gt=0, le=3600)
    max_gas_price_gwei: float = Field(default=50.0, gt=0)


class FundingConfig(_Section):
    """Funding-rate updater configuration."""

    interval_seconds: float = Field(default=8 * 3600.0, gt=0)
    cooldown_seconds: float = Field(default=60.0, ge=0)
    retry_delay_seconds: float = Field(default=300.0, ge=0)
    max_gas_price_gwei: Optional[float] = Field(
        default=None, gt=0,
        description="Override the liquidator's gas ceiling for funding updates",
    )


class MonitoringConfig(_Section):
    """Logging configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class SystemConfig(_Section):
    """System metadata."""

    name: str = "Perpetual Keeper"
    version: str = "1.0.0"
    shutdown_timeout_seconds: float = Field(default=180.0, gt=0, le=900)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    contracts: ContractsConfig = Field(default_factory=ContractsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    liquidator: LiquidatorConfig = Field(default_factory=LiquidatorConfig)
    funding: FundingConfig = Field(default_factory=FundingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        config_dict = yaml.safe_load(expand_env(raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"].strip().lower()

        return cls(**config_dict)

    @property
    def funding_gas_ceiling_gwei(self) -> float:
        return self.funding.max_gas_price_gwei or self.liquidator.max_gas_price_gwei

    def validate_config(self) -> None:
        """Check required values. Raises ConfigurationError listing every problem."""
        from web3 import Web3

        errors = []

        required = {
            "chain.rpc_http_url (RPC_HTTP_URL)": self.chain.rpc_http_url,
            "chain.private_key (PRIVATE_KEY)": self.chain.private_key,
            "contracts.position_manager (POSITION_MANAGER_ADDRESS)": self.contracts.position_manager,
            "contracts.price_source (PRICE_SOURCE_ADDRESS)": self.contracts.price_source,
            "contracts.position_registry (POSITION_REGISTRY_ADDRESS)": self.contracts.position_registry,
            "storage.database_url (DATABASE_URL)": self.storage.database_url,
        }
        missing = [name for name, value in required.items() if value is None]
        if missing:
            errors.append(f"Missing required configuration: {', '.join(missing)}")

        for name in ("position_manager", "price_source", "position_registry"):
            address = getattr(self.contracts, name)
            if address is not None and not Web3.is_address(address):
                errors.append(f"contracts.{name} is not a valid address: {address}")

        url = self.storage.database_url
        if url is not None and not url.startswith(("postgresql", "sqlite")):
            errors.append(f"storage.database_url must be postgresql:// or sqlite:// (got {url[:30]}...)")

        if self.chain.rpc_ws_url is not None and not self.chain.rpc_ws_url.startswith(("ws://", "wss://")):
            errors.append(f"chain.rpc_ws_url must be ws:// or wss:// (got {self.chain.rpc_ws_url})")

        # A submission waits for its receipt; shutdown must outlast it
        submission_window = self.chain.tx_receipt_timeout_seconds + self.chain.request_timeout_seconds
        if self.system.shutdown_timeout_seconds <= submission_window:
            errors.append(
                f"system.shutdown_timeout_seconds ({self.system.shutdown_timeout_seconds}) must exceed "
                f"chain.tx_receipt_timeout_seconds + chain.request_timeout_seconds ({submission_window})"
            )

        if self.funding.retry_delay_seconds < self.funding.cooldown_seconds:
            errors.append(
                f"funding.retry_delay_seconds ({self.funding.retry_delay_seconds}) must be at least "
                f"funding.cooldown_seconds ({self.funding.cooldown_seconds})"
            )

        if errors:
            raise ConfigurationError("; ".join(errors))


def expand_env(raw: str) -> str:
    """Substitute ${VAR}, ${VAR:-default} and $VAR from the environment.

    Unset variables without a default become empty strings.
    """
    def replace_match(match: re.Match) -> str:
        name = match.group(1) or match.group(3)
        default = match.group(2)
        value = os.environ.get(name)
        if value is None or value == "":
            return default if default is not None else ""
        return value

    return _ENV_PATTERN.sub(replace_match, raw)


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml. If None, uses keeper/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        ConfigurationError: If the file is missing, malformed, or required values are unset
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    try:
        config = Config.from_yaml(config_path)
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e
    except (ValidationError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    config.validate_config()
    return config
