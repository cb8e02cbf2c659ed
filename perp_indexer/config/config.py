"""
Configuration models for the perp indexer.

Uses Pydantic for validation and type safety. Values come from
config.yaml with ${VAR} expansion; DATABASE_URL and ENVIRONMENT from the
process environment always win.
"""
from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3
import yaml
from pathlib import Path
import os
import re

from perp_indexer.constants import (
    BLOCK_CHUNK_SIZE,
    DEFAULT_RPC_TIMEOUT_SECONDS,
    DELAY_BETWEEN_CHUNKS_MS,
    LOOKBACK_MARGIN_BLOCKS,
    ORACLE_CYCLE_WAIT_SECONDS,
    ORACLE_FETCH_RETRY_SECONDS,
    ORACLE_WITHIN_THRESHOLD_WAIT_SECONDS,
    POLLING_INTERVAL_SECONDS,
    PYTH_BTC_USD_FEED_ID,
    PYTH_HERMES_URL,
    QUERY_RETRY_DELAY_SECONDS,
    RESTART_DELAY_SECONDS,
)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')


class ChainConfig(BaseSettings):
    """RPC endpoint and the contracts the indexer watches."""
    model_config = SettingsConfigDict(extra="ignore")

    rpc_url: str = ""
    privacy_proxy_address: str = ""
    token_pool_address: str = ""
    # Token whose address seeds note ids
    token_address: str = ""
    request_timeout_seconds: float = Field(default=DEFAULT_RPC_TIMEOUT_SECONDS, ge=1.0, le=120.0)


class IndexerConfig(BaseSettings):
    """Scan window, pacing and restart behaviour."""
    model_config = SettingsConfigDict(extra="ignore")

    chunk_size: int = Field(default=BLOCK_CHUNK_SIZE, ge=1, le=100_000)
    chunk_delay_ms: int = Field(default=DELAY_BETWEEN_CHUNKS_MS, ge=0, le=60_000)
    query_retry_delay_seconds: float = Field(default=QUERY_RETRY_DELAY_SECONDS, ge=0.0, le=300.0)
    polling_interval_seconds: float = Field(default=POLLING_INTERVAL_SECONDS, ge=0.0, le=300.0)
    restart_delay_seconds: float = Field(default=RESTART_DELAY_SECONDS, ge=0.0, le=600.0)
    lookback_margin: int = Field(default=LOOKBACK_MARGIN_BLOCKS, ge=0, description="Blocks rescanned on every (re)start")
    handler_failure_policy: Literal["skip", "abort_chunk"] = Field(
        default="skip",
        description="skip: log and continue the chunk; abort_chunk: retry the whole chunk on a handler failure",
    )
    persist_checkpoint: bool = Field(
        default=False,
        description="Resume from the stored checkpoint (minus lookback_margin) instead of head - lookback_margin",
    )
    checkpoint_name: str = "main"


class StorageConfig(BaseSettings):
    """Ledger store."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///perp_indexer.db"


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = "logs/indexer.log"


class ApiConfig(BaseSettings):
    """HTTP read API."""
    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class OracleConfig(BaseSettings):
    """Price-feed updater (separate process, shares nothing with the indexer)."""
    model_config = SettingsConfigDict(extra="ignore")

    rpc_url: str = ""
    private_key: Optional[str] = None
    contract_address: str = ""
    # Fraction, 0.005 = 0.5%
    price_change_threshold: float = Field(default=0.005, gt=0.0, le=1.0)
    feed_url: str = PYTH_HERMES_URL
    price_feed_id: str = PYTH_BTC_USD_FEED_ID
    request_timeout_seconds: float = Field(default=10.0, ge=1.0, le=120.0)
    fetch_retry_seconds: float = Field(default=ORACLE_FETCH_RETRY_SECONDS, ge=0.0)
    within_threshold_wait_seconds: float = Field(default=ORACLE_WITHIN_THRESHOLD_WAIT_SECONDS, ge=0.0)
    cycle_wait_seconds: float = Field(default=ORACLE_CYCLE_WAIT_SECONDS, ge=0.0)
    receipt_timeout_seconds: float = Field(default=120.0, ge=1.0)

    @field_validator("price_feed_id")
    @classmethod
    def validate_feed_id(cls, v: str) -> str:
        if not v.startswith("0x"):
            v = "0x" + v
        return v.lower()


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    chain: ChainConfig = Field(default_factory=ChainConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    environment: Literal["dev", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Unset variables expand to an empty string
        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, "")

        expanded_content = _ENV_VAR_PATTERN.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("storage", {})
            config_dict["storage"]["database_url"] = db_url

        return cls(**config_dict)

    def validate_indexer(self) -> None:
        """Check everything the reconciliation engine needs before it starts."""
        missing = [
            name for name in ("rpc_url", "privacy_proxy_address", "token_pool_address", "token_address")
            if not getattr(self.chain, name)
        ]
        if missing:
            raise ValueError(f"Missing chain configuration: {', '.join(missing)}")

        for name in ("privacy_proxy_address", "token_pool_address", "token_address"):
            value = getattr(self.chain, name)
            if not Web3.is_address(value):
                raise ValueError(f"chain.{name} is not a valid address: {value!r}")

    def validate_oracle(self) -> None:
        """Check everything the price updater needs before it starts."""
        if not self.oracle.rpc_url:
            raise ValueError("Missing oracle.rpc_url")
        if not self.oracle.private_key:
            raise ValueError("Missing oracle.private_key (set ORACLE_PRIVATE_KEY)")
        if not Web3.is_address(self.oracle.contract_address):
            raise ValueError(f"oracle.contract_address is not a valid address: {self.oracle.contract_address!r}")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load configuration.

    Args:
        config_path: Path to config.yaml. If None, uses perp_indexer/config/config.yaml

    Returns:
        Config object (component-specific validation happens in the CLI
        command that starts the component)

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If a value is out of bounds
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    return Config.from_yaml(config_path)
