"""
Configuration management for the mint worker pool.

Supports configuration via environment variables and .env files.
The configuration is validated once at startup and is immutable afterwards;
components receive it explicitly and never read the environment themselves.
"""

from enum import Enum
from typing import Any, Optional

from eth_utils import is_address, to_checksum_address
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ONE_ETHER = 10**18


class SignerBackend(str, Enum):
    """Where worker signing keys live."""
    LOCAL = "local"      # Encrypted keystore files on this host
    REMOTE = "remote"    # External signing service (HSM / KMS front-end)


class MinterConfig(BaseSettings):
    """
    Configuration settings for the minter.

    All settings can be configured via environment variables with the MINTER_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="MINTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
    )

    # Chain settings
    chain_id: int = Field(
        default=2021,
        ge=1,
        description="EVM chain id the contract is deployed on"
    )
    chain_name: str = Field(
        default="saigon",
        description="Human readable chain name (logging only)"
    )
    rpc_url: str = Field(
        default="http://localhost:8545",
        description="JSON-RPC endpoint of the chain node"
    )
    rpc_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single RPC request"
    )
    contract_address: Optional[str] = Field(
        default=None,
        description="Address of the NFT contract exposing mintTo"
    )

    # Worker pool settings
    worker_pool_size: int = Field(
        default=10,
        ge=1,
        description="Number of hot wallets kept in the pool"
    )
    worker_lease_ttl_seconds: int = Field(
        default=60,
        ge=1,
        description="Lease duration of a worker checkout before it can be reclaimed"
    )

    # Signing settings
    signer_backend: SignerBackend = Field(
        default=SignerBackend.LOCAL,
        description="Signing backend for worker keys"
    )
    keystore_dir: str = Field(
        default="keystore",
        description="Directory holding encrypted worker keystore files"
    )
    keystore_password: SecretStr = Field(
        default=SecretStr(""),
        description="Password protecting the keystore files"
    )
    remote_signer_url: Optional[str] = Field(
        default=None,
        description="Base URL of the remote signing service"
    )
    remote_signer_token: Optional[SecretStr] = Field(
        default=None,
        description="Bearer token for the remote signing service"
    )

    # Metadata pinning settings
    pinata_url: str = Field(
        default="https://api.pinata.cloud/pinning/pinFileToIPFS",
        description="Pinata upload endpoint"
    )
    pinata_jwt: Optional[SecretStr] = Field(default=None)
    pinata_api_key: Optional[str] = Field(default=None)
    pinata_secret_api_key: Optional[SecretStr] = Field(default=None)
    pinata_gateway_url: str = Field(
        default="ipfs://",
        description="Prefix joined with the IPFS hash to form the token URI"
    )
    metadata_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout of the single metadata upload attempt"
    )

    # Fee and gas settings
    fee_cache_block_window: int = Field(
        default=10,
        ge=1,
        description="Blocks after which cached fee data is refetched"
    )
    gas_buffer_percent: int = Field(
        default=20,
        ge=0,
        description="Percentage added to estimated gas limit and fee caps"
    )
    balance_buffer_percent: int = Field(
        default=20,
        ge=0,
        description="Safety margin on top of the estimated transaction cost"
    )

    # Pipeline settings
    batch_pacing_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Delay between orders of a batch (node rate limits)"
    )
    confirmation_poll_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Interval between receipt polls"
    )
    confirmation_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Give up waiting for a receipt after this long (unbounded if unset)"
    )

    # Retry settings
    max_retries: int = Field(
        default=3,
        ge=1,
        description="Maximum attempts for a failed order"
    )
    retry_initial_delay_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Base delay of the exponential retry backoff"
    )

    # Funding settings
    master_key_reference: Optional[str] = Field(
        default=None,
        description="Key reference of the master (funding) wallet"
    )
    master_address: Optional[str] = Field(
        default=None,
        description="Address of the master (funding) wallet"
    )
    funding_top_up_wei: int = Field(
        default=ONE_ETHER,
        gt=0,
        description="Amount sent to a worker per funding request"
    )
    min_worker_balance_wei: int = Field(
        default=ONE_ETHER // 10,
        ge=0,
        description="Worker balance below which funding is requested"
    )
    master_low_balance_wei: int = Field(
        default=ONE_ETHER // 2,
        ge=0,
        description="Master wallet balance below which an alert is raised"
    )

    # Alert settings
    alert_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving anomaly notifications"
    )
    signing_failure_alert_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive signing failures on one worker before alerting"
    )

    # Database settings
    database_url: str = Field(
        default="sqlite+aiosqlite:///mintpool.db",
        description="SQLAlchemy database URL for state persistence"
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format"
    )

    @field_validator("contract_address", "master_address")
    @classmethod
    def _checksum_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not is_address(value):
            raise ValueError(f"not a valid address: {value}")
        return to_checksum_address(value)

    @model_validator(mode="after")
    def _check_backend(self) -> "MinterConfig":
        if self.signer_backend == SignerBackend.REMOTE and not self.remote_signer_url:
            raise ValueError("remote signer backend requires remote_signer_url")
        if bool(self.master_key_reference) != bool(self.master_address):
            raise ValueError("master_key_reference and master_address must be set together")
        return self

    @property
    def funding_enabled(self) -> bool:
        """Whether a master wallet is configured for top-ups."""
        return self.master_key_reference is not None


def load_config(**overrides: Any) -> MinterConfig:
    """
    Build the configuration from the environment, applying explicit overrides.

    Called once by the process entry point; the result is passed down.
    """
    return MinterConfig(**overrides)
