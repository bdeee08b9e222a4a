"""Application configuration using pydantic-settings.

All tunables of the engine (RPC endpoints and timeouts, gas policy, receipt
polling, registration thresholds, storage) are read from environment
variables or a local ``.env`` file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/chainvault.db",
        description="Durable store for the encrypted vault and registrations",
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    eth_rpc_url: str = Field(
        default="https://eth.llamarpc.com", description="Ethereum RPC URL"
    )
    base_rpc_url: str = Field(
        default="https://mainnet.base.org", description="Base RPC URL"
    )
    avax_rpc_url: str = Field(
        default="https://api.avax.network/ext/bc/C/rpc", description="Avalanche C-Chain RPC URL"
    )

    # ======================
    # RPC Timeouts (seconds)
    # ======================
    rpc_connect_timeout: float = Field(default=5.0, description="TCP/TLS connect timeout")
    rpc_read_timeout: float = Field(default=8.0, description="Total timeout for balance/token reads")
    rpc_default_timeout: float = Field(default=10.0, description="Total timeout for contract reads")
    rpc_write_timeout: float = Field(default=12.0, description="Total timeout for gas/nonce/broadcast")

    # ======================
    # Gas Policy
    # ======================
    gas_limit_buffer_percent: int = Field(
        default=20, ge=20, le=30, description="Safety margin added to eth_estimateGas"
    )
    fee_history_blocks: int = Field(default=5, description="eth_feeHistory block window")
    fee_history_percentile: float = Field(default=50, description="Reward percentile for priority fee")
    min_priority_fee_wei: int = Field(
        default=1_500_000_000, description="Priority fee floor (1.5 gwei)"
    )
    broadcast_retries: int = Field(
        default=2, description="Re-broadcasts of the same signed tx on transport failure"
    )
    broadcast_retry_delay: float = Field(default=1.0, description="Base delay between re-broadcasts")
    nonce_lock_timeout: float = Field(default=30.0, description="Max wait for a per-account nonce lock")

    # ======================
    # Receipt Polling
    # ======================
    receipt_poll_interval: float = Field(default=2.0, description="Seconds between receipt polls")
    receipt_poll_deadline: float = Field(default=60.0, description="Give up polling after this many seconds")

    # ======================
    # Registration
    # ======================
    registration_min_balance_wei: int = Field(
        default=300_000 * 10**8,
        description="Minimum native balance before attempting a registry write",
    )
    registration_name_prefix: str = Field(
        default="member", description="Prefix for the default on-chain registration name"
    )

    # ======================
    # Key Derivation
    # ======================
    pbkdf2_iterations: int = Field(default=100_000, description="PBKDF2-HMAC-SHA256 iterations")

    # Optional explicit override of the registry contract per chain
    base_registry_address: Optional[str] = Field(default=None, description="Base identity registry")
    avax_registry_address: Optional[str] = Field(default=None, description="Avalanche identity registry")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_rpc_url(self, chain: str) -> str:
        """Get RPC URL for a chain key (``ethereum``, ``base``, ``avalanche``)."""
        rpc_map = {
            "ETHEREUM": self.eth_rpc_url,
            "ETH": self.eth_rpc_url,
            "BASE": self.base_rpc_url,
            "AVALANCHE": self.avax_rpc_url,
            "AVAX": self.avax_rpc_url,
        }
        return rpc_map.get(chain.upper(), "")

    def get_registry_override(self, chain: str) -> Optional[str]:
        """Get a configured registry address override, if any."""
        override_map = {
            "BASE": self.base_registry_address,
            "AVALANCHE": self.avax_registry_address,
        }
        return override_map.get(chain.upper())

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": self._redact_url(self.database_url),
            "chains": {
                "ethereum": {"rpc": self._redact_url(self.eth_rpc_url)},
                "base": {"rpc": self._redact_url(self.base_rpc_url)},
                "avalanche": {"rpc": self._redact_url(self.avax_rpc_url)},
            },
            "rpc_timeouts": {
                "connect": self.rpc_connect_timeout,
                "read": self.rpc_read_timeout,
                "default": self.rpc_default_timeout,
                "write": self.rpc_write_timeout,
            },
            "gas": {
                "buffer_percent": self.gas_limit_buffer_percent,
                "fee_history_blocks": self.fee_history_blocks,
                "min_priority_fee_wei": self.min_priority_fee_wei,
            },
            "receipts": {
                "interval": self.receipt_poll_interval,
                "deadline": self.receipt_poll_deadline,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials and API keys embedded in a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        # Infura/Alchemy style keys live in the last path segment
        if "/v3/" in url or "/v2/" in url:
            head, _ = url.rsplit("/", 1)
            return f"{head}/***"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
