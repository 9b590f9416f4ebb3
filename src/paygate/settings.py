"""Gateway settings.

All settings are read from environment variables (or a ``.env`` file) using
the same unprefixed names the payment providers' documentation uses, e.g.
``NOWPAYMENTS_IPN_SECRET`` or ``COINBASE_COMMERCE_WEBHOOK_SECRET``. Secrets are
read once at startup and never mutated afterwards.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from paygate import __version__
from paygate.webhooks.signatures import Provider


class Settings(BaseSettings):
    """Process-wide configuration for the gateway."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    server_name: str = "paygate"
    server_version: str = __version__
    rpc_path: str = "/mcp"

    tool_timeout_seconds: float = Field(default=60.0, gt=0)
    """Upper bound for a single tool invocation, remote calls included."""

    # Webhook policy
    webhook_allow_unverified: bool = False
    """Accept (and log) deliveries for providers whose secret is not configured."""

    min_confirmations: int = Field(default=6, ge=0)

    # NowPayments
    nowpayments_api_key: str | None = None
    nowpayments_ipn_secret: str | None = None
    nowpayments_sandbox: bool = False

    # CoinPayments
    coinpayments_public_key: str | None = None
    coinpayments_private_key: str | None = None
    coinpayments_ipn_secret: str | None = None
    coinpayments_merchant_id: str | None = None

    # Coinbase Commerce
    coinbase_commerce_api_key: str | None = None
    coinbase_commerce_webhook_secret: str | None = None

    # Direct on-chain payment notifier
    direct_crypto_webhook_secret: str | None = None

    # Comput3
    comput3_api_key: str | None = None
    comput3_base_url: str = "https://api.comput3.ai/v1"
    comput3_max_wait_seconds: float = Field(default=300.0, gt=0)
    comput3_poll_interval_seconds: float = Field(default=2.0, gt=0)

    @field_validator(
        "nowpayments_api_key",
        "nowpayments_ipn_secret",
        "coinpayments_public_key",
        "coinpayments_private_key",
        "coinpayments_ipn_secret",
        "coinpayments_merchant_id",
        "coinbase_commerce_api_key",
        "coinbase_commerce_webhook_secret",
        "direct_crypto_webhook_secret",
        "comput3_api_key",
        mode="before",
    )
    @classmethod
    def _blank_is_unset(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def webhook_secret(self, provider: Provider) -> str | None:
        """Return the shared signing secret for *provider*, or None when unconfigured."""
        match provider:
            case Provider.COINPAYMENTS:
                return self.coinpayments_ipn_secret
            case Provider.NOWPAYMENTS:
                return self.nowpayments_ipn_secret
            case Provider.COINBASE_COMMERCE:
                return self.coinbase_commerce_webhook_secret
            case Provider.DIRECT_CRYPTO:
                return self.direct_crypto_webhook_secret
