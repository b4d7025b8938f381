"""Central environment-driven settings for the BGPay gateway.

The process loads this once at startup. Secrets have no defaults and must be
provided through the environment (see `.env.example`).
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_codes(value: str) -> frozenset[str]:
    return frozenset(code.strip().upper() for code in value.split(",") if code.strip())


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "bgpay-gateway"
    log_level: str = "INFO"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    # External processor (NOWPayments-compatible API).
    processor_url: str = "https://api.nowpayments.io/v1"
    processor_api_key: str
    processor_timeout_seconds: float = 10.0
    processor_total_timeout_seconds: float = 30.0
    processor_max_retries: int = 3
    processor_backoff_base_seconds: float = 1.0

    # Inbound webhook trust + brand secrets.
    webhook_secret: str
    webhook_signature_algorithm: str = "sha512"
    brand_signing_secret: str
    platform_url: str = "http://localhost:8000"

    rate_limit_backend: str = "redis"
    rate_limit_window_seconds: float = 60.0
    rate_limit_max: int = 100
    trust_forwarded_for: bool = False

    payment_ttl_minutes: int = 60
    supported_fiat_currencies: str = "USD,EUR,GBP,CAD,AUD,CHF,JPY"
    supported_pay_currencies: str = "BTC,ETH,LTC,USDT,USDC,TRX,SOL,BNB,DOGE,XMR"

    notification_timeout_seconds: float = 30.0
    notification_max_attempts: int = 5
    notification_backoff_base_seconds: float = 30.0
    notification_poll_interval_seconds: float = 1.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("platform_url", "processor_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def fiat_currencies(self) -> frozenset[str]:
        return _split_codes(self.supported_fiat_currencies)

    @property
    def pay_currencies(self) -> frozenset[str]:
        return _split_codes(self.supported_pay_currencies)


settings = CommonSettings()
