"""Central environment-driven settings shared by the harness and its runners.

Each run loads this once at startup. Behavior is controlled by environment
variables prefixed with `STATECHECK_` (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class HarnessSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "statecheck"
    log_level: str = "INFO"
    run_timeout_seconds: float | None = 600.0
    max_concurrency: int | None = None
    eth_rpc_url: str = "http://localhost:8545"
    confirmation_blocks: int = 1
    poll_interval_seconds: float = 1.0
    transaction_polling_timeout_seconds: float = 480.0
    default_gas: int = 4_712_388
    otel_exporter_otlp_endpoint: str = ""
    metrics_textfile: str = ""
    model_config = SettingsConfigDict(env_file=".env", env_prefix="STATECHECK_", extra="ignore")


settings = HarnessSettings()
