"""
Shared configuration management for the ClawdBar access core.
"""

from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Native USDC on Polygon mainnet
USDC_CONTRACT = "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"
POLYGON_CHAIN_ID = 137


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLAWDBAR_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Record store
    store_backend: str = Field(default="memory", description="memory | postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/clawdbar")

    # Rate limiting
    bucket_backend: str = Field(default="store", description="store | redis")
    redis_url: str = Field(default="redis://localhost:6379/0")
    rate_limits_file: Optional[str] = Field(default=None)
    rate_limit_fail_open: bool = Field(default=False)

    # Credentials
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # Chain verification
    polygon_rpc_url: str = Field(default="https://polygon-rpc.com")
    chain_id: int = Field(default=POLYGON_CHAIN_ID)
    token_contract: str = Field(default=USDC_CONTRACT)
    token_decimals: int = Field(default=6)
    treasury_address: Optional[str] = Field(default=None)
    rpc_timeout_seconds: float = Field(default=10.0, gt=0)
    min_deposit: Decimal = Field(default=Decimal("1.00"))
    max_deposit: Decimal = Field(default=Decimal("1000.00"))

    # Simulated deposits, never honoured in production
    allow_test_deposits: bool = Field(default=False)

    @field_validator("treasury_address")
    @classmethod
    def _normalize_treasury(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip().lower()

    @field_validator("token_contract")
    @classmethod
    def _normalize_contract(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("token_contract must not be empty")
        return value.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("prod", "production")

    @property
    def test_deposits_enabled(self) -> bool:
        return self.allow_test_deposits and not self.is_production


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
