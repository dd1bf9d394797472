from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, field_validator

from ..crypto.credentials import decode
from ..domain.errors import ValidationError as CredentialError


class Settings(BaseModel):
    """Typed ledger settings built from environment variables."""

    database_url: str = "redis://localhost:6379/0"

    # Operator key signing vouchers and transactions (suiprivkey/mateapikey)
    operator_credential: str

    sui_rpc_url: str = "https://fullnode.testnet.sui.io:443"
    sui_network: str = "testnet"

    gas_station_url: str = "https://gas.movevm.tools/api/sponsor"
    gas_station_api_key: str = ""

    relay_timeout_seconds: float = 10.0
    execution_timeout_seconds: float = 30.0
    relay_retry_delays: list[float] = [0.0, 1.0, 2.0, 3.0, 5.0]
    lock_timeout_seconds: Optional[float] = None

    default_price: int = 100_000
    max_charge_attempts: int = 3

    app_name: str = "NanoTunnel"
    app_version: str = "1.0.0"

    @field_validator("operator_credential")
    @classmethod
    def validate_operator_credential(cls, v: str) -> str:
        if not v:
            raise ValueError("Operator credential cannot be empty")
        try:
            decode(v)
        except CredentialError as e:
            raise ValueError(f"Invalid operator credential: {e}") from e
        return v

    @field_validator("relay_retry_delays")
    @classmethod
    def validate_relay_retry_delays(cls, v: list[float]) -> list[float]:
        if not v:
            raise ValueError("At least one relay attempt is required")
        if any(d < 0 for d in v):
            raise ValueError("Relay retry delays cannot be negative")
        return v

    @field_validator("default_price", "max_charge_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v


def _optional_float(value: Optional[str]) -> Optional[float]:
    return float(value) if value else None


def get_settings() -> Settings:
    """Return typed settings instance sourced from env vars."""
    retry_delays_str = os.environ.get("NANOTUNNEL_RELAY_RETRY_DELAYS")

    return Settings(
        database_url=os.environ.get(
            "NANOTUNNEL_DATABASE_URL", "redis://localhost:6379/0"
        ),
        operator_credential=os.environ.get("NANOTUNNEL_OPERATOR_CREDENTIAL", ""),
        sui_rpc_url=os.environ.get(
            "NANOTUNNEL_SUI_RPC_URL", "https://fullnode.testnet.sui.io:443"
        ),
        sui_network=os.environ.get("NANOTUNNEL_SUI_NETWORK", "testnet"),
        gas_station_url=os.environ.get(
            "NANOTUNNEL_GAS_STATION_URL", "https://gas.movevm.tools/api/sponsor"
        ),
        gas_station_api_key=os.environ.get("NANOTUNNEL_GAS_STATION_API_KEY", ""),
        relay_timeout_seconds=float(
            os.environ.get("NANOTUNNEL_RELAY_TIMEOUT_SECONDS", "10")
        ),
        execution_timeout_seconds=float(
            os.environ.get("NANOTUNNEL_EXECUTION_TIMEOUT_SECONDS", "30")
        ),
        relay_retry_delays=[float(d) for d in retry_delays_str.split(",")]
        if retry_delays_str
        else [0.0, 1.0, 2.0, 3.0, 5.0],
        lock_timeout_seconds=_optional_float(
            os.environ.get("NANOTUNNEL_LOCK_TIMEOUT_SECONDS")
        ),
        default_price=int(os.environ.get("NANOTUNNEL_DEFAULT_PRICE", "100000")),
        max_charge_attempts=int(
            os.environ.get("NANOTUNNEL_MAX_CHARGE_ATTEMPTS", "3")
        ),
        app_name=os.environ.get("NANOTUNNEL_APP_NAME", "NanoTunnel"),
        app_version=os.environ.get("NANOTUNNEL_APP_VERSION", "1.0.0"),
    )
