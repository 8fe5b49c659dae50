# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Facilitator runtime configuration.

Values default from the process environment (load `.env` before import when
running standalone). `load_config()` is the only entry point that validates;
it raises ConfigurationError so runners can exit cleanly.
"""
from __future__ import annotations

import logging
import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CLUSTER_URLS = {
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class FacilitatorConfig(BaseModel):
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "8787")))
    network: Literal["devnet", "testnet", "mainnet-beta"] = Field(
        default_factory=lambda: os.getenv("NETWORK", "devnet")
    )
    rpc_url: Optional[str] = Field(default_factory=lambda: os.getenv("RPC_URL") or None)
    fee_payer_secret: str = Field(default_factory=lambda: os.getenv("FEE_PAYER_SECRET", ""))
    auth_token: str = Field(default_factory=lambda: os.getenv("AUTH_TOKEN", ""))
    settlement_mode: Literal["native", "spl"] = Field(
        default_factory=lambda: os.getenv("SETTLEMENT_MODE", "native")
    )
    verification_strategy: Literal["local", "strict"] = Field(
        default_factory=lambda: os.getenv("VERIFICATION_STRATEGY", "local")
    )
    strict_verifier_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("STRICT_VERIFIER_URL") or None
    )
    disable_rate_limit: bool = Field(default_factory=lambda: _env_flag("DISABLE_RATE_LIMIT"))
    rate_limit_min_interval_ms: int = Field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_MIN_INTERVAL_MS", "250"))
    )
    disable_nonce_replay: bool = Field(default_factory=lambda: _env_flag("DISABLE_NONCE_REPLAY"))
    # Authorization-only settlement: the facilitator pays from its own account.
    # Non-production behaviour, off unless explicitly enabled.
    demo_mode: bool = Field(default_factory=lambda: _env_flag("DEMO_MODE"))
    redis_url: Optional[str] = Field(default_factory=lambda: os.getenv("REDIS_URL") or None)
    store_dir: str = Field(default_factory=lambda: os.getenv("STORE_DIR", "data"))
    settle_confirm_timeout_s: float = Field(
        default_factory=lambda: float(os.getenv("SETTLE_CONFIRM_TIMEOUT_S", "30"))
    )
    timeout_s: float = Field(default_factory=lambda: float(os.getenv("FACILITATOR_TIMEOUT_S", "15")))

    @model_validator(mode="after")
    def _check_strategy(self) -> "FacilitatorConfig":
        if self.verification_strategy == "strict" and not self.strict_verifier_url:
            raise ValueError("STRICT_VERIFIER_URL is required when VERIFICATION_STRATEGY=strict")
        return self

    @property
    def resolved_rpc_url(self) -> str:
        return self.rpc_url or CLUSTER_URLS[self.network]

    @property
    def x402_network(self) -> str:
        """Network identifier as it appears in payment requirements."""
        if self.network == "mainnet-beta":
            return "solana"
        return f"solana-{self.network}"

    @property
    def is_production(self) -> bool:
        return self.network == "mainnet-beta"

    @property
    def auto_funding_enabled(self) -> bool:
        return not self.fee_payer_secret and not self.is_production


def load_config() -> FacilitatorConfig:
    try:
        cfg = FacilitatorConfig()
    except ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) or "config" for err in e.errors()]
        raise ConfigurationError(f"Invalid facilitator configuration: {e}", missing_vars=fields) from e
    except ValueError as e:
        raise ConfigurationError(f"Invalid facilitator configuration: {e}") from e
    if cfg.demo_mode and cfg.is_production:
        logger.warning("DEMO_MODE is enabled on mainnet-beta; authorization-only payments settle from the fee payer")
    return cfg
