# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Sample pay-per-call resource server.

`GET /api/data` costs one atomic unit of `USDC_MINT`, paid to `PAY_TO_PUBKEY`
and settled through the facilitator at `FACILITATOR_URL`.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx
from fastapi import FastAPI
from pydantic import BaseModel, Field, ValidationError, field_validator

from .facilitator_client import FacilitatorClient
from .guard import PaymentGuard, build_catalog, route_key
from .types import SCHEME_EXACT, PaymentRequirements

logger = logging.getLogger(__name__)


class ProviderConfigError(Exception):
    def __init__(self, message: str, missing_vars: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_vars = missing_vars or []


class ProviderConfig(BaseModel):
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "8080")))
    pay_to_pubkey: str = Field(default_factory=lambda: os.getenv("PAY_TO_PUBKEY", ""))
    usdc_mint: str = Field(default_factory=lambda: os.getenv("USDC_MINT", ""))
    facilitator_url: str = Field(default_factory=lambda: os.getenv("FACILITATOR_URL", "http://localhost:8787"))
    facilitator_api_key: Optional[str] = Field(default_factory=lambda: os.getenv("FACILITATOR_API_KEY") or None)
    network: str = Field(default_factory=lambda: os.getenv("X402_NETWORK", "solana-devnet"))
    timeout_s: float = Field(default_factory=lambda: float(os.getenv("FACILITATOR_TIMEOUT_S", "30")))

    @field_validator("pay_to_pubkey", "usdc_mint")
    @classmethod
    def _required(cls, v: str) -> str:
        if not v:
            raise ValueError("is required")
        return v


def load_provider_config() -> ProviderConfig:
    try:
        return ProviderConfig()
    except ValidationError as e:
        names = [str(err["loc"][0]).upper() for err in e.errors() if err["loc"]]
        raise ProviderConfigError(
            f"Missing or invalid environment variables: {', '.join(names)}. "
            "Set them in your .env file or environment.",
            missing_vars=names,
        ) from e


@dataclass
class PricedRoute:
    method: str
    path: str
    amount_atomic: str
    description: str


PRICED_ROUTES = [
    PricedRoute("GET", "/api/data", "1", "Sample data API (pay-per-call)"),
]


def build_requirements(cfg: ProviderConfig, routes: List[PricedRoute] = PRICED_ROUTES) -> Dict[str, PaymentRequirements]:
    out: Dict[str, PaymentRequirements] = {}
    for r in routes:
        key = route_key(r.method, r.path)
        out[key] = PaymentRequirements(
            scheme=SCHEME_EXACT,
            network=cfg.network,
            max_amount_required=r.amount_atomic,
            resource=key,
            description=r.description,
            mime_type="application/json",
            output_schema=None,
            pay_to=cfg.pay_to_pubkey,
            max_timeout_seconds=60,
            asset=cfg.usdc_mint,
            extra={"name": "USDC", "version": "2"},
        )
    return out


def create_provider_app(
    cfg: Optional[ProviderConfig] = None,
    *,
    facilitator_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    cfg = cfg or load_provider_config()
    requirements = build_requirements(cfg)
    facilitator = FacilitatorClient(
        cfg.facilitator_url,
        api_key=cfg.facilitator_api_key,
        timeout_s=cfg.timeout_s,
        transport=facilitator_transport,
    )

    app = FastAPI(title="x402 Provider API", description="Pay-per-call sample API", version="0.1.0")
    app.add_middleware(PaymentGuard, routes=requirements, facilitator=facilitator)

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    @app.get("/.well-known/x402")
    async def well_known() -> dict:
        return build_catalog(requirements)

    @app.get("/api/data")
    async def data() -> dict:
        return {
            "data": {
                "message": "Hello from the x402 provider",
                "ts": datetime.now(timezone.utc).isoformat(),
            }
        }

    logger.info(f"Provider app initialized payTo={cfg.pay_to_pubkey} facilitator={cfg.facilitator_url}")
    return app
