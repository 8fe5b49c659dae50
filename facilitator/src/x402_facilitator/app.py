# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from .config import FacilitatorConfig, load_config
from .funding import FundingManager
from .ledger import Ledger, SolanaLedger
from .middleware import AccessControl, RateLimiter
from .routes import Facilitator, get_facilitator, router
from .settler import FEE_ESTIMATE_LAMPORTS, Settler
from .store import TTLStore, create_store
from .verifier import LocalVerification, StrictVerification, VerificationStrategy, Verifier

logger = logging.getLogger(__name__)


def build_facilitator(
    cfg: FacilitatorConfig,
    *,
    ledger: Optional[Ledger] = None,
    nonce_store: Optional[TTLStore] = None,
    idempotency_store: Optional[TTLStore] = None,
    funding: Optional[FundingManager] = None,
    strict_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Facilitator:
    if ledger is None:
        ledger = SolanaLedger.from_secret(
            cfg.resolved_rpc_url,
            cfg.fee_payer_secret,
            confirm_timeout_s=cfg.settle_confirm_timeout_s,
        )
        if not cfg.fee_payer_secret:
            logger.warning(f"FEE_PAYER_SECRET not set; using generated fee payer {ledger.fee_payer}")
    nonce_store = nonce_store or create_store("nonces", redis_url=cfg.redis_url, directory=cfg.store_dir)
    idempotency_store = idempotency_store or create_store(
        "settlements", redis_url=cfg.redis_url, directory=cfg.store_dir
    )
    funding = funding or FundingManager(ledger, enabled=cfg.auto_funding_enabled)

    local = LocalVerification(ledger)
    strategy: VerificationStrategy = local
    if cfg.verification_strategy == "strict" and cfg.strict_verifier_url:
        strategy = StrictVerification(
            cfg.strict_verifier_url, local, timeout_s=cfg.timeout_s, transport=strict_transport
        )

    verifier = Verifier(
        ledger,
        nonce_store,
        strategy,
        disable_nonce_replay=cfg.disable_nonce_replay,
    )
    settler = Settler(
        ledger,
        idempotency_store,
        funding,
        network_id=cfg.x402_network,
        settlement_mode=cfg.settlement_mode,
        demo_mode=cfg.demo_mode,
        pending_ttl_s=cfg.settle_confirm_timeout_s + 2 * cfg.timeout_s,
    )
    return Facilitator(
        config=cfg,
        ledger=ledger,
        verifier=verifier,
        settler=settler,
        funding=funding,
        nonce_store=nonce_store,
        idempotency_store=idempotency_store,
    )


def create_app(cfg: Optional[FacilitatorConfig] = None, facilitator: Optional[Facilitator] = None) -> FastAPI:
    cfg = cfg or (facilitator.config if facilitator else load_config())
    fac = facilitator or build_facilitator(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if fac.funding.enabled:
            task = asyncio.create_task(fac.funding.startup_check(FEE_ESTIMATE_LAMPORTS))
        try:
            yield
        finally:
            if task is not None and not task.done():
                task.cancel()
            await fac.close()

    app = FastAPI(
        title="x402 Facilitator",
        description="Verifies and settles x402 payments on Solana",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.dependency_overrides[get_facilitator] = lambda: fac

    rate_limiter = None if cfg.disable_rate_limit else RateLimiter(cfg.rate_limit_min_interval_ms)
    app.middleware("http")(AccessControl(cfg.auth_token, rate_limiter))
    app.include_router(router)

    logger.info(
        f"Facilitator app initialized network={cfg.x402_network} fee_payer={fac.ledger.fee_payer} "
        f"strategy={fac.verifier.strategy.name} demo_mode={cfg.demo_mode}"
    )
    return app
