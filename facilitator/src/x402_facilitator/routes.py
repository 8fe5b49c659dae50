# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from x402_guard.types import SCHEME_EXACT, X402_VERSION, PaymentRequirements

from .config import FacilitatorConfig
from .errors import ErrorCodes
from .funding import FundingManager
from .ledger import Ledger
from .middleware import request_id
from .settler import Settler
from .store import TTLStore
from .verifier import Verifier

logger = logging.getLogger(__name__)


class FacilitatorRequest(BaseModel):
    x402Version: int = Field(..., gt=0)
    paymentHeader: str = Field(..., min_length=1)
    paymentRequirements: PaymentRequirements


@dataclass
class Facilitator:
    """Everything a request handler needs; built once per app."""

    config: FacilitatorConfig
    ledger: Ledger
    verifier: Verifier
    settler: Settler
    funding: FundingManager
    nonce_store: TTLStore
    idempotency_store: TTLStore

    async def close(self) -> None:
        await self.nonce_store.close()
        await self.idempotency_store.close()
        await self.ledger.close()


def get_facilitator() -> Facilitator:
    # Replaced through app.dependency_overrides by create_app().
    raise RuntimeError("facilitator not configured")


router = APIRouter(tags=["x402-facilitator"])


async def _parse_request(request: Request, req_id: str) -> Optional[FacilitatorRequest]:
    try:
        raw = await request.json()
        return FacilitatorRequest.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"[{req_id}] {request.url.path} request validation failed: {e.errors()}")
        return None
    except ValueError as e:
        logger.warning(f"[{req_id}] {request.url.path} body is not JSON: {e}")
        return None


@router.post("/verify")
async def verify(request: Request, fac: Facilitator = Depends(get_facilitator)):
    req_id = request_id(request)
    body = await _parse_request(request, req_id)
    if body is None:
        return JSONResponse(status_code=400, content={"isValid": False, "invalidReason": ErrorCodes.BAD_REQUEST})

    result = await fac.verifier.verify(body.paymentHeader, body.paymentRequirements)
    if result.is_valid:
        logger.info(f"[{req_id}] verify ok resource={body.paymentRequirements.resource}")
    else:
        logger.info(f"[{req_id}] verify rejected: {result.invalid_reason}")
    return result.model_dump(by_alias=True)


def _settle_failure_body(fac: Facilitator, error: str, payer: Optional[str]) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": False,
        "error": error,
        "txHash": None,
        "networkId": fac.config.x402_network,
        "payer": payer,
    }
    if error == ErrorCodes.INSUFFICIENT_FUNDS and not fac.config.is_production:
        fee_payer = fac.ledger.fee_payer
        body["feePayer"] = fee_payer
        body["help"] = (
            f"Fund the fee payer manually: https://faucet.solana.com/ or run: "
            f"solana airdrop 2 {fee_payer} --url {fac.config.network}"
        )
    return body


@router.post("/settle")
async def settle(request: Request, fac: Facilitator = Depends(get_facilitator)):
    req_id = request_id(request)
    body = await _parse_request(request, req_id)
    if body is None:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": ErrorCodes.BAD_REQUEST,
                "txHash": None,
                "networkId": fac.config.x402_network,
            },
        )

    result = await fac.settler.settle(body.paymentHeader, body.paymentRequirements)
    if not result.success:
        logger.warning(f"[{req_id}] settle failed: {result.error}")
        return JSONResponse(status_code=500, content=_settle_failure_body(fac, result.error or ErrorCodes.UNKNOWN_ERROR, result.payer))
    logger.info(f"[{req_id}] settle ok tx={result.tx_hash}")
    return result.model_dump(by_alias=True)


@router.get("/health")
async def health(request: Request, fac: Facilitator = Depends(get_facilitator)) -> Dict[str, Any]:
    try:
        rpc = await fac.ledger.version()
    except Exception as e:
        logger.warning(f"[{request_id(request)}] health: ledger unreachable: {e}")
        return {"ok": False, "time": datetime.now(timezone.utc).isoformat()}
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "rpc": rpc,
        "feePayer": fac.ledger.fee_payer,
        "network": fac.config.x402_network,
        "settlementMode": fac.config.settlement_mode,
        "verificationStrategy": fac.verifier.strategy.name,
    }


@router.get("/supported")
async def supported(fac: Facilitator = Depends(get_facilitator)) -> Dict[str, Any]:
    return {
        "kinds": [
            {
                "x402Version": X402_VERSION,
                "scheme": SCHEME_EXACT,
                "network": fac.config.x402_network,
                "extra": {"feePayer": fac.ledger.fee_payer},
            }
        ]
    }
