# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""ASGI middleware that puts routes behind an x402 payment.

For a guarded `METHOD path` the request must carry X-PAYMENT. The header is
verified then settled through the facilitator before the wrapped app runs;
the settlement receipt is added to the response start message so it is
present no matter how the handler streams its body.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from fastapi.responses import JSONResponse

from .facilitator_client import FacilitatorClient
from .types import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    X402_VERSION,
    PaymentRequirements,
    SettleResult,
    encode_settlement,
)

logger = logging.getLogger(__name__)

HEADER_REQUIRED = "X-PAYMENT header is required"
PAYMENT_INVALID = "payment_invalid"
PAYMENT_VERIFICATION_FAILED = "payment_verification_failed"
PAYMENT_SETTLEMENT_FAILED = "payment_settlement_failed"
INTERNAL_ERROR = "internal_error"

_TRANSPORT_ERRORS = (httpx.HTTPError, ValueError)


def route_key(method: str, path: str) -> str:
    return f"{method.upper()} {path}"


def build_catalog(routes: Mapping[str, PaymentRequirements]) -> Dict[str, Any]:
    return {
        "x402Version": X402_VERSION,
        "accepts": [
            {"route": route, "requirements": req.model_dump(by_alias=True)} for route, req in routes.items()
        ],
    }


def _header(scope: Dict[str, Any], name: str) -> Optional[str]:
    target = name.lower().encode("latin-1")
    for key, value in scope.get("headers") or []:
        if key.lower() == target:
            return value.decode("latin-1")
    return None


class PaymentGuard:
    def __init__(
        self,
        app: Any,
        *,
        routes: Mapping[str, PaymentRequirements],
        facilitator: FacilitatorClient,
    ):
        self.app = app
        self.routes = dict(routes)
        self.facilitator = facilitator

    def catalog(self) -> Dict[str, Any]:
        return build_catalog(self.routes)

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        requirements = self.routes.get(route_key(scope["method"], scope["path"]))
        if requirements is None:
            await self.app(scope, receive, send)
            return

        accepts = [requirements.model_dump(by_alias=True)]
        payment = _header(scope, PAYMENT_HEADER)
        if not payment:
            body = {"x402Version": X402_VERSION, "error": HEADER_REQUIRED, "accepts": accepts}
            await JSONResponse(status_code=402, content=body)(scope, receive, send)
            return

        try:
            denial, receipt = await self._authorize(payment, requirements)
        except Exception:
            logger.exception(f"Payment guard failed for {requirements.resource}")
            await JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})(scope, receive, send)
            return
        if denial is not None:
            body = {"x402Version": X402_VERSION, **denial, "accepts": accepts}
            await JSONResponse(status_code=402, content=body)(scope, receive, send)
            return

        receipt_header = (PAYMENT_RESPONSE_HEADER.encode("latin-1"), encode_settlement(receipt).encode("latin-1"))

        async def send_with_receipt(message: Dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                message = {**message, "headers": [*message.get("headers", []), receipt_header]}
            await send(message)

        await self.app(scope, receive, send_with_receipt)

    async def _authorize(
        self, payment: str, requirements: PaymentRequirements
    ) -> Tuple[Optional[Dict[str, Any]], Optional[SettleResult]]:
        """(denial body, None) when payment is refused, (None, receipt) when settled."""
        try:
            verdict = await self.facilitator.verify(payment, requirements)
        except _TRANSPORT_ERRORS as e:
            logger.warning(f"Facilitator verify failed for {requirements.resource}: {e}")
            return {"error": PAYMENT_VERIFICATION_FAILED, "reason": INTERNAL_ERROR}, None
        if not verdict.is_valid:
            logger.info(f"Payment rejected for {requirements.resource}: {verdict.invalid_reason}")
            return {"error": PAYMENT_INVALID, "reason": verdict.invalid_reason}, None

        try:
            receipt = await self.facilitator.settle(payment, requirements)
        except _TRANSPORT_ERRORS as e:
            logger.warning(f"Facilitator settle failed for {requirements.resource}: {e}")
            return {"error": PAYMENT_SETTLEMENT_FAILED, "reason": INTERNAL_ERROR}, None
        if not receipt.success:
            logger.warning(f"Settlement failed for {requirements.resource}: {receipt.error}")
            return {"error": PAYMENT_SETTLEMENT_FAILED, "reason": receipt.error or "unknown_error"}, None
        logger.info(f"Payment settled for {requirements.resource} tx={receipt.tx_hash}")
        return None, receipt
