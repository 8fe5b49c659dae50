# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from .types import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    SCHEME_EXACT,
    X402_VERSION,
    ExactPaymentPayload,
    PaymentAuthorization,
    PaymentPayload,
    PaymentRequirements,
    SettleResult,
    decode_settlement,
    encode_payment_header,
)

logger = logging.getLogger(__name__)

UNSIGNED_SIGNATURE = "demo-signature"
CLOCK_SKEW_S = 5


def _now() -> int:
    return int(time.time())


def new_nonce() -> str:
    return "0x" + os.urandom(32).hex()


def canonical_authorization(authorization: Dict[str, str]) -> bytes:
    return json.dumps(authorization, separators=(",", ":"), sort_keys=True).encode("utf-8")


def build_presigned_transfer(
    payer: Keypair, fee_payer: str, pay_to: str, lamports: int, recent_blockhash: str
) -> str:
    """base64 System Program transfer signed by the payer, fee payer slot left empty."""
    ix = transfer(
        TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.from_string(pay_to), lamports=int(lamports))
    )
    msg = Message.new_with_blockhash([ix], Pubkey.from_string(fee_payer), Hash.from_string(recent_blockhash))
    tx = Transaction.new_unsigned(msg)
    tx.partial_sign([payer], msg.recent_blockhash)
    return base64.b64encode(bytes(tx)).decode("ascii")


@dataclass
class BuyerConfig:
    seller_base_url: str
    payer_address: Optional[str] = None
    payer_secret: Optional[str] = None
    max_attempts: int = 4
    backoff_base_ms: int = 150


@dataclass
class PaidResponse:
    response: httpx.Response
    settlement: Optional[SettleResult]
    attempts: int

    @property
    def ok(self) -> bool:
        return self.response.is_success


class BuyerClient:
    def __init__(
        self,
        cfg: BuyerConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not cfg.seller_base_url:
            raise ValueError("seller_base_url is required")
        self.cfg = cfg
        self.http = httpx.AsyncClient(timeout=30.0, transport=transport)
        self._sleep = sleep
        self.keypair = Keypair.from_base58_string(cfg.payer_secret) if cfg.payer_secret else None
        if self.keypair is not None:
            self.address = str(self.keypair.pubkey())
        else:
            self.address = cfg.payer_address or os.getenv("PAYER_PUBKEY") or str(Keypair().pubkey())

    async def _first_request_402(
        self, url: str, params: Dict[str, Any]
    ) -> Tuple[httpx.Response, Optional[PaymentRequirements]]:
        r = await self.http.get(url, params=params)
        if r.status_code != 402:
            return r, None
        ctype = (r.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
        if ctype != "application/json":
            raise RuntimeError("seller preflight content-type must be application/json")
        accepts = r.json().get("accepts")
        if not accepts or not isinstance(accepts, list):
            raise RuntimeError("seller preflight missing 'accepts'")
        return r, PaymentRequirements.model_validate(accepts[0])

    def build_payment_header(self, requirements: PaymentRequirements, transaction: Optional[str] = None) -> str:
        """Fresh X-PAYMENT value; a new nonce every call."""
        now = _now()
        authorization = PaymentAuthorization(
            from_=self.address,
            to=requirements.pay_to,
            value=requirements.max_amount_required,
            valid_after=str(now - CLOCK_SKEW_S),
            valid_before=str(now + requirements.max_timeout_seconds),
            nonce=new_nonce(),
        )
        if self.keypair is not None:
            message = canonical_authorization(authorization.model_dump(by_alias=True))
            signature = str(self.keypair.sign_message(message))
        else:
            signature = UNSIGNED_SIGNATURE
        payload = PaymentPayload(
            x402_version=X402_VERSION,
            scheme=SCHEME_EXACT,
            network=requirements.network,
            payload=ExactPaymentPayload(signature=signature, authorization=authorization, transaction=transaction),
        )
        return encode_payment_header(payload)

    @staticmethod
    def _rate_limited(r: httpx.Response) -> bool:
        return r.status_code == 429 or (r.status_code == 402 and "rate_limited" in r.text)

    async def execute_paid_request(self, endpoint: str, *, params: Optional[Dict[str, Any]] = None) -> PaidResponse:
        params = params or {}
        url = f"{self.cfg.seller_base_url.rstrip('/')}{endpoint}"
        first, requirements = await self._first_request_402(url, params)
        if requirements is None:
            return PaidResponse(response=first, settlement=None, attempts=0)

        attempt = 0
        while True:
            headers = {PAYMENT_HEADER: self.build_payment_header(requirements)}
            r = await self.http.get(url, params=params, headers=headers)
            attempt += 1
            if r.is_success or not self._rate_limited(r) or attempt >= self.cfg.max_attempts:
                break
            delay_ms = self.cfg.backoff_base_ms * (2 ** (attempt - 1)) + random.randint(0, 100)
            logger.info(f"Paid request rate limited (attempt {attempt}); retrying in {delay_ms}ms")
            await self._sleep(delay_ms / 1000.0)

        receipt = r.headers.get(PAYMENT_RESPONSE_HEADER)
        settlement = decode_settlement(receipt) if receipt else None
        return PaidResponse(response=r, settlement=settlement, attempts=attempt)

    async def aclose(self) -> None:
        await self.http.aclose()
