# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Payment verification.

`Verifier.verify` runs, short-circuiting on the first failure:
  1. header decode
  2. static inspection of an embedded pre-signed transaction
  3-9. the configured VerificationStrategy (version, scheme, network,
       addresses, recipient/value match, nonce format, time window)
  10. nonce replay, recorded only when everything before it passed

Failures are returned as VerifyResult values carrying an ErrorCodes token.
"""
from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from x402_guard.types import (
    SCHEME_EXACT,
    X402_VERSION,
    PaymentAuthorization,
    PaymentHeaderError,
    PaymentRequirements,
    VerifyResult,
    decode_payment_header,
)

from .errors import ErrorCodes
from .ledger import SYSTEM_PROGRAM_ID, Ledger
from .store import TTLStore

logger = logging.getLogger(__name__)

NONCE_TTL_S = 5 * 60
NONCE_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")

# System Program Transfer: u32 LE tag, u64 LE lamports
_SYSTEM_TRANSFER_TAG = 2
_SYSTEM_TRANSFER_LEN = 12


def _authorization(decoded: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    payload = decoded.get("payload")
    if not isinstance(payload, dict):
        return None
    auth = payload.get("authorization")
    return auth if isinstance(auth, dict) else None


def _unix_seconds(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def inspect_presigned(ledger: Ledger, decoded: Dict[str, Any], requirements: PaymentRequirements) -> Optional[str]:
    """Reason token for a bad embedded transaction, None when absent or acceptable.

    Runs at verify time and again before the facilitator co-signs. The fee
    payer may only appear as the fee payer, never in an instruction's
    accounts. Beyond that, only a leading System Program transfer is
    checked; other programs are left for the ledger to enforce.
    """
    payload = decoded.get("payload")
    tx_b64 = payload.get("transaction") if isinstance(payload, dict) else None
    if not tx_b64:
        return None
    if not isinstance(tx_b64, str):
        return ErrorCodes.TRANSACTION_PARSE_FAILED
    try:
        summary = ledger.inspect_transaction(tx_b64)
    except Exception as e:
        logger.warning(f"Embedded transaction could not be parsed: {e}")
        return ErrorCodes.TRANSACTION_PARSE_FAILED

    payer = (_authorization(decoded) or {}).get("from")
    if not payer or not isinstance(payer, str):
        return ErrorCodes.MISSING_AUTHORIZATION_FROM
    try:
        payer = ledger.parse_address(payer)
    except ValueError:
        return ErrorCodes.INVALID_ADDRESS_FORMAT
    if payer not in summary.signers:
        return ErrorCodes.PAYER_NOT_SIGNED

    if not summary.instructions:
        return ErrorCodes.MISSING_INSTRUCTION
    if any(ledger.fee_payer in ix.accounts for ix in summary.instructions):
        logger.warning(f"Embedded transaction references fee payer {ledger.fee_payer} in an instruction")
        return ErrorCodes.FEE_PAYER_IN_INSTRUCTION
    ix = summary.instructions[0]
    if ix.program_id != SYSTEM_PROGRAM_ID:
        return None
    if len(ix.data) < _SYSTEM_TRANSFER_LEN:
        return ErrorCodes.INVALID_INSTRUCTION_DATA
    if int.from_bytes(ix.data[0:4], "little") != _SYSTEM_TRANSFER_TAG:
        return ErrorCodes.UNEXPECTED_SYSTEM_IX
    lamports = int.from_bytes(ix.data[4:12], "little")
    try:
        required = int(requirements.max_amount_required)
    except ValueError:
        return ErrorCodes.INVALID_AMOUNT
    if lamports != required:
        return ErrorCodes.INVALID_AMOUNT
    if len(ix.accounts) < 2 or ix.accounts[1] != requirements.pay_to:
        return ErrorCodes.INVALID_RECIPIENT
    return None


class VerificationStrategy(ABC):
    name = "base"

    @abstractmethod
    async def check(
        self,
        payment_header: str,
        decoded: Dict[str, Any],
        requirements: PaymentRequirements,
        now: int,
    ) -> VerifyResult:
        """Protocol rule checks (everything except decoding and nonce replay)."""


class LocalVerification(VerificationStrategy):
    name = "local"

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    async def check(
        self,
        payment_header: str,
        decoded: Dict[str, Any],
        requirements: PaymentRequirements,
        now: int,
    ) -> VerifyResult:
        version = decoded.get("x402Version")
        if isinstance(version, bool) or version != X402_VERSION:
            return VerifyResult.invalid(ErrorCodes.INVALID_X402_VERSION)
        if decoded.get("scheme") != SCHEME_EXACT:
            return VerifyResult.invalid(ErrorCodes.INVALID_SCHEME)
        if decoded.get("network") != requirements.network:
            return VerifyResult.invalid(ErrorCodes.INVALID_NETWORK)

        raw_auth = _authorization(decoded)
        if raw_auth is None:
            return VerifyResult.invalid(ErrorCodes.INVALID_PAYLOAD)
        try:
            auth = PaymentAuthorization.model_validate(raw_auth)
        except ValidationError:
            return VerifyResult.invalid(ErrorCodes.INVALID_PAYLOAD)

        try:
            self.ledger.parse_address(auth.from_)
            self.ledger.parse_address(auth.to)
            self.ledger.parse_address(requirements.pay_to)
        except ValueError:
            return VerifyResult.invalid(ErrorCodes.INVALID_ADDRESS_FORMAT)

        # Exact string comparison; "01" and "1" are different amounts.
        if auth.to != requirements.pay_to:
            return VerifyResult.invalid(ErrorCodes.RECIPIENT_MISMATCH)
        if auth.value != requirements.max_amount_required:
            return VerifyResult.invalid(ErrorCodes.VALUE_MISMATCH)

        if not NONCE_PATTERN.match(auth.nonce):
            return VerifyResult.invalid(ErrorCodes.INVALID_NONCE_FORMAT)

        valid_after = _unix_seconds(auth.valid_after)
        if valid_after is None or valid_after > now:
            return VerifyResult.invalid(ErrorCodes.NOT_YET_VALID)
        valid_before = _unix_seconds(auth.valid_before)
        if valid_before is None or valid_before < now:
            return VerifyResult.invalid(ErrorCodes.EXPIRED)
        return VerifyResult.valid()


class StrictVerification(VerificationStrategy):
    """Delegates rule checks to a reference facilitator's `/verify`.

    When the reference is unreachable or answers with anything but a 200 JSON
    verdict, the local rules run instead and a warning is logged.
    """

    name = "strict"

    def __init__(
        self,
        url: str,
        fallback: LocalVerification,
        *,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.verify_url = f"{url.rstrip('/')}/verify"
        self.fallback = fallback
        self.timeout_s = timeout_s
        self.transport = transport

    async def check(
        self,
        payment_header: str,
        decoded: Dict[str, Any],
        requirements: PaymentRequirements,
        now: int,
    ) -> VerifyResult:
        body = {
            "x402Version": X402_VERSION,
            "paymentHeader": payment_header,
            "paymentPayload": decoded,
            "paymentRequirements": requirements.model_dump(by_alias=True),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                r = await client.post(self.verify_url, json=body)
            if r.status_code != 200:
                raise ValueError(f"status {r.status_code}")
            verdict = VerifyResult.model_validate(r.json())
        except (httpx.HTTPError, ValueError) as e:
            # ValidationError is a ValueError; covers non-JSON and wrong-shape bodies too.
            logger.warning(
                f"Strict verifier {self.verify_url} unavailable ({e}); falling back to local verification"
            )
            return await self.fallback.check(payment_header, decoded, requirements, now)
        if not verdict.is_valid and not verdict.invalid_reason:
            return VerifyResult.invalid(ErrorCodes.INVALID_PAYLOAD)
        return verdict


class Verifier:
    def __init__(
        self,
        ledger: Ledger,
        nonce_store: TTLStore,
        strategy: Optional[VerificationStrategy] = None,
        *,
        disable_nonce_replay: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.nonce_store = nonce_store
        self.strategy = strategy or LocalVerification(ledger)
        self.disable_nonce_replay = disable_nonce_replay
        self._clock = clock

    async def verify(self, payment_header: str, requirements: PaymentRequirements) -> VerifyResult:
        try:
            decoded = decode_payment_header(payment_header)
        except PaymentHeaderError as e:
            logger.info(f"Payment header rejected: {e}")
            return VerifyResult.invalid(ErrorCodes.INVALID_PAYLOAD)

        reason = self.inspect_presigned(decoded, requirements)
        if reason:
            return VerifyResult.invalid(reason)

        now = int(self._clock())
        result = await self.strategy.check(payment_header, decoded, requirements, now)
        if not result.is_valid:
            return result

        if not self.disable_nonce_replay:
            nonce = (_authorization(decoded) or {}).get("nonce")
            if not isinstance(nonce, str):
                return VerifyResult.invalid(ErrorCodes.INVALID_NONCE_FORMAT)
            if not await self.nonce_store.add(nonce, NONCE_TTL_S):
                return VerifyResult.invalid(ErrorCodes.NONCE_REPLAY)
        return VerifyResult.valid()

    def inspect_presigned(self, decoded: Dict[str, Any], requirements: PaymentRequirements) -> Optional[str]:
        return inspect_presigned(self.ledger, decoded, requirements)
