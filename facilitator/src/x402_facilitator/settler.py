# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Idempotent settlement.

The idempotency key is sha256 of the exact payment header. A header that
already settled returns txHash "duplicate" without touching the ledger.

Before submitting, the key is claimed in the idempotency store with a
short-lived "pending" marker (`SET NX` on Redis), so replicas sharing the
store submit a given header at most once. Success replaces the marker
with a ten-minute "settled" record; failure releases it. Submissions are
never retried here; a caller that times out may resend the same header
safely.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any, Dict, Optional, Union

from x402_guard.types import (
    PaymentHeaderError,
    PaymentRequirements,
    SettleResult,
    decode_payment_header,
)

from .errors import ErrorCodes, PaymentError, SettlementError, classify_settlement_error
from .funding import DEFAULT_TARGET_LAMPORTS, FundingManager
from .ledger import LAMPORTS_PER_SOL, Ledger
from .store import TTLStore
from .verifier import inspect_presigned

logger = logging.getLogger(__name__)

FEE_ESTIMATE_LAMPORTS = 5000
IDEMPOTENCY_TTL_S = 10 * 60
PENDING_TTL_S = 2 * 60
SETTLED = "settled"
PENDING = "pending"
DUPLICATE_TX_HASH = "duplicate"
# Top-up size when only fees are needed.
FEE_ONLY_FUNDING_TARGET = LAMPORTS_PER_SOL // 10


def idempotency_key(payment_header: str) -> str:
    return sha256(payment_header.encode("utf-8")).hexdigest()


def _atomic_amount(requirements: PaymentRequirements) -> int:
    try:
        amount = int(requirements.max_amount_required)
    except ValueError:
        raise SettlementError(ErrorCodes.INVALID_AMOUNT, "maxAmountRequired is not an integer")
    if amount < 0:
        raise SettlementError(ErrorCodes.INVALID_AMOUNT, "maxAmountRequired is negative")
    return amount


@dataclass(frozen=True)
class PresignedTransfer:
    """Client-built transaction; the facilitator only co-signs as fee payer."""

    transaction: str
    payer: Optional[str]

    def required_balance(self, requirements: PaymentRequirements) -> int:
        return FEE_ESTIMATE_LAMPORTS

    def funding_target(self) -> int:
        return FEE_ONLY_FUNDING_TARGET

    async def submit(self, ledger: Ledger, requirements: PaymentRequirements) -> str:
        return await ledger.submit_presigned(self.transaction)


@dataclass(frozen=True)
class NativeTransfer:
    """Authorization-only: lamports move from the fee payer to payTo."""

    payer: str

    def required_balance(self, requirements: PaymentRequirements) -> int:
        return FEE_ESTIMATE_LAMPORTS + _atomic_amount(requirements)

    def funding_target(self) -> int:
        return DEFAULT_TARGET_LAMPORTS

    async def submit(self, ledger: Ledger, requirements: PaymentRequirements) -> str:
        return await ledger.transfer_native(requirements.pay_to, _atomic_amount(requirements))


@dataclass(frozen=True)
class AssetTransfer:
    """Authorization-only: SPL units of `asset` move from the fee payer's token account."""

    payer: str

    def required_balance(self, requirements: PaymentRequirements) -> int:
        return FEE_ESTIMATE_LAMPORTS

    def funding_target(self) -> int:
        return DEFAULT_TARGET_LAMPORTS

    async def submit(self, ledger: Ledger, requirements: PaymentRequirements) -> str:
        return await ledger.transfer_asset(
            requirements.asset, requirements.pay_to, _atomic_amount(requirements)
        )


SettlementVariant = Union[PresignedTransfer, NativeTransfer, AssetTransfer]


def _payload(decoded: Dict[str, Any]) -> Dict[str, Any]:
    payload = decoded.get("payload")
    return payload if isinstance(payload, dict) else {}


def payer_of(decoded: Dict[str, Any]) -> Optional[str]:
    auth = _payload(decoded).get("authorization")
    payer = auth.get("from") if isinstance(auth, dict) else None
    return payer if isinstance(payer, str) and payer else None


def select_variant(decoded: Dict[str, Any], *, settlement_mode: str, demo_mode: bool) -> SettlementVariant:
    transaction = _payload(decoded).get("transaction")
    if transaction:
        if not isinstance(transaction, str):
            raise SettlementError(ErrorCodes.MISSING_TRANSACTION, "transaction must be a base64 string")
        return PresignedTransfer(transaction=transaction, payer=payer_of(decoded))
    if not demo_mode:
        raise SettlementError(
            ErrorCodes.MISSING_TRANSACTION,
            "authorization-only payments require DEMO_MODE",
        )
    payer = payer_of(decoded)
    if not payer:
        raise SettlementError(ErrorCodes.MISSING_PAYER_ADDRESS, "Payment authorization must include payer address")
    if settlement_mode == "spl":
        return AssetTransfer(payer=payer)
    return NativeTransfer(payer=payer)


@dataclass
class _InflightKey:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class Settler:
    def __init__(
        self,
        ledger: Ledger,
        idempotency_store: TTLStore,
        funding: Optional[FundingManager] = None,
        *,
        network_id: str,
        settlement_mode: str = "native",
        demo_mode: bool = False,
        pending_ttl_s: float = PENDING_TTL_S,
    ):
        self.ledger = ledger
        self.idempotency_store = idempotency_store
        self.funding = funding
        self.network_id = network_id
        self.settlement_mode = settlement_mode
        self.demo_mode = demo_mode
        self.pending_ttl_s = pending_ttl_s
        # Serializes identical headers within this process; dropped when the last user leaves.
        self._inflight: Dict[str, _InflightKey] = {}

    def _failed(self, code: str, payer: Optional[str] = None) -> SettleResult:
        return SettleResult(success=False, error=code, tx_hash=None, network_id=self.network_id, payer=payer)

    async def settle(self, payment_header: str, requirements: PaymentRequirements) -> SettleResult:
        try:
            decoded = decode_payment_header(payment_header)
        except PaymentHeaderError as e:
            logger.info(f"Settle rejected undecodable header: {e}")
            return self._failed(ErrorCodes.INVALID_PAYLOAD)

        key = idempotency_key(payment_header)
        slot = self._inflight.get(key)
        if slot is None:
            slot = self._inflight[key] = _InflightKey()
        slot.users += 1
        try:
            async with slot.lock:
                return await self._settle_once(key, decoded, requirements)
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._inflight[key]

    def _already_seen(self, key: str, state: Optional[str], payer: Optional[str]) -> SettleResult:
        if state is None or state == PENDING:
            logger.info(f"Settlement for key {key[:12]} is in progress elsewhere")
            return self._failed(ErrorCodes.SETTLEMENT_IN_PROGRESS, payer)
        logger.info(f"Duplicate settle for key {key[:12]}")
        return SettleResult(
            success=True, error=None, tx_hash=DUPLICATE_TX_HASH, network_id=self.network_id, payer=payer
        )

    async def _settle_once(
        self, key: str, decoded: Dict[str, Any], requirements: PaymentRequirements
    ) -> SettleResult:
        payer = payer_of(decoded)
        state = await self.idempotency_store.get(key)
        if state is not None:
            return self._already_seen(key, state, payer)

        claimed = False
        try:
            variant = select_variant(decoded, settlement_mode=self.settlement_mode, demo_mode=self.demo_mode)
            if isinstance(variant, PresignedTransfer):
                reason = inspect_presigned(self.ledger, decoded, requirements)
                if reason:
                    raise SettlementError(reason, f"Embedded transaction rejected: {reason}")
            await self._ensure_balance(variant.required_balance(requirements), variant.funding_target())
            claimed = await self.idempotency_store.add(key, self.pending_ttl_s, PENDING)
            if not claimed:
                return self._already_seen(key, await self.idempotency_store.get(key), payer)
            tx_hash = await variant.submit(self.ledger, requirements)
        except PaymentError as e:
            logger.warning(f"Settlement refused ({e.code}): {e}")
            result = self._failed(e.code, payer)
        except Exception as e:
            code = classify_settlement_error(e)
            logger.exception(f"Settlement failed ({code})")
            result = self._failed(code, payer)
        else:
            try:
                await self.idempotency_store.put(key, SETTLED, IDEMPOTENCY_TTL_S)
            except Exception:
                # The transfer landed; the pending marker still guards the key until it expires.
                logger.exception(f"Could not record settlement tx={tx_hash} for key {key[:12]}")
            logger.info(f"Settled {type(variant).__name__} tx={tx_hash} payer={payer}")
            return SettleResult(success=True, error=None, tx_hash=tx_hash, network_id=self.network_id, payer=payer)

        if claimed:
            await self.idempotency_store.discard(key)
        return result

    async def _ensure_balance(self, required: int, funding_target: int) -> None:
        address = self.ledger.fee_payer
        balance = await self.ledger.get_balance(address)
        if balance >= required:
            return
        logger.info(f"Fee payer {address} balance {balance} below required {required}")
        if self.funding is not None and await self.funding.ensure_funded(required, funding_target):
            return
        raise SettlementError(
            ErrorCodes.INSUFFICIENT_FUNDS,
            f"Insufficient balance: need {required} lamports, have {balance}. Fee payer: {address}",
        )
