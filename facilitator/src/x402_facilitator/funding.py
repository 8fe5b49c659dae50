# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Keeps an auto-generated fee payer funded on devnet/testnet via airdrops.

Public faucets throttle hard, so requests walk down amount tiers (full, half,
quarter of the target) with a bounded number of attempts per tier and a long
cooldown whenever the faucet answers with a rate-limit signal.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .ledger import LAMPORTS_PER_SOL, Ledger, RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_TARGET_LAMPORTS = 2 * LAMPORTS_PER_SOL
ATTEMPTS_PER_TIER = 5
RATE_LIMIT_COOLDOWN_S = 15.0
BASE_DELAY_S = 2.0
DELAY_STEP_S = 5.0
MAX_DELAY_S = 20.0

_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitedError):
        return True
    msg = str(exc).lower()
    return any(m in msg for m in _RATE_LIMIT_MARKERS)


def attempt_delay_s(attempt: int) -> float:
    """Delay before attempt `attempt` (0-based) within a tier."""
    if attempt <= 0:
        return 0.0
    return min(BASE_DELAY_S + (attempt - 1) * DELAY_STEP_S, MAX_DELAY_S)


def funding_tiers(target: int) -> List[int]:
    return [target, target // 2, target // 4]


class FundingManager:
    def __init__(
        self,
        ledger: Ledger,
        *,
        enabled: bool,
        target_lamports: int = DEFAULT_TARGET_LAMPORTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.enabled = enabled
        self.target_lamports = target_lamports
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def ensure_funded(self, minimum_balance: int, target: Optional[int] = None) -> bool:
        """True when the fee payer holds at least `minimum_balance` lamports.

        Requests funding only when enabled; a failed funding run is reported,
        never raised.
        """
        address = self.ledger.fee_payer
        balance = await self.ledger.get_balance(address)
        if balance >= minimum_balance:
            return True
        if not self.enabled:
            logger.warning(
                f"Fee payer {address} balance {balance} below {minimum_balance}; auto-funding disabled"
            )
            return False

        # Serialize funding runs; a concurrent caller may already have topped up.
        async with self._lock:
            balance = await self.ledger.get_balance(address)
            if balance >= minimum_balance:
                return True
            wanted = max(target or self.target_lamports, minimum_balance - balance)
            if not await self.request_funding(wanted):
                return False
            balance = await self.ledger.get_balance(address)
        ok = balance >= minimum_balance
        if not ok:
            logger.warning(f"Fee payer {address} still short after funding: {balance} < {minimum_balance}")
        return ok

    async def request_funding(self, target: int) -> bool:
        address = self.ledger.fee_payer
        for amount in funding_tiers(target):
            if amount <= 0:
                continue
            attempt = 0
            while attempt < ATTEMPTS_PER_TIER:
                delay = attempt_delay_s(attempt)
                if delay:
                    await self._sleep(delay)
                try:
                    sig = await self.ledger.request_airdrop(address, amount)
                    logger.info(f"Airdrop of {amount} lamports to {address} confirmed: {sig}")
                    return True
                except Exception as e:
                    final = attempt >= ATTEMPTS_PER_TIER - 1
                    if is_rate_limited(e) and not final:
                        logger.warning(
                            f"Airdrop rate limited (tier {amount}, attempt {attempt + 1}); "
                            f"cooling down {RATE_LIMIT_COOLDOWN_S:.0f}s"
                        )
                        await self._sleep(RATE_LIMIT_COOLDOWN_S)
                    else:
                        logger.warning(
                            f"Airdrop failed (tier {amount}, attempt {attempt + 1}/{ATTEMPTS_PER_TIER}): {e}"
                        )
                attempt += 1
            logger.info(f"Airdrop tier {amount} exhausted, trying a smaller amount")
        logger.error(f"Funding fee payer {address} failed on every tier")
        return False

    async def startup_check(self, minimum_balance: int) -> None:
        """Background top-up at boot; never fails the process."""
        try:
            await self.ensure_funded(minimum_balance)
        except Exception:
            logger.exception("Startup funding check failed")
