# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Tests for settlement: variant selection, idempotence, fee payer balance
and error classification.
"""
import asyncio

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from fakes import BLOCKHASH, NETWORK, FakeRedis, make_header, make_payload, make_requirements, new_address, sign_transaction
from x402_facilitator.errors import ErrorCodes, SettlementError, classify_settlement_error
from x402_facilitator.funding import DEFAULT_TARGET_LAMPORTS, RATE_LIMIT_COOLDOWN_S, FundingManager
from x402_facilitator.ledger import LedgerError, RateLimitedError
from x402_facilitator.settler import (
    DUPLICATE_TX_HASH,
    IDEMPOTENCY_TTL_S,
    AssetTransfer,
    NativeTransfer,
    PresignedTransfer,
    Settler,
    idempotency_key,
    select_variant,
)
from x402_facilitator.store import RedisTTLStore
from x402_guard.buyer import build_presigned_transfer
from x402_guard.types import encode_payment_header


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def requirements(pay_to):
    return make_requirements(pay_to, amount="1000")


@pytest.fixture
def presigned_header(ledger, requirements):
    payer = Keypair()
    tx = build_presigned_transfer(payer, ledger.fee_payer, requirements.pay_to, 1000, BLOCKHASH)
    return make_header(requirements, payer=str(payer.pubkey()), transaction=tx)


def _settler(ledger, store, funding=None, **kwargs) -> Settler:
    return Settler(ledger, store, funding, network_id=NETWORK, **kwargs)


class TestSelectVariant:
    def test_transaction_selects_presigned(self, requirements):
        decoded = make_payload(requirements, payer="PayerAddr", transaction="dHg=")
        variant = select_variant(decoded, settlement_mode="native", demo_mode=False)
        assert variant == PresignedTransfer(transaction="dHg=", payer="PayerAddr")

    def test_authorization_only_requires_demo_mode(self, requirements):
        with pytest.raises(SettlementError) as exc:
            select_variant(make_payload(requirements), settlement_mode="native", demo_mode=False)
        assert exc.value.code == ErrorCodes.MISSING_TRANSACTION

    def test_demo_mode_variants(self, requirements):
        decoded = make_payload(requirements, payer="PayerAddr")
        assert select_variant(decoded, settlement_mode="native", demo_mode=True) == NativeTransfer(payer="PayerAddr")
        assert select_variant(decoded, settlement_mode="spl", demo_mode=True) == AssetTransfer(payer="PayerAddr")

    def test_demo_mode_needs_payer(self, requirements):
        decoded = make_payload(requirements, **{"from": ""})
        with pytest.raises(SettlementError) as exc:
            select_variant(decoded, settlement_mode="native", demo_mode=True)
        assert exc.value.code == ErrorCodes.MISSING_PAYER_ADDRESS

    def test_non_string_transaction(self, requirements):
        decoded = make_payload(requirements, transaction=123)
        with pytest.raises(SettlementError) as exc:
            select_variant(decoded, settlement_mode="native", demo_mode=True)
        assert exc.value.code == ErrorCodes.MISSING_TRANSACTION


def test_classify_settlement_error():
    assert classify_settlement_error(LedgerError("Attempt to debit an account but found no record of a prior credit; insufficient funds")) == (
        ErrorCodes.INSUFFICIENT_FUNDS
    )
    assert classify_settlement_error(LedgerError("Blockhash not found")) == ErrorCodes.INVALID_BLOCKHASH
    assert classify_settlement_error(LedgerError("Transaction signature verification failure")) == (
        ErrorCodes.SIGNATURE_ERROR
    )
    assert classify_settlement_error(RuntimeError("boom")) == ErrorCodes.UNKNOWN_ERROR
    assert classify_settlement_error(SettlementError(ErrorCodes.INVALID_AMOUNT)) == ErrorCodes.INVALID_AMOUNT


def test_idempotency_key_is_header_hash():
    assert idempotency_key("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


@pytest.mark.asyncio
class TestSettler:
    async def test_presigned_settles_once(self, ledger, idempotency_store, requirements, presigned_header):
        settler = _settler(ledger, idempotency_store)

        first = await settler.settle(presigned_header, requirements)
        assert first.success is True
        assert first.tx_hash == "sig-presigned-1"
        assert first.network_id == NETWORK

        second = await settler.settle(presigned_header, requirements)
        assert second.success is True
        assert second.tx_hash == DUPLICATE_TX_HASH
        assert len(ledger.transactions) == 1

    async def test_concurrent_identical_settles_submit_once(
        self, ledger, idempotency_store, requirements, presigned_header
    ):
        settler = _settler(ledger, idempotency_store)
        results = await asyncio.gather(*(settler.settle(presigned_header, requirements) for _ in range(5)))

        assert all(r.success for r in results)
        assert sorted(r.tx_hash for r in results) == ["duplicate"] * 4 + ["sig-presigned-1"]
        assert len(ledger.transactions) == 1
        assert settler._inflight == {}

    async def test_authorization_only_refused_outside_demo(self, ledger, idempotency_store, requirements):
        settler = _settler(ledger, idempotency_store)
        header = make_header(requirements)

        result = await settler.settle(header, requirements)
        assert result.success is False
        assert result.error == ErrorCodes.MISSING_TRANSACTION
        assert result.tx_hash is None
        assert ledger.transactions == []

    async def test_demo_native_transfer(self, ledger, idempotency_store, requirements):
        settler = _settler(ledger, idempotency_store, demo_mode=True)
        header = make_header(requirements, payer="So11111111111111111111111111111111111111112")

        result = await settler.settle(header, requirements)
        assert result.success is True
        assert result.payer == "So11111111111111111111111111111111111111112"
        assert ledger.transactions == [
            {"kind": "native", "signature": "sig-native-1", "to": requirements.pay_to, "lamports": 1000}
        ]

    async def test_demo_asset_transfer(self, ledger, idempotency_store, requirements):
        settler = _settler(ledger, idempotency_store, demo_mode=True, settlement_mode="spl")

        result = await settler.settle(make_header(requirements), requirements)
        assert result.success is True
        assert ledger.transactions[0]["kind"] == "asset"
        assert ledger.transactions[0]["mint"] == requirements.asset
        assert ledger.transactions[0]["amount"] == 1000

    async def test_demo_missing_payer(self, ledger, idempotency_store, requirements):
        settler = _settler(ledger, idempotency_store, demo_mode=True)
        result = await settler.settle(make_header(requirements, **{"from": ""}), requirements)
        assert result.error == ErrorCodes.MISSING_PAYER_ADDRESS

    async def test_non_integer_amount(self, ledger, idempotency_store, pay_to):
        requirements = make_requirements(pay_to, amount="1.5")
        settler = _settler(ledger, idempotency_store, demo_mode=True)
        result = await settler.settle(make_header(requirements), requirements)
        assert result.error == ErrorCodes.INVALID_AMOUNT

    async def test_undecodable_header(self, ledger, idempotency_store, requirements):
        result = await _settler(ledger, idempotency_store).settle("%%%", requirements)
        assert result.success is False
        assert result.error == ErrorCodes.INVALID_PAYLOAD

    async def test_insufficient_funds_without_funding(self, ledger, idempotency_store, requirements, presigned_header):
        ledger.balance = 0
        settler = _settler(ledger, idempotency_store)

        result = await settler.settle(presigned_header, requirements)
        assert result.success is False
        assert result.error == ErrorCodes.INSUFFICIENT_FUNDS
        assert result.payer is not None
        assert ledger.transactions == []

    async def test_insufficient_funds_triggers_single_funding_pass(
        self, ledger, idempotency_store, requirements
    ):
        ledger.balance = 0
        funding = FundingManager(ledger, enabled=True, sleep=_no_sleep)
        settler = _settler(ledger, idempotency_store, funding, demo_mode=True)

        result = await settler.settle(make_header(requirements), requirements)
        assert result.success is True
        assert ledger.airdrops == [DEFAULT_TARGET_LAMPORTS]

    async def test_funding_failure_reports_insufficient_funds(self, ledger, idempotency_store, requirements):
        ledger.balance = 0
        ledger.airdrop_errors = [LedgerError("faucet down")] * 15
        funding = FundingManager(ledger, enabled=True, sleep=_no_sleep)
        settler = _settler(ledger, idempotency_store, funding, demo_mode=True)

        result = await settler.settle(make_header(requirements), requirements)
        assert result.error == ErrorCodes.INSUFFICIENT_FUNDS

    async def test_ledger_failure_is_classified_and_not_recorded(
        self, ledger, idempotency_store, requirements, presigned_header
    ):
        ledger.submit_error = LedgerError("Blockhash not found")
        settler = _settler(ledger, idempotency_store)

        failed = await settler.settle(presigned_header, requirements)
        assert failed.success is False
        assert failed.error == ErrorCodes.INVALID_BLOCKHASH

        ledger.submit_error = None
        retried = await settler.settle(presigned_header, requirements)
        assert retried.success is True
        assert retried.tx_hash == "sig-presigned-1"

    async def test_non_string_transaction_fails(self, ledger, idempotency_store, requirements):
        header = encode_payment_header(make_payload(requirements, transaction=["not", "base64"]))
        result = await _settler(ledger, idempotency_store).settle(header, requirements)
        assert result.error == ErrorCodes.MISSING_TRANSACTION

    async def test_funding_rides_out_faucet_rate_limits(self, ledger, idempotency_store, requirements):
        ledger.balance = 0
        ledger.airdrop_errors = [RateLimitedError("requestAirdrop: 429 Too Many Requests")] * 3
        sleeps = []

        async def record_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        funding = FundingManager(ledger, enabled=True, sleep=record_sleep)
        settler = _settler(ledger, idempotency_store, funding, demo_mode=True)

        result = await settler.settle(make_header(requirements), requirements)
        assert result.success is True
        assert ledger.airdrops == [DEFAULT_TARGET_LAMPORTS]
        assert sleeps.count(RATE_LIMIT_COOLDOWN_S) == 3
        assert len(ledger.transactions) == 1

    async def test_identical_settle_arriving_during_retry_waits(self, ledger, idempotency_store, requirements):
        ledger.submit_errors = [LedgerError("Blockhash not found")]
        ledger.submit_gate = asyncio.Event()
        settler = _settler(ledger, idempotency_store, demo_mode=True)
        header = make_header(requirements)

        first = asyncio.create_task(settler.settle(header, requirements))
        second = asyncio.create_task(settler.settle(header, requirements))
        for _ in range(100):
            if ledger.submit_attempts == 2:
                break
            await asyncio.sleep(0)
        assert ledger.submit_attempts == 2

        third = asyncio.create_task(settler.settle(header, requirements))
        for _ in range(20):
            await asyncio.sleep(0)
        ledger.submit_gate.set()
        results = await asyncio.gather(first, second, third)

        assert [r.error for r in results] == [ErrorCodes.INVALID_BLOCKHASH, None, None]
        assert [r.tx_hash for r in results] == [None, "sig-native-1", DUPLICATE_TX_HASH]
        assert len(ledger.transactions) == 1
        assert settler._inflight == {}

    async def test_presigned_transaction_reinspected_before_cosigning(self, ledger, idempotency_store, requirements):
        payer = Keypair()
        tx = build_presigned_transfer(payer, ledger.fee_payer, new_address(), 1, BLOCKHASH)
        header = make_header(requirements, payer=str(payer.pubkey()), transaction=tx)

        result = await _settler(ledger, idempotency_store).settle(header, requirements)
        assert result.success is False
        assert result.error == ErrorCodes.INVALID_AMOUNT
        assert ledger.submit_attempts == 0
        assert await idempotency_store.contains(idempotency_key(header)) is False

    async def test_presigned_transaction_may_not_spend_fee_payer(self, ledger, idempotency_store, requirements):
        payer = Keypair()
        pay = transfer(
            TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.from_string(requirements.pay_to), lamports=1000)
        )
        drain = transfer(
            TransferParams(from_pubkey=Pubkey.from_string(ledger.fee_payer), to_pubkey=Pubkey.new_unique(), lamports=10**9)
        )
        tx = sign_transaction(payer, ledger.fee_payer, [pay, drain])
        header = make_header(requirements, payer=str(payer.pubkey()), transaction=tx)

        result = await _settler(ledger, idempotency_store).settle(header, requirements)
        assert result.error == ErrorCodes.FEE_PAYER_IN_INSTRUCTION
        assert ledger.submit_attempts == 0


@pytest.mark.asyncio
class TestSharedIdempotencyStore:
    """Two facilitator replicas settling through one Redis."""

    async def test_replicas_submit_once(self, ledger, requirements, presigned_header):
        redis = FakeRedis()
        replica_a = _settler(ledger, RedisTTLStore("redis://unused", "settlements", client=redis))
        replica_b = _settler(ledger, RedisTTLStore("redis://unused", "settlements", client=redis))
        ledger.submit_gate = asyncio.Event()

        first = asyncio.create_task(replica_a.settle(presigned_header, requirements))
        for _ in range(100):
            if ledger.submit_attempts == 1:
                break
            await asyncio.sleep(0)
        concurrent = await replica_b.settle(presigned_header, requirements)
        ledger.submit_gate.set()
        settled = await first

        assert settled.tx_hash == "sig-presigned-1"
        assert concurrent.success is False
        assert concurrent.error == ErrorCodes.SETTLEMENT_IN_PROGRESS
        assert len(ledger.transactions) == 1

        key = f"x402:settlements:{idempotency_key(presigned_header)}"
        assert redis.values[key] == "settled"
        assert redis.ttls[key] == IDEMPOTENCY_TTL_S * 1000
        replay = await replica_b.settle(presigned_header, requirements)
        assert replay.tx_hash == DUPLICATE_TX_HASH

    async def test_simultaneous_claims_admit_one(self, ledger, requirements, presigned_header):
        redis = FakeRedis()
        replicas = [_settler(ledger, RedisTTLStore("redis://unused", "settlements", client=redis)) for _ in range(2)]

        results = await asyncio.gather(*(r.settle(presigned_header, requirements) for r in replicas))
        assert sorted(r.success for r in results) == [False, True]
        assert len(ledger.transactions) == 1

    async def test_failed_submit_releases_claim(self, ledger, requirements, presigned_header):
        redis = FakeRedis()
        settler = _settler(ledger, RedisTTLStore("redis://unused", "settlements", client=redis))
        ledger.submit_error = LedgerError("Blockhash not found")

        failed = await settler.settle(presigned_header, requirements)
        assert failed.error == ErrorCodes.INVALID_BLOCKHASH
        assert redis.values == {}
