# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Tests for the Solana JSON-RPC ledger adapter against a scripted RPC node.
"""
import base64
import json

import httpx
import pytest
from solders.keypair import Keypair

from fakes import BLOCKHASH, new_address
from x402_facilitator.ledger import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    LedgerError,
    RateLimitedError,
    SolanaLedger,
    inspect_transaction,
    parse_address,
)
from x402_guard.buyer import build_presigned_transfer

CONFIRMED = {"value": [{"confirmationStatus": "confirmed", "err": None}]}


class ScriptedRpc:
    """JSON-RPC node: `results[method]` is a value or a list consumed in order."""

    def __init__(self, **results):
        self.results = results
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.calls.append((method, body["params"]))
        result = self.results[method]
        if isinstance(result, list):
            result = result.pop(0) if len(result) > 1 else result[0]
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **result})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def sent_transactions(self):
        return [params[0] for method, params in self.calls if method == "sendTransaction"]


def _ledger(rpc: ScriptedRpc, **kwargs) -> SolanaLedger:
    kwargs.setdefault("poll_interval_s", 0)
    return SolanaLedger("http://rpc", Keypair(), transport=httpx.MockTransport(rpc), **kwargs)


def test_parse_address():
    address = new_address()
    assert parse_address(address) == address
    for bad in ("", "0x" + "a" * 40, "abc"):
        with pytest.raises(ValueError):
            parse_address(bad)


def test_inspect_transaction_reports_signers():
    payer = Keypair()
    fee_payer = new_address()
    pay_to = new_address()
    summary = inspect_transaction(build_presigned_transfer(payer, fee_payer, pay_to, 42, BLOCKHASH))

    assert summary.signers == [str(payer.pubkey())]
    ix = summary.instructions[0]
    assert ix.program_id == SYSTEM_PROGRAM_ID
    assert ix.accounts == [str(payer.pubkey()), pay_to]
    assert int.from_bytes(ix.data[4:12], "little") == 42


def test_inspect_transaction_rejects_garbage():
    with pytest.raises(ValueError):
        inspect_transaction("not base64!")


@pytest.mark.asyncio
class TestSolanaLedger:
    async def test_get_balance(self):
        rpc = ScriptedRpc(getBalance={"context": {"slot": 1}, "value": 1234})
        ledger = _ledger(rpc)
        assert await ledger.get_balance(ledger.fee_payer) == 1234
        assert rpc.calls[0] == ("getBalance", [ledger.fee_payer, {"commitment": "confirmed"}])

    async def test_http_429_is_rate_limited(self):
        rpc = ScriptedRpc(requestAirdrop=httpx.Response(429, text="Too Many Requests"))
        with pytest.raises(RateLimitedError):
            await _ledger(rpc).request_airdrop(new_address(), 1)

    async def test_rpc_errors(self):
        rpc = ScriptedRpc(
            requestAirdrop={"error": {"code": -32603, "message": "airdrop rate limit reached"}},
            getBalance={"error": {"code": -32602, "message": "Invalid param: WrongSize"}},
        )
        ledger = _ledger(rpc)
        with pytest.raises(RateLimitedError):
            await ledger.request_airdrop(new_address(), 1)
        with pytest.raises(LedgerError) as exc:
            await ledger.get_balance("bad")
        assert not isinstance(exc.value, RateLimitedError)
        assert "WrongSize" in str(exc.value)

    async def test_confirm_polls_until_confirmed(self):
        rpc = ScriptedRpc(getSignatureStatuses=[{"value": [None]}, {"value": [{"confirmationStatus": "processed", "err": None}]}, CONFIRMED])
        await _ledger(rpc).confirm("sig")
        assert [m for m, _ in rpc.calls] == ["getSignatureStatuses"] * 3

    async def test_confirm_reports_failed_transaction(self):
        rpc = ScriptedRpc(getSignatureStatuses={"value": [{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, "Custom"]}}]})
        with pytest.raises(LedgerError, match="failed"):
            await _ledger(rpc).confirm("sig")

    async def test_confirm_times_out(self):
        rpc = ScriptedRpc(getSignatureStatuses={"value": [None]})
        with pytest.raises(LedgerError, match="Timed out"):
            await _ledger(rpc, confirm_timeout_s=0).confirm("sig")

    async def test_submit_presigned_adds_fee_payer_signature(self):
        rpc = ScriptedRpc(sendTransaction="5xSig", getSignatureStatuses=CONFIRMED)
        ledger = _ledger(rpc)
        payer = Keypair()
        tx = build_presigned_transfer(payer, ledger.fee_payer, new_address(), 1000, BLOCKHASH)

        assert await ledger.submit_presigned(tx) == "5xSig"
        sent = inspect_transaction(rpc.sent_transactions()[0])
        assert sorted(sent.signers) == sorted([ledger.fee_payer, str(payer.pubkey())])

    async def test_transfer_native(self):
        rpc = ScriptedRpc(
            getLatestBlockhash={"value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 1}},
            sendTransaction="5xSig",
            getSignatureStatuses=CONFIRMED,
        )
        ledger = _ledger(rpc)
        to = new_address()

        assert await ledger.transfer_native(to, 777) == "5xSig"
        sent = inspect_transaction(rpc.sent_transactions()[0])
        assert sent.signers == [ledger.fee_payer]
        ix = sent.instructions[0]
        assert ix.program_id == SYSTEM_PROGRAM_ID
        assert ix.accounts == [ledger.fee_payer, to]
        assert int.from_bytes(ix.data[4:12], "little") == 777

    async def test_transfer_asset(self):
        rpc = ScriptedRpc(
            getTokenSupply={"value": {"amount": "1000000", "decimals": 6}},
            getLatestBlockhash={"value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 1}},
            sendTransaction="5xSig",
            getSignatureStatuses=CONFIRMED,
        )
        ledger = _ledger(rpc)

        assert await ledger.transfer_asset(new_address(), new_address(), 250) == "5xSig"
        create_ata, transfer_checked = inspect_transaction(rpc.sent_transactions()[0]).instructions
        assert create_ata.program_id == ASSOCIATED_TOKEN_PROGRAM_ID
        assert create_ata.data == bytes([1])
        assert transfer_checked.program_id == TOKEN_PROGRAM_ID
        assert transfer_checked.data == bytes([12]) + (250).to_bytes(8, "little") + bytes([6])

    async def test_version(self):
        rpc = ScriptedRpc(getVersion={"solana-core": "1.18.22", "feature-set": 1})
        assert await _ledger(rpc).version() == "1.18.22"

    async def test_from_secret(self):
        keypair = Keypair()
        ledger = SolanaLedger.from_secret("http://rpc", str(keypair))
        assert ledger.fee_payer == str(keypair.pubkey())
        await ledger.close()
