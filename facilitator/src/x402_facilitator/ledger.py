# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Ledger capability used by the verifier, settler and funding manager.

`Ledger` is the interface the protocol code depends on. `SolanaLedger` is the
adapter for Solana clusters: JSON-RPC over httpx, with solders handling keys,
transaction (de)serialization and signing.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

import httpx
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as _SYSTEM_PROGRAM
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM_ID = str(_SYSTEM_PROGRAM)
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
NATIVE_ASSET = "native"
LAMPORTS_PER_SOL = 1_000_000_000

# SPL token instruction tags
_TRANSFER_CHECKED = 12
_CREATE_ATA_IDEMPOTENT = 1


class LedgerError(Exception):
    def __init__(self, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.data = data


class RateLimitedError(LedgerError):
    pass


@dataclass
class InstructionSummary:
    program_id: str
    accounts: List[str]
    data: bytes


@dataclass
class TransactionSummary:
    signers: List[str] = field(default_factory=list)
    instructions: List[InstructionSummary] = field(default_factory=list)


class Ledger(Protocol):
    @property
    def fee_payer(self) -> str: ...

    def parse_address(self, address: str) -> str: ...

    def inspect_transaction(self, transaction_b64: str) -> TransactionSummary: ...

    async def get_balance(self, address: str) -> int: ...

    async def request_airdrop(self, address: str, lamports: int) -> str: ...

    async def submit_presigned(self, transaction_b64: str) -> str: ...

    async def transfer_native(self, to: str, lamports: int) -> str: ...

    async def transfer_asset(self, mint: str, to: str, amount: int) -> str: ...

    async def version(self) -> Optional[str]: ...

    async def close(self) -> None: ...


def parse_address(address: str) -> str:
    """Return the canonical base58 form; ValueError when not a 32-byte key."""
    if not isinstance(address, str) or not address:
        raise ValueError("address must be a non-empty string")
    return str(Pubkey.from_string(address))


def _decode_transaction(transaction_b64: str) -> Transaction:
    try:
        raw = base64.b64decode(transaction_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"transaction is not base64: {e}") from e
    return Transaction.from_bytes(raw)


def inspect_transaction(transaction_b64: str) -> TransactionSummary:
    """Static view of a serialized legacy transaction.

    `signers` lists required signers that carry a non-empty signature.
    """
    tx = _decode_transaction(transaction_b64)
    msg = tx.message
    keys = list(msg.account_keys)
    required = msg.header.num_required_signatures
    empty = Signature.default()
    signers = [
        str(keys[i])
        for i, sig in enumerate(tx.signatures[:required])
        if i < len(keys) and sig != empty
    ]
    instructions = [
        InstructionSummary(
            program_id=str(keys[ix.program_id_index]),
            accounts=[str(keys[i]) for i in bytes(ix.accounts)],
            data=bytes(ix.data),
        )
        for ix in msg.instructions
    ]
    return TransactionSummary(signers=signers, instructions=instructions)


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    token_program = Pubkey.from_string(TOKEN_PROGRAM_ID)
    ata_program = Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID)
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)], ata_program
    )
    return address


class SolanaLedger:
    """Solana JSON-RPC ledger adapter.

    The fee payer keypair signs every facilitator-originated transaction and
    co-signs client transactions as fee payer.
    """

    def __init__(
        self,
        rpc_url: str,
        fee_payer: Optional[Keypair] = None,
        *,
        commitment: str = "confirmed",
        timeout_s: float = 30.0,
        confirm_timeout_s: float = 30.0,
        poll_interval_s: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.keypair = fee_payer or Keypair()
        self.commitment = commitment
        self.confirm_timeout_s = confirm_timeout_s
        self.poll_interval_s = poll_interval_s
        self._http = httpx.AsyncClient(timeout=timeout_s, transport=transport)
        self._request_id = 0

    @classmethod
    def from_secret(cls, rpc_url: str, secret: str, **kwargs: Any) -> "SolanaLedger":
        keypair = Keypair.from_base58_string(secret) if secret else None
        return cls(rpc_url, keypair, **kwargs)

    @property
    def fee_payer(self) -> str:
        return str(self.keypair.pubkey())

    def parse_address(self, address: str) -> str:
        return parse_address(address)

    def inspect_transaction(self, transaction_b64: str) -> TransactionSummary:
        return inspect_transaction(transaction_b64)

    async def _rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
        resp = await self._http.post(self.rpc_url, json=payload)
        if resp.status_code == 429:
            raise RateLimitedError(f"{method}: 429 Too Many Requests")
        resp.raise_for_status()
        data = resp.json()
        if "error" in data:
            err = data["error"] or {}
            message = err.get("message", "Unknown RPC error")
            if err.get("code") == 429 or "rate limit" in message.lower():
                raise RateLimitedError(f"{method}: {message}", err)
            raise LedgerError(f"{method}: {message}", err)
        return data.get("result")

    async def get_balance(self, address: str) -> int:
        result = await self._rpc("getBalance", [address, {"commitment": self.commitment}])
        return int(result["value"])

    async def version(self) -> Optional[str]:
        result = await self._rpc("getVersion")
        return (result or {}).get("solana-core")

    async def _latest_blockhash(self) -> Hash:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def _token_decimals(self, mint: str) -> int:
        result = await self._rpc("getTokenSupply", [mint])
        return int(result["value"]["decimals"])

    async def _send(self, tx: Transaction) -> str:
        encoded = base64.b64encode(bytes(tx)).decode("ascii")
        signature = await self._rpc(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )
        logger.info(f"Solana tx sent: {signature}")
        await self.confirm(signature)
        return signature

    async def confirm(self, signature: str) -> None:
        """Poll until the signature reaches the configured commitment."""
        deadline = time.monotonic() + self.confirm_timeout_s
        while True:
            result = await self._rpc("getSignatureStatuses", [[signature]])
            statuses = (result or {}).get("value") or []
            status = statuses[0] if statuses else None
            if status:
                if status.get("err"):
                    raise LedgerError(f"Transaction {signature} failed: {status['err']}", status["err"])
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            if time.monotonic() >= deadline:
                raise LedgerError(f"Timed out waiting for confirmation of {signature}")
            await asyncio.sleep(self.poll_interval_s)

    async def request_airdrop(self, address: str, lamports: int) -> str:
        signature = await self._rpc("requestAirdrop", [address, int(lamports)])
        await self.confirm(signature)
        return signature

    async def submit_presigned(self, transaction_b64: str) -> str:
        tx = _decode_transaction(transaction_b64)
        tx.partial_sign([self.keypair], tx.message.recent_blockhash)
        return await self._send(tx)

    async def transfer_native(self, to: str, lamports: int) -> str:
        ix = transfer(
            TransferParams(
                from_pubkey=self.keypair.pubkey(),
                to_pubkey=Pubkey.from_string(to),
                lamports=int(lamports),
            )
        )
        blockhash = await self._latest_blockhash()
        tx = Transaction.new_signed_with_payer([ix], self.keypair.pubkey(), [self.keypair], blockhash)
        return await self._send(tx)

    async def transfer_asset(self, mint: str, to: str, amount: int) -> str:
        owner = self.keypair.pubkey()
        mint_pk = Pubkey.from_string(mint)
        to_pk = Pubkey.from_string(to)
        token_program = Pubkey.from_string(TOKEN_PROGRAM_ID)
        source = associated_token_address(owner, mint_pk)
        destination = associated_token_address(to_pk, mint_pk)
        decimals = await self._token_decimals(mint)

        create_ata = Instruction(
            Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID),
            bytes([_CREATE_ATA_IDEMPOTENT]),
            [
                AccountMeta(owner, True, True),
                AccountMeta(destination, False, True),
                AccountMeta(to_pk, False, False),
                AccountMeta(mint_pk, False, False),
                AccountMeta(_SYSTEM_PROGRAM, False, False),
                AccountMeta(token_program, False, False),
            ],
        )
        transfer_checked = Instruction(
            token_program,
            bytes([_TRANSFER_CHECKED]) + int(amount).to_bytes(8, "little") + bytes([decimals]),
            [
                AccountMeta(source, False, True),
                AccountMeta(mint_pk, False, False),
                AccountMeta(destination, False, True),
                AccountMeta(owner, True, False),
            ],
        )
        blockhash = await self._latest_blockhash()
        tx = Transaction.new_signed_with_payer(
            [create_ata, transfer_checked], owner, [self.keypair], blockhash
        )
        return await self._send(tx)

    async def close(self) -> None:
        await self._http.aclose()
