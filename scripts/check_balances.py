# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Check fee payer and payee balances on the configured Solana cluster
"""

import asyncio
import os
import sys
from datetime import datetime

import httpx
from dotenv import load_dotenv

repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(repo_root, "facilitator", "src"))
sys.path.insert(0, os.path.join(repo_root, "packages", "x402-guard", "src"))
load_dotenv()

from x402_facilitator.config import FacilitatorConfig  # noqa: E402
from x402_facilitator.ledger import LAMPORTS_PER_SOL, LedgerError, SolanaLedger  # noqa: E402
from x402_facilitator.settler import FEE_ESTIMATE_LAMPORTS  # noqa: E402


async def check_balances():
    """Check fee payer and payee balances"""

    cfg = FacilitatorConfig()
    print("""
╔══════════════════════════════════════════════════════════╗
║          Solana Wallet Balance Check                     ║
╚══════════════════════════════════════════════════════════╝
    """)

    if not cfg.fee_payer_secret:
        print("❌ FEE_PAYER_SECRET not set")
        print("Please run first: python scripts/create_wallets.py")
        return

    ledger = SolanaLedger.from_secret(cfg.resolved_rpc_url, cfg.fee_payer_secret)
    try:
        try:
            version = await ledger.version()
        except (LedgerError, httpx.HTTPError) as e:
            print(f"❌ Unable to reach {cfg.resolved_rpc_url}: {e}")
            return
        print(f"✅ Connected to {cfg.network} (solana-core {version})")
        print(f"📅 Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

        print("\n" + "=" * 60)
        print("Wallet Balances:")
        print("=" * 60)

        fee_payer_balance = await ledger.get_balance(ledger.fee_payer)
        print(f"\n💰 Fee payer: {ledger.fee_payer}")
        print(f"   SOL: {fee_payer_balance / LAMPORTS_PER_SOL:.6f} ({fee_payer_balance} lamports)")

        payee = os.getenv("PAY_TO_PUBKEY")
        if payee:
            payee_balance = await ledger.get_balance(payee)
            print(f"\n💵 Payee: {payee}")
            print(f"   SOL: {payee_balance / LAMPORTS_PER_SOL:.6f} ({payee_balance} lamports)")

        cluster = "" if cfg.is_production else f"?cluster={cfg.network}"
        print("\n" + "=" * 60)
        print("Explorer Links:")
        print("=" * 60)
        print(f"\nFee payer: https://explorer.solana.com/address/{ledger.fee_payer}{cluster}")
        if payee:
            print(f"Payee: https://explorer.solana.com/address/{payee}{cluster}")

        print("\n" + "=" * 60)
        print("Settlement Readiness:")
        print("=" * 60)
        if fee_payer_balance < FEE_ESTIMATE_LAMPORTS:
            print(f"❌ Fee payer cannot cover fees (need at least {FEE_ESTIMATE_LAMPORTS} lamports)")
            if not cfg.is_production:
                print(f"   solana airdrop 2 {ledger.fee_payer} --url {cfg.network}")
        else:
            print("✅ Fee payer can cover settlement fees")
    finally:
        await ledger.close()


if __name__ == "__main__":
    asyncio.run(check_balances())
