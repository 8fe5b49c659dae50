# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Create and manage x402 Solana test wallets
Generate the facilitator fee payer and the provider payee, and save to .env file
"""

import json
import os
import sys
from datetime import datetime

from dotenv import load_dotenv, set_key
from solders.keypair import Keypair

load_dotenv()


def _describe(secret: str) -> str:
    try:
        return str(Keypair.from_base58_string(secret).pubkey())
    except ValueError:
        return "Invalid keypair"


def create_wallets():
    """Create new fee payer and payee keypairs"""

    print("""
╔══════════════════════════════════════════════════════════╗
║            x402 Solana Wallet Generator                  ║
║                                                          ║
║  Create facilitator fee payer and provider payee         ║
╚══════════════════════════════════════════════════════════╝
    """)

    existing_fee_payer = os.getenv("FEE_PAYER_SECRET")
    existing_payee = os.getenv("PAY_TO_PUBKEY")

    if existing_fee_payer or existing_payee:
        print("\n⚠️  Existing wallet configuration detected:")
        if existing_fee_payer:
            print(f"  Fee payer: {_describe(existing_fee_payer)}")
        if existing_payee:
            print(f"  Payee: {existing_payee}")

        response = input("\nCreate new wallets? (y/n): ").lower()
        if response != "y":
            print("Keeping existing wallet configuration")
            return

    print("\n🔑 Creating new keypairs...")

    fee_payer = Keypair()
    payee = Keypair()
    print("\nFacilitator fee payer:")
    print(f"  Address: {fee_payer.pubkey()}")
    print("\nProvider payee:")
    print(f"  Address: {payee.pubkey()}")

    env_file = ".env"
    if not os.path.exists(env_file) and os.path.exists("env.example"):
        with open("env.example", "r") as f:
            example_content = f.read()
        with open(env_file, "w") as f:
            f.write(example_content)
        print("\n✅ Created .env file")

    set_key(env_file, "FEE_PAYER_SECRET", str(fee_payer))
    set_key(env_file, "PAY_TO_PUBKEY", str(payee.pubkey()))
    set_key(env_file, "PAYEE_SECRET", str(payee))
    print(f"\n✅ Wallet information saved to {env_file}")

    wallets_info = {
        "created_at": datetime.now().isoformat(),
        "network": os.getenv("NETWORK", "devnet"),
        "fee_payer": {"address": str(fee_payer.pubkey()), "secret": str(fee_payer)},
        "payee": {"address": str(payee.pubkey()), "secret": str(payee)},
    }
    with open("wallets.json", "w") as f:
        json.dump(wallets_info, f, indent=2)
    print("✅ Wallet backup saved to wallets.json")

    print("\n" + "=" * 60)
    print("Next steps:")
    print("=" * 60)
    print("\n1. Fund the fee payer with devnet SOL:")
    print(f"   solana airdrop 2 {fee_payer.pubkey()} --url devnet")
    print("   or https://faucet.solana.com/")
    print("\n2. Check balances:")
    print("   python scripts/check_balances.py")
    print("\n💡 Tips:")
    print("  - Leave FEE_PAYER_SECRET unset on devnet to let the facilitator generate and fund one")
    print("  - The payee only receives payments and needs no SOL")


def show_existing_wallets():
    """Show existing wallet information"""

    print("\n📋 Current wallet configuration:")
    print("=" * 60)

    fee_payer = os.getenv("FEE_PAYER_SECRET")
    print(f"\nFee payer: {_describe(fee_payer) if fee_payer else 'Not configured'}")
    print(f"Payee: {os.getenv('PAY_TO_PUBKEY') or 'Not configured'}")

    if os.path.exists("wallets.json"):
        print("\n📄 From wallets.json backup:")
        with open("wallets.json", "r") as f:
            wallets = json.load(f)
        print(f"  Created at: {wallets.get('created_at', 'Unknown')}")
        print(f"  Network: {wallets.get('network', 'Unknown')}")

    print("\n" + "=" * 60)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "--show":
        show_existing_wallets()
    else:
        create_wallets()
