#!/usr/bin/env python3
# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Standalone runner for the x402 Facilitator.

Env:
  - PORT (default: 8787), HOST (default: 0.0.0.0)
  - NETWORK (devnet | testnet | mainnet-beta, default: devnet)
  - RPC_URL (default: public cluster URL for NETWORK)
  - FEE_PAYER_SECRET (base58 keypair; generated and auto-funded on devnet/testnet when unset)
  - AUTH_TOKEN (require x-api-key when set)
  - SETTLEMENT_MODE (native | spl), DEMO_MODE (authorization-only settlement)
  - VERIFICATION_STRATEGY (local | strict), STRICT_VERIFIER_URL
  - DISABLE_RATE_LIMIT, RATE_LIMIT_MIN_INTERVAL_MS (default: 250)
  - DISABLE_NONCE_REPLAY, REDIS_URL, STORE_DIR (default: data)
  - SETTLE_CONFIRM_TIMEOUT_S (default: 30), LOG_LEVEL (default: INFO)
"""

import logging
import os
import sys

# Add package sources to Python path
repo_root = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(repo_root, 'facilitator', 'src'))
sys.path.insert(0, os.path.join(repo_root, 'packages', 'x402-guard', 'src'))

# Load .env BEFORE importing the facilitator so env vars are available during config
from dotenv import load_dotenv  # type: ignore
load_dotenv()

from x402_facilitator import ConfigurationError, create_app, load_config


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("facilitator")


def main() -> int:
    try:
        cfg = load_config()
    except ConfigurationError as e:
        logger.error(f"Failed to load configuration: {e}")
        if e.missing_vars:
            logger.error(f"Check: {', '.join(e.missing_vars)}")
        return 1

    import uvicorn

    app = create_app(cfg)
    logger.info(f"Facilitator listening on {cfg.host}:{cfg.port} rpc={cfg.resolved_rpc_url}")
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
