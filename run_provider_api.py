#!/usr/bin/env python3
# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Standalone runner for the sample x402 provider API.

Env:
  - PORT (default: 8080), HOST (default: 0.0.0.0)
  - PAY_TO_PUBKEY (required)
  - USDC_MINT (required)
  - FACILITATOR_URL (default: http://localhost:8787)
  - FACILITATOR_API_KEY (sent as x-api-key when set)
  - X402_NETWORK (default: solana-devnet)
"""

import logging
import os
import sys

repo_root = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(repo_root, 'packages', 'x402-guard', 'src'))

from dotenv import load_dotenv  # type: ignore
load_dotenv()

from x402_guard import ProviderConfigError, create_provider_app, load_provider_config


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("provider_api")


def main() -> int:
    try:
        cfg = load_provider_config()
    except ProviderConfigError as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    import uvicorn

    app = create_provider_app(cfg)
    logger.info(f"Provider API listening on {cfg.host}:{cfg.port}")
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
