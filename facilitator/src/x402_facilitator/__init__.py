# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from .app import build_facilitator, create_app
from .config import FacilitatorConfig, load_config
from .errors import ConfigurationError, ErrorCodes, PaymentError, SettlementError
from .funding import FundingManager
from .ledger import Ledger, LedgerError, RateLimitedError, SolanaLedger
from .routes import Facilitator, get_facilitator, router
from .settler import Settler, select_variant
from .store import FileTTLStore, MemoryTTLStore, RedisTTLStore, TTLStore, create_store
from .verifier import LocalVerification, StrictVerification, VerificationStrategy, Verifier

__version__ = "0.1.0"

__all__ = [
    "create_app",
    "build_facilitator",
    "FacilitatorConfig",
    "load_config",
    "ConfigurationError",
    "ErrorCodes",
    "PaymentError",
    "SettlementError",
    "FundingManager",
    "Ledger",
    "LedgerError",
    "RateLimitedError",
    "SolanaLedger",
    "Facilitator",
    "get_facilitator",
    "router",
    "Settler",
    "select_variant",
    "TTLStore",
    "MemoryTTLStore",
    "FileTTLStore",
    "RedisTTLStore",
    "create_store",
    "Verifier",
    "VerificationStrategy",
    "LocalVerification",
    "StrictVerification",
]
