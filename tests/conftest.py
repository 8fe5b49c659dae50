# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
import os
import sys

import pytest


def _add_sources_to_syspath() -> None:
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    for path in (
        root,
        os.path.join(root, "facilitator", "src"),
        os.path.join(root, "packages", "x402-guard", "src"),
        os.path.dirname(os.path.abspath(__file__)),
    ):
        if path not in sys.path:
            sys.path.insert(0, path)


_add_sources_to_syspath()


# Import after adding to syspath
from fakes import FakeLedger, new_address  # noqa: E402
from x402_facilitator.config import FacilitatorConfig  # noqa: E402
from x402_facilitator.store import MemoryTTLStore  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def nonce_store() -> MemoryTTLStore:
    return MemoryTTLStore()


@pytest.fixture
def idempotency_store() -> MemoryTTLStore:
    return MemoryTTLStore()


@pytest.fixture
def pay_to() -> str:
    return new_address()


@pytest.fixture
def test_env(monkeypatch, tmp_path) -> None:
    """Facilitator environment for in-process tests."""
    for name in ("FEE_PAYER_SECRET", "AUTH_TOKEN", "REDIS_URL", "STRICT_VERIFIER_URL", "RPC_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NETWORK", "devnet")
    monkeypatch.setenv("DISABLE_RATE_LIMIT", "1")
    monkeypatch.setenv("DISABLE_NONCE_REPLAY", "0")
    monkeypatch.setenv("DEMO_MODE", "0")
    monkeypatch.setenv("SETTLEMENT_MODE", "native")
    monkeypatch.setenv("VERIFICATION_STRATEGY", "local")
    monkeypatch.setenv("STORE_DIR", str(tmp_path / "data"))


@pytest.fixture
def facilitator_config(test_env) -> FacilitatorConfig:
    return FacilitatorConfig()
