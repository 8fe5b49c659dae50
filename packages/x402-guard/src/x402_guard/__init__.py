# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""x402 Guard

Resource-server side of x402: wire types, a facilitator client, the
`PaymentGuard` ASGI middleware and a buyer client.

Usage:
    from x402_guard import FacilitatorClient, PaymentGuard

    app = FastAPI()
    app.add_middleware(PaymentGuard, routes={"GET /api/data": requirements},
                       facilitator=FacilitatorClient("http://localhost:8787"))
"""

from .buyer import BuyerClient, BuyerConfig, PaidResponse, build_presigned_transfer
from .facilitator_client import FacilitatorClient
from .guard import PaymentGuard, build_catalog, route_key
from .provider import ProviderConfig, ProviderConfigError, create_provider_app, load_provider_config
from .types import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    X402_VERSION,
    ExactPaymentPayload,
    PaymentAuthorization,
    PaymentHeaderError,
    PaymentPayload,
    PaymentRequirements,
    SettleResult,
    VerifyResult,
    decode_payment_header,
    decode_settlement,
    encode_payment_header,
    encode_settlement,
)

__version__ = "0.1.0"

__all__ = [
    "BuyerClient",
    "BuyerConfig",
    "PaidResponse",
    "build_presigned_transfer",
    "FacilitatorClient",
    "PaymentGuard",
    "build_catalog",
    "route_key",
    "ProviderConfig",
    "ProviderConfigError",
    "create_provider_app",
    "load_provider_config",
    "PAYMENT_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "X402_VERSION",
    "ExactPaymentPayload",
    "PaymentAuthorization",
    "PaymentHeaderError",
    "PaymentPayload",
    "PaymentRequirements",
    "SettleResult",
    "VerifyResult",
    "decode_payment_header",
    "decode_settlement",
    "encode_payment_header",
    "encode_settlement",
]
