# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""x402 wire types shared by the Guard, the buyer client and the Facilitator.

Field names on the wire are camelCase and part of the protocol; the models
accept either the alias or the python name and always dump by alias.
"""
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

X402_VERSION = 1
SCHEME_EXACT = "exact"

PAYMENT_HEADER = "x-payment"
PAYMENT_RESPONSE_HEADER = "x-payment-response"


class PaymentRequirements(BaseModel):
    scheme: str
    network: str
    max_amount_required: str
    resource: str
    description: Optional[str] = None
    mime_type: Optional[str] = None
    output_schema: Optional[Dict[str, Any]] = None
    pay_to: str
    max_timeout_seconds: int
    asset: str
    extra: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class PaymentAuthorization(BaseModel):
    from_: str = Field(alias="from")
    to: str
    value: str
    valid_after: str
    valid_before: str
    nonce: str

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        strict=True,
    )


class ExactPaymentPayload(BaseModel):
    signature: str
    authorization: PaymentAuthorization
    transaction: Optional[str] = None


class PaymentPayload(BaseModel):
    x402_version: int = Field(X402_VERSION, alias="x402Version")
    scheme: str = SCHEME_EXACT
    network: str
    payload: ExactPaymentPayload

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class VerifyResult(BaseModel):
    is_valid: bool = Field(alias="isValid")
    invalid_reason: Optional[str] = Field(None, alias="invalidReason")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def valid(cls) -> "VerifyResult":
        return cls(isValid=True, invalidReason=None)

    @classmethod
    def invalid(cls, reason: str) -> "VerifyResult":
        return cls(isValid=False, invalidReason=reason)


class SettleResult(BaseModel):
    success: bool
    error: Optional[str] = None
    tx_hash: Optional[str] = Field(None, alias="txHash")
    network_id: Optional[str] = Field(None, alias="networkId")
    payer: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class PaymentHeaderError(ValueError):
    pass


def encode_payment_header(payload: Any) -> str:
    """base64(JSON) of a PaymentPayload (model or plain dict)."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(by_alias=True, exclude_none=True)
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_payment_header(value: str) -> Dict[str, Any]:
    """Decode an X-PAYMENT header into its JSON object.

    Accepts standard or url-safe base64 with or without padding.
    Raises PaymentHeaderError on anything that is not base64 of a JSON object.
    """
    if not isinstance(value, str) or not value.strip():
        raise PaymentHeaderError("empty payment header")
    s = value.strip()
    s += "=" * (-len(s) % 4)
    try:
        if "-" in s or "_" in s:
            raw = base64.urlsafe_b64decode(s)
        else:
            raw = base64.b64decode(s, validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise PaymentHeaderError(f"invalid payment header: {e}") from e
    if not isinstance(data, dict):
        raise PaymentHeaderError("payment header must encode a JSON object")
    return data


def encode_settlement(result: SettleResult) -> str:
    raw = json.dumps(result.model_dump(by_alias=True), separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_settlement(value: str) -> SettleResult:
    return SettleResult.model_validate(json.loads(base64.b64decode(value)))
