# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from typing import Any, Dict, List, Optional


class ErrorCodes:
    """Stable machine-readable reason tokens returned on the wire."""

    # Verification
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_X402_VERSION = "invalid_x402_version"
    INVALID_SCHEME = "invalid_scheme"
    INVALID_NETWORK = "invalid_network"
    INVALID_ADDRESS_FORMAT = "invalid_address_format"
    RECIPIENT_MISMATCH = "invalid_exact_svm_payload_recipient_mismatch"
    VALUE_MISMATCH = "invalid_exact_svm_payload_authorization_value"
    INVALID_NONCE_FORMAT = "invalid_nonce_format"
    NOT_YET_VALID = "invalid_exact_svm_payload_authorization_valid_after"
    EXPIRED = "invalid_exact_svm_payload_authorization_valid_before"
    NONCE_REPLAY = "nonce_replay"

    # Static transaction inspection
    MISSING_AUTHORIZATION_FROM = "missing_authorization_from"
    PAYER_NOT_SIGNED = "payer_not_signed"
    MISSING_INSTRUCTION = "missing_instruction"
    INVALID_INSTRUCTION_DATA = "invalid_instruction_data"
    UNEXPECTED_SYSTEM_IX = "unexpected_system_ix"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_RECIPIENT = "invalid_recipient"
    TRANSACTION_PARSE_FAILED = "transaction_parse_failed"
    FEE_PAYER_IN_INSTRUCTION = "fee_payer_in_instruction"

    # Settlement
    MISSING_TRANSACTION = "missing_transaction"
    MISSING_PAYER_ADDRESS = "missing_payer_address"
    SETTLEMENT_IN_PROGRESS = "settlement_in_progress"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_BLOCKHASH = "invalid_blockhash"
    SIGNATURE_ERROR = "signature_error"
    UNKNOWN_ERROR = "unknown_error"

    # Request handling
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    INTERNAL_ERROR = "internal_error"


class PaymentError(Exception):
    status_code = 402

    def __init__(self, code: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or code)
        self.code = code
        self.details = details or {}


class SettlementError(PaymentError):
    status_code = 500


class ConfigurationError(Exception):
    def __init__(self, message: str, missing_vars: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_vars = missing_vars or []


def classify_settlement_error(exc: BaseException) -> str:
    """Map a ledger/transport exception onto a settlement reason token."""
    if isinstance(exc, PaymentError):
        return exc.code
    msg = str(exc)
    if "insufficient funds" in msg.lower() or "Insufficient" in msg:
        return ErrorCodes.INSUFFICIENT_FUNDS
    if "blockhash" in msg.lower():
        return ErrorCodes.INVALID_BLOCKHASH
    if "signature" in msg.lower():
        return ErrorCodes.SIGNATURE_ERROR
    return ErrorCodes.UNKNOWN_ERROR
