# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from typing import Any, Dict, Optional, Union

import httpx

from .types import X402_VERSION, PaymentRequirements, SettleResult, VerifyResult


def _is_json(r: httpx.Response) -> bool:
    return (r.headers.get("content-type") or "").split(";", 1)[0].strip().lower() == "application/json"


class FacilitatorClient:
    """Async client for a facilitator's `/verify` and `/settle`.

    Transport problems, unexpected statuses and non-JSON bodies raise
    `httpx.HTTPError`; protocol verdicts come back as result models.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("base_url required")
        base = base_url.rstrip("/")
        self.verify_url = f"{base}/verify"
        self.settle_url = f"{base}/settle"
        headers = {"x-api-key": api_key} if api_key else {}
        self.http = httpx.AsyncClient(
            timeout=timeout_s, follow_redirects=True, headers=headers, transport=transport
        )

    @staticmethod
    def _body(payment_header: str, requirements: Union[PaymentRequirements, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(requirements, PaymentRequirements):
            requirements = requirements.model_dump(by_alias=True)
        return {"x402Version": X402_VERSION, "paymentHeader": payment_header, "paymentRequirements": requirements}

    async def verify(
        self, payment_header: str, requirements: Union[PaymentRequirements, Dict[str, Any]]
    ) -> VerifyResult:
        r = await self.http.post(self.verify_url, json=self._body(payment_header, requirements))
        r.raise_for_status()
        if not _is_json(r):
            raise httpx.HTTPError("invalid content-type from /verify")
        return VerifyResult.model_validate(r.json())

    async def settle(
        self, payment_header: str, requirements: Union[PaymentRequirements, Dict[str, Any]]
    ) -> SettleResult:
        r = await self.http.post(self.settle_url, json=self._body(payment_header, requirements))
        # A failed settlement is reported as 500 with a SettleResult body.
        if r.status_code == 500 and _is_json(r):
            data = r.json()
            if isinstance(data, dict) and "success" in data:
                return SettleResult.model_validate(data)
        r.raise_for_status()
        if not _is_json(r):
            raise httpx.HTTPError("invalid content-type from /settle")
        return SettleResult.model_validate(r.json())

    async def aclose(self) -> None:
        await self.http.aclose()
