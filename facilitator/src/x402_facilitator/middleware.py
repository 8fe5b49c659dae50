# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable, Optional

from cachetools import TTLCache
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from .errors import ErrorCodes

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
API_KEY_HEADER = "x-api-key"


class RateLimiter:
    """Per-client minimum interval between requests.

    Last-seen times live in a TTLCache so idle clients age out.
    """

    def __init__(
        self,
        min_interval_ms: int,
        *,
        maxsize: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval_s = max(0, min_interval_ms) / 1000.0
        self._clock = clock
        self._last_seen: TTLCache[str, float] = TTLCache(
            maxsize=maxsize, ttl=max(self.min_interval_s, 1.0), timer=clock
        )

    def allow(self, client: str) -> bool:
        now = self._clock()
        last = self._last_seen.get(client)
        if last is not None and now - last < self.min_interval_s:
            return False
        self._last_seen[client] = now
        return True


class AccessControl:
    """HTTP middleware: request id, optional API key, per-IP rate limit."""

    def __init__(self, auth_token: str = "", rate_limiter: Optional[RateLimiter] = None):
        self.auth_token = auth_token
        self.rate_limiter = rate_limiter

    async def __call__(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        req_id = uuid.uuid4().hex
        request.state.req_id = req_id

        if self.auth_token and request.headers.get(API_KEY_HEADER, "") != self.auth_token:
            logger.warning(f"[{req_id}] Rejected {request.method} {request.url.path}: bad api key")
            response: Response = JSONResponse(status_code=401, content={"error": ErrorCodes.UNAUTHORIZED})
        elif self.rate_limiter is not None and not self.rate_limiter.allow(_client_ip(request)):
            logger.info(f"[{req_id}] Rate limited {_client_ip(request)}")
            response = JSONResponse(status_code=429, content={"error": ErrorCodes.RATE_LIMITED})
        else:
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = req_id
        return response


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def request_id(request: Request) -> str:
    return getattr(request.state, "req_id", None) or uuid.uuid4().hex
