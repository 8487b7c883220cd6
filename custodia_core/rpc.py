"""
JSON-RPC client for the blockchain node, built on ``aiohttp``.

Retry behaviour is explicit and bounded:

  - Calls made with ``retry=True`` (read-only methods) are retried up to
    ``RetryPolicy.attempts`` times, with exponential backoff, on transient
    failures only: connection errors, timeouts, HTTP 429 and HTTP 5xx.
  - Calls made with ``retry=False`` (transaction submission) are attempted
    exactly once.  An ambiguous failure after a submission must never turn
    into a second broadcast.
  - A JSON-RPC ``error`` object in the response is never retried; it is
    raised as ``RpcResponseError`` for the caller to classify.

Every request carries an ``aiohttp.ClientTimeout`` so a silent node surfaces
as ``NodeUnavailable`` instead of hanging the request.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from custodia_core.errors import NodeUnavailable

logger = logging.getLogger("custodia_rpc")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule for read-only calls."""

    attempts: int = 3
    backoff_seconds: float = 0.5

    def delay(self, attempt: int) -> float:
        """Sleep before retry number *attempt* (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))


class RpcResponseError(Exception):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: int | None, message: str, data: Any = None):
        self.method = method
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"{method}: {message}")


class _TransientError(Exception):
    """Internal marker for failures that a read may retry."""


class RpcClient:
    """Minimal async JSON-RPC 2.0 client over HTTP."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    # ── lifecycle ────────────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> RpcClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── calls ────────────────────────────────────────────────────

    async def call(self, method: str, params: list[Any] | None = None, *, retry: bool = True) -> Any:
        """Invoke *method* and return its ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        attempts = max(1, self.retry_policy.attempts) if retry else 1
        last_error: str = ""
        for attempt in range(1, attempts + 1):
            try:
                return await self._post_once(method, payload)
            except _TransientError as exc:
                last_error = str(exc)
                if attempt < attempts:
                    delay = self.retry_policy.delay(attempt)
                    logger.warning(
                        f"{method} failed ({last_error}); retry {attempt}/{attempts - 1} in {delay:.2f}s",
                        extra={"rpc_method": method},
                    )
                    await asyncio.sleep(delay)
        raise NodeUnavailable(f"Node request {method} failed: {last_error}")

    async def _post_once(self, method: str, payload: dict[str, Any]) -> Any:
        session = await self._get_session()
        try:
            async with session.post(self.url, json=payload) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise _TransientError(f"HTTP {resp.status}")
                if resp.status != 200:
                    raise NodeUnavailable(f"Node request {method} failed: HTTP {resp.status}")
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    raise NodeUnavailable(f"Node returned a non-JSON response to {method}") from None
        except asyncio.TimeoutError:
            raise _TransientError("timed out") from None
        except aiohttp.ClientError as exc:
            raise _TransientError(type(exc).__name__) from None

        if not isinstance(body, dict):
            raise NodeUnavailable(f"Node returned a malformed response to {method}")
        err = body.get("error")
        if err is not None:
            if isinstance(err, dict):
                raise RpcResponseError(method, err.get("code"), str(err.get("message", "")), err.get("data"))
            raise RpcResponseError(method, None, str(err))
        if "result" not in body:
            raise NodeUnavailable(f"Node response to {method} has no result")
        return body["result"]
