"""
Local HTTP API for Custodia.

Built on ``aiohttp``.  A thin shell around ``CustodyService``; every
decision about keys, amounts and transactions lives in the core.

Endpoints
---------
GET  /health      Liveness, expected chain id, whether a wallet is loaded
POST /import      Multipart upload: ``keystore`` file + ``password`` field
GET  /balances    Native and token balance of the loaded wallet
POST /send        ``{"to": ..., "amount": ...}`` (JSON or form)
POST /clear       Forget the loaded wallet

Security
--------
- The keystore upload and password are read into memory only; the password
  buffer is zeroed once decryption finishes.
- Optional API key on POST endpoints via ``X-API-Key`` (timing-safe).
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS allow-list (no wildcard).
- Request body size cap (``max_body_bytes``, default 5 MiB).

Core errors map to ``{"error": kind, "message": ...}`` with a status code
per kind.  Anything else propagates to aiohttp as a 500.

Usage:
    api = APIServer(service, api_config=cfg.api)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from custodia_core.crypto_utils import wipe
from custodia_core.errors import CustodyError

if TYPE_CHECKING:
    from custodia_core.config import APIConfig
    from custodia_core.service import CustodyService

logger = logging.getLogger("custodia_api")

ERROR_STATUS: dict[str, int] = {
    "UnsupportedFormat": 400,
    "InvalidPassword": 401,
    "InvalidRecipient": 400,
    "InvalidAmount": 400,
    "NoIdentityLoaded": 409,
    "NodeUnavailable": 503,
    "TransferFailed": 502,
}


def _error_response(status: int, kind: str, message: str) -> web.Response:
    return web.json_response({"error": kind, "message": message}, status=status)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket refilled at ``rpm / 60`` tokens per second."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # <= 0 disables limiting
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        tokens, last = self._buckets[ip]
        now = time.monotonic()
        tokens = min(float(self._rpm), tokens + (now - last) * self._rpm / 60.0)
        allowed = tokens >= 1.0
        self._buckets[ip] = [tokens - 1.0 if allowed else tokens, now]
        return allowed


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_error_middleware():
    """Translate ``CustodyError`` into its JSON body and status."""

    @web.middleware
    async def error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except CustodyError as exc:
            status = ERROR_STATUS.get(exc.kind, 500)
            logger.warning(f"{request.method} {request.path} -> {exc.kind}: {exc.message}")
            return web.json_response(exc.to_dict(), status=status)

    return error_middleware


def _make_rate_limit_middleware(bucket: _TokenBucket):
    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        if not bucket.allow(request.remote or "unknown"):
            resp = _error_response(429, "RateLimited", "Rate limit exceeded. Try again later.")
            resp.headers["Retry-After"] = "5"
            return resp
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on POST requests (header only, never query)."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method == "POST":
            supplied = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(supplied.encode(), api_key.encode()):
                return _error_response(401, "Unauthorized", "Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """Echo CORS headers for explicitly listed origins; ``*`` is ignored."""

    allowed = {o for o in origins if o != "*"}

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        resp = web.Response(status=204) if request.method == "OPTIONS" else await handler(request)
        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Vary"] = "Origin"
        return resp

    return cors_middleware


def build_middlewares(cfg: APIConfig | None) -> list:
    middlewares: list = []
    if cfg is not None:
        if cfg.rate_limit_rpm > 0:
            middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
        if cfg.cors_origins:
            middlewares.append(_make_cors_middleware(cfg.cors_origins))
        if cfg.api_key:
            middlewares.append(_make_api_key_middleware(cfg.api_key))
    middlewares.append(_make_error_middleware())
    return middlewares


# ═══════════════════════════════════════════════════════════════════
#  Server
# ═══════════════════════════════════════════════════════════════════

class APIServer:
    """aiohttp application exposing a ``CustodyService``."""

    def __init__(
        self,
        service: CustodyService,
        host: str = "127.0.0.1",
        port: int = 8787,
        *,
        api_config: APIConfig | None = None,
    ):
        self.service = service
        self.host = api_config.host if api_config else host
        self.port = api_config.port if api_config else port
        self._api_config = api_config
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        max_body = self._api_config.max_body_bytes if self._api_config else 5 * 1024 * 1024
        app = web.Application(
            middlewares=build_middlewares(self._api_config),
            client_max_size=max_body,
        )
        app.router.add_get("/health", self._health)
        app.router.add_post("/import", self._import)
        app.router.add_get("/balances", self._balances)
        app.router.add_post("/send", self._send)
        app.router.add_post("/clear", self._clear)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Custodia API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "chainId": self.service.expected_chain_id,
            "loaded": self.service.session.loaded,
        })

    async def _import(self, request: web.Request) -> web.Response:
        if not request.content_type.startswith("multipart/"):
            return _error_response(400, "BadRequest", "Expected multipart/form-data upload")

        document: bytearray | None = None
        password: bytearray | None = None
        try:
            reader = await request.multipart()
            async for part in reader:
                if part.name == "keystore":
                    document = await part.read()
                elif part.name == "password":
                    password = await part.read()
                else:
                    await part.release()

            if not document:
                return _error_response(400, "BadRequest", "No file uploaded (field name: keystore)")
            if not password:
                return _error_response(400, "BadRequest", "Password is required")

            result = await self.service.import_keystore(bytes(document), password)
        finally:
            wipe(password)
            wipe(document)
        return web.json_response(result.to_dict())

    async def _balances(self, request: web.Request) -> web.Response:
        balances = await self.service.get_balances()
        return web.json_response(balances.to_dict())

    async def _send(self, request: web.Request) -> web.Response:
        body = await self._read_fields(request)
        to = body.get("to")
        amount = body.get("amount")
        if not to or amount in (None, ""):
            return _error_response(400, "BadRequest", 'Fields "to" and "amount" are required')
        receipt = await self.service.send_token(str(to), str(amount))
        return web.json_response(receipt.to_dict())

    async def _clear(self, request: web.Request) -> web.Response:
        await self.service.clear()
        return web.json_response({"ok": True, "loaded": False})

    @staticmethod
    async def _read_fields(request: web.Request) -> dict[str, Any]:
        if request.content_type == "application/json":
            try:
                data = await request.json()
            except json.JSONDecodeError:
                raise web.HTTPBadRequest(text="Invalid JSON body") from None
            if not isinstance(data, dict):
                raise web.HTTPBadRequest(text="JSON body must be an object")
            return data
        return dict(await request.post())
