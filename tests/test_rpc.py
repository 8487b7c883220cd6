"""
Tests for custodia_core.rpc — the aiohttp JSON-RPC client.

A real aiohttp server plays the node so the retry policy, timeouts and
error classification are exercised end to end.
"""

from __future__ import annotations

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from custodia_core.errors import NodeUnavailable
from custodia_core.rpc import RetryPolicy, RpcClient, RpcResponseError

NO_WAIT = RetryPolicy(attempts=3, backoff_seconds=0.0)


class _ScriptedNode:
    """Answers each POST with the next scripted behaviour."""

    def __init__(self, script):
        self.script = list(script)
        self.requests: list[dict] = []

    async def handle(self, request: web.Request) -> web.StreamResponse:
        payload = await request.json()
        self.requests.append(payload)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, int):
            return web.Response(status=step, text="unavailable")
        if step == "sleep":
            await asyncio.sleep(0.5)
            return web.json_response({"jsonrpc": "2.0", "id": payload["id"], "result": "0x1"})
        if step == "garbage":
            return web.Response(text="<html>oops</html>")
        return web.json_response({"jsonrpc": "2.0", "id": payload["id"], **step})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self.handle)
        return app


async def _client_for(node: _ScriptedNode, **kwargs):
    server = TestServer(node.app())
    await server.start_server()
    client = RpcClient(str(server.make_url("/")), retry_policy=kwargs.pop("retry_policy", NO_WAIT), **kwargs)
    return server, client


@pytest.mark.asyncio
class TestRpcClient:

    async def test_returns_result(self):
        node = _ScriptedNode([{"result": "0x2a"}])
        server, client = await _client_for(node)
        try:
            assert await client.call("eth_chainId") == "0x2a"
            req = node.requests[0]
            assert req["jsonrpc"] == "2.0"
            assert req["method"] == "eth_chainId"
            assert req["params"] == []
        finally:
            await client.close()
            await server.close()

    async def test_request_ids_increase(self):
        node = _ScriptedNode([{"result": "0x1"}])
        server, client = await _client_for(node)
        try:
            await client.call("eth_blockNumber")
            await client.call("eth_blockNumber")
            assert node.requests[1]["id"] > node.requests[0]["id"]
        finally:
            await client.close()
            await server.close()

    async def test_read_retries_transient_http_errors(self):
        node = _ScriptedNode([503, 429, {"result": "0x5"}])
        server, client = await _client_for(node)
        try:
            assert await client.call("eth_getBalance", ["0x0", "latest"]) == "0x5"
            assert len(node.requests) == 3
        finally:
            await client.close()
            await server.close()

    async def test_read_retries_are_bounded(self):
        node = _ScriptedNode([502])
        server, client = await _client_for(node)
        try:
            with pytest.raises(NodeUnavailable):
                await client.call("eth_blockNumber")
            assert len(node.requests) == NO_WAIT.attempts
        finally:
            await client.close()
            await server.close()

    async def test_submission_is_never_retried(self):
        node = _ScriptedNode([503, {"result": "0xhash"}])
        server, client = await _client_for(node)
        try:
            with pytest.raises(NodeUnavailable):
                await client.call("eth_sendRawTransaction", ["0x00"], retry=False)
            assert len(node.requests) == 1
        finally:
            await client.close()
            await server.close()

    async def test_rpc_error_object_not_retried(self):
        node = _ScriptedNode([{"error": {"code": -32000, "message": "insufficient funds"}}])
        server, client = await _client_for(node)
        try:
            with pytest.raises(RpcResponseError) as ctx:
                await client.call("eth_estimateGas", [{}])
            assert ctx.value.code == -32000
            assert ctx.value.message == "insufficient funds"
            assert len(node.requests) == 1
        finally:
            await client.close()
            await server.close()

    async def test_timeout_surfaces_as_node_unavailable(self):
        node = _ScriptedNode(["sleep"])
        server, client = await _client_for(
            node, timeout=0.05, retry_policy=RetryPolicy(attempts=2, backoff_seconds=0.0)
        )
        try:
            with pytest.raises(NodeUnavailable, match="timed out"):
                await client.call("eth_blockNumber")
            assert len(node.requests) == 2
        finally:
            await client.close()
            await server.close()

    async def test_non_json_body(self):
        node = _ScriptedNode(["garbage"])
        server, client = await _client_for(node)
        try:
            with pytest.raises(NodeUnavailable):
                await client.call("eth_blockNumber")
            assert len(node.requests) == 1
        finally:
            await client.close()
            await server.close()

    async def test_client_error_status_not_retried(self):
        node = _ScriptedNode([404])
        server, client = await _client_for(node)
        try:
            with pytest.raises(NodeUnavailable, match="HTTP 404"):
                await client.call("eth_blockNumber")
            assert len(node.requests) == 1
        finally:
            await client.close()
            await server.close()

    async def test_connection_refused(self):
        client = RpcClient("http://127.0.0.1:9/", retry_policy=RetryPolicy(attempts=2, backoff_seconds=0.0))
        try:
            with pytest.raises(NodeUnavailable):
                await client.call("eth_chainId")
        finally:
            await client.close()


class TestRetryPolicy:

    def test_exponential_backoff(self):
        p = RetryPolicy(attempts=4, backoff_seconds=0.5)
        assert [p.delay(i) for i in (1, 2, 3)] == [0.5, 1.0, 2.0]
