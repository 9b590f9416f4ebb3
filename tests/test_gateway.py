"""Tests for the assembled gateway app: health, info and the RPC endpoint it mounts."""

import httpx
import pytest
from inline_snapshot import snapshot
from starlette.applications import Starlette

from paygate import __version__
from paygate.gateway import create_app
from paygate.settings import Settings

pytestmark = pytest.mark.anyio


async def _initialize(client: httpx.AsyncClient) -> httpx.Response:
    return await client.post(
        "/mcp",
        json={
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {"protocolVersion": "2025-11-25", "capabilities": {}, "clientInfo": {"name": "t", "version": "1"}},
        },
    )


async def test_health_reports_open_sessions(client: httpx.AsyncClient):
    before = await client.get("/health")
    await _initialize(client)
    await _initialize(client)
    after = await client.get("/health")

    assert before.status_code == 200
    assert before.json()["status"] == "healthy"
    assert before.json()["sessions"] == 0
    assert after.json()["sessions"] == 2
    assert after.json()["uptime"] >= 0
    assert after.json()["timestamp"]


async def test_health_without_handler_reports_no_sessions(app: Starlette):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/health")

    assert resp.json()["sessions"] == 0


async def test_info_lists_endpoints_tools_and_resources(client: httpx.AsyncClient):
    resp = await client.get("/")

    info = resp.json()
    assert info["name"] == "paygate"
    assert info["version"] == __version__
    assert info["endpoints"] == snapshot(
        {
            "rpc": "/mcp",
            "health": "/health",
            "webhooks": {
                "coinpayments": "/webhook/coinpayments",
                "nowpayments": "/webhook/nowpayments",
                "coinbase-commerce": "/webhook/coinbase-commerce",
                "direct-crypto": "/webhook/direct-crypto",
            },
        }
    )
    assert info["tools"][:3] == ["echo", "calculate", "get-weather"]
    assert "nowpayments-create-invoice" in info["tools"]
    assert "comput3-job-status" in info["tools"]
    assert "coinpayments-verify-ipn" in info["tools"]
    assert info["resources"] == ["config://server", "status://{component}"]


async def test_initialize_announces_capabilities_and_instructions(client: httpx.AsyncClient):
    resp = await _initialize(client)

    result = resp.json()["result"]
    assert result["serverInfo"] == {"name": "paygate", "version": __version__}
    assert result["capabilities"] == {
        "tools": {"listChanged": False},
        "resources": {"subscribe": False, "listChanged": False},
    }
    assert "notifications/message" in result["instructions"]


async def test_tools_list_over_the_gateway(client: httpx.AsyncClient):
    session_id = (await _initialize(client)).headers["mcp-session-id"]

    resp = await client.post(
        "/mcp", json={"jsonrpc": "2.0", "id": 2, "method": "tools/list"}, headers={"mcp-session-id": session_id}
    )

    tools = {tool["name"]: tool for tool in resp.json()["result"]["tools"]}
    assert len(tools) == 22
    assert tools["coinbase-commerce-cancel-charge"]["annotations"]["destructiveHint"] is True


async def test_payment_tool_without_api_key_is_an_error_result(client: httpx.AsyncClient):
    session_id = (await _initialize(client)).headers["mcp-session-id"]

    resp = await client.post(
        "/mcp",
        json={
            "jsonrpc": "2.0",
            "id": 2,
            "method": "tools/call",
            "params": {"name": "nowpayments-get-currencies", "arguments": {}},
        },
        headers={"mcp-session-id": session_id},
    )

    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["isError"] is True
    assert result["content"][0]["text"] == (
        "Error executing tool nowpayments-get-currencies: NOWPAYMENTS_API_KEY is not set"
    )


def test_settings_choose_rpc_path_and_server_name():
    app = create_app(Settings(_env_file=None, rpc_path="/rpc", server_name="billing"))  # type: ignore[call-arg]

    assert app.state.server.name == "billing"
    assert any(getattr(route, "path", None) == "/rpc" for route in app.routes)
