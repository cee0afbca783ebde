"""Tests for the stdio JSON-RPC gateway."""

import io
import json
from unittest.mock import MagicMock

import pytest

from mcp_orchestrator.aggregator import ToolAggregator, ToolNotFoundError
from mcp_orchestrator.gateway import CALL_FAILED_MESSAGE, ProtocolGateway
from mcp_orchestrator.relay import RelaySpawnError
from mcp_orchestrator.schemas import ToolListParams


@pytest.fixture
def aggregator():
    mock = MagicMock(spec=ToolAggregator)
    mock.list_tools.return_value = {"tools": [], "diagnostics": [], "_meta": {"total_count": 0}}
    mock.categories.return_value = {"categories": [], "total_tools": 0}
    mock.call_tool.return_value = {"result": {"content": [{"type": "text", "text": "ok"}]}}
    return mock


@pytest.fixture
def gateway(aggregator):
    return ProtocolGateway(aggregator)


def request(method, request_id=1, params=None):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message)


class TestDispatch:
    """Test per-method responses."""

    def test_initialize(self, gateway):
        """initialize returns static server info and echoes the id."""
        response = gateway.handle_line(request("initialize", 7, {"clientInfo": {"name": "client"}}))
        assert response["jsonrpc"] == "2.0"
        assert response["id"] == 7
        assert response["result"]["protocolVersion"] == "2024-11-05"
        assert response["result"]["capabilities"] == {"tools": {}}
        assert response["result"]["serverInfo"]["name"] == "MCP Orchestrator"

    def test_static_lists(self, gateway):
        """resources/list and prompts/list are always empty."""
        assert gateway.handle_line(request("resources/list"))["result"] == {"resources": []}
        assert gateway.handle_line(request("prompts/list"))["result"] == {"prompts": []}

    def test_string_id_echoed(self, gateway):
        """Non-numeric ids are echoed unchanged."""
        assert gateway.handle_line(request("prompts/list", "abc"))["id"] == "abc"

    def test_tools_list_params(self, gateway, aggregator):
        """tools/list params are parsed and passed to the aggregator."""
        gateway.handle_line(request("tools/list", 2, {"limit": 10, "category": "crm", "ultra_minimal": True}))
        params = aggregator.list_tools.call_args[0][0]
        assert isinstance(params, ToolListParams)
        assert params.limit == 10
        assert params.category == "crm"
        assert params.ultra_minimal is True
        assert params.simplified is True

    def test_tools_list_defaults(self, gateway, aggregator):
        """Missing params use the defaults."""
        response = gateway.handle_line(request("tools/list"))
        assert "result" in response
        assert aggregator.list_tools.call_args[0][0].limit == 25

    def test_tools_list_invalid_params(self, gateway):
        """A negative limit is rejected as invalid params."""
        response = gateway.handle_line(request("tools/list", 3, {"limit": -1}))
        assert response["error"]["code"] == -32602
        assert response["id"] == 3

    def test_tools_categories(self, gateway):
        """tools/categories passes the aggregator result through."""
        response = gateway.handle_line(request("tools/categories"))
        assert response["result"] == {"categories": [], "total_tools": 0}

    def test_unknown_method(self, gateway):
        """Unknown methods produce an error naming the method."""
        response = gateway.handle_line(request("sampling/create", 4))
        assert response["id"] == 4
        assert response["error"]["code"] == -32601
        assert response["error"]["message"] == "Unknown method: sampling/create"

    def test_internal_failure_contained(self, gateway, aggregator):
        """An unexpected exception becomes an internal error response."""
        aggregator.categories.side_effect = RuntimeError("boom")
        response = gateway.handle_line(request("tools/categories", 5))
        assert response["error"]["code"] == -32603
        assert response["id"] == 5


class TestToolsCall:
    """Test tools/call error mapping."""

    def test_success_returns_raw_result(self, gateway, aggregator):
        """The backend's result is returned unchanged."""
        response = gateway.handle_line(request("tools/call", 9, {"name": "echo", "arguments": {"text": "x"}}))
        assert response["result"] == {"content": [{"type": "text", "text": "ok"}]}
        aggregator.call_tool.assert_called_once_with("echo", {"text": "x"})

    def test_unknown_tool(self, gateway, aggregator):
        """A tool nobody exposes is an error, not a crash."""
        aggregator.call_tool.side_effect = ToolNotFoundError("Tool not found: ghost")
        response = gateway.handle_line(request("tools/call", 9, {"name": "ghost"}))
        assert response["error"]["code"] == -32602
        assert "ghost" in response["error"]["message"]

    def test_relay_failure_is_generic(self, gateway, aggregator):
        """Relay failures do not leak OS detail."""
        aggregator.call_tool.side_effect = RelaySpawnError("[Errno 2] No such file or directory: '/x/node'")
        response = gateway.handle_line(request("tools/call", 9, {"name": "echo"}))
        assert response["error"] == {"code": -32603, "message": CALL_FAILED_MESSAGE}

    def test_backend_error_surfaced(self, gateway, aggregator):
        """A backend error object becomes the JSON-RPC error."""
        aggregator.call_tool.return_value = {"error": {"code": -32000, "message": "rate limited", "data": {"retry": 5}}}
        response = gateway.handle_line(request("tools/call", 9, {"name": "echo"}))
        assert response["error"] == {"code": -32000, "message": "rate limited", "data": {"retry": 5}}
        assert "result" not in response

    def test_missing_name(self, gateway, aggregator):
        """A call without a name is invalid params."""
        response = gateway.handle_line(request("tools/call", 9, {"arguments": {}}))
        assert response["error"]["code"] == -32602
        aggregator.call_tool.assert_not_called()


class TestMalformedInput:
    """Test that bad input never stops the gateway."""

    def test_parse_error(self, gateway):
        """Malformed JSON yields -32700 with a null id."""
        response = gateway.handle_line("{not json")
        assert response["error"]["code"] == -32700
        assert response["id"] is None

    def test_non_object(self, gateway):
        """A JSON array is an invalid request."""
        assert gateway.handle_line("[1, 2]")["error"]["code"] == -32600

    def test_blank_line_ignored(self, gateway):
        """Blank lines produce nothing."""
        assert gateway.handle_line("   \n") is None

    def test_notifications_silent(self, gateway):
        """notifications/* and id-less messages get no response."""
        assert gateway.handle_line(json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"})) is None
        assert gateway.handle_line(request("notifications/cancelled", 3)) is None
        assert gateway.handle_line(json.dumps({"jsonrpc": "2.0", "method": "tools/list"})) is None


class TestServeLoop:
    """Test the read-dispatch-write loop."""

    def test_responses_in_request_order(self, gateway):
        """Each request gets exactly one line, in order; notifications none."""
        stdin = io.StringIO("\n".join([
            request("initialize", 1),
            json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
            "garbage",
            "",
            request("tools/list", 2),
            request("prompts/list", 3),
        ]) + "\n")
        stdout = io.StringIO()

        gateway.serve(stdin, stdout)

        lines = stdout.getvalue().splitlines()
        responses = [json.loads(line) for line in lines]
        assert [r["id"] for r in responses] == [1, None, 2, 3]
        assert responses[1]["error"]["code"] == -32700
        assert all(r["jsonrpc"] == "2.0" for r in responses)
