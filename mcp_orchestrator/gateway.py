"""Stdio JSON-RPC gateway presenting every running backend as one tool server.

Protocol:
- One JSON-RPC 2.0 message per line on stdin, one response per line on stdout
- Messages without an id, and any notifications/* method, get no response
- Bad input produces an error response; only end of stream stops the loop
"""

from __future__ import annotations

import json
import logging
import sys
from threading import Lock
from typing import Any, TextIO

from pydantic import ValidationError

from mcp_orchestrator import __version__
from mcp_orchestrator.aggregator import ToolAggregator, ToolNotFoundError
from mcp_orchestrator.relay import PROTOCOL_VERSION, RelayError
from mcp_orchestrator.schemas import ToolCallParams, ToolListParams

logger = logging.getLogger(__name__)

SERVER_INFO = {"name": "MCP Orchestrator", "version": __version__}

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

CALL_FAILED_MESSAGE = "Failed to execute tool - backend may not be running or tool not found"


class RPCError(Exception):
    """A failure that maps onto a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


def result_response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error_response(request_id: Any, error: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def is_notification(message: dict[str, Any]) -> bool:
    method = message.get("method")
    if isinstance(method, str) and method.startswith("notifications/"):
        return True
    return "id" not in message


class ProtocolGateway:
    """Sequential read-dispatch-write loop over newline-delimited JSON-RPC."""

    def __init__(self, aggregator: ToolAggregator):
        self.aggregator = aggregator
        self._write_lock = Lock()
        self._handlers = {
            "initialize": self._initialize,
            "tools/list": self._tools_list,
            "tools/categories": self._tools_categories,
            "tools/call": self._tools_call,
            "resources/list": lambda params: {"resources": []},
            "prompts/list": lambda params: {"prompts": []},
        }

    def serve(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """Handle lines until stdin is closed.

        Each request completes before the next line is read, so responses
        come out in request order.
        """
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        logger.info("Gateway listening on stdio")

        for line in stdin:
            response = self.handle_line(line)
            if response is not None:
                self._write(stdout, response)

        logger.info("Stdin closed, gateway exiting")

    def _write(self, stdout: TextIO, message: dict[str, Any]) -> None:
        payload = json.dumps(message)
        with self._write_lock:
            stdout.write(payload + "\n")
            stdout.flush()

    def handle_line(self, line: str) -> dict[str, Any] | None:
        """Parse one line and return the response to send, if any."""
        line = line.strip()
        if not line:
            return None

        try:
            message = json.loads(line)
        except ValueError as e:
            logger.warning(f"Unparseable input: {e}")
            return error_response(None, {"code": PARSE_ERROR, "message": f"Parse error: {e}"})

        return self.handle_message(message)

    def handle_message(self, message: Any) -> dict[str, Any] | None:
        if not isinstance(message, dict):
            return error_response(None, {"code": INVALID_REQUEST, "message": "Invalid request: expected a JSON object"})

        if is_notification(message):
            logger.debug(f"Notification: {message.get('method')}")
            return None

        request_id = message.get("id")
        method = message.get("method")
        if not isinstance(method, str):
            return error_response(request_id, {"code": INVALID_REQUEST, "message": "Invalid request: missing method"})

        params = message.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return error_response(request_id, {"code": INVALID_PARAMS, "message": "Invalid params: expected an object"})

        handler = self._handlers.get(method)
        if handler is None:
            return error_response(request_id, {"code": METHOD_NOT_FOUND, "message": f"Unknown method: {method}"})

        try:
            return result_response(request_id, handler(params))
        except RPCError as e:
            return error_response(request_id, e.to_dict())
        except Exception as e:
            logger.error(f"Unhandled error in {method}: {e}", exc_info=True)
            return error_response(request_id, {"code": INTERNAL_ERROR, "message": f"Internal error: {e}"})

    # --- Methods ---

    def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        client = params.get("clientInfo") or {}
        if isinstance(client, dict) and client.get("name"):
            logger.info(f"Client connected: {client.get('name')} {client.get('version', '')}".rstrip())
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": dict(SERVER_INFO),
        }

    def _tools_list(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            list_params = ToolListParams(**params)
        except ValidationError as e:
            raise RPCError(INVALID_PARAMS, f"Invalid params: {e.errors()[0]['msg']}") from e
        return self.aggregator.list_tools(list_params)

    def _tools_categories(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.aggregator.categories()

    def _tools_call(self, params: dict[str, Any]) -> Any:
        try:
            call = ToolCallParams(**params)
        except ValidationError as e:
            raise RPCError(INVALID_PARAMS, f"Invalid params: {e.errors()[0]['msg']}") from e

        try:
            outcome = self.aggregator.call_tool(call.name, call.arguments)
        except ToolNotFoundError as e:
            raise RPCError(INVALID_PARAMS, str(e)) from e
        except RelayError as e:
            logger.warning(f"Tool call {call.name} failed: {e}")
            raise RPCError(INTERNAL_ERROR, CALL_FAILED_MESSAGE) from e

        if "error" in outcome:
            error = outcome["error"]
            if isinstance(error, dict) and "code" in error and "message" in error:
                raise RPCError(error["code"], str(error["message"]), error.get("data"))
            raise RPCError(INTERNAL_ERROR, str(error))
        return outcome.get("result")
