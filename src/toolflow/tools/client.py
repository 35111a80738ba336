"""JSON-RPC style client for remote tool gateways."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from toolflow.errors import ToolInvocationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0


class ToolClient(Protocol):
    """Uniform call contract; implementations never retry."""

    def call_tool(self, tool_id: str, name: str, arguments: Mapping[str, Any]) -> Any:
        """Invoke ``name`` on the tool and return the remote ``result``."""

    def close(self) -> None:
        """Release transport resources."""


class McpClient:
    """Posts ``{method, params, id}`` envelopes to one gateway URL.

    Any failure (transport error, non-2xx status, unreadable body, or an
    ``error`` member in the response) surfaces as :class:`ToolInvocationError`.
    """

    def __init__(
        self,
        gateway_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.gateway_url = gateway_url
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if timeout_seconds:
            timeout = httpx.Timeout(
                timeout_seconds,
                connect=min(DEFAULT_CONNECT_TIMEOUT_SECONDS, timeout_seconds),
            )
        else:
            timeout = httpx.Timeout(None)
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    def call_tool(self, tool_id: str, name: str, arguments: Mapping[str, Any]) -> Any:
        body = self._request(
            "tools/call",
            params={"name": name, "arguments": dict(arguments)},
            tool_id=tool_id,
        )
        return body.get("result")

    def list_tools(self) -> list[Any]:
        """Operations the gateway exposes."""

        body = self._request("tools/list", params=None, tool_id=None)
        result = body.get("result")
        if not isinstance(result, Mapping):
            return []
        tools = result.get("tools")
        return list(tools) if isinstance(tools, list) else []

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> McpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        *,
        params: dict[str, Any] | None,
        tool_id: str | None,
    ) -> dict[str, Any]:
        envelope: dict[str, Any] = {"method": method, "id": _generate_request_id()}
        if params is not None:
            envelope["params"] = params
        target = tool_id or self.gateway_url

        try:
            response = self._client.post(self.gateway_url, json=envelope)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s (%s)", target, method)
            raise ToolInvocationError(f"Tool request timed out: {method}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s (%s): %s", target, method, exc)
            raise ToolInvocationError(f"Tool request failed: {exc}") from exc

        if not response.is_success:
            raise ToolInvocationError(
                f"Tool request failed: HTTP {response.status_code} {response.reason_phrase}",
                code=response.status_code,
                data=response.text[:500] or None,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ToolInvocationError("Tool response is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ToolInvocationError("Tool response must be a JSON object")

        error = body.get("error")
        if error is not None:
            if not isinstance(error, Mapping):
                raise ToolInvocationError(str(error))
            code = error.get("code")
            raise ToolInvocationError(
                str(error.get("message") or "Unknown tool error"),
                code=code if isinstance(code, int) else None,
                data=error.get("data"),
            )
        return body


def _generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"
