"""Forwarding of requests to the upstream API and request inspection."""

from __future__ import annotations

import io
import json
import threading
from dataclasses import dataclass, field
from typing import IO, Any, List, Optional, Union

import httpx

REQUEST_TIMEOUT = 300.0  # long-running completions

Body = Union[bytes, str, IO[bytes], None]


class ForwardError(Exception):
    """Raised when a request cannot be forwarded upstream."""


@dataclass
class RequestMetadata:
    """Model, estimated input tokens and tool types of an API request."""

    model: str = ""
    input_tokens: int = 0
    tools: List[str] = field(default_factory=list)


def _to_bytes(body: Body) -> Optional[bytes]:
    if body is None:
        return None
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body)
    data = body.read()
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


class OpenAIClient:
    """HTTP client that relays requests to the upstream API."""

    def __init__(self, base_url: str, api_key: str, timeout: float = REQUEST_TIMEOUT) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.http_client = httpx.Client(timeout=timeout)

    def forward_request(
        self,
        method: str,
        path: str,
        body: Body = None,
        cancel: Optional[threading.Event] = None,
    ) -> httpx.Response:
        """Send a request upstream and return the fully read response.

        If ``cancel`` is set before the request is sent or before its
        response is returned, ForwardError is raised instead.
        """
        if not path.startswith("/"):
            path = "/" + path
        url = self.base_url + path

        try:
            request = self.http_client.build_request(
                method,
                url,
                content=_to_bytes(body),
                headers={
                    "Authorization": "Bearer " + self.api_key,
                    "Content-Type": "application/json",
                },
            )
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise ForwardError(f"error creating request: {exc}") from exc

        if cancel is not None and cancel.is_set():
            raise ForwardError("request cancelled")

        try:
            response = self.http_client.send(request)
        except httpx.HTTPError as exc:
            raise ForwardError(f"error making request to OpenAI API: {exc}") from exc

        if cancel is not None and cancel.is_set():
            response.close()
            raise ForwardError("request cancelled")
        return response

    def close(self) -> None:
        """Release the underlying connection pool."""
        self.http_client.close()

    def __enter__(self) -> "OpenAIClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _estimate(text: str) -> int:
    # Roughly one token per four bytes of input.
    return len(text.encode("utf-8")) // 4


def _estimate_all(items: List[Any]) -> int:
    return sum(_estimate(item) for item in items if isinstance(item, str))


def extract_request_metadata(body: Body) -> RequestMetadata:
    """Pull the model name, a token estimate and tool types from a JSON body.

    Raises ValueError if the body is not a JSON object.
    """
    data = _to_bytes(body)
    if data is None:
        return RequestMetadata()

    request = json.loads(data)
    if request is None:
        return RequestMetadata()
    if not isinstance(request, dict):
        raise ValueError("request body must be a JSON object")

    model = request.get("model")
    metadata = RequestMetadata(model=model if isinstance(model, str) else "")

    messages = request.get("messages")
    prompt = request.get("prompt")
    inputs = request.get("input")
    if isinstance(messages, list):
        metadata.input_tokens = _estimate_all(
            [msg.get("content") for msg in messages if isinstance(msg, dict)]
        )
    elif isinstance(prompt, str):
        metadata.input_tokens = _estimate(prompt)
    elif isinstance(prompt, list):
        metadata.input_tokens = _estimate_all(prompt)
    elif isinstance(inputs, str):
        metadata.input_tokens = _estimate(inputs)
    elif isinstance(inputs, list):
        metadata.input_tokens = _estimate_all(inputs)

    tools = request.get("tools")
    if isinstance(tools, list):
        metadata.tools = [
            tool["type"]
            for tool in tools
            if isinstance(tool, dict) and isinstance(tool.get("type"), str)
        ]
    return metadata


def rewrite_body(body: Body) -> Optional[io.BytesIO]:
    """Return a fresh reader holding the same content, or None for no body."""
    data = _to_bytes(body)
    if data is None:
        return None
    return io.BytesIO(data)