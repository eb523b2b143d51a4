"""HTTP front end that places incoming requests on the priority queues."""

from __future__ import annotations

import re
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Mapping, Optional, Union
from urllib.parse import urlsplit

from .openai_client import extract_request_metadata
from .queue import (
    OVERLOADED_BODY,
    ForwardedRequest,
    QueueManager,
    ResponseRecorder,
    WorkRequest,
)

CORS_HEADERS = (
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Methods", "POST, GET, OPTIONS, PUT, DELETE"),
    ("Access-Control-Allow-Headers", "Content-Type, Authorization"),
)
METHOD_NOT_ALLOWED_BODY = b'{"error":"Method not allowed"}'
INVALID_PORT_BODY = b'{"error":"Invalid port"}'
NO_QUEUE_BODY = b'{"error":"No queue configured for this port"}'

_LOCAL_PREFIXES = ("localhost:", "127.0.0.1:")
_PORT_PATTERN = re.compile(r"[+-]?[0-9]+")
# Headers the server recomputes itself; the body has already been decoded.
_SKIPPED_HEADERS = frozenset(
    {"content-length", "content-encoding", "transfer-encoding", "connection", "keep-alive"}
)


def _port_of(host: str) -> Optional[int]:
    for prefix in _LOCAL_PREFIXES:
        if host.startswith(prefix):
            host = host[len(prefix):]
    if not _PORT_PATTERN.fullmatch(host):
        return None
    return int(host)


class RequestHandler:
    """Routes each request to the queue of the port it arrived on."""

    def __init__(self, queue_manager: QueueManager) -> None:
        self.queue_manager = queue_manager

    def handle(
        self,
        method: str,
        host: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Union[bytes, str, None] = None,
    ) -> ResponseRecorder:
        """Serve one request and return the response written for it.

        Blocks until the request has been answered, either directly or by
        the queue that took it.
        """
        response = ResponseRecorder()
        for name, value in CORS_HEADERS:
            response.add_header(name, value)

        if method == "OPTIONS":
            response.write_header(200)
            return response

        if method not in ("POST", "GET"):
            response.write_header(405)
            response.write(METHOD_NOT_ALLOWED_BODY)
            return response

        port = _port_of(host)
        if port is None:
            response.write_header(400)
            response.write(INVALID_PORT_BODY)
            return response

        queue = self.queue_manager.find_queue_by_port(port)
        if queue is None:
            response.write_header(404)
            response.write(NO_QUEUE_BODY)
            return response

        if isinstance(body, str):
            body = body.encode("utf-8")

        work = WorkRequest(
            request=ForwardedRequest(
                method=method, path=path, headers=dict(headers or {}), body=body
            ),
            response=response,
        )
        if body is not None:
            try:
                metadata = extract_request_metadata(body)
            except ValueError as exc:
                print(f"Failed to extract request metadata: {exc}", file=sys.stderr)
            else:
                work.model = metadata.model
                work.input_tokens = metadata.input_tokens
                work.tools = list(metadata.tools)

        if not queue.offer(work):
            response.write_header(429)
            response.write(OVERLOADED_BODY)
            return response

        work.done.wait()
        return response


class _ProxyServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address, proxy_handler: RequestHandler) -> None:
        self.proxy_handler = proxy_handler
        super().__init__(address, _HTTPRequestHandler)


class _HTTPRequestHandler(BaseHTTPRequestHandler):
    server: _ProxyServer

    def _dispatch(self) -> None:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            self.send_error(400, "Invalid Content-Length")
            return
        body = self.rfile.read(length) if length > 0 else b""

        result = self.server.proxy_handler.handle(
            self.command,
            self.headers.get("Host", ""),
            urlsplit(self.path).path or "/",
            dict(self.headers.items()),
            body,
        )

        payload = bytes(result.body)
        self.send_response(result.status)
        for name, values in result.headers.items():
            if name.lower() in _SKIPPED_HEADERS:
                continue
            for value in values:
                self.send_header(name, value)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = do_HEAD = _dispatch

    def log_message(self, format: str, *args: object) -> None:
        pass


def make_server(handler: RequestHandler, port: int) -> ThreadingHTTPServer:
    """Bind an HTTP server on all interfaces at ``port`` that serves ``handler``.

    The server is returned bound but not yet serving; call serve_forever().
    """
    return _ProxyServer(("", port), handler)