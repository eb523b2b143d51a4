"""Command that runs one proxy listener for each configured endpoint."""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from dataclasses import dataclass, field
from http.server import ThreadingHTTPServer
from typing import List, Optional, Sequence

from .config import Config, load_config
from .handler import RequestHandler, make_server
from .metrics import MetricsCollector, new_metrics_collector
from .openai_client import OpenAIClient
from .queue import QueueManager

DEFAULT_CONFIG_PATH = "config.json"


@dataclass
class _Proxy:
    client: OpenAIClient
    collector: MetricsCollector
    manager: QueueManager
    stop_scheduler: threading.Event
    scheduler: threading.Thread
    servers: List[ThreadingHTTPServer] = field(default_factory=list)

    def shutdown(self) -> None:
        self.stop_scheduler.set()
        for server in self.servers:
            try:
                server.shutdown()
                server.server_close()
            except OSError as exc:
                print(f"Error shutting down server: {exc}", file=sys.stderr)
        self.scheduler.join(timeout=1.0)
        self.collector.close()
        self.client.close()


def _start(config: Config) -> _Proxy:
    client = OpenAIClient(config.openai_api_url, config.openai_api_key)
    collector = new_metrics_collector(
        config.influxdb_url, config.influx_token, config.influx_org, config.influx_bucket
    )
    manager = QueueManager(config.endpoints, client)
    stop = threading.Event()
    scheduler = threading.Thread(
        target=manager.start_scheduler, args=(stop,), name="scheduler", daemon=True
    )
    scheduler.start()
    proxy = _Proxy(client, collector, manager, stop, scheduler)

    handler = RequestHandler(manager)
    for endpoint in config.endpoints:
        print(f"Starting proxy on :{endpoint.port}", file=sys.stderr)
        try:
            server = make_server(handler, endpoint.port)
        except OSError as exc:
            print(f"Server error: {exc}", file=sys.stderr)
            continue
        proxy.servers.append(server)
        threading.Thread(
            target=server.serve_forever, name=f"listener-{endpoint.port}", daemon=True
        ).start()
    return proxy


def _wait_for_signal() -> None:
    received = threading.Event()

    def _on_signal(signum, frame) -> None:
        received.set()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        while not received.wait(0.2):
            pass
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old if old is not None else signal.SIG_DFL)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="priorityproxy",
        description="Prioritising, preempting proxy for an OpenAI-compatible API.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"path of the JSON configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the proxy until interrupted; return the process exit status."""
    args = _parse_args(argv)
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"Failed to load config: {exc}", file=sys.stderr)
        return 1

    proxy = _start(config)
    print("OpenAI Proxy is running with preemption prioritization", file=sys.stderr)
    try:
        _wait_for_signal()
    finally:
        print("Shutting down servers...", file=sys.stderr)
        proxy.shutdown()
    print("Servers gracefully stopped", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())