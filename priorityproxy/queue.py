"""Priority queues of pending requests and the scheduler that serves them."""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass, field
from queue import Empty, Full, Queue
from typing import Dict, Iterable, List, Optional, Protocol

import httpx

from .config import Endpoint
from .metrics import RequestMetrics, get_collector

DEFAULT_CAPACITY = 100
SCHEDULER_INTERVAL = 0.01
PREEMPT_CHECK_INTERVAL = 0.05
OVERLOADED_BODY = b'{"error":"Service overloaded, please try again later"}'


class ForwardingClient(Protocol):
    """Anything that can relay a request upstream."""

    def forward_request(
        self,
        method: str,
        path: str,
        body: Optional[bytes],
        cancel: Optional[threading.Event],
    ) -> httpx.Response: ...


def _canonical(name: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.split("-"))


@dataclass
class ResponseRecorder:
    """Collects the status, headers and body written for one response."""

    status: int = 200
    headers: Dict[str, List[str]] = field(default_factory=dict)
    body: bytearray = field(default_factory=bytearray)
    header_written: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def write_header(self, status: int) -> None:
        """Set the status code; only the first call has any effect."""
        with self._lock:
            if not self.header_written:
                self.status = status
                self.header_written = True

    def add_header(self, name: str, value: str) -> None:
        """Append a value to a response header."""
        with self._lock:
            self.headers.setdefault(_canonical(name), []).append(value)

    def write(self, data: bytes) -> int:
        """Append to the body, sending a 200 status first if none was set."""
        with self._lock:
            self.header_written = True
            self.body.extend(data)
        return len(data)


@dataclass
class ForwardedRequest:
    """The parts of an incoming request needed to relay it."""

    method: str = "GET"
    path: str = "/"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


@dataclass
class WorkRequest:
    """A queued request together with its scheduling state."""

    request: ForwardedRequest
    response: ResponseRecorder = field(default_factory=ResponseRecorder)
    done: threading.Event = field(default_factory=threading.Event)
    preempt_cancel: Optional[threading.Event] = None
    start_time: float = field(default_factory=time.monotonic)
    model: str = ""
    input_tokens: int = 0
    processing_time: float = 0.0
    tools: List[str] = field(default_factory=list)
    retry_count: int = 0
    preempted: bool = False


class PriorityQueue:
    """A bounded queue of requests served at one priority.

    Lower numbers are higher priorities; 1 is the top.
    """

    def __init__(
        self,
        port: int,
        priority: int,
        preemptive: bool = False,
        capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self.port = port
        self.priority = priority
        self.preemptive = preemptive
        self.capacity = capacity
        self._requests: "Queue[WorkRequest]" = Queue(maxsize=capacity)

    def offer(self, request: WorkRequest) -> bool:
        """Enqueue without waiting; return False if the queue is full."""
        try:
            self._requests.put_nowait(request)
        except Full:
            return False
        return True

    def poll(self) -> Optional[WorkRequest]:
        """Dequeue without waiting; return None if the queue is empty."""
        try:
            return self._requests.get_nowait()
        except Empty:
            return None

    def pending(self) -> int:
        """Number of requests waiting in the queue."""
        return self._requests.qsize()

    def __repr__(self) -> str:
        return (
            f"PriorityQueue(port={self.port}, priority={self.priority}, "
            f"preemptive={self.preemptive}, pending={self.pending()})"
        )


class QueueManager:
    """Owns the priority queues and forwards their requests upstream."""

    def __init__(
        self,
        endpoints: Iterable[Endpoint] = (),
        openai_client: Optional[ForwardingClient] = None,
        queues: Optional[List[PriorityQueue]] = None,
    ) -> None:
        if queues is None:
            queues = [PriorityQueue(ep.port, ep.priority, ep.preemptive) for ep in endpoints]
        self.queues: List[PriorityQueue] = queues
        self.openai_client = openai_client
        self.stopping = False
        self._lock = threading.Lock()

    def find_queue(self, priority: int) -> Optional[PriorityQueue]:
        """Return the queue with the given priority, or None."""
        with self._lock:
            return next((q for q in self.queues if q.priority == priority), None)

    def find_queue_by_port(self, port: int) -> Optional[PriorityQueue]:
        """Return the queue served on the given port, or None."""
        with self._lock:
            return next((q for q in self.queues if q.port == port), None)

    def _sort_by_priority(self) -> None:
        with self._lock:
            self.queues.sort(key=lambda q: q.priority)

    def start_scheduler(self, stop_event: threading.Event) -> None:
        """Serve queued requests, highest priority first, until stopped."""
        self._sort_by_priority()
        while not stop_event.is_set():
            self.process_next_request()
            time.sleep(SCHEDULER_INTERVAL)
        self.stopping = True

    def process_next_request(self) -> Optional[threading.Thread]:
        """Start work on the first request of the highest-priority queue.

        Returns the worker thread, or None if every queue was empty.
        """
        with self._lock:
            for q in self.queues:
                request = q.poll()
                if request is not None:
                    worker = threading.Thread(
                        target=self.process_request, args=(request, q), daemon=True
                    )
                    worker.start()
                    return worker
        return None

    def should_preempt(self, current_priority: int) -> bool:
        """True if a higher-priority preemptive queue has waiting requests."""
        with self._lock:
            if self.stopping:
                return False
            return any(
                q.priority < current_priority and q.preemptive and q.pending() > 0
                for q in self.queues
            )

    def _watch_for_preemption(
        self, request: WorkRequest, queue: PriorityQueue, cancel: threading.Event
    ) -> None:
        while not request.done.wait(PREEMPT_CHECK_INTERVAL):
            if not self.should_preempt(queue.priority):
                continue
            cancel.set()
            if queue.priority > 1:
                request.preempted = True
                request.retry_count += 1
                retry = dataclasses.replace(
                    request,
                    request=dataclasses.replace(
                        request.request, headers=dict(request.request.headers)
                    ),
                    preempt_cancel=None,
                    processing_time=0.0,
                    tools=list(request.tools),
                )
                if queue.offer(retry):
                    print(
                        f"Preempted request for model {request.model}, priority "
                        f"{queue.priority}. Retrying (attempt {request.retry_count + 1})"
                    )
                else:
                    print("ERROR: Could not requeue preempted request, queue is full")
                    request.response.write_header(503)
                    request.response.write(OVERLOADED_BODY)
                    request.done.set()
            return

    def process_request(self, request: WorkRequest, queue: PriorityQueue) -> None:
        """Forward one request, requeueing it if a higher priority preempts it."""
        cancel = threading.Event()
        request.preempt_cancel = cancel
        threading.Thread(
            target=self._watch_for_preemption, args=(request, queue, cancel), daemon=True
        ).start()

        incoming = request.request
        started = time.monotonic()
        error: Optional[Exception] = None
        response: Optional[httpx.Response] = None
        try:
            if self.openai_client is None:
                raise RuntimeError("no upstream client configured")
            response = self.openai_client.forward_request(
                incoming.method, incoming.path, incoming.body, cancel
            )
        except Exception as exc:  # any upstream failure becomes a 502
            error = exc
        processing_time = time.monotonic() - started

        if cancel.is_set():
            if response is not None:
                response.close()
            return

        writer = request.response
        if error is not None or response is None:
            writer.write_header(502)
            writer.write(f'{{"error":"Error forwarding request: {error}"}}'.encode("utf-8"))
            request.done.set()
            return

        for name, value in response.headers.multi_items():
            writer.add_header(name, value)
        writer.write_header(response.status_code)
        try:
            writer.write(response.content)
        except (httpx.HTTPError, httpx.StreamError) as exc:
            print(f"Error copying response body: {exc}")
        finally:
            response.close()

        request.processing_time = processing_time
        try:
            collector = get_collector()
        except RuntimeError:
            collector = None
        if collector is not None:
            collector.collect(
                RequestMetrics(
                    model=request.model,
                    input_tokens=request.input_tokens,
                    processing_time=processing_time,
                    retry_count=request.retry_count,
                    tools=list(request.tools),
                    endpoint_path=incoming.path,
                    priority=queue.priority,
                    preempted=request.preempted,
                    status_code=response.status_code,
                )
            )

        print(
            f"Completed request for model: {request.model} (Path: {incoming.path}, "
            f"Priority: {queue.priority}, Preemptions: {request.retry_count}, "
            f"Time: {processing_time:.3f}s)"
        )
        request.done.set()