import threading
import time

import httpx
import pytest

from priorityproxy.config import Endpoint
from priorityproxy.metrics import new_metrics_collector, reset_collector
from priorityproxy.openai_client import ForwardError
from priorityproxy.queue import (
    ForwardedRequest,
    PriorityQueue,
    QueueManager,
    ResponseRecorder,
    WorkRequest,
)


class MockClient:
    def __init__(self, status=200, body=b'{"id":"test-response"}', headers=None,
                 delay=0.0, error=None):
        self.status = status
        self.body = body
        self.headers = headers or {}
        self.delay = delay
        self.error = error
        self.calls = []

    def forward_request(self, method, path, body, cancel):
        self.calls.append((method, path, body))
        if self.error is not None:
            raise self.error
        if self.delay:
            time.sleep(self.delay)
        return httpx.Response(self.status, headers=self.headers, content=self.body)


class SlowClient:
    """Waits for cancellation up to a limit, like a long upstream call."""

    def __init__(self, limit=0.3):
        self.limit = limit

    def forward_request(self, method, path, body, cancel):
        if cancel is not None and cancel.wait(self.limit):
            raise ForwardError("request cancelled")
        return httpx.Response(200, content=b'{"id":"test-response"}')


@pytest.fixture(autouse=True)
def collected():
    records = []
    reset_collector()
    collector = new_metrics_collector("http://localhost:8086", "token", "test-org", "test-bucket")
    collector.collect_fn = records.append
    yield records
    reset_collector()


def make_work(model="gpt-4", path="/v1/chat/completions", body=b'{"model":"gpt-4"}'):
    return WorkRequest(
        request=ForwardedRequest(method="POST", path=path,
                                 headers={"Content-Type": "application/json"}, body=body),
        model=model,
        input_tokens=100,
    )


def two_queue_manager(client=None, capacity=1):
    high = PriorityQueue(8080, 1, True, capacity=capacity)
    low = PriorityQueue(8081, 2, False, capacity=capacity)
    return QueueManager(openai_client=client or MockClient(), queues=[high, low]), high, low


def test_new_queue_manager_and_lookups():
    endpoints = [Endpoint(8080, 1, True), Endpoint(8081, 2, False)]
    qm = QueueManager(endpoints, MockClient())
    assert len(qm.queues) == 2
    assert qm.find_queue(1).priority == 1
    assert qm.find_queue(2).priority == 2
    assert qm.find_queue(3) is None
    assert qm.find_queue_by_port(8080).priority == 1
    assert qm.find_queue_by_port(8081).priority == 2
    assert qm.find_queue_by_port(9999) is None
    assert qm.queues[0].capacity == 100


def test_priority_queue_bounds():
    q = PriorityQueue(8080, 1, capacity=1)
    assert q.poll() is None
    first = make_work()
    assert q.offer(first) is True
    assert q.offer(make_work()) is False
    assert q.pending() == 1
    assert q.poll() is first
    assert q.pending() == 0


def test_response_recorder_first_status_wins():
    recorder = ResponseRecorder()
    recorder.write(b"abc")
    recorder.write_header(500)
    recorder.add_header("content-type", "application/json")
    assert recorder.status == 200
    assert bytes(recorder.body) == b"abc"
    assert recorder.headers == {"Content-Type": ["application/json"]}


def test_queue_manager_preemption():
    qm, high, _ = two_queue_manager()
    qm._sort_by_priority()
    high.offer(make_work())
    assert qm.should_preempt(2) is True
    assert qm.should_preempt(1) is False
    high.poll()
    assert qm.should_preempt(2) is False


def test_should_preempt_only_from_preemptive_queues():
    endpoints = [Endpoint(8080, 1, True), Endpoint(8081, 2, False), Endpoint(8082, 3, True)]
    qm = QueueManager(endpoints, MockClient())
    assert qm.should_preempt(2) is False
    req = make_work()
    qm.find_queue(1).offer(req)
    assert qm.should_preempt(2) is True
    assert qm.should_preempt(1) is False
    qm.find_queue(1).poll()
    qm.find_queue(2).offer(req)
    assert qm.should_preempt(3) is False


def test_should_preempt_false_when_stopping():
    qm, high, _ = two_queue_manager()
    high.offer(make_work())
    qm.stopping = True
    assert qm.should_preempt(2) is False


def test_process_request_with_error():
    qm, high, _ = two_queue_manager(MockClient(error=ForwardError("test error")))
    work = make_work()
    qm.process_request(work, high)
    assert work.done.is_set()
    assert work.response.status == 502
    assert b"Error forwarding request" in bytes(work.response.body)
    assert b"test error" in bytes(work.response.body)


def test_process_request_success_copies_response_and_records_metrics(collected):
    client = MockClient(headers={"Content-Type": "application/json"})
    qm, high, _ = two_queue_manager(client)
    work = make_work()
    qm.process_request(work, high)
    assert work.done.is_set()
    assert work.response.status == 200
    assert work.response.headers["Content-Type"] == ["application/json"]
    assert bytes(work.response.body) == b'{"id":"test-response"}'
    assert client.calls == [("POST", "/v1/chat/completions", b'{"model":"gpt-4"}')]
    assert len(collected) == 1
    assert collected[0].model == "gpt-4"
    assert collected[0].priority == 1
    assert collected[0].status_code == 200
    assert collected[0].endpoint_path == "/v1/chat/completions"


def test_process_request_manual_cancel_returns_without_response():
    qm, _, low = two_queue_manager(SlowClient(limit=1.0))
    work = make_work()
    worker = threading.Thread(target=qm.process_request, args=(work, low))
    worker.start()
    deadline = time.monotonic() + 1.0
    while work.preempt_cancel is None and time.monotonic() < deadline:
        time.sleep(0.005)
    work.preempt_cancel.set()
    worker.join(1.0)
    assert not worker.is_alive()
    assert not work.done.is_set()
    assert work.response.header_written is False
    work.done.set()


def test_process_next_request_takes_highest_priority():
    qm, high, low = two_queue_manager()
    low_work = make_work(model="low")
    high_work = make_work(model="high")
    low.offer(low_work)
    high.offer(high_work)
    worker = qm.process_next_request()
    assert high_work.done.wait(1.0)
    worker.join(1.0)
    assert low.pending() == 1
    assert not low_work.done.is_set()


def test_process_next_request_with_empty_queues():
    qm, _, _ = two_queue_manager()
    assert qm.process_next_request() is None


def test_start_scheduler_processes_and_stops():
    qm = QueueManager(openai_client=MockClient(), queues=[PriorityQueue(8080, 1, True, 1)])
    stop = threading.Event()
    scheduler = threading.Thread(target=qm.start_scheduler, args=(stop,))
    scheduler.start()
    work = make_work(path="/v1/test")
    qm.queues[0].offer(work)
    assert work.done.wait(1.0)
    stop.set()
    scheduler.join(1.0)
    assert not scheduler.is_alive()
    assert qm.stopping is True


def test_start_scheduler_sorts_queues():
    low = PriorityQueue(8081, 2)
    high = PriorityQueue(8080, 1, True)
    qm = QueueManager(openai_client=MockClient(), queues=[low, high])
    stop = threading.Event()
    stop.set()
    qm.start_scheduler(stop)
    assert [q.priority for q in qm.queues] == [1, 2]


def test_queue_preemption_requeues_request():
    high = PriorityQueue(8081, 1, True, capacity=10)
    low = PriorityQueue(8080, 2, False, capacity=10)
    qm = QueueManager(openai_client=SlowClient(), queues=[high, low])
    work = make_work()
    worker = threading.Thread(target=qm.process_request, args=(work, low), daemon=True)
    worker.start()
    time.sleep(0.05)
    high.offer(make_work(model="gpt-4", body=b'{"content":"high priority"}'))
    assert qm.should_preempt(low.priority) is True

    requeued = None
    deadline = time.monotonic() + 0.5
    while requeued is None and time.monotonic() < deadline:
        requeued = low.poll()
        time.sleep(0.01)
    assert requeued is not None
    assert requeued.preempted is True
    assert requeued.retry_count == 1
    assert requeued.model == work.model
    assert requeued.done is work.done
    assert requeued.preempt_cancel is None
    assert work.preempt_cancel.is_set()


def test_queue_full_on_requeue_writes_overloaded():
    high = PriorityQueue(8081, 1, True, capacity=10)
    low = PriorityQueue(8080, 2, False, capacity=1)
    qm = QueueManager(openai_client=SlowClient(), queues=[high, low])
    work = make_work()
    threading.Thread(target=qm.process_request, args=(work, low), daemon=True).start()
    time.sleep(0.05)
    assert low.offer(make_work(model="gpt-4-filler")) is True
    assert low.offer(make_work()) is False
    high.offer(make_work(model="gpt-4-high"))
    assert qm.should_preempt(low.priority) is True
    assert work.done.wait(1.0)
    assert work.response.status == 503
    assert bytes(work.response.body) == b'{"error":"Service overloaded, please try again later"}'


def test_top_priority_request_is_cancelled_but_not_requeued():
    top = PriorityQueue(8079, 0, True, capacity=10)
    first = PriorityQueue(8080, 1, False, capacity=10)
    qm = QueueManager(openai_client=SlowClient(limit=1.0), queues=[top, first])
    work = make_work()
    top.offer(make_work(model="urgent"))
    worker = threading.Thread(target=qm.process_request, args=(work, first), daemon=True)
    worker.start()
    worker.join(1.0)
    assert not worker.is_alive()
    assert work.preempt_cancel.is_set()
    assert first.pending() == 0
    assert not work.done.is_set()
    work.done.set()