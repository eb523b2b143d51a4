# priorityproxy

A small HTTP proxy that sits in front of an OpenAI-compatible API and
schedules requests by priority.

Each configured endpoint listens on its own port and has a priority
(1 is the highest). Requests are queued per port. A scheduler always takes
the next request from the highest-priority queue that has one waiting.
When a queue is marked *preemptive* and has a request waiting, any request
being served from a lower-priority queue is cancelled. If that request's
priority is greater than 1, it is put back on its own queue and retried
later. The client only sees the final answer. The check for preemption runs
every 50 ms while a request is being served.

For every completed request the proxy builds a metrics record. The record
holds the model, an estimate of the input tokens, the tool types requested,
the processing time, the path, the priority, the number of preemptions,
whether the request was preempted, and the upstream status code.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Configuration

By default the proxy reads `config.json` from the current directory. Use
`-c`/`--config` to give another path.

```json
{
  "influxdb_url": "http://localhost:8086",
  "influx_token": "token",
  "influx_org": "my-org",
  "influx_bucket": "proxybucket",
  "openai_api_url": "http://localhost:8000/v1",
  "openai_api_key": "placeholder",
  "endpoints": [
    {"port": 8080, "priority": 1, "preemptive": true},
    {"port": 8081, "priority": 2, "preemptive": false}
  ]
}
```

Defaults for fields that are missing or empty:

- `openai_api_url`: the public OpenAI v1 API.
- `influx_bucket`: `proxybucket`.
- `influx_org`: `openaiorg`.

A field with the wrong JSON type is an error.

## Running

```
priorityproxy
priorityproxy --config /path/to/config.json
```

The proxy starts one listener per endpoint on all interfaces. It runs until
it receives SIGINT or SIGTERM, then stops the scheduler and shuts down every
listener. If the configuration cannot be loaded, the command prints the
error and exits with status 1.

Send each request to the port whose priority you want:

```
curl -X POST http://localhost:8080/chat/completions \
     -H "Content-Type: application/json" \
     -d '{"model": "gpt-4", "messages": [{"role": "user", "content": "Hello"}]}'
```

The request is sent upstream to `openai_api_url` followed by the request
path, with the same method and body. The request carries
`Authorization: Bearer <openai_api_key>` and
`Content-Type: application/json`. The client's own headers and any query
string are not passed on. The upstream status, headers and body are
returned to the client, and every response carries permissive CORS
headers.

The queue is chosen from the port in the `Host` header. That header must
have the form `localhost:<port>` or `127.0.0.1:<port>`, or be a bare port
number.

Only `GET` and `POST` are forwarded. `OPTIONS` is answered with `200` for
CORS preflight. The proxy gives its own status codes in these cases:

- `405` for any other method.
- `400` when the port in the `Host` header cannot be read.
- `404` when no queue is configured for that port.
- `429` when the queue for that port is full. Each queue holds 100 requests.
- `502` when the request cannot be forwarded upstream.
- `503` when a preempted request cannot be put back on its full queue.

## Library use

- `priorityproxy.config.load_config(path)` reads a configuration file into
  a `Config` holding a list of `Endpoint` objects.
- `priorityproxy.openai_client.OpenAIClient(base_url, api_key)` has
  `forward_request(method, path, body, cancel)`. It returns an
  `httpx.Response`, or raises `ForwardError` when the request fails or the
  `threading.Event` passed as `cancel` is set.
- `priorityproxy.openai_client.extract_request_metadata(body)` returns a
  `RequestMetadata` with the model, the tool types and an input-token
  estimate. The estimate is one token per four bytes of the message
  contents, `prompt` or `input`. A body that is not a JSON object raises
  `ValueError`. `rewrite_body(body)` returns a fresh `io.BytesIO` with the
  same content.
- `priorityproxy.queue.QueueManager` owns the `PriorityQueue` objects.
  It provides `find_queue`, `find_queue_by_port`, `should_preempt`,
  `process_next_request`, `process_request`, and
  `start_scheduler(stop_event)`, which runs until the event is set.
  Each queued item is a `WorkRequest`. Its response is collected in a
  `ResponseRecorder`.
- `priorityproxy.handler.RequestHandler(manager).handle(method, host, path,
  headers, body)` serves one request and returns its `ResponseRecorder`.
  `make_server(handler, port)` returns a bound HTTP server; call
  `serve_forever()` on it.
- `priorityproxy.metrics.new_metrics_collector(url, token, org, bucket)`
  creates the shared `MetricsCollector`, or returns the existing one.
  `get_collector()` returns it, and raises `RuntimeError` if none exists.
  `reset_collector()` forgets it. A collector passes each `RequestMetrics`
  record to its `collect_fn`, one record at a time.

## What it does not do

- Metrics are not stored or sent anywhere. The InfluxDB settings are kept
  on the collector but not used. The default `collect_fn`,
  `default_collect`, prints one line per request to standard output. To
  store metrics elsewhere, set your own `collect_fn`.
- Responses are not streamed. Each upstream response is read in full
  before it is returned to the client.