# swarmsentinel

`swarmsentinel` is a library for watching the services of a Docker Swarm
stack. It collects what is actually running through the Docker Engine API,
works out which services changed health between OK, DEGRADED and FAILED,
keeps the last known state in a JSON file, and sends alerts to Slack, to a
generic webhook, or to both.

## Install

```
pip install swarmsentinel
```

For running the tests:

```
pip install "swarmsentinel[test]"
pytest
```

## Modules

### `swarmsentinel.docker_client`

- `new_docker_client(host="", timeout=0, tls=None, logger=None)` returns a
  `DockerClient`. An empty host means `unix:///var/run/docker.sock`; a
  timeout of zero or less means 30 seconds. `http://` and `https://` hosts
  are rewritten to `tcp://` by `normalize_docker_host`; an `https://` host
  needs TLS, and TLS is refused for `unix://` and `npipe://` hosts.
- `TLSConfig(enabled, verify, ca_file, cert_file, key_file)`: with TLS
  enabled a certificate and key are required, and a CA file as well when
  `verify` is set.
- `DockerClient.ping(cancel=None)` and
  `DockerClient.get_actual_state(stack_name="", cancel=None)`. With a stack
  name, services are filtered by the `com.docker.stack.namespace` label and
  the `<stack>_` prefix is stripped from their names. Failures that look
  transient (timeouts, reset or refused connections, broken pipes, EOF,
  leader elections) are retried up to three times, after 1, 2 and 4
  seconds. HTTP 401 and 403 are not retried. Listings larger than 1000
  items are split by ID prefix (`swarmsentinel.pagination`).
- `DockerAPI` is the abstract set of Engine API calls the client uses, and
  `HttpDockerAPI` implements it over HTTP, HTTPS or a unix socket. You can
  pass your own `DockerAPI` to `DockerClient(api, ...)`.
- The helpers `service_mode_and_replicas`, `summarize_tasks`,
  `normalize_service_name` and `is_retryable_docker_error` work on the
  Engine API's JSON objects.

### `swarmsentinel.swarm_types`

`ActualService`, `ActualState` (with `running_replicas()`), and the
abstract `SwarmClient` interface.

### `swarmsentinel.image`

`normalize_image` strips an `@sha256:` digest suffix from an image
reference:

```python
from swarmsentinel.image import normalize_image

normalize_image("nginx:1.23@sha256:abc123")   # "nginx:1.23"
```

### `swarmsentinel.models` and `swarmsentinel.file_store`

`ServiceStatus`, `DriftDetail`, `ServiceHealth`, `StackHealth`,
`StackSnapshot` and `State`, each with `to_dict` / `from_dict` where they
are persisted, and the abstract `Store`. `FileStore(path)` keeps the `State`
as JSON. It writes through a temporary file with mode 0600 and then renames
it over the target. On load, a file that is missing, corrupt or of a newer
schema version gives an empty state.

```python
from swarmsentinel.file_store import FileStore

store = FileStore("state.json")
state = store.load()
store.save(state)
```

### `swarmsentinel.transition`

`detect_service_transitions(prev, current)` compares a stored
`StackSnapshot` (or `None`) with the current `StackHealth`. It returns the
`ServiceTransition` objects sorted by service name. On a first run, and for
services that are new, only services that are not OK are reported. Removed
services are ignored.

```python
from swarmsentinel.models import ServiceHealth, ServiceStatus, StackHealth
from swarmsentinel.transition import detect_service_transitions

current = StackHealth(services={
    "api": ServiceHealth(name="api", status=ServiceStatus.FAILED),
    "web": ServiceHealth(name="web", status=ServiceStatus.OK),
})
[t.name for t in detect_service_transitions(None, current)]   # ["api"]
```

### Notifiers

All notifiers implement `Notifier.notify(stack, transitions, cancel=None)`.
They are in `swarmsentinel.notifier`, `swarmsentinel.slack` and
`swarmsentinel.webhook`.

- `new_slack_notifier(webhook_url, timing=None, logger=None)` returns a
  `SlackNotifier`, or a `NoopNotifier` when the URL is empty. Messages use
  Block Kit and are split so that no message has more than 50 blocks.
- `new_webhook_notifier(webhook_url, template="", timing=None, logger=None)`
  returns a `WebhookNotifier`, or `None` when the URL is empty. The payload
  is a Jinja2 template rendered with `stack`, `transitions` and
  `generated_at`, and it has a `to_json` filter. The default template is
  `{"stack":"{{ stack }}","transitions":{{ transitions | to_json }}}`. An
  invalid template raises `ValueError`.
- Both of these post through `swarmsentinel.http_poster.HttpPoster`. It
  rate-limits per stack (`Timing.rate_interval`, `Timing.rate_burst`) and
  retries 5xx responses and network errors with exponential backoff. On
  HTTP 429 it waits for `Retry-After` when present. Other 4xx responses
  fail at once, and their error message includes the response body. Both
  notifiers take an optional `timeout` that bounds the whole delivery.
- `MultiNotifier(*notifiers)` calls each notifier and raises the first
  error afterwards. `DryRunNotifier` only logs what would be sent.
  `NoopNotifier` drops everything.

### `swarmsentinel.runner`

`Runner(poll_interval, *, ...)` runs one cycle at once and then one on
every tick until the `stop` event passed to `run(stop)` is set. Each cycle
does the following:

1. If a `compose_fetcher` is given, it fetches the compose file, sending the
   last ETag with the request.
2. When the content's fingerprint (SHA-256 by default) has changed, it
   parses the file with `parse_desired_state`.
3. It collects the actual state from `swarm_client`.
4. If a `state_store` is given, it evaluates health with `evaluate_health`.
   It then persists the snapshot under the stack name (or `default`) and
   notifies about transitions.

A status change is only alerted once it has lasted
`alert_stabilization_cycles` cycles, but non-OK services on the first run
are alerted at once. Failures inside a cycle are raised as
`swarmsentinel.errors.CycleError` and logged, and the loop carries on. An
optional `cycle_tracker` and `metrics` object receive cycle timings, counts
and alert counters.

## What this package does not do

- It has no command-line program and no configuration loading. You build
  the `Runner` yourself.
- It does not parse compose files or evaluate service health. The `Runner`
  needs you to supply `parse_desired_state`, a `ComposeFetcher` and
  `evaluate_health`.
- It does not serve health or metrics endpoints over HTTP. The runner only
  calls the `cycle_tracker` and `metrics` objects you pass to it.