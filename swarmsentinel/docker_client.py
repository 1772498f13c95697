"""Swarm client backed by the Docker Engine HTTP API."""

from __future__ import annotations

import json
import logging
import ssl
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Optional, TypeVar
from urllib.parse import urlsplit

import httpx

from .errors import Cancelled
from .pagination import MAX_LIST_PAGE_SIZE, paginate_by_id_prefix
from .swarm_types import ActualService, ActualState, SwarmClient

T = TypeVar("T")

DEFAULT_API_TIMEOUT = 30.0
DEFAULT_RETRY_BACKOFFS: tuple[float, ...] = (1.0, 2.0, 4.0)
DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
MAX_RETRIES = 3
STACK_NAMESPACE_LABEL = "com.docker.stack.namespace"

_RETRYABLE_MARKERS = (
    "timeout",
    "connection reset",
    "connection refused",
    "broken pipe",
    "eof",
    "leader election",
)


@dataclass(frozen=True)
class TLSConfig:
    """Client TLS settings for the Docker API."""

    enabled: bool = False
    verify: bool = False
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""


class DockerAPIError(Exception):
    """The Docker daemon answered with an error status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class DockerAPI(ABC):
    """The Docker operations the Swarm client needs.

    Services and tasks are returned in the Engine API's JSON shape.
    """

    @abstractmethod
    def ping(self, timeout: Optional[float] = None) -> Any:
        """Check connectivity to the daemon."""

    @abstractmethod
    def service_list(
        self,
        filters: Mapping[str, Sequence[str]],
        status: bool = True,
        timeout: Optional[float] = None,
    ) -> list[dict]:
        """List services matching the filters."""

    @abstractmethod
    def task_list(
        self, filters: Mapping[str, Sequence[str]], timeout: Optional[float] = None
    ) -> list[dict]:
        """List tasks matching the filters."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the API client."""


def _ssl_context(tls: TLSConfig) -> ssl.SSLContext:
    if tls.verify:
        context = ssl.create_default_context(cafile=tls.ca_file)
    else:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    context.load_cert_chain(tls.cert_file, tls.key_file)
    return context


def _encode_filters(filters: Mapping[str, Sequence[str]]) -> str:
    return json.dumps({key: {value: True for value in values} for key, values in filters.items()})


class HttpDockerAPI(DockerAPI):
    """Docker Engine API over HTTP, HTTPS or a unix socket."""

    def __init__(
        self,
        host: str = DEFAULT_DOCKER_HOST,
        timeout: float = DEFAULT_API_TIMEOUT,
        tls: Optional[TLSConfig] = None,
    ):
        tls = tls or TLSConfig()
        parsed = urlsplit(host or DEFAULT_DOCKER_HOST)
        if parsed.scheme == "unix":
            transport = httpx.HTTPTransport(uds=parsed.path)
            base_url = "http://localhost"
        elif parsed.scheme in ("tcp", "http", "https"):
            if not parsed.netloc:
                raise ValueError(f"invalid docker host {host!r}")
            verify: Any = _ssl_context(tls) if tls.enabled else True
            transport = httpx.HTTPTransport(verify=verify)
            scheme = "https" if tls.enabled else "http"
            base_url = f"{scheme}://{parsed.netloc}"
        elif parsed.scheme == "npipe":
            raise ValueError("named pipe docker hosts are not supported")
        else:
            raise ValueError(f"unsupported docker host protocol {parsed.scheme!r}")
        self._client = httpx.Client(base_url=base_url, transport=transport, timeout=timeout)

    def _get(self, path: str, params: dict[str, str], timeout: Optional[float]) -> httpx.Response:
        kwargs: dict[str, Any] = {"params": params}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = self._client.get(path, **kwargs)
        if not response.is_success:
            raise DockerAPIError(response.status_code, _error_message(response))
        return response

    def ping(self, timeout: Optional[float] = None) -> dict[str, str]:
        response = self._get("/_ping", {}, timeout)
        return {
            "api_version": response.headers.get("Api-Version", ""),
            "os_type": response.headers.get("OSType", ""),
        }

    def service_list(
        self,
        filters: Mapping[str, Sequence[str]],
        status: bool = True,
        timeout: Optional[float] = None,
    ) -> list[dict]:
        params = {"status": "true" if status else "false"}
        if filters:
            params["filters"] = _encode_filters(filters)
        return self._get("/services", params, timeout).json() or []

    def task_list(
        self, filters: Mapping[str, Sequence[str]], timeout: Optional[float] = None
    ) -> list[dict]:
        params = {"filters": _encode_filters(filters)} if filters else {}
        return self._get("/tasks", params, timeout).json() or []

    def close(self) -> None:
        self._client.close()


def _error_message(response: httpx.Response) -> str:
    detail = response.text.strip()
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, Mapping) and isinstance(body.get("message"), str):
        detail = body["message"]
    text = f"docker api returned {response.status_code} {response.reason_phrase}"
    return f"{text}: {detail}" if detail else text


class _Deadline:
    def __init__(self, timeout: float):
        self._end = time.monotonic() + timeout

    def remaining(self) -> float:
        return self._end - time.monotonic()


def _deadline_exceeded() -> TimeoutError:
    return TimeoutError("context deadline exceeded")


class DockerClient(SwarmClient):
    """Collects Swarm service state through a DockerAPI, retrying transient failures."""

    def __init__(
        self,
        api: Optional[DockerAPI],
        timeout: float = DEFAULT_API_TIMEOUT,
        logger: Optional[logging.Logger] = None,
        retry_backoffs: Optional[Sequence[float]] = None,
    ):
        self.api = api
        self.timeout = timeout if timeout > 0 else DEFAULT_API_TIMEOUT
        self.logger = logger or logging.getLogger(__name__)
        self.retry_backoffs = tuple(retry_backoffs or DEFAULT_RETRY_BACKOFFS)

    def close(self) -> None:
        if self.api is not None:
            self.api.close()

    def _require_api(self) -> DockerAPI:
        if self.api is None:
            raise RuntimeError("docker client is not initialized")
        return self.api

    def ping(self, cancel: Optional[threading.Event] = None) -> None:
        api = self._require_api()
        deadline = _Deadline(self.timeout)
        self._with_retry("Ping", lambda remaining: api.ping(timeout=remaining), deadline, cancel)

    def get_actual_state(
        self, stack_name: str = "", cancel: Optional[threading.Event] = None
    ) -> ActualState:
        api = self._require_api()
        deadline = _Deadline(self.timeout)

        service_filters: dict[str, list[str]] = {}
        if stack_name:
            service_filters["label"] = [f"{STACK_NAMESPACE_LABEL}={stack_name}"]

        services = self._list_services(api, service_filters, deadline, cancel)
        state = ActualState()
        for service in services:
            actual = self._collect_service_state(api, service, stack_name, deadline, cancel)
            state.services[actual.name] = actual
        return state

    def _collect_service_state(
        self,
        api: DockerAPI,
        service: Mapping[str, Any],
        stack_name: str,
        deadline: _Deadline,
        cancel: Optional[threading.Event],
    ) -> ActualService:
        name = normalize_service_name(_dig(service, "Spec", "Name") or "", stack_name)
        mode, desired = service_mode_and_replicas(service)
        image = _dig(service, "Spec", "TaskTemplate", "ContainerSpec", "Image") or ""
        update_state = _dig(service, "UpdateStatus", "State") or ""

        task_filters = {"service": [service.get("ID") or ""]}
        tasks = self._list_tasks(api, task_filters, desired, deadline, cancel)
        running, configs, secrets = summarize_tasks(tasks)
        return ActualService(
            name=name,
            image=image,
            mode=mode,
            desired_replicas=desired,
            running_replicas=running,
            configs=configs,
            secrets=secrets,
            update_state=update_state,
        )

    def _list_services(
        self,
        api: DockerAPI,
        base: dict[str, list[str]],
        deadline: _Deadline,
        cancel: Optional[threading.Event],
    ) -> list[dict]:
        def list_fn(filters: dict[str, list[str]]) -> list[dict]:
            return self._with_retry(
                "ServiceList",
                lambda remaining: api.service_list(filters, status=True, timeout=remaining),
                deadline,
                cancel,
            )

        return _list_with_fallback(base, list_fn, _item_id)

    def _list_tasks(
        self,
        api: DockerAPI,
        base: dict[str, list[str]],
        expected: int,
        deadline: _Deadline,
        cancel: Optional[threading.Event],
    ) -> list[dict]:
        def list_fn(filters: dict[str, list[str]]) -> list[dict]:
            return self._with_retry(
                "TaskList",
                lambda remaining: api.task_list(filters, timeout=remaining),
                deadline,
                cancel,
            )

        if expected > MAX_LIST_PAGE_SIZE:
            return paginate_by_id_prefix(base, list_fn, _item_id)
        return _list_with_fallback(base, list_fn, _item_id)

    def _with_retry(
        self,
        operation: str,
        fn: Callable[[float], T],
        deadline: _Deadline,
        cancel: Optional[threading.Event],
    ) -> T:
        max_attempts = MAX_RETRIES + 1
        backoffs = self.retry_backoffs or DEFAULT_RETRY_BACKOFFS
        attempt = 1
        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled()
            remaining = deadline.remaining()
            if remaining <= 0:
                raise _deadline_exceeded()
            try:
                return fn(remaining)
            except Exception as exc:
                if not is_retryable_docker_error(exc) or attempt == max_attempts:
                    raise
                wait = backoffs[min(attempt - 1, len(backoffs) - 1)]
                self.logger.warning(
                    "docker api retrying (operation=%s attempt=%d max_attempts=%d backoff=%.3fs): %s",
                    operation,
                    attempt,
                    max_attempts,
                    wait,
                    exc,
                )
            _sleep(wait, deadline, cancel)
            attempt += 1


def _sleep(wait: float, deadline: _Deadline, cancel: Optional[threading.Event]) -> None:
    pause = min(wait, max(deadline.remaining(), 0.0))
    if cancel is not None:
        if cancel.wait(pause):
            raise Cancelled()
    else:
        time.sleep(pause)
    if pause < wait:
        raise _deadline_exceeded()


def _list_with_fallback(
    base: dict[str, list[str]],
    list_fn: Callable[[dict[str, list[str]]], list[dict]],
    id_fn: Callable[[dict], str],
) -> list[dict]:
    items: Optional[list[dict]] = None
    first_error: Optional[Exception] = None
    try:
        items = list_fn(base)
    except Exception as exc:
        first_error = exc
    if first_error is None and items is not None and len(items) <= MAX_LIST_PAGE_SIZE:
        return items

    page_failed = False
    try:
        return paginate_by_id_prefix(base, list_fn, id_fn)
    except Exception:
        page_failed = True
    if page_failed and first_error is not None:
        raise first_error
    return items or []


def _item_id(item: Mapping[str, Any]) -> str:
    return item.get("ID") or ""


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, Mapping):
            return None
        data = data.get(key)
    return data


def new_docker_client(
    host: str = "",
    timeout: float = 0,
    tls: Optional[TLSConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> DockerClient:
    """Build a DockerClient for the given API host, validating the TLS settings."""
    tls = tls or TLSConfig()
    if timeout <= 0:
        timeout = DEFAULT_API_TIMEOUT
    if tls.enabled:
        if not tls.cert_file or not tls.key_file:
            raise ValueError("docker tls enabled but cert/key are required")
        if tls.verify and not tls.ca_file:
            raise ValueError("docker tls verify enabled but CA is required")

    target = normalize_docker_host(host, tls.enabled) if host else DEFAULT_DOCKER_HOST
    api = HttpDockerAPI(target, timeout=timeout, tls=tls)
    return DockerClient(api, timeout=timeout, logger=logger, retry_backoffs=DEFAULT_RETRY_BACKOFFS)


def normalize_docker_host(host: str, tls_enabled: bool) -> str:
    """Rewrite http(s) URLs to tcp:// addresses and reject TLS on local sockets."""
    parsed = urlsplit(host)
    if not parsed.scheme:
        return host
    if parsed.scheme == "http":
        return f"tcp://{parsed.netloc}" if parsed.netloc else host
    if parsed.scheme == "https":
        if not tls_enabled:
            raise ValueError("https docker host requires TLS configuration")
        return f"tcp://{parsed.netloc}" if parsed.netloc else host
    if parsed.scheme in ("unix", "npipe") and tls_enabled:
        raise ValueError("docker tls is not supported for unix or npipe hosts")
    return host


def normalize_service_name(name: str, stack_name: str) -> str:
    """Strip the ``<stack>_`` prefix from a service name."""
    if not stack_name:
        return name
    prefix = stack_name + "_"
    return name[len(prefix):] if name.startswith(prefix) else name


def service_mode_and_replicas(service: Mapping[str, Any]) -> tuple[str, int]:
    """Return the service mode and its desired replica count."""
    mode = _dig(service, "Spec", "Mode") or {}
    desired_tasks = _dig(service, "ServiceStatus", "DesiredTasks")
    dynamic = int(desired_tasks or 0)

    replicated = mode.get("Replicated")
    if replicated is not None:
        replicas = replicated.get("Replicas") if isinstance(replicated, Mapping) else None
        return "replicated", int(replicas) if replicas is not None else dynamic
    for key, label in (
        ("Global", "global"),
        ("ReplicatedJob", "replicated-job"),
        ("GlobalJob", "global-job"),
    ):
        if mode.get(key) is not None:
            return label, dynamic
    return "unknown", dynamic


def summarize_tasks(tasks: Sequence[Mapping[str, Any]]) -> tuple[int, list[str], list[str]]:
    """Count running tasks and collect the sorted config and secret names they use.

    During rolling updates this may include both old and new versions.
    """
    running = 0
    configs: set[str] = set()
    secrets: set[str] = set()
    for task in tasks:
        if _dig(task, "Status", "State") != "running":
            continue
        running += 1
        spec = _dig(task, "Spec", "ContainerSpec")
        if not isinstance(spec, Mapping):
            continue
        configs.update(
            ref["ConfigName"]
            for ref in spec.get("Configs") or []
            if isinstance(ref, Mapping) and ref.get("ConfigName")
        )
        secrets.update(
            ref["SecretName"]
            for ref in spec.get("Secrets") or []
            if isinstance(ref, Mapping) and ref.get("SecretName")
        )
    return running, sorted(configs), sorted(secrets)


def _error_chain(err: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def is_retryable_docker_error(err: Optional[BaseException]) -> bool:
    """Whether a Docker API failure is transient and worth retrying."""
    if err is None:
        return False
    chain = list(_error_chain(err))
    if any(isinstance(e, Cancelled) for e in chain):
        return False
    if any(isinstance(e, DockerAPIError) and e.status_code in (401, 403) for e in chain):
        return False
    if any(isinstance(e, (TimeoutError, httpx.TimeoutException)) for e in chain):
        return True
    message = str(err).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)