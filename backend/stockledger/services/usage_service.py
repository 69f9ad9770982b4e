# Overview: Request usage reporting to the platform's usage tracker; fire-and-forget.

"""
One UsageReport is built per tracked request and handed to a UsageCollector.
HttpUsageCollector batches reports and POSTs them from a small thread pool so the
request path never waits on (or fails because of) the tracker.

The collector lives on app.extensions["usage_collector"]; call flush() or
shutdown() explicitly (see `flask usage flush`).
"""
from __future__ import annotations

import logging
import math
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

import httpx
from flask import Flask, g, request

logger = logging.getLogger(__name__)

SERVICE_NAME = "inventory"
CHARS_PER_TOKEN = 4

EXEMPT_PATHS = (
    "/health", "/healthz", "/ready", "/readiness", "/liveness",
    "/startup", "/metrics", "/ping", "/", "/version",
)

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
_ITEM_DETAIL_RE = re.compile(r"/items/[^/]+$")


@dataclass
class UsageReport:
    user_id: str
    operation: str
    http_status: int
    duration_ms: int
    service: str = SERVICE_NAME
    input_tokens: int = 0
    output_tokens: int = 0
    api_key_id: Optional[str] = None
    organization_id: Optional[str] = None
    app_id: Optional[str] = None
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        """Wire shape expected by the tracker (camelCase, None fields dropped)."""
        payload = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            head, *rest = key.split("_")
            payload[head + "".join(part.title() for part in rest)] = value
        return payload


class UsageCollector:
    """Interface: record() must never raise into the caller."""

    def record(self, report: UsageReport) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def shutdown(self) -> None:
        self.flush()


class NullUsageCollector(UsageCollector):
    def record(self, report: UsageReport) -> None:
        return None


class HttpUsageCollector(UsageCollector):
    def __init__(
        self,
        endpoint: str,
        *,
        batch_size: int = 10,
        timeout: float = 5.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        max_workers: int = 2,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoint = endpoint
        self.batch_size = max(1, batch_size)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._queue: list[UsageReport] = []
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._closed = False
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"X-Internal-Request": "true", "X-Source": f"nexus-{SERVICE_NAME}"},
        )
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="usage")

    @classmethod
    def from_config(cls, config) -> "HttpUsageCollector":
        return cls(
            config["USAGE_TRACKING_URL"],
            batch_size=config["USAGE_BATCH_SIZE"],
            timeout=config["USAGE_TRACKING_TIMEOUT_SECONDS"],
            max_retries=config["USAGE_MAX_RETRIES"],
            retry_delay=config["USAGE_RETRY_DELAY_SECONDS"],
        )

    def record(self, report: UsageReport) -> None:
        with self._lock:
            if self._closed:
                logger.debug("Usage collector closed; dropping report for %s", report.operation)
                return
            self._queue.append(report)
            if len(self._queue) < self.batch_size:
                return
            batch = self._take_batch()
        self._submit(batch)

    def flush(self) -> None:
        """Send everything queued and wait for in-flight deliveries."""
        while True:
            with self._lock:
                batch = self._take_batch()
            if not batch:
                break
            self._submit(batch)

        with self._lock:
            pending = list(self._pending)
        wait(pending)

    def shutdown(self) -> None:
        self.flush()
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)
        self._client.close()

    def _take_batch(self) -> list[UsageReport]:
        batch = self._queue[: self.batch_size]
        del self._queue[: self.batch_size]
        return batch

    def _submit(self, batch: list[UsageReport]) -> None:
        future = self._executor.submit(self._deliver_batch, batch)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _deliver_batch(self, batch: list[UsageReport]) -> None:
        for report in batch:
            try:
                self._send(report)
            except Exception:
                logger.exception("Usage report delivery failed for %s", report.operation)

    def _send(self, report: UsageReport) -> None:
        payload = report.to_payload()
        for attempt in range(self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            try:
                response = self._client.post(self.endpoint, json=payload)
            except httpx.TimeoutException:
                # no retry on timeouts
                raise
            except httpx.TransportError:
                if last_attempt:
                    raise
                self._sleep(self.retry_delay)
                continue

            if response.is_success:
                return
            if response.status_code >= 500 and not last_attempt:
                self._sleep(self.retry_delay)
                continue
            response.raise_for_status()


def is_exempt_path(path: str) -> bool:
    return any(path == exempt or path.startswith(f"{exempt}/") for exempt in EXEMPT_PATHS)


def detect_operation(method: str, path: str) -> str:
    path = path.lower()
    method = method.upper()

    if "/items" in path:
        if method == "GET" and _ITEM_DETAIL_RE.search(path):
            return "get_item"
        if method == "GET":
            return "list_items"
        if method == "POST":
            return "create_item"
        if method in ("PUT", "PATCH"):
            return "update_item"
        if method == "DELETE":
            return "delete_item"
    if "/levels" in path:
        if "/adjust" in path:
            return "adjust_levels"
        if method == "GET":
            return "get_levels"
        if method == "POST":
            return "update_levels"
    if "/transactions" in path:
        if method == "GET":
            return "list_transactions"
        if method == "POST":
            return "create_transaction"
    if "/forecast" in path:
        return "forecast_demand"
    if "/import" in path:
        return "import_data"
    if "/export" in path:
        return "export_data"

    segments = [s for s in path.split("/") if s]
    return f"{method.lower()}_{segments[-1] if segments else 'unknown'}"


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def set_operation(name: str) -> None:
    """Override the detected operation name for the current request."""
    g.usage_operation = name


def _header(name: str) -> Optional[str]:
    return request.headers.get(name) or None


def build_report(response) -> Optional[UsageReport]:
    """Report for the current request, or None when it is not tracked."""
    started = g.get("usage_started_at")
    if started is None:
        return None

    user_id = _header("X-User-Id") or _header("X-Api-Key-User-Id")
    if not user_id:
        return None

    api_key_id = _header("X-Api-Key-Id")
    if api_key_id and not _UUID_RE.match(api_key_id):
        api_key_id = None

    body = request.get_data(cache=True, as_text=True)
    return UsageReport(
        user_id=user_id,
        operation=g.get("usage_operation") or detect_operation(request.method, request.path),
        http_status=response.status_code,
        duration_ms=int((time.monotonic() - started) * 1000),
        input_tokens=estimate_tokens(body),
        api_key_id=api_key_id,
        organization_id=_header("X-Organization-Id"),
        app_id=_header("X-App-Id"),
        request_id=_header("X-Request-Id"),
        session_id=_header("X-Session-Id"),
        ip_address=request.remote_addr,
        metadata={
            "method": request.method,
            "path": request.path,
            "userAgent": request.headers.get("User-Agent"),
            "contentLength": request.content_length,
        },
    )


def get_collector(app: Flask) -> UsageCollector:
    return app.extensions["usage_collector"]


def init_usage_tracking(app: Flask, collector: UsageCollector) -> UsageCollector:
    app.extensions["usage_collector"] = collector

    @app.before_request
    def _usage_start():
        if not is_exempt_path(request.path):
            g.usage_started_at = time.monotonic()

    @app.after_request
    def _usage_record(response):
        try:
            report = build_report(response)
            if report is not None:
                collector.record(report)
        except Exception:
            logger.exception("Usage tracking failed for %s %s", request.method, request.path)
        return response

    return collector
