"""Lightweight observability helpers (logging + metrics)."""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import defaultdict
from contextvars import ContextVar
from threading import Lock
from typing import Iterable, Protocol

from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from knowledge_search.core.config import get_settings

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger(__name__)

DEFAULT_BUCKETS_MS = [5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000]


def get_request_id() -> str | None:
    """Return the current request id if set by middleware."""
    return request_id_ctx.get()


class MetricsBackend(Protocol):
    """Metrics backend interface."""

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        ...

    def observe_search(
        self,
        mode: str,
        parallel: bool,
        success: bool,
        duration_ms: float,
        result_count: int = 0,
    ) -> None:
        ...

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        ...

    def render_prometheus(self) -> str:
        ...


class _Histogram:
    """Cumulative-bucket histogram keyed by a label tuple."""

    def __init__(self, buckets_ms: list[int]) -> None:
        self.buckets_ms = buckets_ms
        self.sums: dict[tuple[str, ...], float] = defaultdict(float)
        self.counts: dict[tuple[str, ...], int] = defaultdict(int)
        self.buckets: dict[tuple[str, ...], dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )

    def observe(self, key: tuple[str, ...], value_ms: float) -> None:
        bucket = "+Inf"
        for bound in self.buckets_ms:
            if value_ms <= bound:
                bucket = str(bound)
                break
        self.sums[key] += value_ms
        self.counts[key] += 1
        self.buckets[key][bucket] += 1

    def render(self, name: str, help_text: str, label_names: tuple[str, ...]) -> list[str]:
        lines = [f"# HELP {name} {help_text}", f"# TYPE {name} histogram"]
        for key, total in sorted(self.sums.items()):
            labels = ",".join(f'{n}="{v}"' for n, v in zip(label_names, key))
            cumulative = 0
            for bound in self.buckets_ms:
                cumulative += self.buckets[key].get(str(bound), 0)
                lines.append(f'{name}_bucket{{{labels},le="{bound}"}} {cumulative}')
            cumulative += self.buckets[key].get("+Inf", 0)
            lines.append(f'{name}_bucket{{{labels},le="+Inf"}} {cumulative}')
            lines.append(f"{name}_sum{{{labels}}} {total:.2f}")
            lines.append(f"{name}_count{{{labels}}} {self.counts[key]}")
        return lines


def _render_counter(
    name: str,
    help_text: str,
    label_names: tuple[str, ...],
    values: dict[tuple[str, ...], int],
) -> list[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for key, count in sorted(values.items()):
        labels = ",".join(f'{n}="{v}"' for n, v in zip(label_names, key))
        lines.append(f"{name}{{{labels}}} {count}")
    return lines


class MetricsCollector:
    """In-process metrics collector with Prometheus text output."""

    def __init__(self, buckets_ms: Iterable[int] | None = None) -> None:
        self._lock = Lock()
        self._buckets_ms = list(buckets_ms or DEFAULT_BUCKETS_MS)
        self._request_counts: dict[tuple[str, ...], int] = defaultdict(int)
        self._request_durations = _Histogram(self._buckets_ms)
        self._search_counts: dict[tuple[str, ...], int] = defaultdict(int)
        self._search_durations = _Histogram(self._buckets_ms)
        self._search_results: dict[tuple[str, ...], int] = defaultdict(int)
        self._external_counts: dict[tuple[str, ...], int] = defaultdict(int)
        self._external_durations = _Histogram(self._buckets_ms)

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        """Record a single request observation."""
        with self._lock:
            self._request_counts[(method, path, str(status_code))] += 1
            self._request_durations.observe((method, path), duration_ms)

    def observe_search(
        self,
        mode: str,
        parallel: bool,
        success: bool,
        duration_ms: float,
        result_count: int = 0,
    ) -> None:
        """Record a retrieval call."""
        strategy = "parallel" if parallel else "single"
        status = "success" if success else "error"
        with self._lock:
            self._search_counts[(mode, strategy, status)] += 1
            self._search_durations.observe((mode, strategy), duration_ms)
            if success:
                self._search_results[(mode,)] += result_count

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        """Record an external API call observation."""
        with self._lock:
            self._external_counts[(provider, operation, str(status_code))] += 1
            self._external_durations.observe((provider, operation), duration_ms)

    def render_prometheus(self) -> str:
        """Render metrics in Prometheus text format."""
        lines: list[str] = []
        with self._lock:
            lines += _render_counter(
                "http_requests_total",
                "Total HTTP requests",
                ("method", "path", "status"),
                self._request_counts,
            )
            lines += self._request_durations.render(
                "http_request_duration_ms",
                "Request duration in milliseconds",
                ("method", "path"),
            )
            lines += _render_counter(
                "knowledge_searches_total",
                "Knowledge base retrieval calls",
                ("mode", "strategy", "status"),
                self._search_counts,
            )
            lines += self._search_durations.render(
                "knowledge_search_duration_ms",
                "Retrieval duration in milliseconds",
                ("mode", "strategy"),
            )
            lines += _render_counter(
                "knowledge_search_results_total",
                "Chunks returned by retrieval",
                ("mode",),
                self._search_results,
            )
            lines += _render_counter(
                "external_api_requests_total",
                "External API requests",
                ("provider", "operation", "status"),
                self._external_counts,
            )
            lines += self._external_durations.render(
                "external_api_duration_ms",
                "External API duration in milliseconds",
                ("provider", "operation"),
            )
        return "\n".join(lines) + "\n"


class PrometheusMetrics:
    """Prometheus client-based metrics backend."""

    def __init__(self, buckets_ms: Iterable[int]) -> None:
        from prometheus_client import CollectorRegistry, Counter, Histogram

        self._registry = CollectorRegistry()
        self._buckets_ms = list(buckets_ms)

        self._http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "path", "status"],
            registry=self._registry,
        )
        self._http_request_duration_ms = Histogram(
            "http_request_duration_ms",
            "Request duration in milliseconds",
            ["method", "path"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._searches_total = Counter(
            "knowledge_searches_total",
            "Knowledge base retrieval calls",
            ["mode", "strategy", "status"],
            registry=self._registry,
        )
        self._search_duration_ms = Histogram(
            "knowledge_search_duration_ms",
            "Retrieval duration in milliseconds",
            ["mode", "strategy"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._search_results_total = Counter(
            "knowledge_search_results_total",
            "Chunks returned by retrieval",
            ["mode"],
            registry=self._registry,
        )
        self._external_api_requests_total = Counter(
            "external_api_requests_total",
            "External API requests",
            ["provider", "operation", "status"],
            registry=self._registry,
        )
        self._external_api_duration_ms = Histogram(
            "external_api_duration_ms",
            "External API duration in milliseconds",
            ["provider", "operation"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        self._http_requests_total.labels(method, path, str(status_code)).inc()
        self._http_request_duration_ms.labels(method, path).observe(duration_ms)

    def observe_search(
        self,
        mode: str,
        parallel: bool,
        success: bool,
        duration_ms: float,
        result_count: int = 0,
    ) -> None:
        strategy = "parallel" if parallel else "single"
        status = "success" if success else "error"
        self._searches_total.labels(mode, strategy, status).inc()
        self._search_duration_ms.labels(mode, strategy).observe(duration_ms)
        if success:
            self._search_results_total.labels(mode).inc(result_count)

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        self._external_api_requests_total.labels(
            provider, operation, str(status_code)
        ).inc()
        self._external_api_duration_ms.labels(provider, operation).observe(duration_ms)

    def render_prometheus(self) -> str:
        from prometheus_client import generate_latest

        return generate_latest(self._registry).decode("utf-8")


_metrics_backend: MetricsBackend | None = None


def get_metrics_backend() -> MetricsBackend:
    """Return a cached metrics backend instance."""
    global _metrics_backend
    if _metrics_backend is None:
        settings = get_settings()
        _metrics_backend = _build_metrics_backend(settings.metrics_backend)
    return _metrics_backend


def _build_metrics_backend(backend: str) -> MetricsBackend:
    if backend == "prometheus":
        try:
            from prometheus_client import Counter  # noqa: F401

            return PrometheusMetrics(DEFAULT_BUCKETS_MS)
        except ImportError:
            logger.warning(
                "Prometheus backend requested but prometheus_client is not available. "
                "Falling back to in-memory metrics."
            )
    return MetricsCollector(DEFAULT_BUCKETS_MS)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach request_id, log request/response, and emit metrics."""

    def __init__(
        self,
        app: ASGIApp,
        metrics: MetricsBackend | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(app)
        self.metrics = metrics or get_metrics_backend()
        self.logger = logger or logging.getLogger("knowledge_search.request")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)
        request.state.request_id = request_id

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            status_code = response.status_code if response else 500

            if response is not None:
                response.headers["X-Request-ID"] = request_id

            route = request.scope.get("route")
            route_path = getattr(route, "path", None)
            # Normalize unmatched paths to avoid label cardinality explosion
            path = route_path or "/__unknown__"

            if self.metrics:
                self.metrics.observe_request(
                    request.method,
                    path,
                    status_code,
                    duration_ms,
                )

            log_payload = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route_path,
                "status_code": status_code,
                "elapsed_ms": round(duration_ms, 2),
                "client": request.client.host if request.client else None,
            }
            self.logger.info(json.dumps(log_payload))
            request_id_ctx.reset(token)


def setup_tracing(app: FastAPI, settings=None) -> None:
    """Configure OpenTelemetry tracing if enabled."""
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.warning(
            "OpenTelemetry enabled but required packages are not installed."
        )
        return

    resource = Resource.create({"service.name": settings.otel_service_name})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    exporter_kwargs = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    exporter = OTLPSpanExporter(**exporter_kwargs)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
