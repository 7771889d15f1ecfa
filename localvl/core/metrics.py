"""
localvl :: Prometheus Metrics

Per-engine collectors on a private registry, exposed by the HTTP layer
at /metrics.

Metrics:
  - localvl_requests_total: generation requests started
  - localvl_request_failures_total{error}: failed requests by error class
  - localvl_tokens_generated_total / localvl_tokens_prompt_total
  - localvl_request_duration_seconds: request latency histogram
  - localvl_time_per_token_seconds: decode latency per generated token
  - localvl_model_loaded: 1 while a model is loaded
"""

import time

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
)


class EngineMetrics:
    """Prometheus metrics for one InferenceEngine."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.model_info = Info("localvl_model", "Loaded model", registry=self.registry)
        self.model_loaded = Gauge(
            "localvl_model_loaded", "1 while a model is loaded", registry=self.registry
        )

        self.requests_total = Counter(
            "localvl_requests_total", "Generation requests started", registry=self.registry
        )
        self.request_failures = Counter(
            "localvl_request_failures_total", "Failed generation requests",
            ["error"], registry=self.registry,
        )
        self.tokens_generated = Counter(
            "localvl_tokens_generated_total", "Total tokens generated", registry=self.registry
        )
        self.tokens_prompt = Counter(
            "localvl_tokens_prompt_total", "Total prompt tokens processed", registry=self.registry
        )

        self.request_duration = Histogram(
            "localvl_request_duration_seconds",
            "Request latency",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry,
        )
        self.time_per_token = Histogram(
            "localvl_time_per_token_seconds",
            "Time per output token",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
            registry=self.registry,
        )

    def on_model_loaded(self, backend: str, architecture: str, path: str):
        self.model_info.info({"backend": backend, "architecture": architecture, "path": path})
        self.model_loaded.set(1)

    def on_model_unloaded(self):
        self.model_loaded.set(0)

    def on_request_start(self) -> float:
        self.requests_total.inc()
        return time.perf_counter()

    def on_request_end(self, start_time: float, prompt_tokens: int, output_tokens: int):
        elapsed = time.perf_counter() - start_time
        self.request_duration.observe(elapsed)
        self.tokens_generated.inc(output_tokens)
        self.tokens_prompt.inc(prompt_tokens)
        if output_tokens > 0:
            self.time_per_token.observe(elapsed / output_tokens)

    def on_request_failed(self, error: BaseException):
        self.request_failures.labels(error=type(error).__name__).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
