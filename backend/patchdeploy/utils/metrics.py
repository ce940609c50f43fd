"""
Prometheus metrics for the deployment engine and its HTTP API.
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from prometheus_client import Counter, Gauge, Histogram, generate_latest, REGISTRY, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware

# Deployment metrics
deployment_count = Counter(
    "patchdeploy_deployments_total",
    "Total number of deployments by final status",
    ["platform", "status"]
)

deployment_duration = Histogram(
    "patchdeploy_deployment_duration_seconds",
    "Time from submission to terminal status",
    ["platform"],
    buckets=(1, 5, 15, 60, 300, 900, 3600, 21600, 86400, 172800)
)

asset_operations = Counter(
    "patchdeploy_asset_operations_total",
    "Asset mutations by outcome",
    ["platform", "outcome"]
)

# Rollback metrics
rollback_count = Counter(
    "patchdeploy_rollbacks_total",
    "Rollbacks by trigger and outcome",
    ["trigger", "outcome"]
)

# Health metrics
health_samples = Counter(
    "patchdeploy_health_samples_total",
    "Health samples recorded by status",
    ["status"]
)

# System metrics
active_deployments = Gauge(
    "patchdeploy_active_deployments",
    "Number of deployments currently in flight"
)

# HTTP metrics
REQUEST_COUNT = Counter(
    "patchdeploy_http_requests_total",
    "Total HTTP Requests Count",
    ["method", "endpoint", "status_code"]
)

REQUEST_LATENCY = Histogram(
    "patchdeploy_http_request_duration_seconds",
    "HTTP Request Latency",
    ["method", "endpoint"]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware for collecting Prometheus metrics for HTTP requests.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        path = request.url.path

        # Skip metrics endpoint to avoid infinite recursion
        if path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)

        # Route template, not the raw path
        route = request.scope.get("route")
        endpoint = getattr(route, "path", path)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=response.status_code).inc()
        REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)
        return response


def setup_metrics(app: FastAPI):
    """
    Set up Prometheus metrics for a FastAPI application.

    Args:
        app: FastAPI application
    """
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(
            content=generate_latest(REGISTRY),
            media_type=CONTENT_TYPE_LATEST
        )
