"""
middleware.py - Request monitoring and feature flag headers
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import uuid
import time
from typing import Iterable, Optional
from logger import get_logger
from metrics import request_count, request_duration
from deployment.models import EvaluationContext, MetricSample

logger = get_logger(__name__)


def context_from_request(request: Request) -> EvaluationContext:
    """Flag evaluation context from the caller's headers"""
    return EvaluationContext(
        user_id=request.headers.get("x-user-id"),
        country=request.headers.get("x-country"),
        user_agent=request.headers.get("user-agent"),
    )


class DeploymentMonitoringMiddleware(BaseHTTPMiddleware):
    """
    Feed every request into the metrics aggregator

    Times the request, records a MetricSample (status 500 when the handler
    raises) and attaches ``x-feature-<flag>: true|false`` headers for the
    exposed flags, or for every flag when none are configured.
    """

    def __init__(self, app, system, exposed_flags: Optional[Iterable[str]] = None,
                 exclude_paths: list = None):
        super().__init__(app)
        self.system = system
        self.exposed_flags = list(exposed_flags or [])
        self.exclude_paths = exclude_paths or ["/metrics"]

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        if request.url.path in self.exclude_paths:
            return await call_next(request)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, 500, time.perf_counter() - start_time)
            raise
        process_time = time.perf_counter() - start_time

        self._record(request, response.status_code, process_time)

        try:
            flags = self.system.engine.evaluate_all(
                context_from_request(request),
                self.exposed_flags or None
            )
            for flag_id, enabled in flags.items():
                response.headers[f"x-feature-{flag_id}"] = "true" if enabled else "false"
        except Exception as e:
            logger.error(f"Failed to attach feature headers: {e}")

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        logger.debug(
            f"Request {request_id}: {request.method} {request.url.path} "
            f"- {response.status_code} - {process_time:.3f}s"
        )

        return response

    def _record(self, request: Request, status_code: int, seconds: float):
        route = request.url.path
        self.system.aggregator.record_sample(MetricSample(
            route=route,
            method=request.method,
            duration_ms=seconds * 1000,
            status_code=status_code
        ))
        request_count.labels(request.method, route, str(status_code)).inc()
        request_duration.labels(request.method, route).observe(seconds)
