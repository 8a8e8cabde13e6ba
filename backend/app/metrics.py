"""
Prometheus metrics for the CourseCast API
"""
import re
import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import Counter, Gauge, Histogram, Info
from starlette.middleware.base import BaseHTTPMiddleware

app_info = Info("coursecast_app", "CourseCast application information")
app_info.info({
    "version": "0.1.0",
    "name": "CourseCast",
})

# HTTP request metrics
http_requests_total = Counter(
    "coursecast_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "coursecast_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

http_requests_in_progress = Gauge(
    "coursecast_http_requests_in_progress",
    "Number of HTTP requests currently being processed",
    ["method", "endpoint"]
)

# Authentication metrics
auth_login_attempts_total = Counter(
    "coursecast_auth_login_attempts_total",
    "Total login attempts",
    ["status"]  # success, failed, locked, banned
)

# Admin metrics
admin_user_operations_total = Counter(
    "coursecast_admin_user_operations_total",
    "Total admin user management operations",
    ["operation"]  # ban, unban, reset_password, delete
)

student_status_requests_total = Counter(
    "coursecast_student_status_requests_total",
    "Student status dashboard requests",
    ["sort_by"]
)

student_status_duration_seconds = Histogram(
    "coursecast_student_status_duration_seconds",
    "Time spent building a student status page",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# Error metrics
errors_total = Counter(
    "coursecast_errors_total",
    "Total application errors",
    ["error_type", "endpoint"]
)

_UUID_SEGMENT = re.compile(r"^[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}$")


def normalize_endpoint(path: str) -> str:
    """
    Collapse identifiers in a request path so label cardinality stays bounded.
    /api/users/students/<uuid>/ban -> /api/users/students/{id}/ban
    """
    parts = path.split("/")
    return "/".join("{id}" if _UUID_SEGMENT.match(part) else part for part in parts)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP request metrics
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_endpoint(request.url.path)

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()

        try:
            response = await call_next(request)
            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=response.status_code
            ).inc()
            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(time.time() - start_time)
            return response

        except Exception as e:
            record_error(type(e).__name__, endpoint)
            raise

        finally:
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


def record_login_attempt(status: str):
    """Record a login attempt"""
    auth_login_attempts_total.labels(status=status).inc()


def record_admin_operation(operation: str):
    """Record an admin user operation"""
    admin_user_operations_total.labels(operation=operation).inc()


def record_student_status(sort_by: str, duration: float):
    student_status_requests_total.labels(sort_by=sort_by).inc()
    student_status_duration_seconds.observe(duration)


def record_error(error_type: str, endpoint: str):
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()
