from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

CHARGES_APPLIED = Counter(
    "lobster_charges_applied_total",
    "Charges applied to user accounts",
    ["kind"],
)
VMS_PROVISIONED = Counter(
    "lobster_vms_provisioned_total",
    "Background VM provisioning outcomes",
    ["status"],
)
API_AUTH_FAILURES = Counter(
    "lobster_api_auth_failures_total",
    "Rejected API authentication attempts",
    ["reason"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def observe_request(method: str, path: str, status: int, duration: float) -> None:
    REQUEST_COUNT.labels(method=method, path=path, status=str(status)).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=str(status)).observe(duration)
