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

PIPELINES_STARTED = Counter(
    "orchestrator_pipelines_started_total",
    "Deployment pipelines started",
    ["environment"],
)
PIPELINES_COMPLETED = Counter(
    "orchestrator_pipelines_completed_total",
    "Deployment pipelines finished",
    ["environment", "status"],
)
PIPELINE_DURATION = Histogram(
    "orchestrator_pipeline_duration_seconds",
    "Deployment pipeline wall time",
    ["environment", "status"],
)
NODES_DEPLOYED = Counter(
    "orchestrator_nodes_deployed_total",
    "Per-node deployment outcomes",
    ["environment", "status"],
)

APPROVAL_REQUESTS = Counter(
    "orchestrator_approval_requests_total",
    "Approval requests created",
    ["environment"],
)
APPROVAL_DECISIONS = Counter(
    "orchestrator_approval_decisions_total",
    "Approval requests resolved",
    ["status"],
)

STABILIZATION_CHECKS = Counter(
    "orchestrator_stabilization_checks_total",
    "Resource stabilization metric polls",
    ["stable"],
)
STABILIZATION_OUTCOMES = Counter(
    "orchestrator_stabilization_outcomes_total",
    "Resource stabilization verdicts",
    ["outcome"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
