"""Prometheus metrics configuration."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
)


APP_INFO = Info("provisioner", "Management cluster provisioner application info")
APP_INFO.info({
    "version": "1.0.0",
    "service": "mgmt-provisioner",
})

# Pipeline metrics
STEPS_TOTAL = Counter(
    "provisioner_steps_total",
    "Pipeline steps by outcome",
    ["step", "outcome"],  # outcome: completed, skipped, failed
)

STEP_DURATION = Histogram(
    "provisioner_step_duration_seconds",
    "Time taken by a pipeline step",
    ["step"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1200, 3600],
)

CLUSTERS_IN_PROGRESS = Gauge(
    "provisioner_clusters_in_progress",
    "Clusters with a create or delete run in flight",
)

PIPELINE_RUNS_TOTAL = Counter(
    "provisioner_pipeline_runs_total",
    "Create and delete runs by result",
    ["operation", "result"],
)

# Terraform metrics
TERRAFORM_RUNS_TOTAL = Counter(
    "provisioner_terraform_runs_total",
    "Terraform apply and destroy invocations",
    ["action", "result"],
)

# API metrics
API_REQUESTS_TOTAL = Counter(
    "provisioner_api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status_code"],
)

API_REQUEST_DURATION = Histogram(
    "provisioner_api_request_duration_seconds",
    "API request duration",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
