"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Summary

REQUEST_COUNTER = Counter(
	"contract_confirm_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"contract_confirm_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

CONFIRM_ISSUE = Counter(
	"contract_confirm_issue_total",
	"Confirmation link issuance attempts",
	["mode", "result"],
)

CONFIRM_VERIFY = Counter(
	"contract_confirm_verify_total",
	"OTP verification outcomes",
	["result"],
)

CONFIRM_LINK_OPEN = Counter(
	"contract_confirm_link_open_total",
	"Public confirmation link resolutions",
	["result"],
)

CONFIRM_SMS = Counter(
	"contract_confirm_sms_total",
	"Confirmation SMS dispatch outcomes",
	["provider", "result"],
)

CONFIRM_SMS_LATENCY = Histogram(
	"contract_confirm_sms_duration_seconds",
	"Confirmation SMS gateway latency in seconds",
	["provider"],
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

CONFIRM_CANCEL = Counter(
	"contract_confirm_cancel_total",
	"Contract cancellations processed",
	["result"],
)

CONFIRM_SWEEP_EXPIRED = Counter(
	"contract_confirm_sweep_expired_total",
	"Pending sessions expired by the background sweep",
)

RATE_LIMITED = Counter(
	"contract_confirm_rate_limited_total",
	"Public requests rejected by the per-IP limiter",
	["route"],
)

POSTGRES_UP = Gauge("contract_confirm_postgres_up", "Postgres availability (1=up,0=down)")
POSTGRES_LATENCY = Summary("contract_confirm_postgres_latency_seconds", "Postgres ping latency (seconds)")

BACKGROUND_RUNS = Counter(
	"contract_confirm_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"contract_confirm_job_duration_seconds",
	"Background job duration (seconds)",
	["name"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_confirm_issue(mode: str, result: str) -> None:
	CONFIRM_ISSUE.labels(mode=mode, result=result).inc()


def inc_confirm_verify(result: str) -> None:
	CONFIRM_VERIFY.labels(result=result).inc()


def inc_link_open(result: str) -> None:
	CONFIRM_LINK_OPEN.labels(result=result).inc()


def observe_sms(provider: str, ok: bool, elapsed_seconds: float) -> None:
	CONFIRM_SMS.labels(provider=provider, result="ok" if ok else "failed").inc()
	CONFIRM_SMS_LATENCY.labels(provider=provider).observe(elapsed_seconds)


def inc_confirm_cancel(result: str) -> None:
	CONFIRM_CANCEL.labels(result=result).inc()


def inc_sweep_expired(count: int) -> None:
	if count > 0:
		CONFIRM_SWEEP_EXPIRED.inc(count)


def inc_rate_limited(route: str) -> None:
	RATE_LIMITED.labels(route=route).inc()


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
