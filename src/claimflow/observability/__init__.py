"""Claimflow observability: OpenTelemetry tracing and Prometheus counters."""

from claimflow.observability.tracing import configure_tracing, job_span

__all__ = ["configure_tracing", "job_span"]
