"""Prometheus instruments for the reconciliation job."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

RECONCILIATION_RUNS = Counter(
    "account_reconciliation_runs_total",
    "Reconciliation runs by outcome.",
    ["outcome"],
)
RECONCILIATION_ACCOUNTS = Counter(
    "account_reconciliation_accounts_total",
    "Accounts processed by the reconciliation job by result.",
    ["result"],
)
RECONCILIATION_ANOMALIES = Counter(
    "account_reconciliation_anomalies_total",
    "Creator memberships still present when an account was locked.",
)
RECONCILIATION_LAST_RUN = Gauge(
    "account_reconciliation_last_run_timestamp_seconds",
    "Unix time at which the last reconciliation run finished.",
)
