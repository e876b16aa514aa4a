"""Prometheus metrics for the ingestion and automation pipeline.

Served in the text exposition format on ``/api/metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

WEBHOOK_EVENTS = Counter(
    "autoinbox_webhook_events_total",
    "Inbound webhook events by channel and outcome",
    ["channel", "outcome"],
)

RULE_MATCHES = Counter(
    "autoinbox_rule_matches_total",
    "Automation rules matched against inbound messages",
    ["channel", "trigger_type"],
)

ACTION_RESULTS = Counter(
    "autoinbox_action_results_total",
    "Dispatched automation actions by type and outcome",
    ["action_type", "outcome"],
)

ESCALATIONS = Counter(
    "autoinbox_escalations_total",
    "Messages routed to the human escalation queue",
    ["reason"],
)

AI_RESPONSE_LATENCY = Histogram(
    "autoinbox_ai_response_seconds",
    "Latency of AI responder calls",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

HTTP_REQUEST_LATENCY = Histogram(
    "autoinbox_http_request_seconds",
    "HTTP request latency by method, route and status",
    ["method", "path", "status"],
)
