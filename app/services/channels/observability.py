"""Prometheus metrics for the channel pipeline."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

INBOUND_MESSAGES = Counter(
    "channel_inbound_messages_total",
    "Total inbound channel messages processed",
    ["platform", "status"],  # status: created, duplicate, skipped, error
)

OUTBOUND_MESSAGES = Counter(
    "channel_outbound_messages_total",
    "Total outbound channel sends",
    ["platform", "status"],  # status: sent, failed, retrying
)

WEBHOOK_REQUESTS = Counter(
    "channel_webhook_requests_total",
    "Inbound webhook requests by outcome",
    ["platform", "result"],
)

ADAPTER_CALL_SECONDS = Histogram(
    "channel_adapter_call_seconds",
    "Latency of platform API calls made by channel adapters",
    ["platform", "method"],
)
