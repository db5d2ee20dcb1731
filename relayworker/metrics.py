from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS_OPEN = Gauge(
    "relay_sessions_open",
    "Number of account sessions with an open transport connection",
)
SESSIONS_CONNECTING = Gauge(
    "relay_sessions_connecting",
    "Number of account sessions connecting or waiting for a reconnect",
)
SESSIONS_PAIRING = Gauge(
    "relay_sessions_pairing",
    "Number of account sessions waiting for the QR code to be scanned",
)
PAIRING_START_TOTAL = Counter(
    "relay_pairing_start_total", "Total number of pairing flows that produced a QR code"
)
PAIRING_EXPIRED_TOTAL = Counter(
    "relay_pairing_expired_total",
    "Total number of pairing flows that expired before the connection opened",
)
RECONNECT_TOTAL = Counter(
    "relay_reconnect_total",
    "Reconnect attempts after an unsolicited close",
    labelnames=("outcome",),
)
TEARDOWN_TOTAL = Counter(
    "relay_teardown_total",
    "Session teardowns grouped by reason",
    labelnames=("reason",),
)
RELAY_ERRORS = Counter(
    "relay_errors_total",
    "Best-effort side effect failures grouped by kind",
    labelnames=("type",),
)
MESSAGES_RELAYED = Counter(
    "relay_messages_total",
    "Messages forwarded to the webhook grouped by message type",
    labelnames=("message_type",),
)

__all__ = [
    "SESSIONS_OPEN",
    "SESSIONS_CONNECTING",
    "SESSIONS_PAIRING",
    "PAIRING_START_TOTAL",
    "PAIRING_EXPIRED_TOTAL",
    "RECONNECT_TOTAL",
    "TEARDOWN_TOTAL",
    "RELAY_ERRORS",
    "MESSAGES_RELAYED",
]
