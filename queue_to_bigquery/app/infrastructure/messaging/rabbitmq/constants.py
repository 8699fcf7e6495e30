"""Lifecycle of a single-broker consumer.

DISCONNECTED -> CONNECTING -> CONNECTED -> BOUND (exchange, queue and binding
declared) -> CONSUMING. A lost connection moves to RECONNECTING and back to
CONSUMING once the handler is re-subscribed. cancel() returns to BOUND.
"""
from enum import Enum


class ConsumerState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    BOUND = "BOUND"
    CONSUMING = "CONSUMING"
    RECONNECTING = "RECONNECTING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
