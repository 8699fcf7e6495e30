"""Pipeline-level constants shared across modules."""
from __future__ import annotations


class BATCH_STATE:
    ASSEMBLED = "ASSEMBLED"
    SUBMITTING = "SUBMITTING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    PARTIALLY_SUCCEEDED = "PARTIALLY_SUCCEEDED"
    FAILED = "FAILED"


class FLUSH_TRIGGER:
    SIZE = "SIZE"
    BYTES = "BYTES"
    TIMEOUT = "TIMEOUT"
    DRAIN = "DRAIN"


class DELIVERY_OUTCOME:
    ACKED = "ACKED"
    REQUEUED = "REQUEUED"


EPHEMERAL_CHANNEL_SUFFIX = "#ephemeral"
BODY_PREVIEW_LENGTH = 256
