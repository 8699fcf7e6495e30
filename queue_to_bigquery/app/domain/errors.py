"""Error taxonomy for the pipeline.

DecodeError is permanent per message and RejectedRequestError is permanent per
request. TransportError is transient per batch. AuthError is fatal for the
process. StartupError and its subclasses only occur while the composition root
is wiring dependencies.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base for all pipeline failures."""


class DecodeError(PipelineError):
    """Raised when a message body is not a JSON object."""


class TransportError(PipelineError):
    """Network, 5xx-class or deadline failure talking to the warehouse."""


class RejectedRequestError(PipelineError):
    """The warehouse refused the request content (non-throttling 4xx); resending it fails the same way."""

    def __init__(self, message: str, *, reason: str = "badRequest") -> None:
        super().__init__(message)
        self.reason = reason


class AuthError(PipelineError):
    """Credential invalid or expired; no further insert can succeed."""


class StartupError(PipelineError):
    """Unrecoverable problem while starting the pipeline."""


class CredentialsError(StartupError):
    """Raised when the service credential file cannot be loaded."""


class BrokerDiscoveryError(StartupError):
    """Raised when no broker address can be resolved for the topic."""
