"""
Error taxonomy for the update engine.

Every per-image or per-resource failure is captured into that unit's result
rather than aborting a run. These exceptions carry enough context for the
result's human-readable error string.
"""

from typing import Optional


class UpdateEngineError(Exception):
    """Base class for update engine errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(UpdateEngineError):
    """Malformed image reference. Only that image is skipped."""

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


class AuthError(UpdateEngineError):
    """No usable registry token could be obtained."""

    def __init__(self, message: str, registry: Optional[str] = None):
        super().__init__(message)
        self.registry = registry


class UnauthorizedError(AuthError):
    """Registry answered 401. Carries the WWW-Authenticate challenge when present."""

    def __init__(self, message: str, registry: Optional[str] = None, challenge: Optional[str] = None):
        super().__init__(message, registry)
        self.challenge = challenge


class NetworkError(UpdateEngineError):
    """Registry or daemon unreachable, timed out or answered with an unexpected status."""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class DaemonError(UpdateEngineError):
    """A Docker operation failed mid-sequence. Stops only that resource's update."""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.step = step


class NotFoundError(UpdateEngineError):
    """Local image, container or stack vanished between plan and apply."""
