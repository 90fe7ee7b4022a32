from typing import Optional


class CheckEngineError(Exception):
    """Base class for errors raised inside the check engine."""


class CheckCancelled(CheckEngineError):
    """An in-flight check was aborted by the caller or by its timeout."""

    def __init__(self, reason, timeout_seconds: Optional[float] = None):
        self.reason = reason
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Check cancelled ({reason.value})")


class TargetResolutionError(CheckEngineError):
    """The set of targets for an aggregate run could not be resolved."""


class VSphereApiError(CheckEngineError):
    """The vSphere REST API rejected a request."""
