"""
Exception taxonomy for the council pipeline.

Transient gateway errors are absorbed by retry logic and never reach a Run's
terminal status directly. Stage errors abort the stage that raised them; the
orchestrator decides whether that fails the Run. Environment failures in the
test harness are reported as an ``error`` outcome, not raised.
"""


class CouncilError(Exception):
    """Base class for all council errors."""


# Model gateway ---------------------------------------------------------------


class GatewayError(CouncilError):
    """Failure talking to the model-serving layer."""

    def __init__(self, message: str, role: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.role = role
        self.status_code = status_code


class TransientGatewayError(GatewayError):
    """Gateway failure that is worth retrying."""


class GatewayTimeout(TransientGatewayError):
    """The model call did not complete within the endpoint timeout."""


class RateLimited(TransientGatewayError):
    """The serving layer rejected the call with a rate limit."""


class UpstreamError(TransientGatewayError):
    """The serving layer failed (5xx or an explicit error payload)."""


class AuthFailure(GatewayError):
    """Credentials were rejected. Never retried."""


class MalformedResponse(GatewayError):
    """The response body could not be understood. Never retried."""


# Stages ----------------------------------------------------------------------


class ValidationFailed(CouncilError):
    """Model output failed schema validation after all parse retries."""

    def __init__(self, message: str, role: str | None = None, raw_text: str = ""):
        super().__init__(message)
        self.role = role
        self.raw_text = raw_text


class StageError(CouncilError):
    """Permanent failure of a pipeline stage."""

    stage: str = "unknown"

    def __init__(self, message: str, language: str | None = None):
        super().__init__(message)
        self.language = language


class PlanningFailed(StageError):
    stage = "planning"


class GenerationFailed(StageError):
    stage = "generation"


class RefinementFailed(StageError):
    stage = "refinement"


# Runs ------------------------------------------------------------------------


class InvalidRunRequest(CouncilError, ValueError):
    """A trigger request did not satisfy the input contract."""


class RunNotFound(CouncilError, KeyError):
    """No run is known under the given identifier."""

    def __str__(self) -> str:
        return f"Run not found: {self.args[0] if self.args else '?'}"
