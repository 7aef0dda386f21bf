"""
Error kinds raised by the match pipeline.

Every error carries a stable ``kind`` (what clients switch on), an HTTP status
used by the API layer, and a trace id that is also written to the logs.
"""

import uuid
from typing import Any


class MatchPipelineError(Exception):
    kind = "MatchPipelineError"
    status_code = 500

    def __init__(self, detail: str = "", **context: Any):
        self.detail = detail or self.kind
        self.context = context
        self.trace_id = str(uuid.uuid4())
        super().__init__(self.detail)

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.detail, "kind": self.kind, "trace_id": self.trace_id}


class InvalidInput(MatchPipelineError):
    kind = "ValidationError"
    status_code = 400


class NotFound(MatchPipelineError):
    kind = "NotFound"
    status_code = 404


class AlreadyLocked(MatchPipelineError):
    kind = "AlreadyLocked"
    status_code = 409


class AlreadyPending(MatchPipelineError):
    kind = "AlreadyPending"
    status_code = 409


class AttemptNotActive(MatchPipelineError):
    """Raised on accept/decline against a terminal attempt. Carries the attempt."""

    kind = "AttemptNotActive"
    status_code = 409

    def __init__(self, detail: str = "", attempt: Any = None, **context: Any):
        super().__init__(detail, **context)
        self.attempt = attempt


class NotAvailable(MatchPipelineError):
    kind = "NotAvailable"
    status_code = 409


class UserBlockedByPolicy(MatchPipelineError):
    kind = "UserBlockedByPolicy"
    status_code = 403


class DependencyTimeout(MatchPipelineError):
    kind = "DependencyTimeout"
    status_code = 504


class DependencyUnavailable(MatchPipelineError):
    kind = "DependencyUnavailable"
    status_code = 503


class InternalInvariantViolated(MatchPipelineError):
    kind = "InternalInvariantViolated"
    status_code = 500

    def to_payload(self) -> dict[str, Any]:
        return {"detail": "Internal server error", "kind": self.kind, "trace_id": self.trace_id}


TRANSIENT_DEPENDENCY_ERRORS = (DependencyTimeout, DependencyUnavailable)
