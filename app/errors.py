"""Domain error taxonomy.

Stores and the sequencer raise these at their own boundary; the HTTP layer
maps them to responses via ``status_code`` and ``kind``.
"""


class PipelineError(Exception):
    """Base class for all pipeline domain errors."""

    status_code: int = 500
    kind: str = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class ValidationError(PipelineError):
    """Malformed or missing request fields."""

    status_code = 400
    kind = "validation_error"


class NotFoundError(PipelineError):
    """Resource missing, or hidden from the requester."""

    status_code = 404
    kind = "not_found"

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class AccessDenied(NotFoundError):
    """Requester lacks access. Reported as 404 so existence does not leak."""

    def __init__(self, message: str = "Not found or access denied"):
        super().__init__(message)


class PreconditionFailed(PipelineError):
    """Operation is not valid for the current resource state."""

    status_code = 409
    kind = "precondition_failed"

    def __init__(self, message: str, status_code: int = 409):
        super().__init__(message)
        self.status_code = status_code


class InternalError(PipelineError):
    """Unexpected store failure. Details stay in the server log."""


class LeaseLost(PipelineError):
    """A write was attempted by a sequencer that no longer holds the job's lease."""

    status_code = 409
    kind = "lease_lost"

    def __init__(self, message: str = "Execution lease is held by another process"):
        super().__init__(message)
