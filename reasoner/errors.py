from typing import Optional

PROVIDER_ERROR = "provider_error"
RETRIEVAL_EMPTY = "retrieval_empty"
QUALITY_REJECTED = "quality_rejected"
CANCELLED = "cancelled"
INVALID_INPUT = "invalid_input"
NOT_FOUND = "not_found"


class ReasonerError(Exception):
    """Error with a stable code that can be surfaced on the event stream."""

    code = PROVIDER_ERROR
    retryable = False

    def __init__(self, message: str, *, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ProviderError(ReasonerError):
    code = PROVIDER_ERROR
    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: Optional[bool] = None):
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    pass


class RetrievalEmpty(ReasonerError):
    code = RETRIEVAL_EMPTY


class QualityRejected(ReasonerError):
    code = QUALITY_REJECTED


class RunCancelled(ReasonerError):
    code = CANCELLED


class InvalidInput(ReasonerError):
    code = INVALID_INPUT


class RunNotFound(ReasonerError):
    code = NOT_FOUND


RUN_ERROR_CODES = {PROVIDER_ERROR, RETRIEVAL_EMPTY, QUALITY_REJECTED, CANCELLED}
