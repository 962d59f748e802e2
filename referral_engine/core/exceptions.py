from fastapi import HTTPException, status


class ReferralEngineError(Exception):
    """Base exception for the referral engine."""

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(ReferralEngineError):
    """Malformed input, rejected before any state change."""

    pass


class ConflictError(ReferralEngineError):
    """Operation would violate an invariant."""

    pass


class NotFoundError(ReferralEngineError):
    """Referenced period, archive or code does not exist."""

    pass


class TransientError(ReferralEngineError):
    """External source or persistence timeout. Safe to retry."""

    pass


# HTTP Exceptions
def not_found(detail: str = "Resource not found") -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def bad_request(detail: str = "Bad request") -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def unauthorized(detail: str = "Unauthorized") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def conflict(detail: str = "Conflict") -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def service_unavailable(detail: str = "Service temporarily unavailable") -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def http_error(exc: ReferralEngineError) -> HTTPException:
    """Map a domain error onto the matching HTTP response."""
    if isinstance(exc, NotFoundError):
        return not_found(exc.message)
    if isinstance(exc, ConflictError):
        return conflict(exc.message)
    if isinstance(exc, TransientError):
        return service_unavailable(exc.message)
    return bad_request(exc.message)
