from fastapi import HTTPException, status

from orchestrator.domain.errors import (
    ConcurrentUpdateError,
    DuplicateJobConflict,
    ForbiddenError,
    IllegalTransitionError,
    InvalidJobStateError,
    LeaseError,
    NotFoundError,
    OrchestratorError,
    ReasonRequiredError,
    TransactionAborted,
    ValidationError,
)

STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (IllegalTransitionError, status.HTTP_409_CONFLICT),
    (ConcurrentUpdateError, status.HTTP_409_CONFLICT),
    (DuplicateJobConflict, status.HTTP_409_CONFLICT),
    (InvalidJobStateError, status.HTTP_409_CONFLICT),
    (LeaseError, status.HTTP_409_CONFLICT),
    (ReasonRequiredError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)

def to_http_exception(exc: OrchestratorError) -> HTTPException:
    if isinstance(exc, TransactionAborted):
        # Cause is logged where it happened; nothing partial was persisted
        return HTTPException(status_code=500, detail={"code": exc.code, "message": str(exc)})
    for exc_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, exc_type):
            return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})
    return HTTPException(status_code=400, detail={"code": exc.code, "message": str(exc)})
