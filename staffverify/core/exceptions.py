from fastapi import HTTPException, status


class ValidationError(HTTPException):
    """Bad upload (type/size) or no verification method. Raised before any write."""

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class AuthError(HTTPException):
    def __init__(
        self,
        detail: str = "Invalid or missing authentication",
        status_code: int = status.HTTP_401_UNAUTHORIZED,
    ):
        super().__init__(status_code=status_code, detail=detail)


class PermissionDeniedError(AuthError):
    def __init__(self, detail: str = "Admin access required"):
        super().__init__(detail=detail, status_code=status.HTTP_403_FORBIDDEN)


class RequestNotFoundError(HTTPException):
    def __init__(self, request_id: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Verification request {request_id} not found",
        )


class InvalidRequestStateError(HTTPException):
    def __init__(self, request_id: str, current: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Verification request {request_id} is '{current}', expected 'pending'",
        )


class MatchNotFoundError(HTTPException):
    """No verification request could be associated with a finalized upload."""

    def __init__(self, object_path: str, user_id: str | None = None):
        self.object_path = object_path
        self.user_id = user_id
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No verification request matches object '{object_path}'",
        )


class StateDivergenceError(HTTPException):
    """User verification state disagrees with the user's request history."""

    def __init__(self, user_id: str, expected: str | None, actual: str, reason: str = ""):
        self.user_id = user_id
        self.expected = expected
        self.actual = actual
        self.reason = reason
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": f"User {user_id} verification state diverged from request history",
                "user_id": user_id,
                "expected_status": expected,
                "actual_status": actual,
                "reason": reason,
            },
        )


class TransientIOError(HTTPException):
    """Storage or database temporarily unavailable. Safe for the caller to retry."""

    def __init__(self, detail: str = "Storage temporarily unavailable, please retry"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
