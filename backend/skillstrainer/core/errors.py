from __future__ import annotations

from fastapi import HTTPException


class AppError(HTTPException):
    """HTTP error raised before a stream is opened.

    The detail is a dict so the app-level handler renders the error code as-is.
    """

    status_code = 500
    error_code = "http_error"

    def __init__(self, message: str, *, headers: dict[str, str] | None = None) -> None:
        super().__init__(
            status_code=self.status_code,
            detail={"error_code": self.error_code, "error_message": message},
            headers=headers,
        )
        self.message = message

    def __str__(self) -> str:
        return self.message


class BadRequestError(AppError):
    status_code = 400
    error_code = "bad_request"


class ForbiddenError(AppError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AppError):
    status_code = 409
    error_code = "conflict"


class ServiceUnavailableError(AppError):
    status_code = 503
    error_code = "unavailable"


def assert_ownership(resource_user_id: object, user_id: object) -> None:
    if str(resource_user_id) != str(user_id):
        raise ForbiddenError("you do not have permission to access this resource")
