from __future__ import annotations


class ApiError(Exception):
    def __init__(self, *, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def validation_error(code: str, message: str) -> ApiError:
    return ApiError(status_code=422, code=code, message=message)


def not_found_error(code: str, message: str) -> ApiError:
    return ApiError(status_code=404, code=code, message=message)


def conflict_error(code: str, message: str) -> ApiError:
    return ApiError(status_code=409, code=code, message=message)
