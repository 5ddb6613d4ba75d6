"""
Uniform result returned by credit and workflow entry points.
"""
from dataclasses import dataclass, field
from typing import Any

from app.core.exceptions import AppException, ErrorCode


@dataclass
class ServiceResult:
    success: bool
    message: str
    data: Any = None
    errors: list[str] = field(default_factory=list)
    error_code: ErrorCode | None = None
    status_code: int = 200

    @classmethod
    def ok(cls, message: str, data: Any = None, status_code: int = 200) -> "ServiceResult":
        return cls(success=True, message=message, data=data, status_code=status_code)

    @classmethod
    def fail(
        cls,
        message: str,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        errors: list[str] | None = None,
        status_code: int = 400,
        data: Any = None
    ) -> "ServiceResult":
        return cls(
            success=False,
            message=message,
            data=data,
            errors=errors or [message],
            error_code=error_code,
            status_code=status_code
        )

    @classmethod
    def from_exception(cls, exc: AppException) -> "ServiceResult":
        return cls(
            success=False,
            message=exc.message,
            data=exc.details or None,
            errors=[exc.message],
            error_code=exc.error_code,
            status_code=exc.status_code
        )

    @classmethod
    def system_error(cls, message: str = "An unexpected error occurred") -> "ServiceResult":
        return cls.fail(message, error_code=ErrorCode.INTERNAL_ERROR, status_code=500)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "data": self.data,
        }
        if not self.success:
            body["errors"] = self.errors
            body["error_code"] = self.error_code.value if self.error_code else None
        return body
