from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class AppError:
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class CoreError(Exception):
    """Carries an AppError through the call stack until a boundary turns it into a Result."""

    def __init__(self, error: AppError):
        super().__init__(error.message)
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


def not_found(what: str, **details: Any) -> CoreError:
    return CoreError(AppError(ErrorKind.NOT_FOUND, f"{what} not found", details))


def validation(message: str, **details: Any) -> CoreError:
    return CoreError(AppError(ErrorKind.VALIDATION, message, details))


def conflict(message: str, **details: Any) -> CoreError:
    return CoreError(AppError(ErrorKind.CONFLICT, message, details))


def forbidden(message: str, **details: Any) -> CoreError:
    return CoreError(AppError(ErrorKind.FORBIDDEN, message, details))


def transient(message: str, retry_after: Optional[float] = None, **details: Any) -> CoreError:
    if retry_after is not None:
        details["retry_after"] = retry_after
    return CoreError(AppError(ErrorKind.TRANSIENT, message, details))


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, CoreError) and exc.kind is ErrorKind.TRANSIENT


def retry_after(exc: BaseException) -> Optional[float]:
    if isinstance(exc, CoreError):
        value = exc.error.details.get("retry_after")
        if value is not None:
            return float(value)
    return None


@dataclass
class Result(Generic[T]):
    success: bool
    data: Optional[T] = None
    errors: List[AppError] = field(default_factory=list)

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "Result[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, *errors: AppError) -> "Result[T]":
        return cls(success=False, errors=list(errors))

    @property
    def error(self) -> Optional[AppError]:
        return self.errors[0] if self.errors else None
