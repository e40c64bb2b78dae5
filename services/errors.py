"""Application error type — one exception class tagged with a `kind`.

Handlers dispatch on `error.kind`, never on subclass identity:

  NOT_FOUND         404  resource missing (or analysis not ready)
  AUTH              401 / 403
  VALIDATION        400  bad request params or malformed upstream output
  EXTERNAL_SERVICE  502  content store, document store or LLM failed
"""

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    AUTH = "auth"
    VALIDATION = "validation"
    EXTERNAL_SERVICE = "external_service"


class AppError(Exception):
    """Operational failure with an HTTP-equivalent status and a machine-readable code."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: int,
        code: str,
        service: str | None = None,
        operation: str | None = None,
        attempts: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.code = code
        self.service = service
        self.operation = operation
        self.attempts = attempts
        self.cause = cause

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}

    def __repr__(self) -> str:
        return f"AppError(kind={self.kind.value}, code={self.code}, message={self.message!r})"


def not_found(resource: str, resource_id: str | None = None, code: str = "NOT_FOUND") -> AppError:
    msg = f"{resource} '{resource_id}' not found" if resource_id else f"{resource} not found"
    return AppError(ErrorKind.NOT_FOUND, msg, 404, code)


def auth_error(message: str = "Unauthorized", status_code: int = 401) -> AppError:
    code = "UNAUTHORIZED" if status_code == 401 else "FORBIDDEN"
    return AppError(ErrorKind.AUTH, message, status_code, code)


def validation_error(message: str) -> AppError:
    return AppError(ErrorKind.VALIDATION, message, 400, "VALIDATION_ERROR")


def external_service_error(
    service: str,
    message: str,
    cause: BaseException | None = None,
    operation: str | None = None,
    attempts: int | None = None,
) -> AppError:
    """Wrap an upstream failure. Callers never see the raw upstream exception type."""
    err = AppError(
        ErrorKind.EXTERNAL_SERVICE,
        f"[{service}] {message}",
        502,
        "EXTERNAL_SERVICE_ERROR",
        service=service,
        operation=operation,
        attempts=attempts,
        cause=cause,
    )
    if cause is not None:
        err.__cause__ = cause
    return err


TIMEOUT_CODE = "EXTERNAL_SERVICE_TIMEOUT"


def timeout_error(service: str, label: str, ms: int) -> AppError:
    """EXTERNAL_SERVICE kind with its own code; retry loops treat it as transient."""
    err = external_service_error(service, f"{label} timed out after {ms}ms", operation=label)
    err.code = TIMEOUT_CODE
    return err
