from __future__ import annotations

from enum import Enum
from typing import assert_never


class ErrorKind(str, Enum):
    validation = "validation"
    conflict = "conflict"
    not_found = "not_found"
    internal = "internal"


def status_code_for(kind: ErrorKind) -> int:
    match kind:
        case ErrorKind.validation:
            return 400
        case ErrorKind.conflict:
            return 409
        case ErrorKind.not_found:
            return 404
        case ErrorKind.internal:
            return 500
        case _:
            assert_never(kind)


class ServiceError(Exception):
    """The single error type raised by services.

    ``kind`` is a closed set; the HTTP boundary maps it with
    :func:`status_code_for`. ``code`` is a stable machine-readable tag.
    """

    def __init__(self, kind: ErrorKind, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or kind.value.upper()

    @property
    def status_code(self) -> int:
        return status_code_for(self.kind)

    @classmethod
    def validation(cls, message: str, *, code: str = "VALIDATION_ERROR") -> ServiceError:
        return cls(ErrorKind.validation, message, code=code)

    @classmethod
    def conflict(cls, message: str, *, code: str = "CONFLICT") -> ServiceError:
        return cls(ErrorKind.conflict, message, code=code)

    @classmethod
    def not_found(cls, message: str, *, code: str = "NOT_FOUND") -> ServiceError:
        return cls(ErrorKind.not_found, message, code=code)

    @classmethod
    def internal(cls, message: str, *, code: str = "INTERNAL_ERROR") -> ServiceError:
        return cls(ErrorKind.internal, message, code=code)

    def __repr__(self) -> str:
        return f"ServiceError(kind={self.kind.value!r}, code={self.code!r}, message={self.message!r})"
