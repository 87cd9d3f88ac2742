"""Error codes and result envelopes returned by the debug bundle service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

LOGGER = logging.getLogger("debug_bundle.errors")

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Failure conditions surfaced by service operations."""

    RPK_BINARY_NOT_PRESENT = "rpk_binary_not_present"
    DEBUG_BUNDLE_PROCESS_RUNNING = "debug_bundle_process_running"
    DEBUG_BUNDLE_PROCESS_NEVER_STARTED = "debug_bundle_process_never_started"
    DEBUG_BUNDLE_PROCESS_NOT_RUNNING = "debug_bundle_process_not_running"
    JOB_ID_NOT_RECOGNIZED = "job_id_not_recognized"
    INVALID_PARAMETERS = "invalid_parameters"
    PROCESS_FAILED = "process_failed"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class ErrorInfo:
    code: ErrorCode
    message: str = ""

    def __str__(self) -> str:
        if self.message:
            return f"{self.code.value}: {self.message}"
        return self.code.value


class DebugBundleError(Exception):
    """Raised by :meth:`Result.unwrap` when the result carries an error."""

    def __init__(self, info: ErrorInfo) -> None:
        super().__init__(str(info))
        self.info = info

    @property
    def code(self) -> ErrorCode:
        return self.info.code


class InvariantViolation(BaseException):
    """
    A programming error, such as releasing a process that is still running.

    Derives from ``BaseException`` so that the ``except Exception`` guards
    around collaborators never turn it into an ordinary error result.
    """


def invariant(condition: bool, message: str) -> None:
    if not condition:
        LOGGER.critical("Invariant violated: %s", message)
        raise InvariantViolation(message)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success/error discriminant returned by every caller-facing operation."""

    value: Optional[T] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, code: ErrorCode, message: str = "") -> "Result[T]":
        return cls(error=ErrorInfo(code=code, message=message))

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise DebugBundleError(self.error)
        return self.value  # type: ignore[return-value]


__all__ = [
    "DebugBundleError",
    "ErrorCode",
    "ErrorInfo",
    "InvariantViolation",
    "Result",
    "invariant",
]
