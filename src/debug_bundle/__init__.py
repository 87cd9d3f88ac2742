"""
Debug Bundle - single-job coordinator for ``rpk debug bundle`` collection.

This package exposes the service, its result and error types, and the
parameter models used to start a collection.
"""

from importlib.metadata import PackageNotFoundError, version

from .errors import DebugBundleError, ErrorCode, Result
from .schemas import DebugBundleParameters, DebugBundleStatus, ScramCredentials
from .service import DebugBundleService

try:
    __version__ = version("debug-bundle-service")
except PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"

__all__ = [
    "DebugBundleError",
    "DebugBundleParameters",
    "DebugBundleService",
    "DebugBundleStatus",
    "ErrorCode",
    "Result",
    "ScramCredentials",
    "__version__",
]
