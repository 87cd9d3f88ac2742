"""Shared data models for debug bundle collection."""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class DebugBundleStatus(str, Enum):
    """Lifecycle states of the tracked rpk process."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class ScramCredentials(BaseModel):
    """SASL/SCRAM credentials forwarded to rpk."""

    model_config = ConfigDict(frozen=True)

    username: str
    password: SecretStr
    mechanism: str


class DebugBundleParameters(BaseModel):
    """Caller supplied options for a single bundle collection."""

    model_config = ConfigDict(frozen=True)

    authn_options: Optional[ScramCredentials] = None
    controller_logs_size_limit_bytes: Optional[int] = Field(default=None, ge=0)
    cpu_profiler_wait_seconds: Optional[timedelta] = None
    logs_since: Optional[str] = Field(
        default=None,
        description="Earliest log timestamp, passed verbatim (e.g. 'yesterday', '-48h', '2024-01-01').",
    )
    logs_size_limit_bytes: Optional[int] = Field(default=None, ge=0)
    logs_until: Optional[str] = Field(default=None, description="Latest log timestamp, passed verbatim.")
    metrics_interval_seconds: Optional[timedelta] = None
    partition: Optional[List[str]] = None
    tls_enabled: Optional[bool] = None
    tls_insecure_skip_verify: Optional[bool] = None
    k8s_namespace: Optional[str] = None

    @field_validator("cpu_profiler_wait_seconds", "metrics_interval_seconds")
    @classmethod
    def check_whole_seconds(cls, value: Optional[timedelta]) -> Optional[timedelta]:
        if value is None:
            return value
        if value < timedelta(0):
            raise ValueError("must not be negative")
        if value.microseconds:
            raise ValueError("must be a whole number of seconds")
        return value


class WaitExited(BaseModel):
    """The process exited on its own with ``exit_code``."""

    kind: Literal["exited"] = "exited"
    exit_code: int


class WaitSignaled(BaseModel):
    """The process was terminated by ``signal``."""

    kind: Literal["signaled"] = "signaled"
    signal: int


WaitStatus = Annotated[Union[WaitExited, WaitSignaled], Field(discriminator="kind")]


def was_run_successful(wait_status: Union[WaitExited, WaitSignaled]) -> bool:
    return isinstance(wait_status, WaitExited) and wait_status.exit_code == 0


class DebugBundleStatusData(BaseModel):
    """Snapshot returned by the status operation."""

    job_id: str
    status: DebugBundleStatus
    created_timestamp: datetime
    file_name: str
    file_size: Optional[int] = None
    cout: List[str] = Field(default_factory=list)
    cerr: List[str] = Field(default_factory=list)


class Metadata(BaseModel):
    """Durable summary of the most recent completed job."""

    created_timestamp: datetime
    job_id: str
    debug_bundle_file_path: str
    process_output_file_path: str
    sha256_checksum: str = ""
    wait_status: WaitStatus


class ProcessOutput(BaseModel):
    """Captured rpk output persisted next to the bundle."""

    cout: List[str] = Field(default_factory=list)
    cerr: List[str] = Field(default_factory=list)


__all__ = [
    "DebugBundleParameters",
    "DebugBundleStatus",
    "DebugBundleStatusData",
    "Metadata",
    "ProcessOutput",
    "ScramCredentials",
    "WaitExited",
    "WaitSignaled",
    "WaitStatus",
    "was_run_successful",
]
