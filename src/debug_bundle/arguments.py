"""Translate :class:`DebugBundleParameters` into an ``rpk debug bundle`` command line."""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path
from typing import Iterable, List, Union

from .errors import ErrorCode, Result
from .schemas import DebugBundleParameters

OUTPUT_VARIABLE = "--output"
VERBOSE_VARIABLE = "--verbose"
USERNAME_VARIABLE = "-Xuser"
PASSWORD_VARIABLE = "-Xpass"
SASL_MECHANISM_VARIABLE = "-Xsasl.mechanism"
CONTROLLER_LOGS_SIZE_LIMIT_VARIABLE = "--controller-logs-size-limit"
CPU_PROFILER_WAIT_VARIABLE = "--cpu-profiler-wait"
LOGS_SINCE_VARIABLE = "--logs-since"
LOGS_SIZE_LIMIT_VARIABLE = "--logs-size-limit"
LOGS_UNTIL_VARIABLE = "--logs-until"
METRICS_INTERVAL_VARIABLE = "--metrics-interval"
PARTITION_VARIABLE = "--partition"
TLS_ENABLED_VARIABLE = "-Xtls.enabled"
TLS_INSECURE_SKIP_VERIFY_VARIABLE = "-Xtls.insecure_skip_verify"
K8S_NAMESPACE_VARIABLE = "--namespace"

MAX_NAMESPACE_LENGTH = 63
RFC1123_LABEL = re.compile(r"[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?")

SENSITIVE_VARIABLES = (PASSWORD_VARIABLE,)


def is_valid_k8s_namespace(namespace: str) -> bool:
    """Return ``True`` when *namespace* is a valid RFC1123 label."""
    return (
        0 < len(namespace) <= MAX_NAMESPACE_LENGTH
        and RFC1123_LABEL.fullmatch(namespace) is not None
    )


def build_rpk_arguments(
    rpk_path: Union[str, Path],
    output_path: Union[str, Path],
    params: DebugBundleParameters,
) -> Result[List[str]]:
    """
    Build the argument vector for one bundle collection.

    Optional parameters are appended in a fixed order and omitted entirely
    when unset. An invalid Kubernetes namespace fails the whole build.
    """
    args: List[str] = [str(rpk_path), "debug", "bundle", OUTPUT_VARIABLE, str(output_path), VERBOSE_VARIABLE]

    creds = params.authn_options
    if creds is not None:
        args.append(f"{USERNAME_VARIABLE}={creds.username}")
        args.append(f"{PASSWORD_VARIABLE}={creds.password.get_secret_value()}")
        args.append(f"{SASL_MECHANISM_VARIABLE}={creds.mechanism}")
    if params.controller_logs_size_limit_bytes is not None:
        args.extend([CONTROLLER_LOGS_SIZE_LIMIT_VARIABLE, f"{params.controller_logs_size_limit_bytes}B"])
    if params.cpu_profiler_wait_seconds is not None:
        args.extend([CPU_PROFILER_WAIT_VARIABLE, _seconds(params.cpu_profiler_wait_seconds)])
    if params.logs_since is not None:
        args.extend([LOGS_SINCE_VARIABLE, params.logs_since])
    if params.logs_size_limit_bytes is not None:
        args.extend([LOGS_SIZE_LIMIT_VARIABLE, f"{params.logs_size_limit_bytes}B"])
    if params.logs_until is not None:
        args.extend([LOGS_UNTIL_VARIABLE, params.logs_until])
    if params.metrics_interval_seconds is not None:
        args.extend([METRICS_INTERVAL_VARIABLE, _seconds(params.metrics_interval_seconds)])
    if params.partition is not None:
        args.extend([PARTITION_VARIABLE, " ".join(params.partition)])
    if params.tls_enabled is not None:
        args.append(f"{TLS_ENABLED_VARIABLE}={_flag(params.tls_enabled)}")
    if params.tls_insecure_skip_verify is not None:
        args.append(f"{TLS_INSECURE_SKIP_VERIFY_VARIABLE}={_flag(params.tls_insecure_skip_verify)}")
    if params.k8s_namespace is not None:
        if not is_valid_k8s_namespace(params.k8s_namespace):
            return Result.failure(ErrorCode.INVALID_PARAMETERS, "Invalid k8s namespace name")
        args.extend([K8S_NAMESPACE_VARIABLE, params.k8s_namespace])

    return Result.success(args)


def contains_sensitive_info(arg: str) -> bool:
    return any(variable in arg for variable in SENSITIVE_VARIABLES)


def printable_arguments(args: Iterable[str]) -> str:
    """Join *args* for logging, dropping anything that carries a credential."""
    return " ".join(arg for arg in args if not contains_sensitive_info(arg))


def _seconds(value: timedelta) -> str:
    return f"{int(value.total_seconds())}s"


def _flag(value: bool) -> str:
    return "true" if value else "false"
