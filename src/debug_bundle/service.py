"""The debug bundle service: one rpk debug bundle job at a time per node."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, TypeVar

from .arguments import build_rpk_arguments, printable_arguments
from .config import LiveConfig
from .errors import ErrorCode, Result, invariant
from .gate import Gate, GateClosedError
from .metadata import DEBUG_BUNDLE_METADATA_KEY, KeyValueStore, MetadataWriter, file_exists
from .persistence.kvstore import KeySpace
from .process import BundleProcess, ExternalProcess, ProcessAlreadyCompleted
from .schemas import DebugBundleParameters, DebugBundleStatus, DebugBundleStatusData

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .workers import ServiceGroup


LOGGER = logging.getLogger("debug_bundle.service")

SERVICE_WORKER = 0
TERMINATE_TIMEOUT_SECONDS = 1.0

T = TypeVar("T")


def form_debug_bundle_file_path(base_path: Path, job_id: str) -> Path:
    return Path(base_path) / f"{job_id}.zip"


def form_process_output_file_path(base_path: Path, job_id: str) -> Path:
    return Path(base_path) / f"{job_id}.out"


async def _remove_file(path: Path) -> None:
    await asyncio.to_thread(os.remove, path)


async def _make_directories(path: Path) -> None:
    await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)


async def _file_size(path: Path) -> int:
    return await asyncio.to_thread(os.path.getsize, path)


class DebugBundleService:
    """
    Coordinate ``rpk debug bundle`` runs on this node.

    Every worker owns an instance, but only the owner worker (``SERVICE_WORKER``
    unless the group says otherwise) holds process state; the others forward
    their calls to it. On the owner, process control operations are
    serialized by ``_process_control_lock``. After a successful ``initiate`` a
    background task waits for rpk to exit and then records the job's metadata.
    """

    def __init__(
        self,
        kvstore: KeyValueStore,
        config: LiveConfig,
        *,
        worker_id: int = SERVICE_WORKER,
        group: Optional["ServiceGroup"] = None,
    ) -> None:
        self.worker_id = worker_id
        self._kvstore = kvstore
        self._config = config
        self._group = group
        self._metadata_writer = MetadataWriter(kvstore)
        self._gate = Gate(f"debug_bundle_service[{worker_id}]")
        self._process_control_lock = asyncio.Lock()
        self._rpk_process: Optional[BundleProcess] = None
        self._debug_bundle_dir = config.storage_directory()
        config.debug_bundle_storage_dir.watch(self._on_storage_dir_change)

    @property
    def debug_bundle_dir(self) -> Path:
        return self._debug_bundle_dir

    @property
    def is_owner(self) -> bool:
        if self._group is None:
            return True
        return self.worker_id == self._group.owner

    async def start(self) -> None:
        if not self.is_owner:
            return
        rpk_path = self._config.rpk_path()
        if not await file_exists(rpk_path):
            LOGGER.error(
                "Current specified RPK location %s does not exist! Debug bundle creation is not "
                "available until this is fixed!",
                rpk_path,
            )
        LOGGER.debug("Service started")

    async def stop(self) -> None:
        LOGGER.debug("Service stopping")
        if self.is_owner and self.is_running():
            try:
                await self._rpk_process.terminate(TERMINATE_TIMEOUT_SECONDS)  # type: ignore[union-attr]
            except Exception as exc:
                LOGGER.warning("Failed to terminate running process while stopping service: %s", exc)
        await self._gate.close()

    async def initiate(self, job_id: str, params: Optional[DebugBundleParameters] = None) -> Result[None]:
        params = params or DebugBundleParameters()
        return await self._guarded(
            lambda service: service.initiate(job_id, params),
            lambda: self._initiate(job_id, params),
        )

    async def cancel(self, job_id: str) -> Result[None]:
        return await self._guarded(
            lambda service: service.cancel(job_id),
            lambda: self._locked(lambda: self._cancel(job_id)),
        )

    async def status(self) -> Result[DebugBundleStatusData]:
        return await self._guarded(lambda service: service.status(), self._status)

    async def path(self, job_id: str) -> Result[Path]:
        return await self._guarded(
            lambda service: service.path(job_id),
            lambda: self._locked(lambda: self._path(job_id)),
        )

    async def delete(self, job_id: str) -> Result[None]:
        return await self._guarded(
            lambda service: service.delete(job_id),
            lambda: self._locked(lambda: self._delete(job_id)),
        )

    def process_status(self) -> Optional[DebugBundleStatus]:
        if self._rpk_process is None:
            return None
        return self._rpk_process.process_status()

    def is_running(self) -> bool:
        return self.process_status() is DebugBundleStatus.RUNNING

    async def _guarded(
        self,
        forward: Callable[["DebugBundleService"], Awaitable[Result[T]]],
        local: Callable[[], Awaitable[Result[T]]],
    ) -> Result[T]:
        try:
            with self._gate.hold():
                if not self.is_owner:
                    return await self._group.invoke_on(self._group.owner, forward)  # type: ignore[union-attr]
                return await local()
        except GateClosedError as exc:
            return Result.failure(ErrorCode.INTERNAL_ERROR, f"Debug bundle service is stopping: {exc}")

    async def _locked(self, operation: Callable[[], Awaitable[Result[T]]]) -> Result[T]:
        async with self._process_control_lock:
            return await operation()

    async def _initiate(self, job_id: str, params: DebugBundleParameters) -> Result[None]:
        async with self._process_control_lock:
            rpk_path = self._config.rpk_path()
            if not await file_exists(rpk_path):
                return Result.failure(ErrorCode.RPK_BINARY_NOT_PRESENT, f"{rpk_path} not present")

            if self.is_running():
                return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_RUNNING, "Debug process already running")

            try:
                await self._cleanup_previous_run()
            except Exception as exc:
                return Result.failure(ErrorCode.INTERNAL_ERROR, f"Failed to clean up previous run: {exc}")

            # copied once so a configuration change cannot move this job mid-run
            output_dir = self._debug_bundle_dir
            if not await file_exists(output_dir):
                try:
                    await _make_directories(output_dir)
                except Exception as exc:
                    return Result.failure(
                        ErrorCode.INTERNAL_ERROR,
                        f"Failed to create debug bundle directory {output_dir}: {exc}",
                    )

            debug_bundle_file_path = form_debug_bundle_file_path(output_dir, job_id)
            process_output_path = form_process_output_file_path(output_dir, job_id)

            args_res = build_rpk_arguments(rpk_path, debug_bundle_file_path, params)
            if not args_res.ok:
                return Result(error=args_res.error)
            args: List[str] = args_res.unwrap()
            if LOGGER.isEnabledFor(logging.DEBUG):
                LOGGER.debug("Starting RPK debug bundle: %s", printable_arguments(args))

            self._release_process()
            if self._gate.is_closed:
                return Result.failure(ErrorCode.INTERNAL_ERROR, "Debug bundle service is stopping")
            try:
                external = await ExternalProcess.create(args)
                self._rpk_process = BundleProcess(
                    job_id,
                    external,
                    debug_bundle_file_path,
                    process_output_path,
                )
            except Exception as exc:
                self._rpk_process = None
                return Result.failure(ErrorCode.INTERNAL_ERROR, f"Starting rpk debug bundle failed: {exc}")

            try:
                self._gate.spawn(self._wait_for_completion(job_id, self._rpk_process))
            except GateClosedError:
                # stop() closed the gate while rpk was being spawned
                await self._abandon_process(self._rpk_process)
                return Result.failure(ErrorCode.INTERNAL_ERROR, "Debug bundle service is stopping")
            LOGGER.info("Started debug bundle job %s", job_id)
            return Result.success()

    async def _abandon_process(self, process: BundleProcess) -> None:
        LOGGER.warning("Terminating debug bundle job %s started during shutdown", process.job_id)
        try:
            await process.terminate(TERMINATE_TIMEOUT_SECONDS)
        except ProcessAlreadyCompleted:
            pass
        except Exception as exc:
            LOGGER.warning("Failed to terminate job %s: %s", process.job_id, exc)
        try:
            await process.wait()
        except Exception as exc:
            LOGGER.error("wait() failed while abandoning rpk debug bundle: %s", exc)

    async def _wait_for_completion(self, job_id: str, process: BundleProcess) -> None:
        try:
            await process.wait()
        except Exception as exc:
            LOGGER.error("wait() failed while running rpk debug bundle: %s", exc)
            return
        async with self._process_control_lock:
            await self._handle_wait_result(job_id)

    async def _handle_wait_result(self, job_id: str) -> None:
        LOGGER.debug("Wait completed for job %s", job_id)
        # a later initiate may have replaced the process between exit and lock acquisition
        if self._rpk_process is None or self._rpk_process.job_id != job_id:
            LOGGER.debug("Unable to enqueue metadata for job %s, another process already started", job_id)
            return
        LOGGER.info("Debug bundle job %s finished with status %s", job_id, self._rpk_process.process_status().value)
        try:
            await self._metadata_writer.set_metadata(self._rpk_process)
        except Exception as exc:
            LOGGER.warning("Failed to set metadata for job %s: %s", job_id, exc)

    async def _cancel(self, job_id: str) -> Result[None]:
        status = self.process_status()
        if status is None:
            return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_NEVER_STARTED)
        if status is not DebugBundleStatus.RUNNING:
            return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_NOT_RUNNING)
        process = self._rpk_process
        invariant(process is not None, "_rpk_process should be populated if the process has been executed")
        if job_id != process.job_id:
            return Result.failure(ErrorCode.JOB_ID_NOT_RECOGNIZED)

        try:
            await process.terminate(TERMINATE_TIMEOUT_SECONDS)
        except ProcessAlreadyCompleted:
            return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_NOT_RUNNING)
        except Exception as exc:
            return Result.failure(ErrorCode.INTERNAL_ERROR, str(exc))
        LOGGER.info("Cancelled debug bundle job %s", job_id)
        return Result.success()

    async def _status(self) -> Result[DebugBundleStatusData]:
        status = self.process_status()
        if status is None:
            return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_NEVER_STARTED)
        process = self._rpk_process
        invariant(process is not None, "_rpk_process should be populated if the process has been executed")

        output_file = process.output_file_path
        file_size: Optional[int] = None
        if status is DebugBundleStatus.SUCCESS:
            try:
                file_size = await _file_size(output_file)
            except Exception as exc:
                return Result.failure(
                    ErrorCode.INTERNAL_ERROR,
                    f"Failed to get file size for debug bundle file {output_file}: {exc}",
                )

        return Result.success(
            DebugBundleStatusData(
                job_id=process.job_id,
                status=status,
                created_timestamp=process.created_time,
                file_name=output_file.name,
                file_size=file_size,
                cout=list(process.cout),
                cerr=list(process.cerr),
            )
        )

    async def _path(self, job_id: str) -> Result[Path]:
        status = self.process_status()
        if status is None:
            return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_NEVER_STARTED)
        if status is DebugBundleStatus.RUNNING:
            return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_RUNNING)
        if status is DebugBundleStatus.ERROR:
            return Result.failure(ErrorCode.PROCESS_FAILED)
        process = self._rpk_process
        invariant(process is not None, "_rpk_process should be populated if the process has been executed")
        if job_id != process.job_id:
            return Result.failure(ErrorCode.JOB_ID_NOT_RECOGNIZED)
        output_file = process.output_file_path
        try:
            exists = await file_exists(output_file)
        except Exception as exc:
            return Result.failure(ErrorCode.INTERNAL_ERROR, str(exc))
        if not exists:
            return Result.failure(ErrorCode.INTERNAL_ERROR, f"Debug bundle file {output_file} not found")
        return Result.success(output_file)

    async def _delete(self, job_id: str) -> Result[None]:
        status = self.process_status()
        if status is None:
            return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_NEVER_STARTED)
        if status is DebugBundleStatus.RUNNING:
            return Result.failure(ErrorCode.DEBUG_BUNDLE_PROCESS_RUNNING)
        # success or error: remove whatever the run left behind
        process = self._rpk_process
        invariant(process is not None, "_rpk_process should be populated if the process has been executed")
        if process.job_id != job_id:
            return Result.failure(ErrorCode.JOB_ID_NOT_RECOGNIZED)
        output_file = process.output_file_path
        try:
            if await file_exists(output_file):
                await _remove_file(output_file)
        except Exception as exc:
            return Result.failure(
                ErrorCode.INTERNAL_ERROR,
                f"Failed to delete debug bundle file {output_file}: {exc}",
            )
        LOGGER.info("Deleted debug bundle for job %s", job_id)
        return Result.success()

    async def _cleanup_previous_run(self) -> None:
        if self._rpk_process is None:
            return
        debug_bundle_file = self._rpk_process.output_file_path
        process_output_file = self._rpk_process.process_output_file_path
        if await file_exists(debug_bundle_file):
            LOGGER.debug("Cleaning up previous debug bundle run %s", debug_bundle_file)
            await _remove_file(debug_bundle_file)
        if await file_exists(process_output_file):
            LOGGER.debug("Cleaning up previous process output run %s", process_output_file)
            await _remove_file(process_output_file)
        await asyncio.to_thread(self._kvstore.remove, KeySpace.DEBUG_BUNDLE, DEBUG_BUNDLE_METADATA_KEY)

    def _release_process(self) -> None:
        if self._rpk_process is not None:
            self._rpk_process.release()
            self._rpk_process = None

    def _on_storage_dir_change(self) -> None:
        self._debug_bundle_dir = self._config.storage_directory()
        LOGGER.debug("Changed debug bundle directory to %s", self._debug_bundle_dir)


__all__ = [
    "DebugBundleService",
    "SERVICE_WORKER",
    "TERMINATE_TIMEOUT_SECONDS",
    "form_debug_bundle_file_path",
    "form_process_output_file_path",
]
