"""Checksum and persist the outcome of a finished bundle run."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Union

from .persistence.kvstore import KeySpace
from .schemas import Metadata, ProcessOutput, WaitExited, WaitSignaled, was_run_successful

LOGGER = logging.getLogger("debug_bundle.metadata")

DEBUG_BUNDLE_METADATA_KEY = "debug_bundle_metadata"
CHUNK_SIZE = 64 * 1024


class KeyValueStore(Protocol):
    def put(self, key_space: KeySpace, key: str, value: bytes) -> None: ...

    def get(self, key_space: KeySpace, key: str) -> Optional[bytes]: ...

    def remove(self, key_space: KeySpace, key: str) -> bool: ...


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


async def calculate_sha256_sum(path: Path) -> str:
    """Hex SHA-256 of the file at *path*, streamed in fixed-size chunks."""
    return await asyncio.to_thread(_sha256_file, path)


def _write_bytes(path: Path, payload: bytes) -> None:
    with Path(path).open("wb") as handle:
        handle.write(payload)
        handle.flush()


async def write_file(path: Path, payload: bytes) -> None:
    await asyncio.to_thread(_write_bytes, path, payload)


async def file_exists(path: Path) -> bool:
    return await asyncio.to_thread(Path(path).exists)


def load_metadata(kvstore: KeyValueStore) -> Optional[Metadata]:
    """Return the stored record for the most recent job, if any."""
    raw = kvstore.get(KeySpace.DEBUG_BUNDLE, DEBUG_BUNDLE_METADATA_KEY)
    if raw is None:
        return None
    return Metadata.model_validate_json(raw)


class FinishedProcess(Protocol):
    job_id: str
    output_file_path: Path
    process_output_file_path: Path
    created_time: datetime
    cout: List[str]
    cerr: List[str]

    @property
    def wait_result(self) -> Union[WaitExited, WaitSignaled]: ...


class MetadataWriter:
    """
    Builds and stores the :class:`Metadata` record for a finished run.

    The record is written to the key-value store before the process output
    file. If that file cannot be written the record is removed again, so a
    stored record always has its process output alongside it.
    """

    def __init__(self, kvstore: KeyValueStore) -> None:
        self._kvstore = kvstore

    async def set_metadata(self, process: FinishedProcess) -> Optional[Metadata]:
        bundle_file = process.output_file_path
        process_output_file = process.process_output_file_path
        wait_status = process.wait_result

        checksum = ""
        if was_run_successful(wait_status):
            if not await file_exists(bundle_file):
                LOGGER.warning(
                    "Debug bundle file %s does not exist post successful run, cannot set metadata",
                    bundle_file,
                )
                return None
            checksum = await calculate_sha256_sum(bundle_file)

        record = Metadata(
            created_timestamp=process.created_time,
            job_id=process.job_id,
            debug_bundle_file_path=str(bundle_file),
            process_output_file_path=str(process_output_file),
            sha256_checksum=checksum,
            wait_status=wait_status,
        )

        LOGGER.debug("Emplacing metadata into keystore for job %s", process.job_id)
        await asyncio.to_thread(
            self._kvstore.put,
            KeySpace.DEBUG_BUNDLE,
            DEBUG_BUNDLE_METADATA_KEY,
            record.model_dump_json().encode("utf-8"),
        )

        output = ProcessOutput(cout=list(process.cout), cerr=list(process.cerr))
        LOGGER.debug("Writing process output to %s for job %s", process_output_file, process.job_id)
        try:
            await write_file(process_output_file, output.model_dump_json().encode("utf-8"))
        except OSError as exc:
            LOGGER.warning(
                "Failed to write process output to file %s for job %s: %s",
                process_output_file,
                process.job_id,
                exc,
            )
            await self._rollback(process.job_id)
            return None

        LOGGER.debug("Successfully wrote process output to file %s", process_output_file)
        return record

    async def _rollback(self, job_id: str) -> None:
        try:
            await asyncio.to_thread(self._kvstore.remove, KeySpace.DEBUG_BUNDLE, DEBUG_BUNDLE_METADATA_KEY)
        except Exception as exc:
            LOGGER.error("Failed to roll back metadata for job %s: %s", job_id, exc)


__all__ = [
    "DEBUG_BUNDLE_METADATA_KEY",
    "MetadataWriter",
    "calculate_sha256_sum",
    "file_exists",
    "load_metadata",
    "write_file",
]
