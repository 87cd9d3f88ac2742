from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import pytest

from debug_bundle.config import LiveConfig
from debug_bundle.persistence import KVStore
from debug_bundle.service import DebugBundleService

BUNDLE_CONTENTS = b"bundle-contents"


@dataclass
class FakeRpk:
    path: Path
    args_file: Path

    def recorded_args(self) -> List[str]:
        return self.args_file.read_text(encoding="utf-8").splitlines()


@pytest.fixture()
def make_rpk(tmp_path: Path) -> Callable[..., FakeRpk]:
    """
    Write a shell script that stands in for rpk.

    It records its arguments, prints one line to each stream, writes the
    file passed with ``--output`` and exits with *exit_code*. With *hang* it
    replaces itself with a long sleep so the job stays running. With *linger* it
    leaves a background child holding its output pipes after it exits.
    """

    def _make(
        exit_code: int = 0,
        write_bundle: bool = True,
        hang: bool = False,
        ignore_sigterm: bool = False,
        linger: bool = False,
        name: str = "rpk",
    ) -> FakeRpk:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        script = bin_dir / name
        args_file = bin_dir / f"{name}.args"
        lines = [
            "#!/bin/sh",
            f"printf '%s\\n' \"$@\" > '{args_file}'",
            'out=""',
            'prev=""',
            'for arg in "$@"; do',
            '  if [ "$prev" = "--output" ]; then out="$arg"; fi',
            '  prev="$arg"',
            "done",
            "echo 'collecting debug bundle'",
            "echo 'warning: partial cluster access' >&2",
        ]
        if write_bundle:
            lines.append(f"printf '%s' '{BUNDLE_CONTENTS.decode()}' > \"$out\"")
        if linger:
            lines.append("sleep 5 &")
        if ignore_sigterm:
            lines.append("trap '' TERM")
        if hang:
            lines.append("exec sleep 30")
        lines.append(f"exit {exit_code}")
        script.write_text("\n".join(lines) + "\n", encoding="utf-8")
        script.chmod(0o755)
        return FakeRpk(path=script, args_file=args_file)

    return _make


@pytest.fixture()
def kvstore(tmp_path: Path) -> KVStore:
    return KVStore.from_path(tmp_path / "state" / "kvstore.db")


@pytest.fixture()
def make_service(tmp_path: Path, kvstore: KVStore) -> Callable[..., DebugBundleService]:
    def _make(rpk_path: Path, storage_dir: Optional[Path] = None) -> DebugBundleService:
        config = LiveConfig(
            rpk_path=rpk_path,
            data_directory=tmp_path / "data",
            debug_bundle_storage_dir=storage_dir,
        )
        return DebugBundleService(kvstore, config)

    return _make


@pytest.fixture()
def eventually() -> Callable[..., Awaitable[None]]:
    async def _eventually(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _eventually
