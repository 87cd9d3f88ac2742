import asyncio
import hashlib
import json
from pathlib import Path

from debug_bundle.errors import ErrorCode
from debug_bundle.metadata import DEBUG_BUNDLE_METADATA_KEY, load_metadata
from debug_bundle.persistence import KeySpace
from debug_bundle.process import BundleProcess, ExternalProcess
from debug_bundle.schemas import DebugBundleParameters, DebugBundleStatus, WaitExited


def _finished(service):
    return lambda: service.process_status() not in (None, DebugBundleStatus.RUNNING)


def test_end_to_end_success(make_rpk, make_service, kvstore, eventually, tmp_path: Path):
    rpk = make_rpk()
    service = make_service(rpk.path)
    bundle_dir = tmp_path / "data" / "debug-bundle"

    async def scenario():
        await service.start()
        started = await service.initiate("job-1", DebugBundleParameters())
        assert started.ok, started.error
        await eventually(_finished(service))
        await eventually(lambda: load_metadata(kvstore) is not None)

        status = await service.status()
        assert status.ok
        assert status.value.status is DebugBundleStatus.SUCCESS
        assert status.value.job_id == "job-1"
        assert status.value.file_name == "job-1.zip"
        assert status.value.file_size == len(b"bundle-contents")
        assert status.value.cout == ["collecting debug bundle"]
        assert status.value.cerr == ["warning: partial cluster access"]

        cancelled = await service.cancel("job-1")
        assert cancelled.code is ErrorCode.DEBUG_BUNDLE_PROCESS_NOT_RUNNING

        path = await service.path("job-1")
        assert path.ok
        assert path.value == bundle_dir / "job-1.zip"
        await service.stop()

    asyncio.run(scenario())

    assert rpk.recorded_args() == ["debug", "bundle", "--output", str(bundle_dir / "job-1.zip"), "--verbose"]
    record = load_metadata(kvstore)
    assert record.job_id == "job-1"
    assert record.sha256_checksum == hashlib.sha256(b"bundle-contents").hexdigest()
    assert record.wait_status == WaitExited(exit_code=0)
    output = json.loads((bundle_dir / "job-1.out").read_text(encoding="utf-8"))
    assert output["cout"] == ["collecting debug bundle"]


def test_running_job_rejects_second_initiate(make_rpk, make_service, eventually, tmp_path: Path):
    rpk = make_rpk(hang=True)
    service = make_service(rpk.path)
    bundle = tmp_path / "data" / "debug-bundle" / "job-1.zip"

    async def scenario():
        assert (await service.initiate("job-1")).ok
        await eventually(bundle.exists)

        for job_id in ("job-1", "job-2"):
            again = await service.initiate(job_id)
            assert again.code is ErrorCode.DEBUG_BUNDLE_PROCESS_RUNNING
        assert bundle.exists()

        status = await service.status()
        assert status.value.job_id == "job-1"
        assert status.value.status is DebugBundleStatus.RUNNING
        assert status.value.file_size is None

        assert (await service.path("job-1")).code is ErrorCode.DEBUG_BUNDLE_PROCESS_RUNNING
        assert (await service.delete("job-1")).code is ErrorCode.DEBUG_BUNDLE_PROCESS_RUNNING
        assert (await service.cancel("job-2")).code is ErrorCode.JOB_ID_NOT_RECOGNIZED

        assert (await service.cancel("job-1")).ok
        await eventually(_finished(service))

        assert (await service.status()).value.status is DebugBundleStatus.ERROR
        assert (await service.path("job-1")).code is ErrorCode.PROCESS_FAILED
        assert (await service.path("job-2")).code is ErrorCode.PROCESS_FAILED
        assert (await service.delete("job-2")).code is ErrorCode.JOB_ID_NOT_RECOGNIZED
        assert (await service.delete("job-1")).ok
        assert not bundle.exists()
        await service.stop()

    asyncio.run(scenario())


def test_operations_before_any_job(make_rpk, make_service):
    service = make_service(make_rpk().path)

    async def scenario():
        for result in (
            await service.cancel("job-1"),
            await service.status(),
            await service.path("job-1"),
            await service.delete("job-1"),
        ):
            assert result.code is ErrorCode.DEBUG_BUNDLE_PROCESS_NEVER_STARTED
        await service.stop()

    asyncio.run(scenario())


def test_missing_binary_spawns_nothing(make_service, tmp_path: Path):
    service = make_service(tmp_path / "bin" / "rpk")

    async def scenario():
        await service.start()
        result = await service.initiate("job-1")
        assert result.code is ErrorCode.RPK_BINARY_NOT_PRESENT
        assert str(tmp_path / "bin" / "rpk") in result.error.message
        assert (await service.status()).code is ErrorCode.DEBUG_BUNDLE_PROCESS_NEVER_STARTED
        await service.stop()

    asyncio.run(scenario())
    assert not (tmp_path / "data").exists()


def test_invalid_namespace_is_rejected_before_spawn(make_rpk, make_service):
    rpk = make_rpk()
    service = make_service(rpk.path)

    async def scenario():
        result = await service.initiate("job-1", DebugBundleParameters(k8s_namespace="UPPER_case"))
        assert result.code is ErrorCode.INVALID_PARAMETERS
        assert (await service.status()).code is ErrorCode.DEBUG_BUNDLE_PROCESS_NEVER_STARTED
        await service.stop()

    asyncio.run(scenario())
    assert not rpk.args_file.exists()


def test_spawn_failure_returns_to_idle(make_rpk, make_service):
    rpk = make_rpk()
    rpk.path.chmod(0o644)
    service = make_service(rpk.path)

    async def scenario():
        result = await service.initiate("job-1")
        assert result.code is ErrorCode.INTERNAL_ERROR
        assert "Starting rpk debug bundle failed" in result.error.message
        assert (await service.status()).code is ErrorCode.DEBUG_BUNDLE_PROCESS_NEVER_STARTED
        await service.stop()

    asyncio.run(scenario())


def test_failed_run_is_recorded(make_rpk, make_service, kvstore, eventually):
    rpk = make_rpk(exit_code=3)
    service = make_service(rpk.path)

    async def scenario():
        assert (await service.initiate("job-1")).ok
        await eventually(lambda: load_metadata(kvstore) is not None)
        status = await service.status()
        assert status.value.status is DebugBundleStatus.ERROR
        assert status.value.file_size is None
        assert (await service.path("job-1")).code is ErrorCode.PROCESS_FAILED
        await service.stop()

    asyncio.run(scenario())
    record = load_metadata(kvstore)
    assert record.sha256_checksum == ""
    assert record.wait_status == WaitExited(exit_code=3)


def test_path_and_delete_after_success(make_rpk, make_service, eventually):
    service = make_service(make_rpk().path)

    async def scenario():
        assert (await service.initiate("job-1")).ok
        await eventually(_finished(service))

        assert (await service.path("other")).code is ErrorCode.JOB_ID_NOT_RECOGNIZED
        bundle = (await service.path("job-1")).unwrap()
        assert bundle.read_bytes() == b"bundle-contents"

        assert (await service.delete("other")).code is ErrorCode.JOB_ID_NOT_RECOGNIZED
        assert (await service.delete("job-1")).ok
        assert (await service.delete("job-1")).ok
        assert not bundle.exists()

        missing = await service.path("job-1")
        assert missing.code is ErrorCode.INTERNAL_ERROR
        assert "not found" in missing.error.message
        await service.stop()

    asyncio.run(scenario())


def test_next_job_cleans_up_previous_artifacts(make_rpk, make_service, kvstore, eventually, tmp_path: Path):
    service = make_service(make_rpk().path)
    bundle_dir = tmp_path / "data" / "debug-bundle"

    async def scenario():
        assert (await service.initiate("job-1")).ok
        await eventually((bundle_dir / "job-1.out").exists)
        assert (bundle_dir / "job-1.zip").exists()
        assert load_metadata(kvstore).job_id == "job-1"

        assert (await service.initiate("job-2")).ok
        assert not (bundle_dir / "job-1.zip").exists()
        assert not (bundle_dir / "job-1.out").exists()

        await eventually((bundle_dir / "job-2.out").exists)
        assert load_metadata(kvstore).job_id == "job-2"
        assert (await service.path("job-2")).value == bundle_dir / "job-2.zip"
        await service.stop()

    asyncio.run(scenario())


def test_storage_dir_change_applies_to_next_job(make_rpk, make_service, eventually, tmp_path: Path):
    rpk = make_rpk()
    first_dir = tmp_path / "first"
    second_dir = tmp_path / "second"
    service = make_service(rpk.path, storage_dir=first_dir)

    async def scenario():
        assert (await service.initiate("job-1")).ok
        service._config.debug_bundle_storage_dir.set(second_dir)
        assert service.debug_bundle_dir == second_dir
        await eventually(_finished(service))
        assert (await service.path("job-1")).value == first_dir / "job-1.zip"

        assert (await service.initiate("job-2")).ok
        await eventually(_finished(service))
        assert (await service.path("job-2")).value == second_dir / "job-2.zip"
        await service.stop()

    asyncio.run(scenario())


def test_stop_terminates_running_job_and_drains_finalize(make_rpk, make_service, kvstore):
    service = make_service(make_rpk(hang=True).path)

    async def scenario():
        assert (await service.initiate("job-1")).ok
        await asyncio.sleep(0.1)
        await service.stop()
        assert service.process_status() is DebugBundleStatus.ERROR
        after = await service.status()
        assert after.code is ErrorCode.INTERNAL_ERROR

    asyncio.run(scenario())
    record = load_metadata(kvstore)
    assert record is not None
    assert record.job_id == "job-1"
    assert record.sha256_checksum == ""


def test_finalize_ignores_superseded_job(make_rpk, make_service, kvstore, eventually):
    service = make_service(make_rpk().path)

    async def scenario():
        assert (await service.initiate("job-1")).ok
        await eventually(lambda: load_metadata(kvstore) is not None)
        kvstore.remove(KeySpace.DEBUG_BUNDLE, DEBUG_BUNDLE_METADATA_KEY)

        await service._handle_wait_result("job-0")
        assert load_metadata(kvstore) is None
        await service.stop()

    asyncio.run(scenario())


def test_job_finishes_when_child_keeps_output_open(make_rpk, make_service, kvstore, eventually):
    service = make_service(make_rpk(linger=True).path)

    async def scenario():
        assert (await service.initiate("job-1")).ok
        await eventually(_finished(service), timeout=3.0)
        assert (await service.status()).value.status is DebugBundleStatus.SUCCESS
        assert (await service.cancel("job-1")).code is ErrorCode.DEBUG_BUNDLE_PROCESS_NOT_RUNNING
        await eventually(lambda: load_metadata(kvstore) is not None, timeout=3.0)

        assert (await service.initiate("job-2")).ok
        await eventually(_finished(service), timeout=3.0)
        assert (await service.status()).value.job_id == "job-2"
        await service.stop()

    asyncio.run(scenario())


def test_stop_during_initiate_spawns_nothing(make_rpk, make_service):
    rpk = make_rpk(hang=True)
    service = make_service(rpk.path)

    async def scenario():
        pending = asyncio.create_task(service.initiate("job-1"))
        await asyncio.sleep(0)
        await service.stop()
        result = await pending
        assert result.code is ErrorCode.INTERNAL_ERROR
        assert "stopping" in result.error.message
        assert not service.is_running()

    asyncio.run(scenario())
    assert not rpk.args_file.exists()


def test_stop_during_spawn_terminates_new_process(make_rpk, make_service, eventually, monkeypatch):
    service = make_service(make_rpk(hang=True).path)
    spawned = []
    real_create = ExternalProcess.create

    async def slow_create(command):
        process = await real_create(command)
        spawned.append(process)
        await asyncio.sleep(0.2)
        return process

    monkeypatch.setattr(ExternalProcess, "create", slow_create)

    async def scenario():
        pending = asyncio.create_task(service.initiate("job-1"))
        await eventually(lambda: bool(spawned))
        await service.stop()
        result = await pending
        assert result.code is ErrorCode.INTERNAL_ERROR
        assert "stopping" in result.error.message
        assert not spawned[0].is_running()
        assert service.process_status() is DebugBundleStatus.ERROR

    asyncio.run(scenario())


def test_cancel_racing_exit_reports_not_running(make_rpk, make_service, eventually, tmp_path: Path):
    rpk = make_rpk()
    service = make_service(rpk.path)
    output = tmp_path / "job-1.zip"

    async def scenario():
        external = await ExternalProcess.create([str(rpk.path), "debug", "bundle", "--output", str(output)])
        process = BundleProcess("job-1", external, output, tmp_path / "job-1.out")
        service._rpk_process = process
        # exited, but nothing has collected the exit status yet
        await eventually(lambda: not external.is_running())
        assert service.process_status() is DebugBundleStatus.RUNNING

        result = await service.cancel("job-1")
        assert result.code is ErrorCode.DEBUG_BUNDLE_PROCESS_NOT_RUNNING

        await process.wait()
        assert (await service.status()).value.status is DebugBundleStatus.SUCCESS
        await service.stop()

    asyncio.run(scenario())
