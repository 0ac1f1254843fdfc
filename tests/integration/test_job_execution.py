import sys
import asyncio

import pytest

from mediajobs.engines import EngineCommand
from mediajobs.history import HistoryStore
from mediajobs.jobs import CompletionEvent, JobStatus, MediaJob
from mediajobs.manager import INTERRUPTED_MESSAGE, JobManager

SLEEP = "import time; time.sleep(30)"
PROGRESS = "print('[youtube] abc: Downloading webpage'); print('[download]  42.5% of 10MiB'); print('[download] 100.0% of 10MiB')"
FAIL = "import sys\nfor i in range(1, 8): print(f'line {i}')\nsys.exit(3)"


def payload(tmp_path, script, engine='yt-dlp'):
    return {
        'engine': engine,
        'input': 'https://example.com/watch?v=abc',
        'output': str(tmp_path / 'out'),
        'options': {'script': script},
    }


async def wait_until(predicate, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.integration
class TestJobLifecycle:
    @pytest.mark.asyncio
    async def test_successful_job_reports_progress_and_persists_before_each_update(
            self, tmp_path, storage_root, python_command, recorder):
        recorder.history_path = HistoryStore.history_path_for(storage_root)
        manager = JobManager(event_callback=recorder, command_builder=python_command)
        await manager.initialize(storage_root)
        try:
            job_id = await manager.enqueue(payload(tmp_path, PROGRESS))
            job = await manager.wait_for(job_id, timeout=15)
        finally:
            await manager.shutdown()

        assert job.status is JobStatus.SUCCESS
        assert job.progress == 100.0
        assert job.error_message is None
        assert job.started_at is not None and job.completed_at >= job.started_at
        assert job.logs_tail[-1] == '[download] 100.0% of 10MiB'

        updates = [event.status for event in recorder.of_kind('job_update')]
        assert updates == [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.SUCCESS]
        assert recorder.persisted_statuses == ['queued', 'running', 'success']
        assert [event.progress for event in recorder.of_kind('job_progress')] == [None, 42.5, 100.0]
        assert recorder.events[-1] == ('job_complete', CompletionEvent(job_id, JobStatus.SUCCESS, None))

    @pytest.mark.asyncio
    async def test_nonzero_exit_quotes_the_last_lines(self, tmp_path, python_command):
        manager = JobManager(command_builder=python_command)
        try:
            job = await manager.wait_for(await manager.enqueue(payload(tmp_path, FAIL)), timeout=15)
        finally:
            await manager.shutdown()
        assert job.status is JobStatus.ERROR
        assert job.error_message == "Exit code 3: line 3 | line 4 | line 5 | line 6 | line 7"

    @pytest.mark.skipif(sys.platform == 'win32', reason="POSIX signals")
    @pytest.mark.asyncio
    async def test_signal_death_is_an_error(self, tmp_path, python_command):
        script = "import os, signal; os.kill(os.getpid(), signal.SIGTERM)"
        manager = JobManager(command_builder=python_command)
        try:
            job = await manager.wait_for(await manager.enqueue(payload(tmp_path, script)), timeout=15)
        finally:
            await manager.shutdown()
        assert job.status is JobStatus.ERROR
        assert job.error_message == "Process killed by signal SIGTERM"

    @pytest.mark.asyncio
    async def test_spawn_error(self, tmp_path):
        def missing_tool(job, tool_path=None):
            return EngineCommand(str(tmp_path / 'no-such-tool'), ['--version'])

        manager = JobManager(command_builder=missing_tool)
        try:
            job = await manager.wait_for(await manager.enqueue(payload(tmp_path, '')), timeout=15)
        finally:
            await manager.shutdown()
        assert job.status is JobStatus.ERROR
        assert job.error_message.startswith("Spawn error:")

    @pytest.mark.asyncio
    async def test_configuration_errors_fail_without_blocking_the_queue(self, tmp_path, python_command, recorder):
        manager = JobManager(event_callback=recorder, max_concurrent=1, command_builder=python_command)
        try:
            soffice_id = await manager.enqueue({'engine': 'soffice', 'input': 'a.docx', 'output': str(tmp_path)})
            unknown_id = await manager.enqueue({'engine': 'handbrake', 'input': 'a.mov', 'output': str(tmp_path)})
            ok_id = await manager.enqueue(payload(tmp_path, PROGRESS))
            assert await manager.wait_idle(timeout=15)
        finally:
            await manager.shutdown()

        soffice, unknown, ok = (manager.get_job(i) for i in (soffice_id, unknown_id, ok_id))
        assert soffice.kind == 'convert'
        assert soffice.status is JobStatus.ERROR
        assert soffice.error_message.startswith("Failed to start: Document conversion (soffice) is not supported")
        assert unknown.error_message == "Failed to start: Unknown engine: handbrake"
        assert ok.status is JobStatus.SUCCESS
        completions = recorder.of_kind('job_complete')
        assert [event.job_id for event in completions] == [soffice_id, unknown_id, ok_id]

    @pytest.mark.asyncio
    async def test_invalid_requests_are_rejected(self, recorder):
        manager = JobManager(event_callback=recorder)
        assert await manager.enqueue({'engine': 'yt-dlp', 'input': '', 'output': '/out'}) is None
        assert await manager.enqueue({'input': 'x', 'output': '/out'}) is None
        assert await manager.enqueue(None) is None
        assert recorder.events == []
        assert manager.list_jobs().queue == []
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failing_event_callback_does_not_affect_jobs(self, tmp_path, python_command):
        async def broken_callback(event):
            raise RuntimeError("UI went away")

        manager = JobManager(event_callback=broken_callback, command_builder=python_command)
        try:
            job = await manager.wait_for(await manager.enqueue(payload(tmp_path, PROGRESS)), timeout=15)
        finally:
            await manager.shutdown()
        assert job.status is JobStatus.SUCCESS


@pytest.mark.integration
class TestConcurrency:
    @pytest.mark.asyncio
    async def test_caps_running_jobs_and_promotes_in_fifo_order(self, tmp_path, python_command):
        manager = JobManager(max_concurrent=2, command_builder=python_command)
        try:
            ids = [await manager.enqueue(payload(tmp_path, SLEEP)) for _ in range(4)]
            statuses = [manager.get_job(job_id).status for job_id in ids]
            assert statuses == [JobStatus.RUNNING, JobStatus.RUNNING, JobStatus.QUEUED, JobStatus.QUEUED]
            assert [job.id for job in manager.list_jobs().queue] == ids

            assert await manager.cancel(ids[0])
            statuses = [manager.get_job(job_id).status for job_id in ids]
            assert statuses == [JobStatus.CANCELED, JobStatus.RUNNING, JobStatus.RUNNING, JobStatus.QUEUED]
        finally:
            await manager.shutdown()
        assert all(manager.get_job(job_id).status is JobStatus.CANCELED for job_id in ids)

    @pytest.mark.asyncio
    async def test_running_count_never_exceeds_the_cap(self, tmp_path, python_command):
        peak = 0

        async def track(event):
            nonlocal peak
            peak = max(peak, manager.registry.running_count())

        manager = JobManager(event_callback=track, max_concurrent=2, command_builder=python_command)
        try:
            ids = [await manager.enqueue(payload(tmp_path, PROGRESS)) for _ in range(5)]
            assert await manager.wait_idle(timeout=30)
        finally:
            await manager.shutdown()

        jobs = [manager.get_job(job_id) for job_id in ids]
        assert all(job.status is JobStatus.SUCCESS for job in jobs)
        assert peak == 2
        starts = [job.started_at for job in jobs]
        assert starts == sorted(starts)

    @pytest.mark.asyncio
    async def test_raising_the_cap_promotes_queued_jobs(self, tmp_path, python_command):
        manager = JobManager(max_concurrent=1, command_builder=python_command)
        try:
            first = await manager.enqueue(payload(tmp_path, SLEEP))
            second = await manager.enqueue(payload(tmp_path, SLEEP))
            assert manager.get_job(second).status is JobStatus.QUEUED
            await manager.set_config(max_concurrent=2)
            assert manager.get_job(first).status is JobStatus.RUNNING
            assert manager.get_job(second).status is JobStatus.RUNNING
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_enqueue_from_an_event_callback(self, tmp_path, python_command):
        follow_ups = []

        async def chain(event):
            kind, value = event
            if kind == 'job_complete' and not follow_ups:
                follow_ups.append(await manager.enqueue(payload(tmp_path, PROGRESS)))

        manager = JobManager(event_callback=chain, max_concurrent=1, command_builder=python_command)
        try:
            first = await manager.enqueue(payload(tmp_path, PROGRESS))
            await manager.wait_for(first, timeout=15)
            await wait_until(lambda: bool(follow_ups))
            assert await manager.wait_idle(timeout=15)
        finally:
            await manager.shutdown()
        assert manager.get_job(follow_ups[0]).status is JobStatus.SUCCESS


@pytest.mark.integration
class TestCancellation:
    @pytest.mark.asyncio
    async def test_canceled_queued_job_never_runs(self, tmp_path, storage_root, python_command, history_records):
        manager = JobManager(max_concurrent=1, command_builder=python_command)
        await manager.initialize(storage_root)
        try:
            blocker = await manager.enqueue(payload(tmp_path, SLEEP))
            waiting = await manager.enqueue(payload(tmp_path, PROGRESS))
            assert await manager.cancel(waiting)
            assert not await manager.cancel(waiting)
            assert await manager.cancel(blocker)
        finally:
            await manager.shutdown()

        job = manager.get_job(waiting)
        assert job.status is JobStatus.CANCELED
        assert job.started_at is None
        statuses = [record['status'] for record in history_records(storage_root) if record['id'] == waiting]
        assert statuses == ['queued', 'canceled']

    @pytest.mark.asyncio
    async def test_canceled_running_job_is_killed_and_its_exit_ignored(
            self, tmp_path, storage_root, python_command, history_records, recorder):
        manager = JobManager(event_callback=recorder, command_builder=python_command)
        await manager.initialize(storage_root)
        try:
            job_id = await manager.enqueue(payload(tmp_path, SLEEP))
            await wait_until(lambda: manager.registry.get_process(job_id) is not None)
            process = manager.registry.get_process(job_id)

            assert await manager.cancel(job_id)
            tasks = list(manager.worker_tasks)
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=10)
            await asyncio.wait_for(manager.completions.join(), timeout=10)
            assert process.returncode is not None
        finally:
            await manager.shutdown()

        job = manager.get_job(job_id)
        assert job.status is JobStatus.CANCELED
        assert job.error_message is None
        assert history_records(storage_root)[-1]['status'] == 'canceled'
        assert [event.status for event in recorder.of_kind('job_complete')] == [JobStatus.CANCELED]

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished_job(self, tmp_path, python_command):
        manager = JobManager(command_builder=python_command)
        try:
            assert not await manager.cancel('no-such-job')
            job_id = await manager.enqueue(payload(tmp_path, PROGRESS))
            await manager.wait_for(job_id, timeout=15)
            assert not await manager.cancel(job_id)
            assert manager.get_job(job_id).status is JobStatus.SUCCESS
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_all(self, tmp_path, python_command):
        manager = JobManager(max_concurrent=2, command_builder=python_command)
        try:
            ids = [await manager.enqueue(payload(tmp_path, SLEEP)) for _ in range(4)]
            assert await manager.cancel_all() == 4
            assert manager.list_jobs().queue == []
            assert all(manager.get_job(job_id).started_at is None for job_id in ids[2:])
        finally:
            await manager.shutdown()


@pytest.mark.integration
class TestHistoryReload:
    @pytest.mark.asyncio
    async def test_restart_recovers_stale_and_queued_jobs(self, tmp_path, storage_root, python_command):
        out = str(tmp_path / 'out')
        stale = MediaJob(kind='download', engine='yt-dlp', input='https://a', output=out, status=JobStatus.RUNNING)
        pending = MediaJob(kind='download', engine='yt-dlp', input='https://b', output=out,
                           options={'script': PROGRESS})
        done = MediaJob(kind='convert', engine='ffmpeg', input='c.mov', output=out, status=JobStatus.SUCCESS)
        history_path = HistoryStore.history_path_for(storage_root)
        history_path.parent.mkdir(parents=True)
        history_path.write_text(
            ''.join(job.to_json_line() + '\n' for job in (stale, pending, done)), encoding='utf-8'
        )

        manager = JobManager(command_builder=python_command)
        try:
            await manager.initialize(storage_root)
            recovered = manager.get_job(stale.id)
            assert recovered.status is JobStatus.ERROR
            assert recovered.error_message == INTERRUPTED_MESSAGE
            resumed = await manager.wait_for(pending.id, timeout=15)
        finally:
            await manager.shutdown()

        assert resumed.status is JobStatus.SUCCESS
        assert manager.get_job(done.id).status is JobStatus.SUCCESS
        history_ids = {job.id for job in manager.list_jobs().history}
        assert history_ids == {stale.id, pending.id, done.id}

    @pytest.mark.asyncio
    async def test_changing_root_carries_active_jobs_over(self, tmp_path, storage_root, python_command, history_records):
        other_root = tmp_path / 'other'
        manager = JobManager(command_builder=python_command)
        await manager.initialize(storage_root)
        try:
            job_id = await manager.enqueue(payload(tmp_path, SLEEP))
            await manager.initialize(other_root)
            assert [job.id for job in manager.list_jobs().queue] == [job_id]
            assert manager.get_job(job_id).status is JobStatus.RUNNING
            assert await manager.cancel(job_id)
        finally:
            await manager.shutdown()

        records = history_records(other_root)
        assert records[0]['id'] == job_id and records[0]['status'] == 'running'
        assert records[-1]['status'] == 'canceled'

    @pytest.mark.asyncio
    async def test_runs_without_a_storage_root(self, tmp_path, python_command):
        manager = JobManager(command_builder=python_command)
        try:
            await manager.initialize(None)
            job = await manager.wait_for(await manager.enqueue(payload(tmp_path, PROGRESS)), timeout=15)
        finally:
            await manager.shutdown()
        assert job.status is JobStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_wait_idle_with_nothing_to_do(self):
        manager = JobManager()
        assert await manager.wait_idle(timeout=1)
        assert await manager.wait_for('unknown') is None
        await manager.shutdown()
