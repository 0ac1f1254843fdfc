"""Manages the job queue, worker tasks, and tool subprocesses."""
import asyncio
import codecs
import re
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, Optional, Tuple, Union

from pydantic import ValidationError

from .config import Settings
from .constants import HISTORY_LIMIT, LOGS_TAIL_LIMIT, MAX_CONCURRENT_JOBS
from .engines import EngineCommand, build_command, get_engine_spec
from .exceptions import EngineConfigurationError
from .history import HistoryStore
from .jobs import (
    CompletionEvent, EnqueueRequest, JobSnapshot, JobStatus, MediaJob, ProgressEvent, utcnow
)
from .process_utils import ProcessOutcome, is_process_running, kill_process_tree, resolve_outcome, subprocess_kwargs
from .progress import parse_progress
from .registry import JobRegistry
from .scheduler import Scheduler

EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]
CommandBuilder = Callable[[MediaJob, Optional[Path]], EngineCommand]

READ_CHUNK_SIZE = 4096
# ffmpeg redraws its status line with bare carriage returns.
_LINE_BREAK = re.compile(r'[\r\n]+')
INTERRUPTED_MESSAGE = "Interrupted: the supervisor stopped before the job finished"


class JobManager:
    """
    Runs media jobs as tool subprocesses, at most `max_concurrent` at a time.

    Every job runs in its own task, which ends by putting a ProcessOutcome on
    the completion channel. A single supervisor task consumes that channel,
    applies the terminal status and promotes the next queued jobs. Every
    status change is appended to the history before it is reported through
    `event_callback`, which receives `('job_update', MediaJob)`,
    `('job_progress', ProgressEvent)` and `('job_complete', CompletionEvent)`
    tuples.

    No public method raises for job-level problems; they become a job's
    `error` status or a logged warning.
    """

    def __init__(self,
                 event_callback: Optional[EventCallback] = None,
                 max_concurrent: int = MAX_CONCURRENT_JOBS,
                 tool_paths: Optional[Dict[str, Path]] = None,
                 history: Optional[HistoryStore] = None,
                 command_builder: CommandBuilder = build_command,
                 logs_tail_limit: int = LOGS_TAIL_LIMIT,
                 history_limit: int = HISTORY_LIMIT):
        """
        Initializes the JobManager.

        Args:
            event_callback: The async function to call with job events.
            max_concurrent: The maximum number of jobs running at once.
            tool_paths: Configured executables, keyed by engine tag.
            history: The store to persist job records to.
            command_builder: Builds the tool invocation for a job.
            logs_tail_limit: How many output lines each job keeps.
            history_limit: How many finished jobs `list_jobs` returns.
        """
        self.event_callback = event_callback
        self.logger = logging.getLogger(__name__)
        self.history = history or HistoryStore()
        self.registry = JobRegistry()
        self.scheduler = Scheduler(max_concurrent)
        self.tool_paths = self._normalize_tool_paths(tool_paths)
        self.command_builder = command_builder
        self.logs_tail_limit = logs_tail_limit
        self.history_limit = history_limit
        self.completions: asyncio.Queue[ProcessOutcome] = asyncio.Queue()
        self.worker_tasks: set[asyncio.Task] = set()
        self.supervisor_task: Optional[asyncio.Task] = None
        self._promoting = False
        self._promote_again = False
        self._finished_events: Dict[str, asyncio.Event] = {}

    @classmethod
    def from_settings(cls, settings: Settings, event_callback: Optional[EventCallback] = None) -> "JobManager":
        return cls(
            event_callback=event_callback,
            max_concurrent=settings.max_concurrent_jobs,
            tool_paths=settings.engines.tool_paths(),
            logs_tail_limit=settings.logs_tail_limit,
            history_limit=settings.history_limit,
        )

    @staticmethod
    def _normalize_tool_paths(tool_paths: Optional[Dict[str, Path]]) -> Dict[str, Path]:
        return {str(engine): Path(path) for engine, path in (tool_paths or {}).items() if path}

    # --- Lifecycle ---

    def start(self):
        """Starts the completion supervisor. Safe to call repeatedly."""
        if self.supervisor_task is None or self.supervisor_task.done():
            self.supervisor_task = asyncio.create_task(self._supervise_completions(), name="job-completions")
            self.supervisor_task.add_done_callback(self._handle_task_exception)

    async def initialize(self, storage_root: Optional[Path], force: bool = False):
        """
        Binds the manager to a storage root, reloading the job table if it changed.

        Args:
            storage_root: The workflow root whose history file to use, or None
                to run without persistence.
            force: Reload even when the root is unchanged.
        """
        self.start()
        if await self.history.initialize(storage_root, force=force):
            await self._reload()
        await self.process_queue()

    async def reinitialize(self, storage_root: Optional[Path]):
        """Reloads the job table from `storage_root`, even if it is the current root."""
        await self.initialize(storage_root, force=True)

    async def set_config(self, max_concurrent: int, tool_paths: Optional[Dict[str, Path]] = None):
        """Sets runtime configuration for the manager."""
        self.scheduler.set_max_concurrent(max_concurrent)
        if tool_paths is not None:
            self.tool_paths = self._normalize_tool_paths(tool_paths)
        await self.process_queue()

    async def shutdown(self, timeout: float = 10):
        """Cancels all jobs, waits for their tasks, and stops the supervisor."""
        self.logger.info("Shutting down job manager...")
        await self.cancel_all()

        if self.worker_tasks:
            _, pending = await asyncio.wait(list(self.worker_tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self.supervisor_task is not None:
            try:
                await asyncio.wait_for(self.completions.join(), timeout=timeout)
            except asyncio.TimeoutError:
                self.logger.warning("Timed out draining job completions.")
            self.supervisor_task.cancel()
            await asyncio.gather(self.supervisor_task, return_exceptions=True)
            self.supervisor_task = None

    async def _reload(self):
        """Replaces the job table with the history file's contents, keeping live jobs."""
        active = self.registry.with_status(JobStatus.QUEUED, JobStatus.RUNNING)
        loaded = await self.history.load_all()
        self.registry.replace(loaded)

        # Unlike the rest of the old table, live jobs are not discarded: they move
        # to the new store so none of their subprocesses are orphaned.
        for job in active:
            self.registry.add(job)
            await self.history.append(job)
        if active:
            self.logger.info(f"Carried {len(active)} active job(s) over to the new history.")

        live_ids = {job.id for job in active}
        for job in self.registry.with_status(JobStatus.RUNNING):
            if job.id not in live_ids:
                self.logger.warning(f"Job {job.id} was running when the supervisor stopped; marking as error.")
                await self._finish(job, JobStatus.ERROR, INTERRUPTED_MESSAGE)

        self.logger.info(f"Job table loaded: {len(self.registry)} job(s)")

    # --- Public API ---

    async def enqueue(self, payload: Union[EnqueueRequest, Dict[str, Any]]) -> Optional[str]:
        """
        Adds a job to the queue and starts it if a slot is free.

        Args:
            payload: An EnqueueRequest, or a dict with kind, engine, input,
                output and options.

        Returns:
            The new job's id, or None if the request was rejected.
        """
        try:
            request = payload if isinstance(payload, EnqueueRequest) else EnqueueRequest.model_validate(payload)
        except ValidationError as e:
            error = e.errors()[0]
            self.logger.warning(f"Rejected enqueue request ({'.'.join(map(str, error['loc']))}): {error['msg']}")
            return None

        job = MediaJob(
            kind=request.resolved_kind(),
            engine=request.engine,
            input=request.input,
            output=request.output,
            options=dict(request.options),
        )
        self.registry.add(job)
        await self.history.append(job)
        await self._emit(('job_update', job.model_copy(deep=True)))
        self.logger.info(f"Enqueued job {job.id}: {job.engine}")

        self.start()
        await self.process_queue()
        return job.id

    async def cancel(self, job_id: str) -> bool:
        """
        Cancels a queued or running job.

        A running job's subprocess tree is killed after the job is marked
        canceled, so its eventual exit is ignored.

        Returns:
            True if the job was canceled, False if it is unknown or already finished.
        """
        job = self.registry.get(job_id)
        if job is None or job.status.is_terminal:
            return False

        was_running = job.status is JobStatus.RUNNING
        if not await self._finish(job, JobStatus.CANCELED):
            return False

        if was_running:
            process = self.registry.get_process(job_id)
            if process is not None and process.returncode is None and is_process_running(process.pid):
                if not await asyncio.to_thread(kill_process_tree, process.pid):
                    self.logger.warning(f"Could not terminate process tree of job {job_id} (PID {process.pid})")

        self.logger.info(f"Canceled job {job_id}")
        await self.process_queue()
        return True

    async def cancel_all(self) -> int:
        """Cancels every queued and running job. Returns the number canceled."""
        # Queued jobs go first so none of them is promoted into a freed slot.
        targets = self.registry.queued_fifo() + self.registry.with_status(JobStatus.RUNNING)
        count = 0
        for job in targets:
            if await self.cancel(job.id):
                count += 1
        if count:
            self.logger.info(f"Canceled {count} job(s)")
        return count

    def list_jobs(self) -> JobSnapshot:
        """Returns copies of the active jobs (FIFO) and the most recent finished jobs."""
        return JobSnapshot(
            queue=[job.model_copy(deep=True) for job in self.registry.active_fifo()],
            history=[job.model_copy(deep=True) for job in self.registry.finished_recent(self.history_limit)],
        )

    def get_job(self, job_id: str) -> Optional[MediaJob]:
        job = self.registry.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Optional[MediaJob]:
        """
        Waits until a job reaches a terminal state.

        Returns:
            A copy of the job (still active if the timeout expired), or None
            if the job is unknown.
        """
        job = self.registry.get(job_id)
        if job is None:
            return None
        if not job.status.is_terminal:
            event = self._finished_events.setdefault(job_id, asyncio.Event())
            try:
                await asyncio.wait_for(event.wait(), timeout)
            except asyncio.TimeoutError:
                pass
        return self.get_job(job_id)

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Waits until no job is queued or running. Returns False on timeout."""
        async def drain():
            while active := self.registry.active_fifo():
                await asyncio.gather(*(self.wait_for(job.id) for job in active))

        try:
            await asyncio.wait_for(drain(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # --- Scheduling ---

    async def process_queue(self):
        """
        Promotes the oldest queued jobs into free slots.

        Idempotent. A call made while a promotion pass is in progress (for
        instance from an event callback) makes that pass run again instead
        of promoting concurrently, which keeps the concurrency cap exact.
        """
        if self._promoting:
            self._promote_again = True
            return
        self._promoting = True
        try:
            while True:
                self._promote_again = False
                for job in self.scheduler.select_next(self.registry):
                    await self._start_job(job)
                if not self._promote_again:
                    break
        finally:
            self._promoting = False

    async def _start_job(self, job: MediaJob):
        # A job canceled after being selected stays canceled.
        if not await self._transition(job, JobStatus.RUNNING, started_at=utcnow()):
            return
        self.logger.info(f"Starting job {job.id}: {job.engine}")
        self.start()
        task = asyncio.create_task(self._execute_job(job), name=f"job-{job.id}")
        self.worker_tasks.add(task)
        task.add_done_callback(self._task_done_callback(self.worker_tasks))

    async def _transition(self, job: MediaJob, status: JobStatus, **changes: Any) -> bool:
        """Applies a legal status change, persists it, then reports it."""
        if not job.status.can_transition_to(status):
            self.logger.debug(f"Ignoring transition of job {job.id} from {job.status} to {status}")
            return False
        job.status = status
        for name, value in changes.items():
            setattr(job, name, value)
        await self.history.append(job)
        await self._emit(('job_update', job.model_copy(deep=True)))
        return True

    async def _finish(self, job: MediaJob, status: JobStatus, error_message: Optional[str] = None) -> bool:
        if not await self._transition(job, status, completed_at=utcnow(), error_message=error_message):
            return False
        if event := self._finished_events.pop(job.id, None):
            event.set()
        await self._emit(('job_complete', CompletionEvent(job.id, status, error_message)))
        return True

    # --- Execution ---

    async def _execute_job(self, job: MediaJob):
        outcome = await self._run_process(job)
        await self.completions.put(outcome)

    async def _run_process(self, job: MediaJob) -> ProcessOutcome:
        """Executes the tool subprocess for a single job."""
        if job.status is not JobStatus.RUNNING:
            return ProcessOutcome(job.id)

        try:
            command = self.command_builder(job, self.tool_paths.get(job.engine))
        except EngineConfigurationError as e:
            self.logger.error(f"Job {job.id} failed to start: {e}")
            return ProcessOutcome(job.id, failure=f"Failed to start: {e}")
        except Exception as e:
            self.logger.exception(f"Unexpected error building the command for job {job.id}")
            return ProcessOutcome(job.id, failure=f"Failed to start: {e}")

        self.logger.info(f"Executing job {job.id}: {command.display()}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **subprocess_kwargs()
            )
        except (OSError, ValueError) as e:
            self.logger.error(f"Job {job.id} spawn error: {e}")
            return ProcessOutcome(job.id, failure=f"Spawn error: {e}")

        self.registry.attach_process(job.id, process)
        try:
            if job.status is not JobStatus.RUNNING:
                # Canceled while the process was being spawned.
                await asyncio.to_thread(kill_process_tree, process.pid)
            await asyncio.gather(
                self._read_stream(job, process.stdout),
                self._read_stream(job, process.stderr),
            )
            return_code = await process.wait()
        except asyncio.CancelledError:
            kill_process_tree(process.pid)
            raise
        finally:
            self.registry.detach_process(job.id)

        self.logger.info(f"Job {job.id} exited: code={return_code}")
        return ProcessOutcome.from_return_code(job.id, return_code)

    async def _read_stream(self, job: MediaJob, stream: Optional[asyncio.StreamReader]):
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        pending = ''
        while chunk := await stream.read(READ_CHUNK_SIZE):
            *lines, pending = _LINE_BREAK.split(pending + decoder.decode(chunk))
            for line in lines:
                await self._handle_output(job, line)
        pending += decoder.decode(b'', final=True)
        if pending:
            await self._handle_output(job, pending)

    async def _handle_output(self, job: MediaJob, line: str):
        line = line.strip()
        if not line or job.status.is_terminal:
            return
        self.logger.debug(f"[{job.id}] {line}")

        job.logs_tail.append(line)
        if len(job.logs_tail) > self.logs_tail_limit:
            del job.logs_tail[:-self.logs_tail_limit]

        progress = parse_progress(job.engine, line)
        if progress is not None:
            job.progress = progress
        await self._emit(('job_progress', ProgressEvent(job.id, job.progress, line)))

    # --- Completion channel ---

    async def _supervise_completions(self):
        """Applies the terminal status of each finished subprocess, in arrival order."""
        try:
            while True:
                outcome = await self.completions.get()
                try:
                    await self._handle_outcome(outcome)
                except Exception:
                    self.logger.exception(f"Failed to handle the exit of job {outcome.job_id}")
                finally:
                    self.completions.task_done()
        except asyncio.CancelledError:
            self.logger.info("Completion supervisor cancelled.")

    async def _handle_outcome(self, outcome: ProcessOutcome):
        job = self.registry.get(outcome.job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            # Canceled jobs keep their status; their late exit is dropped.
            self.logger.debug(f"Ignoring exit of job {outcome.job_id}; it is no longer running.")
        else:
            try:
                null_exit_is_success = get_engine_spec(job.engine).null_exit_is_success
            except EngineConfigurationError:
                null_exit_is_success = True
            status, error_message = resolve_outcome(outcome, job.logs_tail, null_exit_is_success)
            if await self._finish(job, status, error_message):
                if status is JobStatus.SUCCESS:
                    self.logger.info(f"Job {job.id} completed successfully")
                else:
                    self.logger.error(f"Job {job.id} failed: {error_message}")
        await self.process_queue()

    # --- Helpers ---

    async def _emit(self, event: Tuple[str, Any]):
        """Delivers an event to the UI. Callback failures are logged, never propagated."""
        if self.event_callback is None:
            return
        try:
            await self.event_callback(event)
        except Exception:
            self.logger.exception(f"Event callback failed for {event[0]} event")

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass  # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")
