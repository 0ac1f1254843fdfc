"""Spawning, inspecting, and terminating tool subprocess trees."""
import os
import sys
import signal
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .constants import ERROR_TAIL_LINES, SUBPROCESS_CREATION_FLAGS
from .jobs import JobStatus

logger = logging.getLogger(__name__)


def subprocess_kwargs() -> Dict[str, Any]:
    """Spawn options that put the tool in its own process group, so the whole tree can be killed."""
    kwargs: Dict[str, Any] = {}
    if sys.platform == 'win32':
        kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs['preexec_fn'] = os.setsid
    return kwargs


def _is_valid_pid(pid: Any) -> bool:
    return isinstance(pid, int) and not isinstance(pid, bool) and pid > 0


def kill_process_tree(pid: Optional[int]) -> bool:
    """
    Forcefully terminates a process and all of its descendants.

    On Windows the tree is walked by `taskkill /T /F`. Elsewhere the process
    group created at spawn time is sent SIGKILL. If that fails (tool missing,
    or the process already exited), a direct kill of the top-level pid is
    attempted.

    Args:
        pid: The process id of the tree's root.

    Returns:
        True if a kill signal was delivered, False otherwise. Never raises.
    """
    if not _is_valid_pid(pid):
        logger.warning(f"kill_process_tree called with invalid PID: {pid!r}")
        return False

    try:
        if sys.platform == 'win32':
            subprocess.run(
                ['taskkill', '/pid', str(pid), '/T', '/F'],
                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                check=True, creationflags=SUBPROCESS_CREATION_FLAGS
            )
            logger.info(f"Killed process tree for PID {pid}")
            return True

        pgid = os.getpgid(pid)
        if pgid == os.getpgrp():
            raise OSError(f"PID {pid} shares the supervisor's process group")
        os.killpg(pgid, signal.SIGKILL)
        logger.info(f"Sent SIGKILL to process group {pgid} (PID {pid})")
        return True
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Failed to kill process tree for PID {pid}: {e}")

    try:
        os.kill(pid, getattr(signal, 'SIGKILL', signal.SIGTERM))
        logger.info(f"Fallback: killed PID {pid} directly")
        return True
    except OSError as e:
        logger.error(f"Fallback kill also failed for PID {pid}: {e}")
        return False


def is_process_running(pid: Optional[int]) -> bool:
    """Checks whether a process with the given pid exists (signal 0 probe, `tasklist` on Windows)."""
    if not _is_valid_pid(pid):
        return False
    if sys.platform == 'win32':
        # os.kill(pid, 0) sends CTRL_C_EVENT there.
        result = subprocess.run(
            ['tasklist', '/FI', f'PID eq {pid}', '/NH'],
            capture_output=True, text=True, creationflags=SUBPROCESS_CREATION_FLAGS
        )
        return str(pid) in result.stdout.split()
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True  # exists, owned by someone else
    except OSError:
        return False


@dataclass
class ProcessOutcome:
    """
    How a job's subprocess ended.

    Exactly one of the fields below describes the ending: `failure` when the
    process never ran, `signal_name` when it was killed, otherwise
    `return_code` (which some tools leave as None on a normal exit).
    """
    job_id: str
    return_code: Optional[int] = None
    signal_name: Optional[str] = None
    failure: Optional[str] = None

    @classmethod
    def from_return_code(cls, job_id: str, return_code: Optional[int]) -> "ProcessOutcome":
        # asyncio reports "killed by signal N" as a return code of -N on POSIX.
        if return_code is not None and return_code < 0 and sys.platform != 'win32':
            try:
                name = signal.Signals(-return_code).name
            except ValueError:
                name = f"signal {-return_code}"
            return cls(job_id, return_code=None, signal_name=name)
        return cls(job_id, return_code=return_code)


def resolve_outcome(outcome: ProcessOutcome, logs_tail: List[str],
                    null_exit_is_success: bool = True) -> Tuple[JobStatus, Optional[str]]:
    """
    Maps a process outcome to the job's terminal status and error message.

    Args:
        outcome: The subprocess result.
        logs_tail: The job's captured output, quoted in exit-code errors.
        null_exit_is_success: Whether the engine ends normally without an exit code.

    Returns:
        A (status, error_message) tuple.
    """
    if outcome.failure:
        return JobStatus.ERROR, outcome.failure
    if outcome.signal_name:
        return JobStatus.ERROR, f"Process killed by signal {outcome.signal_name}"
    if outcome.return_code == 0:
        return JobStatus.SUCCESS, None
    if outcome.return_code is None:
        if null_exit_is_success:
            return JobStatus.SUCCESS, None
        return JobStatus.ERROR, "Process exited without an exit code"
    last_lines = ' | '.join(logs_tail[-ERROR_TAIL_LINES:])
    return JobStatus.ERROR, f"Exit code {outcome.return_code}: {last_lines or 'No output'}"
