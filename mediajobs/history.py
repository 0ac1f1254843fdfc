"""Append-only job history, stored as one JSON record per line."""
import os
import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

import aiofiles
from pydantic import ValidationError

from .constants import HISTORY_FILE_NAME, MEDIA_DIR_NAME
from .jobs import MediaJob


class HistoryStore:
    """
    Durable log of every job record revision.

    Each append writes the full current record of one job. On load, later
    lines for the same job id supersede earlier ones. The file is never
    rewritten, and persistence failures are logged rather than raised so a
    broken disk cannot take down an in-flight job.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.history_path: Optional[Path] = None
        self.write_lock = asyncio.Lock()
        self.tail_checked = False

    @property
    def enabled(self) -> bool:
        return self.history_path is not None

    @staticmethod
    def history_path_for(storage_root: Path) -> Path:
        return Path(storage_root) / MEDIA_DIR_NAME / HISTORY_FILE_NAME

    async def initialize(self, storage_root: Optional[Path], force: bool = False) -> bool:
        """
        Points the store at the history file under a storage root.

        Args:
            storage_root: The workflow root directory, or None to disable persistence.
            force: Report a reload even if the location did not change.

        Returns:
            True if the location changed (or `force` was set) and the caller
            should reload its job table from `load_all()`.
        """
        if not storage_root:
            self.logger.warning("No storage root configured. Job history will not persist.")
            self.history_path = None
            return False

        new_path = self.history_path_for(storage_root)
        try:
            await asyncio.to_thread(new_path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            self.logger.error(f"Could not create history directory {new_path.parent}: {e}")

        if new_path == self.history_path and not force:
            return False
        self.history_path = new_path
        self.tail_checked = False
        self.logger.info(f"Job history file: {new_path}")
        return True

    async def append(self, job: MediaJob):
        """Appends the job's current record. Failures are logged, never raised."""
        if self.history_path is None:
            return
        try:
            line = job.to_json_line() + '\n'
            async with self.write_lock:
                if not self.tail_checked:
                    await self._close_partial_line()
                async with aiofiles.open(self.history_path, 'a', encoding='utf-8') as f:
                    await f.write(line)
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to persist job {job.id}: {e}")

    async def _close_partial_line(self):
        """Ends a line left unterminated by a crash, so the next record starts on its own line."""
        if await asyncio.to_thread(self.history_path.exists):
            async with aiofiles.open(self.history_path, 'rb') as f:
                size = await f.seek(0, os.SEEK_END)
                if size:
                    await f.seek(size - 1)
                    last_byte = await f.read(1)
                else:
                    last_byte = b'\n'
            if last_byte != b'\n':
                self.logger.warning(f"History file {self.history_path} ends mid-record; starting a new line")
                async with aiofiles.open(self.history_path, 'ab') as f:
                    await f.write(b'\n')
        self.tail_checked = True

    async def load_all(self) -> Dict[str, MediaJob]:
        """
        Reads the whole history file and reduces it to the latest record per job.

        Corrupt or truncated lines are skipped. A missing file yields an empty
        mapping.

        Returns:
            A dict of job id to job, in order of each job's first appearance.
        """
        jobs: Dict[str, MediaJob] = {}
        if self.history_path is None or not await asyncio.to_thread(self.history_path.exists):
            return jobs

        line_count, skipped = 0, 0
        try:
            async with aiofiles.open(self.history_path, 'r', encoding='utf-8', errors='replace') as f:
                async for line in f:
                    line_count += 1
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        job = MediaJob.model_validate_json(line)
                    except ValidationError as e:
                        skipped += 1
                        self.logger.warning(f"Skipping unreadable history line {line_count}: {e.error_count()} error(s)")
                        continue
                    jobs[job.id] = job
        except OSError as e:
            self.logger.error(f"Failed to load history from {self.history_path}: {e}")
            return jobs

        self.logger.info(f"Loaded {len(jobs)} job(s) from {line_count} history line(s), {skipped} skipped")
        return jobs
