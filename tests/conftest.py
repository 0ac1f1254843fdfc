import sys
import json
from pathlib import Path
from typing import Any, List, Optional, Tuple

import pytest

from mediajobs.engines import EngineCommand, build_command
from mediajobs.jobs import MediaJob


def pytest_configure(config):
    """Add custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests that spawn real subprocesses")


class EventRecorder:
    """Async event callback that keeps every event it receives."""

    def __init__(self, history_path: Optional[Path] = None):
        self.events: List[Tuple[str, Any]] = []
        self.history_path = history_path
        # Status of the last history line at the moment each job_update arrived.
        self.persisted_statuses: List[str] = []

    async def __call__(self, event: Tuple[str, Any]):
        self.events.append(event)
        if event[0] == 'job_update' and self.history_path is not None:
            last_line = self.history_path.read_text(encoding='utf-8').splitlines()[-1]
            self.persisted_statuses.append(json.loads(last_line)['status'])

    def of_kind(self, kind: str) -> List[Any]:
        return [value for name, value in self.events if name == kind]


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / 'workflow'
    root.mkdir()
    return root


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def python_command():
    """Command builder that runs a job's `script` option with this interpreter."""
    def build(job: MediaJob, tool_path: Optional[Path] = None) -> EngineCommand:
        if 'script' not in job.options:
            return build_command(job, tool_path)
        return EngineCommand(sys.executable, ['-u', '-c', job.options['script']])
    return build


@pytest.fixture
def make_job(tmp_path):
    def make(**overrides) -> MediaJob:
        fields = {
            'kind': 'download',
            'engine': 'yt-dlp',
            'input': 'https://example.com/watch?v=abc',
            'output': str(tmp_path / 'out'),
        }
        fields.update(overrides)
        return MediaJob(**fields)
    return make


def read_history(storage_root: Path) -> List[dict]:
    path = storage_root / '_Media' / 'JobHistory.jsonl'
    return [json.loads(line) for line in path.read_text(encoding='utf-8').splitlines() if line.strip()]


@pytest.fixture
def history_records():
    return read_history
