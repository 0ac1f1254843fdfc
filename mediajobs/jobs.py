"""
Defines the data model for media jobs: the job record, its status machine,
the enqueue request, engine options, and the events sent to the UI.

Job records are serialized with camelCase keys so a history file reads the
same as the records the UI receives.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .exceptions import UnknownEngineError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Engine(str, Enum):
    """External tool categories a job can be executed by."""
    YT_DLP = 'yt-dlp'
    FFMPEG = 'ffmpeg'
    IMAGEMAGICK = 'imagemagick'
    SOFFICE = 'soffice'  # reserved, building it raises UnsupportedEngineError

    def __str__(self):
        return self.value

    @classmethod
    def from_tag(cls, tag: str) -> "Engine":
        """
        Resolves an engine tag to its enum member.

        Raises:
            UnknownEngineError: If the tag is not a known engine.
        """
        try:
            return cls(tag)
        except ValueError:
            raise UnknownEngineError(f"Unknown engine: {tag}") from None


class JobStatus(str, Enum):
    QUEUED = 'queued'
    RUNNING = 'running'
    SUCCESS = 'success'
    ERROR = 'error'
    CANCELED = 'canceled'

    def __str__(self):
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.RUNNING)

    def can_transition_to(self, new_status: "JobStatus") -> bool:
        return new_status in _TRANSITIONS[self]


TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.ERROR, JobStatus.CANCELED})

_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELED}),
    JobStatus.RUNNING: TERMINAL_STATUSES,
    JobStatus.SUCCESS: frozenset(),
    JobStatus.ERROR: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class MediaJob(_CamelModel):
    """
    Represents a single download or conversion task.

    Attributes:
        id: Unique identifier assigned at enqueue time.
        kind: The capability requested ("download" or "convert").
        engine: The tag of the engine that executes the job (e.g. "yt-dlp").
        input: Source path or URL.
        output: Destination directory.
        status: Current lifecycle state.
        progress: Percentage 0-100, or None when unknown.
        logs_tail: The most recent lines of tool output.
        error_message: Diagnostic text for failed jobs.
        options: Engine-specific settings, opaque to the scheduler.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    kind: str = Field(frozen=True)
    engine: str = Field(frozen=True)
    input: str = Field(frozen=True)
    output: str = Field(frozen=True)
    status: JobStatus = JobStatus.QUEUED
    progress: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow, frozen=True)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs_tail: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('created_at', 'started_at', 'completed_at')
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Treats naive timestamps from older history files as UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True)


class EnqueueRequest(_CamelModel):
    """A request from the UI to run a job."""
    kind: Optional[str] = None
    engine: str = Field(min_length=1)
    input: str = Field(min_length=1)
    output: str = Field(min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)

    def resolved_kind(self) -> str:
        if self.kind:
            return self.kind
        return 'download' if self.engine == Engine.YT_DLP.value else 'convert'


# --- Engine options ---

class ThrottlingSettings(_CamelModel):
    enabled: bool = False
    sleep_interval: float = 0
    max_sleep_interval: float = 0
    limit_rate: Optional[str] = None


class YtDlpSettings(_CamelModel):
    cookies_mode: str = 'none'  # 'browser' | 'file' | 'none'
    cookies_browser: Optional[str] = None
    cookies_file_path: Optional[str] = None
    throttling: ThrottlingSettings = Field(default_factory=ThrottlingSettings)


class AdvancedVideoOptions(_CamelModel):
    resolution: Optional[str] = None  # '1080p' | '720p' | '540p'
    quality: Optional[str] = None     # 'high' | 'medium' | 'lite'
    audio: Optional[str] = None       # 'copy' | 'aac-192' | 'aac-128'


class JobOptions(_CamelModel):
    preset: str = ''
    tool_path: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    yt_dlp_settings: YtDlpSettings = Field(default_factory=YtDlpSettings)
    advanced_options: Optional[AdvancedVideoOptions] = None


# --- Events sent to the UI ---

@dataclass
class ProgressEvent:
    job_id: str
    progress: Optional[float]
    log_line: str


@dataclass
class CompletionEvent:
    job_id: str
    status: JobStatus
    error_message: Optional[str] = None


@dataclass
class JobSnapshot:
    """Active jobs in FIFO order and the most recent finished jobs, newest first."""
    queue: List[MediaJob] = field(default_factory=list)
    history: List[MediaJob] = field(default_factory=list)
