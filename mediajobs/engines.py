"""
Builds the executable path and argument list for each job engine.

Every engine has an entry in `ENGINE_SPECS` holding a pure argument builder
over the job's input, output and parsed options. The preset tables below map
the named presets offered by the UI to tool arguments; an unrecognized preset
always falls back to a sensible default rather than failing.
"""

import shlex
import logging
from dataclasses import dataclass, field
from pathlib import Path, PureWindowsPath
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .constants import REDACTED_PLACEHOLDER
from .exceptions import InvalidJobOptionsError, UnsupportedEngineError
from .jobs import Engine, JobOptions, MediaJob, YtDlpSettings

logger = logging.getLogger(__name__)

# Flags whose following argument is a secret (cookie jars, browser profiles).
SENSITIVE_FLAGS = frozenset({'--cookies', '--cookies-from-browser'})
OUTPUT_SUFFIX = '_converted'


@dataclass(frozen=True)
class EngineCommand:
    """A fully built tool invocation."""
    executable: str
    args: List[str] = field(default_factory=list)
    output_path: Optional[Path] = None

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.args]

    def display(self) -> str:
        """The command line with secrets redacted, for logging only."""
        return shlex.join([self.executable, *redact_args(self.args)])


def redact_args(args: List[str]) -> List[str]:
    """Returns a copy of `args` with the value after each sensitive flag replaced."""
    return [
        REDACTED_PLACEHOLDER if i > 0 and args[i - 1] in SENSITIVE_FLAGS else arg
        for i, arg in enumerate(args)
    ]


# --- yt-dlp ---

YT_DLP_PRESETS: Dict[str, List[str]] = {
    'music-mp3': ['-f', 'ba/b', '-x', '--audio-format', 'mp3', '--audio-quality', '0'],
    'video-1080p': ['-f', 'bv*[height<=1080]+ba/b[height<=1080]'],
    'video-best': ['-f', 'bv*+ba/b'],
}
YT_DLP_DEFAULT_ARGS = YT_DLP_PRESETS['video-best']
YT_DLP_OUTPUT_TEMPLATE = '%(title)s.%(ext)s'


def _cookie_args(settings: YtDlpSettings) -> List[str]:
    if settings.cookies_mode == 'browser' and settings.cookies_browser:
        return ['--cookies-from-browser', settings.cookies_browser]
    if settings.cookies_mode == 'file' and settings.cookies_file_path:
        return ['--cookies', settings.cookies_file_path]
    return []


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _throttling_args(settings: YtDlpSettings) -> List[str]:
    throttling = settings.throttling
    if not throttling.enabled:
        return []
    args: List[str] = []
    # --max-sleep-interval is only valid together with --sleep-interval.
    if throttling.sleep_interval > 0:
        args.extend(['--sleep-interval', _format_number(throttling.sleep_interval)])
        if throttling.max_sleep_interval > throttling.sleep_interval:
            args.extend(['--max-sleep-interval', _format_number(throttling.max_sleep_interval)])
    if throttling.limit_rate:
        args.extend(['--limit-rate', throttling.limit_rate])
    return args


def build_yt_dlp_args(job: MediaJob, options: JobOptions) -> Tuple[List[str], Optional[Path]]:
    preset_args = YT_DLP_PRESETS.get(options.preset, YT_DLP_DEFAULT_ARGS)
    settings = options.yt_dlp_settings
    args = [
        *_cookie_args(settings),
        *_throttling_args(settings),
        *preset_args,
        *options.args,
        '-o', str(Path(job.output) / YT_DLP_OUTPUT_TEMPLATE),
        job.input,
    ]
    # yt-dlp names the file itself, so there is no single output path.
    return args, None


# --- ffmpeg ---

FFMPEG_PRESETS: Dict[str, List[str]] = {
    'audio-mp3-320': ['-vn', '-acodec', 'libmp3lame', '-ab', '320k'],
    'audio-mp3-192': ['-vn', '-acodec', 'libmp3lame', '-ab', '192k'],
    'audio-wav-48k': ['-vn', '-ar', '48000', '-acodec', 'pcm_s16le'],
    'audio-aac-256': ['-vn', '-acodec', 'aac', '-ab', '256k'],
    'video-mp4-1080p': ['-c:v', 'libx264', '-preset', 'slow', '-crf', '20', '-vf', 'scale=-2:1080', '-c:a', 'aac', '-b:a', '192k'],
    'video-mp4-720p': ['-c:v', 'libx264', '-preset', 'medium', '-crf', '23', '-vf', 'scale=-2:720', '-c:a', 'aac', '-b:a', '128k'],
    'video-mp4-540p-lite': ['-c:v', 'libx264', '-preset', 'fast', '-crf', '28', '-vf', 'scale=-2:540', '-c:a', 'aac', '-b:a', '96k'],
}
FFMPEG_DEFAULT_ARGS = ['-c:v', 'libx264', '-crf', '23', '-c:a', 'aac', '-b:a', '128k']
FFMPEG_ADVANCED_PRESET = 'video-advanced'
ADVANCED_RESOLUTIONS = {'1080p': 'scale=-2:1080', '720p': 'scale=-2:720', '540p': 'scale=-2:540'}
ADVANCED_CRF = {'high': '18', 'medium': '23', 'lite': '28'}
ADVANCED_AUDIO = {'copy': ['-c:a', 'copy'], 'aac-192': ['-c:a', 'aac', '-b:a', '192k'], 'aac-128': ['-c:a', 'aac', '-b:a', '128k']}
# Checked in order against the lowercased preset name.
FFMPEG_EXTENSION_HINTS = (('mp3', '.mp3'), ('wav', '.wav'), ('aac', '.m4a'), ('flac', '.flac'), ('avi', '.avi'), ('mkv', '.mkv'))
FFMPEG_DEFAULT_EXTENSION = '.mp4'


def ffmpeg_preset_args(options: JobOptions) -> List[str]:
    advanced = options.advanced_options
    if options.preset == FFMPEG_ADVANCED_PRESET and advanced is not None:
        args = ['-c:v', 'libx264', '-preset', 'medium']
        if advanced.resolution in ADVANCED_RESOLUTIONS:
            args.extend(['-vf', ADVANCED_RESOLUTIONS[advanced.resolution]])
        args.extend(['-crf', ADVANCED_CRF.get(advanced.quality or '', '23')])
        args.extend(ADVANCED_AUDIO.get(advanced.audio or '', []))
        return args
    return list(FFMPEG_PRESETS.get(options.preset, FFMPEG_DEFAULT_ARGS))


def ffmpeg_extension(preset: str) -> str:
    preset = preset.lower()
    for hint, extension in FFMPEG_EXTENSION_HINTS:
        if hint in preset:
            return extension
    return FFMPEG_DEFAULT_EXTENSION


def build_ffmpeg_args(job: MediaJob, options: JobOptions) -> Tuple[List[str], Optional[Path]]:
    output_path = converted_output_path(job.input, job.output, ffmpeg_extension(options.preset))
    args = ['-i', job.input, '-y', *ffmpeg_preset_args(options), *options.args, str(output_path)]
    return args, output_path


# --- ImageMagick ---

IMAGEMAGICK_PRESETS: Dict[str, Tuple[List[str], str]] = {
    'image-png': ([], '.png'),
    'image-jpg-90': (['-quality', '90'], '.jpg'),
    'image-webp': (['-quality', '90'], '.webp'),
    'image-ico-256': (['-resize', '256x256'], '.ico'),
}


def build_imagemagick_args(job: MediaJob, options: JobOptions) -> Tuple[List[str], Optional[Path]]:
    preset_args, extension = IMAGEMAGICK_PRESETS.get(options.preset, ([], None))
    # Unknown presets keep the input's own extension.
    output_path = converted_output_path(job.input, job.output, extension or _input_name(job.input).suffix)
    args = ['convert', job.input, *preset_args, *options.args, str(output_path)]
    return args, output_path


# --- Engine table ---

@dataclass(frozen=True)
class EngineSpec:
    """
    Static description of an engine.

    Attributes:
        default_tool: Executable name used when no path is configured.
        build_args: Pure function producing (args, output_path) for a job, or
            None for a reserved engine that cannot run.
        version_args: Arguments that make the tool print its version.
        null_exit_is_success: Treat an exit without a code or signal as success.
            Observed behavior of the tools below; verify before enabling it
            for a new engine.
    """
    default_tool: str
    build_args: Optional[Callable[[MediaJob, JobOptions], Tuple[List[str], Optional[Path]]]]
    version_args: Tuple[str, ...] = ('--version',)
    null_exit_is_success: bool = True
    unsupported_reason: Optional[str] = None


ENGINE_SPECS: Dict[Engine, EngineSpec] = {
    Engine.YT_DLP: EngineSpec('yt-dlp', build_yt_dlp_args),
    Engine.FFMPEG: EngineSpec('ffmpeg', build_ffmpeg_args, version_args=('-version',)),
    Engine.IMAGEMAGICK: EngineSpec('magick', build_imagemagick_args, version_args=('-version',)),
    Engine.SOFFICE: EngineSpec(
        'soffice', None, null_exit_is_success=False,
        unsupported_reason="Document conversion (soffice) is not supported in this release. "
                           "Use a dedicated document converter."
    ),
}


def get_engine_spec(engine: str) -> EngineSpec:
    """
    Raises:
        UnknownEngineError: If the engine tag is not in the table.
    """
    return ENGINE_SPECS[Engine.from_tag(engine)]


def _input_name(input_path: str) -> PureWindowsPath:
    # PureWindowsPath splits on both separators, so Windows paths recorded by
    # the UI resolve to the same base name on every platform.
    return PureWindowsPath(input_path)


def converted_output_path(input_path: str, output_dir: str, extension: str) -> Path:
    """`<output_dir>/<input stem>_converted<extension>`."""
    return Path(output_dir) / f"{_input_name(input_path).stem}{OUTPUT_SUFFIX}{extension}"


def parse_options(raw_options: Dict) -> JobOptions:
    """
    Raises:
        InvalidJobOptionsError: If the options do not match the expected shapes.
    """
    try:
        return JobOptions.model_validate(raw_options or {})
    except ValidationError as e:
        raise InvalidJobOptionsError(f"Invalid job options: {e.errors()[0]['msg']}") from e


def ensure_output_dir(output_dir: str):
    """Creates the output directory; a failure is logged and left for the tool to report."""
    try:
        Path(output_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create output dir {output_dir}: {e}")


def build_command(job: MediaJob, tool_path: Optional[Path] = None) -> EngineCommand:
    """
    Builds the tool invocation for a job.

    Args:
        job: The job to build for.
        tool_path: The executable configured in settings for this engine, if any.
            A `toolPath` in the job's own options takes precedence.

    Returns:
        The EngineCommand to execute.

    Raises:
        EngineConfigurationError: If the engine is unknown or unsupported, or
            the options are malformed.
    """
    spec = get_engine_spec(job.engine)
    if spec.build_args is None:
        raise UnsupportedEngineError(spec.unsupported_reason or f"Engine {job.engine} is not supported.")
    options = parse_options(job.options)
    ensure_output_dir(job.output)
    args, output_path = spec.build_args(job, options)
    executable = options.tool_path or (str(tool_path) if tool_path else spec.default_tool)
    return EngineCommand(executable, args, output_path)
