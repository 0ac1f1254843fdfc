"""Extracts progress percentages from tool output, one line at a time."""
import re
import logging
from typing import Callable, Dict, Optional

from .jobs import Engine

logger = logging.getLogger(__name__)

# [download]  45.2% of 100.00MiB at 1.50MiB/s ETA 00:30
_YT_DLP_PERCENT = re.compile(r'\[download\]\s+(\d+\.?\d*)%')


def _clamp_percent(value: float) -> float:
    return min(100.0, max(0.0, value))


def parse_yt_dlp(line: str) -> Optional[float]:
    if match := _YT_DLP_PERCENT.search(line):
        return _clamp_percent(float(match.group(1)))
    return None


def parse_ffmpeg(line: str) -> Optional[float]:
    # frame=/time= lines only show the transcoder is alive. Total duration is
    # not known up front, so they never become a percentage.
    return None


def parse_imagemagick(line: str) -> Optional[float]:
    return None


_PARSERS: Dict[Engine, Callable[[str], Optional[float]]] = {
    Engine.YT_DLP: parse_yt_dlp,
    Engine.FFMPEG: parse_ffmpeg,
    Engine.IMAGEMAGICK: parse_imagemagick,
}


def parse_progress(engine: str, line: str) -> Optional[float]:
    """
    Returns a 0-100 progress value parsed from one output line.

    Args:
        engine: The job's engine tag.
        line: A single line of tool output.

    Returns:
        The percentage, or None when the line carries no progress. None means
        "unknown", which callers must not treat as 0%.
    """
    try:
        parser = _PARSERS.get(Engine(engine))
        return parser(line) if parser else None
    except Exception as e:
        logger.debug(f"Progress parsing failed for {engine!r}: {e}")
        return None
