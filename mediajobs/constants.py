"""
Defines application-wide constants, paths, and subprocess behavior.

This module centralizes the limits of the job queue, the layout of the
history store, and the user data locations, adapting to whether the
application is running from source or as a frozen executable.
"""

import os
import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'mediajobs').
    APP_PATH = Path(__file__).resolve().parent.parent

USER_DATA_DIR: Path = Path.home() / '.mediajobs'
SETTINGS_PATH_ENV = 'MEDIAJOBS_SETTINGS_PATH'
CONFIG_FILE: Path = Path(os.environ.get(SETTINGS_PATH_ENV, USER_DATA_DIR / 'config.json'))
LOG_DIR: Path = USER_DATA_DIR / 'logs'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Job Queue Limits ---
MAX_CONCURRENT_JOBS = 3
LOGS_TAIL_LIMIT = 50
HISTORY_LIMIT = 50
ERROR_TAIL_LINES = 5  # log lines quoted in a nonzero-exit error message
TOOL_VERSION_TIMEOUT = 15  # seconds

# --- History Store Layout ---
MEDIA_DIR_NAME = '_Media'
HISTORY_FILE_NAME = 'JobHistory.jsonl'

REDACTED_PLACEHOLDER = '<redacted>'
