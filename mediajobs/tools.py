"""Discovers the external tools behind each engine and reports their versions."""
import os
import sys
import shutil
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .constants import APP_PATH, SUBPROCESS_CREATION_FLAGS, TOOL_VERSION_TIMEOUT
from .engines import ENGINE_SPECS
from .jobs import Engine, utcnow

INSTALLED = 'installed'
NOT_FOUND = 'not_found'
ERROR = 'error'


@dataclass
class ToolStatus:
    """The result of checking one engine's executable."""
    name: str
    status: str
    resolved_path: Optional[Path] = None
    version: Optional[str] = None
    error_message: Optional[str] = None
    last_checked_at: datetime = field(default_factory=utcnow)


class ToolChecker:
    """Finds engine executables and runs them to read their versions."""

    def __init__(self, tool_paths: Optional[Dict[str, Path]] = None, timeout: float = TOOL_VERSION_TIMEOUT):
        """
        Args:
            tool_paths: Manually configured executables, keyed by engine tag.
            timeout: Seconds to wait for a version command.
        """
        self.logger = logging.getLogger(__name__)
        self.tool_paths = {str(engine): Path(path) for engine, path in (tool_paths or {}).items() if path}
        self.timeout = timeout

    def find_executable(self, name: str, manual_path: Optional[Path] = None) -> Optional[Path]:
        """Finds an executable, preferring a manual path, then a locally shipped one, then PATH."""
        if manual_path:
            if manual_path.is_file() and os.access(manual_path, os.X_OK):
                return manual_path
            self.logger.warning(f"Configured path for {name} is not executable: {manual_path}")
        local_path = APP_PATH / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.is_file():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def check(self, engine: Engine, manual_path: Optional[Path] = None) -> ToolStatus:
        """
        Resolves an engine's executable and asks it for its version.

        Args:
            engine: The engine to check.
            manual_path: Overrides the configured path for this check.

        Returns:
            The ToolStatus. Problems are reported in it, never raised.
        """
        spec = ENGINE_SPECS[engine]
        name = engine.value
        manual_path = manual_path or self.tool_paths.get(name)
        executable = await asyncio.to_thread(self.find_executable, spec.default_tool, manual_path)
        if executable is None:
            return ToolStatus(name, NOT_FOUND, error_message=f"{spec.default_tool} was not found")

        kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.STDOUT}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS
        try:
            process = await asyncio.create_subprocess_exec(str(executable), *spec.version_args, **kwargs)
        except OSError as e:
            return ToolStatus(name, ERROR, executable, error_message=f"Cannot execute: {e}")

        try:
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ToolStatus(name, ERROR, executable, error_message="Version check timed out")

        output = stdout_bytes.decode('utf-8', 'replace').strip()
        if process.returncode != 0:
            return ToolStatus(name, ERROR, executable, error_message=f"Exit code {process.returncode}: {output[:200]}")

        version = output.splitlines()[0] if output else None
        self.logger.info(f"{name}: {version} ({executable})")
        return ToolStatus(name, INSTALLED, executable, version=version)

    async def check_all(self) -> List[ToolStatus]:
        """Checks every engine concurrently, in engine table order."""
        return list(await asyncio.gather(*(self.check(engine) for engine in ENGINE_SPECS)))
