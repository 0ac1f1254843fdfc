"""
Main entry point for mediajobs when run from a source checkout.

Installs the unhandled-exception hook and runs the command line app.
"""

import sys
import logging
from types import TracebackType
from typing import Type

from mediajobs.cli import app


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


if __name__ == "__main__":
    sys.excepthook = handle_exception
    app()
