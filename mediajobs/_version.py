"""
Defines the package's version string.

Reported by `mediajobs --version`. Keep in step with pyproject.toml.
"""

__version__ = "0.4.0"
