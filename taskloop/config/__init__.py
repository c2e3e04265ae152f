"""Configuration for taskloop.

Example:
    >>> from taskloop.config import load_settings
    >>> settings = load_settings("taskloop.yaml")
    >>> settings.command_timeout
    60.0
"""

from taskloop.config.settings import TaskloopSettings, load_settings

__all__ = ["TaskloopSettings", "load_settings"]
