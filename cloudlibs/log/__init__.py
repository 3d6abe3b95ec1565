"""
Logging module for cloudlibs.
This module provides functionality to set up logging for supervisor and worker processes.
"""

from .setup import setup_logging, parse_log_level

__all__ = ["setup_logging", "parse_log_level"]
