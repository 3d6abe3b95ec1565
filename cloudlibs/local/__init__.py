"""
Local configuration package for cloudlibs.

This package provides the merged, process-wide settings through the
effective_settings singleton.
"""

from .config import effective_settings, MergedSettings

__all__ = ["effective_settings", "MergedSettings"]
