"""
Worker-side helpers for the onboarding, clustering and script workers.
"""

from .lifecycle import WorkerLifecycle

__all__ = ['WorkerLifecycle']
