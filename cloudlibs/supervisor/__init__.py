"""
The Supervisor package.
Spawns worker scripts as independent processes and supervises them to completion.

This package contains the ScriptSupervisor class and its helper modules,
which together handle launching, retrying and PID bookkeeping of a cohort
of workers.
"""
from .supervisor import ScriptSupervisor
from .process_utils import WorkerSpec

__all__ = ['ScriptSupervisor', 'WorkerSpec']
