import os
import json
import psutil
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from .supervisor import ScriptSupervisor

log = logging.getLogger(__name__)

SUPERVISOR_KEY = "supervisor"


def _is_pid(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def get_pid_info(pid_file: Path) -> Optional[Dict[str, int]]:
    """
    Reads the PID file from disk and returns its contents.

    :param pid_file: Path of the PID file.
    :return: A dictionary of PIDs if the file exists and is valid, else None.
    """
    if not pid_file.exists():
        return None
    try:
        with pid_file.open("r") as f:
            pids = json.load(f)
        if not isinstance(pids, dict) or not all(_is_pid(pid) for pid in pids.values()):
            log.error(f"PID file '{pid_file}' is malformed. Deleting.")
            pid_file.unlink(missing_ok=True)
            return None
        return pids
    except (json.JSONDecodeError, IOError):
        log.warning("Could not read PID file, assuming stale.")
        pid_file.unlink(missing_ok=True)
        return None


def write_pid_file(supervisor: "ScriptSupervisor") -> None:
    """
    Atomically writes the supervisor PID and the PIDs of its live workers.

    :param supervisor: The ScriptSupervisor instance.
    """
    pid_file = supervisor.pid_file
    if pid_file is None:
        return

    pid_dict = {SUPERVISOR_KEY: os.getpid()}
    pid_dict.update({slot: proc.pid for slot, proc in supervisor.running_procs.items() if psutil.pid_exists(proc.pid)})
    temp_pid_path = pid_file.with_suffix(".tmp")
    try:
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        with temp_pid_path.open("w") as f:
            json.dump(pid_dict, f, indent=4)
        temp_pid_path.replace(pid_file)
    except (IOError, OSError) as e:
        log.error(f"Failed to write PID file: {e}", exc_info=True)
    finally:
        temp_pid_path.unlink(missing_ok=True)


def check_if_already_running(pid_file: Path) -> bool:
    """
    Checks whether a previous supervisor or any of its workers is still alive.

    :param pid_file: Path of the PID file.
    :return: True if a recorded process other than ourselves is alive.
    """
    pid_info = get_pid_info(pid_file) or {}
    own_pid = os.getpid()
    alive = {name: pid for name, pid in pid_info.items() if pid != own_pid and psutil.pid_exists(pid)}
    if alive:
        log.error(f"Scripts appear to be running already: {alive}")
        return True
    return False


def cleanup_pid_file(pid_file: Optional[Path]) -> None:
    """Removes the PID file."""
    if pid_file is not None:
        pid_file.unlink(missing_ok=True)
        log.debug("Cleaned up PID file.")
