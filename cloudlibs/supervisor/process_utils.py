import sys
import signal
import asyncio
import logging
import subprocess
import importlib.util
import importlib.machinery
from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from cloudlibs.errors import WorkerSpawnError
from cloudlibs.local.config import effective_settings as config

log = logging.getLogger(__name__)

CL_ARGS = "--cl-args"


@dataclass
class WorkerSpec:
    """Everything needed to launch one attempt of a worker script."""
    module: str
    args: List[str] = field(default_factory=list)
    string_args: Optional[str] = None
    attempt: int = 1

    @property
    def name(self) -> str:
        return self.module.rsplit(".", 1)[-1]

    def next_attempt(self) -> "WorkerSpec":
        """Returns an identical spec for the following attempt."""
        return replace(self, args=list(self.args), attempt=self.attempt + 1)


#* --- Argument Handling ---
def split_string_args(string_args: Optional[str]) -> List[str]:
    """Splits a free-form argument string on whitespace."""
    if not string_args:
        return []
    return string_args.split()


def parse_script_args(script_args: str) -> List[str]:
    """
    Tokenizes the value of a --script option.

    Cloud templates pass the command for the script worker as a single-quoted
    string after --cl-args. That string is kept as one argument and placed
    first; everything before and after it is split on whitespace.

    :param script_args: The raw option value.
    :return: The argument list for the script worker.
    """
    cl_index = script_args.find(CL_ARGS)
    if cl_index == -1:
        return split_string_args(script_args)

    args = [CL_ARGS]
    quote_start = script_args.find("'", cl_index)
    if quote_start == -1:
        args.append(script_args[cl_index + len(CL_ARGS):].strip())
        return args + split_string_args(script_args[:cl_index])

    quote_end = script_args.find("'", quote_start + 1)
    if quote_end == -1:
        quote_end = len(script_args)
    args.append(script_args[quote_start + 1:quote_end])

    args.extend(split_string_args(script_args[:cl_index]))
    args.extend(split_string_args(script_args[quote_end + 1:]))
    return args


def build_worker_command(spec: WorkerSpec) -> List[str]:
    """Returns the full command line for one attempt of a worker."""
    return [config.PYTHON_EXECUTABLE, "-m", spec.module, *spec.args, *split_string_args(spec.string_args)]


#* --- Process Creation ---
def resolve_worker_module(module: str, cwd: Optional[Path] = None) -> None:
    """
    Makes sure `python -m module` has something to run.

    Workers run from `cwd`, so modules and packages found there count as well.

    :param module: Dotted module name of the worker.
    :param cwd: Working directory the worker will be started in.
    :raises WorkerSpawnError: If the module cannot be found.
    """
    try:
        if importlib.util.find_spec(module) is not None:
            return
    except (ImportError, ValueError):
        pass

    # The worker interpreter puts its working directory first on sys.path.
    search_path: Optional[List[str]] = ([str(cwd)] if cwd else []) + sys.path
    for part in module.split("."):
        if search_path is None:
            raise WorkerSpawnError(module, f"'{part}' is inside a module, not a package")
        found = importlib.machinery.PathFinder.find_spec(part, search_path)
        if found is None:
            raise WorkerSpawnError(module, "module not found")
        search_path = found.submodule_search_locations
        if search_path is not None:
            search_path = list(search_path)


def get_spawn_kwargs() -> Dict[str, Any]:
    """Returns keyword arguments that launch a worker detached from our terminal and stdio."""
    kwargs: Dict[str, Any] = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "cwd": str(Path(config.SCRIPTS_CWD).resolve()),
    }
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NO_WINDOW
    else:
        kwargs["start_new_session"] = True
    return kwargs


async def launch_worker(spec: WorkerSpec) -> asyncio.subprocess.Process:
    """
    Starts one attempt of a worker as an independent process.

    :param spec: The worker to launch.
    :return: The asyncio process handle.
    :raises WorkerSpawnError: If the OS refuses to create the process.
    """
    command = build_worker_command(spec)
    log.debug(f"Spawning child process {spec.module} (attempt {spec.attempt}): {command[3:]}")
    try:
        return await asyncio.create_subprocess_exec(*command, **get_spawn_kwargs())
    except OSError as e:
        raise WorkerSpawnError(spec.module, str(e)) from e


def describe_exit(returncode: Optional[int]) -> Tuple[Optional[int], Optional[str]]:
    """
    Splits an asyncio return code into (exit code, signal name).

    A negative return code means the process was killed by a signal and has
    no exit code.
    """
    if returncode is None:
        return None, None
    if returncode < 0:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, str(-returncode)
    return returncode, None
