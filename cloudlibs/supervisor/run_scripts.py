"""
Top-level entry point that runs the onboarding, clustering and custom scripts
of one boot as a supervised cohort.

Options are parsed by hand: cloud templates hand every option value over as a
single string, including embedded '--cl-args' commands, and it must reach the
workers without being re-split.
"""
import sys
import asyncio
import logging
import setproctitle
from dataclasses import dataclass, field
from typing import List, Optional

from cloudlibs.ipc.store import SignalStore
from cloudlibs.errors import WorkerSpawnError
from cloudlibs.log import setup_logging, parse_log_level
from cloudlibs.local.config import effective_settings as config
from cloudlibs.supervisor import persistence
from cloudlibs.supervisor.process_utils import parse_script_args
from cloudlibs.supervisor.supervisor import Launcher, ScriptSupervisor

log = logging.getLogger(__name__)

USAGE = """
  Usage: run_scripts [options]

  Options:

    --help                  Output usage information.
    --log-level <level>     error, warn, info, verbose, debug or silly. Default: info.
    --onboard <args>        Run the onboard script with args.
    --cluster <args>        Run the cluster script with args.
    --script <args>         Run the script worker with args. Repeat for multiple scripts.
    --no-clear              Keep signals left over from a previous run.
"""

VALUE_OPTIONS = ("--log-level", "--onboard", "--cluster", "--script")


@dataclass
class RunScriptsOptions:
    help: bool = False
    log_level: Optional[str] = None
    onboard: Optional[str] = None
    cluster: Optional[str] = None
    scripts: List[str] = field(default_factory=list)
    clear: bool = True


def parse_arguments(argv: List[str]) -> RunScriptsOptions:
    """
    Parses the command line.

    :param argv: Arguments without the program name.
    :return: The parsed options.
    :raises ValueError: If an option is missing its value.
    """
    options = RunScriptsOptions()
    index = 0
    while index < len(argv):
        arg = argv[index]
        if arg == "--help":
            options.help = True
        elif arg == "--no-clear":
            options.clear = False
        elif arg in VALUE_OPTIONS:
            if index + 1 >= len(argv):
                raise ValueError(f"Option {arg} requires a value.")
            index += 1
            value = argv[index]
            if arg == "--log-level":
                options.log_level = value
            elif arg == "--onboard":
                options.onboard = value
            elif arg == "--cluster":
                options.cluster = value
            else:
                options.scripts.append(value)
        else:
            log.warning(f"Ignoring unknown argument '{arg}'.")
        index += 1
    return options


async def run_scripts(options: RunScriptsOptions, store: Optional[SignalStore] = None,
                      launcher: Optional[Launcher] = None) -> int:
    """
    Spawns the requested workers and supervises them to completion.

    :param options: Parsed command-line options.
    :param store: Signal store. Defaults to SIGNAL_BASE_PATH.
    :param launcher: Alternative worker launcher, used by tests.
    :return: The process exit code.
    """
    store = store if store is not None else SignalStore()
    if options.clear:
        log.info(f"Clearing signals in {store.base_path}.")
        store.clear_signals()

    supervisor = ScriptSupervisor(store=store, launcher=launcher, pid_file=config.PID_FILE_PATH)

    log.info("Running scripts.")
    try:
        if options.onboard is not None:
            log.debug(f"onboard args: {options.onboard}")
            await supervisor.spawn(config.ONBOARD_MODULE, string_args=options.onboard)

        if options.cluster is not None:
            log.debug(f"cluster args: {options.cluster}")
            await supervisor.spawn(config.CLUSTER_MODULE, string_args=options.cluster)

        for script_args in options.scripts:
            args = parse_script_args(script_args)
            log.debug(f"script args: {args}")
            await supervisor.spawn(config.SCRIPT_MODULE, args=args)
    except WorkerSpawnError:
        # Workers already started keep running on their own.
        persistence.cleanup_pid_file(config.PID_FILE_PATH)
        raise

    log.debug("Done spawning scripts.")
    await supervisor.run()
    return supervisor.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the run_scripts command."""
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        options = parse_arguments(argv)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(USAGE)
        return 1

    if options.help:
        print(USAGE)
        return 0

    setproctitle.setproctitle(config.SUPERVISOR_PROCESS_TITLE)
    setup_logging(parse_log_level(options.log_level))
    log.debug(f"run_scripts called with {argv}")

    if persistence.check_if_already_running(config.PID_FILE_PATH):
        return 1

    try:
        return asyncio.run(run_scripts(options))
    except WorkerSpawnError as e:
        log.critical(f"Error running scripts: {e}")
        return 2
    except OSError as e:
        log.critical(f"Signal store error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
