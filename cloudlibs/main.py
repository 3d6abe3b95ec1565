import sys
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from cloudlibs.ipc.store import SignalStore
from cloudlibs.log.setup import setup_logging
from cloudlibs.local.config import effective_settings as config
from cloudlibs.supervisor import persistence

log = logging.getLogger("console")

HELP_TEXT = """
  Commands:

    status                  Show raised signals and the PIDs of a running cohort.
    send <signal>           Raise a signal.
    wait <signal> [secs]    Wait for a signal, optionally with a timeout.
    clear                   Remove every signal. Only do this when no scripts are running.
    config [show]           Show the modifiable settings.
    config set <key> <val>  Change a modifiable setting for the next run.
    help                    Show this text.
"""


def display_status(store: SignalStore, args: List[str]) -> int:
    """Prints the raised signals and the recorded cohort PIDs."""
    raised = store.list_signals()
    print(f"Signal directory: {store.base_path}")
    print(f"Raised signals: {', '.join(raised) if raised else '(none)'}")

    pid_info = persistence.get_pid_info(config.PID_FILE_PATH)
    if not pid_info:
        print("No cohort is running.")
        return 0
    for name, pid in pid_info.items():
        print(f"  {name:<24} PID {pid}")
    return 0


def send_signal(store: SignalStore, args: List[str]) -> int:
    if not args:
        log.error("Usage: send <signal>")
        return 1
    store.send(args[0])
    log.info(f"Signal '{args[0]}' sent.")
    return 0


def wait_signal(store: SignalStore, args: List[str]) -> int:
    if not args:
        log.error("Usage: wait <signal> [timeout]")
        return 1
    timeout = float(args[1]) if len(args) > 1 else None
    if asyncio.run(store.wait_for(args[0], timeout)):
        log.info(f"Signal '{args[0]}' observed.")
        return 0
    log.warning(f"Signal '{args[0]}' not observed within {timeout} seconds.")
    return 1


def clear_signals(store: SignalStore, args: List[str]) -> int:
    if persistence.check_if_already_running(config.PID_FILE_PATH):
        log.error("Refusing to clear signals while scripts are running.")
        return 1
    store.clear_signals()
    log.info("All signals cleared.")
    return 0


def _config_show() -> int:
    print(f"Overrides file: {config.OVERRIDES_JSON_PATH}")
    for key, value in config.modifiable_values().items():
        print(f"  {key} = {value}")
    print("Use 'config set <KEY> <VALUE>' to change a setting. Changes apply to the next run.")
    return 0


def _config_set(args: List[str]) -> int:
    if len(args) != 2:
        log.error("Usage: config set <KEY> <VALUE>")
        return 1
    try:
        value = config.set_override(args[0], args[1])
    except ValueError as e:
        log.error(f"Cannot set {args[0]}: {e}")
        return 1
    log.info(f"{args[0].upper()} set to {value}.")
    return 0


def handle_config_command(store: SignalStore, args: List[str]) -> int:
    """Handles 'config', 'config show' and 'config set KEY VALUE'."""
    sub_command = args[0].lower() if args else "show"
    if sub_command == "show":
        return _config_show()
    if sub_command == "set":
        return _config_set(args[1:])
    log.error(f"Unknown config sub-command: '{sub_command}'. Use 'config show' or 'config set'.")
    return 1


def print_help(store: SignalStore, args: List[str]) -> int:
    print(HELP_TEXT)
    return 0


COMMANDS: Dict[str, Callable[[SignalStore, List[str]], int]] = {
    "status": display_status,
    "send": send_signal,
    "wait": wait_signal,
    "clear": clear_signals,
    "config": handle_config_command,
    "help": print_help,
}


def execute_command(command: str, args: List[str], store: Optional[SignalStore] = None) -> int:
    """
    Executes a single console command.

    :param command: The command name (e.g., 'status').
    :param args: Arguments of the command.
    :param store: Signal store to operate on. Defaults to SIGNAL_BASE_PATH.
    :return: The exit code.
    """
    handler = COMMANDS.get(command.lower())
    if handler is None:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return 1
    return handler(store if store is not None else SignalStore(), args)


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the cloudlibs console."""
    argv = list(sys.argv[1:] if argv is None else argv)
    setup_logging(logging.INFO)
    if not argv:
        print(HELP_TEXT)
        return 0
    try:
        return execute_command(argv[0], argv[1:])
    except (OSError, ValueError) as e:
        log.error(f"Signal store error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
