"""
The worker spawned for every --script option of run_scripts.

Runs one shell command or script file inside the signalling protocol:
waits for an optional prerequisite signal, runs the command, and sends an
optional completion signal, or CLOUD_LIBS_ERROR if the command fails.
"""
import sys
import asyncio
import logging
import argparse
import contextlib
import setproctitle
from pathlib import Path
from typing import List, Optional

from cloudlibs.ipc.store import SignalStore
from cloudlibs.errors import ScriptFailedError
from cloudlibs.log import setup_logging, parse_log_level
from cloudlibs.local.config import effective_settings as config
from cloudlibs.workflow.lifecycle import WorkerLifecycle

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="run_script", description="Run a command as a supervised script worker.")
    command = parser.add_mutually_exclusive_group(required=True)
    command.add_argument("--cl-args", dest="cl_args", help="Shell command to run, as one string.")
    command.add_argument("--file", type=Path, help="Shell script file to run.")
    parser.add_argument("--wait-for", dest="wait_for", help="Wait for this signal before running.")
    parser.add_argument("--signal", help="Signal to send when the command succeeds.")
    parser.add_argument("--cwd", type=Path, help="Working directory of the command.")
    parser.add_argument("--log-level", dest="log_level", default="info", help="Console log level.")
    parser.add_argument("--output", type=Path, default=None, help="Log file. Default: run_script.log in the logs directory.")
    return parser


OUTPUT_CHUNK_SIZE = 65536


async def _log_output(stream: asyncio.StreamReader, proc_logger: logging.Logger) -> None:
    """
    Logs the command's combined output line by line.

    Output is read in fixed-size chunks so a line of any length is accepted;
    StreamReader.readline() fails on lines longer than its buffer limit.
    """
    pending = b""
    while True:
        chunk = await stream.read(OUTPUT_CHUNK_SIZE)
        if not chunk:
            break
        *lines, pending = (pending + chunk).split(b"\n")
        for line_bytes in lines:
            _log_line(line_bytes, proc_logger)
    _log_line(pending, proc_logger)


def _log_line(line_bytes: bytes, proc_logger: logging.Logger) -> None:
    line = line_bytes.decode("utf-8", errors="replace").rstrip()
    if line:
        proc_logger.info(line)


async def run_command(options: argparse.Namespace) -> None:
    """
    Runs the configured command to completion.

    :param options: Parsed run_script options.
    :raises ScriptFailedError: If the command exits with a non-zero status.
    """
    cwd = str(options.cwd) if options.cwd else None
    if options.file:
        description = str(options.file)
        proc = await asyncio.create_subprocess_exec(
            "/bin/sh", str(options.file),
            stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT, cwd=cwd,
        )
    else:
        description = options.cl_args
        proc = await asyncio.create_subprocess_shell(
            options.cl_args,
            stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT, cwd=cwd,
        )

    log.info(f"Running '{description}' with PID: {proc.pid}")
    try:
        await _log_output(proc.stdout, logging.getLogger("proc.run_script"))
    except asyncio.CancelledError:
        # A sibling failed or the host is rebooting.
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
        raise
    finally:
        returncode = await proc.wait()
    if returncode != 0:
        raise ScriptFailedError(description, returncode)


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the script worker."""
    options = build_parser().parse_args(argv)

    setproctitle.setproctitle(config.SCRIPT_PROCESS_TITLE)
    setup_logging(parse_log_level(options.log_level), log_file=options.output or config.LOGS_DIR / "run_script.log")

    lifecycle = WorkerLifecycle(
        "run_script",
        store=SignalStore(),
        done_signal=options.signal,
        wait_for_signal=options.wait_for,
    )
    return asyncio.run(lifecycle.run(lambda: run_command(options)))


if __name__ == "__main__":
    sys.exit(main())
