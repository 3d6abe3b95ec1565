"""Exception types raised by the signal store and the script supervisor."""


class CloudLibsError(Exception):
    """Base class for all cloudlibs errors."""


class InvalidSignalName(CloudLibsError, ValueError):
    """Raised when a signal name cannot be used as a marker file name."""


class WorkerSpawnError(CloudLibsError):
    """
    Raised when a worker process cannot be created at all.

    No exit code was ever produced, so this is never retried.
    """

    def __init__(self, module: str, reason: str):
        super().__init__(f"Failed to spawn worker '{module}': {reason}")
        self.module = module
        self.reason = reason


class ScriptFailedError(CloudLibsError):
    """Raised by the script worker when its command exits with a non-zero status."""

    def __init__(self, command: str, returncode: int):
        super().__init__(f"Command '{command}' exited with status {returncode}")
        self.command = command
        self.returncode = returncode
