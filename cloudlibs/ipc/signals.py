"""
Signal names shared by the supervisor and every worker script.

The values are written verbatim as marker file names, so they must never change.
"""

from cloudlibs.errors import InvalidSignalName

CLOUD_LIBS_ERROR = "CLOUD_LIBS_ERROR"
REBOOT = "REBOOT"

ONBOARD_RUNNING = "ONBOARD_RUNNING"
ONBOARD_DONE = "ONBOARD_DONE"

CLUSTER_RUNNING = "CLUSTER_RUNNING"
CLUSTER_DONE = "CLUSTER_DONE"

RESERVED_SIGNALS = frozenset({
    CLOUD_LIBS_ERROR,
    REBOOT,
    ONBOARD_RUNNING,
    ONBOARD_DONE,
    CLUSTER_RUNNING,
    CLUSTER_DONE,
})


def is_valid_signal_name(name: str) -> bool:
    """A signal name must be a plain ASCII file name: no separators, not '.' or '..'."""
    if not isinstance(name, str) or not name or not name.isascii():
        return False
    if name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
        return False
    return name.strip() == name


def validate_signal_name(name: str) -> str:
    """
    Returns the name unchanged or raises InvalidSignalName.

    :param name: The candidate signal name.
    :return: The validated name.
    """
    if not is_valid_signal_name(name):
        raise InvalidSignalName(f"Invalid signal name: {name!r}")
    return name
