from __future__ import annotations

from typing import Callable, Optional

from .errors import SuspendError
from .logging import JsonLogger
from .proc import CommandResult, run_command

SUSPEND_ARGV = ("systemctl", "suspend", "-i")


class SuspendTrigger:
    """Asks systemd to suspend, ignoring inhibitor locks (``-i``).

    A successful call can block across the whole sleep: execution continues
    only after the machine has resumed."""
    def __init__(self, logger: Optional[JsonLogger] = None, runner: Callable[..., CommandResult] = run_command):
        self.logger = logger
        self._run = runner

    def trigger(self) -> None:
        """Request suspend. Raises SuspendError if the request is not accepted."""
        if self.logger is not None:
            self.logger.emit("suspend_requested", argv=" ".join(SUSPEND_ARGV))
        res = self._run(list(SUSPEND_ARGV), timeout=None)
        if res.missing:
            raise SuspendError(SuspendError.COMMAND_UNAVAILABLE, "systemctl command not found")
        if res.error is not None:
            raise SuspendError(SuspendError.UNKNOWN, res.describe())
        if res.returncode != 0:
            raise SuspendError(SuspendError.NONZERO_EXIT, res.describe())
