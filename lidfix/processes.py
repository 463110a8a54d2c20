from __future__ import annotations

from typing import Callable, Iterable, Optional

from .constants import MEDIA_KEY_OWNER
from .logging import JsonLogger
from .proc import CommandResult, run_command


class SelectiveTerminator:
    """Sends SIGTERM to processes by name, refusing protected names.

    gsd-media-keys is protected by default: killing it leaves the hardware
    volume/brightness/power keys dead until the next login."""
    def __init__(
        self,
        logger: JsonLogger,
        protected: Iterable[str] = (MEDIA_KEY_OWNER,),
        runner: Callable[..., CommandResult] = run_command,
    ):
        self.logger = logger
        self.protected = frozenset(protected)
        self._run = runner

    def is_running(self, name: str) -> Optional[bool]:
        """True/False from pgrep, or None if pgrep itself could not run."""
        res = self._run(["pgrep", name])
        if res.error is not None:
            return None
        return res.returncode == 0 and bool(res.stdout.strip())

    def terminate(self, name: str) -> bool:
        """Send SIGTERM to every process matching ``name``. True if any was signalled."""
        if name in self.protected:
            self.logger.emit("terminate_refused", process=name, reason="protected")
            return False

        res = self._run(["pkill", "-TERM", name])
        if res.ok:
            self.logger.emit("terminate_sent", process=name, signal="TERM")
            return True

        if res.missing:
            self.logger.emit("terminate_failed", process=name, error=res.describe())
            return False

        running = self.is_running(name)
        if running is False:
            self.logger.emit("terminate_skipped", process=name, reason="not running")
        else:
            self.logger.emit("terminate_failed", process=name, error=res.describe())
        return False
