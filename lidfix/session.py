from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, List, Mapping, Optional, Sequence

from .constants import (
    SHELL_BUS_NAME,
    SHELL_EVAL_METHOD,
    SHELL_OBJECT_PATH,
    SHELL_PROCESS,
    SHELL_REEXEC_EXPR,
)
from .logging import JsonLogger
from .notify import NullNotifier
from .proc import CommandResult, run_command

SUCCESS = "success"
TIMEOUT = "timeout"
FAILED = "failed"


@dataclass
class RefreshAttempt:
    strategy: str
    outcome: str
    timeout_counts_as_success: bool = False
    message: str = ""

    @property
    def succeeded(self) -> bool:
        if self.outcome == SUCCESS:
            return True
        return self.outcome == TIMEOUT and self.timeout_counts_as_success


@dataclass
class RefreshOutcome:
    succeeded: bool
    attempts: List[RefreshAttempt] = field(default_factory=list)


def session_env(environ: Optional[Mapping[str, str]] = None, uid: Optional[int] = None,
                isdir: Callable[[str], bool] = os.path.isdir) -> dict:
    """Copy of the environment with XDG_RUNTIME_DIR filled in if missing.

    Session bus clients find the bus through XDG_RUNTIME_DIR, which is not
    set when started from a system unit or a bare sudo. It is derived as
    /run/user/<uid> when that directory exists."""
    env = dict(os.environ if environ is None else environ)
    if not env.get("XDG_RUNTIME_DIR"):
        if uid is None:
            uid = os.geteuid()
        candidate = f"/run/user/{uid}"
        if isdir(candidate):
            env["XDG_RUNTIME_DIR"] = candidate
    return env


def detect_desktop_session(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Guess from the session variables whether this is a GNOME session."""
    env = os.environ if environ is None else environ
    desktop = env.get("XDG_CURRENT_DESKTOP", "").lower()
    session = env.get("DESKTOP_SESSION", "").lower()
    return "gnome" in desktop or "gnome" in session


class ShellReexecStrategy:
    """Ask GNOME Shell to re-exec itself over the session bus.

    The shell is replaced while the call is still pending, so no reply (or a
    timeout) is what a working restart looks like."""
    name = "dbus-reexec"

    def __init__(self, timeout_s: float = 5.0, env: Optional[Mapping[str, str]] = None,
                 runner: Callable[..., CommandResult] = run_command):
        self.timeout_s = float(timeout_s)
        self.env = env
        self._run = runner

    def argv(self) -> List[str]:
        return [
            "gdbus", "call", "--session",
            "--dest", SHELL_BUS_NAME,
            "--object-path", SHELL_OBJECT_PATH,
            "--method", SHELL_EVAL_METHOD,
            SHELL_REEXEC_EXPR,
        ]

    def _attempt(self, outcome: str, message: str) -> RefreshAttempt:
        return RefreshAttempt(self.name, outcome, timeout_counts_as_success=True, message=message)

    def attempt(self) -> RefreshAttempt:
        res = self._run(self.argv(), timeout=self.timeout_s, env=self.env)
        if res.timed_out:
            return self._attempt(TIMEOUT, "gdbus timed out (shell restarting)")
        if res.missing:
            return self._attempt(FAILED, "gdbus command not found")
        if res.error is not None:
            return self._attempt(FAILED, res.describe())
        if res.returncode == 0:
            # Eval replies "(true, ...)"; "(false, ...)" means the shell refused (unsafe mode off).
            if res.stdout.strip().startswith("(false"):
                return self._attempt(FAILED, f"Eval refused: {res.stdout.strip()}")
            return self._attempt(SUCCESS, "restart initiated")
        if "NoReply" in res.stderr or "timeout" in res.stderr.lower():
            return self._attempt(TIMEOUT, "no reply from shell (restarting)")
        return self._attempt(FAILED, res.describe())


class ShellSignalStrategy:
    """Send SIGHUP to the shell process by name."""
    name = "sighup"

    def __init__(self, process: str = SHELL_PROCESS, runner: Callable[..., CommandResult] = run_command):
        self.process = process
        self._run = runner

    def attempt(self) -> RefreshAttempt:
        res = self._run(["killall", "-HUP", self.process])
        if res.ok:
            return RefreshAttempt(self.name, SUCCESS, message=f"SIGHUP sent to {self.process}")
        if res.missing:
            return RefreshAttempt(self.name, FAILED, message="killall command not found")
        if "no process found" in res.stderr.lower():
            return RefreshAttempt(self.name, FAILED, message=f"{self.process} not running")
        return RefreshAttempt(self.name, FAILED, message=res.describe())


class SessionRefreshChain:
    """Ordered refresh strategies; the first one that succeeds wins."""
    def __init__(self, logger: JsonLogger, strategies: Sequence, notifier=None):
        self.logger = logger
        self.strategies = list(strategies)
        self.notifier = notifier if notifier is not None else NullNotifier()

    def refresh(self) -> RefreshOutcome:
        attempts = []
        for strategy in self.strategies:
            self.logger.emit("refresh_attempt", strategy=strategy.name)
            att = strategy.attempt()
            attempts.append(att)
            self.logger.emit(
                "refresh_result",
                strategy=att.strategy,
                outcome=att.outcome,
                succeeded=att.succeeded,
                message=att.message,
            )
            if att.succeeded:
                return RefreshOutcome(True, attempts)

        self.logger.emit("refresh_failed", tried=",".join(a.strategy for a in attempts),
                         hint="log out and back in, or restart the display manager")
        self.notifier.send("Session refresh failed", "No strategy could restart GNOME Shell.")
        return RefreshOutcome(False, attempts)
