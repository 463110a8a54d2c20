from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

DEFAULT_TIMEOUT_S = 15.0


@dataclass
class CommandResult:
    """Outcome of one external command.

    ``error`` is None when the command ran to completion (whatever its exit
    code), otherwise one of "missing", "timeout" or "oserror"."""
    argv: list = field(default_factory=list)
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def missing(self) -> bool:
        return self.error == "missing"

    @property
    def timed_out(self) -> bool:
        return self.error == "timeout"

    def describe(self) -> str:
        """Short human-readable summary used in log events."""
        if self.error == "missing":
            return f"command not found: {self.argv[0] if self.argv else '?'}"
        if self.error == "timeout":
            return "timed out"
        if self.error:
            return self.stderr.strip() or self.error
        if self.returncode == 0:
            return "ok"
        detail = self.stderr.strip() or self.stdout.strip()
        return f"exit {self.returncode}" + (f": {detail}" if detail else "")


def run_command(
    argv: Sequence[str],
    timeout: Optional[float] = DEFAULT_TIMEOUT_S,
    env: Optional[Mapping[str, str]] = None,
) -> CommandResult:
    """Run a command and capture its output.

    Never raises for a missing tool, a deadline overrun or an OS-level
    failure; those are reported through ``CommandResult.error`` so every
    caller can apply its own success policy. Output is decoded as UTF-8
    with undecodable bytes replaced."""
    argv = list(argv)
    try:
        proc = subprocess.run(
            argv,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError:
        return CommandResult(argv=argv, error="missing")
    except subprocess.TimeoutExpired as e:
        out = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        err = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
        return CommandResult(argv=argv, stdout=out, stderr=err, error="timeout")
    except OSError as e:
        return CommandResult(argv=argv, stderr=str(e), error="oserror")
    return CommandResult(argv=argv, returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")
