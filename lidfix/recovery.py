from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .constants import ACPI_MODULES, MEDIA_KEY_OWNER, POWER_OWNER
from .errors import LidfixError, PrivilegeError
from .inhibitors import InhibitorRecord, InhibitorScanner
from .lid import LidStateReader
from .logging import JsonLogger
from .modules import ModuleReloader
from .notify import NullNotifier
from .processes import SelectiveTerminator


@dataclass
class RecoveryStepResult:
    step: str
    succeeded: bool
    message: str = ""


class RecoveryOrchestrator:
    """Post-resume repair sequence, run once per resume as root.

    Clears a stale gsd-power sleep inhibitor and reloads the ACPI button
    driver so the lid switch reports again. Every step is logged and a
    failing step never stops the ones after it. gsd-media-keys may show up as
    an inhibitor too; it is reported but never terminated."""
    def __init__(
        self,
        logger: JsonLogger,
        reader: LidStateReader,
        scanner: InhibitorScanner,
        terminator: SelectiveTerminator,
        reloader: ModuleReloader,
        modules: Sequence[str] = ACPI_MODULES,
        power_owner: str = POWER_OWNER,
        media_key_owner: str = MEDIA_KEY_OWNER,
        terminate_wait_s: float = 2.0,
        step_settle_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        geteuid: Optional[Callable[[], int]] = None,
        notifier=None,
    ):
        self.logger = logger
        self.reader = reader
        self.scanner = scanner
        self.terminator = terminator
        self.reloader = reloader
        self.modules = tuple(modules)
        self.power_owner = power_owner
        self.media_key_owner = media_key_owner
        self.terminate_wait_s = float(terminate_wait_s)
        self.step_settle_s = float(step_settle_s)
        self._sleep = sleep
        self._geteuid = geteuid or os.geteuid
        self.notifier = notifier if notifier is not None else NullNotifier()
        self.results: List[RecoveryStepResult] = []

    def _record(self, step: str, succeeded: bool, message: str = "") -> RecoveryStepResult:
        res = RecoveryStepResult(step=step, succeeded=succeeded, message=message)
        self.results.append(res)
        self.logger.emit("step_ok" if succeeded else "step_failed", step=step, message=message)
        return res

    def _step(self, step: str, fn: Callable[[], str]) -> RecoveryStepResult:
        """Run ``fn`` and record its outcome. Any exception becomes a failed step."""
        try:
            message = fn()
        except (LidfixError, OSError) as e:
            return self._record(step, False, str(e))
        except Exception as e:
            return self._record(step, False, f"{type(e).__name__}: {e}")
        return self._record(step, True, message or "")

    def _scan_step(self, step: str) -> Optional[List[InhibitorRecord]]:
        """Scan inhibitors as a recorded step; None if the scan failed."""
        records: List[InhibitorRecord] = []

        def scan() -> str:
            records.extend(self._scan())
            return f"{len(records)} watched sleep inhibitor(s)"

        return records if self._step(step, scan).succeeded else None

    # ---------------- Individual steps ----------------

    def _log_lid_state(self) -> str:
        path, text = self.reader.read_raw()
        if path is None:
            raise LidfixError("no ACPI lid state file found")
        self.logger.emit("lid_state", path=path, state=text)
        return f"{path}: {text}"

    def _scan(self) -> List[InhibitorRecord]:
        records = self.scanner.scan()
        for rec in records:
            self.logger.emit("inhibitor_found", owner=rec.owner, mode=rec.mode, scope=rec.scope, line=rec.raw)
        return records

    def _terminate_power_owner(self, records: Optional[List[InhibitorRecord]]) -> RecoveryStepResult:
        step = "terminate_power_owner"
        if records is None:
            return self._record(step, False, "inhibitor scan unavailable; nothing terminated")

        owners = {rec.owner for rec in records}
        if self.media_key_owner in owners:
            self.logger.emit("inhibitor_left_alone", owner=self.media_key_owner, reason="protected")

        if self.power_owner not in owners:
            if owners:
                msg = f"{self.power_owner} not inhibiting; other watched inhibitors left alone"
            else:
                msg = "no watched sleep inhibitors"
            return self._record(step, True, msg)

        if self.terminator.terminate(self.power_owner):
            self.logger.emit("waiting_for_exit", process=self.power_owner, wait_s=self.terminate_wait_s)
            self._sleep(self.terminate_wait_s)
            return self._record(step, True, f"SIGTERM sent to {self.power_owner}")
        return self._record(step, False, f"could not terminate {self.power_owner}")

    # ---------------- Sequence ----------------

    def run(self) -> List[RecoveryStepResult]:
        """Run the whole sequence and return the per-step results."""
        if self._geteuid() != 0:
            self.logger.emit("privilege_error", error="must be run as root")
            raise PrivilegeError("post-resume recovery must be run as root")

        self.results = []
        self.logger.emit("recovery_started", modules=",".join(self.modules), power_owner=self.power_owner)

        self._step("lid_state_initial", self._log_lid_state)
        self._sleep(self.step_settle_s)

        initial = self._scan_step("inhibitor_scan")
        try:
            self._terminate_power_owner(initial)
        except Exception as e:
            self._record("terminate_power_owner", False, f"{type(e).__name__}: {e}")

        for name in self.modules:
            self._step(f"module_reload:{name}", lambda name=name: self.reloader.reload(name))
        self._sleep(self.step_settle_s)

        self._step("lid_state_final", self._log_lid_state)

        final = self._scan_step("inhibitor_rescan")

        if final is None:
            self._record("verify", False, "could not verify inhibitors after recovery")
        elif any(rec.owner == self.power_owner for rec in final):
            self.logger.emit("power_owner_still_inhibiting", owner=self.power_owner, action="none")
            self.notifier.send(
                "Lid fix incomplete",
                f"{self.power_owner} still blocks sleep after post-resume recovery.",
                priority=1,
            )
            self._record("verify", False, f"{self.power_owner} still inhibits sleep")
        else:
            self._record("verify", True, f"{self.power_owner} not inhibiting")

        failed = [r.step for r in self.results if not r.succeeded]
        self.logger.emit("recovery_finished", steps=len(self.results), failed=",".join(failed) or None)
        return self.results
