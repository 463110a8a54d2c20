from __future__ import annotations

import os
import time
from typing import Callable

from .errors import ModuleReloadError
from .logging import JsonLogger
from .proc import CommandResult, run_command

SYS_MODULE_DIR = "/sys/module"


class ModuleReloader:
    """Unloads and reloads a kernel module with modprobe.

    Unloading is best effort: a module that is busy or already gone is
    logged and the load is still attempted. Only a failed load is an error.
    """
    def __init__(
        self,
        logger: JsonLogger,
        runner: Callable[..., CommandResult] = run_command,
        sleep: Callable[[float], None] = time.sleep,
        settle_s: float = 0.5,
        sys_module_dir: str = SYS_MODULE_DIR,
    ):
        self.logger = logger
        self._run = runner
        self._sleep = sleep
        self.settle_s = float(settle_s)
        self.sys_module_dir = sys_module_dir

    def is_loaded(self, name: str) -> bool:
        return os.path.isdir(os.path.join(self.sys_module_dir, name))

    def unload(self, name: str) -> str:
        """Try ``modprobe -r``; returns a short status, never raises."""
        if not self.is_loaded(name):
            self.logger.emit("module_unload", module=name, result="already absent")
            return "already absent"
        res = self._run(["modprobe", "-r", name])
        if res.ok:
            status = "unloaded"
        elif res.missing:
            status = "modprobe missing"
        elif "not currently loaded" in res.stderr or "not found" in res.stderr or "is not in kernel" in res.stderr:
            status = "already absent"
        else:
            status = f"unload failed ({res.describe()})"
        self.logger.emit("module_unload", module=name, result=status)
        return status

    def load(self, name: str) -> None:
        res = self._run(["modprobe", name])
        if not res.ok:
            self.logger.emit("module_load_failed", module=name, error=res.describe())
            raise ModuleReloadError(f"modprobe {name} failed: {res.describe()}")
        self.logger.emit("module_loaded", module=name)

    def reload(self, name: str) -> str:
        unloaded = self.unload(name)
        self._sleep(self.settle_s)
        self.load(name)
        return f"{unloaded}; reloaded"
