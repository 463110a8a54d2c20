from __future__ import annotations

import json
import os
import socket
import threading
import time
from dataclasses import asdict
from typing import Optional

from .constants import CONTROL_DISABLE, CONTROL_ENABLE, CONTROL_STATUS, VERSION
from .errors import SuspendError
from .lid import LidStateReader
from .logging import JsonLogger
from .notify import NullNotifier
from .state import LidState, MonitorState
from .suspend import SuspendTrigger


class LidSuspendMonitor:
    """Forces suspend when the lid is confirmed closed.

    Polls the ACPI lid state and keeps a debounce counter of consecutive
    CLOSED readings. Once the counter reaches ``threshold`` the suspend
    trigger is invoked and the counter starts over, whatever the outcome.
    UNKNOWN readings (lid file missing during a module reload, permission
    errors) pause the counter instead of resetting it."""
    def __init__(
        self,
        state: MonitorState,
        logger: JsonLogger,
        reader: LidStateReader,
        trigger: SuspendTrigger,
        threshold: int = 2,
        poll_interval_s: float = 0.5,
        unknown_backoff_s: float = 5.0,
        settle_after_suspend_s: float = 10.0,
        settle_after_failure_s: float = 5.0,
        error_backoff_s: float = 5.0,
        notifier=None,
        verbose: bool = False,
    ):
        """
        Initialize the monitor.

        Construction is side-effect free; nothing is read until tick()/run().
        """
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.state = state
        self.logger = logger
        self.reader = reader
        self.trigger = trigger
        self.threshold = int(threshold)
        self.poll_interval_s = float(poll_interval_s)
        self.unknown_backoff_s = float(unknown_backoff_s)
        self.settle_after_suspend_s = float(settle_after_suspend_s)
        self.settle_after_failure_s = float(settle_after_failure_s)
        self.error_backoff_s = float(error_backoff_s)
        self.notifier = notifier if notifier is not None else NullNotifier()
        self.verbose = bool(verbose)

        self._stop_evt = threading.Event()

        # Optional local control socket (status / enable / disable)
        self._control_thread = None
        self._control_stop_evt = threading.Event()
        self._control_sock_path: Optional[str] = None

    # ---------------- Debounce state machine ----------------

    def tick(self) -> float:
        """Take one lid reading, advance the state machine, return the next delay."""
        reading = self.reader.read()
        prev = self.state.last_reading
        self.state.last_reading = reading

        if reading is LidState.UNKNOWN:
            self.state.unknown_readings += 1
            if prev is not LidState.UNKNOWN:
                self.logger.emit("lid_unknown", closed_count=self.state.closed_count, backoff_s=self.unknown_backoff_s)
            return self.unknown_backoff_s

        if reading is LidState.OPEN:
            if self.state.lid is LidState.CLOSED:
                self.logger.emit("lid_opened", closed_count=self.state.closed_count)
            self.state.lid = LidState.OPEN
            self.state.closed_count = 0
            return self.poll_interval_s

        if self.state.lid is LidState.OPEN:
            self.state.lid = LidState.CLOSED
            self.state.closed_count = 1
            self.logger.emit("lid_closed", check=1, required=self.threshold)
        else:
            self.state.closed_count += 1
            if self.verbose or self.state.closed_count <= self.threshold:
                self.logger.emit("lid_still_closed", check=self.state.closed_count, required=self.threshold)

        if self.state.closed_count >= self.threshold:
            if not self.state.enabled:
                return self.poll_interval_s
            return self._suspend()
        return self.poll_interval_s

    def _reset_debounce(self):
        # Lid is assumed open on the next observation after any attempt.
        self.state.lid = LidState.OPEN
        self.state.closed_count = 0

    def _suspend(self) -> float:
        """Invoke the trigger once and return the settle delay."""
        self.logger.emit("lid_confirmed_closed", checks=self.state.closed_count)
        self.state.suspend_attempts += 1
        self.state.last_suspend_ts = time.time()
        try:
            self.trigger.trigger()
        except SuspendError as e:
            return self._suspend_failed(e.kind, str(e))
        except Exception as e:
            return self._suspend_failed(SuspendError.UNKNOWN, f"{type(e).__name__}: {e}")

        self.state.consecutive_failures = 0
        self.logger.emit("suspend_issued", settle_s=self.settle_after_suspend_s)
        self._reset_debounce()
        return self.settle_after_suspend_s

    def _suspend_failed(self, kind: str, error: str) -> float:
        self.state.suspend_failures += 1
        self.state.consecutive_failures += 1
        self.state.last_error = error
        self.logger.emit("suspend_failed", kind=kind, error=error, retry="next close cycle")
        if self.state.consecutive_failures == 1:
            self.notifier.send("Lid suspend failed", f"systemctl suspend was rejected: {error}", priority=1)
        self._reset_debounce()
        return self.settle_after_failure_s

    # ---------------- Main loop ----------------

    def run(self, stop_evt: Optional[threading.Event] = None):
        """Poll until ``stop_evt`` (or stop()) is set.

        A fault inside one tick is logged and followed by ``error_backoff_s``;
        the loop itself only ends on cancellation."""
        if stop_evt is not None:
            self._stop_evt = stop_evt
        self.logger.emit("monitor_started", threshold=self.threshold, poll_interval_s=self.poll_interval_s,
                         paths=",".join(self.reader.paths))
        while not self._stop_evt.is_set():
            try:
                delay = self.tick()
            except Exception as e:
                self.state.loop_errors += 1
                self.logger.emit("loop_error", error=f"{type(e).__name__}: {e}")
                delay = self.error_backoff_s
            self._stop_evt.wait(delay)
        self.logger.emit("monitor_stopped")

    def stop(self):
        self._stop_evt.set()
        self._control_stop_evt.set()

    # ---------------- Local control socket ----------------
    # Lets lidfixctl inspect the debounce state or pause forced suspend
    # (e.g. while docked with the lid closed) without restarting the unit.

    def start_control_socket(self, sock_path: str):
        """Start a local control socket.

        The socket accepts single-line commands and returns a single-line JSON response.
        Supported commands: status, enable, disable.
        """
        if not sock_path:
            return
        self._control_sock_path = sock_path
        t = threading.Thread(target=self._control_loop, daemon=True)
        t.start()
        self._control_thread = t
        self.logger.emit("control_socket_started", path=sock_path)

    def _control_loop(self):
        path = self._control_sock_path
        if not path:
            return

        parent = os.path.dirname(path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e), path=path)
            return

        srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            srv.bind(path)
            os.chmod(path, 0o660)
            srv.listen(4)
            srv.settimeout(0.5)
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e), path=path)
            srv.close()
            return

        try:
            while not self._stop_evt.is_set() and not self._control_stop_evt.is_set():
                try:
                    conn, _ = srv.accept()
                except socket.timeout:
                    continue
                except OSError:
                    break
                self._serve_control_conn(conn)
        finally:
            srv.close()
            try:
                os.remove(path)
            except OSError:
                pass

    def _serve_control_conn(self, conn: socket.socket):
        with conn:
            try:
                conn.settimeout(2.0)
                data = b""
                while b"\n" not in data and len(data) < 4096:
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    data += chunk
                cmd = data.decode("utf-8", errors="replace").strip()
                resp = self._handle_control_command(cmd)
                conn.sendall((json.dumps(resp, sort_keys=True) + "\n").encode("utf-8"))
            except OSError as e:
                self.logger.emit("control_conn_error", error=str(e))

    def _handle_control_command(self, cmd: str) -> dict:
        cmd = (cmd or "").strip().lower()
        if not cmd:
            return {"ok": False, "error": "empty command"}

        if cmd in (CONTROL_STATUS, "state"):
            state = asdict(self.state)
            state["lid"] = self.state.lid.value
            state["last_reading"] = self.state.last_reading.value
            return {"ok": True, "state": state, "threshold": self.threshold, "version": VERSION}

        if cmd == CONTROL_ENABLE:
            if not self.state.enabled:
                self.state.enabled = True
                self.logger.emit("enabled")
            return {"ok": True}

        if cmd == CONTROL_DISABLE:
            if self.state.enabled:
                self.state.enabled = False
                self.logger.emit("disabled")
            return {"ok": True}

        return {"ok": False, "error": f"unknown command: {cmd}"}
