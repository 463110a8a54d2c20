from __future__ import annotations

import json
import time


class JsonLogger:
    """Minimal structured logger.

    Emits single-line events for lid transitions, suspend attempts and recovery
    steps so journal output is easy to grep and machine-parse. Every line is
    tagged with the emitting agent (monitor, recovery, session)."""
    def __init__(self, enable_json: bool, component: str = "lidfix"):
        """Create a logger.

        Args:
            enable_json: Print JSON objects instead of key=value text.
            component: Short agent name included in every event.
        """
        self.enable_json = enable_json
        self.component = component

    def emit(self, event: str, **fields):
        """Emit an event with a name and optional key/value fields."""
        t = time.time()
        # ts: float seconds since epoch. ts_iso is local time with milliseconds.
        ts_iso = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(t)) + f'.{int((t - int(t))*1000):03d}'
        if self.enable_json:
            payload = {"ts": t, "ts_iso": ts_iso, "component": self.component, "event": event, **fields}
            print(json.dumps(payload, sort_keys=True, default=str), flush=True)
        else:
            msg = f"[{ts_iso}] {self.component}: {event}"
            if fields:
                msg += " " + " ".join(f"{k}={v}" for k, v in fields.items())
            print(msg, flush=True)
