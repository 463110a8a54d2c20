from __future__ import annotations

import os
from typing import Optional, Sequence, Tuple

from .constants import LID_STATE_PATHS
from .state import LidState


def parse_lid_state(text: Optional[str]) -> LidState:
    """Map raw ACPI lid text (e.g. ``state:      closed``) to a LidState."""
    if not text or not text.strip():
        return LidState.UNKNOWN
    if "closed" in text.lower():
        return LidState.CLOSED
    return LidState.OPEN


class LidStateReader:
    """Reads the ACPI lid switch state from procfs.

    The primary path is tried first, then the fallback. Either file can vanish
    while ``acpi_button`` is being reloaded, so every failure degrades to
    UNKNOWN instead of raising."""
    def __init__(self, paths: Sequence[str] = LID_STATE_PATHS):
        self.paths = tuple(paths)

    def locate(self) -> Optional[str]:
        """Return the first existing lid state path, or None."""
        for path in self.paths:
            if os.path.exists(path):
                return path
        return None

    def read_raw(self) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(path, text)`` from the first readable source, else ``(None, None)``."""
        for path in self.paths:
            try:
                with open(path, "r") as f:
                    return path, f.read().strip()
            except OSError:
                continue
        return None, None

    def read(self) -> LidState:
        _, text = self.read_raw()
        return parse_lid_state(text)
