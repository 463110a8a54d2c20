from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from .constants import MEDIA_KEY_OWNER, POWER_OWNER
from .errors import InhibitorQueryError
from .proc import CommandResult, run_command

INHIBIT_LIST_ARGV = ("systemd-inhibit", "--list", "--no-pager")


@dataclass
class InhibitorRecord:
    owner: str
    mode: str
    scope: str
    raw: str

    @property
    def blocks_sleep(self) -> bool:
        return self.mode == "block" and "sleep" in self.scope


def parse_inhibitor_line(line: str, owners: Sequence[str]) -> Optional[InhibitorRecord]:
    """Parse one ``systemd-inhibit --list`` row.

    The listing has no stable column schema across systemd versions, so this
    matches substrings only: the owner is the watched name occurring earliest
    in the line (the WHO column comes first, so a WHY text naming another
    watched owner does not win), the mode is ``block`` or ``delay`` if either
    word occurs, and the scope is the first whitespace-separated token
    mentioning ``sleep``.

    Returns None for lines that name no watched owner.
    """
    text = line.strip()
    if not text:
        return None
    found = [(text.index(o), i, o) for i, o in enumerate(owners) if o in text]
    if not found:
        return None
    owner = min(found)[2]
    if "block" in text:
        mode = "block"
    elif "delay" in text:
        mode = "delay"
    else:
        mode = ""
    scope = next((tok for tok in text.split() if "sleep" in tok), "")
    return InhibitorRecord(owner=owner, mode=mode, scope=scope, raw=text)


def parse_inhibitors(text: str, owners: Sequence[str]) -> List[InhibitorRecord]:
    """Parse a whole listing, skipping the header row."""
    records = []
    for line in (text or "").strip().splitlines()[1:]:
        rec = parse_inhibitor_line(line, owners)
        if rec is not None:
            records.append(rec)
    return records


class InhibitorScanner:
    """Lists logind inhibitors and keeps watched owners blocking sleep."""
    def __init__(
        self,
        owners: Iterable[str] = (MEDIA_KEY_OWNER, POWER_OWNER),
        runner: Callable[..., CommandResult] = run_command,
    ):
        self.owners = tuple(owners)
        self._run = runner

    def scan(self) -> List[InhibitorRecord]:
        res = self._run(list(INHIBIT_LIST_ARGV))
        if not res.ok:
            raise InhibitorQueryError(f"systemd-inhibit --list failed: {res.describe()}")
        return [rec for rec in parse_inhibitors(res.stdout, self.owners) if rec.blocks_sleep]
