import pytest

from lidfix.errors import InhibitorQueryError
from lidfix.inhibitors import InhibitorScanner, parse_inhibitor_line, parse_inhibitors
from lidfix.proc import CommandResult

OWNERS = ("gsd-media-keys", "gsd-power")

# Captured from `systemd-inhibit --list --no-pager` (systemd 255, GNOME 46).
SAMPLE_LISTING = """\
WHO            UID  USER  PID  COMM           WHAT                                                     WHY                                   MODE
ModemManager   0    root  812  ModemManager   sleep                                                    ModemManager needs to reset devices   delay
NetworkManager 0    root  790  NetworkManager sleep                                                    NetworkManager needs to turn off net… delay
gsd-media-keys 1000 alice 2143 gsd-media-keys handle-power-key:handle-suspend-key:handle-hibernate-key GNOME handles these keys              block
gsd-media-keys 1000 alice 2143 gsd-media-keys sleep                                                    GNOME handles these keys              block
gsd-power      1000 alice 2150 gsd-power      sleep                                                    GNOME needs to lock the screen        delay
gsd-power      1000 alice 2150 gsd-power      handle-lid-switch                                        Multiple displays attached            block
gsd-power      1000 alice 2150 gsd-power      sleep                                                    Lid switch state is unreliable        block

7 inhibitors listed.
"""


def test_power_owner_blocking_sleep_line():
    line = "gsd-power      1000 alice 2150 gsd-power      sleep   Lid switch state is unreliable        block"
    rec = parse_inhibitor_line(line, OWNERS)
    assert rec is not None
    assert rec.owner == "gsd-power"
    assert rec.mode == "block"
    assert rec.scope == "sleep"
    assert rec.blocks_sleep is True
    assert rec.raw == line.strip()


def test_delay_mode_does_not_block():
    line = "gsd-power      1000 alice 2150 gsd-power      sleep   GNOME needs to lock the screen        delay"
    rec = parse_inhibitor_line(line, OWNERS)
    assert rec.mode == "delay"
    assert rec.blocks_sleep is False


def test_lid_switch_block_is_not_a_sleep_inhibitor():
    line = "gsd-power      1000 alice 2150 gsd-power      handle-lid-switch   Multiple displays attached   block"
    rec = parse_inhibitor_line(line, OWNERS)
    assert rec.scope == ""
    assert rec.blocks_sleep is False


def test_compound_what_column_keeps_sleep_token():
    line = "gsd-media-keys 1000 alice 2143 gsd-media-keys shutdown:sleep   GNOME handles these keys   block"
    rec = parse_inhibitor_line(line, OWNERS)
    assert rec.owner == "gsd-media-keys"
    assert rec.scope == "shutdown:sleep"
    assert rec.blocks_sleep is True


def test_owner_is_the_name_in_the_who_column():
    power = "gsd-power      1000 alice 2150 gsd-power      sleep   Waiting for gsd-media-keys to settle   block"
    media = "gsd-media-keys 1000 alice 2143 gsd-media-keys sleep   Coordinating with gsd-power            block"
    assert parse_inhibitor_line(power, OWNERS).owner == "gsd-power"
    assert parse_inhibitor_line(media, OWNERS).owner == "gsd-media-keys"


def test_unwatched_and_blank_lines_are_ignored():
    assert parse_inhibitor_line("ModemManager 0 root 812 ModemManager sleep reset devices block", OWNERS) is None
    assert parse_inhibitor_line("   ", OWNERS) is None
    assert parse_inhibitor_line("7 inhibitors listed.", OWNERS) is None


def test_header_line_is_skipped():
    # A header that happens to mention a watched owner must not become a record.
    text = "WHO gsd-power sleep block\ngsd-power 1000 alice 1 gsd-power sleep why block\n"
    recs = parse_inhibitors(text, OWNERS)
    assert len(recs) == 1


def test_sample_listing_records():
    recs = parse_inhibitors(SAMPLE_LISTING, OWNERS)
    assert [(r.owner, r.mode, r.scope) for r in recs] == [
        ("gsd-media-keys", "block", ""),
        ("gsd-media-keys", "block", "sleep"),
        ("gsd-power", "delay", "sleep"),
        ("gsd-power", "block", ""),
        ("gsd-power", "block", "sleep"),
    ]


def test_scanner_keeps_only_blocking_sleep_records():
    calls = []

    def runner(argv, timeout=None, env=None):
        calls.append(argv)
        return CommandResult(argv=argv, returncode=0, stdout=SAMPLE_LISTING)

    recs = InhibitorScanner(owners=OWNERS, runner=runner).scan()
    assert calls == [["systemd-inhibit", "--list", "--no-pager"]]
    assert [(r.owner, r.scope) for r in recs] == [("gsd-media-keys", "sleep"), ("gsd-power", "sleep")]


def test_scanner_raises_when_tool_missing():
    def runner(argv, timeout=None, env=None):
        return CommandResult(argv=argv, error="missing")

    with pytest.raises(InhibitorQueryError):
        InhibitorScanner(runner=runner).scan()


def test_scanner_raises_on_nonzero_exit():
    def runner(argv, timeout=None, env=None):
        return CommandResult(argv=argv, returncode=1, stderr="Failed to connect to bus")

    with pytest.raises(InhibitorQueryError, match="Failed to connect to bus"):
        InhibitorScanner(runner=runner).scan()
