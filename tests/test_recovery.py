import os
import random

import pytest

from lidfix.errors import PrivilegeError
from lidfix.inhibitors import InhibitorScanner
from lidfix.lid import LidStateReader
from lidfix.modules import ModuleReloader
from lidfix.processes import SelectiveTerminator
from lidfix.proc import CommandResult
from lidfix.recovery import RecoveryOrchestrator

HEADER = "WHO            UID  USER  PID  COMM           WHAT     WHY                              MODE"
POWER_BLOCKING = "gsd-power      1000 alice 2150 gsd-power      sleep    Lid switch state is unreliable   block"
MEDIA_BLOCKING = "gsd-media-keys 1000 alice 2143 gsd-media-keys sleep    GNOME handles these keys         block"
STEPS = [
    "lid_state_initial",
    "inhibitor_scan",
    "terminate_power_owner",
    "module_reload:acpi_button",
    "lid_state_final",
    "inhibitor_rescan",
    "verify",
]


class CapturingLogger:
    def __init__(self):
        self.events = []

    def emit(self, event: str, **fields):
        self.events.append((event, fields))

    def names(self):
        return [e for e, _ in self.events]


class FakeRunner:
    """Records argv lists; answers by longest matching argv prefix."""
    def __init__(self, responses=None):
        self.calls = []
        self.responses = dict(responses or {})

    def __call__(self, argv, timeout=None, env=None):
        argv = list(argv)
        self.calls.append(argv)
        for key in sorted(self.responses, key=len, reverse=True):
            if tuple(argv[:len(key)]) == key:
                res = self.responses[key]
                return res(argv) if callable(res) else res
        return CommandResult(argv=argv, returncode=0)

    def commands(self, name):
        return [c for c in self.calls if c[0] == name]


def _listing(*lines):
    return CommandResult(returncode=0, stdout="\n".join((HEADER,) + lines) + "\n")


def _make(tmp_path, runner, modules_loaded=True, geteuid=lambda: 0):
    lid = tmp_path / "LID0_state"
    lid.write_text("state:      open\n")
    sysmod = tmp_path / "sys_module"
    sysmod.mkdir()
    if modules_loaded:
        (sysmod / "acpi_button").mkdir()

    logger = CapturingLogger()
    sleeps = []
    orch = RecoveryOrchestrator(
        logger=logger,
        reader=LidStateReader((str(lid),)),
        scanner=InhibitorScanner(owners=("gsd-media-keys", "gsd-power"), runner=runner),
        terminator=SelectiveTerminator(logger, protected=("gsd-media-keys",), runner=runner),
        reloader=ModuleReloader(logger, runner=runner, sleep=sleeps.append, sys_module_dir=str(sysmod)),
        modules=("acpi_button",),
        sleep=sleeps.append,
        geteuid=geteuid,
    )
    return orch, logger, sleeps


def _outcomes(results):
    return [(r.step, r.succeeded, r.message) for r in results]


def test_power_owner_blocking_sleep_is_terminated_once(tmp_path):
    runner = FakeRunner({("systemd-inhibit",): _listing(POWER_BLOCKING)})
    orch, logger, sleeps = _make(tmp_path, runner)

    results = orch.run()

    assert runner.commands("pkill") == [["pkill", "-TERM", "gsd-power"]]
    assert ["modprobe", "-r", "acpi_button"] in runner.calls
    assert ["modprobe", "acpi_button"] in runner.calls
    assert 2.0 in sleeps

    by_step = {r.step: r for r in results}
    assert by_step["terminate_power_owner"].succeeded is True
    assert by_step["module_reload:acpi_button"].succeeded is True
    # The fake listing never changes, so the inhibitor is still there afterwards.
    assert by_step["verify"].succeeded is False
    assert "power_owner_still_inhibiting" in logger.names()


def test_module_reload_runs_even_if_terminate_fails(tmp_path):
    runner = FakeRunner({
        ("systemd-inhibit",): _listing(POWER_BLOCKING),
        ("pkill",): CommandResult(returncode=1),
        ("pgrep",): CommandResult(returncode=0, stdout="2150\n"),
    })
    orch, _, _ = _make(tmp_path, runner)

    results = orch.run()

    by_step = {r.step: r for r in results}
    assert by_step["terminate_power_owner"].succeeded is False
    assert by_step["module_reload:acpi_button"].succeeded is True
    assert ["modprobe", "acpi_button"] in runner.calls


def test_media_keys_inhibiting_is_left_alone(tmp_path):
    runner = FakeRunner({("systemd-inhibit",): _listing(MEDIA_BLOCKING)})
    orch, logger, _ = _make(tmp_path, runner)

    results = orch.run()

    assert runner.commands("pkill") == []
    assert "inhibitor_left_alone" in logger.names()
    by_step = {r.step: r for r in results}
    assert by_step["terminate_power_owner"].succeeded is True
    assert by_step["verify"].succeeded is True


def test_no_inhibitors_still_reloads_modules(tmp_path):
    runner = FakeRunner({("systemd-inhibit",): _listing()})
    orch, _, _ = _make(tmp_path, runner)

    results = orch.run()

    assert runner.commands("pkill") == []
    assert ["modprobe", "acpi_button"] in runner.calls
    assert all(r.succeeded for r in results)


def test_reload_failure_is_logged_and_later_steps_run(tmp_path):
    runner = FakeRunner({
        ("systemd-inhibit",): _listing(),
        ("modprobe", "acpi_button"): CommandResult(returncode=1, stderr="modprobe: FATAL: Module acpi_button not found"),
    })
    orch, logger, _ = _make(tmp_path, runner)

    results = orch.run()

    assert [r.step for r in results] == STEPS
    by_step = {r.step: r for r in results}
    assert by_step["module_reload:acpi_button"].succeeded is False
    assert "not found" in by_step["module_reload:acpi_button"].message
    assert by_step["verify"].succeeded is True
    assert "module_load_failed" in logger.names()


def test_inhibitor_tool_missing_degrades(tmp_path):
    runner = FakeRunner({("systemd-inhibit",): CommandResult(error="missing")})
    orch, _, _ = _make(tmp_path, runner)

    results = orch.run()

    by_step = {r.step: r for r in results}
    assert by_step["inhibitor_scan"].succeeded is False
    assert by_step["terminate_power_owner"].succeeded is False
    assert by_step["module_reload:acpi_button"].succeeded is True
    assert by_step["verify"].succeeded is False
    assert runner.commands("pkill") == []


def test_requires_root(tmp_path):
    runner = FakeRunner()
    orch, logger, _ = _make(tmp_path, runner, geteuid=lambda: 1000)

    with pytest.raises(PrivilegeError):
        orch.run()
    assert runner.calls == []
    assert "privilege_error" in logger.names()


def test_second_run_is_identical_when_module_already_absent(tmp_path):
    runner = FakeRunner({("systemd-inhibit",): _listing()})
    orch, logger, _ = _make(tmp_path, runner, modules_loaded=False)

    first = _outcomes(orch.run())
    second = _outcomes(orch.run())

    assert first == second
    reload_msg = dict((s, m) for s, _, m in second)["module_reload:acpi_button"]
    assert reload_msg.startswith("already absent")
    assert ("module_unload", {"module": "acpi_button", "result": "already absent"}) in logger.events
    assert ["modprobe", "-r", "acpi_button"] not in runner.calls


def test_second_run_is_identical_when_module_loaded(tmp_path):
    runner = FakeRunner({("systemd-inhibit",): _listing(POWER_BLOCKING)})
    orch, _, _ = _make(tmp_path, runner)

    assert _outcomes(orch.run()) == _outcomes(orch.run())


def test_missing_lid_file_is_a_step_failure(tmp_path):
    runner = FakeRunner({("systemd-inhibit",): _listing()})
    orch, _, _ = _make(tmp_path, runner)
    orch.reader = LidStateReader((str(tmp_path / "nope"),))

    results = orch.run()

    by_step = {r.step: r for r in results}
    assert by_step["lid_state_initial"].succeeded is False
    assert by_step["lid_state_final"].succeeded is False
    assert by_step["module_reload:acpi_button"].succeeded is True


def test_undecodable_inhibitor_listing_does_not_abort_recovery(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    tool = bin_dir / "systemd-inhibit"
    tool.write_text("#!/bin/sh\nprintf 'WHO UID WHY MODE\\n'\nprintf 'gsd-power 1000 b\\377d sleep block\\n'\n")
    tool.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    runner = FakeRunner()
    orch, _, _ = _make(tmp_path, runner)
    orch.scanner = InhibitorScanner(owners=("gsd-media-keys", "gsd-power"))

    results = orch.run()

    by_step = {r.step: r for r in results}
    assert [r.step for r in results] == STEPS
    assert by_step["inhibitor_scan"].succeeded is True
    assert runner.commands("pkill") == [["pkill", "-TERM", "gsd-power"]]
    assert ["modprobe", "acpi_button"] in runner.calls


def test_unexpected_scan_fault_becomes_failed_step(tmp_path):
    class BrokenScanner:
        def scan(self):
            raise RuntimeError("listing changed shape")

    runner = FakeRunner()
    orch, _, _ = _make(tmp_path, runner)
    orch.scanner = BrokenScanner()

    results = orch.run()

    by_step = {r.step: r for r in results}
    assert [r.step for r in results] == STEPS
    assert by_step["inhibitor_scan"].succeeded is False
    assert by_step["inhibitor_scan"].message == "RuntimeError: listing changed shape"
    assert by_step["module_reload:acpi_button"].succeeded is True
    assert by_step["verify"].succeeded is False
    assert runner.commands("pkill") == []


_FRAGMENTS = [
    "gsd-media-keys", "gsd-power", "gsd-power-helper", "gsd-media-keys-x", "gnome-session",
    "sleep", "shutdown:sleep", "handle-lid-switch", "idle", "block", "delay", "blocked",
    "1000", "alice", "2150", "why", "GNOME", "needs", "keys",
]


@pytest.mark.parametrize("seed", range(50))
def test_media_key_owner_never_terminated(tmp_path, seed):
    rng = random.Random(seed)
    lines = [" ".join(rng.choice(_FRAGMENTS) for _ in range(rng.randint(1, 9))) for _ in range(rng.randint(0, 12))]
    runner = FakeRunner({("systemd-inhibit",): _listing(*lines)})
    orch, _, _ = _make(tmp_path, runner)

    orch.run()

    for argv in runner.commands("pkill"):
        assert "gsd-media-keys" not in argv
        assert argv == ["pkill", "-TERM", "gsd-power"]
    assert len(runner.commands("pkill")) <= 1


def test_terminator_refuses_protected_name():
    runner = FakeRunner()
    logger = CapturingLogger()
    term = SelectiveTerminator(logger, protected=("gsd-media-keys",), runner=runner)

    assert term.terminate("gsd-media-keys") is False
    assert runner.calls == []
    assert logger.events[-1] == ("terminate_refused", {"process": "gsd-media-keys", "reason": "protected"})


def test_terminator_reports_not_running():
    runner = FakeRunner({
        ("pkill",): CommandResult(returncode=1),
        ("pgrep",): CommandResult(returncode=1),
    })
    logger = CapturingLogger()
    term = SelectiveTerminator(logger, runner=runner)

    assert term.terminate("gsd-power") is False
    assert logger.events[-1] == ("terminate_skipped", {"process": "gsd-power", "reason": "not running"})
