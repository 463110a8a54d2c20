from __future__ import annotations

import argparse
import os
import shutil
import time
from argparse import RawDescriptionHelpFormatter
from typing import Callable, Optional

try:
    import tomllib  # py3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib

from .constants import (
    ACPI_MODULES,
    LID_STATE_PATHS,
    MEDIA_KEY_OWNER,
    POWER_OWNER,
    SERVICE_UNITS,
    SHELL_PROCESS,
    USAGE_EXAMPLES,
    VERSION,
)
from .errors import InhibitorQueryError
from .inhibitors import InhibitorScanner
from .lid import LidStateReader, parse_lid_state
from .modules import SYS_MODULE_DIR, ModuleReloader
from .proc import CommandResult, run_command
from .session import detect_desktop_session

REQUIRED_TOOLS = ("systemctl", "systemd-inhibit", "pkill", "pgrep", "modprobe", "gdbus", "killall")
DMI_PRODUCT_NAME = "/sys/class/dmi/id/product_name"


def default_control_socket(euid: Optional[int] = None) -> str:
    """Root monitors use /run/surface-lidfix (systemd RuntimeDirectory), users their runtime dir."""
    if euid is None:
        euid = os.geteuid()
    if euid == 0:
        return "/run/surface-lidfix/surface-lidfix.sock"
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR") or f"/run/user/{euid}"
    return os.path.join(runtime_dir, "surface-lidfix.sock")


def split_list(value) -> list:
    """Accept a TOML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v.strip() for v in str(value).split(",") if v.strip()]


def load_toml_config(path: str) -> dict:
    """Load TOML configuration from path."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _get_cfg(cfg: dict, section: str, key: str, default=None):
    sec = cfg.get(section, {})
    if not isinstance(sec, dict):
        return default
    return sec.get(key, default)


def config_defaults_from(cfg: dict) -> dict:
    """Map TOML config into argparse defaults."""
    return {
        "lid_paths": ",".join(split_list(_get_cfg(cfg, "lid", "paths", list(LID_STATE_PATHS)))),
        "poll_interval": _get_cfg(cfg, "lid", "poll_interval", 0.5),
        "unknown_backoff": _get_cfg(cfg, "lid", "unknown_backoff", 5.0),
        "threshold": _get_cfg(cfg, "lid", "threshold", 2),
        "settle_after_suspend": _get_cfg(cfg, "lid", "settle_after_suspend", 10.0),
        "settle_after_failure": _get_cfg(cfg, "lid", "settle_after_failure", 5.0),
        "error_backoff": _get_cfg(cfg, "lid", "error_backoff", 5.0),
        "power_owner": _get_cfg(cfg, "recovery", "power_owner", POWER_OWNER),
        "media_key_owner": _get_cfg(cfg, "recovery", "media_key_owner", MEDIA_KEY_OWNER),
        "modules": ",".join(split_list(_get_cfg(cfg, "recovery", "modules", list(ACPI_MODULES)))),
        "terminate_wait": _get_cfg(cfg, "recovery", "terminate_wait", 2.0),
        "step_settle": _get_cfg(cfg, "recovery", "step_settle", 1.0),
        "dbus_timeout": _get_cfg(cfg, "session", "dbus_timeout", 5.0),
        "shell_process": _get_cfg(cfg, "session", "shell_process", SHELL_PROCESS),
        "verbose": _get_cfg(cfg, "logging", "verbose", False),
        "no_banner": _get_cfg(cfg, "logging", "no_banner", False),
        "json": _get_cfg(cfg, "logging", "json", False),
        "control_socket": _get_cfg(cfg, "control", "socket", default_control_socket()),
    }


def resolved_config_dict(args) -> dict:
    return {
        "lid": {
            "paths": split_list(args.lid_paths),
            "poll_interval": args.poll_interval,
            "unknown_backoff": args.unknown_backoff,
            "threshold": args.threshold,
            "settle_after_suspend": args.settle_after_suspend,
            "settle_after_failure": args.settle_after_failure,
            "error_backoff": args.error_backoff,
        },
        "recovery": {
            "power_owner": args.power_owner,
            "media_key_owner": args.media_key_owner,
            "modules": split_list(args.modules),
            "terminate_wait": args.terminate_wait,
            "step_settle": args.step_settle,
        },
        "session": {
            "dbus_timeout": args.dbus_timeout,
            "shell_process": args.shell_process,
        },
        "logging": {
            "verbose": args.verbose,
            "no_banner": args.no_banner,
            "json": bool(args.json),
        },
        "control": {
            "socket": args.control_socket,
        },
    }


def _common_options() -> argparse.ArgumentParser:
    """Options shared by every subcommand (logging, config, tuning)."""
    ap = argparse.ArgumentParser(add_help=False)
    ap.add_argument("--config", help="Path to a TOML config file. CLI args override config values.")
    ap.add_argument("--print-config", action="store_true", help="Print the resolved configuration and exit.")
    ap.add_argument("--verbose", dest="verbose", action="store_true", help="Verbose logging (every debounce check).")
    ap.add_argument("--no-verbose", dest="verbose", action="store_false", help="Disable verbose logging.")
    json_group = ap.add_mutually_exclusive_group()
    json_group.add_argument("--json", dest="json", action="store_true", help="Emit JSON log events.")
    json_group.add_argument("--no-json", dest="json", action="store_false", help="Disable JSON log output.")
    ap.add_argument("--no-banner", dest="no_banner", action="store_true", help="Disable the startup banner.")
    ap.add_argument("--banner", dest="no_banner", action="store_false", help="Enable the startup banner.")

    ap.add_argument("--lid-paths", help="Comma-separated lid state files, tried in order.")
    ap.add_argument("--poll-interval", type=float, help="Seconds between lid readings.")
    ap.add_argument("--unknown-backoff", type=float, help="Seconds to wait after an unreadable lid state.")
    ap.add_argument("--threshold", type=int, help="Consecutive 'closed' readings required before suspending.")
    ap.add_argument("--settle-after-suspend", type=float, help="Seconds to pause after an accepted suspend request.")
    ap.add_argument("--settle-after-failure", type=float, help="Seconds to pause after a rejected suspend request.")
    ap.add_argument("--error-backoff", type=float, help="Seconds to wait after an unexpected error in the monitor loop.")
    sock_group = ap.add_mutually_exclusive_group()
    sock_group.add_argument("--control-socket", dest="control_socket",
                            help="Path to the monitor's local UNIX control socket.")
    sock_group.add_argument("--no-control-socket", dest="control_socket", action="store_const", const="",
                            help="Disable the local control socket.")

    ap.add_argument("--power-owner", help="Inhibitor owner that may be terminated after resume.")
    ap.add_argument("--media-key-owner", help="Inhibitor owner that is reported but never terminated.")
    ap.add_argument("--modules", help="Comma-separated kernel modules to reload after resume.")
    ap.add_argument("--terminate-wait", type=float, help="Seconds to wait after terminating the power owner.")
    ap.add_argument("--step-settle", type=float, help="Seconds to wait between recovery phases.")

    ap.add_argument("--dbus-timeout", type=float, help="Deadline (seconds) for the shell re-exec D-Bus call.")
    ap.add_argument("--shell-process", help="Process name that receives SIGHUP in the fallback refresh.")
    return ap


def build_arg_parser(defaults=None):
    """Construct the CLI argument parser.

    Defaults come from the built-in values, optionally overridden by a TOML
    config; explicit CLI arguments override both."""
    if defaults is None:
        defaults = config_defaults_from({})
    common = _common_options()
    ap = argparse.ArgumentParser(prog="surface-lidfix", epilog=USAGE_EXAMPLES,
                                 formatter_class=RawDescriptionHelpFormatter)
    ap.add_argument("--version", action="store_true", help="Print version and exit.")
    sub = ap.add_subparsers(dest="command")

    parsers = [
        sub.add_parser("monitor", parents=[common], help="Watch the lid and force suspend when it is closed."),
        sub.add_parser("resume-fix", parents=[common], help="Post-resume recovery (root): clear gsd-power inhibitor, reload ACPI modules."),
        sub.add_parser("refresh-session", parents=[common], help="Restart GNOME Shell (D-Bus re-exec, then SIGHUP)."),
        sub.add_parser("doctor", parents=[common], help="Print host diagnostics and exit."),
    ]
    watch = sub.add_parser("watch-lid", parents=[common], help="Interactive lid test: report lid state changes.")
    watch.add_argument("--seconds", type=int, default=10, help="How long to watch the lid (default: 10).")
    parsers.append(watch)

    for p in parsers:
        p.set_defaults(**defaults)
    return ap


def parse_args(argv=None):
    """Parse argv, backfilling defaults from ``--config`` when given."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config")
    known, _ = pre.parse_known_args(argv)
    cfg = load_toml_config(known.config) if known.config else {}
    return validate_args(build_arg_parser(config_defaults_from(cfg)).parse_args(argv))


SECONDS_SETTINGS = (
    "poll_interval", "unknown_backoff", "settle_after_suspend", "settle_after_failure",
    "error_backoff", "terminate_wait", "step_settle", "dbus_timeout",
)


def validate_args(args):
    """Coerce numeric settings and range-check them.

    TOML values reach argparse as defaults and skip its ``type=`` conversion,
    so they are checked here. Raises ValueError on a bad value."""
    if not getattr(args, "command", None):
        return args
    for name in SECONDS_SETTINGS:
        raw = getattr(args, name)
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None
        if value < 0 or (value == 0 and name in ("poll_interval", "dbus_timeout")):
            raise ValueError(f"{name} out of range: {raw!r}")
        setattr(args, name, value)

    raw = args.threshold
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise ValueError(f"threshold must be an integer, got {raw!r}")
    try:
        threshold = int(raw)
    except ValueError:
        raise ValueError(f"threshold must be an integer, got {raw!r}") from None
    if threshold < 1:
        raise ValueError(f"threshold must be at least 1, got {raw!r}")
    args.threshold = threshold
    return args


# ---------------- Diagnostics ----------------

def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, "r") as f:
            return f.read().strip()
    except OSError:
        return None


def run_doctor(args, runner: Callable[..., CommandResult] = run_command, which=shutil.which,
               dmi_path: str = DMI_PRODUCT_NAME, sys_module_dir: str = SYS_MODULE_DIR) -> int:
    """Print environment checks: device, lid source, tools, modules, inhibitors, units."""
    print(f"surface-lidfix {VERSION} doctor")
    print()

    product = _read_text(dmi_path)
    if product is None:
        print("  Device: unknown (DMI product name unreadable)")
    elif "surface" in product.lower():
        print(f"  Device: {product} (Surface)")
    else:
        print(f"  Device: {product}")
        print("  WARN: not a Surface device; the fix may still help other laptops.")

    reader = LidStateReader(split_list(args.lid_paths))
    path, text = reader.read_raw()
    if path is None:
        print("  FAIL: no lid state file found (tried: " + ", ".join(reader.paths) + ")")
    else:
        print(f"  Lid: {parse_lid_state(text).value} ({path}: {text})")

    print()
    print("  Tools:")
    missing = 0
    for tool in REQUIRED_TOOLS:
        found = which(tool)
        if found:
            print(f"    OK   {tool} ({found})")
        else:
            missing += 1
            print(f"    MISS {tool}")

    print()
    print("  Kernel modules:")
    reloader = ModuleReloader(logger=None, runner=runner, sys_module_dir=sys_module_dir)
    for name in split_list(args.modules):
        print(f"    {name}: {'loaded' if reloader.is_loaded(name) else 'not loaded'}")

    print()
    print("  Sleep inhibitors (watched owners):")
    scanner = InhibitorScanner(owners=(args.media_key_owner, args.power_owner), runner=runner)
    try:
        records = scanner.scan()
    except InhibitorQueryError as e:
        print(f"    WARN: {e}")
    else:
        if not records:
            print("    none")
        for rec in records:
            note = " (never terminated)" if rec.owner == args.media_key_owner else ""
            print(f"    {rec.owner} mode={rec.mode} scope={rec.scope}{note}")

    print()
    print("  Session:")
    env = os.environ
    print(f"    XDG_CURRENT_DESKTOP={env.get('XDG_CURRENT_DESKTOP', '')!r} DESKTOP_SESSION={env.get('DESKTOP_SESSION', '')!r}")
    print(f"    XDG_RUNTIME_DIR={env.get('XDG_RUNTIME_DIR', '')!r}")
    print(f"    GNOME session: {'yes' if detect_desktop_session(env) else 'no/undetermined'}")

    print()
    print("  Services:")
    for unit in SERVICE_UNITS:
        active = runner(["systemctl", "is-active", unit], timeout=5)
        enabled = runner(["systemctl", "is-enabled", unit], timeout=5)
        a = active.stdout.strip() or active.describe()
        e = enabled.stdout.strip() or enabled.describe()
        print(f"    {unit}: active={a} enabled={e}")

    return 1 if (path is None or missing) else 0


def run_lid_test(args, sleep: Callable[[float], None] = time.sleep) -> int:
    """Watch the raw lid state once a second and report whether it changed."""
    reader = LidStateReader(split_list(args.lid_paths))
    path, initial = reader.read_raw()
    if path is None:
        print("FAIL: could not find a lid state file (tried: " + ", ".join(reader.paths) + ")")
        return 1

    seconds = max(1, int(args.seconds))
    print(f"Initial lid state from {path}: {initial}")
    print(f"Close and open the lid now. Watching for {seconds} seconds...")

    changed = False
    last = initial
    for remaining in range(seconds, 0, -1):
        sleep(1.0)
        _, current = reader.read_raw()
        if current is None:
            print(f"  [{remaining:2d}] lid state unreadable")
            continue
        if current != last:
            print(f"  [{remaining:2d}] {last} -> {current}")
            changed = True
            last = current

    _, final = reader.read_raw()
    print(f"Final lid state: {final}")
    if changed or (final is not None and final != initial):
        print("OK: lid state changed during the test; ACPI lid reporting works.")
        return 0
    print(f"WARN: lid state never changed from {initial!r}. If you operated the lid, ACPI reporting may be broken.")
    return 1
