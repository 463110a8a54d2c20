from __future__ import annotations

import json
import os
import signal
import sys
import threading

from .config import get_notifier_config
from .constants import VERSION
from .doctor import (
    build_arg_parser,
    parse_args,
    resolved_config_dict,
    run_doctor,
    run_lid_test,
    split_list,
)
from .errors import PrivilegeError
from .inhibitors import InhibitorScanner
from .lid import LidStateReader
from .logging import JsonLogger
from .modules import ModuleReloader
from .monitor import LidSuspendMonitor
from .notify import Notifier
from .processes import SelectiveTerminator
from .recovery import RecoveryOrchestrator
from .session import (
    SessionRefreshChain,
    ShellReexecStrategy,
    ShellSignalStrategy,
    detect_desktop_session,
    session_env,
)
from .state import MonitorState
from .suspend import SuspendTrigger


def _notifier() -> Notifier:
    return Notifier(**get_notifier_config())


def run_monitor(args, logger: JsonLogger) -> int:
    reader = LidStateReader(split_list(args.lid_paths))
    if reader.locate() is None:
        logger.emit("lid_source_missing", paths=",".join(reader.paths))
        return 2

    mon = LidSuspendMonitor(
        state=MonitorState(),
        logger=logger,
        reader=reader,
        trigger=SuspendTrigger(logger=logger),
        threshold=args.threshold,
        poll_interval_s=args.poll_interval,
        unknown_backoff_s=args.unknown_backoff,
        settle_after_suspend_s=args.settle_after_suspend,
        settle_after_failure_s=args.settle_after_failure,
        error_backoff_s=args.error_backoff,
        notifier=_notifier(),
        verbose=args.verbose,
    )
    if args.control_socket:
        mon.start_control_socket(args.control_socket)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    mon.run(stop)
    mon.stop()
    return 0


def run_resume_fix(args, logger: JsonLogger) -> int:
    reader = LidStateReader(split_list(args.lid_paths))
    orchestrator = RecoveryOrchestrator(
        logger=logger,
        reader=reader,
        scanner=InhibitorScanner(owners=(args.media_key_owner, args.power_owner)),
        terminator=SelectiveTerminator(logger, protected=(args.media_key_owner,)),
        reloader=ModuleReloader(logger),
        modules=split_list(args.modules),
        power_owner=args.power_owner,
        media_key_owner=args.media_key_owner,
        terminate_wait_s=args.terminate_wait,
        step_settle_s=args.step_settle,
        notifier=_notifier(),
    )
    try:
        orchestrator.run()
    except PrivilegeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


def run_refresh_session(args, logger: JsonLogger) -> int:
    if os.geteuid() == 0:
        logger.emit("running_as_root", warning="the shell belongs to a user session; run as that user")
    is_gnome = detect_desktop_session()
    logger.emit(
        "session_detected",
        gnome=is_gnome,
        desktop=os.environ.get("XDG_CURRENT_DESKTOP", ""),
        session=os.environ.get("DESKTOP_SESSION", ""),
    )

    env = session_env()
    if env.get("XDG_RUNTIME_DIR") != os.environ.get("XDG_RUNTIME_DIR"):
        logger.emit("runtime_dir_derived", path=env.get("XDG_RUNTIME_DIR"))

    chain = SessionRefreshChain(
        logger,
        [
            ShellReexecStrategy(timeout_s=args.dbus_timeout, env=env),
            ShellSignalStrategy(process=args.shell_process),
        ],
        notifier=_notifier(),
    )
    # An exhausted chain is logged and notified; the command itself still succeeds.
    chain.refresh()
    return 0


COMMANDS = {
    "monitor": run_monitor,
    "resume-fix": run_resume_fix,
    "refresh-session": run_refresh_session,
}


def main(argv=None):
    """CLI entry point. Parses args, resolves config and dispatches the subcommand."""
    if argv is None:
        argv = sys.argv[1:]
    if not argv:
        build_arg_parser().print_help()
        return 0

    try:
        args = parse_args(argv)
    except (OSError, ValueError) as e:
        # Unreadable or malformed TOML (TOMLDecodeError is a ValueError), or out-of-range values.
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.version:
        print(VERSION)
        return 0

    if not args.command:
        build_arg_parser().print_help()
        return 0

    if args.print_config:
        print(json.dumps(resolved_config_dict(args), indent=2, sort_keys=True))
        return 0

    if args.command == "doctor":
        return run_doctor(args)
    if args.command == "watch-lid":
        return run_lid_test(args)

    component = {"monitor": "monitor", "resume-fix": "recovery", "refresh-session": "session"}[args.command]
    logger = JsonLogger(enable_json=bool(args.json), component=component)
    if not args.no_banner:
        logger.emit("startup", version=VERSION, command=args.command, uid=os.geteuid())
    return COMMANDS[args.command](args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
