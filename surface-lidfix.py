#!/usr/bin/env python3
#
# Surface lid fix
#
# On some laptops (Surface Laptop models in particular) GNOME stops suspending
# on lid close after the first resume, and resume can leave the ACPI lid
# switch, logind inhibitors or GNOME Shell in a bad state.
#
# This launcher runs the three agents from the lidfix package:
#
#   monitor          poll the lid and force `systemctl suspend -i` when closed
#   resume-fix       post-resume recovery (clear gsd-power inhibitor, reload acpi_button)
#   refresh-session  restart GNOME Shell (D-Bus re-exec, SIGHUP fallback)
#
# plus the `doctor` and `watch-lid` diagnostics.
#

from __future__ import annotations

from lidfix.cli import main
from lidfix.doctor import (
    build_arg_parser,
    config_defaults_from,
    load_toml_config,
    parse_args,
    resolved_config_dict,
    run_doctor,
    run_lid_test,
)

if __name__ == "__main__":
    raise SystemExit(main())
