from __future__ import annotations

VERSION = "1.3.0"

LID_STATE_PATHS = (
    "/proc/acpi/button/lid/LID0/state",
    "/proc/acpi/button/lid/LID/state",
)

POWER_OWNER = "gsd-power"
MEDIA_KEY_OWNER = "gsd-media-keys"

ACPI_MODULES = ("acpi_button",)

SHELL_BUS_NAME = "org.gnome.Shell"
SHELL_OBJECT_PATH = "/org/gnome/Shell"
SHELL_EVAL_METHOD = "org.gnome.Shell.Eval"
SHELL_REEXEC_EXPR = "global.reexec_self()"
SHELL_PROCESS = "gnome-shell"

SERVICE_NAME = "surface-lidfix"
SERVICE_UNITS = (f"{SERVICE_NAME}.service", f"{SERVICE_NAME}-resume.service")

CONTROL_STATUS = "status"
CONTROL_ENABLE = "enable"
CONTROL_DISABLE = "disable"


USAGE_EXAMPLES = """\
Usage examples:
  # Run the lid monitor (normally started by surface-lidfix.service)
  surface-lidfix monitor

  # Faster confirmation, structured logs
  surface-lidfix monitor --threshold 2 --poll-interval 0.5 --json

  # Post-resume recovery (run as root, normally from surface-lidfix-resume.service)
  sudo surface-lidfix resume-fix

  # Restart GNOME Shell in the current session
  surface-lidfix refresh-session

  # Host diagnostics / interactive lid test
  surface-lidfix doctor
  surface-lidfix watch-lid --seconds 10
"""
