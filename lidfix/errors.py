from __future__ import annotations


class LidfixError(Exception):
    """Base class for failures raised by the lidfix agents."""


class SuspendError(LidfixError):
    """The OS suspend request was not accepted.

    ``kind`` is one of ``command_unavailable``, ``nonzero_exit`` or ``unknown``.
    """
    COMMAND_UNAVAILABLE = "command_unavailable"
    NONZERO_EXIT = "nonzero_exit"
    UNKNOWN = "unknown"

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


class InhibitorQueryError(LidfixError):
    """The inhibitor registry could not be listed."""


class ModuleReloadError(LidfixError):
    """A kernel module could not be loaded again after unloading."""


class PrivilegeError(LidfixError):
    """The operation requires root."""
