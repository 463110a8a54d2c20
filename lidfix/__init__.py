"""lidfix package for surface-lidfix."""

from .state import LidState, MonitorState
from .monitor import LidSuspendMonitor
from .recovery import RecoveryOrchestrator, RecoveryStepResult
from .session import SessionRefreshChain

__all__ = [
    "LidState",
    "MonitorState",
    "LidSuspendMonitor",
    "RecoveryOrchestrator",
    "RecoveryStepResult",
    "SessionRefreshChain",
]
