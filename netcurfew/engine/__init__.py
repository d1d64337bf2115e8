"""Access control engine: bonus sessions, reconciliation and the service facade."""

from netcurfew.engine.bonus import BonusCancelResult, BonusSessionManager
from netcurfew.engine.cache import BlockedCache
from netcurfew.engine.reconciler import Reconciler, TickReport
from netcurfew.engine.service import AccessControlService, ActionResult

__all__ = [
    "AccessControlService",
    "ActionResult",
    "BlockedCache",
    "BonusCancelResult",
    "BonusSessionManager",
    "Reconciler",
    "TickReport",
]
