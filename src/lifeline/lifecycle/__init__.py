from lifeline.lifecycle.derive import derive_lifecycle_status, derive_request_status
from lifeline.lifecycle.ledger import Attempt, AttemptLedger
from lifeline.lifecycle.polling import get_polling_interval
from lifeline.lifecycle.repair import needs_repair
from lifeline.lifecycle.types import (
    CanonicalStatus,
    Stage,
    StatusClass,
    WorkflowKind,
    status_meta,
)

__all__ = [
    "Attempt",
    "AttemptLedger",
    "CanonicalStatus",
    "Stage",
    "StatusClass",
    "WorkflowKind",
    "derive_lifecycle_status",
    "derive_request_status",
    "get_polling_interval",
    "needs_repair",
    "status_meta",
]
