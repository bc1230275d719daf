from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Stage(str, Enum):
    plan = "plan"
    apply = "apply"
    destroy = "destroy"

    def __str__(self) -> str:
        return self.value


class WorkflowKind(str, Enum):
    plan = "plan"
    apply = "apply"
    destroy = "destroy"
    cleanup = "cleanup"
    drift_plan = "drift_plan"

    @property
    def stage(self) -> Stage | None:
        if self in (WorkflowKind.cleanup, WorkflowKind.drift_plan):
            return None
        return Stage(self.value)


class CanonicalStatus(str, Enum):
    created = "created"
    planning = "planning"
    plan_ready = "plan_ready"
    plan_failed = "plan_failed"
    approved = "approved"
    merged = "merged"
    applying = "applying"
    applied = "applied"
    apply_failed = "apply_failed"
    destroying = "destroying"
    destroyed = "destroyed"
    destroy_failed = "destroy_failed"
    unknown = "unknown"

    def __str__(self) -> str:
        return self.value


class StatusClass(str, Enum):
    active = "active"
    idle = "idle"
    terminal = "terminal"


COMPLETED_RUN_STATUS = "completed"

IN_PROGRESS_RUN_STATUSES = frozenset(
    {
        "queued",
        "in_progress",
        "waiting",
        "requested",
        "pending",
        "planning",
        "applying",
        "destroying",
    }
)

SUCCESS_CONCLUSION = "success"

FAILED_CONCLUSIONS = frozenset(
    {
        "failure",
        "cancelled",
        "timed_out",
        "action_required",
        "startup_failure",
        "stale",
    }
)


@dataclass(frozen=True)
class StatusMeta:
    status: CanonicalStatus
    label: str
    status_class: StatusClass

    @property
    def is_terminal(self) -> bool:
        return self.status_class is StatusClass.terminal


_STATUS_META = {
    CanonicalStatus.created: ("Request created", StatusClass.idle),
    CanonicalStatus.planning: ("Planning in progress", StatusClass.active),
    CanonicalStatus.plan_ready: ("Plan ready", StatusClass.idle),
    CanonicalStatus.plan_failed: ("Plan failed", StatusClass.terminal),
    CanonicalStatus.approved: ("Approved", StatusClass.idle),
    CanonicalStatus.merged: ("Pull request merged", StatusClass.idle),
    CanonicalStatus.applying: ("Applying", StatusClass.active),
    CanonicalStatus.applied: ("Deployment completed", StatusClass.terminal),
    CanonicalStatus.apply_failed: ("Apply failed", StatusClass.terminal),
    CanonicalStatus.destroying: ("Destroying", StatusClass.active),
    CanonicalStatus.destroyed: ("Destroyed", StatusClass.terminal),
    CanonicalStatus.destroy_failed: ("Destroy failed", StatusClass.terminal),
    CanonicalStatus.unknown: ("Status unknown, refresh to retry", StatusClass.idle),
}


def status_meta(status: CanonicalStatus | str) -> StatusMeta:
    try:
        key = CanonicalStatus(status)
    except ValueError:
        key = CanonicalStatus.unknown
    label, status_class = _STATUS_META[key]
    return StatusMeta(status=key, label=label, status_class=status_class)


def status_class(status: CanonicalStatus | str) -> StatusClass:
    return status_meta(status).status_class


def is_terminal_status(status: CanonicalStatus | str) -> bool:
    return status_class(status) is StatusClass.terminal


def is_active_status(status: CanonicalStatus | str) -> bool:
    return status_class(status) is StatusClass.active
