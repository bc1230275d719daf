"""Canonical status derivation.

The status of a request is never stored as a fact of its own; it is always
recomputed from the pull request facts and the attempt ledger. Stages are
evaluated from the most advanced one down, since a later stage implies the
earlier ones went through.
"""

from __future__ import annotations

from typing import Any, Optional

from lifeline.lifecycle.ledger import Attempt, AttemptLedger
from lifeline.lifecycle.types import CanonicalStatus, Stage


_STAGE_OUTCOMES = {
    Stage.apply: (
        CanonicalStatus.applying,
        CanonicalStatus.applied,
        CanonicalStatus.apply_failed,
    ),
    Stage.destroy: (
        CanonicalStatus.destroying,
        CanonicalStatus.destroyed,
        CanonicalStatus.destroy_failed,
    ),
}


def _attempt_status(attempt: Attempt, stage: Stage) -> CanonicalStatus:
    in_progress, success, failure = _STAGE_OUTCOMES[stage]
    if attempt.is_in_progress:
        return in_progress
    if attempt.is_success:
        return success
    if attempt.is_failure:
        return failure
    return CanonicalStatus.unknown


def derive_lifecycle_status(
    runs: Optional[AttemptLedger],
    *,
    pr_number: Optional[int] = None,
    pr_open: Optional[bool] = None,
    pr_merged: bool = False,
    merged_sha: Optional[str] = None,
    approved: bool = False,
) -> CanonicalStatus:
    runs = runs if runs is not None else AttemptLedger()

    for stage in (Stage.destroy, Stage.apply):
        attempt = runs.current_attempt_strict(stage)
        if attempt is not None:
            return _attempt_status(attempt, stage)

    plan = runs.current_attempt_strict(Stage.plan)
    if plan is not None:
        if plan.is_in_progress:
            return CanonicalStatus.planning
        if plan.is_failure:
            return CanonicalStatus.plan_failed

    if pr_merged or merged_sha:
        return CanonicalStatus.merged

    if plan is not None:
        if plan.is_success:
            return CanonicalStatus.approved if approved else CanonicalStatus.plan_ready
        return CanonicalStatus.unknown

    if pr_number is None:
        return CanonicalStatus.created
    if pr_open is not False:
        # plan workflow is triggered by the PR itself
        return CanonicalStatus.planning
    return CanonicalStatus.unknown


def derive_request_status(request: Any) -> CanonicalStatus:
    """Derive the status for anything shaped like a stored request."""
    if request is None:
        return CanonicalStatus.created
    pr = getattr(request, "pr", None)
    approval = getattr(request, "approval", None)
    return derive_lifecycle_status(
        getattr(request, "runs", None),
        pr_number=pr.number if pr is not None else None,
        pr_open=pr.open if pr is not None else None,
        pr_merged=bool(pr.merged) if pr is not None else False,
        merged_sha=getattr(request, "merged_sha", None),
        approved=bool(approval.approved) if approval is not None else False,
    )
