"""When to refresh request facts from the GitHub API.

Only says yes when the stored facts would leave a
client without a meaningful status.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from lifeline.lifecycle.ledger import AttemptLedger, StaleThreshold
from lifeline.lifecycle.types import Stage
from lifeline.model import utcnow

DESTROY_STALE_MINUTES = 15


def _has_target_repo(request: Any) -> bool:
    return bool(getattr(request, "target_owner", None)) and bool(
        getattr(request, "target_repo", None)
    )


def _has_pr(request: Any) -> bool:
    pr = getattr(request, "pr", None)
    return pr is not None and bool(pr.number)


def _destroy_requested(request: Any, runs: AttemptLedger) -> bool:
    return (
        getattr(request, "destroy_requested_at", None) is not None
        or runs.current_attempt_strict(Stage.destroy) is not None
    )


def missing_stages(
    request: Any, *, eager_destroy_discovery: bool = False
) -> list[Stage]:
    runs = getattr(request, "runs", None) or AttemptLedger()
    missing = []
    for stage in (Stage.plan, Stage.apply):
        if not runs.has_facts(stage):
            missing.append(stage)
    if not runs.has_facts(Stage.destroy) and (
        eager_destroy_discovery or _destroy_requested(request, runs)
    ):
        missing.append(Stage.destroy)
    return missing


def needs_repair(
    request: Any,
    *,
    now: Optional[datetime] = None,
    stale_after: StaleThreshold = timedelta(minutes=DESTROY_STALE_MINUTES),
    eager_destroy_discovery: bool = False,
) -> bool:
    if request is None or not _has_target_repo(request):
        return False

    runs = getattr(request, "runs", None) or AttemptLedger()
    now = now or utcnow()

    # destroy stuck in progress, completion webhook probably missed
    if runs.is_stale(Stage.destroy, stale_after, now):
        return True

    if not _has_pr(request) and getattr(request, "branch_name", None):
        return True

    if _has_pr(request) or getattr(request, "merged_sha", None):
        if missing_stages(request, eager_destroy_discovery=eager_destroy_discovery):
            return True

    return False
