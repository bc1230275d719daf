from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from lifeline.lifecycle.types import WorkflowKind

# first match wins; "apply" ahead of "plan" so "Plan and Apply" is an apply run
CLASSIFICATION_ORDER = (
    WorkflowKind.apply,
    WorkflowKind.destroy,
    WorkflowKind.cleanup,
    WorkflowKind.plan,
)

REQUEST_ID_IN_TEXT = re.compile(r"req_[a-z0-9_]+")
REQUEST_BRANCH_PREFIX = "refs/heads/request/"


def classify_workflow_run(
    name: Optional[str], display_title: Optional[str] = None
) -> Optional[WorkflowKind]:
    parts = [p for p in (name, display_title) if isinstance(p, str) and p.strip()]
    combined = " ".join(parts).strip().lower()
    if not combined:
        return None
    # drift checks plan against live infrastructure; never a request plan
    if "drift" in combined and WorkflowKind.plan.value in combined:
        return WorkflowKind.drift_plan
    for kind in CLASSIFICATION_ORDER:
        if kind.value in combined:
            return kind
    return None


def _ref_from_branch(branch: str) -> str:
    return branch if branch.startswith("refs/") else f"refs/heads/{branch}"


def request_id_from_branch(branch: Optional[str]) -> Optional[str]:
    if not branch:
        return None
    ref = _ref_from_branch(branch)
    if not ref.startswith(REQUEST_BRANCH_PREFIX):
        return None
    suffix = ref[len(REQUEST_BRANCH_PREFIX) :].strip()
    return suffix or None


def request_id_from_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = REQUEST_ID_IN_TEXT.search(text)
    return match.group(0) if match else None


def request_branch_name(request_id: str) -> str:
    return f"request/{request_id}"


def correlate_workflow_run(payload: Mapping[str, Any]) -> Optional[str]:
    run = payload.get("workflow_run") or {}
    return (
        request_id_from_branch(run.get("head_branch"))
        or request_id_from_text(run.get("display_title"))
        or request_id_from_text(run.get("name"))
    )


def correlate_pull_request(payload: Mapping[str, Any], lookup=None) -> Optional[str]:
    """Map a pull_request(_review) payload to a request id.

    ``lookup(owner, repo, number)`` is consulted last, for PRs whose branch and
    text do not carry the request id.
    """
    pr = payload.get("pull_request") or {}
    if not pr:
        return None
    head = pr.get("head") or {}
    request_id = (
        request_id_from_branch(head.get("ref"))
        or request_id_from_text(pr.get("title"))
        or request_id_from_text(pr.get("body"))
    )
    if request_id is not None or lookup is None or pr.get("number") is None:
        return request_id

    owner_repo = repository_coordinates(payload)
    if owner_repo is None:
        return None
    return lookup(owner_repo[0], owner_repo[1], pr["number"])


def repository_coordinates(payload: Mapping[str, Any]) -> Optional[tuple[str, str]]:
    repo = payload.get("repository") or {}
    full_name = repo.get("full_name")
    if isinstance(full_name, str):
        parts = [p for p in full_name.split("/") if p]
        if len(parts) >= 2:
            return parts[0], parts[1]
    owner = (repo.get("owner") or {}).get("login")
    name = repo.get("name")
    if owner and name:
        return owner, name
    return None
