from lifeline.github.api import API
from lifeline.github.classify import (
    classify_workflow_run,
    correlate_pull_request,
    correlate_workflow_run,
    request_branch_name,
)
from lifeline.github.signature import verify_signature

__all__ = [
    "API",
    "classify_workflow_run",
    "correlate_pull_request",
    "correlate_workflow_run",
    "request_branch_name",
    "verify_signature",
]
