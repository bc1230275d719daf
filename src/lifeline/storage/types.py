from __future__ import annotations

from typing import Any, List, Optional

import pydantic

from lifeline.lifecycle.ledger import AttemptLedger
from lifeline.model import Model, UTCDateTime, utcnow


class PullRequestFacts(Model):
    number: Optional[int] = None
    url: Optional[str] = None
    head_sha: Optional[str] = None
    open: Optional[bool] = None
    merged: bool = False


class ApprovalFacts(Model):
    approved: bool = False
    approvers: List[str] = pydantic.Field(default_factory=list)


class RequestRow(Model):
    id: str
    project: Optional[str] = None
    environment: Optional[str] = None
    module: Optional[str] = None
    target_owner: Optional[str] = None
    target_repo: Optional[str] = None
    branch_name: Optional[str] = None
    pr: Optional[PullRequestFacts] = None
    merged_sha: Optional[str] = None
    approval: ApprovalFacts = pydantic.Field(default_factory=ApprovalFacts)
    runs: AttemptLedger = pydantic.Field(default_factory=AttemptLedger)
    destroy_requested_at: Optional[UTCDateTime] = None
    version: int = 0
    created_at: UTCDateTime = pydantic.Field(default_factory=utcnow)
    updated_at: UTCDateTime = pydantic.Field(default_factory=utcnow)

    @property
    def repo_full_name(self) -> Optional[str]:
        if not self.target_owner or not self.target_repo:
            return None
        return f"{self.target_owner}/{self.target_repo}"

    def __str__(self) -> str:
        return f"Request({self.id})"


class DeliveryRow(Model):
    delivery_id: str
    event: Optional[str]
    received_at: Optional[UTCDateTime]


class StreamEventRow(Model):
    seq: int
    request_id: str
    type: str
    updated_at: UTCDateTime


class StreamStateRow(Model):
    seq: int = 0
    events: List[StreamEventRow] = pydantic.Field(default_factory=list)

    @pydantic.field_validator("seq", mode="before")
    @classmethod
    def _finite_seq(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        if value != value or value in (float("inf"), float("-inf")):
            return 0
        return int(value)
