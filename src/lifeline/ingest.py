from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import time
from typing import Any, Callable, Mapping, Optional, Tuple

import pydantic
from sanic.log import logger

from lifeline.errors import (
    DuplicateDelivery,
    IncompleteFacts,
    RejectedSignature,
    RequestNotFound,
    UnclassifiedWorkflow,
    VersionConflict,
)
from lifeline.github.classify import (
    classify_workflow_run,
    correlate_pull_request,
    correlate_workflow_run,
    repository_coordinates,
)
from lifeline.github.model import (
    PullRequest,
    PullRequestEvent,
    PullRequestReviewEvent,
    WorkflowRunEvent,
)
from lifeline.github.signature import verify_signature
from lifeline.lifecycle.types import Stage, WorkflowKind
from lifeline.metric import (
    observe_webhook_processing_latency,
    signature_rejected_counter,
    webhook_counter,
)
from lifeline.model import utcnow
from lifeline.storage import (
    UPDATE_ATTEMPTS,
    ApprovalFacts,
    PullRequestFacts,
    RequestRow,
    RequestStore,
)
from lifeline.stream import EventStreamLog


HANDLED_EVENTS = ("workflow_run", "pull_request", "pull_request_review")

Mutation = Callable[[RequestRow], Optional[RequestRow]]


class IngestOutcome(str, Enum):
    accepted = "accepted"
    rejected = "rejected"
    duplicate = "duplicate"
    skipped = "skipped"


@dataclass
class IngestResult:
    outcome: IngestOutcome
    request_id: Optional[str] = None
    stage: Optional[Stage] = None
    seq: Optional[int] = None
    reason: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "request_id": self.request_id,
            "stage": self.stage.value if self.stage is not None else None,
            "seq": self.seq,
            "reason": self.reason,
        }


class _Skip(Exception):
    pass


def _fill_coordinates(request: RequestRow, payload: Mapping[str, Any]) -> bool:
    if request.target_owner and request.target_repo:
        return False
    coordinates = repository_coordinates(payload)
    if coordinates is None:
        return False
    request.target_owner, request.target_repo = coordinates
    return True


def apply_pull_request(request: RequestRow, pr: PullRequest) -> bool:
    """Copy PR facts onto ``request``, returning whether anything changed."""
    merged = pr.is_merged or (request.pr is not None and request.pr.merged)
    merged_sha = request.merged_sha
    if pr.is_merged and pr.merge_commit_sha:
        merged_sha = pr.merge_commit_sha
    facts = PullRequestFacts(
        number=pr.number,
        url=pr.html_url,
        head_sha=pr.head.sha if pr.head is not None else None,
        open=pr.state == "open",
        # a merge is final; late deliveries must not undo it
        merged=merged,
    )
    if request.pr == facts and request.merged_sha == merged_sha:
        return False
    request.pr = facts
    request.merged_sha = merged_sha
    return True


class WebhookIngestor:
    """Turn webhook deliveries into ledger updates, at most once per delivery."""

    def __init__(
        self,
        store: RequestStore,
        stream_log: EventStreamLog,
        secret: Optional[str],
    ):
        self.store = store
        self.stream_log = stream_log
        self.secret = secret

    def record_webhook_event(
        self,
        delivery_id: Optional[str],
        raw_body: bytes,
        signature_header: Optional[str],
        event: Optional[str] = "workflow_run",
    ) -> IngestResult:
        event = event or "workflow_run"
        start = time.perf_counter()
        result = self._ingest(delivery_id, raw_body, signature_header, event)
        event_label = event if event in HANDLED_EVENTS else "other"
        webhook_counter.labels(event=event_label, outcome=result.outcome.value).inc()
        observe_webhook_processing_latency(
            event_label, result.outcome.value, time.perf_counter() - start
        )
        logger.info(
            "Webhook %s (%s): %s %s",
            delivery_id,
            event,
            result.outcome.value,
            result.reason or result.request_id or "",
        )
        return result

    def _ingest(
        self,
        delivery_id: Optional[str],
        raw_body: bytes,
        signature_header: Optional[str],
        event: str,
    ) -> IngestResult:
        try:
            verify_signature(raw_body, signature_header, self.secret)
        except RejectedSignature as e:
            signature_rejected_counter.inc()
            logger.warning("Rejected webhook %s: %s", delivery_id, e)
            return IngestResult(IngestOutcome.rejected, reason=str(e))

        if not delivery_id:
            return IngestResult(IngestOutcome.rejected, reason="missing delivery id")

        try:
            self._ensure_new(delivery_id)
        except DuplicateDelivery:
            return IngestResult(IngestOutcome.duplicate, reason="already processed")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            return IngestResult(IngestOutcome.rejected, reason="invalid json body")
        if not isinstance(payload, dict):
            return IngestResult(IngestOutcome.rejected, reason="invalid json body")

        try:
            request_id, stage, mutate = self._plan_update(event, payload)
            request, changed = self.store.update_request(
                request_id, mutate, attempts=UPDATE_ATTEMPTS
            )
        except _Skip as e:
            return self._skip(delivery_id, event, reason=str(e))
        except (UnclassifiedWorkflow, IncompleteFacts) as e:
            logger.info("Ignoring %s delivery %s: %s", event, delivery_id, e)
            return self._skip(delivery_id, event, reason=str(e))
        except RequestNotFound:
            return self._skip(
                delivery_id, event, reason="unknown request", request_id=request_id
            )
        except VersionConflict as e:
            # still racing after retries; acknowledged without a delivery record
            logger.warning("Concurrent update while ingesting %s: %s", delivery_id, e)
            return IngestResult(
                IngestOutcome.skipped,
                request_id=request_id,
                stage=stage,
                reason="version conflict",
            )

        if not changed:
            return self._skip(
                delivery_id, event, reason="no change", request_id=request.id, stage=stage
            )

        self.store.record_delivery(delivery_id, event)
        seq = self.stream_log.append(request.id, event)
        return IngestResult(
            IngestOutcome.accepted, request_id=request.id, stage=stage, seq=seq
        )

    def _ensure_new(self, delivery_id: str) -> None:
        if self.store.has_delivery(delivery_id):
            raise DuplicateDelivery(delivery_id)

    def _skip(
        self,
        delivery_id: str,
        event: str,
        *,
        reason: str,
        request_id: Optional[str] = None,
        stage: Optional[Stage] = None,
    ) -> IngestResult:
        self.store.record_delivery(delivery_id, event)
        return IngestResult(
            IngestOutcome.skipped, request_id=request_id, stage=stage, reason=reason
        )

    def _plan_update(
        self, event: str, payload: Mapping[str, Any]
    ) -> Tuple[str, Optional[Stage], Mutation]:
        if event == "workflow_run":
            return self._workflow_run_update(payload)
        if event == "pull_request":
            return self._pull_request_update(payload)
        if event == "pull_request_review":
            return self._review_update(payload)
        raise _Skip(f"unhandled event {event}")

    def _workflow_run_update(
        self, payload: Mapping[str, Any]
    ) -> Tuple[str, Optional[Stage], Mutation]:
        try:
            run = WorkflowRunEvent.model_validate(payload).workflow_run
        except pydantic.ValidationError as e:
            raise IncompleteFacts(f"workflow_run payload: {e.error_count()} errors")

        kind = classify_workflow_run(run.name, run.display_title)
        if kind is None:
            raise UnclassifiedWorkflow(f"unclassified workflow {run.name!r}")
        if kind.stage is None:
            raise _Skip(f"{kind.value} run")

        request_id = correlate_workflow_run(payload)
        if request_id is None:
            raise _Skip("uncorrelated workflow run")

        stage = kind.stage

        def mutate(request: RequestRow) -> Optional[RequestRow]:
            filled = _fill_coordinates(request, payload)
            attempt = request.runs.record_attempt(
                stage,
                run.id,
                run.status,
                run.conclusion,
                url=run.html_url,
                head_sha=run.head_sha,
                now=utcnow(),
            )
            if attempt is None and not filled:
                return None
            return request

        return request_id, stage, mutate

    def _pull_request_update(
        self, payload: Mapping[str, Any]
    ) -> Tuple[str, Optional[Stage], Mutation]:
        try:
            pr = PullRequestEvent.model_validate(payload).pull_request
        except pydantic.ValidationError as e:
            raise IncompleteFacts(f"pull_request payload: {e.error_count()} errors")

        request_id = correlate_pull_request(payload, lookup=self.store.find_request_id_by_pr)
        if request_id is None:
            raise _Skip("uncorrelated pull request")

        def mutate(request: RequestRow) -> Optional[RequestRow]:
            filled = _fill_coordinates(request, payload)
            if not apply_pull_request(request, pr) and not filled:
                return None
            return request

        return request_id, None, mutate

    def _review_update(
        self, payload: Mapping[str, Any]
    ) -> Tuple[str, Optional[Stage], Mutation]:
        try:
            parsed = PullRequestReviewEvent.model_validate(payload)
        except pydantic.ValidationError as e:
            raise IncompleteFacts(f"pull_request_review payload: {e.error_count()} errors")

        state = (parsed.review.state or "").lower()
        if parsed.action != "submitted" or state != "approved":
            raise _Skip(f"review {parsed.action}/{state or 'none'}")

        request_id = correlate_pull_request(payload, lookup=self.store.find_request_id_by_pr)
        if request_id is None:
            raise _Skip("uncorrelated review")

        approver = parsed.review.user.login if parsed.review.user is not None else None

        def mutate(request: RequestRow) -> Optional[RequestRow]:
            approvers = list(request.approval.approvers)
            if approver and approver not in approvers:
                approvers.append(approver)
            approval = ApprovalFacts(approved=True, approvers=approvers)
            if request.approval == approval:
                return None
            request.approval = approval
            return request

        return request_id, None, mutate
