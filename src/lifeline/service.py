from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
import os
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from sanic.log import logger

from lifeline.cache import CachedValue, RateLimitState
from lifeline.config import SETTINGS, Settings
from lifeline.errors import RateLimited, RequestNotFound, UpstreamUnavailable, VersionConflict
from lifeline.github.api import API
from lifeline.github.classify import (
    classify_workflow_run,
    request_branch_name,
    request_id_from_branch,
    request_id_from_text,
)
from lifeline.github.model import PullRequest, WorkflowRun
from lifeline.ids import generate_request_id
from lifeline.ingest import IngestResult, WebhookIngestor, apply_pull_request
from lifeline.lifecycle import polling
from lifeline.lifecycle.derive import derive_request_status
from lifeline.lifecycle.repair import missing_stages, needs_repair
from lifeline.lifecycle.types import CanonicalStatus, Stage, status_class
from lifeline.metric import error_counter, repair_counter
from lifeline.model import utcnow
from lifeline.storage import UPDATE_ATTEMPTS, RequestRow, RequestStore, StreamEventRow
from lifeline.stream import EventStreamLog


@dataclass
class SyncResult:
    request: Optional[RequestRow]
    status: CanonicalStatus
    repaired: bool = False
    degraded: bool = False
    rate_limited: bool = False
    error: Optional[str] = None
    poll_interval_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "request": self.request.model_dump(mode="json") if self.request else None,
            "status": self.status.value,
            "repaired": self.repaired,
            "degraded": self.degraded,
            "rate_limited": self.rate_limited,
            "error": self.error,
            "poll_interval_ms": self.poll_interval_ms,
        }


@dataclass
class RepairFacts:
    pr: Optional[PullRequest] = None
    runs: List[Tuple[Stage, WorkflowRun]] = field(default_factory=list)


def _run_belongs_to(request: RequestRow, run: WorkflowRun, candidate_shas: set) -> bool:
    request_id = request_id_from_branch(run.head_branch)
    if request_id is None:
        request_id = request_id_from_text(run.display_title) or request_id_from_text(
            run.name
        )
    if request_id is not None:
        return request_id == request.id
    return run.head_sha is not None and run.head_sha in candidate_shas


def _candidate_shas(request: RequestRow) -> set:
    shas = {request.merged_sha}
    if request.pr is not None:
        shas.add(request.pr.head_sha)
    for stage in Stage:
        for attempt in request.runs.attempts(stage):
            shas.add(attempt.head_sha)
    shas.discard(None)
    return shas


def apply_repair_facts(request: RequestRow, facts: RepairFacts) -> Optional[RequestRow]:
    changed = False
    if facts.pr is not None:
        changed = apply_pull_request(request, facts.pr) or changed
    now = utcnow()
    for stage, run in facts.runs:
        attempt = request.runs.record_attempt(
            stage,
            run.id,
            run.status,
            run.conclusion,
            url=run.html_url,
            head_sha=run.head_sha,
            now=now,
        )
        changed = changed or attempt is not None
    return request if changed else None


class ReconciliationService:
    """The operations clients and the HTTP layer use, wired to one store."""

    def __init__(
        self,
        store: RequestStore,
        settings: Settings = SETTINGS,
        *,
        rate_limits: Optional[RateLimitState] = None,
        stream_log: Optional[EventStreamLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.rate_limits = rate_limits
        self.clock = clock
        self.stream_log = stream_log or EventStreamLog(
            store, max_events=settings.STREAM_MAX_EVENTS, clock=clock
        )
        self.ingestor = WebhookIngestor(
            store, self.stream_log, settings.GITHUB_WEBHOOK_SECRET
        )

    def record_webhook_event(
        self,
        delivery_id: Optional[str],
        raw_body: bytes,
        signature_header: Optional[str],
        event: Optional[str] = "workflow_run",
    ) -> IngestResult:
        return self.ingestor.record_webhook_event(
            delivery_id, raw_body, signature_header, event
        )

    def create_request(
        self,
        *,
        environment: str,
        module: str,
        project: Optional[str] = None,
        target_owner: Optional[str] = None,
        target_repo: Optional[str] = None,
        request_id: Optional[str] = None,
        random_bytes: Callable[[int], bytes] = os.urandom,
    ) -> RequestRow:
        request_id = request_id or generate_request_id(
            environment, module, random_bytes=random_bytes
        )
        request = RequestRow(
            id=request_id,
            project=project,
            environment=environment,
            module=module,
            target_owner=target_owner,
            target_repo=target_repo,
            branch_name=request_branch_name(request_id),
        )
        self.store.put_request(request)
        self.stream_log.append(request.id, "created")
        logger.info("Created %s for %s", request, request.repo_full_name)
        return request

    def get_request(self, request_id: str) -> RequestRow:
        request = self.store.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def get_canonical_status(self, request_id: str) -> CanonicalStatus:
        return derive_request_status(self.get_request(request_id))

    def should_repair(self, request_id: str) -> bool:
        return self._needs_repair(self.get_request(request_id))

    def _needs_repair(self, request: RequestRow) -> bool:
        return needs_repair(
            request,
            stale_after=timedelta(minutes=self.settings.DESTROY_STALE_MINUTES),
            eager_destroy_discovery=self.settings.REPAIR_EAGER_DESTROY_DISCOVERY,
        )

    def get_polling_interval(
        self,
        status: CanonicalStatus | str | None,
        tab_hidden: bool = False,
        rate_limited: bool = False,
    ) -> int:
        return polling.get_polling_interval(
            status, self.settings, tab_hidden=tab_hidden, rate_limited=rate_limited
        )

    def append_stream_event(self, request_id: str, type: str) -> int:
        return self.stream_log.append(request_id, type)

    def read_stream(self, since_seq: int = 0) -> Tuple[int, List[StreamEventRow]]:
        return self.stream_log.read(since_seq)

    def record_dispatch(
        self,
        request_id: str,
        stage: Stage | str,
        run_id: Optional[int] = None,
        head_sha: Optional[str] = None,
        url: Optional[str] = None,
    ) -> RequestRow:
        """Note that a workflow for ``stage`` was dispatched.

        Dispatch usually returns before GitHub has assigned a run id; the
        attempt stays pending until a webhook or a repair attaches one.
        """
        stage = Stage(stage)

        def mutate(request: RequestRow) -> RequestRow:
            now = utcnow()
            request.runs.record_attempt(
                stage,
                run_id,
                "queued" if run_id is not None else None,
                None,
                url=url,
                head_sha=head_sha,
                now=now,
            )
            if stage == Stage.destroy and request.destroy_requested_at is None:
                request.destroy_requested_at = now
            return request

        request, _ = self.store.update_request(
            request_id, mutate, attempts=UPDATE_ATTEMPTS
        )
        self.stream_log.append(request.id, f"{stage.value}_dispatched")
        return request

    async def repair(self, request_id: str, api: Optional[API]) -> SyncResult:
        request = self.get_request(request_id)
        status = derive_request_status(request)

        if not request.target_owner or not request.target_repo:
            return SyncResult(request, status)

        if self.rate_limits is not None:
            backoff = self.rate_limits.get_backoff(
                request.target_owner, request.target_repo, now=self.clock()
            )
            if backoff is not None:
                repair_counter.labels(result="backoff").inc()
                return SyncResult(
                    request, status, degraded=True, rate_limited=True, error=backoff.reason
                )

        if api is None:
            repair_counter.labels(result="no_client").inc()
            return SyncResult(
                request, status, degraded=True, error="No GitHub client configured"
            )

        try:
            facts = await self.fetch_repair_facts(request, api)
        except RateLimited as e:
            repair_counter.labels(result="rate_limited").inc()
            if self.rate_limits is not None:
                self.rate_limits.set_backoff(
                    request.target_owner,
                    request.target_repo,
                    int(e.retry_after * 1000),
                    reason=str(e),
                    now=self.clock(),
                )
            return SyncResult(
                request, status, degraded=True, rate_limited=True, error=str(e)
            )
        except UpstreamUnavailable as e:
            repair_counter.labels(result="error").inc()
            error_counter.labels(context="repair").inc()
            logger.warning("Repair of %s failed: %s", request, e)
            return SyncResult(request, status, degraded=True, error=str(e))

        try:
            updated, changed = self.store.update_request(
                request.id,
                lambda r: apply_repair_facts(r, facts),
                attempts=UPDATE_ATTEMPTS,
            )
        except VersionConflict as e:
            repair_counter.labels(result="conflict").inc()
            logger.info("Repair of %s lost a race, retry later: %s", request, e)
            return SyncResult(request, status, degraded=True, error=str(e))

        repair_counter.labels(result="updated" if changed else "unchanged").inc()
        if changed:
            self.stream_log.append(updated.id, "repair")
        return SyncResult(updated, derive_request_status(updated), repaired=changed)

    async def fetch_repair_facts(self, request: RequestRow, api: API) -> RepairFacts:
        owner, repo = request.target_owner, request.target_repo
        facts = RepairFacts()

        if request.pr is not None and request.pr.number:
            facts.pr = await api.get_pull(owner, repo, request.pr.number)
        elif request.branch_name:
            facts.pr = await api.find_pull_request(owner, repo, request.branch_name)

        known = [
            attempt
            for attempt in (request.runs.current_attempt_strict(s) for s in Stage)
            if attempt is not None
            and attempt.run_id is not None
            and not attempt.is_completed
        ]
        refreshed = await asyncio.gather(
            *(api.get_workflow_run(owner, repo, a.run_id) for a in known)
        )
        facts.runs.extend((a.stage, run) for a, run in zip(known, refreshed))

        missing = missing_stages(
            request,
            eager_destroy_discovery=self.settings.REPAIR_EAGER_DESTROY_DISCOVERY,
        )
        if missing:
            facts.runs.extend(await self._discover_runs(request, api, missing))

        return facts

    async def _discover_runs(
        self, request: RequestRow, api: API, missing: List[Stage]
    ) -> List[Tuple[Stage, WorkflowRun]]:
        owner, repo = request.target_owner, request.target_repo
        candidate_shas = _candidate_shas(request)

        runs = []
        if request.branch_name:
            runs.extend(
                await api.list_workflow_runs(owner, repo, branch=request.branch_name)
            )
        # apply and destroy run on the base branch after merge
        if any(s != Stage.plan for s in missing):
            runs.extend(await api.list_workflow_runs(owner, repo))

        found: Dict[Stage, WorkflowRun] = {}
        for run in runs:
            kind = classify_workflow_run(run.name, run.display_title)
            stage = kind.stage if kind is not None else None
            if stage is None or stage not in missing or stage in found:
                continue
            if _run_belongs_to(request, run, candidate_shas):
                found[stage] = run
                logger.debug("Discovered %s for %s", run, request)
        return list(found.items())

    async def sync(
        self,
        request_id: str,
        api_factory: Callable[[], Optional[API]],
        *,
        force: bool = False,
        tab_hidden: bool = False,
    ) -> SyncResult:
        request = self.get_request(request_id)
        if force or self._needs_repair(request):
            result = await self.repair(request_id, api_factory())
        else:
            result = SyncResult(request, derive_request_status(request))
        result.poll_interval_ms = self.get_polling_interval(
            result.status, tab_hidden=tab_hidden, rate_limited=result.rate_limited
        )
        return result

    def status_summary(
        self, cache: Optional[CachedValue] = None, now: Optional[float] = None
    ) -> Tuple[Dict[str, Any], CachedValue]:
        now = self.clock() if now is None else now
        if cache is not None and cache.is_fresh(now):
            return cache.value, cache

        requests = self.store.list_requests(limit=1000)
        statuses = Counter(derive_request_status(r) for r in requests)
        summary = {
            "total": len(requests),
            "by_status": {s.value: n for s, n in sorted(statuses.items())},
            "by_class": dict(
                Counter(status_class(s).value for s in statuses.elements())
            ),
            "needs_repair": sum(1 for r in requests if self._needs_repair(r)),
        }
        cache = CachedValue(
            value=summary, computed_at=now, ttl=self.settings.INSIGHTS_TTL_SECONDS
        )
        return summary, cache
