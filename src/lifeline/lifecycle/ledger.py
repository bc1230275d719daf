from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Mapping, Optional, Tuple, Union

import pydantic
from sanic.log import logger

from lifeline.lifecycle.types import (
    COMPLETED_RUN_STATUS,
    FAILED_CONCLUSIONS,
    IN_PROGRESS_RUN_STATUSES,
    SUCCESS_CONCLUSION,
    Stage,
)
from lifeline.model import Model, UTCDateTime, utcnow


StaleThreshold = Union[timedelta, Mapping[str, timedelta]]


class Attempt(Model):
    stage: Stage
    attempt: int
    run_id: Optional[int] = None
    url: Optional[str] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    dispatched_at: UTCDateTime
    updated_at: UTCDateTime
    completed_at: Optional[UTCDateTime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == COMPLETED_RUN_STATUS

    @property
    def is_in_progress(self) -> bool:
        """No conclusion yet, and either an in-progress status or a known run.

        A run id without any status still counts as in flight: the provider
        created the run, only its progress is unreported.
        """
        if self.conclusion is not None or self.is_completed:
            return False
        if self.status in IN_PROGRESS_RUN_STATUSES:
            return True
        return self.run_id is not None

    @property
    def is_success(self) -> bool:
        return self.is_completed and self.conclusion == SUCCESS_CONCLUSION

    @property
    def is_failure(self) -> bool:
        return self.is_completed and self.conclusion in FAILED_CONCLUSIONS

    @property
    def has_facts(self) -> bool:
        return (
            self.run_id is not None
            or self.status is not None
            or self.conclusion is not None
        )

    def __str__(self) -> str:
        return (
            f"Attempt({self.stage}#{self.attempt}, run={self.run_id}, "
            f"{self.status}/{self.conclusion})"
        )


def _normalize(
    status: Optional[str], conclusion: Optional[str]
) -> Tuple[Optional[str], Optional[str]]:
    status = status.strip().lower() if isinstance(status, str) and status.strip() else None
    conclusion = (
        conclusion.strip().lower()
        if isinstance(conclusion, str) and conclusion.strip()
        else None
    )
    if conclusion is not None and status is None:
        status = COMPLETED_RUN_STATUS
    if conclusion is not None and status != COMPLETED_RUN_STATUS:
        logger.debug(
            "Dropping conclusion %s reported with non-final status %s",
            conclusion,
            status,
        )
        conclusion = None
    return status, conclusion


class AttemptLedger(Model):
    plan: List[Attempt] = pydantic.Field(default_factory=list)
    apply: List[Attempt] = pydantic.Field(default_factory=list)
    destroy: List[Attempt] = pydantic.Field(default_factory=list)

    def attempts(self, stage: Stage | str) -> List[Attempt]:
        return getattr(self, Stage(stage).value)

    def record_attempt(
        self,
        stage: Stage | str,
        run_id: Optional[int],
        status: Optional[str],
        conclusion: Optional[str],
        *,
        url: Optional[str] = None,
        head_sha: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Attempt]:
        """Upsert an attempt for ``stage`` and return it, or None if nothing changed.

        Matching order: the attempt carrying ``run_id``, then a pending attempt
        of the same stage still waiting for its run id, otherwise a new attempt
        is appended. A ``run_id`` of None always records a fresh dispatch.
        """
        stage = Stage(stage)
        now = now or utcnow()
        status, conclusion = _normalize(status, conclusion)
        attempts = self.attempts(stage)

        index = None
        if run_id is not None:
            index = self._index_by_run_id(attempts, run_id)
            if index is None:
                index = self._pending_index(attempts, head_sha)

        if index is None:
            attempt = Attempt(
                stage=stage,
                attempt=max((a.attempt for a in attempts), default=0) + 1,
                run_id=run_id,
                url=url,
                head_sha=head_sha,
                status=status,
                conclusion=conclusion,
                dispatched_at=now,
                updated_at=now,
                completed_at=now if status == COMPLETED_RUN_STATUS else None,
            )
            attempts.append(attempt)
            logger.debug("Recorded new %s", attempt)
            return attempt

        existing = attempts[index]
        updated = self._merge(
            existing,
            run_id=run_id,
            status=status,
            conclusion=conclusion,
            url=url,
            head_sha=head_sha,
            now=now,
        )
        if updated is None:
            return None
        attempts[index] = updated
        logger.debug("Updated %s -> %s", existing, updated)
        return updated

    def current_attempt_strict(self, stage: Stage | str) -> Optional[Attempt]:
        """The newest dispatched or observed attempt of ``stage``, never another stage's.

        Late updates to an older attempt never make it current again.
        """
        attempts = self.attempts(stage)
        if not attempts:
            return None
        return max(attempts, key=lambda a: a.attempt)

    def has_facts(self, stage: Stage | str) -> bool:
        attempt = self.current_attempt_strict(stage)
        return attempt is not None and attempt.has_facts

    def is_stale(
        self, stage: Stage | str, threshold: StaleThreshold, now: Optional[datetime] = None
    ) -> bool:
        attempt = self.current_attempt_strict(stage)
        if attempt is None or not attempt.is_in_progress:
            return False
        if isinstance(threshold, timedelta):
            limit = threshold
        else:
            limit = threshold.get(attempt.status or "*", threshold.get("*"))
            if limit is None:
                return False
        now = now or utcnow()
        return now - attempt.updated_at > limit

    def attempt_by_run_id(self, run_id: int) -> Optional[Tuple[Stage, Attempt]]:
        for stage in Stage:
            for attempt in self.attempts(stage):
                if attempt.run_id == run_id:
                    return stage, attempt
        return None

    @staticmethod
    def _index_by_run_id(attempts: List[Attempt], run_id: int) -> Optional[int]:
        for index, attempt in enumerate(attempts):
            if attempt.run_id == run_id:
                return index
        return None

    @staticmethod
    def _pending_index(attempts: List[Attempt], head_sha: Optional[str]) -> Optional[int]:
        pending = [
            index
            for index, attempt in enumerate(attempts)
            if attempt.run_id is None and not attempt.is_completed
        ]
        if not pending:
            return None
        if head_sha is not None:
            matching = [i for i in pending if attempts[i].head_sha == head_sha]
            if matching:
                return matching[-1]
            pending = [i for i in pending if attempts[i].head_sha is None]
            if not pending:
                return None
        return pending[-1]

    @staticmethod
    def _merge(
        existing: Attempt,
        *,
        run_id: Optional[int],
        status: Optional[str],
        conclusion: Optional[str],
        url: Optional[str],
        head_sha: Optional[str],
        now: datetime,
    ) -> Optional[Attempt]:
        next_status = status if status is not None else existing.status
        if existing.is_completed and next_status != COMPLETED_RUN_STATUS:
            logger.debug("Ignoring regression of %s to %s", existing, next_status)
            return None

        next_conclusion = conclusion if conclusion is not None else existing.conclusion
        if next_status != COMPLETED_RUN_STATUS:
            next_conclusion = None

        fields = {
            "run_id": existing.run_id if existing.run_id is not None else run_id,
            "status": next_status,
            "conclusion": next_conclusion,
            "url": url or existing.url,
            "head_sha": head_sha or existing.head_sha,
            "completed_at": existing.completed_at
            or (now if next_status == COMPLETED_RUN_STATUS else None),
        }
        if all(getattr(existing, key) == value for key, value in fields.items()):
            return None
        fields["updated_at"] = now
        return existing.model_copy(update=fields)
