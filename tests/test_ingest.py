import hashlib
import hmac
import json

import pytest

from lifeline.errors import VersionConflict
from lifeline.ingest import IngestOutcome, WebhookIngestor
from lifeline.lifecycle.derive import derive_request_status
from lifeline.lifecycle.types import CanonicalStatus, Stage
from lifeline.metric import signature_rejected_counter, webhook_counter
from lifeline.storage import UPDATE_ATTEMPTS, RequestRow, RequestStore
from lifeline.stream import EventStreamLog

SECRET = "webhook-secret"
REQUEST_ID = "req_dev_s3_abcdef"
REPOSITORY = {"name": "infra", "full_name": "org/infra", "owner": {"login": "org"}}


def sign(body: bytes) -> str:
    return "sha256=" + hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


def workflow_run_payload(
    name="Terraform Plan",
    status="completed",
    conclusion="success",
    run_id=101,
    head_branch=f"request/{REQUEST_ID}",
    display_title=None,
):
    return {
        "action": "completed",
        "repository": REPOSITORY,
        "workflow_run": {
            "id": run_id,
            "name": name,
            "display_title": display_title,
            "head_branch": head_branch,
            "head_sha": "a" * 40,
            "status": status,
            "conclusion": conclusion,
            "html_url": f"https://github.com/org/infra/actions/runs/{run_id}",
        },
    }


def pull_request_payload(action="closed", state="closed", merged=True, number=7):
    return {
        "action": action,
        "repository": REPOSITORY,
        "pull_request": {
            "number": number,
            "state": state,
            "title": f"Provision {REQUEST_ID}",
            "merged": merged,
            "merge_commit_sha": "f" * 40 if merged else None,
            "html_url": f"https://github.com/org/infra/pull/{number}",
            "head": {"ref": f"request/{REQUEST_ID}", "sha": "a" * 40},
        },
    }


@pytest.fixture
def store(tmp_path):
    store = RequestStore(tmp_path / "lifeline.sqlite3")
    store.initialize()
    store.put_request(
        RequestRow(
            id=REQUEST_ID,
            target_owner="org",
            target_repo="infra",
            branch_name=f"request/{REQUEST_ID}",
        )
    )
    return store


@pytest.fixture
def ingestor(store):
    return WebhookIngestor(store, EventStreamLog(store, clock=lambda: 1000.0), SECRET)


def deliver(ingestor, delivery_id, payload, event="workflow_run"):
    body = encode(payload)
    return ingestor.record_webhook_event(delivery_id, body, sign(body), event)


def test_plan_success_moves_created_to_plan_ready(store, ingestor):
    assert derive_request_status(store.get_request(REQUEST_ID)) == CanonicalStatus.created

    result = deliver(ingestor, "d-1", workflow_run_payload())

    assert result.outcome is IngestOutcome.accepted
    assert result.request_id == REQUEST_ID
    assert result.stage is Stage.plan
    assert result.seq == 1_000_000
    request = store.get_request(REQUEST_ID)
    assert derive_request_status(request) == CanonicalStatus.plan_ready
    assert request.runs.current_attempt_strict(Stage.plan).run_id == 101
    assert store.has_delivery("d-1")


def test_redelivery_is_duplicate(store, ingestor):
    deliver(ingestor, "d-1", workflow_run_payload(status="in_progress", conclusion=None))
    version = store.get_request(REQUEST_ID).version

    result = deliver(ingestor, "d-1", workflow_run_payload())

    assert result.outcome is IngestOutcome.duplicate
    request = store.get_request(REQUEST_ID)
    assert request.version == version
    assert derive_request_status(request) == CanonicalStatus.planning
    assert len(ingestor.stream_log.read()[1]) == 1


def test_bad_signature_is_rejected_without_side_effects(store, ingestor):
    body = encode(workflow_run_payload())
    before = signature_rejected_counter._value.get()

    result = ingestor.record_webhook_event("d-1", body + b" ", sign(body))

    assert result.outcome is IngestOutcome.rejected
    assert signature_rejected_counter._value.get() == before + 1
    assert not store.has_delivery("d-1")
    assert store.get_request(REQUEST_ID).version == 0


def test_missing_delivery_id_is_rejected(store, ingestor):
    result = deliver(ingestor, None, workflow_run_payload())
    assert result.outcome is IngestOutcome.rejected
    assert store.get_request(REQUEST_ID).version == 0


def test_invalid_json_is_rejected(store, ingestor):
    body = b"{not json"
    result = ingestor.record_webhook_event("d-1", body, sign(body))
    assert result.outcome is IngestOutcome.rejected
    assert not store.has_delivery("d-1")


@pytest.mark.parametrize(
    "payload, reason",
    [
        (workflow_run_payload(name="Lint"), "unclassified"),
        (workflow_run_payload(name="Cleanup"), "cleanup"),
        (workflow_run_payload(name="Drift Plan"), "drift_plan"),
        (workflow_run_payload(head_branch="main"), "uncorrelated"),
        ({"workflow_run": {"name": "Plan"}}, "workflow_run payload"),
    ],
)
def test_ignored_runs_are_skipped_but_recorded(store, ingestor, payload, reason):
    result = deliver(ingestor, "d-1", payload)

    assert result.outcome is IngestOutcome.skipped
    assert reason in result.reason
    assert store.has_delivery("d-1")
    assert store.get_request(REQUEST_ID).version == 0


def test_unknown_request_is_skipped(store, ingestor):
    payload = workflow_run_payload(head_branch="request/req_dev_s3_zzzzzz")
    result = deliver(ingestor, "d-1", payload)
    assert result.outcome is IngestOutcome.skipped
    assert result.reason == "unknown request"
    assert result.request_id == "req_dev_s3_zzzzzz"


def test_unhandled_event_is_skipped(store, ingestor):
    result = deliver(ingestor, "d-1", {"zen": "Keep it simple"}, event="ping")
    assert result.outcome is IngestOutcome.skipped
    assert store.has_delivery("d-1")


def test_same_facts_under_new_delivery_is_a_noop(store, ingestor):
    deliver(ingestor, "d-1", workflow_run_payload())
    result = deliver(ingestor, "d-2", workflow_run_payload())

    assert result.outcome is IngestOutcome.skipped
    assert result.reason == "no change"
    assert store.has_delivery("d-2")


def test_late_in_progress_does_not_regress(store, ingestor):
    deliver(ingestor, "d-1", workflow_run_payload())
    result = deliver(
        ingestor, "d-2", workflow_run_payload(status="in_progress", conclusion=None)
    )

    assert result.outcome is IngestOutcome.skipped
    assert derive_request_status(store.get_request(REQUEST_ID)) == (
        CanonicalStatus.plan_ready
    )


def test_pull_request_merge_and_apply(store, ingestor):
    deliver(ingestor, "d-1", workflow_run_payload())
    result = deliver(ingestor, "d-2", pull_request_payload(), event="pull_request")

    assert result.outcome is IngestOutcome.accepted
    request = store.get_request(REQUEST_ID)
    assert request.pr.number == 7
    assert request.merged_sha == "f" * 40
    assert derive_request_status(request) == CanonicalStatus.merged

    apply_run = workflow_run_payload(
        name="Terraform Apply",
        status="in_progress",
        conclusion=None,
        run_id=202,
        head_branch="main",
        display_title=f"Apply {REQUEST_ID}",
    )
    assert deliver(ingestor, "d-3", apply_run).outcome is IngestOutcome.accepted
    assert derive_request_status(store.get_request(REQUEST_ID)) == (
        CanonicalStatus.applying
    )


def test_merge_is_not_undone_by_late_delivery(store, ingestor):
    deliver(ingestor, "d-1", pull_request_payload(), event="pull_request")
    deliver(
        ingestor,
        "d-2",
        pull_request_payload(action="synchronize", state="open", merged=False),
        event="pull_request",
    )

    request = store.get_request(REQUEST_ID)
    assert request.pr.merged
    assert request.merged_sha == "f" * 40


def test_pull_request_found_by_number(store, ingestor):
    deliver(ingestor, "d-1", pull_request_payload(), event="pull_request")

    payload = pull_request_payload(action="edited")
    payload["pull_request"]["title"] = "Renamed"
    payload["pull_request"]["head"]["ref"] = "feature"
    payload["pull_request"]["html_url"] = "https://github.com/org/infra/pull/7#new"

    result = deliver(ingestor, "d-2", payload, event="pull_request")
    assert result.outcome is IngestOutcome.accepted
    assert result.request_id == REQUEST_ID


def test_review_approval(store, ingestor):
    deliver(ingestor, "d-1", workflow_run_payload())
    payload = pull_request_payload(action="submitted", state="open", merged=False)
    payload["review"] = {"state": "APPROVED", "user": {"login": "alice"}}

    result = deliver(ingestor, "d-2", payload, event="pull_request_review")

    assert result.outcome is IngestOutcome.accepted
    request = store.get_request(REQUEST_ID)
    assert request.approval.approvers == ["alice"]
    assert derive_request_status(request) == CanonicalStatus.approved


def test_comment_review_is_skipped(store, ingestor):
    payload = pull_request_payload(action="submitted", state="open", merged=False)
    payload["review"] = {"state": "commented", "user": {"login": "bob"}}
    result = deliver(ingestor, "d-1", payload, event="pull_request_review")
    assert result.outcome is IngestOutcome.skipped


def test_outcome_is_counted(store, ingestor):
    labels = {"event": "workflow_run", "outcome": "accepted"}
    before = webhook_counter.labels(**labels)._value.get()
    deliver(ingestor, "d-1", workflow_run_payload())
    assert webhook_counter.labels(**labels)._value.get() == before + 1


def test_coordinates_are_learned_from_payload(store, ingestor):
    store.put_request(RequestRow(id="req_dev_ec2_bbbbbb"))
    payload = workflow_run_payload(head_branch="request/req_dev_ec2_bbbbbb")

    assert deliver(ingestor, "d-1", payload).outcome is IngestOutcome.accepted
    request = store.get_request("req_dev_ec2_bbbbbb")
    assert request.repo_full_name == "org/infra"


class FlakyStore(RequestStore):
    """Loses the compare-and-swap race a fixed number of times."""

    def __init__(self, db_path, conflicts):
        super().__init__(db_path)
        self.conflicts = conflicts

    def put_request(self, request, expected_version=None):
        if expected_version is not None and self.conflicts > 0:
            self.conflicts -= 1
            raise VersionConflict(f"{request.id} changed underneath")
        return super().put_request(request, expected_version=expected_version)


def _flaky_ingestor(tmp_path, conflicts):
    store = FlakyStore(tmp_path / "flaky.sqlite3", conflicts)
    store.initialize()
    store.put_request(
        RequestRow(
            id=REQUEST_ID,
            target_owner="org",
            target_repo="infra",
            branch_name=f"request/{REQUEST_ID}",
        )
    )
    return store, WebhookIngestor(store, EventStreamLog(store), SECRET)


def test_conflicting_write_is_retried(tmp_path):
    store, ingestor = _flaky_ingestor(tmp_path, conflicts=1)
    apply_run = workflow_run_payload(
        name="Terraform Apply",
        run_id=303,
        head_branch="main",
        display_title=f"Apply {REQUEST_ID}",
    )

    result = deliver(ingestor, "d-1", apply_run)

    assert result.outcome is IngestOutcome.accepted
    assert result.stage is Stage.apply
    request = store.get_request(REQUEST_ID)
    assert request.runs.current_attempt_strict(Stage.apply).run_id == 303
    assert derive_request_status(request) == CanonicalStatus.applied
    assert store.has_delivery("d-1")


def test_persistent_conflict_leaves_delivery_unrecorded(tmp_path):
    store, ingestor = _flaky_ingestor(tmp_path, conflicts=UPDATE_ATTEMPTS)

    result = deliver(ingestor, "d-1", workflow_run_payload())

    assert result.outcome is IngestOutcome.skipped
    assert result.reason == "version conflict"
    assert not store.has_delivery("d-1")
    assert store.get_request(REQUEST_ID).runs.plan == []
