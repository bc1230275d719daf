from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from lifeline.lifecycle.derive import derive_lifecycle_status, derive_request_status
from lifeline.lifecycle.ledger import AttemptLedger
from lifeline.lifecycle.types import CanonicalStatus, Stage
from lifeline.storage import ApprovalFacts, PullRequestFacts, RequestRow

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def make_ledger(*records):
    ledger = AttemptLedger()
    for offset, (stage, run_id, status, conclusion) in enumerate(records):
        ledger.record_attempt(
            stage, run_id, status, conclusion, now=T0 + timedelta(minutes=offset)
        )
    return ledger


def test_new_request_is_created():
    assert derive_lifecycle_status(None) == CanonicalStatus.created
    assert derive_lifecycle_status(AttemptLedger()) == CanonicalStatus.created
    assert derive_request_status(None) == CanonicalStatus.created


@pytest.mark.parametrize(
    "records, approved, expected",
    [
        ([(Stage.plan, 1, "in_progress", None)], False, CanonicalStatus.planning),
        ([(Stage.plan, 1, "completed", "success")], False, CanonicalStatus.plan_ready),
        ([(Stage.plan, 1, "completed", "success")], True, CanonicalStatus.approved),
        ([(Stage.plan, 1, "completed", "failure")], False, CanonicalStatus.plan_failed),
        ([(Stage.plan, 1, "completed", "cancelled")], False, CanonicalStatus.plan_failed),
        ([(Stage.plan, 1, "completed", "skipped")], False, CanonicalStatus.unknown),
    ],
)
def test_plan_stage(records, approved, expected):
    ledger = make_ledger(*records)
    assert derive_lifecycle_status(ledger, pr_number=3, approved=approved) == expected


def test_plan_retry_uses_latest_attempt():
    ledger = make_ledger(
        (Stage.plan, 1, "completed", "failure"),
        (Stage.plan, 2, "completed", "success"),
    )
    assert derive_lifecycle_status(ledger, pr_number=3) == CanonicalStatus.plan_ready


def test_merged_pull_request_outranks_plan():
    ledger = make_ledger((Stage.plan, 1, "completed", "success"))
    assert (
        derive_lifecycle_status(ledger, pr_number=3, pr_open=False, pr_merged=True)
        == CanonicalStatus.merged
    )
    assert (
        derive_lifecycle_status(ledger, pr_number=3, merged_sha="f" * 40)
        == CanonicalStatus.merged
    )


@pytest.mark.parametrize(
    "status, conclusion, expected",
    [
        ("completed", "failure", CanonicalStatus.plan_failed),
        ("completed", "cancelled", CanonicalStatus.plan_failed),
        ("in_progress", None, CanonicalStatus.planning),
    ],
)
def test_unfinished_plan_outranks_merge(status, conclusion, expected):
    ledger = make_ledger((Stage.plan, 1, status, conclusion))
    assert derive_lifecycle_status(ledger, pr_number=3, pr_merged=True) == expected
    assert derive_lifecycle_status(ledger, merged_sha="f" * 40) == expected


@pytest.mark.parametrize(
    "status, conclusion, expected",
    [
        ("queued", None, CanonicalStatus.applying),
        ("completed", "success", CanonicalStatus.applied),
        ("completed", "timed_out", CanonicalStatus.apply_failed),
    ],
)
def test_apply_stage(status, conclusion, expected):
    ledger = make_ledger(
        (Stage.plan, 1, "completed", "success"),
        (Stage.apply, 2, status, conclusion),
    )
    assert derive_lifecycle_status(ledger, pr_number=3, pr_merged=True) == expected


@pytest.mark.parametrize(
    "status, conclusion, expected",
    [
        ("destroying", None, CanonicalStatus.destroying),
        ("completed", "success", CanonicalStatus.destroyed),
        ("completed", "failure", CanonicalStatus.destroy_failed),
    ],
)
def test_destroy_stage_outranks_apply(status, conclusion, expected):
    ledger = make_ledger(
        (Stage.plan, 1, "completed", "success"),
        (Stage.apply, 2, "completed", "success"),
        (Stage.destroy, 3, status, conclusion),
    )
    assert derive_lifecycle_status(ledger, pr_number=3, pr_merged=True) == expected


def test_run_id_without_status_is_in_flight():
    ledger = make_ledger((Stage.apply, 9, None, None))
    assert derive_lifecycle_status(ledger, pr_merged=True) == CanonicalStatus.applying


def test_dispatch_without_facts_is_unknown():
    ledger = make_ledger(
        (Stage.plan, 1, "completed", "success"),
        (Stage.apply, None, None, None),
    )
    assert derive_lifecycle_status(ledger, pr_merged=True) == CanonicalStatus.unknown


def test_pull_request_without_plan():
    assert derive_lifecycle_status(None, pr_number=4, pr_open=True) == (
        CanonicalStatus.planning
    )
    assert derive_lifecycle_status(None, pr_number=4, pr_open=False) == (
        CanonicalStatus.unknown
    )


def test_derive_request_status_reads_request_like_objects():
    request = SimpleNamespace(
        pr=SimpleNamespace(number=5, open=True, merged=False),
        approval=SimpleNamespace(approved=True),
        runs=make_ledger((Stage.plan, 1, "completed", "success")),
        merged_sha=None,
    )
    assert derive_request_status(request) == CanonicalStatus.approved


def test_status_survives_serialization():
    request = RequestRow(
        id="req_dev_s3_abcdef",
        target_owner="org",
        target_repo="infra",
        pr=PullRequestFacts(number=5, open=False, merged=True),
        merged_sha="f" * 40,
        approval=ApprovalFacts(approved=True, approvers=["alice"]),
        runs=make_ledger(
            (Stage.plan, 1, "completed", "success"),
            (Stage.apply, 2, "in_progress", None),
        ),
    )
    restored = RequestRow.model_validate_json(request.model_dump_json())

    assert derive_request_status(request) == CanonicalStatus.applying
    assert derive_request_status(restored) == derive_request_status(request)
