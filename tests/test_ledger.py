from datetime import datetime, timedelta, timezone

from lifeline.lifecycle.ledger import AttemptLedger
from lifeline.lifecycle.types import Stage

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def test_record_attempt_appends_numbered_attempts():
    ledger = AttemptLedger()
    first = ledger.record_attempt(Stage.plan, 11, "queued", None, now=T0)
    assert first.attempt == 1
    assert first.run_id == 11
    assert first.is_in_progress

    second = ledger.record_attempt(
        Stage.plan, 12, "queued", None, now=T0 + timedelta(minutes=1)
    )
    assert second.attempt == 2
    assert len(ledger.plan) == 2


def test_current_attempt_strict_never_falls_back_to_other_stage():
    ledger = AttemptLedger()
    ledger.record_attempt("plan", 1, "completed", "success", now=T0)

    assert ledger.current_attempt_strict(Stage.plan).run_id == 1
    assert ledger.current_attempt_strict(Stage.apply) is None
    assert ledger.current_attempt_strict(Stage.destroy) is None


def test_late_update_of_older_run_keeps_retry_current():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.plan, 1, "in_progress", None, now=T0)
    ledger.record_attempt(
        Stage.plan, 2, "in_progress", None, now=T0 + timedelta(minutes=1)
    )

    late = ledger.record_attempt(
        Stage.plan, 1, "completed", "cancelled", now=T0 + timedelta(minutes=2)
    )

    assert late.attempt == 1
    assert late.is_failure
    current = ledger.current_attempt_strict(Stage.plan)
    assert current.run_id == 2
    assert current.is_in_progress


def test_retry_after_terminal_attempt_becomes_current():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.apply, 20, "completed", "failure", now=T0)
    ledger.record_attempt(
        Stage.apply, 21, "in_progress", None, now=T0 + timedelta(minutes=2)
    )

    current = ledger.current_attempt_strict(Stage.apply)
    assert current.run_id == 21
    assert current.attempt == 2
    assert current.is_in_progress


def test_completed_attempt_does_not_regress():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.plan, 5, "completed", "success", now=T0)

    result = ledger.record_attempt(
        Stage.plan, 5, "in_progress", None, now=T0 + timedelta(minutes=1)
    )

    assert result is None
    current = ledger.current_attempt_strict(Stage.plan)
    assert current.status == "completed"
    assert current.conclusion == "success"
    assert current.updated_at == T0


def test_identical_update_is_a_noop():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.plan, 5, "in_progress", None, now=T0)
    assert (
        ledger.record_attempt(
            Stage.plan, 5, "in_progress", None, now=T0 + timedelta(seconds=30)
        )
        is None
    )


def test_conclusion_without_status_means_completed():
    ledger = AttemptLedger()
    attempt = ledger.record_attempt(Stage.apply, 7, None, "success", now=T0)

    assert attempt.status == "completed"
    assert attempt.is_success
    assert attempt.completed_at == T0


def test_conclusion_is_dropped_while_not_completed():
    ledger = AttemptLedger()
    attempt = ledger.record_attempt(Stage.plan, 8, "in_progress", "success", now=T0)

    assert attempt.conclusion is None
    assert attempt.is_in_progress
    assert not attempt.is_success


def test_status_and_conclusion_are_normalized():
    ledger = AttemptLedger()
    attempt = ledger.record_attempt(Stage.plan, 9, " COMPLETED ", "Failure", now=T0)
    assert attempt.status == "completed"
    assert attempt.conclusion == "failure"
    assert attempt.is_failure


def test_run_id_attaches_to_pending_dispatch():
    ledger = AttemptLedger()
    dispatched = ledger.record_attempt(
        Stage.apply, None, None, None, head_sha="a" * 40, now=T0
    )
    assert dispatched.run_id is None
    assert not dispatched.is_in_progress
    assert not ledger.has_facts(Stage.apply)

    ledger.record_attempt(
        Stage.apply,
        77,
        "in_progress",
        None,
        head_sha="a" * 40,
        now=T0 + timedelta(seconds=20),
    )

    assert len(ledger.apply) == 1
    current = ledger.current_attempt_strict(Stage.apply)
    assert current.run_id == 77
    assert current.dispatched_at == T0
    assert ledger.has_facts(Stage.apply)


def test_run_id_with_other_head_sha_does_not_attach():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.apply, None, None, None, head_sha="a" * 40, now=T0)
    ledger.record_attempt(
        Stage.apply, 78, "queued", None, head_sha="b" * 40, now=T0 + timedelta(seconds=5)
    )

    assert len(ledger.apply) == 2
    assert ledger.apply[0].run_id is None


def test_is_stale_with_timedelta_and_mapping():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.destroy, 3, "destroying", None, now=T0)

    assert not ledger.is_stale(
        Stage.destroy, timedelta(minutes=15), now=T0 + timedelta(minutes=10)
    )
    assert ledger.is_stale(
        Stage.destroy, timedelta(minutes=15), now=T0 + timedelta(minutes=16)
    )
    assert ledger.is_stale(
        Stage.destroy, {"*": timedelta(minutes=5)}, now=T0 + timedelta(minutes=10)
    )
    assert not ledger.is_stale(
        Stage.destroy,
        {"destroying": timedelta(minutes=30), "*": timedelta(minutes=5)},
        now=T0 + timedelta(minutes=10),
    )


def test_completed_attempt_is_never_stale():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.destroy, 3, "completed", "success", now=T0)
    assert not ledger.is_stale(Stage.destroy, timedelta(minutes=1), now=T0 + timedelta(days=1))
    assert not ledger.is_stale(Stage.apply, timedelta(minutes=1), now=T0)


def test_attempt_by_run_id():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.plan, 1, "completed", "success", now=T0)
    ledger.record_attempt(Stage.apply, 2, "queued", None, now=T0)

    stage, attempt = ledger.attempt_by_run_id(2)
    assert stage is Stage.apply
    assert attempt.status == "queued"
    assert ledger.attempt_by_run_id(99) is None


def test_ledger_json_round_trip():
    ledger = AttemptLedger()
    ledger.record_attempt(Stage.plan, 1, "completed", "success", now=T0)
    ledger.record_attempt(Stage.apply, None, None, None, head_sha="c" * 40, now=T0)

    restored = AttemptLedger.model_validate_json(ledger.model_dump_json())

    assert restored.model_dump() == ledger.model_dump()
    assert restored.current_attempt_strict(Stage.plan).updated_at == T0
