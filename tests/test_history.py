from datetime import timedelta

import pytest
from sqlmodel import select

from vcheck.models import CheckResult, CheckStatus, HealthStatus
from vcheck.services.history import HistoryService
from vcheck.utils.time import utcnow


@pytest.fixture
def history(db_session):
    return HistoryService(db_session)


@pytest.fixture
def add_result(db_session):
    def _add(status=CheckStatus.SUCCESS, host_id=1, check_id=1, age=timedelta(minutes=5)) -> CheckResult:
        result = CheckResult(
            host_id=host_id, check_definition_id=check_id, status=status, executed_at=utcnow() - age
        )
        db_session.add(result)
        db_session.commit()
        db_session.refresh(result)
        return result
    return _add


def test_recent_results_are_filtered_and_paginated(history, add_result):
    for i in range(5):
        add_result(check_id=1, age=timedelta(minutes=i))
    add_result(status=CheckStatus.FAILED, check_id=2)
    add_result(host_id=2)

    results, total = history.get_recent_results(limit=2, host_id=1, check_definition_id=1)
    assert total == 5
    assert len(results) == 2
    assert results[0].executed_at >= results[1].executed_at

    failed, failed_total = history.get_recent_results(status="failed")
    assert failed_total == 1
    assert failed[0].check_definition_id == 2

    _, all_total = history.get_recent_results(status="all")
    assert all_total == 7


def test_latest_results_for_host(history, add_result):
    add_result(check_id=1, status=CheckStatus.FAILED, age=timedelta(hours=2))
    newest = add_result(check_id=1, status=CheckStatus.SUCCESS, age=timedelta(minutes=1))
    other = add_result(check_id=2)

    latest = history.get_latest_results_for_host(1)

    assert {r.id for r in latest} == {newest.id, other.id}


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([CheckStatus.SUCCESS, CheckStatus.SUCCESS], HealthStatus.HEALTHY),
        ([CheckStatus.SUCCESS, CheckStatus.WARNING], HealthStatus.WARNING),
        ([CheckStatus.WARNING, CheckStatus.CRITICAL], HealthStatus.CRITICAL),
        ([CheckStatus.SUCCESS, CheckStatus.FAILED], HealthStatus.CRITICAL),
        ([CheckStatus.TIMEOUT], HealthStatus.CRITICAL),
        ([CheckStatus.SUCCESS, CheckStatus.SKIPPED], HealthStatus.UNKNOWN),
    ],
)
def test_host_health_rollup(history, add_result, statuses, expected):
    for status in statuses:
        add_result(status=status)

    assert history.get_host_health(1) == expected


def test_host_health_without_results(history):
    assert history.get_host_health(42) == HealthStatus.UNKNOWN


def test_host_health_stale(history, add_result):
    add_result(status=CheckStatus.SUCCESS, age=timedelta(hours=30))

    assert history.get_host_health(1) == HealthStatus.STALE


def test_retention_by_age(history, add_result, db_session, monkeypatch):
    monkeypatch.setattr("vcheck.services.history.settings.RESULT_RETENTION_DAYS", 7)
    old = add_result(age=timedelta(days=10))
    fresh = add_result(age=timedelta(days=1))

    history.apply_retention_policies()

    remaining = {r.id for r in db_session.exec(select(CheckResult)).all()}
    assert remaining == {fresh.id}
    assert old.id not in remaining


def test_retention_by_count_per_check(history, add_result, db_session, monkeypatch):
    monkeypatch.setattr("vcheck.services.history.settings.MAX_RESULTS_PER_CHECK", 3)
    kept = [add_result(check_id=1, age=timedelta(minutes=i)) for i in range(3)]
    for i in range(3, 6):
        add_result(check_id=1, age=timedelta(minutes=i))
    other = add_result(check_id=2)

    history.apply_retention_policies(check_definition_id=1)

    remaining = {r.id for r in db_session.exec(select(CheckResult)).all()}
    assert remaining == {r.id for r in kept} | {other.id}


def test_unknown_status_filter_is_rejected(history):
    with pytest.raises(ValueError, match="Unknown status filter: bogus"):
        history.get_recent_results(status="bogus")


def test_host_health_accepts_naive_reference_time(history, add_result):
    add_result(status=CheckStatus.SUCCESS, age=timedelta(hours=1))

    naive_now = utcnow().replace(tzinfo=None)

    assert history.get_host_health(1, now=naive_now) == HealthStatus.HEALTHY
    assert history.get_host_health(1, now=naive_now + timedelta(days=2)) == HealthStatus.STALE


def test_retention_prunes_results_without_check(history, add_result, db_session, monkeypatch):
    monkeypatch.setattr("vcheck.services.history.settings.RESULT_RETENTION_DAYS", 7)
    add_result(check_id=None, age=timedelta(days=10))
    fresh = add_result(check_id=None, age=timedelta(hours=1))

    history.apply_retention_policies()

    assert {r.id for r in db_session.exec(select(CheckResult)).all()} == {fresh.id}
