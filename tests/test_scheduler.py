import pytest
from sqlmodel import Session, select

from vcheck.models import CheckResult, CheckStatus, Host, HostType
from vcheck.services.execution import CheckExecutionService
from vcheck.services.scheduler import SchedulerService, execute_scheduled_checks, parse_cluster_key

from conftest import FakeEngine


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send_run_notification(self, schedule_name, summary):
        self.sent.append((schedule_name, summary))
        return True


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def service(store, engine):
    return CheckExecutionService({"PowerCLI": engine}, store)


@pytest.mark.asyncio
async def test_scheduled_run_uses_host_profile(service, engine, host, add_definition, add_profile):
    first = add_definition(name="NTP")
    second = add_definition(name="DNS")
    add_profile(HostType.STANDARD, [first.id, second.id])
    notifier = RecordingNotifier()

    summary = await execute_scheduled_checks(
        "nightly", host_ids=[host.id], service=service, notifier=notifier
    )

    assert summary.total == 2
    assert summary.passed == 2
    assert engine.calls == 2
    assert notifier.sent[0][0] == "nightly"


@pytest.mark.asyncio
async def test_scheduled_run_with_explicit_checks(db_engine, service, engine, host, add_definition, add_profile):
    first = add_definition(name="NTP")
    add_definition(name="DNS")
    add_profile(HostType.STANDARD, [])

    summary = await execute_scheduled_checks(
        "adhoc", host_ids=[host.id], check_definition_ids=[first.id], service=service, notifier=RecordingNotifier()
    )

    assert summary.total == 1
    with Session(db_engine) as session:
        rows = session.exec(select(CheckResult)).all()
    assert rows[0].is_manual_run is False
    assert rows[0].run_by == "scheduler:adhoc"


@pytest.mark.asyncio
async def test_scheduled_run_over_cluster_deduplicates(db_session, service, engine, host, vcenter, add_definition, add_profile):
    db_session.add(Host(name="esx02.lab.local", cluster_name="Prod", vcenter_id=vcenter.id, host_type=HostType.STANDARD))
    db_session.commit()
    check = add_definition(name="NTP")
    add_profile(HostType.STANDARD, [check.id])

    summary = await execute_scheduled_checks(
        "cluster",
        host_ids=[host.id],
        cluster_ids=[f"{vcenter.id}:Prod", "bogus", "999:Prod"],
        service=service,
        notifier=RecordingNotifier(),
    )

    # esx01 is targeted twice but runs once
    assert summary.total == 2
    assert summary.by_status == {CheckStatus.SUCCESS.value: 2}


def test_parse_cluster_key():
    assert parse_cluster_key("3:Prod:East") == (3, "Prod:East")
    with pytest.raises(ValueError):
        parse_cluster_key("Prod")


def test_add_list_and_remove_schedule():
    job_id = SchedulerService.add_check_schedule("nightly", "0 2 * * *", host_ids=[1, 2], check_definition_ids=[5])
    try:
        assert job_id is not None
        schedules = {s["id"]: s for s in SchedulerService.list_schedules()}
        assert schedules[job_id]["name"] == "nightly"
        assert schedules[job_id]["cron"] == "0 2 * * *"
        assert schedules[job_id]["host_ids"] == [1, 2]
    finally:
        assert SchedulerService.remove_schedule(job_id) is True

    assert job_id not in {s["id"] for s in SchedulerService.list_schedules()}


def test_add_schedule_rejects_bad_input():
    assert SchedulerService.add_check_schedule("broken", "not a cron", host_ids=[1]) is None
    assert SchedulerService.add_check_schedule("empty", "0 2 * * *") is None


def test_format_timedelta():
    assert SchedulerService.format_timedelta(None) == "Paused"
