import logging
import math
from datetime import datetime
from typing import Any, Optional

from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from vcheck.core.config import get_settings
from vcheck.core.exceptions import TargetResolutionError
from vcheck.models import CheckDefinition, Host, HostType, VCenter
from vcheck.schemas import CheckExecution, CheckRunSummary
from vcheck.services.execution import CheckExecutionService, create_execution_service, summarize_results
from vcheck.services.notification import NotificationService

settings = get_settings()
logger = logging.getLogger(__name__)

# Job Store Configuration
# Schedules live in the same database as the check results
jobstores = {
    'default': SQLAlchemyJobStore(url=settings.DATABASE_URL)
}

scheduler = AsyncIOScheduler(jobstores=jobstores)


def parse_cluster_key(key: str) -> tuple[int, str]:
    """Splits a "<vcenter_id>:<cluster_name>" key."""
    vcenter_id, sep, cluster_name = key.partition(":")
    if not sep or not cluster_name:
        raise ValueError(f"Invalid cluster key '{key}', expected '<vcenter_id>:<cluster_name>'")
    return int(vcenter_id), cluster_name


async def execute_scheduled_checks(
    schedule_name: str,
    host_ids: Optional[list[int]] = None,
    cluster_ids: Optional[list[str]] = None,
    check_definition_ids: Optional[list[int]] = None,
    max_concurrency: Optional[int] = None,
    service: Optional[CheckExecutionService] = None,
    notifier: Optional[NotificationService] = None,
    **kwargs: Any,
) -> CheckRunSummary:
    """The job body run by APScheduler for a check schedule.

    Why: Bridges a stored schedule (plain ids, so it can be persisted in the
    job store) to a batch run. Targets are resolved at fire time so hosts
    added to a cluster after scheduling are picked up.
    """
    logger.info(f"Scheduler: Starting check schedule '{schedule_name}'")
    service = service or create_execution_service()
    notifier = notifier or NotificationService()
    store = service.store

    explicit_ids = set(check_definition_ids or [])
    explicit_checks = store.find_enabled_check_definitions(explicit_ids) if explicit_ids else None
    profile_checks: dict[HostType, list[CheckDefinition]] = {}
    vcenters: dict[int, Optional[VCenter]] = {}
    executions: list[CheckExecution] = []
    seen: set[tuple[Optional[int], Optional[int]]] = set()

    def checks_for_profile(host: Host) -> list[CheckDefinition]:
        if host.host_type not in profile_checks:
            profile = store.find_host_profile_by_type(host.host_type)
            profile_checks[host.host_type] = (
                store.find_enabled_check_definitions(profile.check_ids or []) if profile else []
            )
        return profile_checks[host.host_type]

    def vcenter_for(host: Host) -> Optional[VCenter]:
        if host.vcenter_id not in vcenters:
            try:
                vcenters[host.vcenter_id] = store.get_vcenter(host.vcenter_id)
            except TargetResolutionError as e:
                logger.error(f"Scheduler: Skipping host '{host.display_name}': {e}")
                vcenters[host.vcenter_id] = None
        return vcenters[host.vcenter_id]

    def queue(host: Host, definitions: list[CheckDefinition]) -> None:
        vcenter = vcenter_for(host)
        if vcenter is None or not vcenter.enabled:
            return
        for definition in definitions:
            key = (host.id, definition.id)
            if key in seen:
                continue
            seen.add(key)
            executions.append(CheckExecution(host=host, check_definition=definition, vcenter=vcenter))

    for host in store.get_hosts(host_ids or []):
        if host.enabled:
            queue(host, explicit_checks if explicit_checks is not None else checks_for_profile(host))

    for cluster_key in cluster_ids or []:
        try:
            vcenter_id, cluster_name = parse_cluster_key(cluster_key)
            hosts = store.find_hosts_by_cluster_and_vcenter(vcenter_id, cluster_name)
        except (ValueError, TargetResolutionError) as e:
            logger.error(f"Scheduler: Skipping cluster '{cluster_key}': {e}")
            continue
        for host in hosts:
            definitions = checks_for_profile(host)
            if explicit_ids:
                definitions = [d for d in definitions if d.id in explicit_ids]
            queue(host, definitions)

    results = await service.execute_batch(
        executions,
        max_concurrency=max_concurrency or settings.DEFAULT_BATCH_CONCURRENCY,
        run_by=f"scheduler:{schedule_name}",
    )
    summary = summarize_results(results)
    logger.info(
        f"Scheduler: Schedule '{schedule_name}' finished - {summary.total} checks, "
        f"{summary.passed} passed, {summary.failed} failed"
    )
    notifier.send_run_notification(schedule_name, summary)
    return summary


class SchedulerService:
    """Manages recurring check runs using APScheduler.

    Schedules are persisted to the application database through the
    SQLAlchemy job store so they survive restarts.
    """
    @staticmethod
    def start():
        if not scheduler.running:
            scheduler.start()
            logger.info("Scheduler started.")

    @staticmethod
    def shutdown():
        if scheduler.running:
            scheduler.shutdown()

    @staticmethod
    def add_check_schedule(
        name: str,
        cron_expression: str,
        host_ids: Optional[list[int]] = None,
        cluster_ids: Optional[list[str]] = None,
        check_definition_ids: Optional[list[int]] = None,
        max_concurrency: Optional[int] = None,
    ) -> Optional[str]:
        """Schedules a recurring check run using a CRON expression.

        Args:
            name: Human readable schedule name, also used in notifications.
            cron_expression: Standard 5-field CRON string.
            host_ids: Hosts to check.
            cluster_ids: Clusters to check, as "<vcenter_id>:<cluster_name>".
            check_definition_ids: Restricts the run to these checks. Hosts
                without this restriction run their host profile checks.
            max_concurrency: Concurrency limit of the batch.

        Returns:
            The unique job ID if successfully scheduled, else None.
        """
        if not host_ids and not cluster_ids:
            logger.error(f"Schedule '{name}' has no hosts or clusters to check")
            return None
        try:
            job = scheduler.add_job(
                execute_scheduled_checks,
                CronTrigger.from_crontab(cron_expression),
                args=[name],
                kwargs={
                    "host_ids": list(host_ids or []),
                    "cluster_ids": list(cluster_ids or []),
                    "check_definition_ids": list(check_definition_ids or []),
                    "max_concurrency": max_concurrency,
                    "cron_expr": cron_expression,
                },
                name=f"Check run {name}",
                replace_existing=False,
            )
            return job.id
        except Exception as e:
            logger.error(f"Failed to add check schedule '{name}': {e}")
            return None

    @staticmethod
    def list_schedules() -> list[dict[str, Any]]:
        """Retrieves all check schedules.

        Returns:
            A list of dictionary summaries for each active or paused schedule.
        """
        schedules = []
        for job in scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            schedules.append({
                "id": job.id,
                "name": job.args[0] if job.args else job.name,
                "next_run": next_run,
                "next_run_human": SchedulerService.format_timedelta(next_run),
                "cron": job.kwargs.get("cron_expr", "Unknown"),
                "host_ids": job.kwargs.get("host_ids", []),
                "cluster_ids": job.kwargs.get("cluster_ids", []),
                "check_definition_ids": job.kwargs.get("check_definition_ids", []),
                "status": "running" if next_run else "paused",
            })
        return schedules

    @staticmethod
    def remove_schedule(job_id: str) -> bool:
        try:
            scheduler.remove_job(job_id)
            return True
        except Exception as e:
            logger.error(f"Failed to remove schedule {job_id}: {e}")
            return False

    @staticmethod
    def format_timedelta(dt: Optional[datetime]) -> str:
        """Converts a future datetime into a human-readable relative string.

        Args:
            dt: The future datetime to format.

        Returns:
            A string like "In 5 mins" or "In 2 days".
        """
        if not dt: return "Paused"
        now = datetime.now(dt.tzinfo)
        seconds = (dt - now).total_seconds()
        if seconds < 0: return "Overdue"
        if seconds < 60: return "In < 1 minute"
        minutes = math.ceil(seconds / 60)
        if minutes < 60: return f"In {minutes} mins"
        hours = math.ceil(minutes / 60)
        if hours < 24: return f"In {hours} hours"
        days = math.ceil(hours / 24)
        return f"In {days} days"
