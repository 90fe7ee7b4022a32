import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session, delete, desc, func, select

from vcheck.core.config import get_settings
from vcheck.models import CheckResult, CheckStatus, HealthStatus
from vcheck.utils.time import as_utc, utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

HEALTH_WINDOW = timedelta(hours=24)


def _same_check(check_id: Optional[int]):
    if check_id is None:
        return CheckResult.check_definition_id.is_(None)
    return CheckResult.check_definition_id == check_id


class HistoryService:
    """Queries stored check results and enforces retention limits.

    Provides filtered, paginated access to past results, the per-host health
    rollup, and pruning of old results to keep the results table bounded.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_recent_results(
        self,
        limit: int = 50,
        offset: int = 0,
        host_id: Optional[int] = None,
        check_definition_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> tuple[list[CheckResult], int]:
        """Retrieves a page of results, newest first.

        Why: Feeds result tables and audit views where operators look for the
        latest failures of a host or a specific check.

        Args:
            limit: Page size.
            offset: Number of results to skip.
            host_id: Only results of this host.
            check_definition_id: Only results of this check.
            status: Exact status filter; 'all' or None disables it.

        Raises:
            ValueError: If `status` is not a known check status.

        Returns:
            A tuple of (results, total_filtered_count).
        """
        query = select(CheckResult).order_by(desc(CheckResult.executed_at), desc(CheckResult.id))
        if host_id is not None:
            query = query.where(CheckResult.host_id == host_id)
        if check_definition_id is not None:
            query = query.where(CheckResult.check_definition_id == check_definition_id)
        if status and status != "all":
            try:
                status_filter = CheckStatus(status)
            except ValueError:
                raise ValueError(f"Unknown status filter: {status}") from None
            query = query.where(CheckResult.status == status_filter)

        count_query = select(func.count()).select_from(query.subquery())
        total_count = self.db.exec(count_query).one()
        return list(self.db.exec(query.offset(offset).limit(limit)).all()), total_count

    def get_latest_results_for_host(self, host_id: int) -> list[CheckResult]:
        """Newest result of every check that has run on the host."""
        statement = (
            select(CheckResult)
            .where(CheckResult.host_id == host_id)
            .order_by(desc(CheckResult.executed_at), desc(CheckResult.id))
        )
        latest: dict[Optional[int], CheckResult] = {}
        for result in self.db.exec(statement).all():
            latest.setdefault(result.check_definition_id, result)
        return list(latest.values())

    def get_host_health(self, host_id: int, now: Optional[datetime] = None) -> HealthStatus:
        """Rolls up the host's results of the last 24 hours into one health status.

        Why: A host whose last results are all older than the window is
        reported as stale rather than healthy, so hosts that silently stopped
        being checked stand out.
        """
        now = as_utc(now) if now else utcnow()
        has_any = self.db.exec(
            select(CheckResult.id).where(CheckResult.host_id == host_id).limit(1)
        ).first()
        if has_any is None:
            return HealthStatus.UNKNOWN

        statuses = set(
            self.db.exec(
                select(CheckResult.status)
                .where(CheckResult.host_id == host_id)
                .where(CheckResult.executed_at >= now - HEALTH_WINDOW)
            ).all()
        )
        if not statuses:
            return HealthStatus.STALE
        if CheckStatus.CRITICAL in statuses:
            return HealthStatus.CRITICAL
        if CheckStatus.WARNING in statuses:
            return HealthStatus.WARNING
        if statuses & {CheckStatus.FAILED, CheckStatus.ERROR, CheckStatus.TIMEOUT}:
            return HealthStatus.CRITICAL
        if statuses == {CheckStatus.SUCCESS}:
            return HealthStatus.HEALTHY
        return HealthStatus.UNKNOWN

    def apply_retention_policies(self, check_definition_id: Optional[int] = None) -> None:
        """Enforces result retention by age and by count per check.

        Why: Scheduled runs write one row per host and check every time they
        fire; without pruning the results table grows without bound.

        Args:
            check_definition_id: If provided, only prunes results of this
                check. Otherwise, prunes every check.
        """
        days_limit = settings.RESULT_RETENTION_DAYS
        max_limit = settings.MAX_RESULTS_PER_CHECK

        if check_definition_id is not None:
            checks_to_process = [check_definition_id]
        else:
            checks_to_process = self.db.exec(select(CheckResult.check_definition_id).distinct()).all()

        for check_id in checks_to_process:
            # 1. Prune by age
            if days_limit > 0:
                cutoff = utcnow() - timedelta(days=days_limit)
                self.db.exec(
                    delete(CheckResult)
                    .where(_same_check(check_id))
                    .where(CheckResult.executed_at < cutoff)
                )

            # 2. Prune by count (keep most recent)
            if max_limit > 0:
                keep_ids = self.db.exec(
                    select(CheckResult.id)
                    .where(_same_check(check_id))
                    .order_by(desc(CheckResult.executed_at), desc(CheckResult.id))
                    .limit(max_limit)
                ).all()
                if keep_ids:
                    self.db.exec(
                        delete(CheckResult)
                        .where(_same_check(check_id))
                        .where(CheckResult.id.not_in(keep_ids))
                    )

        self.db.commit()
        logger.info(f"Applied result retention policies to {len(checks_to_process)} check(s)")
