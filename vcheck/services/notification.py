import logging
from typing import Optional

import apprise

from vcheck.core.config import get_settings
from vcheck.schemas import CheckRunSummary

logger = logging.getLogger(__name__)


class NotificationService:
    """Pushes check-run summaries to the Apprise target configured in settings."""

    def __init__(self, apprise_url: Optional[str] = None):
        settings = get_settings()
        self.apprise_url = apprise_url or settings.APPRISE_URL
        self.notify_on_failure = settings.NOTIFY_ON_FAILURE
        self.notify_on_success = settings.NOTIFY_ON_SUCCESS

    def send_notification(self, message: str, title: str = "vCheck Alert") -> bool:
        if not self.apprise_url:
            return False

        apobj = apprise.Apprise()

        # Support both direct service URLs (tgram://) and config URLs (http://)
        config = apprise.AppriseConfig()
        if config.add(self.apprise_url):
            apobj.add(config)
        else:
            apobj.add(self.apprise_url)

        return bool(apobj.notify(body=message, title=title))

    def should_notify(self, summary: CheckRunSummary) -> bool:
        if summary.total == 0:
            return False
        if summary.failed > 0:
            return self.notify_on_failure
        return self.notify_on_success

    def send_run_notification(self, schedule_name: str, summary: CheckRunSummary) -> bool:
        """Sends a summary of one scheduled run if the notify flags ask for it.

        Returns:
            True if a notification was delivered.
        """
        if not self.apprise_url or not self.should_notify(summary):
            return False

        status = "FAILED" if summary.failed else "SUCCESS"
        emoji = "🚨" if summary.failed else "✅"
        breakdown = ", ".join(f"{name}: {count}" for name, count in sorted(summary.by_status.items()))
        msg = (
            f"{emoji} Schedule: {schedule_name}\n"
            f"Status: {status}\n"
            f"Checks: {summary.total} ({summary.passed} passed, {summary.failed} failed)\n"
            f"Breakdown: {breakdown or 'n/a'}\n"
            f"Total execution time: {summary.total_execution_time:.1f}s"
        )
        try:
            return self.send_notification(msg, title=f"vCheck: {schedule_name} [{status}]")
        except Exception as e:
            logger.error(f"Failed to send notification for schedule '{schedule_name}': {e}")
            return False
