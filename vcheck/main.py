import logging

from sqlmodel import Session

from vcheck.core.database import create_db_and_tables, engine
from vcheck.core.logging import setup_logging
from vcheck.services.history import HistoryService
from vcheck.services.scheduler import SchedulerService

logger = logging.getLogger(__name__)


def startup(db_engine=None, start_scheduler: bool = True):
    """Brings the check engine up for a long-running host process.

    On Startup:
    - Configures logging.
    - Creates database tables if missing.
    - Applies global result retention policies.
    - Starts the background check scheduler.
    """
    setup_logging()
    logger.info("vCheck starting up...")
    db_engine = db_engine or engine
    create_db_and_tables(db_engine)

    with Session(db_engine) as session:
        HistoryService(session).apply_retention_policies()

    if start_scheduler:
        SchedulerService.start()


def shutdown():
    """Stops the scheduler and cleans up resources."""
    logger.info("vCheck shutting down...")
    SchedulerService.shutdown()
