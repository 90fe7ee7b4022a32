from sqlmodel import SQLModel, create_engine
from vcheck.core.config import get_settings
import logging
import os

settings = get_settings()
logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)

def create_db_and_tables(db_engine=None):
    """Creates all check-engine tables on the given engine (default: the app engine)."""
    db_engine = db_engine or engine
    url = str(db_engine.url)
    # Ensure database directory exists
    if url.startswith("sqlite:///"):
        db_path = url.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            db_dir = os.path.dirname(os.path.abspath(db_path))
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    logger.error(f"Could not create database directory {db_dir}: {e}")

    # Import models here to ensure they are registered with SQLModel metadata
    from vcheck.models import VCenter, Host, HostProfile, CheckDefinition, CheckResult  # noqa: F401
    SQLModel.metadata.create_all(db_engine)
