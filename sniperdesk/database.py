"""
Database connection and session management
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sniperdesk.models.database import Base
import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./sniperdesk.db")


def make_engine(url: str = DATABASE_URL):
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if "sqlite" in url else {}
    )

    # WAL keeps readers unblocked while the scheduler threads write
    if "sqlite" in url:
        from sqlalchemy import event as sa_event

        @sa_event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Create state tables (safe for re-runs)."""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("State tables ready")
