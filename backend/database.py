"""
Database models and operations for Dockwarden
Uses SQLite for the update execution ledger and the vulnerability scan cache
"""

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, Column, String, Integer, DateTime, JSON, Text, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

_database_manager_instance: Optional['DatabaseManager'] = None
_database_manager_lock = threading.Lock()


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class UpdateExecution(Base):
    """One run of the update pipeline for one target (or the self-update handoff)"""
    __tablename__ = "update_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False, default='container')  # container | self_update
    target_name = Column(Text, nullable=False)
    environment_id = Column(Text, nullable=True)
    triggered_by = Column(Text, nullable=False, default='manual')  # scheduler | manual | api

    # running | success | failed | skipped | launched
    status = Column(String, nullable=False, default='running')

    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    log_lines = Column(JSON, nullable=False, default=list)
    result_details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_update_exec_target', 'environment_id', 'target_name'),
        Index('idx_update_exec_started', 'started_at'),
    )


class VulnerabilityScan(Base):
    """Cached scan result for one image id and scanner"""
    __tablename__ = "vulnerability_scans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    image_id = Column(Text, nullable=False)  # sha256:...
    image_ref = Column(Text, nullable=True)  # reference scanned, for display only
    environment_id = Column(Text, nullable=True)
    scanner = Column(String, nullable=False)

    critical = Column(Integer, nullable=False, default=0)
    high = Column(Integer, nullable=False, default=0)
    medium = Column(Integer, nullable=False, default=0)
    low = Column(Integer, nullable=False, default=0)
    negligible = Column(Integer, nullable=False, default=0)
    unknown = Column(Integer, nullable=False, default=0)

    scanned_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_vuln_scan_image', 'image_id', 'environment_id'),
    )


class DatabaseManager:
    """
    Owns the SQLAlchemy engine and session factory.

    Sessions are used as context managers:
        with db.get_session() as session:
            ...
    """

    def __init__(self, db_path: str = "data/dockwarden.db"):
        self.db_path = db_path

        data_dir = os.path.dirname(db_path)
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={
                "check_same_thread": False,
                "timeout": 20
            },
            poolclass=StaticPool,
            echo=False
        )
        self._configure_sqlite_pragmas()
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(bind=self.engine)

    def _configure_sqlite_pragmas(self):
        """WAL for concurrent readers while an update is logging"""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.commit()
        except Exception as e:
            # Non-fatal: SQLite works with defaults
            logger.error(f"Failed to configure SQLite PRAGMAs: {e}", exc_info=True)

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()


def get_database_manager() -> DatabaseManager:
    """Get or create the process-wide DatabaseManager"""
    global _database_manager_instance
    if _database_manager_instance is None:
        with _database_manager_lock:
            if _database_manager_instance is None:
                from config.paths import DATABASE_PATH
                _database_manager_instance = DatabaseManager(DATABASE_PATH)
    return _database_manager_instance
