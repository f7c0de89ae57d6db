"""
Database models and operations for DockGuard
Uses SQLite for image backup records and the update audit trail
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import create_engine, Column, String, Integer, DateTime, Text, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import os
import logging
import threading

logger = logging.getLogger(__name__)

_database_manager_instance: Optional['DatabaseManager'] = None
_database_manager_lock = threading.Lock()


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class ImageBackup(Base):
    """
    A previously deployed image for a container, kept as a rollback target.

    Keyed by container name: the name is stable across recreates while the
    container id changes every time the container is rebuilt.
    """
    __tablename__ = "image_backups"

    id = Column(String, primary_key=True)
    container_id = Column(Text, nullable=True)
    container_name = Column(Text, nullable=False)
    image_name = Column(Text, nullable=False)  # Pullable reference without tag, e.g. "nginx"
    image_tag = Column(Text, nullable=False)
    image_digest = Column(Text, nullable=True)
    trigger_name = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_image_backups_name_created', 'container_name', 'created_at'),
    )

    @property
    def image_reference(self) -> str:
        # Digest-pinned backups keep "sha256:..." as the tag part
        separator = '@' if ':' in self.image_tag else ':'
        return f"{self.image_name}{separator}{self.image_tag}"


class UpdateAuditLog(Base):
    """Write-once record of an update outcome"""
    __tablename__ = "update_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(Text, nullable=False)  # auto-rollback, rollback, self-update, update-applied, update-failed
    container_name = Column(Text, nullable=False)
    container_image = Column(Text, nullable=True)
    from_version = Column(Text, nullable=True)
    to_version = Column(Text, nullable=True)
    status = Column(Text, nullable=False)  # success|error|info
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_update_audit_container_created', 'container_name', 'created_at'),
    )


class DatabaseManager:
    """
    Database management and operations.

    One instance per process is expected; use get_database_manager() outside
    of tests so the engine and connection pool are shared.
    """

    def __init__(self, db_path: str = "data/dockguard.db"):
        self.db_path = db_path

        data_dir = os.path.dirname(db_path)
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)
            try:
                os.chmod(data_dir, 0o700)
            except OSError as e:
                logger.warning(f"Could not set permissions on data directory {data_dir}: {e}")

        # SQLite doesn't support pool_timeout/pool_recycle, but timeout in connect_args works
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

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        Base.metadata.create_all(bind=self.engine)

    def _configure_sqlite_pragmas(self):
        """
        WAL lets the health monitor append audit rows while the API reads
        backups. SYNCHRONOUS=NORMAL is safe with WAL.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.commit()
        except Exception as e:
            logger.warning(f"Could not configure SQLite pragmas: {e}")

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    def dispose(self):
        self.engine.dispose()


def get_database_manager(db_path: Optional[str] = None) -> DatabaseManager:
    """Get or create the process-wide DatabaseManager"""
    global _database_manager_instance

    if _database_manager_instance is not None:
        if db_path and _database_manager_instance.db_path != db_path:
            logger.warning(
                f"DatabaseManager already exists with path "
                f"'{_database_manager_instance.db_path}', ignoring requested path '{db_path}'"
            )
        return _database_manager_instance

    with _database_manager_lock:
        if _database_manager_instance is None:
            if db_path is None:
                from config.settings import AppConfig
                db_path = AppConfig.DATABASE_PATH
            _database_manager_instance = DatabaseManager(db_path)
        return _database_manager_instance
