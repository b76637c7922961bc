"""
Database models and operations for Refit
Uses SQLite for persistent storage of update records, audit history and
registry credentials
"""

from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import create_engine, Column, String, Integer, Boolean, DateTime, JSON, Text, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import os
import logging
import threading

logger = logging.getLogger(__name__)

# Only ONE DatabaseManager instance should exist per process: one engine,
# one connection pool, one set of PRAGMAs.
_database_manager_instance: Optional['DatabaseManager'] = None
_database_manager_lock = threading.Lock()


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class RegistryCredential(Base):
    """Registry credentials (token stored Fernet-encrypted)"""
    __tablename__ = "registry_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(Text, nullable=False)  # e.g. "ghcr.io", "https://index.docker.io/v1/"
    username = Column(Text, nullable=False)
    token_encrypted = Column(Text, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ImageUpdateRecord(Base):
    """Result of the most recent update check for one local image"""
    __tablename__ = "image_updates"

    # Local Docker image ID (sha256:...) - one row per image
    id = Column(Text, primary_key=True)
    repository = Column(Text, nullable=False)
    tag = Column(Text, nullable=False)

    has_update = Column(Boolean, default=False, nullable=False)
    update_type = Column(Text, nullable=True)  # digest|tag
    current_version = Column(Text, nullable=True)
    latest_version = Column(Text, nullable=True)
    current_digest = Column(Text, nullable=True)
    latest_digest = Column(Text, nullable=True)

    check_time = Column(DateTime, default=utcnow, nullable=False)
    response_time_ms = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    # How the registry was accessed
    auth_method = Column(Text, nullable=True)  # none|anonymous|credential|basic|bearer|unknown
    auth_username = Column(Text, nullable=True)
    auth_registry = Column(Text, nullable=True)
    used_credential = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_image_updates_has_update', 'has_update'),
    )

    @property
    def is_tag_update(self) -> bool:
        return self.update_type == "tag"


class AutoUpdateRecord(Base):
    """Append-only audit entry: one row per unit of work per run"""
    __tablename__ = "auto_update_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_id = Column(Text, nullable=False)
    resource_type = Column(String(16), nullable=False)  # image|container|stack
    resource_name = Column(Text, nullable=True)
    status = Column(String(32), nullable=False)

    start_time = Column(DateTime, default=utcnow, nullable=False)
    end_time = Column(DateTime, nullable=True)

    update_available = Column(Boolean, default=False, nullable=False)
    update_applied = Column(Boolean, default=False, nullable=False)
    old_image_versions = Column(JSON, nullable=True)
    new_image_versions = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

    __table_args__ = (
        Index('idx_auto_update_records_start_time', 'start_time'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'resource_name': self.resource_name,
            'status': self.status,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'update_available': self.update_available,
            'update_applied': self.update_applied,
            'old_image_versions': self.old_image_versions or {},
            'new_image_versions': self.new_image_versions or {},
            'error': self.error,
            'details': self.details or {},
        }


class DatabaseManager:
    """
    Database management (Singleton)

    Multiple instantiations return the same instance so the process holds a
    single engine and connection pool.

    Thread-safe: Uses threading.Lock to prevent race conditions during initialization.
    """

    def __new__(cls, db_path: str = "data/refit.db"):
        global _database_manager_instance

        if _database_manager_instance is not None:
            if _database_manager_instance.db_path != db_path:
                logger.warning(
                    f"DatabaseManager singleton already exists with path "
                    f"'{_database_manager_instance.db_path}', ignoring requested path '{db_path}'"
                )
            return _database_manager_instance

        with _database_manager_lock:
            # Double-check: another thread might have created it while we waited
            if _database_manager_instance is not None:
                return _database_manager_instance

            instance = super(DatabaseManager, cls).__new__(cls)
            _database_manager_instance = instance
            return instance

    def __init__(self, db_path: str = "data/refit.db"):
        # __init__ runs on every DatabaseManager() call; initialize once
        if hasattr(self, '_initialized'):
            return

        self.db_path = db_path
        self._initialized = True

        data_dir = os.path.dirname(db_path)
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)
            try:
                os.chmod(data_dir, 0o700)
            except OSError as e:
                logger.warning(f"Could not set permissions on data directory {data_dir}: {e}")

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

        self._secure_database_file()

    @classmethod
    def reset_instance(cls):
        """Drop the singleton (used on shutdown and by tests)"""
        global _database_manager_instance
        with _database_manager_lock:
            if _database_manager_instance is not None and hasattr(_database_manager_instance, 'engine'):
                _database_manager_instance.engine.dispose()
            _database_manager_instance = None

    def _configure_sqlite_pragmas(self):
        """
        Configure SQLite PRAGMA statements.

        - WAL mode: concurrent reads while check workers persist results
        - SYNCHRONOUS=NORMAL: Safe with WAL, faster than FULL
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.commit()
            logger.info("SQLite PRAGMA configuration applied successfully (WAL mode)")
        except Exception as e:
            # Non-fatal: SQLite will work with defaults
            logger.error(f"Failed to configure SQLite PRAGMAs: {e}", exc_info=True)

    def _secure_database_file(self):
        """Set secure file permissions on the SQLite database file"""
        # Ensure the file exists before chmod
        with self.engine.connect():
            pass
        try:
            if os.path.exists(self.db_path):
                os.chmod(self.db_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not set permissions on database file {self.db_path}: {e}")

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    # Registry credential operations (read-only for the update engine)
    def get_registry_credentials(self, enabled_only: bool = True) -> List[RegistryCredential]:
        """Get registry credentials, detached from the session"""
        with self.get_session() as session:
            query = session.query(RegistryCredential)
            if enabled_only:
                query = query.filter(RegistryCredential.enabled == True)  # noqa: E712
            credentials = query.order_by(RegistryCredential.id).all()
            session.expunge_all()
            return credentials
