"""
Database Models and Connection
==============================

SQLAlchemy schema for the feature store: registered features, dependency
edges between features, and generated migrations that have been applied.

Every feature-mutating operation goes through atomic_transaction(), which
takes the SQLite write lock up front (BEGIN IMMEDIATE) so that the dependency
checks and the write they guard run as one serialized unit.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import JSON

from api.errors import PersistenceError

_logger = logging.getLogger(__name__)

Base = declarative_base()

# Dependency edge types
DEPENDENCY_REQUIRED = "required"
DEPENDENCY_OPTIONAL = "optional"
DEPENDENCY_TYPES = (DEPENDENCY_REQUIRED, DEPENDENCY_OPTIONAL)

DEFAULT_FEATURE_VERSION = "1.0.0"

# Lock modes accepted by atomic_transaction (SQLite BEGIN variants)
VALID_LOCK_MODES = ("DEFERRED", "IMMEDIATE", "EXCLUSIVE")


class Feature(Base):
    """A named, versioned, enable-able unit of functionality."""

    __tablename__ = "features"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    version = Column(String(50), nullable=False, default=DEFAULT_FEATURE_VERSION)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    # Opaque descriptors, stored as JSON arrays in declaration order
    components = Column(JSON, nullable=False, default=list)
    api_endpoints = Column(JSON, nullable=False, default=list)
    database_migrations = Column(JSON, nullable=False, default=list)
    # Project-relative paths written when the feature was integrated
    files = Column(JSON, nullable=False, default=list)
    installed_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now, index=True)

    dependencies = relationship(
        "FeatureDependency",
        foreign_keys="FeatureDependency.feature_id",
        back_populates="feature",
        cascade="all, delete-orphan",
        order_by="FeatureDependency.created_at",
    )

    def to_dict(self) -> dict:
        """Convert feature to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "enabled": bool(self.enabled) if self.enabled is not None else True,
            "components": self.components or [],
            "api_endpoints": self.api_endpoints or [],
            "database_migrations": self.database_migrations or [],
            "files": self.files or [],
            "installed_at": self.installed_at.isoformat() if self.installed_at else None,
        }


class FeatureDependency(Base):
    """Directed edge: feature_id depends on depends_on."""

    __tablename__ = "feature_dependencies"

    __table_args__ = (
        CheckConstraint(
            "dependency_type IN ('required', 'optional')",
            name="ck_feature_dependency_type",
        ),
        CheckConstraint("feature_id <> depends_on", name="ck_feature_dependency_not_self"),
    )

    feature_id = Column(
        String(100),
        ForeignKey("features.id", ondelete="CASCADE"),
        primary_key=True,
    )
    depends_on = Column(
        String(100),
        ForeignKey("features.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    dependency_type = Column(String(20), nullable=False, default=DEPENDENCY_REQUIRED)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)

    feature = relationship("Feature", foreign_keys=[feature_id], back_populates="dependencies")

    def to_dict(self) -> dict:
        return {
            "feature_id": self.feature_id,
            "depends_on": self.depends_on,
            "dependency_type": self.dependency_type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AppliedMigration(Base):
    """A generated migration that has been applied to the store."""

    __tablename__ = "applied_migrations"

    id = Column(String(255), primary_key=True)
    feature_id = Column(String(100), nullable=True, index=True)
    down_sql = Column(Text, nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }


# =============================================================================
# Engine / Session Creation
# =============================================================================

def get_database_path(project_dir: Path) -> Path:
    """Return the path to the SQLite database for a project."""
    return project_dir / "features.db"


def get_database_url(project_dir: Path) -> str:
    """Return the SQLAlchemy database URL for a project.

    Uses POSIX-style paths (forward slashes) for cross-platform compatibility.
    """
    db_path = get_database_path(project_dir)
    return f"sqlite:///{db_path.as_posix()}"


def _is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    """Turn on FK enforcement for every new SQLite connection."""

    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):  # noqa: ARG001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_database(
    project_dir: Path | None = None,
    database_url: str | None = None,
) -> tuple:
    """
    Create database and return engine + session maker.

    Args:
        project_dir: Directory holding features.db (used when no URL is given)
        database_url: Any SQLAlchemy URL; "sqlite://" gives an in-memory store

    Returns:
        Tuple of (engine, SessionLocal)
    """
    if database_url is None:
        if project_dir is None:
            raise ValueError("Either project_dir or database_url is required")
        database_url = get_database_url(project_dir)

    if database_url.startswith("sqlite"):
        if _is_memory_url(database_url):
            # One shared connection so every session sees the same store
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(database_url, connect_args={
                "check_same_thread": False,
                "timeout": 30  # Wait up to 30s for locks
            })
        _enable_sqlite_foreign_keys(engine)
    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    Base.metadata.create_all(bind=engine)

    if database_url.startswith("sqlite") and not _is_memory_url(database_url):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA journal_mode=WAL"))
            conn.execute(text("PRAGMA busy_timeout=30000"))
            conn.commit()

    _logger.info("Feature store ready: %s", engine.url.render_as_string(hide_password=True))

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, SessionLocal


# =============================================================================
# Transactions
# =============================================================================

@contextmanager
def atomic_transaction(
    session_maker: sessionmaker,
    lock_mode: str = "IMMEDIATE",
) -> Iterator[Session]:
    """
    Run a block of work as one serialized transaction.

    On SQLite the transaction is opened with BEGIN <lock_mode>; IMMEDIATE
    takes the write lock before the first read, so a check-then-write
    sequence cannot interleave with another writer. On server databases the
    caller locks the rows it reads with SELECT ... FOR UPDATE.

    Commits on success, rolls back on any exception. IntegrityError is
    re-raised for the caller to interpret; any other SQLAlchemyError (store
    unreachable, lock wait exhausted) is raised as PersistenceError.

    Example:
        with atomic_transaction(session_maker) as session:
            feature = session.get(Feature, "base", with_for_update=True)
            feature.enabled = False
    """
    lock_mode = lock_mode.upper()
    if lock_mode not in VALID_LOCK_MODES:
        raise ValueError(f"Invalid lock mode: {lock_mode}. Valid: {VALID_LOCK_MODES}")

    session = session_maker()
    try:
        if session.get_bind().dialect.name == "sqlite":
            session.execute(text(f"BEGIN {lock_mode}"))
        yield session
        session.commit()
    except IntegrityError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        _logger.error("Transaction failed: %s", e)
        raise PersistenceError("transaction", e) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
