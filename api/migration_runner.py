"""
Migration Runner
================

Applies generated migrations to the feature store exactly once and rolls
them back on request.

A batch is applied in one atomic_transaction: migrations already recorded in
applied_migrations are skipped, and the first failing statement aborts the
batch so the store is left as it was.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from api.database import AppliedMigration, atomic_transaction
from api.errors import MigrationError
from api.generated_code import Migration

_logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "skipped": self.skipped,
            "errors": self.errors,
            "success": self.success,
        }


def split_sql_statements(sql: str) -> list[str]:
    """
    Split a SQL script on semicolons outside quotes and comments.

    "--" line comments and "/* */" block comments are dropped, so a semicolon
    inside a comment does not end a statement and a comment-only chunk yields
    nothing.

    >>> split_sql_statements("CREATE TABLE a (x TEXT DEFAULT ';'); -- b; c\\nDROP TABLE b;")
    ["CREATE TABLE a (x TEXT DEFAULT ';')", 'DROP TABLE b']
    """
    statements = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    n = len(sql)

    while i < n:
        ch = sql[i]
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif sql.startswith("--", i):
            end = sql.find("\n", i)
            if end == -1:
                break
            current.append("\n")
            i = end
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            if end == -1:
                break
            current.append(" ")
            i = end + 1
        elif ch == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
        else:
            current.append(ch)
        i += 1

    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


class MigrationRunner:
    """Apply and roll back generated migrations against the feature store."""

    def __init__(self, session_maker: sessionmaker):
        self._session_maker = session_maker

    def is_applied(self, migration_id: str) -> bool:
        with self._session_maker() as session:
            return session.get(AppliedMigration, migration_id) is not None

    def get_applied_migrations(self) -> list[dict[str, Any]]:
        with self._session_maker() as session:
            rows = session.scalars(
                select(AppliedMigration).order_by(AppliedMigration.applied_at, AppliedMigration.id)
            ).all()
            return [row.to_dict() for row in rows]

    def apply_migrations(
        self,
        migrations: Sequence[Migration],
        feature_id: str | None = None,
        dry_run: bool = False,
    ) -> MigrationResult:
        """
        Apply every migration not yet recorded.

        With dry_run the result lists what would be applied and nothing is
        executed. On failure the whole batch is rolled back and the result
        carries the error; PersistenceError from the store propagates.
        """
        result = MigrationResult()
        if not migrations:
            return result

        if dry_run:
            for migration in migrations:
                if self.is_applied(migration.id):
                    result.skipped.append(migration.id)
                else:
                    result.applied.append(migration.id)
            return result

        try:
            with atomic_transaction(self._session_maker) as session:
                for migration in migrations:
                    if session.get(AppliedMigration, migration.id) is not None:
                        _logger.info("Migration %s already applied, skipping", migration.id)
                        result.skipped.append(migration.id)
                        continue
                    self._execute(session, migration.id, migration.up)
                    session.add(AppliedMigration(
                        id=migration.id,
                        feature_id=feature_id,
                        down_sql=migration.down or None,
                    ))
                    session.flush()
                    result.applied.append(migration.id)
        except MigrationError as e:
            _logger.error("Migration batch rolled back: %s", e)
            result.applied = []
            result.errors.append(str(e))
            return result

        for migration_id in result.applied:
            _logger.info("Applied migration %s", migration_id)
        return result

    def rollback_migrations(self, migration_ids: Sequence[str]) -> list[str]:
        """
        Revert migrations in reverse order using their recorded down SQL.

        Returns:
            The ids that were rolled back (unknown ids are ignored)

        Raises:
            MigrationError: a down statement failed; nothing is reverted
        """
        rolled_back: list[str] = []
        with atomic_transaction(self._session_maker) as session:
            for migration_id in reversed(list(migration_ids)):
                record = session.get(AppliedMigration, migration_id)
                if record is None:
                    continue
                if record.down_sql:
                    self._execute(session, migration_id, record.down_sql)
                session.delete(record)
                session.flush()
                rolled_back.append(migration_id)

        for migration_id in rolled_back:
            _logger.info("Rolled back migration %s", migration_id)
        return rolled_back

    def _execute(self, session: Session, migration_id: str, sql: str) -> None:
        # Driver-level execution: generated SQL may contain colons that
        # text() would read as bind parameters
        connection = session.connection()
        for statement in split_sql_statements(sql):
            try:
                connection.exec_driver_sql(statement)
            except SQLAlchemyError as e:
                raise MigrationError(migration_id, getattr(e, "orig", None) or e) from e
