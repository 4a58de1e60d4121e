"""
Feature Registry Manager
========================

CRUD over the feature store plus the dependency rules:

- a feature cannot be disabled while an enabled feature holds a required
  dependency on it
- a feature cannot be removed while any feature (required or optional)
  depends on it
- a feature cannot depend on itself
- required edges never form a cycle
- an enabled feature cannot gain a required edge on a disabled one

Each mutating method is one atomic_transaction(): the rows involved are
locked (BEGIN IMMEDIATE on SQLite, SELECT ... FOR UPDATE elsewhere) before
the rule is evaluated, so two concurrent calls touching the same feature
cannot both pass their checks against stale state.

Usage:
    from api.database import create_database
    from api.feature_registry import FeatureDefinition, FeatureRegistryManager

    _, session_maker = create_database(project_dir)
    registry = FeatureRegistryManager(session_maker)

    registry.register_feature(FeatureDefinition(id="base", name="Base"))
    registry.register_feature(FeatureDefinition(
        id="priority",
        name="Priority",
        dependencies=[DependencySpec("base")],
    ))

    check = registry.disable_feature("base")
    assert not check.can_disable and check.dependent_features == ["priority"]
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from api.database import (
    DEFAULT_FEATURE_VERSION,
    DEPENDENCY_REQUIRED,
    DEPENDENCY_TYPES,
    Feature,
    FeatureDependency,
    atomic_transaction,
)
from api.dependency_graph import build_adjacency, build_graph_data, find_cycle
from api.errors import (
    DependencyCycleError,
    DependencyViolationError,
    DuplicateFeatureError,
    HasDependentsError,
    PersistenceError,
    SelfDependencyError,
    UnknownFeatureError,
)

_logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class DependencySpec:
    """A dependency declared on a feature definition."""
    depends_on: str
    dependency_type: str = DEPENDENCY_REQUIRED

    def to_dict(self) -> dict[str, Any]:
        return {"depends_on": self.depends_on, "dependency_type": self.dependency_type}


@dataclass
class FeatureDefinition:
    """
    A feature as registered in the store.

    components, api_endpoints and database_migrations are opaque descriptors
    kept in declaration order; files lists the project-relative paths the
    integrator wrote for this feature.
    """
    id: str
    name: str
    version: str = DEFAULT_FEATURE_VERSION
    enabled: bool = True
    description: str | None = None
    components: list[Any] = field(default_factory=list)
    api_endpoints: list[Any] = field(default_factory=list)
    database_migrations: list[Any] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    dependencies: list[DependencySpec] = field(default_factory=list)
    installed_at: datetime | None = None

    @classmethod
    def from_model(cls, feature: Feature) -> "FeatureDefinition":
        return cls(
            id=feature.id,
            name=feature.name,
            version=feature.version,
            enabled=bool(feature.enabled),
            description=feature.description,
            components=list(feature.components or []),
            api_endpoints=list(feature.api_endpoints or []),
            database_migrations=list(feature.database_migrations or []),
            files=list(feature.files or []),
            dependencies=[
                DependencySpec(edge.depends_on, edge.dependency_type)
                for edge in feature.dependencies
            ],
            installed_at=feature.installed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "enabled": self.enabled,
            "description": self.description,
            "components": self.components,
            "api_endpoints": self.api_endpoints,
            "database_migrations": self.database_migrations,
            "files": self.files,
            "dependencies": [d.to_dict() for d in self.dependencies],
            "installed_at": self.installed_at.isoformat() if self.installed_at else None,
        }


@dataclass
class DisableCheck:
    """Outcome of a disable check: blocked when enabled dependents exist."""
    can_disable: bool
    dependent_features: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_disable": self.can_disable,
            "dependent_features": self.dependent_features,
        }


# =============================================================================
# Registry Manager
# =============================================================================

class FeatureRegistryManager:
    """Feature CRUD and dependency rules over a SQLAlchemy session maker."""

    def __init__(self, session_maker: sessionmaker):
        self._session_maker = session_maker

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @contextmanager
    def _read_session(self) -> Iterator[Session]:
        session = self._session_maker()
        try:
            yield session
        except SQLAlchemyError as e:
            raise PersistenceError("read", e) from e
        finally:
            session.close()

    def get_feature(self, feature_id: str) -> FeatureDefinition | None:
        with self._read_session() as session:
            feature = session.get(Feature, feature_id)
            return FeatureDefinition.from_model(feature) if feature else None

    def get_all_features(self) -> list[FeatureDefinition]:
        """Return every feature, oldest installation first."""
        with self._read_session() as session:
            features = session.scalars(
                select(Feature).order_by(Feature.installed_at, Feature.id)
            ).all()
            return [FeatureDefinition.from_model(f) for f in features]

    def get_active_features(self) -> list[FeatureDefinition]:
        """Return enabled features, oldest installation first."""
        with self._read_session() as session:
            features = session.scalars(
                select(Feature)
                .where(Feature.enabled.is_(True))
                .order_by(Feature.installed_at, Feature.id)
            ).all()
            return [FeatureDefinition.from_model(f) for f in features]

    def is_feature_enabled(self, feature_id: str) -> bool:
        """True only for registered, enabled features."""
        with self._read_session() as session:
            enabled = session.scalar(select(Feature.enabled).where(Feature.id == feature_id))
            return bool(enabled)

    def can_disable_feature(self, feature_id: str) -> DisableCheck:
        """
        Report whether feature_id could be disabled right now.

        The dependents are the other enabled features holding a required
        edge on feature_id. This is advisory; disable_feature() repeats the
        check under its own lock.

        Raises:
            UnknownFeatureError: feature_id is not registered
        """
        with self._read_session() as session:
            if session.get(Feature, feature_id) is None:
                raise UnknownFeatureError(feature_id)
            dependents = self._enabled_required_dependents(session, feature_id)
            return DisableCheck(can_disable=not dependents, dependent_features=dependents)

    def get_feature_dependencies(self, feature_id: str) -> list[dict[str, Any]]:
        """
        Outgoing edges of feature_id with the target's name, version and state.

        Raises:
            UnknownFeatureError: feature_id is not registered
        """
        with self._read_session() as session:
            if session.get(Feature, feature_id) is None:
                raise UnknownFeatureError(feature_id)
            rows = session.execute(
                select(FeatureDependency, Feature)
                .join(Feature, Feature.id == FeatureDependency.depends_on)
                .where(FeatureDependency.feature_id == feature_id)
                .order_by(FeatureDependency.created_at, FeatureDependency.depends_on)
            ).all()
            return [
                {
                    **edge.to_dict(),
                    "name": target.name,
                    "version": target.version,
                    "enabled": bool(target.enabled),
                }
                for edge, target in rows
            ]

    def get_feature_dependents(self, feature_id: str) -> list[dict[str, Any]]:
        """Incoming edges of feature_id with the source's name and state."""
        with self._read_session() as session:
            if session.get(Feature, feature_id) is None:
                raise UnknownFeatureError(feature_id)
            rows = session.execute(
                select(FeatureDependency, Feature)
                .join(Feature, Feature.id == FeatureDependency.feature_id)
                .where(FeatureDependency.depends_on == feature_id)
                .order_by(FeatureDependency.feature_id)
            ).all()
            return [
                {
                    **edge.to_dict(),
                    "name": source.name,
                    "enabled": bool(source.enabled),
                }
                for edge, source in rows
            ]

    def get_disabled_requirements(self, feature_id: str) -> list[str]:
        """Required dependencies of feature_id that are currently disabled."""
        with self._read_session() as session:
            return list(session.scalars(
                select(FeatureDependency.depends_on)
                .join(Feature, Feature.id == FeatureDependency.depends_on)
                .where(
                    FeatureDependency.feature_id == feature_id,
                    FeatureDependency.dependency_type == DEPENDENCY_REQUIRED,
                    Feature.enabled.is_(False),
                )
                .order_by(FeatureDependency.depends_on)
            ).all())

    def check_new_dependencies(
        self,
        feature_id: str,
        dependencies: Iterable[DependencySpec],
        enabled: bool = True,
    ) -> list[str]:
        """
        Problems register_feature() would raise for these declared edges.

        Read-only, so callers can refuse a request before writing anything.
        register_feature() repeats every check under its lock.

        Returns:
            One message per rejected edge; empty when all are acceptable
        """
        with self._read_session() as session:
            states = {fid: bool(on) for fid, on in session.execute(select(Feature.id, Feature.enabled))}
            edges = [
                tuple(row) for row in session.execute(
                    select(
                        FeatureDependency.feature_id,
                        FeatureDependency.depends_on,
                        FeatureDependency.dependency_type,
                    )
                )
            ]

        problems: list[str] = []
        for dep in dependencies:
            if dep.dependency_type not in DEPENDENCY_TYPES:
                problems.append(f"Invalid dependency type for '{dep.depends_on}': {dep.dependency_type}")
            elif dep.depends_on == feature_id:
                problems.append(SelfDependencyError(feature_id).message)
            elif dep.depends_on not in states:
                problems.append(f"Dependency '{dep.depends_on}' is not registered")
            elif dep.dependency_type == DEPENDENCY_REQUIRED:
                cycle = find_cycle(build_adjacency(edges), feature_id, dep.depends_on)
                if cycle is not None:
                    problems.append(DependencyCycleError(feature_id, dep.depends_on, cycle).message)
                elif enabled and not states[dep.depends_on]:
                    problems.append(DependencyViolationError(feature_id, dep.depends_on).message)
                else:
                    edges.append((feature_id, dep.depends_on, dep.dependency_type))
        return problems

    def get_dependency_graph(self) -> dict[str, Any]:
        with self._read_session() as session:
            features = session.scalars(
                select(Feature).order_by(Feature.installed_at, Feature.id)
            ).all()
            edges = session.scalars(
                select(FeatureDependency).order_by(
                    FeatureDependency.feature_id, FeatureDependency.depends_on
                )
            ).all()
            return build_graph_data(
                [f.to_dict() for f in features],
                [e.to_dict() for e in edges],
            )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def register_feature(self, definition: FeatureDefinition) -> FeatureDefinition:
        """
        Insert a new feature together with its declared dependency edges.

        Raises:
            DuplicateFeatureError: a feature with this id already exists
            SelfDependencyError, UnknownFeatureError, DependencyCycleError,
            DependencyViolationError: a declared dependency is not allowed
        """
        if not definition.id or not definition.id.strip():
            raise ValueError("Feature id must not be empty")

        try:
            with atomic_transaction(self._session_maker) as session:
                if session.get(Feature, definition.id) is not None:
                    raise DuplicateFeatureError(definition.id)

                feature = Feature(
                    id=definition.id,
                    name=definition.name,
                    description=definition.description,
                    version=definition.version or DEFAULT_FEATURE_VERSION,
                    enabled=definition.enabled,
                    components=list(definition.components),
                    api_endpoints=list(definition.api_endpoints),
                    database_migrations=list(definition.database_migrations),
                    files=list(definition.files),
                )
                session.add(feature)
                session.flush()

                for dep in definition.dependencies:
                    self._upsert_dependency(
                        session, definition.id, dep.depends_on, dep.dependency_type
                    )

                session.refresh(feature)
                registered = FeatureDefinition.from_model(feature)
        except IntegrityError as e:
            # Concurrent insert of the same id on a server database
            raise DuplicateFeatureError(definition.id) from e

        _logger.info("Registered feature %s (%s)", registered.id, registered.version)
        return registered

    def enable_feature(self, feature_id: str) -> FeatureDefinition:
        """
        Set enabled = true. Idempotent; no check of the feature's own
        required dependencies is made (see get_disabled_requirements).

        Raises:
            UnknownFeatureError: feature_id is not registered
        """
        with atomic_transaction(self._session_maker) as session:
            feature = self._lock_feature(session, feature_id)
            if feature is None:
                raise UnknownFeatureError(feature_id)
            if not feature.enabled:
                feature.enabled = True
                _logger.info("Enabled feature %s", feature_id)
            session.flush()
            return FeatureDefinition.from_model(feature)

    def disable_feature(self, feature_id: str) -> DisableCheck:
        """
        Set enabled = false unless enabled features require feature_id.

        The dependent check and the write happen in one transaction. When
        blocked, nothing is written and the returned check lists the
        dependents.

        Raises:
            UnknownFeatureError: feature_id is not registered
        """
        with atomic_transaction(self._session_maker) as session:
            feature = self._lock_feature(session, feature_id)
            if feature is None:
                raise UnknownFeatureError(feature_id)

            dependents = self._enabled_required_dependents(session, feature_id)
            if dependents:
                _logger.info(
                    "Refusing to disable %s: required by %s", feature_id, dependents
                )
                return DisableCheck(can_disable=False, dependent_features=dependents)

            if feature.enabled:
                feature.enabled = False
                _logger.info("Disabled feature %s", feature_id)

        return DisableCheck(can_disable=True, dependent_features=[])

    def remove_feature(self, feature_id: str) -> None:
        """
        Delete feature_id and its outgoing edges.

        Raises:
            UnknownFeatureError: feature_id is not registered
            HasDependentsError: some feature still depends on feature_id
        """
        with atomic_transaction(self._session_maker) as session:
            feature = self._lock_feature(session, feature_id)
            if feature is None:
                raise UnknownFeatureError(feature_id)

            dependents = list(session.scalars(
                select(FeatureDependency.feature_id)
                .where(FeatureDependency.depends_on == feature_id)
                .order_by(FeatureDependency.feature_id)
            ).all())
            if dependents:
                raise HasDependentsError(feature_id, dependents)

            session.delete(feature)

        _logger.info("Removed feature %s", feature_id)

    def add_feature_dependency(
        self,
        feature_id: str,
        depends_on: str,
        dependency_type: str = DEPENDENCY_REQUIRED,
    ) -> dict[str, Any]:
        """
        Insert or update the edge feature_id -> depends_on.

        Raises:
            SelfDependencyError: feature_id == depends_on
            UnknownFeatureError: either feature is not registered
            DependencyCycleError: a required edge would close a required cycle
            DependencyViolationError: an enabled feature would require a
                disabled one
        """
        with atomic_transaction(self._session_maker) as session:
            edge = self._upsert_dependency(session, feature_id, depends_on, dependency_type)
            result = edge.to_dict()

        _logger.info(
            "Recorded %s dependency %s -> %s", dependency_type, feature_id, depends_on
        )
        return result

    def remove_feature_dependency(self, feature_id: str, depends_on: str) -> bool:
        """Delete the edge feature_id -> depends_on. Returns False if absent."""
        with atomic_transaction(self._session_maker) as session:
            edge = session.get(FeatureDependency, (feature_id, depends_on))
            if edge is None:
                return False
            session.delete(edge)

        _logger.info("Removed dependency %s -> %s", feature_id, depends_on)
        return True

    # -------------------------------------------------------------------------
    # Helpers (callers hold an atomic_transaction)
    # -------------------------------------------------------------------------

    def _lock_feature(self, session: Session, feature_id: str) -> Feature | None:
        # FOR UPDATE is dropped by the SQLite dialect; BEGIN IMMEDIATE covers it there
        return session.execute(
            select(Feature).where(Feature.id == feature_id).with_for_update()
        ).scalar_one_or_none()

    def _enabled_required_dependents(self, session: Session, feature_id: str) -> list[str]:
        return list(session.scalars(
            select(Feature.id)
            .join(FeatureDependency, FeatureDependency.feature_id == Feature.id)
            .where(
                FeatureDependency.depends_on == feature_id,
                FeatureDependency.dependency_type == DEPENDENCY_REQUIRED,
                Feature.enabled.is_(True),
                Feature.id != feature_id,
            )
            .order_by(Feature.id)
        ).all())

    def _upsert_dependency(
        self,
        session: Session,
        feature_id: str,
        depends_on: str,
        dependency_type: str,
    ) -> FeatureDependency:
        if dependency_type not in DEPENDENCY_TYPES:
            raise ValueError(
                f"Invalid dependency type: {dependency_type}. Valid: {DEPENDENCY_TYPES}"
            )
        if feature_id == depends_on:
            raise SelfDependencyError(feature_id)

        # Lock in a stable order so two writers never wait on each other crosswise
        locked = {fid: self._lock_feature(session, fid) for fid in sorted((feature_id, depends_on))}
        source, target = locked[feature_id], locked[depends_on]
        if source is None:
            raise UnknownFeatureError(feature_id)
        if target is None:
            raise UnknownFeatureError(depends_on)

        if dependency_type == DEPENDENCY_REQUIRED:
            edges = session.execute(
                select(
                    FeatureDependency.feature_id,
                    FeatureDependency.depends_on,
                    FeatureDependency.dependency_type,
                )
            ).all()
            cycle = find_cycle(build_adjacency(edges), feature_id, depends_on)
            if cycle is not None:
                raise DependencyCycleError(feature_id, depends_on, cycle)
            if source.enabled and not target.enabled:
                raise DependencyViolationError(feature_id, depends_on)

        edge = session.get(FeatureDependency, (feature_id, depends_on))
        if edge is None:
            edge = FeatureDependency(
                feature_id=feature_id,
                depends_on=depends_on,
                dependency_type=dependency_type,
            )
            session.add(edge)
        else:
            edge.dependency_type = dependency_type
        session.flush()
        return edge
