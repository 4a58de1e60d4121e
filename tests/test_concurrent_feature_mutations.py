"""
Concurrent Feature Mutation Tests
=================================

Two writers race on the same pair of features against a file-backed SQLite
store. Whatever the interleaving, the store must end in a state where no
enabled feature requires a disabled one.

Run with:
    pytest tests/test_concurrent_feature_mutations.py -v
"""
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.database import create_database
from api.errors import DependencyViolationError
from api.feature_registry import FeatureDefinition, FeatureRegistryManager


@pytest.fixture
def registry(tmp_path):
    engine, SessionLocal = create_database(project_dir=tmp_path)
    registry = FeatureRegistryManager(SessionLocal)
    registry.register_feature(FeatureDefinition(id="base", name="Base"))
    registry.register_feature(FeatureDefinition(id="priority", name="Priority"))
    yield registry
    engine.dispose()


def _race(registry):
    """Run disable('base') and add('priority' -> 'base') at the same time."""
    barrier = threading.Barrier(2)
    outcomes = {}

    def disable():
        barrier.wait()
        try:
            outcomes["disable"] = registry.disable_feature("base")
        except Exception as e:  # recorded for the assertions below
            outcomes["disable"] = e

    def add_edge():
        barrier.wait()
        try:
            outcomes["add"] = registry.add_feature_dependency("priority", "base", "required")
        except Exception as e:
            outcomes["add"] = e

    threads = [threading.Thread(target=disable), threading.Thread(target=add_edge)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    return outcomes


class TestDisableVersusRequiredEdge:
    """disable_feature and add_feature_dependency serialize on the store."""

    @pytest.mark.parametrize("attempt", range(5))
    def test_ends_in_a_consistent_state(self, registry, attempt):
        outcomes = _race(registry)

        base_enabled = registry.is_feature_enabled("base")
        edges = registry.get_feature_dependencies("priority")

        if base_enabled:
            # The edge won: disable saw the dependent and refused
            assert outcomes["add"]["depends_on"] == "base"
            assert outcomes["disable"].can_disable is False
            assert outcomes["disable"].dependent_features == ["priority"]
            assert [e["depends_on"] for e in edges] == ["base"]
        else:
            # The disable won: the enabled feature may not require it any more
            assert outcomes["disable"].can_disable is True
            assert isinstance(outcomes["add"], DependencyViolationError)
            assert edges == []

    def test_no_enabled_feature_requires_a_disabled_one(self, registry):
        _race(registry)

        for feature in registry.get_active_features():
            assert registry.get_disabled_requirements(feature.id) == []
