"""Tests for the domain dependency graph."""

from __future__ import annotations

import pytest

from edge_deploy.orchestrator.dependency_graph import DomainDependencyGraph
from edge_deploy.utils.errors import ValidationError


class TestWaves:
    def test_independent_domains_share_one_wave(self):
        graph = DomainDependencyGraph.from_mapping(["a.com", "b.com", "c.com"])

        assert graph.get_deployment_waves() == [["a.com", "b.com", "c.com"]]

    def test_dependencies_produce_ordered_waves(self):
        graph = DomainDependencyGraph.from_mapping(
            ["api.com", "auth.com", "web.com", "docs.com"],
            {"api.com": ["auth.com"], "web.com": ["api.com"]},
        )

        assert graph.get_deployment_waves() == [["auth.com", "docs.com"], ["api.com"], ["web.com"]]

    def test_transitive_dependents(self):
        graph = DomainDependencyGraph.from_mapping(
            ["a.com", "b.com", "c.com"],
            {"b.com": ["a.com"], "c.com": ["b.com"]},
        )

        assert graph.get_all_dependents("a.com") == {"b.com", "c.com"}
        assert graph.get_dependents("a.com") == {"b.com"}

    def test_replacing_dependencies(self):
        graph = DomainDependencyGraph()
        graph.add_domain("a.com")
        graph.add_domain("b.com", ["a.com"])
        graph.add_domain("b.com", [])

        assert graph.get_dependents("a.com") == set()
        assert graph.get_deployment_waves() == [["a.com", "b.com"]]


class TestValidation:
    def test_cycle_is_rejected(self):
        graph = DomainDependencyGraph.from_mapping(
            ["a.com", "b.com"],
            {"a.com": ["b.com"], "b.com": ["a.com"]},
        )

        assert graph.detect_circular_dependencies() is not None
        with pytest.raises(ValidationError, match="Circular"):
            graph.get_deployment_waves()

    def test_unknown_dependency_is_rejected(self):
        graph = DomainDependencyGraph.from_mapping(["a.com"], {"a.com": ["missing.com"]})

        with pytest.raises(ValidationError, match="missing.com"):
            graph.validate()
