"""
Tests for resource graph construction.
"""

import random

import pytest

from terrycore.core.errors import (
    ConfigurationError,
    CycleError,
    DuplicateAddressError,
    UnresolvedReferenceError,
)
from terrycore.core.graph import GraphBuilder, ResourceDeclaration, topological_sort
from terrycore.core.values import Value

from conftest import data_source, resource


def ref(text):
    return Value.reference(text)


class TestGraphBuilder:

    def test_dependencies_come_first(self):
        graph = GraphBuilder().build([
            resource("test_thing", "c", parent=ref("test_thing.b.id")),
            resource("test_thing", "b", parent=ref("test_thing.a.id")),
            resource("test_thing", "a"),
        ])
        assert graph.order == ["test_thing.a", "test_thing.b", "test_thing.c"]
        assert graph.dependencies("test_thing.b") == ["test_thing.a"]
        assert graph.dependents("test_thing.a") == ["test_thing.b"]
        assert graph.transitive_dependents("test_thing.a") == ["test_thing.b", "test_thing.c"]

    def test_ties_break_by_address(self):
        graph = GraphBuilder().build([
            resource("test_thing", "zeta"),
            resource("test_thing", "alpha"),
            resource("test_thing", "mid"),
        ])
        assert graph.order == ["test_thing.alpha", "test_thing.mid", "test_thing.zeta"]

    def test_order_independent_of_input_order(self):
        decls = [
            resource("test_thing", "net"),
            resource("test_thing", "subnet", net=ref("test_thing.net.id")),
            resource("test_server", "web", subnet=ref("test_thing.subnet.id")),
            resource("test_server", "db", subnet=ref("test_thing.subnet.id")),
            resource("test_thing", "dns", target=ref("test_server.web.ip")),
        ]
        expected = GraphBuilder().build(decls).order
        for seed in range(5):
            shuffled = list(decls)
            random.Random(seed).shuffle(shuffled)
            assert GraphBuilder().build(shuffled).order == expected

    def test_explicit_depends_on(self):
        graph = GraphBuilder().build([
            resource("test_thing", "b", depends_on=["test_thing.a"]),
            resource("test_thing", "a"),
        ])
        assert graph.dependencies("test_thing.b") == ["test_thing.a"]

    def test_template_references_create_edges(self):
        graph = GraphBuilder().build([
            resource("test_thing", "a"),
            ResourceDeclaration(
                type="test_thing",
                name="b",
                attributes={"label": Value.template("x-", ref("test_thing.a.id").payload)},
            ),
        ])
        assert graph.dependencies("test_thing.b") == ["test_thing.a"]

    def test_data_source_address(self):
        graph = GraphBuilder().build([
            data_source("test_lookup", "base", id="img-1"),
            resource("test_server", "web", image=ref("data.test_lookup.base.id")),
        ])
        assert "data.test_lookup.base" in graph
        assert graph.dependencies("test_server.web") == ["data.test_lookup.base"]

    def test_unresolved_reference(self):
        with pytest.raises(UnresolvedReferenceError) as exc:
            GraphBuilder().build([resource("test_thing", "a", vpc=ref("test_thing.missing.id"))])
        assert exc.value.source == "test_thing.a"
        assert exc.value.target == "test_thing.missing"

    def test_duplicate_address(self):
        with pytest.raises(DuplicateAddressError):
            GraphBuilder().build([resource("test_thing", "a"), resource("test_thing", "a")])

    def test_cycle_names_members(self):
        with pytest.raises(CycleError) as exc:
            GraphBuilder().build([
                resource("test_thing", "a", other=ref("test_thing.b.id")),
                resource("test_thing", "b", other=ref("test_thing.a.id")),
                resource("test_thing", "c", other=ref("test_thing.a.id")),
            ])
        assert exc.value.members == ["test_thing.a", "test_thing.b"]

    def test_self_reference_is_a_cycle(self):
        with pytest.raises(CycleError) as exc:
            GraphBuilder().build([resource("test_thing", "a", me=ref("test_thing.a.id"))])
        assert exc.value.members == ["test_thing.a"]

    def test_cycle_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            GraphBuilder().build([
                resource("test_thing", "a", depends_on=["test_thing.b"]),
                resource("test_thing", "b", depends_on=["test_thing.a"]),
            ])

    @pytest.mark.parametrize("resource_type,name", [
        ("bad type", "a"),
        ("test_thing", "has.dot"),
        ("test_thing", ""),
        ("1type", "a"),
    ])
    def test_malformed_identifiers(self, resource_type, name):
        with pytest.raises(ConfigurationError):
            GraphBuilder().build([ResourceDeclaration(type=resource_type, name=name)])

    def test_empty(self):
        graph = GraphBuilder().build([])
        assert len(graph) == 0
        assert list(graph) == []


class TestTopologicalSort:

    def test_diamond(self):
        edges = {"a": set(), "b": {"a"}, "c": {"a"}, "d": {"b", "c"}}
        assert topological_sort(edges) == ["a", "b", "c", "d"]

    def test_cycle_excludes_nodes_only_downstream(self):
        edges = {"a": {"b"}, "b": {"a"}, "c": {"b"}, "d": set()}
        with pytest.raises(CycleError) as exc:
            topological_sort(edges)
        assert exc.value.members == ["a", "b"]

    def test_long_cycle(self):
        size = 3000
        edges = {f"n{i:05d}": {f"n{(i + 1) % size:05d}"} for i in range(size)}
        edges["tail"] = {"n00000"}

        with pytest.raises(CycleError) as exc:
            topological_sort(edges)
        assert len(exc.value.members) == size
        assert "tail" not in exc.value.members
