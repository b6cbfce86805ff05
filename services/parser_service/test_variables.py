"""Tests for document variables and the line dependency graph."""

import pytest

from services.parser_service.variables import DependencyGraph, VariableEnvironment


class TestVariableEnvironment:
    def test_last_write_wins(self):
        env = VariableEnvironment()
        env.set("hours", 7.5)
        env.set(" hours ", 8)

        assert env.get("hours") == 8
        assert env.names() == ["hours"]

    def test_invalid_name_is_rejected(self):
        with pytest.raises(ValueError):
            VariableEnvironment().set("2fast", 1)

    def test_substitute_whole_words_only(self):
        env = VariableEnvironment({"rate": 3})

        assert env.substitute("rate * 2 + rates") == "3 * 2 + rates"

    def test_longest_name_substituted_first(self):
        env = VariableEnvironment({"to": 1, "total": 50})

        assert env.substitute("total + to") == "50 + 1"

    def test_remove_and_clear(self):
        env = VariableEnvironment({"a": 1, "b": 2})

        assert env.remove("a") is True
        assert env.remove("a") is False
        assert "b" in env
        env.clear()
        assert len(env) == 0
        assert env.substitute("b") == "b"


class TestDependencyGraph:
    @pytest.fixture
    def graph(self):
        graph = DependencyGraph()
        graph.define("hours", 0)
        graph.define("team", 1)
        graph.set_line_uses(2, ["team", "hours"])
        return graph

    def test_changed_definition_reprocesses_dependents(self, graph):
        assert graph.lines_to_reprocess(0) == [2]
        assert graph.lines_to_reprocess(1) == [2]
        assert graph.lines_to_reprocess(2) == []

    def test_reprocessing_is_transitive(self):
        graph = DependencyGraph()
        graph.define("a", 0)
        graph.define("b", 1)
        graph.set_line_uses(1, ["a"])
        graph.set_line_uses(2, ["b"])

        assert graph.lines_to_reprocess(0) == [1, 2]

    def test_undefined_variables_are_not_tracked(self):
        graph = DependencyGraph()
        graph.set_line_uses(3, ["ghost"])

        assert graph.dependents == {}
        assert graph.line_uses[3] == {"ghost"}

    def test_new_uses_replace_old_ones(self, graph):
        graph.set_line_uses(2, ["hours"])
        assert graph.lines_to_reprocess(1) == []

        graph.set_line_uses(2, [])
        assert graph.lines_to_reprocess(0) == []
        assert 2 not in graph.line_uses

    def test_line_deleted_drops_definitions(self, graph):
        removed = graph.line_deleted(0)

        assert removed == ["hours"]
        assert "hours" not in graph.definitions
        assert "hours" not in graph.dependents

    def test_deleting_dependent_line(self, graph):
        graph.line_deleted(2)

        assert graph.dependents == {}
        assert graph.lines_to_reprocess(0) == []

    def test_remap_after_insertion(self, graph):
        graph.remap({0: 0, 1: 2, 2: 3})

        assert graph.definitions == {"hours": 0, "team": 2}
        assert graph.line_uses == {3: {"team", "hours"}}
        assert graph.lines_to_reprocess(2) == [3]

    def test_remap_drops_missing_lines(self, graph):
        graph.remap({0: 0, 1: 1})

        assert graph.dependents == {}
        assert graph.line_uses == {}

    def test_clear(self, graph):
        graph.clear()

        assert graph.definitions == {}
        assert graph.lines_to_reprocess(0) == []
