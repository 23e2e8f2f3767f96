"""Tests for the graph validator: validate_graph."""

from __future__ import annotations

import pytest

from procflow.compiler.parser import parse_graph
from procflow.compiler.validator import ValidationErrorKind, validate_graph


def _kinds(doc: dict) -> set[str]:
    return validate_graph(parse_graph(doc)).kinds()


class TestValidGraphs:
    """Well-formed graphs produce zero errors."""

    @pytest.mark.parametrize(
        "fixture_name", ["linear_graph", "decision_graph", "review_graph", "recovery_graph"]
    )
    def test_fixture_graphs_valid(self, request, fixture_name):
        result = validate_graph(parse_graph(request.getfixturevalue(fixture_name)))
        assert result.ok, f"Unexpected errors: {[str(e) for e in result.errors]}"

    def test_dependency_graphs_valid(self, make_dependency_graph, make_parent_graph):
        assert validate_graph(parse_graph(make_dependency_graph("identity_check"))).ok
        assert validate_graph(parse_graph(make_parent_graph(["identity_check"]))).ok
        assert validate_graph(parse_graph(make_parent_graph(["identity_check"], gate=True))).ok

    def test_annotated_self_loop_allowed(self, linear_graph):
        linear_graph["edges"].append({"from": "collect", "to": "collect", "kind": "recovery"})
        assert _kinds(linear_graph) == set()


class TestInvalidGraphs:
    """Each structural defect is reported with its own kind."""

    def test_unreachable_node(self, linear_graph):
        linear_graph["nodes"]["orphan"] = {"kind": "end"}
        result = validate_graph(parse_graph(linear_graph))
        assert result.kinds() == {ValidationErrorKind.UNREACHABLE_NODE}
        assert result.errors[0].node_id == "orphan"

    def test_dead_end(self, linear_graph):
        linear_graph["nodes"]["stuck"] = {"kind": "action", "handler": "collect"}
        linear_graph["edges"].append({"from": "start", "to": "stuck"})
        kinds = _kinds(linear_graph)
        assert ValidationErrorKind.DEAD_END in kinds
        assert ValidationErrorKind.NO_EXIT_PATH in kinds

    def test_multi_node_cycle(self, linear_graph):
        linear_graph["edges"].append({"from": "verify", "to": "collect"})
        result = validate_graph(parse_graph(linear_graph))
        cycles = [e for e in result.errors if e.kind == ValidationErrorKind.CYCLE]
        assert len(cycles) == 1
        assert "collect" in cycles[0].message and "verify" in cycles[0].message

    def test_recovery_edges_count_for_cycles(self, recovery_graph):
        recovery_graph["edges"].append({"from": "fallback", "to": "primary", "kind": "recovery"})
        assert ValidationErrorKind.CYCLE in _kinds(recovery_graph)

    def test_unannotated_self_loop(self, linear_graph):
        linear_graph["edges"].append({"from": "collect", "to": "collect"})
        assert ValidationErrorKind.CYCLE in _kinds(linear_graph)

    def test_self_loop_on_decision_rejected(self, decision_graph):
        decision_graph["edges"].append({"from": "route", "to": "route", "kind": "recovery"})
        assert ValidationErrorKind.CYCLE in _kinds(decision_graph)

    def test_dangling_edge(self, linear_graph):
        linear_graph["edges"].append({"from": "verify", "to": "ghost"})
        result = validate_graph(parse_graph(linear_graph))
        assert ValidationErrorKind.DANGLING_EDGE in result.kinds()
        assert any("ghost" in str(e) for e in result.errors)

    def test_missing_start(self, linear_graph):
        linear_graph["nodes"]["start"] = {"kind": "decision"}
        assert ValidationErrorKind.MISSING_START in _kinds(linear_graph)

    def test_multiple_start(self, linear_graph):
        linear_graph["nodes"]["start2"] = {"kind": "start"}
        linear_graph["edges"].append({"from": "start2", "to": "end"})
        assert ValidationErrorKind.MULTIPLE_START in _kinds(linear_graph)

    def test_entry_not_start(self, linear_graph):
        linear_graph["entry_node"] = "collect"
        assert ValidationErrorKind.ENTRY_NOT_START in _kinds(linear_graph)

    def test_entry_does_not_exist(self, linear_graph):
        linear_graph["entry_node"] = "nowhere"
        assert ValidationErrorKind.DANGLING_EDGE in _kinds(linear_graph)

    def test_no_exit_node(self):
        doc = {
            "graph_id": "endless",
            "version": "1.0.0",
            "nodes": {"start": {"kind": "start"}, "work": {"kind": "action", "handler": "collect"}},
            "edges": [
                {"from": "start", "to": "work"},
                {"from": "work", "to": "work", "kind": "recovery"},
            ],
        }
        kinds = _kinds(doc)
        assert ValidationErrorKind.NO_EXIT_NODE in kinds
        assert ValidationErrorKind.DEAD_END in kinds

    def test_edge_from_exit(self, linear_graph):
        linear_graph["nodes"]["after"] = {"kind": "end"}
        linear_graph["edges"].append({"from": "end", "to": "after"})
        assert ValidationErrorKind.EDGE_FROM_EXIT in _kinds(linear_graph)

    def test_self_dependency(self, linear_graph):
        linear_graph["nodes"]["collect"]["dependencies"] = ["linear"]
        assert _kinds(linear_graph) == {ValidationErrorKind.SELF_DEPENDENCY}

    def test_self_dependency_via_alternative(self, linear_graph):
        linear_graph["nodes"]["collect"]["dependencies"] = [
            {"graph_id": "identity_check", "alternatives": [{"graph_id": "linear"}]}
        ]
        assert _kinds(linear_graph) == {ValidationErrorKind.SELF_DEPENDENCY}

    @pytest.mark.parametrize(
        "policy",
        [
            {"max_attempts": 0},
            {"backoff_base_s": -1},
            {"backoff_factor": 0.5},
            {"jitter": 1.5},
        ],
    )
    def test_invalid_retry_policy(self, linear_graph, policy):
        linear_graph["nodes"]["collect"]["retry_policy"] = policy
        assert _kinds(linear_graph) == {ValidationErrorKind.INVALID_RETRY_POLICY}

    def test_reports_all_errors_together(self, linear_graph):
        linear_graph["nodes"]["orphan"] = {"kind": "end"}
        linear_graph["edges"].append({"from": "verify", "to": "ghost"})
        linear_graph["nodes"]["verify"]["retry_policy"] = {"max_attempts": 0}
        kinds = _kinds(linear_graph)
        assert {
            ValidationErrorKind.UNREACHABLE_NODE,
            ValidationErrorKind.DANGLING_EDGE,
            ValidationErrorKind.INVALID_RETRY_POLICY,
        } <= kinds

    def test_issue_to_dict(self, linear_graph):
        linear_graph["nodes"]["orphan"] = {"kind": "end"}
        issue = validate_graph(parse_graph(linear_graph)).errors[0]
        assert issue.to_dict() == {
            "kind": ValidationErrorKind.UNREACHABLE_NODE,
            "message": str(issue),
            "node_id": "orphan",
        }
