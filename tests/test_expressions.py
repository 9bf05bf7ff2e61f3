"""Tests for the ${{ }} expression language."""

from __future__ import annotations

import pytest

from gantry.engine.context import Context, NeedState, StepState
from gantry.engine.expressions import (
    ExpressionError,
    UnresolvedReference,
    condition_survives_cancel,
    contains_expression,
    evaluate,
    evaluate_condition,
    hash_files,
    interpolate,
    interpolate_string,
    is_truthy,
    to_string,
)

# --- Fixtures ---


def make_context(**kwargs) -> Context:
    return Context(
        github=kwargs.get("github", {"ref": "refs/heads/main", "event_name": "push"}),
        env=kwargs.get("env", {"MODE": "release"}),
        inputs=kwargs.get("inputs", {}),
        matrix=kwargs.get("matrix", {}),
        needs=kwargs.get("needs", {}),
        steps=kwargs.get("steps", {}),
        status=kwargs.get("status", "success"),
        cancelled=kwargs.get("cancelled", False),
        workspace=kwargs.get("workspace", Context().workspace),
    )


class TestLiteralsAndOperators:
    def test_literals(self):
        ctx = make_context()
        assert evaluate("'it''s'", ctx) == "it's"
        assert evaluate("42", ctx) == 42
        assert evaluate("true", ctx) is True
        assert evaluate("null", ctx) is None

    def test_string_equality_is_case_insensitive(self):
        assert evaluate("github.event_name == 'PUSH'", make_context()) is True

    def test_loose_number_equality(self):
        ctx = make_context(inputs={"count": "3"})
        assert evaluate("inputs.count == 3", ctx) is True
        assert evaluate("inputs.count > 2", ctx) is True

    def test_logical_operators_return_operand(self):
        ctx = make_context()
        assert evaluate("'' || 'fallback'", ctx) == "fallback"
        assert evaluate("'a' && 'b'", ctx) == "b"
        assert evaluate("!github.ref", ctx) is False

    def test_parentheses_and_precedence(self):
        ctx = make_context()
        assert evaluate("(1 == 2 || 2 == 2) && !(3 < 1)", ctx) is True

    def test_syntax_error(self):
        with pytest.raises(ExpressionError):
            evaluate("github.ref ==", make_context())

    def test_unknown_function(self):
        with pytest.raises(ExpressionError):
            evaluate("nope()", make_context())


class TestReferences:
    def test_dotted_and_index_lookup(self):
        ctx = make_context()
        assert evaluate("github.ref", ctx) == "refs/heads/main"
        assert evaluate("github['ref']", ctx) == "refs/heads/main"

    def test_case_insensitive_context_names(self):
        assert evaluate("GITHUB.REF", make_context()) == "refs/heads/main"

    def test_missing_step_is_unresolved(self):
        with pytest.raises(UnresolvedReference) as exc_info:
            evaluate("steps.build.outputs.version", make_context())
        assert "steps" in str(exc_info.value)

    def test_step_outputs(self):
        ctx = make_context(steps={
            "build": StepState(outputs={"version": "1.2"}, outcome="success", conclusion="success"),
        })
        assert evaluate("steps.build.outputs.version", ctx) == "1.2"
        assert evaluate("steps.build.outcome", ctx) == "success"

    def test_needs_outputs(self):
        ctx = make_context(needs={"build": NeedState("success", {"tag": "v1"})})
        assert evaluate("needs.build.result", ctx) == "success"
        assert evaluate("needs.build.outputs.tag", ctx) == "v1"

    def test_object_filter(self):
        ctx = make_context(inputs={"items": [{"n": "a"}, {"n": "b"}]})
        assert evaluate("inputs.items.*.n", ctx) == ["a", "b"]
        assert evaluate("contains(inputs.items.*.n, 'b')", ctx) is True

    def test_unknown_namespace(self):
        with pytest.raises(UnresolvedReference):
            evaluate("nothing.here", make_context())


class TestFunctions:
    def test_contains_starts_ends(self):
        ctx = make_context()
        assert evaluate("contains('Hello World', 'world')", ctx) is True
        assert evaluate("startsWith(github.ref, 'refs/heads/')", ctx) is True
        assert evaluate("endsWith(github.ref, 'MAIN')", ctx) is True

    def test_format(self):
        ctx = make_context()
        assert evaluate("format('{0}-{1} {{x}}', 'a', 2)", ctx) == "a-2 {x}"

    def test_join_and_json(self):
        ctx = make_context()
        assert evaluate("join(fromJSON('[1, 2, 3]'), '+')", ctx) == "1+2+3"
        assert evaluate("fromJSON('{\"a\": true}').a", ctx) is True
        assert evaluate("toJSON('x')", ctx) == '"x"'

    def test_from_json_invalid(self):
        with pytest.raises(ExpressionError):
            evaluate("fromJSON('{broken')", make_context())

    def test_status_functions(self):
        failed = make_context(status="failure")
        assert evaluate("success()", failed) is False
        assert evaluate("failure()", failed) is True
        assert evaluate("always()", failed) is True
        cancelled = make_context(cancelled=True)
        assert evaluate("cancelled()", cancelled) is True
        assert evaluate("success()", cancelled) is False


class TestHashFiles:
    def test_stable_regardless_of_pattern_order(self, tmp_path):
        (tmp_path / "a.lock").write_text("one")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.lock").write_text("two")

        first = hash_files(["**/*.lock"], tmp_path)
        second = hash_files(["sub/b.lock", "a.lock"], tmp_path)
        assert first == second
        assert len(first) == 64

    def test_content_change_changes_hash(self, tmp_path):
        (tmp_path / "a.lock").write_text("one")
        before = hash_files(["*.lock"], tmp_path)
        (tmp_path / "a.lock").write_text("changed")
        assert hash_files(["*.lock"], tmp_path) != before

    def test_no_match_is_empty(self, tmp_path):
        assert hash_files(["*.nothing"], tmp_path) == ""

    def test_negation(self, tmp_path):
        (tmp_path / "a.lock").write_text("one")
        (tmp_path / "b.lock").write_text("two")
        only_a = hash_files(["a.lock"], tmp_path)
        assert hash_files(["*.lock", "!b.lock"], tmp_path) == only_a

    def test_symlink_to_file_outside_workspace(self, tmp_path):
        ws = tmp_path / "ws"
        ws.mkdir()
        (tmp_path / "outside.txt").write_text("shared")
        (ws / "link.txt").symlink_to(tmp_path / "outside.txt")
        (ws / "plain.txt").write_text("local")

        digest = hash_files(["*.txt"], ws)
        assert len(digest) == 64
        assert digest == hash_files(["plain.txt", "link.txt"], ws)
        assert hash_files(["*.txt", "!link.txt"], ws) == hash_files(["plain.txt"], ws)

    def test_from_expression_uses_workspace(self, tmp_path):
        (tmp_path / "req.txt").write_text("pkg==1")
        ctx = make_context(workspace=tmp_path)
        assert evaluate("hashFiles('req.txt')", ctx) == hash_files(["req.txt"], tmp_path)


class TestInterpolation:
    def test_single_expression_keeps_type(self):
        ctx = make_context()
        assert interpolate("${{ fromJSON('[1, 2]') }}", ctx) == [1, 2]

    def test_mixed_text_renders_strings(self):
        ctx = make_context(matrix={"os": "linux", "debug": True})
        assert interpolate("build-${{ matrix.os }}-${{ matrix.debug }}", ctx) == "build-linux-true"

    def test_nested_structures(self):
        ctx = make_context()
        value = interpolate({"a": ["${{ env.MODE }}"], "b": 1}, ctx)
        assert value == {"a": ["release"], "b": 1}

    def test_interpolate_string_renders(self):
        assert interpolate_string("${{ 1 == 1 }}", make_context()) == "true"

    def test_braces_inside_string_literal(self):
        assert interpolate("${{ format('{0}}}', 'x') }}", make_context()) == "x}"

    def test_unterminated(self):
        with pytest.raises(ExpressionError):
            interpolate("${{ github.ref", make_context())

    def test_contains_expression(self):
        assert contains_expression({"k": ["${{ x }}"]}) is True
        assert contains_expression({"k": ["plain"]}) is False

    def test_to_string(self):
        assert to_string(None) == ""
        assert to_string(3.0) == "3"
        assert to_string(False) == "false"

    def test_truthiness(self):
        assert is_truthy("") is False
        assert is_truthy("0") is True
        assert is_truthy(0) is False
        assert is_truthy([]) is True


class TestConditions:
    def test_empty_condition_means_success(self):
        assert evaluate_condition(None, make_context()) is True
        assert evaluate_condition(None, make_context(status="failure")) is False

    def test_implicit_success_guard(self):
        ctx = make_context(status="failure")
        assert evaluate_condition("github.ref == 'refs/heads/main'", ctx) is False

    def test_explicit_status_function_overrides_guard(self):
        ctx = make_context(status="failure")
        assert evaluate_condition("${{ failure() }}", ctx) is True
        assert evaluate_condition("always() && github.ref != ''", ctx) is True

    def test_unresolved_reference_blocks(self):
        assert evaluate_condition("steps.missing.outputs.x == 'y'", make_context()) is False

    def test_syntax_error_propagates(self):
        with pytest.raises(ExpressionError):
            evaluate_condition("((", make_context())

    def test_survives_cancel(self):
        assert condition_survives_cancel("always()") is True
        assert condition_survives_cancel("${{ cancelled() || failure() }}") is True
        assert condition_survives_cancel("success()") is False
        assert condition_survives_cancel(None) is False
