"""Tests for matrix strategy expansion."""

from __future__ import annotations

import pytest

from gantry.engine.matrix import (
    MAX_COMBINATIONS,
    MatrixError,
    Strategy,
    expand,
    expand_matrix,
    instance_name,
)


class TestProduct:
    def test_no_matrix_is_single_instance(self):
        assert expand(None) == [{}]
        assert expand(Strategy(matrix=None)) == [{}]

    def test_product_order_follows_declaration(self):
        combos = expand_matrix({"gcc": [11, 12], "kernel": ["5.15", "6.1"]})
        assert combos == [
            {"gcc": 11, "kernel": "5.15"},
            {"gcc": 11, "kernel": "6.1"},
            {"gcc": 12, "kernel": "5.15"},
            {"gcc": 12, "kernel": "6.1"},
        ]

    def test_expansion_is_deterministic(self):
        matrix = {"os": ["a", "b"], "v": [1, 2, 3], "include": [{"extra": True}]}
        assert expand_matrix(matrix) == expand_matrix(matrix)

    def test_axis_must_be_list(self):
        with pytest.raises(MatrixError):
            expand_matrix({"os": "linux"})

    def test_empty_axis(self):
        with pytest.raises(MatrixError):
            expand_matrix({"os": []})

    def test_too_many_combinations(self):
        matrix = {"a": list(range(20)), "b": list(range(20))}
        assert 20 * 20 > MAX_COMBINATIONS
        with pytest.raises(MatrixError, match="max"):
            expand_matrix(matrix)

    def test_unresolved_expression_matrix(self):
        with pytest.raises(MatrixError):
            expand(Strategy(matrix="${{ fromJSON(needs.setup.outputs.matrix) }}"))


class TestExclude:
    def test_partial_key_exclude_removes_all_matching(self):
        combos = expand_matrix({
            "os": ["a", "b"],
            "v": [1, 2],
            "exclude": [{"os": "a"}],
        })
        assert combos == [{"os": "b", "v": 1}, {"os": "b", "v": 2}]

    def test_exclude_needs_every_key_to_match(self):
        combos = expand_matrix({
            "os": ["a", "b"],
            "v": [1, 2],
            "exclude": [{"os": "a", "v": 3}],
        })
        assert len(combos) == 4

    def test_exclude_everything_is_an_error(self):
        with pytest.raises(MatrixError, match="zero"):
            expand_matrix({"os": ["a"], "exclude": [{"os": "a"}]})

    def test_include_added_combination_survives_exclude(self):
        combos = expand_matrix({
            "os": ["a"],
            "exclude": [{"os": "a"}],
            "include": [{"os": "a", "flag": "x"}],
        })
        assert combos == [{"os": "a", "flag": "x"}]


class TestInclude:
    def test_include_merges_into_matching_combinations(self):
        combos = expand_matrix({
            "os": ["linux", "mac"],
            "py": ["3.11", "3.12"],
            "include": [{"os": "mac", "arch": "arm64"}],
        })
        assert combos[2] == {"os": "mac", "py": "3.11", "arch": "arm64"}
        assert combos[3] == {"os": "mac", "py": "3.12", "arch": "arm64"}
        assert "arch" not in combos[0]

    def test_include_without_match_is_appended(self):
        combos = expand_matrix({
            "os": ["linux"],
            "include": [{"os": "windows", "shell": "pwsh"}],
        })
        assert combos == [{"os": "linux"}, {"os": "windows", "shell": "pwsh"}]

    def test_include_with_new_keys_only_appends_one(self):
        combos = expand_matrix({
            "os": ["linux", "mac"],
            "include": [{"experimental": True}],
        })
        assert combos == [{"os": "linux"}, {"os": "mac"}, {"experimental": True}]

    def test_include_only_matrix(self):
        combos = expand_matrix({"include": [{"name": "one"}, {"name": "two"}]})
        assert combos == [{"name": "one"}, {"name": "two"}]

    def test_include_must_be_list_of_mappings(self):
        with pytest.raises(MatrixError):
            expand_matrix({"os": ["a"], "include": "nope"})


class TestStrategy:
    def test_context_values(self):
        strategy = Strategy(matrix={"os": ["a", "b"]}, fail_fast=False, max_parallel=None)
        assert strategy.as_context(1, 2) == {
            "fail-fast": False,
            "max-parallel": 2,
            "job-index": 1,
            "job-total": 2,
        }

    def test_instance_name(self):
        assert instance_name("build", {}) == "build"
        assert instance_name("build", {"os": "linux", "debug": True}) == "build (linux, true)"
