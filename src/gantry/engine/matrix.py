"""Matrix strategy expansion."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any

MAX_COMBINATIONS = 256


class MatrixError(ValueError):
    """The matrix definition is malformed or expands to an invalid set."""


@dataclass
class Strategy:
    """Parsed ``strategy:`` block of a job."""

    matrix: dict[str, Any] | str | None = None
    fail_fast: bool = True
    max_parallel: int | None = None

    def as_context(self, job_index: int = 0, job_total: int = 1) -> dict[str, Any]:
        return {
            "fail-fast": self.fail_fast,
            "max-parallel": self.max_parallel or job_total,
            "job-index": job_index,
            "job-total": job_total,
        }


@dataclass
class Combination:
    values: dict[str, Any] = field(default_factory=dict)
    from_product: bool = True


def _matches(combo: dict[str, Any], pattern: dict[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in pattern.items())


def expand_matrix(matrix: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Expand a resolved matrix mapping into ordered combinations.

    1. Cartesian product over the axes, in declaration order.
    2. Each ``exclude`` entry removes the product combinations matching all
       of its keys.
    3. Each ``include`` entry is matched on the keys it shares with the axes.
       Matching combinations get its remaining keys merged in. An entry that
       matches nothing, or shares no key with any axis, is appended as its own
       combination.
    """
    if not matrix:
        return [{}]
    if not isinstance(matrix, dict):
        raise MatrixError(f"Matrix must be a mapping, got {type(matrix).__name__}")

    axes: dict[str, list[Any]] = {}
    include: list[dict[str, Any]] = []
    exclude: list[dict[str, Any]] = []
    for key, value in matrix.items():
        if key == "include":
            include = _entries(value, "include")
        elif key == "exclude":
            exclude = _entries(value, "exclude")
        else:
            if not isinstance(value, list):
                raise MatrixError(f"Matrix axis '{key}' must be a list")
            if not value:
                raise MatrixError(f"Matrix axis '{key}' is empty")
            axes[key] = value

    combos: list[Combination] = []
    if axes:
        for values in itertools.product(*axes.values()):
            combos.append(Combination(dict(zip(axes.keys(), values))))

    for entry in exclude:
        combos = [c for c in combos if not _matches(c.values, entry)]

    for entry in include:
        shared = {k: v for k, v in entry.items() if k in axes}
        extra = {k: v for k, v in entry.items() if k not in axes}
        matched = False
        if shared:
            for combo in combos:
                if combo.from_product and _matches(combo.values, shared):
                    combo.values.update(extra)
                    matched = True
        if not matched:
            combos.append(Combination(dict(entry), from_product=False))

    if not combos:
        raise MatrixError("Matrix expands to zero combinations")
    if len(combos) > MAX_COMBINATIONS:
        raise MatrixError(
            f"Matrix expands to {len(combos)} combinations (max {MAX_COMBINATIONS})"
        )
    return [c.values for c in combos]


def _entries(value: Any, name: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise MatrixError(f"Matrix '{name}' must be a list of mappings")
    return value


def expand(strategy: Strategy | None) -> list[dict[str, Any]]:
    """Expand a strategy whose matrix expressions are already resolved."""
    if strategy is None or strategy.matrix is None:
        return [{}]
    if isinstance(strategy.matrix, str):
        raise MatrixError(f"Unresolved matrix expression: {strategy.matrix}")
    return expand_matrix(strategy.matrix)


def instance_name(job_id: str, combo: dict[str, Any]) -> str:
    """Display name like ``build (ubuntu, 3.12)``."""
    if not combo:
        return job_id
    parts = []
    for value in combo.values():
        if isinstance(value, bool):
            parts.append("true" if value else "false")
        else:
            parts.append(str(value))
    return f"{job_id} ({', '.join(parts)})"
