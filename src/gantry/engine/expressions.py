"""Evaluator for ``${{ ... }}`` workflow expressions.

Expressions are tokenized and parsed into a small tree of frozen dataclasses,
then evaluated against a run context. The context is anything exposing
``namespace(name)`` (see :class:`gantry.engine.context.Context`) or a plain
mapping of namespace names to values.

Semantics follow the GitHub Actions expression language:

- ``&&`` / ``||`` short-circuit and return operand values
- ``==`` / ``!=`` / ``<`` ... coerce mismatched types to numbers and compare
  strings case-insensitively
- ``null``, ``false``, ``0``, ``""`` and ``NaN`` are falsy
"""

from __future__ import annotations

import functools
import hashlib
import json
import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, NamedTuple, Union

logger = logging.getLogger(__name__)


class ExpressionError(Exception):
    """An expression could not be parsed or evaluated."""


class UnresolvedReference(ExpressionError):
    """A context path segment does not exist (yet) in the run context."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Unresolved reference: '{path}'")


# ---------------------------------------------------------------------------
# Syntax tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ContextRef:
    name: str


@dataclass(frozen=True)
class Property:
    target: Node
    name: str


@dataclass(frozen=True)
class Index:
    target: Node
    index: Node


@dataclass(frozen=True)
class Star:
    """Object filter (``needs.*.result``)."""

    target: Node


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple[Node, ...]


@dataclass(frozen=True)
class Not:
    operand: Node


@dataclass(frozen=True)
class Compare:
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Logical:
    op: str  # "&&" | "||"
    left: Node
    right: Node


Node = Union[Literal, ContextRef, Property, Index, Star, Call, Not, Compare, Logical]

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<number>-?(?:0x[0-9a-fA-F]+|\d+(?:\.\d+)?(?:[eE][+-]?\d+)?))
    | (?P<string>'(?:[^']|'')*')
    | (?P<op>==|!=|<=|>=|&&|\|\||[<>!()\[\],.*])
    | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


class _Token(NamedTuple):
    kind: str
    value: str
    pos: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ExpressionError(
                f"Unexpected character {text[pos]!r} at position {pos} in '{text}'"
            )
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, match.group(0), pos))
        pos = match.end()
    tokens.append(_Token("end", "", len(text)))
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    """Recursive-descent parser, lowest precedence first."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def _peek(self) -> _Token:
        return self.tokens[self.index]

    def _next(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, *values: str) -> _Token | None:
        token = self._peek()
        if token.kind == "op" and token.value in values:
            self.index += 1
            return token
        return None

    def _expect(self, value: str) -> None:
        token = self._next()
        if token.kind != "op" or token.value != value:
            raise ExpressionError(
                f"Expected '{value}' at position {token.pos} in '{self.text}'"
            )

    def parse(self) -> Node:
        if self._peek().kind == "end":
            raise ExpressionError("Empty expression")
        node = self._or()
        token = self._peek()
        if token.kind != "end":
            raise ExpressionError(
                f"Unexpected '{token.value}' at position {token.pos} in '{self.text}'"
            )
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._accept("&&"):
            node = Logical("&&", node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._comparison()
        while True:
            token = self._accept("==", "!=")
            if token is None:
                return node
            node = Compare(token.value, node, self._comparison())

    def _comparison(self) -> Node:
        node = self._unary()
        while True:
            token = self._accept("<", "<=", ">", ">=")
            if token is None:
                return node
            node = Compare(token.value, node, self._unary())

    def _unary(self) -> Node:
        if self._accept("!"):
            return Not(self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("."):
                token = self._next()
                if token.kind == "ident":
                    node = Property(node, token.value)
                elif token.kind == "op" and token.value == "*":
                    node = Star(node)
                else:
                    raise ExpressionError(
                        f"Expected property name at position {token.pos} in '{self.text}'"
                    )
            elif self._accept("["):
                if self._accept("*"):
                    node = Star(node)
                else:
                    node = Index(node, self._or())
                self._expect("]")
            else:
                return node

    def _primary(self) -> Node:
        token = self._next()
        if token.kind == "number":
            return Literal(_parse_number(token.value))
        if token.kind == "string":
            return Literal(token.value[1:-1].replace("''", "'"))
        if token.kind == "op" and token.value == "(":
            node = self._or()
            self._expect(")")
            return node
        if token.kind == "ident":
            if self._accept("("):
                return self._call(token)
            if token.value == "true":
                return Literal(True)
            if token.value == "false":
                return Literal(False)
            if token.value == "null":
                return Literal(None)
            return ContextRef(token.value)
        raise ExpressionError(
            f"Unexpected '{token.value or 'end of expression'}' at position "
            f"{token.pos} in '{self.text}'"
        )

    def _call(self, name_token: _Token) -> Node:
        name = name_token.value.lower()
        if name not in _FUNCTIONS:
            raise ExpressionError(f"Unknown function '{name_token.value}'")
        args: list[Node] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        min_args, max_args, _ = _FUNCTIONS[name]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise ExpressionError(
                f"Function '{name_token.value}' called with {len(args)} argument(s)"
            )
        return Call(name, tuple(args))


def _parse_number(text: str) -> int | float:
    sign = -1 if text.startswith("-") else 1
    digits = text.lstrip("-")
    if digits.lower().startswith("0x"):
        return sign * int(digits, 16)
    if any(c in digits for c in ".eE"):
        return sign * float(digits)
    return sign * int(digits)


@functools.lru_cache(maxsize=1024)
def parse(expression: str) -> Node:
    """Parse an expression (without the ``${{ }}`` wrapper) into a syntax tree."""
    return _Parser(expression).parse()


# ---------------------------------------------------------------------------
# Value conversions
# ---------------------------------------------------------------------------


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    return "array"


def is_truthy(value: Any) -> bool:
    """Truthiness as defined by the expression language."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def to_string(value: Any) -> str:
    """Render a value the way interpolation does."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, (int, str)):
        return str(value)
    return json.dumps(value, indent=2)


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            if text.lower().lstrip("-").startswith("0x"):
                return float(int(text, 16))
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _loose_equals(left: Any, right: Any) -> bool:
    left_kind, right_kind = _kind(left), _kind(right)
    if left_kind == right_kind:
        if left_kind == "string":
            return left.casefold() == right.casefold()
        if left_kind in ("object", "array"):
            return left is right
        if left_kind == "number":
            return float(left) == float(right)
        return left == right
    if left_kind in ("object", "array") or right_kind in ("object", "array"):
        return False
    return _to_number(left) == _to_number(right)


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return _loose_equals(left, right)
    if op == "!=":
        return not _loose_equals(left, right)
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left.casefold()
        b: Any = right.casefold()
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


def _fn_success(context: Any) -> bool:
    return getattr(context, "status", "success") == "success" and not getattr(
        context, "cancelled", False
    )


def _fn_failure(context: Any) -> bool:
    return getattr(context, "status", "success") == "failure"


def _fn_cancelled(context: Any) -> bool:
    return bool(getattr(context, "cancelled", False))


def _fn_always(context: Any) -> bool:
    return True


def _fn_contains(context: Any, search: Any, item: Any) -> bool:
    if isinstance(search, list):
        return any(_loose_equals(element, item) for element in search)
    return to_string(item).casefold() in to_string(search).casefold()


def _fn_starts_with(context: Any, text: Any, prefix: Any) -> bool:
    return to_string(text).casefold().startswith(to_string(prefix).casefold())


def _fn_ends_with(context: Any, text: Any, suffix: Any) -> bool:
    return to_string(text).casefold().endswith(to_string(suffix).casefold())


def _fn_format(context: Any, fmt: Any, *args: Any) -> str:
    text = to_string(fmt)
    out: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "{":
            if text.startswith("{{", i):
                out.append("{")
                i += 2
                continue
            end = text.find("}", i)
            position = text[i + 1:end] if end != -1 else ""
            if not position.isdigit():
                raise ExpressionError(f"Invalid format string: '{text}'")
            n = int(position)
            if n >= len(args):
                raise ExpressionError(
                    f"Format string '{text}' references argument {n} "
                    f"but only {len(args)} given"
                )
            out.append(to_string(args[n]))
            i = end + 1
            continue
        if ch == "}":
            if text.startswith("}}", i):
                out.append("}")
                i += 2
                continue
            raise ExpressionError(f"Invalid format string: '{text}'")
        out.append(ch)
        i += 1
    return "".join(out)


def _fn_join(context: Any, array: Any, separator: Any = ",") -> str:
    if isinstance(array, list):
        return to_string(separator).join(to_string(v) for v in array)
    return to_string(array)


def _fn_to_json(context: Any, value: Any) -> str:
    return json.dumps(value, indent=2)


def _fn_from_json(context: Any, value: Any) -> Any:
    try:
        return json.loads(to_string(value))
    except json.JSONDecodeError as e:
        raise ExpressionError(f"fromJSON: invalid JSON: {e}") from e


def _fn_hash_files(context: Any, *patterns: Any) -> str:
    workspace = getattr(context, "workspace", None) or Path.cwd()
    return hash_files([to_string(p) for p in patterns], workspace)


# name -> (min args, max args, implementation)
_FUNCTIONS: dict[str, tuple[int, int | None, Callable[..., Any]]] = {
    "success": (0, 0, _fn_success),
    "failure": (0, 0, _fn_failure),
    "cancelled": (0, 0, _fn_cancelled),
    "always": (0, 0, _fn_always),
    "contains": (2, 2, _fn_contains),
    "startswith": (2, 2, _fn_starts_with),
    "endswith": (2, 2, _fn_ends_with),
    "format": (1, None, _fn_format),
    "join": (1, 2, _fn_join),
    "tojson": (1, 1, _fn_to_json),
    "fromjson": (1, 1, _fn_from_json),
    "hashfiles": (1, None, _fn_hash_files),
}


def _sha256_file(path: Path) -> bytes:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.digest()


def hash_files(patterns: list[str], workspace: str | Path) -> str:
    """Hash the files matched by glob *patterns* under *workspace*.

    Patterns prefixed with ``!`` remove previously matched files. Files are
    hashed in sorted relative-path order so the result only depends on the
    matched set and the file contents. Returns ``""`` when nothing matches.
    """
    root = Path(workspace).resolve()
    selected: dict[str, Path] = {}
    for raw in patterns:
        pattern = raw.strip()
        negate = pattern.startswith("!")
        if negate:
            pattern = pattern[1:].strip()
        if not pattern:
            continue
        if Path(pattern).is_absolute():
            try:
                pattern = Path(pattern).relative_to(root).as_posix()
            except ValueError:
                logger.debug("hashFiles: ignoring pattern outside workspace: %s", raw)
                continue
        # Keyed by the matched workspace path; symlink targets may live elsewhere
        matches = {p.relative_to(root).as_posix(): p for p in root.glob(pattern) if p.is_file()}
        if negate:
            for rel in matches:
                selected.pop(rel, None)
        else:
            selected.update(matches)

    if not selected:
        return ""
    digest = hashlib.sha256()
    for rel in sorted(selected):
        digest.update(_sha256_file(selected[rel]))
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class _FilteredArray(list):
    """Result of an object filter; property access maps over the elements."""


def _describe(node: Node) -> str:
    if isinstance(node, ContextRef):
        return node.name
    if isinstance(node, Property):
        return f"{_describe(node.target)}.{node.name}"
    if isinstance(node, Index):
        inner = node.index.value if isinstance(node.index, Literal) else "..."
        return f"{_describe(node.target)}[{inner!r}]"
    if isinstance(node, Star):
        return f"{_describe(node.target)}.*"
    if isinstance(node, Call):
        return f"{node.name}(...)"
    return "<expression>"


def _member(obj: Any, name: str, path: str) -> Any:
    if isinstance(obj, Mapping):
        if name in obj:
            return obj[name]
        lowered = name.lower()
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() == lowered:
                return value
    raise UnresolvedReference(path)


def _namespace(context: Any, name: str) -> Any:
    if hasattr(context, "namespace"):
        return context.namespace(name)
    return _member(context, name, name)


def _evaluate(node: Node, context: Any) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, ContextRef):
        return _namespace(context, node.name)

    if isinstance(node, Property):
        target = _evaluate(node.target, context)
        if isinstance(target, _FilteredArray):
            return _FilteredArray(
                v[node.name] for v in target
                if isinstance(v, Mapping) and node.name in v
            )
        return _member(target, node.name, _describe(node))

    if isinstance(node, Index):
        target = _evaluate(node.target, context)
        key = _evaluate(node.index, context)
        path = _describe(node)
        if isinstance(target, list) and not isinstance(key, str):
            number = _to_number(key)
            if math.isnan(number) or not number.is_integer():
                raise UnresolvedReference(path)
            position = int(number)
            if 0 <= position < len(target):
                return target[position]
            raise UnresolvedReference(path)
        if isinstance(target, _FilteredArray):
            name = to_string(key)
            return _FilteredArray(
                v[name] for v in target if isinstance(v, Mapping) and name in v
            )
        return _member(target, to_string(key), path)

    if isinstance(node, Star):
        target = _evaluate(node.target, context)
        if isinstance(target, Mapping):
            return _FilteredArray(target.values())
        if isinstance(target, list):
            return _FilteredArray(target)
        raise UnresolvedReference(_describe(node))

    if isinstance(node, Call):
        _, _, impl = _FUNCTIONS[node.name]
        args = [_evaluate(arg, context) for arg in node.args]
        return impl(context, *args)

    if isinstance(node, Not):
        return not is_truthy(_evaluate(node.operand, context))

    if isinstance(node, Compare):
        return _compare(
            node.op, _evaluate(node.left, context), _evaluate(node.right, context)
        )

    if isinstance(node, Logical):
        left = _evaluate(node.left, context)
        if node.op == "&&":
            return _evaluate(node.right, context) if is_truthy(left) else left
        return left if is_truthy(left) else _evaluate(node.right, context)

    raise ExpressionError(f"Unsupported node: {node!r}")


def evaluate(expression: str, context: Any) -> Any:
    """Evaluate a bare expression string against *context*."""
    value = _evaluate(parse(expression.strip()), context)
    if isinstance(value, _FilteredArray):
        return list(value)
    return value


def references_status(node: Node) -> bool:
    """True if the tree calls success(), failure(), always() or cancelled()."""
    if isinstance(node, Call) and node.name in STATUS_FUNCTIONS:
        return True
    for f in fields(node):
        child = getattr(node, f.name)
        if isinstance(child, tuple):
            if any(references_status(c) for c in child):
                return True
        elif isinstance(child, (Literal, ContextRef, Property, Index, Star, Call,
                                Not, Compare, Logical)):
            if references_status(child):
                return True
    return False


# ---------------------------------------------------------------------------
# Templates and conditions
# ---------------------------------------------------------------------------


def _split_template(text: str) -> list[tuple[bool, str]]:
    """Split *text* into (is_expression, content) segments."""
    parts: list[tuple[bool, str]] = []
    pos = 0
    while True:
        start = text.find("${{", pos)
        if start == -1:
            parts.append((False, text[pos:]))
            break
        parts.append((False, text[pos:start]))
        i = start + 3
        in_string = False
        while i < len(text):
            ch = text[i]
            if in_string:
                if ch == "'":
                    if text.startswith("''", i):
                        i += 2
                        continue
                    in_string = False
            elif ch == "'":
                in_string = True
            elif text.startswith("}}", i):
                break
            i += 1
        else:
            raise ExpressionError(f"Unterminated expression in '{text}'")
        parts.append((True, text[start + 3:i].strip()))
        pos = i + 2
    return [part for part in parts if part[0] or part[1]]


def contains_expression(value: Any) -> bool:
    """True if *value* (or anything nested in it) contains ``${{``."""
    if isinstance(value, str):
        return "${{" in value
    if isinstance(value, Mapping):
        return any(contains_expression(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_expression(v) for v in value)
    return False


def _interpolate_string(text: str, context: Any) -> Any:
    segments = _split_template(text)
    expressions = [s for is_expr, s in segments if is_expr]
    if not expressions:
        return text
    if len(expressions) == 1 and all(not s.strip() for is_expr, s in segments if not is_expr):
        return evaluate(expressions[0], context)
    return "".join(
        to_string(evaluate(s, context)) if is_expr else s for is_expr, s in segments
    )


def interpolate(value: Any, context: Any) -> Any:
    """Replace ``${{ }}`` expressions inside strings, mappings and lists.

    A string consisting of a single expression yields the raw value
    (so ``${{ fromJSON('[1, 2]') }}`` produces a list); mixed text is
    rendered with :func:`to_string`.
    """
    if isinstance(value, str):
        return _interpolate_string(value, context)
    if isinstance(value, Mapping):
        return {k: interpolate(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate(v, context) for v in value]
    return value


def interpolate_string(value: Any, context: Any) -> str:
    """Interpolate and render the result as a string."""
    return to_string(interpolate(value, context))


def _condition_node(condition: Any, context: Any) -> Node | bool:
    if condition is None:
        text = ""
    elif isinstance(condition, str):
        text = condition.strip()
    else:
        text = to_string(condition)

    if "${{" in text:
        segments = _split_template(text)
        if len(segments) == 1 and segments[0][0]:
            text = segments[0][1]
        else:
            # Mixed text around expressions is a plain (truthy) string
            return is_truthy(interpolate_string(text, context))

    if not text:
        text = "success()"
    node = parse(text)
    if not references_status(node):
        node = Logical("&&", Call("success", ()), node)
    return node


def evaluate_condition(condition: Any, context: Any) -> bool:
    """Evaluate an ``if:`` condition.

    Conditions that call no status function are implicitly
    ``success() && (...)``. Unresolved references make the condition false;
    other expression errors propagate.
    """
    node = _condition_node(condition, context)
    if isinstance(node, bool):
        return node
    try:
        return is_truthy(_evaluate(node, context))
    except UnresolvedReference as e:
        logger.debug(f"Condition {condition!r} blocked: {e}")
        return False


def condition_survives_cancel(condition: Any) -> bool:
    """True if the condition lets a step run after cancellation.

    Those steps (``always()``, ``cancelled()``) are allowed to finish when a
    cancellation arrives while they run.
    """
    if condition is None:
        return False
    text = condition if isinstance(condition, str) else to_string(condition)
    if "${{" in text:
        segments = _split_template(text)
        expressions = [s for is_expr, s in segments if is_expr]
        if not expressions:
            return False
        text = expressions[0]
    try:
        node = parse(text.strip())
    except ExpressionError:
        return False
    return _calls_any(node, {"always", "cancelled"})


def _calls_any(node: Node, names: set[str]) -> bool:
    if isinstance(node, Call) and node.name in names:
        return True
    for f in fields(node):
        child = getattr(node, f.name)
        children = child if isinstance(child, tuple) else (child,)
        for c in children:
            if hasattr(c, "__dataclass_fields__") and _calls_any(c, names):
                return True
    return False
