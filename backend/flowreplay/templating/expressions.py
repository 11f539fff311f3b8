"""Safe expression evaluator: no eval(), restricted AST grammar.

Expressions are parsed once with :mod:`ast`, checked against a whitelist of
node types and then interpreted by a small tree walker.  Anything outside the
grammar (calls, lambdas, comprehensions, dunder access) is rejected at compile
time.  ``evaluate_condition`` fails closed: any compile or runtime error makes
the condition ``False``.

Supported:
  - literals: numbers, strings, true/false/null (JS spelling) and True/False/None
  - variable names, looked up in the run's variable bag; ``vars.x`` also works
  - attribute and subscript lookups on dicts and lists
  - comparisons (==, !=, <, <=, >, >=, in, not in) and chained comparisons
  - and / or / not, plus the JS spellings &&, ||, !, ===, !==
  - arithmetic: + - * / // % and unary minus; str/list repetition is size-capped
"""

from __future__ import annotations

import ast
import logging
import operator
import re
from functools import lru_cache
from typing import Any

logger = logging.getLogger("flowreplay.expressions")

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

# Longest str/list an expression may build by repetition.
_MAX_REPEAT_LEN = 10_000

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.BinOp,
    ast.Compare, ast.Name, ast.Load, ast.Constant, ast.Attribute, ast.Subscript,
    ast.List, ast.Tuple, ast.IfExp,
    *_BIN_OPS, *_CMP_OPS, *_UNARY_OPS,
)

_JS_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}

# Quoted strings are copied verbatim; operators are only rewritten outside them.
_STRING_RE = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")
_JS_OPS = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]


class ExpressionError(ValueError):
    """Expression text falls outside the supported grammar."""


class CompiledExpression:
    """A validated expression tree ready to be evaluated against variables."""

    def __init__(self, source: str, tree: ast.Expression):
        self.source = source
        self._tree = tree

    def evaluate(self, variables: dict[str, Any]) -> Any:
        return _eval(self._tree.body, variables)

    def __repr__(self) -> str:
        return f"CompiledExpression({self.source!r})"


@lru_cache(maxsize=512)
def compile_expression(source: str) -> CompiledExpression:
    """Parse and whitelist-check an expression. Raises ExpressionError."""
    text = _normalize(source.strip())
    if not text:
        raise ExpressionError("empty expression")
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"invalid expression {source!r}: {exc.msg}") from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(f"unsupported syntax {type(node).__name__} in {source!r}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(f"private attribute access in {source!r}")
    return CompiledExpression(source, tree)


def evaluate_expression(source: str, variables: dict[str, Any]) -> Any:
    """Compile (cached) and evaluate. Errors propagate."""
    return compile_expression(source).evaluate(variables)


def evaluate_condition(cond: Any, variables: dict[str, Any]) -> bool:
    """
    Evaluate a loop/branch condition against the variable bag.

    Accepted shapes:
      - "vars.count < 3"                    expression string
      - {"expression": "count < 3"}        expression object
      - {"var": "done", "equals": "yes"}   string equality on a variable
      - {"var": "done"}                    truthiness of a variable

    Never raises; anything unexpected evaluates to False.
    """
    try:
        if isinstance(cond, str):
            return bool(evaluate_expression(cond, variables)) if cond.strip() else False
        if isinstance(cond, dict):
            expr = cond.get("expression")
            if isinstance(expr, str) and expr.strip():
                return bool(evaluate_expression(expr, variables))
            var = cond.get("var")
            if isinstance(var, str):
                value = variables.get(var)
                if "equals" in cond:
                    return _js_string(value) == _js_string(cond["equals"])
                return bool(value)
    except Exception as exc:
        logger.debug("Condition %r evaluated to False: %s", cond, exc)
    return False


# ── Internal helpers ────────────────────────────────────────────


def _normalize(text: str) -> str:
    parts = _STRING_RE.split(text)
    for i in range(0, len(parts), 2):
        chunk = parts[i]
        for pattern, repl in _JS_OPS:
            chunk = pattern.sub(repl, chunk)
        parts[i] = chunk
    return "".join(parts)


def _js_string(value: Any) -> str:
    """String form used for `equals` comparisons (true/false/null like the recorder)."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, dict):
        return container.get(key)
    if isinstance(container, (list, tuple)) and isinstance(key, int):
        return container[key] if -len(container) <= key < len(container) else None
    if isinstance(container, (list, tuple, str)) and key == "length":
        return len(container)
    return None


def _check_repeat(left: Any, right: Any) -> None:
    for seq, times in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(times, int):
            if len(seq) * max(times, 0) > _MAX_REPEAT_LEN:
                raise ExpressionError(f"repetition result exceeds {_MAX_REPEAT_LEN} items")


def _eval(node: ast.AST, variables: dict[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id == "vars":
            return variables
        if node.id in variables:
            return variables[node.id]
        if node.id in _JS_LITERALS:
            return _JS_LITERALS[node.id]
        if node.id in ("True", "False", "None"):
            return {"True": True, "False": False, "None": None}[node.id]
        raise NameError(f"unknown variable '{node.id}'")

    if isinstance(node, ast.Attribute):
        return _lookup(_eval(node.value, variables), node.attr)

    if isinstance(node, ast.Subscript):
        return _lookup(_eval(node.value, variables), _eval(node.slice, variables))

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _eval(value, variables)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _eval(value, variables)
            if result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_eval(node.operand, variables))

    if isinstance(node, ast.BinOp):
        left, right = _eval(node.left, variables), _eval(node.right, variables)
        if isinstance(node.op, ast.Mult):
            _check_repeat(left, right)
        return _BIN_OPS[type(node.op)](left, right)

    if isinstance(node, ast.Compare):
        left = _eval(node.left, variables)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval(comparator, variables)
            if not _CMP_OPS[type(op)](left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        branch = node.body if _eval(node.test, variables) else node.orelse
        return _eval(branch, variables)

    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(elt, variables) for elt in node.elts]

    raise ExpressionError(f"unsupported syntax {type(node).__name__}")
