"""
Sandboxed expression language for conditions and transforms.

Expressions are parsed with ``ast`` and interpreted node by node; nothing is
ever passed to ``eval``/``exec``. Only literals, names bound in the
evaluation context, field access on mappings, indexing, arithmetic,
comparisons, boolean logic, a conditional expression and a short list of
whitelisted functions/methods are understood. Anything else raises
``ConditionEvaluationError``.

Workflow authors tend to write JavaScript-flavoured conditions, so a few
spellings are accepted and translated before parsing (outside string
literals only):

    ===  !==  &&  ||  !x        ->  ==  !=  and  or  not x
    true false null undefined   ->  True False None None
    value.length                ->  len(value)
"""

import ast
import re
from collections.abc import Callable, Mapping
from typing import Any

from workflow_engine.errors import ConditionEvaluationError

SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "any": any,
    "all": all,
    "min": min,
    "max": max,
    "sum": sum,
    "abs": abs,
    "round": round,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "sorted": sorted,
}


def _includes(obj: Any, item: Any) -> bool:
    return item in obj


SAFE_METHODS: dict[str, Callable[..., Any]] = {
    # JavaScript spellings
    "includes": _includes,
    "startsWith": lambda s, prefix: str(s).startswith(prefix),
    "endsWith": lambda s, suffix: str(s).endswith(suffix),
    "toLowerCase": lambda s: str(s).lower(),
    "toUpperCase": lambda s: str(s).upper(),
    "trim": lambda s: str(s).strip(),
    "join": lambda items, sep=",": sep.join(str(i) for i in items),
    # Python spellings
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "strip": lambda s: str(s).strip(),
    "startswith": lambda s, prefix: str(s).startswith(prefix),
    "endswith": lambda s, suffix: str(s).endswith(suffix),
    "get": lambda m, key, default=None: m.get(key, default) if isinstance(m, Mapping) else default,
    "keys": lambda m: list(m.keys()),
    "values": lambda m: list(m.values()),
}

_STRING_LITERAL = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")
_JS_LITERALS = {"true": "True", "false": "False", "null": "None", "undefined": "None"}
_JS_LITERAL_PATTERN = re.compile(r"\b(true|false|null|undefined)\b")

MAX_EXPRESSION_LENGTH = 2000
# longest string or list an expression may build by repetition
MAX_SEQUENCE_LENGTH = 100_000


def normalize_expression(expression: str) -> str:
    """Translate JavaScript-style operators outside of string literals."""
    text = expression.strip()
    if text.startswith("return "):
        text = text[len("return ") :]
    text = text.rstrip(";").strip()

    parts = _STRING_LITERAL.split(text)
    for i in range(0, len(parts), 2):
        code = parts[i]
        code = code.replace("!==", "!=").replace("===", "==")
        code = code.replace("&&", " and ").replace("||", " or ")
        code = re.sub(r"!(?!=)", " not ", code)
        code = _JS_LITERAL_PATTERN.sub(lambda m: _JS_LITERALS[m.group(1)], code)
        parts[i] = code
    return "".join(parts).strip()


class _Interpreter:
    """Walks a parsed expression tree against a read-only context."""

    def __init__(self, context: Mapping[str, Any]):
        self.context = context

    def eval(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ConditionEvaluationError(f"Disallowed expression node: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.eval(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.context:
            return self.context[node.id]
        if node.id in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[node.id]
        raise ConditionEvaluationError(f"Unknown variable '{node.id}' in expression")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.eval(node.value)
        return _get_field(value, node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.eval(node.value)
        if isinstance(node.slice, ast.Slice):
            lower = self.eval(node.slice.lower) if node.slice.lower else None
            upper = self.eval(node.slice.upper) if node.slice.upper else None
            if not isinstance(value, (list, tuple, str)):
                raise ConditionEvaluationError("Only lists and strings can be sliced")
            return value[lower:upper]
        key = self.eval(node.slice)
        if isinstance(value, Mapping):
            return value.get(key)
        if isinstance(value, (list, tuple, str)):
            if not isinstance(key, int) or isinstance(key, bool):
                raise ConditionEvaluationError(f"List index must be an integer, got {key!r}")
            try:
                return value[key]
            except IndexError:
                return None
        raise ConditionEvaluationError(f"Cannot index into {type(value).__name__}")

    def visit_List(self, node: ast.List) -> list:
        return [self.eval(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.eval(e) for e in node.elts)

    def visit_Dict(self, node: ast.Dict) -> dict:
        if any(k is None for k in node.keys):
            raise ConditionEvaluationError("Dict unpacking is not allowed")
        return {self.eval(k): self.eval(v) for k, v in zip(node.keys, node.values, strict=True)}

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.eval(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.eval(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.eval(node.operand)
        try:
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
        except TypeError as e:
            raise ConditionEvaluationError(str(e)) from e
        raise ConditionEvaluationError(f"Unary op '{type(node.op).__name__}' is not allowed")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.eval(node.left)
        right = self.eval(node.right)
        op = node.op
        try:
            if isinstance(op, ast.Add):
                # string concatenation with non-strings, as authors expect
                if isinstance(left, str) != isinstance(right, str):
                    return f"{_display(left)}{_display(right)}"
                return left + right
            if isinstance(op, ast.Sub):
                return left - right
            if isinstance(op, ast.Mult):
                _check_repeat(left, right)
                return left * right
            if isinstance(op, ast.Div):
                return left / right
            if isinstance(op, ast.FloorDiv):
                return left // right
            if isinstance(op, ast.Mod):
                return left % right
        except (TypeError, ZeroDivisionError) as e:
            raise ConditionEvaluationError(str(e)) from e
        raise ConditionEvaluationError(f"Operator '{type(op).__name__}' is not allowed")

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.eval(comparator)
            try:
                ok = _compare(op, left, right)
            except TypeError as e:
                raise ConditionEvaluationError(str(e)) from e
            if not ok:
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        if node.keywords:
            raise ConditionEvaluationError("Keyword arguments are not allowed")
        args = [self.eval(a) for a in node.args]
        try:
            if isinstance(node.func, ast.Name):
                if node.func.id not in SAFE_FUNCTIONS:
                    raise ConditionEvaluationError(
                        f"Function '{node.func.id}' is not allowed in expressions"
                    )
                return SAFE_FUNCTIONS[node.func.id](*args)
            if isinstance(node.func, ast.Attribute):
                method = SAFE_METHODS.get(node.func.attr)
                if method is None:
                    raise ConditionEvaluationError(
                        f"Method '{node.func.attr}' is not allowed in expressions"
                    )
                return method(self.eval(node.func.value), *args)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConditionEvaluationError(str(e)) from e
        raise ConditionEvaluationError("Only whitelisted functions can be called")


def _check_repeat(left: Any, right: Any) -> None:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
            if len(seq) * max(count, 0) > MAX_SEQUENCE_LENGTH:
                raise ConditionEvaluationError(
                    f"Repetition would build a sequence longer than {MAX_SEQUENCE_LENGTH} items"
                )


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Eq):
        return left == right
    if isinstance(op, ast.NotEq):
        return left != right
    if isinstance(op, ast.Lt):
        return left < right
    if isinstance(op, ast.LtE):
        return left <= right
    if isinstance(op, ast.Gt):
        return left > right
    if isinstance(op, ast.GtE):
        return left >= right
    if isinstance(op, ast.In):
        return left in right
    if isinstance(op, ast.NotIn):
        return left not in right
    if isinstance(op, ast.Is):
        return left is right
    if isinstance(op, ast.IsNot):
        return left is not right
    raise ConditionEvaluationError(f"Comparator '{type(op).__name__}' is not allowed")


def _get_field(value: Any, attr: str) -> Any:
    if attr.startswith("_"):
        raise ConditionEvaluationError(f"Access to '{attr}' is not allowed")
    if isinstance(value, Mapping):
        if attr in value:
            return value[attr]
        if attr == "length":
            return len(value)
        return None
    if attr == "length" and isinstance(value, (list, tuple, str)):
        return len(value)
    if value is None:
        raise ConditionEvaluationError(f"Cannot read property '{attr}' of null")
    raise ConditionEvaluationError(
        f"Cannot read property '{attr}' of {type(value).__name__} value"
    )


def _display(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def safe_eval(expression: str, context: Mapping[str, Any]) -> Any:
    """
    Evaluate an expression against ``context`` without executing code.

    Raises:
        ConditionEvaluationError: On syntax errors, disallowed constructs,
            unknown names or runtime type errors.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ConditionEvaluationError("Expression is empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ConditionEvaluationError("Expression is too long")

    source = normalize_expression(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ConditionEvaluationError(f"Invalid expression '{expression}': {e.msg}") from e
    try:
        return _Interpreter(context).eval(tree)
    except (MemoryError, OverflowError, RecursionError) as e:
        raise ConditionEvaluationError(
            f"Expression '{expression}' could not be evaluated: {type(e).__name__}"
        ) from e


def evaluate_condition(expression: str, context: Mapping[str, Any]) -> bool:
    return bool(safe_eval(expression, context))
