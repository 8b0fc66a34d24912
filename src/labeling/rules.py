"""
Rule Execution Engine
=====================

Extraction rules come from the generative inference service and are therefore
untrusted. A rule is a single Python *expression* over the variable ``text``,
for example::

    to_number(re.search(r"valor[^0-9]*([0-9.,]+)", text, re.I).group(1))

Rules are never handed to ``eval``. They are parsed with ``ast`` and checked
against a whitelist when compiled, then interpreted node by node by
`_Evaluator`, which only knows how to perform the operations listed below:

- literals, the ``text`` variable and names bound inside the rule with ``:=``
  or by a comprehension
- the helper functions in ``FUNCTIONS``
- the ``re`` functions and flags in ``RE_FUNCTIONS`` / ``RE_FLAGS``
- the read-only methods in ``STR_METHODS``, ``MATCH_METHODS``,
  ``LIST_METHODS`` and ``DICT_METHODS``
- subscripts, slices, arithmetic, comparisons, boolean logic, conditional
  expressions, container literals, f-strings and comprehensions

There is no attribute access outside those methods, so there is no path to
modules, files, processes or interpreter internals. Every evaluated node
costs one step from a fixed budget, and every call, comparison and produced
sequence costs work in proportion to the characters or items it touches.
Operations that can grow a value (repetition, concatenation, ``%`` and
f-string formatting, ``join``, ``replace``, ``re.sub``, ``re.findall``) are
sized before they run and refused past ``MAX_SEQUENCE_LENGTH``. Together
these bound the time and memory a rule can consume, regular expression
backtracking excepted.

`RuleEngine.extract` evaluates each field on its own: a rule that fails
yields ``None`` for its field and never affects the others.
"""

from __future__ import annotations

import ast
import math
import operator
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import structlog

from .errors import FieldExtractionFailure, RuleSyntaxError, UnsafeRuleError

log = structlog.get_logger(__name__)

TEXT_NAME = "text"
RE_NAME = "re"

DEFAULT_MAX_RULE_LENGTH = 2000
DEFAULT_MAX_STEPS = 100_000
MAX_SEQUENCE_LENGTH = 1_000_000
MAX_PATTERN_LENGTH = 1000
MAX_FORMAT_WIDTH = 10_000
MAX_INT_BITS = 4096
MAX_WORK = 50_000_000

_NUMBER_RE = re.compile(r"[-+]?\d[\d.,]*")
_DIGITS_RE = re.compile(r"\d+")
_PERCENT_SPEC_RE = re.compile(r"%(?:\([^)]*\))?[-#0 +]*(\*|\d*)(?:\.(\*|\d*))?")
_GROUP_REF_RE = re.compile(r"\\g<(\w+)>|\\(\d{1,2})")


def to_number(value: Any) -> float | None:
    """
    Parse a number written in either decimal convention.

    ``"450.00"``, ``"1,234.56"``, ``"1.234,56"`` and ``"R$ 1.234,56"`` are all
    understood. A lone separator followed by exactly three digits is a
    thousands separator when it is a comma (``"1,234"``) and a decimal point
    when it is a dot (``"1.234"``). Returns None if no number is found.
    """
    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, re.Match):
        value = value.group(value.lastindex or 0)
    if not isinstance(value, str):
        raise TypeError(f"to_number() expects a string, got {type(value).__name__}")

    match = _NUMBER_RE.search(value)
    if match is None:
        return None
    token = match.group(0).rstrip(".,")

    if "," in token and "." in token:
        if token.rfind(",") > token.rfind("."):
            token = token.replace(".", "").replace(",", ".")
        else:
            token = token.replace(",", "")
    elif "," in token:
        parts = token.split(",")
        if len(parts) == 2 and len(parts[1]) != 3:
            token = token.replace(",", ".")
        else:
            token = token.replace(",", "")
    elif token.count(".") > 1:
        token = token.replace(".", "")
    return float(token)


def _rendered_size(value: Any, limit: int = MAX_SEQUENCE_LENGTH) -> int:
    """
    Estimate how many characters ``str(value)`` would produce.

    Counting stops as soon as the estimate passes ``limit``, so the cost of
    the estimate is bounded even for deeply shared containers.
    """
    total = 0
    stack = [value]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            total += len(item) + 2
        elif isinstance(item, (list, tuple)):
            total += 2 * len(item) + 2
            if total <= limit:
                stack.extend(item)
        elif isinstance(item, dict):
            total += 4 * len(item) + 2
            if total <= limit:
                stack.extend(item.keys())
                stack.extend(item.values())
        elif isinstance(item, re.Match):
            total += len(item.group(0)) + 48
        elif isinstance(item, int) and not isinstance(item, bool):
            total += item.bit_length() // 3 + 2
        else:
            total += 32
        if total > limit:
            return total
    return total


def _check_rendered_size(value: Any) -> None:
    if _rendered_size(value) > MAX_SEQUENCE_LENGTH:
        raise MemoryError("rule produced an oversized value")


def _str(*args):
    if args:
        _check_rendered_size(args[0])
    return str(*args)


def _sum_numbers(values, start=0):
    items = list(values)
    if not all(isinstance(item, (int, float)) for item in [start, *items]):
        raise TypeError("sum() only adds numbers in extraction rules")
    return sum(items, start)


def _round(number, ndigits=None):
    if ndigits is not None and (not isinstance(ndigits, int) or abs(ndigits) > 100):
        raise ValueError("round() ndigits must be an integer between -100 and 100")
    return round(number, ndigits)


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "float": float,
    "int": int,
    "len": len,
    "list": list,
    "max": max,
    "min": min,
    "round": _round,
    "sorted": sorted,
    "str": _str,
    "sum": _sum_numbers,
    "to_number": to_number,
}

RE_FLAGS: dict[str, int] = {
    "I": re.IGNORECASE,
    "IGNORECASE": re.IGNORECASE,
    "M": re.MULTILINE,
    "MULTILINE": re.MULTILINE,
    "S": re.DOTALL,
    "DOTALL": re.DOTALL,
}
_ALLOWED_FLAG_BITS = re.IGNORECASE | re.MULTILINE | re.DOTALL

STR_METHODS = frozenset(
    {
        "capitalize", "casefold", "count", "endswith", "find", "index",
        "isalnum", "isalpha", "isdecimal", "isdigit", "islower", "isnumeric",
        "isspace", "istitle", "isupper", "join", "lower", "lstrip",
        "partition", "removeprefix", "removesuffix", "replace", "rfind",
        "rindex", "rpartition", "rsplit", "rstrip", "split", "splitlines",
        "startswith", "strip", "title", "upper",
    }
)
MATCH_METHODS = frozenset({"end", "group", "groupdict", "groups", "span", "start"})
LIST_METHODS = frozenset({"count", "index"})
DICT_METHODS = frozenset({"get", "items", "keys", "values"})
METHOD_NAMES = STR_METHODS | MATCH_METHODS | LIST_METHODS | DICT_METHODS

RESERVED_NAMES = frozenset({TEXT_NAME, RE_NAME}) | frozenset(FUNCTIONS)

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}
_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}
_COMPARE_OPS: dict[type, Callable[[Any, Any], Any]] = {
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

_CONSTANT_TYPES = (str, int, float, bool, type(None))
_ITERABLE_TYPES = (str, list, tuple, dict)
_SUBSCRIPTABLE_TYPES = (str, list, tuple, dict, re.Match)
_SIZED_TYPES = (str, list, tuple, dict)
# Nodes whose result may be a freshly built sequence.
_PRODUCING_NODES = (
    ast.BinOp,
    ast.Call,
    ast.GeneratorExp,
    ast.JoinedStr,
    ast.ListComp,
    ast.Subscript,
)


def _sized_len(value: Any) -> int:
    return len(value) if isinstance(value, _SIZED_TYPES) else 0


# --- regular expressions -------------------------------------------------


def _pattern(pattern: Any, flags: Any) -> re.Pattern:
    if not isinstance(pattern, str):
        raise TypeError("regular expression pattern must be a string")
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise ValueError("regular expression pattern is too long")
    if not isinstance(flags, int) or isinstance(flags, bool) or flags & ~_ALLOWED_FLAG_BITS:
        raise ValueError("unsupported regular expression flags")
    return re.compile(pattern, flags)


def _check_captures(compiled: re.Pattern, string: str, maxsplit: int = 0) -> None:
    """Bound the total size of the substrings findall/finditer/split would copy."""
    groups = range(1, compiled.groups + 1) if compiled.groups else (0,)
    total = 0
    for count, match in enumerate(compiled.finditer(string), 1):
        for group in groups:
            start, end = match.span(group)
            total += max(end - start, 0) + 1
        if total > MAX_SEQUENCE_LENGTH:
            raise MemoryError("rule produced an oversized value")
        if maxsplit and count >= maxsplit:
            return


def _re_search(pattern, string, flags=0):
    return _pattern(pattern, flags).search(string)


def _re_match(pattern, string, flags=0):
    return _pattern(pattern, flags).match(string)


def _re_fullmatch(pattern, string, flags=0):
    return _pattern(pattern, flags).fullmatch(string)


def _re_findall(pattern, string, flags=0):
    compiled = _pattern(pattern, flags)
    _check_captures(compiled, string)
    return compiled.findall(string)


def _re_finditer(pattern, string, flags=0):
    compiled = _pattern(pattern, flags)
    _check_captures(compiled, string)
    return list(compiled.finditer(string))


def _re_split(pattern, string, maxsplit=0, flags=0):
    compiled = _pattern(pattern, flags)
    if compiled.groups:
        _check_captures(compiled, string, maxsplit)
    return compiled.split(string, maxsplit)


def _re_sub(pattern, repl, string, count=0, flags=0):
    if not isinstance(repl, str):
        raise TypeError("re.sub() replacement must be a string")
    compiled = _pattern(pattern, flags)
    references = []
    for name, number in _GROUP_REF_RE.findall(repl):
        ref = name or number
        ref = int(ref) if ref.isdigit() else ref
        if ref in compiled.groupindex or (isinstance(ref, int) and ref <= compiled.groups):
            references.append(ref)
    produced = 0

    def expand(match: re.Match) -> str:
        nonlocal produced
        # Size the replacement from group spans before building it.
        produced += len(repl) + sum(
            max(match.end(ref) - match.start(ref), 0) for ref in references
        )
        if produced > MAX_SEQUENCE_LENGTH:
            raise MemoryError("rule produced an oversized value")
        return match.expand(repl)

    return compiled.sub(expand, string, count)


RE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "findall": _re_findall,
    "finditer": _re_finditer,
    "fullmatch": _re_fullmatch,
    "match": _re_match,
    "search": _re_search,
    "split": _re_split,
    "sub": _re_sub,
}


# --- compile-time validation ---------------------------------------------


@dataclass(frozen=True)
class CompiledRule:
    expression: str
    tree: ast.Expression


def _bound_names(tree: ast.AST) -> set[str]:
    """Names a rule binds itself, via ``:=`` or comprehension targets."""
    names = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.NamedExpr):
            names.add(node.target.id)
        elif isinstance(node, ast.comprehension):
            for target in ast.walk(node.target):
                if isinstance(target, ast.Name):
                    names.add(target.id)
    return names


class _Validator:
    """Rejects any construct the evaluator does not implement."""

    def __init__(self, expression: str, bound: set[str]):
        self.expression = expression
        self.bound = bound

    def fail(self, reason: str) -> None:
        raise UnsafeRuleError(reason, expression=self.expression)

    def visit(self, node: ast.AST) -> None:
        handler = getattr(self, f"visit_{type(node).__name__}", None)
        if handler is None:
            self.fail(f"'{type(node).__name__}' is not allowed in extraction rules")
        handler(node)

    def visit_all(self, nodes) -> None:
        for node in nodes:
            if node is not None:
                self.visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if not isinstance(node.value, _CONSTANT_TYPES):
            self.fail(f"constant of type {type(node.value).__name__} is not allowed")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id == TEXT_NAME or node.id in self.bound:
            return
        if node.id in FUNCTIONS:
            self.fail(f"'{node.id}' can only be called")
        self.fail(f"unknown name '{node.id}'")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        # Outside a call, only the re flags are reachable as attributes.
        if (
            isinstance(node.value, ast.Name)
            and node.value.id == RE_NAME
            and node.attr in RE_FLAGS
        ):
            return
        self.fail(f"attribute access '.{node.attr}' is not allowed")

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        if isinstance(func, ast.Name):
            if func.id not in FUNCTIONS:
                self.fail(f"call to unknown function '{func.id}'")
        elif isinstance(func, ast.Attribute):
            if func.attr.startswith("_"):
                self.fail(f"attribute access '.{func.attr}' is not allowed")
            if isinstance(func.value, ast.Name) and func.value.id == RE_NAME:
                if func.attr not in RE_FUNCTIONS:
                    self.fail(f"'re.{func.attr}' is not allowed")
            elif func.attr not in METHOD_NAMES:
                self.fail(f"method '.{func.attr}()' is not allowed")
            else:
                self.visit(func.value)
        else:
            self.fail("only named functions and methods can be called")

        for arg in node.args:
            if isinstance(arg, ast.Starred):
                self.fail("argument unpacking is not allowed")
            self.visit(arg)
        for keyword in node.keywords:
            if keyword.arg is None:
                self.fail("keyword unpacking is not allowed")
            self.visit(keyword.value)

    def visit_Subscript(self, node: ast.Subscript) -> None:
        self.visit(node.value)
        self.visit(node.slice)

    def visit_Slice(self, node: ast.Slice) -> None:
        self.visit_all([node.lower, node.upper, node.step])

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if type(node.op) not in _BIN_OPS:
            self.fail(f"operator '{type(node.op).__name__}' is not allowed")
        self.visit_all([node.left, node.right])

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if type(node.op) not in _UNARY_OPS:
            self.fail(f"operator '{type(node.op).__name__}' is not allowed")
        self.visit(node.operand)

    def visit_BoolOp(self, node: ast.BoolOp) -> None:
        self.visit_all(node.values)

    def visit_Compare(self, node: ast.Compare) -> None:
        self.visit(node.left)
        self.visit_all(node.comparators)

    def visit_IfExp(self, node: ast.IfExp) -> None:
        self.visit_all([node.test, node.body, node.orelse])

    def visit_List(self, node: ast.List) -> None:
        self.visit_all(node.elts)

    def visit_Tuple(self, node: ast.Tuple) -> None:
        self.visit_all(node.elts)

    def visit_Dict(self, node: ast.Dict) -> None:
        if any(key is None for key in node.keys):
            self.fail("dict unpacking is not allowed")
        self.visit_all(node.keys)
        self.visit_all(node.values)

    def visit_JoinedStr(self, node: ast.JoinedStr) -> None:
        self.visit_all(node.values)

    def visit_FormattedValue(self, node: ast.FormattedValue) -> None:
        self.visit(node.value)
        if node.format_spec is not None:
            self.visit(node.format_spec)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        if node.target.id in RESERVED_NAMES:
            self.fail(f"cannot assign to '{node.target.id}'")
        self.visit(node.value)

    def _check_target(self, target: ast.AST) -> None:
        if isinstance(target, ast.Name):
            if target.id in RESERVED_NAMES:
                self.fail(f"cannot assign to '{target.id}'")
        elif isinstance(target, ast.Tuple):
            for element in target.elts:
                self._check_target(element)
        else:
            self.fail("comprehension targets must be plain names")

    def _visit_comprehension(self, elts, generators) -> None:
        for generator in generators:
            if generator.is_async:
                self.fail("async comprehensions are not allowed")
            self._check_target(generator.target)
            self.visit(generator.iter)
            self.visit_all(generator.ifs)
        self.visit_all(elts)

    def visit_ListComp(self, node: ast.ListComp) -> None:
        self._visit_comprehension([node.elt], node.generators)

    def visit_GeneratorExp(self, node: ast.GeneratorExp) -> None:
        self._visit_comprehension([node.elt], node.generators)


# --- evaluation ----------------------------------------------------------


class _Evaluator:
    """Interprets a validated rule tree against one document text."""

    def __init__(self, text: str, max_steps: int, max_work: int = MAX_WORK):
        self.scope: dict[str, Any] = {TEXT_NAME: text}
        self.steps_left = max_steps
        self.work_left = max_work

    def eval(self, node: ast.AST) -> Any:
        self.steps_left -= 1
        if self.steps_left < 0:
            raise RuntimeError("rule exceeded its evaluation budget")
        result = getattr(self, f"eval_{type(node).__name__}")(node)
        if isinstance(node, _PRODUCING_NODES):
            self.charge(result)
        return result

    def charge(self, *values: Any) -> None:
        """Spend work proportional to the size of values scanned or built."""
        self.work_left -= sum(_sized_len(value) for value in values)
        if self.work_left < 0:
            raise RuntimeError("rule exceeded its work budget")

    def eval_Expression(self, node: ast.Expression) -> Any:
        return self.eval(node.body)

    def eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def eval_Name(self, node: ast.Name) -> Any:
        try:
            return self.scope[node.id]
        except KeyError:
            raise NameError(f"name '{node.id}' is not defined") from None

    def eval_Attribute(self, node: ast.Attribute) -> Any:
        return RE_FLAGS[node.attr]

    def eval_Call(self, node: ast.Call) -> Any:
        args = [self.eval(arg) for arg in node.args]
        kwargs = {kw.arg: self.eval(kw.value) for kw in node.keywords}
        self.charge(*args, *kwargs.values())
        func = node.func

        if isinstance(func, ast.Name):
            return FUNCTIONS[func.id](*args, **kwargs)

        if isinstance(func.value, ast.Name) and func.value.id == RE_NAME:
            return RE_FUNCTIONS[func.attr](*args, **kwargs)

        target = self.eval(func.value)
        self.charge(target)
        if isinstance(target, str):
            allowed = STR_METHODS
        elif isinstance(target, re.Match):
            allowed = MATCH_METHODS
        elif isinstance(target, (list, tuple)):
            allowed = LIST_METHODS
        elif isinstance(target, dict):
            allowed = DICT_METHODS
        else:
            allowed = frozenset()
        if func.attr not in allowed:
            raise TypeError(
                f"'{type(target).__name__}' object has no allowed method '{func.attr}'"
            )
        if isinstance(target, str):
            _check_method_cost(target, func.attr, args)
        result = getattr(target, func.attr)(*args, **kwargs)
        if isinstance(target, dict) and func.attr in ("items", "keys", "values"):
            return list(result)
        return result

    def eval_Subscript(self, node: ast.Subscript) -> Any:
        value = self.eval(node.value)
        if not isinstance(value, _SUBSCRIPTABLE_TYPES):
            raise TypeError(f"'{type(value).__name__}' object is not subscriptable")
        return value[self.eval(node.slice)]

    def eval_Slice(self, node: ast.Slice) -> slice:
        return slice(
            self.eval(node.lower) if node.lower is not None else None,
            self.eval(node.upper) if node.upper is not None else None,
            self.eval(node.step) if node.step is not None else None,
        )

    def eval_BinOp(self, node: ast.BinOp) -> Any:
        left = self.eval(node.left)
        right = self.eval(node.right)
        if isinstance(node.op, ast.Mult):
            _check_repetition(left, right)
        elif isinstance(node.op, ast.Add):
            _check_concatenation(left, right)
        elif isinstance(node.op, ast.Mod) and isinstance(left, str):
            _check_percent_format(left, right)
        result = _BIN_OPS[type(node.op)](left, right)
        if isinstance(result, (str, list, tuple)) and len(result) > MAX_SEQUENCE_LENGTH:
            raise MemoryError("rule produced an oversized value")
        return result

    def eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        return _UNARY_OPS[type(node.op)](self.eval(node.operand))

    def eval_BoolOp(self, node: ast.BoolOp) -> Any:
        value = None
        for value_node in node.values:
            value = self.eval(value_node)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def eval_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.eval(comparator)
            self.charge(left, right)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def eval_IfExp(self, node: ast.IfExp) -> Any:
        if self.eval(node.test):
            return self.eval(node.body)
        return self.eval(node.orelse)

    def eval_List(self, node: ast.List) -> list:
        return [self.eval(elt) for elt in node.elts]

    def eval_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.eval(elt) for elt in node.elts)

    def eval_Dict(self, node: ast.Dict) -> dict:
        return {self.eval(k): self.eval(v) for k, v in zip(node.keys, node.values)}

    def eval_JoinedStr(self, node: ast.JoinedStr) -> str:
        parts = []
        total = 0
        for value in node.values:
            part = str(self.eval(value))
            total += len(part)
            if total > MAX_SEQUENCE_LENGTH:
                raise MemoryError("rule produced an oversized value")
            parts.append(part)
        return "".join(parts)

    def eval_FormattedValue(self, node: ast.FormattedValue) -> str:
        value = self.eval(node.value)
        _check_rendered_size(value)
        if node.conversion == ord("r"):
            value = repr(value)
        elif node.conversion == ord("s"):
            value = str(value)
        elif node.conversion == ord("a"):
            value = ascii(value)
        spec = self.eval(node.format_spec) if node.format_spec is not None else ""
        _check_format_widths(spec)
        return format(value, spec)

    def eval_NamedExpr(self, node: ast.NamedExpr) -> Any:
        value = self.eval(node.value)
        self.scope[node.target.id] = value
        return value

    def eval_ListComp(self, node: ast.ListComp) -> list:
        return self._comprehension(node)

    def eval_GeneratorExp(self, node: ast.GeneratorExp) -> list:
        return self._comprehension(node)

    def _comprehension(self, node) -> list:
        results: list[Any] = []
        outer = self.scope
        self.scope = dict(outer)
        try:
            self._run_generators(node.elt, node.generators, 0, results)
        finally:
            # Comprehension variables do not leak, but := bindings do.
            for name, value in self.scope.items():
                if not _is_comprehension_target(name, node):
                    outer[name] = value
            self.scope = outer
        return results

    def _run_generators(self, elt, generators, index: int, results: list) -> None:
        if index == len(generators):
            results.append(self.eval(elt))
            if len(results) > MAX_SEQUENCE_LENGTH:
                raise MemoryError("rule produced an oversized value")
            return
        generator = generators[index]
        iterable = self.eval(generator.iter)
        if not isinstance(iterable, _ITERABLE_TYPES):
            raise TypeError(f"'{type(iterable).__name__}' object is not iterable")
        for item in iterable:
            self._bind(generator.target, item)
            if all(self.eval(condition) for condition in generator.ifs):
                self._run_generators(elt, generators, index + 1, results)

    def _bind(self, target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            self.scope[target.id] = value
            return
        items = list(value)
        if len(items) != len(target.elts):
            raise ValueError("cannot unpack value into comprehension target")
        for sub_target, item in zip(target.elts, items):
            self._bind(sub_target, item)


def _is_comprehension_target(name: str, node) -> bool:
    for generator in node.generators:
        for target in ast.walk(generator.target):
            if isinstance(target, ast.Name) and target.id == name:
                return True
    return False


def _check_repetition(left: Any, right: Any) -> None:
    if isinstance(left, int) and isinstance(right, int):
        if abs(left).bit_length() + abs(right).bit_length() > MAX_INT_BITS:
            raise OverflowError("rule produced an oversized number")
        return
    for sequence, count in ((left, right), (right, left)):
        if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
            if len(sequence) * max(count, 0) > MAX_SEQUENCE_LENGTH:
                raise MemoryError("rule produced an oversized value")


def _check_concatenation(left: Any, right: Any) -> None:
    if isinstance(left, (str, list, tuple)) and isinstance(right, (str, list, tuple)):
        if len(left) + len(right) > MAX_SEQUENCE_LENGTH:
            raise MemoryError("rule produced an oversized value")


def _check_width(digits: str) -> int:
    if len(digits) > 6 or int(digits) > MAX_FORMAT_WIDTH:
        raise MemoryError("format width is too large")
    return int(digits)


def _check_format_widths(spec: str) -> None:
    """Reject format specs whose width or precision would allocate huge strings."""
    for digits in _DIGITS_RE.findall(spec):
        _check_width(digits)


def _check_percent_format(template: str, args: Any) -> None:
    """Estimate the size of ``template % args`` before formatting it."""
    value_size = _rendered_size(args)
    estimate = len(template)
    for width, precision in _PERCENT_SPEC_RE.findall(template):
        if "*" in (width, precision):
            raise ValueError("'*' widths are not allowed in extraction rules")
        estimate += value_size
        for digits in (width, precision):
            if digits:
                estimate += _check_width(digits)
        if estimate > MAX_SEQUENCE_LENGTH:
            raise MemoryError("rule produced an oversized value")


def _check_method_cost(target: Any, method: str, args: list) -> None:
    """Bound the output size of methods that can grow their input."""
    if method == "replace" and len(args) >= 2:
        old, new = args[0], args[1]
        if isinstance(old, str) and isinstance(new, str):
            occurrences = target.count(old) if old else len(target) + 1
            if len(target) + occurrences * len(new) > MAX_SEQUENCE_LENGTH:
                raise MemoryError("rule produced an oversized value")
    elif method == "join" and args and isinstance(args[0], (str, list, tuple, dict)):
        items = args[0]
        total = len(target) * max(len(items) - 1, 0)
        if total > MAX_SEQUENCE_LENGTH:
            raise MemoryError("rule produced an oversized value")
        for item in items:
            total += len(item) if isinstance(item, str) else 0
            if total > MAX_SEQUENCE_LENGTH:
                raise MemoryError("rule produced an oversized value")


def _to_field_value(value: Any) -> Any:
    """Convert an evaluation result into a JSON-friendly field value."""
    if isinstance(value, re.Match):
        value = value.group(0)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_to_field_value(item) for item in value]
    if isinstance(value, dict):
        return {str(k): _to_field_value(v) for k, v in value.items()}
    return str(value)


class RuleEngine:
    """Compiles and evaluates extraction rules in the sandbox."""

    def __init__(
        self,
        max_rule_length: int = DEFAULT_MAX_RULE_LENGTH,
        max_steps: int = DEFAULT_MAX_STEPS,
        max_work: int = MAX_WORK,
    ):
        self.max_rule_length = max_rule_length
        self.max_steps = max_steps
        self.max_work = max_work
        self._cache: dict[str, CompiledRule] = {}
        self._cache_lock = threading.Lock()

    def compile_rule(self, expression: str) -> CompiledRule:
        """
        Parse and validate a rule.

        Raises:
            RuleSyntaxError: if the rule is not a single valid expression.
            UnsafeRuleError: if it uses anything outside the sandbox.
        """
        with self._cache_lock:
            cached = self._cache.get(expression)
        if cached is not None:
            return cached

        if not isinstance(expression, str) or not expression.strip():
            raise RuleSyntaxError("rule is empty", expression=str(expression))
        if len(expression) > self.max_rule_length:
            raise UnsafeRuleError(
                f"rule is longer than {self.max_rule_length} characters",
                expression=expression,
            )
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise RuleSyntaxError(f"invalid syntax: {e.msg}", expression=expression) from e
        except (ValueError, RecursionError, MemoryError) as e:
            raise RuleSyntaxError(f"cannot parse rule: {e}", expression=expression) from e

        try:
            _Validator(expression, _bound_names(tree)).visit(tree.body)
        except RecursionError as e:
            raise UnsafeRuleError("rule is nested too deeply", expression=expression) from e

        compiled = CompiledRule(expression=expression, tree=tree)
        with self._cache_lock:
            self._cache[expression] = compiled
        return compiled

    def evaluate(self, expression: str, text: str) -> Any:
        """
        Evaluate one rule against ``text``.

        Raises:
            FieldExtractionFailure: if the rule cannot be compiled or raises.
        """
        compiled = self.compile_rule(expression)
        try:
            value = _Evaluator(text, self.max_steps, self.max_work).eval(compiled.tree)
            _check_rendered_size(value)
        except FieldExtractionFailure:
            raise
        except Exception as e:
            raise FieldExtractionFailure(
                f"{type(e).__name__}: {e}", expression=expression
            ) from e
        return _to_field_value(value)

    def extract(self, text: str, extract_rules: Mapping[str, str]) -> dict[str, Any]:
        """
        Evaluate every rule; a failing rule yields None for its field only.
        """
        fields: dict[str, Any] = {}
        for field_name, expression in extract_rules.items():
            try:
                fields[field_name] = self.evaluate(expression, text)
            except FieldExtractionFailure as e:
                log.warning(
                    "Extraction rule failed",
                    field=field_name,
                    error=e.reason,
                    rule=expression if isinstance(expression, str) else repr(expression),
                )
                fields[field_name] = None
        return fields
