"""Local math capability backed by sympy.

The model sends a single expression in ``query``; the capability parses it
with sympy (accepting ``^`` for powers and implicit multiplication such as
``2(x+1)``) and returns the simplified result.

Queries are model output, so they are never handed to ``eval`` as-is.
sympy's tokenizer transformations produce Python source, that source is
parsed with ``ast`` and checked against a whitelist of operators and sympy
functions, and the size of any integer it could produce is bounded before
the tree is compiled. Evaluation then runs in a worker thread so slow
simplification never stalls the event loop.
"""

from __future__ import annotations

import ast
import asyncio
import json
import math
from decimal import Decimal, InvalidOperation
from tokenize import TokenError
from typing import Any

import sympy as sp
from pydantic import BaseModel, field_validator
from sympy.parsing.sympy_parser import (
    implicit_multiplication_application,
    standard_transformations,
    stringify_expr,
)

from toolchat.observability.logging import get_logger
from toolchat.tools.base import CapabilityError, ToolDefinition, load_arguments

log = get_logger(__name__)

TOOL_NAME = "calculate"
TRANSFORMS = (*standard_transformations, implicit_multiplication_application)

MAX_QUERY_LENGTH = 500
MAX_RESULT_DIGITS = 10_000
MAX_ARGUMENT_DIGITS = 6

FUNCTIONS: dict[str, Any] = {
    "sqrt": sp.sqrt,
    "cbrt": sp.cbrt,
    "root": sp.root,
    "exp": sp.exp,
    "log": sp.log,
    "ln": sp.log,
    "sin": sp.sin,
    "cos": sp.cos,
    "tan": sp.tan,
    "cot": sp.cot,
    "sec": sp.sec,
    "csc": sp.csc,
    "asin": sp.asin,
    "acos": sp.acos,
    "atan": sp.atan,
    "atan2": sp.atan2,
    "sinh": sp.sinh,
    "cosh": sp.cosh,
    "tanh": sp.tanh,
    "Abs": sp.Abs,
    "abs": sp.Abs,
    "floor": sp.floor,
    "ceiling": sp.ceiling,
    "factorial": sp.factorial,
    "factorial2": sp.factorial2,
    "binomial": sp.binomial,
    "gcd": sp.gcd,
    "lcm": sp.lcm,
    "Min": sp.Min,
    "Max": sp.Max,
    "min": sp.Min,
    "max": sp.Max,
    "integrate": sp.integrate,
    "diff": sp.diff,
    "limit": sp.limit,
    "expand": sp.expand,
    "factor": sp.factor,
    "simplify": sp.simplify,
}
CONSTANTS: dict[str, Any] = {"pi": sp.pi, "E": sp.E, "I": sp.I, "oo": sp.oo}
# Emitted by the tokenizer transformations for literals and free names.
CONSTRUCTORS: dict[str, Any] = {
    "Integer": sp.Integer,
    "Float": sp.Float,
    "Rational": sp.Rational,
    "Symbol": sp.Symbol,
}

GROWING_FUNCTIONS = {"factorial", "factorial2", "binomial"}
SUMMING_FUNCTIONS = {"lcm"}

_BINARY_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Pow, ast.Mod)
_UNARY_OPS = (ast.UAdd, ast.USub)


def _namespace() -> dict[str, Any]:
    return {**FUNCTIONS, **CONSTANTS, **CONSTRUCTORS, "__builtins__": {}}


class CalculateArgs(BaseModel):
    query: str

    @field_validator("query")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query cannot be blank")
        return value


class _SizeCheck:
    """Walk a parsed expression, rejecting unknown constructs and huge numbers.

    ``digits`` returns an upper bound on the number of decimal digits any
    exact number produced by the node could have.
    """

    def digits(self, node: ast.AST) -> int:
        bound = self._digits(node)
        if bound > MAX_RESULT_DIGITS:
            raise ValueError("result would be too large to compute")
        return bound

    def _digits(self, node: ast.AST) -> int:
        if isinstance(node, ast.Expression):
            return self.digits(node.body)
        if isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, int | float):
                raise ValueError("unsupported literal")
            return len(str(abs(int(node.value))))
        if isinstance(node, ast.Name):
            if node.id not in CONSTANTS:
                raise ValueError(f"unknown name '{node.id}'")
            return 1
        if isinstance(node, ast.Tuple):
            return max((self.digits(e) for e in node.elts), default=1)
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, _UNARY_OPS):
            return self.digits(node.operand)
        if isinstance(node, ast.BinOp) and isinstance(node.op, _BINARY_OPS):
            return self._binop(node)
        if isinstance(node, ast.Call):
            return self._call(node)
        raise ValueError(f"unsupported syntax ({type(node).__name__})")

    def _binop(self, node: ast.BinOp) -> int:
        left = self.digits(node.left)
        if isinstance(node.op, ast.Pow):
            exponent = self._magnitude(node.right)
            return left * max(exponent, 1)
        right = self.digits(node.right)
        if isinstance(node.op, ast.Add | ast.Sub):
            return max(left, right) + 1
        if isinstance(node.op, ast.Mod):
            return max(left, right)
        return left + right

    def _call(self, node: ast.Call) -> int:
        if not isinstance(node.func, ast.Name):
            raise ValueError("unknown function")
        name = node.func.id
        if node.keywords:
            raise ValueError(f"keyword arguments are not supported in {name}()")

        if name in CONSTRUCTORS:
            return self._literal(name, node.args)
        if name not in FUNCTIONS:
            raise ValueError(f"unknown function '{name}'")

        if name in GROWING_FUNCTIONS:
            if not node.args:
                raise ValueError(f"{name}() needs an argument")
            for arg in node.args[1:]:
                self.digits(arg)
            n = self._magnitude(node.args[0])
            return n * len(str(n))
        sizes = [self.digits(arg) for arg in node.args]
        if name in SUMMING_FUNCTIONS:
            return sum(sizes) or 1
        return max(sizes, default=1)

    def _literal(self, name: str, args: list[ast.expr]) -> int:
        if name == "Symbol":
            if len(args) != 1 or not isinstance(args[0], ast.Constant) or not isinstance(args[0].value, str):
                raise ValueError("invalid symbol")
            return 1
        if name == "Float":
            if len(args) != 1 or not isinstance(args[0], ast.Constant):
                raise ValueError("invalid number")
            try:
                adjusted = Decimal(str(args[0].value)).adjusted()
            except InvalidOperation as e:
                raise ValueError(f"invalid number {args[0].value!r}") from e
            return max(adjusted + 1, 1)
        return max((self.digits(a) for a in args), default=1)

    def _magnitude(self, node: ast.expr) -> int:
        """Upper bound on ``abs(value)`` of an argument that scales the result."""
        size = self.digits(node)
        if size > MAX_ARGUMENT_DIGITS:
            raise ValueError("result would be too large to compute")
        value = eval(_compile(ast.Expression(body=node)), _namespace(), {})  # noqa: S307
        value = sp.sympify(value)
        if not value.is_number:
            return 10**size
        if value.is_finite is False:
            raise ValueError("result would be too large to compute")
        return int(sp.ceiling(sp.Abs(value)))


def _compile(tree: ast.Expression) -> Any:
    return compile(ast.fix_missing_locations(tree), "<calculate>", "eval")


def parse_query(query: str) -> ast.Expression:
    """Turn ``query`` into a checked Python expression tree.

    Raises:
        ValueError: If the query is too long, malformed, uses anything other
            than arithmetic and whitelisted sympy functions, or would produce
            an unreasonably large number.
    """
    text = query.replace("^", "**").strip()
    if len(text) > MAX_QUERY_LENGTH:
        raise ValueError(f"query longer than {MAX_QUERY_LENGTH} characters")
    if "__" in text:
        raise ValueError("double underscores are not allowed")
    try:
        code = stringify_expr(text, {}, _namespace(), TRANSFORMS)
        tree = ast.parse(code.strip(), mode="eval")
    except (SyntaxError, TokenError, TypeError, ValueError) as e:
        raise ValueError(str(e) or "malformed expression") from e
    _SizeCheck().digits(tree)
    return tree


def evaluate_expression(query: str) -> dict[str, Any]:
    """Evaluate ``query`` and describe the result.

    Returns:
        Dict with the exact ``result`` and, for closed-form numbers, a float
        ``numeric`` approximation.

    Raises:
        ValueError: If the expression is rejected or sympy cannot evaluate it.
    """
    try:
        tree = parse_query(query)
        expr = eval(_compile(tree), _namespace(), {})  # noqa: S307
        simplified = sp.simplify(expr)
    except (
        TypeError,
        ValueError,
        AttributeError,
        OverflowError,
        ZeroDivisionError,
        sp.SympifyError,
    ) as e:
        raise ValueError(f"Could not evaluate '{query}': {e}") from e

    result: dict[str, Any] = {"result": str(simplified)}
    if not getattr(simplified, "free_symbols", True):
        try:
            numeric = float(simplified.evalf())
        except (TypeError, OverflowError):
            numeric = None  # complex or non-real values have no float form
        if numeric is not None and math.isfinite(numeric):
            result["numeric"] = numeric
    return result


class CalculateCapability:
    """Evaluate arithmetic and symbolic math expressions.

    Results always carry a ``status``: ``"completed"`` on success and
    ``"failed"`` alongside an ``error`` message otherwise.
    """

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=TOOL_NAME,
            description=(
                "Evaluate a math expression exactly, e.g. '2+2', 'sqrt(2)*3', "
                "'integrate(x^2, x)'. Use for any arithmetic the answer depends on."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The expression to evaluate.",
                    },
                },
                "required": ["query"],
            },
        )

    async def execute(self, arguments: str) -> str:
        try:
            args = load_arguments(arguments, CalculateArgs)
        except CapabilityError as e:
            log.debug("calculate_invalid_arguments", error=str(e))
            return json.dumps({"error": "Invalid or missing query.", "status": "failed"})

        try:
            outcome = await asyncio.to_thread(evaluate_expression, args.query)
        except ValueError as e:
            log.debug("calculate_rejected", query=args.query, error=str(e))
            return json.dumps({"query": args.query, "error": str(e), "status": "failed"})

        return json.dumps({"query": args.query, **outcome, "status": "completed"})
