"""
NGSILink Expression Evaluator Module

This module computes derived attribute values from the sibling attributes of
a device update. Two dialects are supported behind one strategy interface:
the legacy ``${@attr * 2}`` language and a JEXL-style language.

Neither dialect ever calls eval(); expressions are tokenized, parsed into a
small node tree and walked by a restricted evaluator.
"""

import math
import operator
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from ngsilink.models.schemas import ExpressionLanguage
from ngsilink.utils.exceptions import ExpressionError

logger = structlog.get_logger(__name__)

NUMERIC_TEXT = re.compile(r"^\s*-?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?\s*$")

TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<number>\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<attr>@[A-Za-z_][A-Za-z0-9_]*)
    |(?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
    |(?P<op>==|!=|<=|>=|&&|\|\||[-+*/%^\#()?:.,\[\]|!<>])
    """,
    re.VERBOSE,
)


# ============================================================================
# Value Helpers
# ============================================================================


def coerce_number(value: Any) -> Any:
    """Turn numeric text into an int or float; leave anything else untouched."""
    if isinstance(value, str) and NUMERIC_TEXT.match(value):
        number = float(value)
        if number.is_integer() and "." not in value and "e" not in value.lower():
            return int(number)
        return number
    return value


def coerce_context(context: dict[str, Any]) -> dict[str, Any]:
    """Prepare attribute values for evaluation; "0" must stay the number 0."""
    return {key: coerce_number(value) for key, value in context.items()}


def truthy(value: Any) -> bool:
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, str) or isinstance(right, str):
        return to_text(left) + to_text(right)
    return left + right


def _divide(left: Any, right: Any) -> Any:
    if right == 0:
        raise ZeroDivisionError("division by zero")
    result = left / right
    return int(result) if isinstance(result, float) and result.is_integer() else result


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], Any]:
    def compare(left: Any, right: Any) -> bool:
        try:
            return op(left, right)
        except TypeError:
            return False

    return compare


ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "+": _add,
    "-": operator.sub,
    "*": operator.mul,
    "/": _divide,
    "%": operator.mod,
    "^": operator.pow,
    "#": lambda left, right: to_text(left) + to_text(right),
}

COMPARISONS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": _compare(operator.lt),
    "<=": _compare(operator.le),
    ">": _compare(operator.gt),
    ">=": _compare(operator.ge),
}


def _round(value: Any, digits: Any = 0) -> Any:
    result = round(float(value), int(digits))
    return int(result) if int(digits) == 0 else result


FUNCTIONS: dict[str, Callable[..., Any]] = {
    # Shared by the legacy functions and the JEXL transforms
    "trim": lambda s: to_text(s).strip(),
    "length": lambda s: len(s) if isinstance(s, (list, dict)) else len(to_text(s)),
    "toUpperCase": lambda s: to_text(s).upper(),
    "toLowerCase": lambda s: to_text(s).lower(),
    "upper": lambda s: to_text(s).upper(),
    "lower": lambda s: to_text(s).lower(),
    "substr": lambda s, start, end=None: to_text(s)[int(start):None if end is None else int(end)],
    "indexOf": lambda s, sub: to_text(s).find(to_text(sub)),
    "toString": to_text,
    "toNumber": lambda s: coerce_number(to_text(s)),
    "parseFloat": lambda s: float(s),
    "parseInt": lambda s: int(float(s)),
    "round": _round,
    "floor": lambda n: math.floor(float(n)),
    "ceil": lambda n: math.ceil(float(n)),
    "abs": lambda n: abs(n),
}


# ============================================================================
# Parser
# ============================================================================


@dataclass
class Token:
    kind: str
    text: str


@dataclass
class Dialect:
    """Grammar knobs that distinguish the two expression languages."""

    binary: dict[str, int]
    functions: frozenset[str]
    transforms: frozenset[str] = frozenset()
    ternary: bool = False
    negation: bool = False
    bare_references: bool = False
    member_access: bool = False
    keywords: dict[str, Any] = field(default_factory=dict)


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    position = 0
    while position < len(expression):
        match = TOKEN_PATTERN.match(expression, position)
        if match is None:
            raise ExpressionError(expression, f"unexpected character at {position}")
        position = match.end()
        if match.lastgroup != "ws":
            tokens.append(Token(match.lastgroup, match.group()))
    tokens.append(Token("end", ""))
    return tokens


class _Parser:
    """Pratt parser producing tuple nodes."""

    UNARY_POWER = 75
    POSTFIX_POWER = 90

    def __init__(self, expression: str, dialect: Dialect):
        self.expression = expression
        self.dialect = dialect
        self.tokens = tokenize(expression)
        self.index = 0

    def parse(self) -> tuple:
        node = self._expression(0)
        if self._peek().kind != "end":
            self._fail(f"unexpected token '{self._peek().text}'")
        return node

    def _fail(self, reason: str):
        raise ExpressionError(self.expression, reason)

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _next(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._next()
        if token.text != text:
            self._fail(f"expected '{text}' but found '{token.text or 'end'}'")

    def _left_power(self, token: Token) -> int:
        if token.kind != "op":
            return 0
        if token.text in self.dialect.binary:
            return self.dialect.binary[token.text]
        if token.text == "?" and self.dialect.ternary:
            return 5
        if token.text == "|" and self.dialect.transforms:
            return 80
        if token.text in (".", "[") and self.dialect.member_access:
            return self.POSTFIX_POWER
        return 0

    def _expression(self, min_power: int) -> tuple:
        left = self._prefix(self._next())
        while True:
            token = self._peek()
            power = self._left_power(token)
            if power <= min_power:
                return left
            self._next()
            left = self._infix(token, left, power)

    def _prefix(self, token: Token) -> tuple:
        if token.kind == "number":
            return ("literal", coerce_number(token.text))
        if token.kind == "string":
            return ("literal", re.sub(r"\\(.)", r"\1", token.text[1:-1]))
        if token.kind == "attr":
            return ("ref", token.text[1:])
        if token.kind == "name":
            if self._peek().text == "(" and token.text in self.dialect.functions:
                self._next()
                return ("call", token.text, self._arguments(")"))
            if token.text in self.dialect.keywords:
                return ("literal", self.dialect.keywords[token.text])
            if self.dialect.bare_references:
                return ("ref", token.text)
            self._fail(f"unknown identifier '{token.text}'")
        if token.text == "(":
            node = self._expression(0)
            self._expect(")")
            return node
        if token.text == "-":
            return ("unary", "-", self._expression(self.UNARY_POWER))
        if token.text == "+":
            return ("unary", "+", self._expression(self.UNARY_POWER))
        if token.text == "!" and self.dialect.negation:
            return ("unary", "!", self._expression(self.UNARY_POWER))
        if token.text == "[" and self.dialect.member_access:
            return ("array", self._arguments("]"))
        self._fail(f"unexpected token '{token.text or 'end'}'")

    def _infix(self, token: Token, left: tuple, power: int) -> tuple:
        if token.text == "?":
            consequent = self._expression(0)
            self._expect(":")
            alternate = self._expression(power - 1)
            return ("ternary", left, consequent, alternate)
        if token.text == "|":
            name = self._next()
            if name.kind != "name" or name.text not in self.dialect.transforms:
                self._fail(f"unknown transform '{name.text}'")
            args: list[tuple] = []
            if self._peek().text == "(":
                self._next()
                args = self._arguments(")")
            return ("call", name.text, [left, *args])
        if token.text == ".":
            name = self._next()
            if name.kind != "name":
                self._fail("expected property name after '.'")
            return ("member", left, ("literal", name.text))
        if token.text == "[":
            key = self._expression(0)
            self._expect("]")
            return ("member", left, key)
        # "^" is right associative
        right_power = power - 1 if token.text == "^" else power
        return ("binary", token.text, left, self._expression(right_power))

    def _arguments(self, closing: str) -> list[tuple]:
        args: list[tuple] = []
        if self._peek().text == closing:
            self._next()
            return args
        while True:
            args.append(self._expression(0))
            token = self._next()
            if token.text == closing:
                return args
            if token.text != ",":
                self._fail(f"expected ',' or '{closing}'")


# ============================================================================
# Evaluators
# ============================================================================


class ExpressionEvaluator(ABC):
    """
    Strategy interface for computing an attribute from its siblings.
    """

    language: ExpressionLanguage
    dialect: Dialect

    def __init__(self):
        self._cache: dict[str, tuple] = {}

    @abstractmethod
    def prepare(self, expression: str) -> str:
        """Strip dialect-specific wrapping before parsing."""

    def parse(self, expression: str) -> tuple:
        source = self.prepare(expression)
        if source not in self._cache:
            self._cache[source] = _Parser(source, self.dialect).parse()
        return self._cache[source]

    def evaluate(self, expression: str, context: dict[str, Any]) -> Any:
        """
        Evaluate an expression against the attribute values of one update.

        Args:
            expression: Expression source
            context: Attribute name to raw value

        Returns:
            The computed value, or None when it references a missing attribute
        """
        tree = self.parse(expression)
        variables = coerce_context(context)
        try:
            return self._eval_node(tree, variables)
        except (TypeError, ValueError, ZeroDivisionError, OverflowError) as e:
            raise ExpressionError(expression, str(e)) from e

    def _eval_node(self, node: tuple, variables: dict[str, Any]) -> Any:
        kind = node[0]

        if kind == "literal":
            return node[1]

        elif kind == "ref":
            if node[1] not in variables:
                logger.debug("expression.missing_reference", name=node[1])
            return variables.get(node[1])

        elif kind == "array":
            return [self._eval_node(item, variables) for item in node[1]]

        elif kind == "unary":
            operand = self._eval_node(node[2], variables)
            if node[1] == "!":
                return not truthy(operand)
            if operand is None:
                return None
            return -operand if node[1] == "-" else +operand

        elif kind == "binary":
            return self._eval_binary(node[1], node[2], node[3], variables)

        elif kind == "ternary":
            branch = node[2] if truthy(self._eval_node(node[1], variables)) else node[3]
            return self._eval_node(branch, variables)

        elif kind == "member":
            subject = self._eval_node(node[1], variables)
            key = self._eval_node(node[2], variables)
            if isinstance(subject, dict):
                return subject.get(key)
            if isinstance(subject, (list, str)) and isinstance(key, int):
                return subject[key] if -len(subject) <= key < len(subject) else None
            return None

        elif kind == "call":
            args = [self._eval_node(arg, variables) for arg in node[2]]
            if args and args[0] is None:
                return None
            return FUNCTIONS[node[1]](*args)

        raise ExpressionError(str(node), f"unsupported node {kind}")

    def _eval_binary(self, op: str, left_node: tuple, right_node: tuple, variables) -> Any:
        left = self._eval_node(left_node, variables)

        # Short-circuit operators return one of their operands
        if op == "&&":
            return self._eval_node(right_node, variables) if truthy(left) else left
        if op == "||":
            return left if truthy(left) else self._eval_node(right_node, variables)

        right = self._eval_node(right_node, variables)
        if op in COMPARISONS:
            return COMPARISONS[op](left, right)
        if left is None or right is None:
            return None
        return ARITHMETIC[op](left, right)


class LegacyExpressionEvaluator(ExpressionEvaluator):
    """``${@temperature * 1.8 + 32}`` style expressions."""

    language = ExpressionLanguage.LEGACY
    dialect = Dialect(
        binary={"#": 10, "+": 50, "-": 50, "*": 60, "/": 60, "^": 70},
        functions=frozenset(
            {"trim", "length", "substr", "indexOf", "toUpperCase", "toLowerCase"}
        ),
    )

    def prepare(self, expression: str) -> str:
        source = expression.strip()
        if source.startswith("${") and source.endswith("}"):
            return source[2:-1]
        return source


class JexlExpressionEvaluator(ExpressionEvaluator):
    """``temperature * 1.8 + 32`` and ``status == 'on' ? 1 : 0`` style expressions."""

    language = ExpressionLanguage.JEXL
    dialect = Dialect(
        binary={
            "||": 10,
            "&&": 20,
            "==": 30,
            "!=": 30,
            "<": 40,
            "<=": 40,
            ">": 40,
            ">=": 40,
            "+": 50,
            "-": 50,
            "*": 60,
            "/": 60,
            "%": 60,
            "^": 70,
        },
        functions=frozenset(),
        transforms=frozenset(
            {
                "toString",
                "toNumber",
                "parseFloat",
                "parseInt",
                "trim",
                "upper",
                "lower",
                "toUpperCase",
                "toLowerCase",
                "substr",
                "indexOf",
                "round",
                "floor",
                "ceil",
                "abs",
                "length",
            }
        ),
        ternary=True,
        negation=True,
        bare_references=True,
        member_access=True,
        keywords={"true": True, "false": False, "null": None, "undefined": None},
    )

    def prepare(self, expression: str) -> str:
        return expression.strip()


EVALUATORS: dict[ExpressionLanguage, type[ExpressionEvaluator]] = {
    ExpressionLanguage.LEGACY: LegacyExpressionEvaluator,
    ExpressionLanguage.JEXL: JexlExpressionEvaluator,
}


def get_evaluator(language: ExpressionLanguage | str) -> ExpressionEvaluator:
    """Create the evaluator for a configured expression language."""
    return EVALUATORS[ExpressionLanguage(language)]()
