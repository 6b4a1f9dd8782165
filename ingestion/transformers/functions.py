"""
Field-level functions and the expression evaluator used by transformation rules.

Expressions are deliberately small: {field} placeholders, numeric and quoted
string literals, + - * / and parentheses. `+` adds when both sides are
numeric and concatenates otherwise; the other operators require numbers.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import re

from core.exceptions import ExpressionError, TransformationError
from schemas.values import Value, ValueKind


def _number(value: Any, what: str) -> Decimal:
    number = Value.of(value).as_number()
    if number is None:
        raise TransformationError(f"{what} is not numeric: {value!r}")
    return number


def _plain(number: Decimal) -> Any:
    """Decimal back to int or float so rows stay JSON friendly"""
    if number == number.to_integral_value():
        return int(number)
    return float(number)


# ============================================================================
# Format functions (format rules)
# ============================================================================

def _uppercase(value, params):
    return Value.of(value).as_text().upper()


def _lowercase(value, params):
    return Value.of(value).as_text().lower()


def _trim(value, params):
    chars = params.get("chars")
    return Value.of(value).as_text().strip(chars) if chars else Value.of(value).as_text().strip()


def _replace(value, params):
    find = str(params.get("find", ""))
    if not find:
        return Value.of(value).as_text()
    return Value.of(value).as_text().replace(find, str(params.get("replace", "")))


def _substring(value, params):
    text = Value.of(value).as_text()
    start = int(params.get("start", 0))
    if start < 0 or start > len(text):
        return ""
    length = params.get("length")
    if length is None:
        return text[start:]
    return text[start:start + int(length)]


def _formatdate(value, params):
    stamp = Value.of(value).as_timestamp()
    if stamp is None:
        raise TransformationError(f"Value is not a date: {value!r}")
    return stamp.strftime(params.get("format") or "%Y-%m-%d")


def _parsedate(value, params):
    text = Value.of(value).as_text().strip()
    fmt = params.get("format")
    try:
        parsed = datetime.strptime(text, fmt) if fmt else datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise TransformationError(f"Cannot parse date {text!r}", original_exception=e)
    # rows carry timestamps as ISO-8601 text
    return parsed.isoformat()


def _prefix(value, params):
    return f"{params.get('value', '')}{Value.of(value).as_text()}"


def _suffix(value, params):
    return f"{Value.of(value).as_text()}{params.get('value', '')}"


def _padleft(value, params):
    return Value.of(value).as_text().rjust(int(params.get("width", 0)), str(params.get("char", " "))[:1] or " ")


def _padright(value, params):
    return Value.of(value).as_text().ljust(int(params.get("width", 0)), str(params.get("char", " "))[:1] or " ")


def _round(value, params):
    digits = int(params.get("digits", 0))
    quantum = Decimal(1).scaleb(-digits)
    return _plain(_number(value, "Value").quantize(quantum, rounding=ROUND_HALF_UP))


def _add(value, params):
    return _plain(_number(value, "Value") + _number(params.get("value", 0), "Operand"))


def _multiply(value, params):
    return _plain(_number(value, "Value") * _number(params.get("value", 1), "Operand"))


FORMAT_FUNCTIONS: Dict[str, Callable[[Any, Dict[str, Any]], Any]] = {
    "uppercase": _uppercase,
    "lowercase": _lowercase,
    "trim": _trim,
    "replace": _replace,
    "substring": _substring,
    "formatdate": _formatdate,
    "parsedate": _parsedate,
    "prefix": _prefix,
    "suffix": _suffix,
    "padleft": _padleft,
    "padright": _padright,
    "round": _round,
    "add": _add,
    "multiply": _multiply,
}


def apply_format(function: str, value: Any, params: Dict[str, Any]) -> Any:
    handler = FORMAT_FUNCTIONS.get((function or "").strip().lower())
    if handler is None:
        raise TransformationError(f"Unknown format function: {function}")
    if value is None:
        return None
    return handler(value, params)


# ============================================================================
# Compute functions (add rules over several source fields)
# ============================================================================

def compute(function: str, values: Sequence[Any], params: Dict[str, Any]) -> Any:
    name = (function or "").strip().lower()
    present = [v for v in values if v is not None]

    if name == "concat":
        separator = str(params.get("separator", ""))
        return separator.join(Value.of(v).as_text() for v in present)
    if name == "count":
        return len(present)

    numbers = [_number(v, "Value") for v in present]
    if name == "sum":
        return _plain(sum(numbers, Decimal(0)))
    if not numbers:
        return None
    if name == "avg":
        return _plain(sum(numbers, Decimal(0)) / len(numbers))
    if name == "min":
        return _plain(min(numbers))
    if name == "max":
        return _plain(max(numbers))
    raise TransformationError(f"Unknown compute function: {function}")


# ============================================================================
# Expressions
# ============================================================================

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<field>\{[^{}]+\})
      | (?P<number>\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>[-+*/()])
    )""",
    re.VERBOSE,
)


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens = []
    position = 0
    text = expression.rstrip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match or match.end() == position:
            raise ExpressionError(
                f"Unexpected character at position {position} in expression",
                context={"expression": expression}
            )
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


class _Parser:
    """Recursive-descent evaluator over tokens, reading fields from one row"""

    def __init__(self, tokens: List[Tuple[str, str]], row: Dict[str, Any], expression: str):
        self.tokens = tokens
        self.row = row
        self.expression = expression
        self.index = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        token = self._peek()
        if token is None:
            raise ExpressionError("Unexpected end of expression", context={"expression": self.expression})
        self.index += 1
        return token

    def parse(self) -> Value:
        if not self.tokens:
            raise ExpressionError("Expression is empty")
        result = self._sum()
        if self._peek() is not None:
            raise ExpressionError(f"Unexpected token {self._peek()[1]!r}", context={"expression": self.expression})
        return result

    def _sum(self) -> Value:
        left = self._product()
        while self._peek() in (("op", "+"), ("op", "-")):
            op = self._take()[1]
            left = self._binary(op, left, self._product())
        return left

    def _product(self) -> Value:
        left = self._unary()
        while self._peek() in (("op", "*"), ("op", "/")):
            op = self._take()[1]
            left = self._binary(op, left, self._unary())
        return left

    def _unary(self) -> Value:
        if self._peek() == ("op", "-"):
            self._take()
            operand = self._unary()
            number = operand.as_number()
            if number is None:
                raise ExpressionError("Cannot negate a non-numeric value", context={"expression": self.expression})
            return Value.of(-number)
        return self._atom()

    def _atom(self) -> Value:
        kind, text = self._take()
        if kind == "number":
            return Value.of(Decimal(text))
        if kind == "string":
            body = text[1:-1]
            return Value.of(re.sub(r"\\(.)", r"\1", body))
        if kind == "field":
            return Value.of(self.row.get(text[1:-1].strip()))
        if text == "(":
            inner = self._sum()
            if self._take() != ("op", ")"):
                raise ExpressionError("Missing closing parenthesis", context={"expression": self.expression})
            return inner
        raise ExpressionError(f"Unexpected token {text!r}", context={"expression": self.expression})

    def _binary(self, op: str, left: Value, right: Value) -> Value:
        left_number, right_number = left.as_number(), right.as_number()
        numeric = left_number is not None and right_number is not None
        if op == "+":
            if numeric:
                return Value.of(left_number + right_number)
            return Value.of(left.as_text() + right.as_text())
        if not numeric:
            raise ExpressionError(
                f"Operator {op!r} needs numeric operands",
                context={"expression": self.expression}
            )
        if op == "-":
            return Value.of(left_number - right_number)
        if op == "*":
            return Value.of(left_number * right_number)
        if right_number == 0:
            raise ExpressionError("Division by zero", context={"expression": self.expression})
        try:
            return Value.of(left_number / right_number)
        except InvalidOperation as e:
            raise ExpressionError("Invalid division", original_exception=e)


def evaluate(expression: str, row: Dict[str, Any]) -> Any:
    """Evaluate an expression against a row and return a plain Python value"""
    result = _Parser(_tokenize(expression or ""), row, expression).parse()
    if result.kind is ValueKind.NUMBER and isinstance(result.raw, Decimal):
        return _plain(result.raw)
    return result.raw


def referenced_fields(expression: str) -> List[str]:
    return [name.strip() for name in re.findall(r"\{([^{}]+)\}", expression or "")]
