"""
Tagged values for row data.

Rows travel between connectors, the transformation engine and the scheduler as
plain dictionaries. Wherever code needs to reason about what a cell holds
(comparisons, arithmetic, transport encoding) it wraps the cell in a Value and
branches on its kind instead of testing Python types ad hoc.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional
import base64
import enum
import uuid


class ValueKind(str, enum.Enum):
    NULL = "null"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    BINARY = "binary"


@dataclass(frozen=True)
class Value:
    kind: ValueKind
    raw: Any = None

    @classmethod
    def of(cls, obj: Any) -> "Value":
        if isinstance(obj, Value):
            return obj
        if obj is None:
            return cls(ValueKind.NULL, None)
        # bool is an int subclass
        if isinstance(obj, bool):
            return cls(ValueKind.BOOLEAN, obj)
        if isinstance(obj, (int, float, Decimal)):
            return cls(ValueKind.NUMBER, obj)
        if isinstance(obj, (datetime, date)):
            return cls(ValueKind.TIMESTAMP, obj)
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return cls(ValueKind.BINARY, bytes(obj))
        if isinstance(obj, str):
            return cls(ValueKind.STRING, obj)
        return cls(ValueKind.STRING, str(obj))

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    def as_number(self) -> Optional[Decimal]:
        """Numeric view of the value, or None when it does not coerce."""
        if self.kind is ValueKind.NUMBER:
            try:
                return Decimal(str(self.raw))
            except InvalidOperation:
                return None
        if self.kind is ValueKind.STRING:
            text = self.raw.strip()
            if not text:
                return None
            try:
                number = Decimal(text)
            except InvalidOperation:
                return None
            return number if number.is_finite() else None
        return None

    def as_text(self) -> str:
        if self.kind is ValueKind.NULL:
            return ""
        if self.kind is ValueKind.BOOLEAN:
            return "true" if self.raw else "false"
        if self.kind is ValueKind.TIMESTAMP:
            return self.raw.isoformat()
        if self.kind is ValueKind.BINARY:
            return base64.b64encode(self.raw).decode("ascii")
        return str(self.raw)

    def as_bool(self) -> bool:
        if self.kind is ValueKind.BOOLEAN:
            return self.raw
        if self.kind is ValueKind.STRING:
            return self.raw.strip().lower() in ("true", "1", "yes", "y", "on")
        if self.kind is ValueKind.NUMBER:
            return self.raw != 0
        return False

    def as_timestamp(self) -> Optional[datetime]:
        if self.kind is ValueKind.TIMESTAMP:
            if isinstance(self.raw, datetime):
                return self.raw
            return datetime.combine(self.raw, time.min)
        if self.kind is ValueKind.STRING:
            try:
                return datetime.fromisoformat(self.raw.strip().replace("Z", "+00:00"))
            except ValueError:
                return None
        return None

    def to_transport(self) -> Any:
        """JSON-safe representation: binary as base64, timestamps as ISO-8601."""
        if self.kind in (ValueKind.BINARY, ValueKind.TIMESTAMP):
            return self.as_text()
        if self.kind is ValueKind.NUMBER and isinstance(self.raw, Decimal):
            return exact_decimal(self.raw)
        return self.raw

    def compare(self, other: "Value") -> int:
        """
        Type-aware three-way comparison.

        Numbers (including numeric strings) compare numerically, timestamps
        chronologically, and anything else falls back to comparing text. Nulls
        sort before every other value.
        """
        if self.is_null or other.is_null:
            return (not self.is_null) - (not other.is_null)

        left_number, right_number = self.as_number(), other.as_number()
        if left_number is not None and right_number is not None:
            return (left_number > right_number) - (left_number < right_number)

        if self.kind is ValueKind.TIMESTAMP or other.kind is ValueKind.TIMESTAMP:
            left_ts, right_ts = self.as_timestamp(), other.as_timestamp()
            if left_ts is not None and right_ts is not None:
                try:
                    return (left_ts > right_ts) - (left_ts < right_ts)
                except TypeError:
                    # naive vs aware; fall through to text
                    pass

        left_text, right_text = self.as_text(), other.as_text()
        return (left_text > right_text) - (left_text < right_text)

    def equals(self, other: "Value") -> bool:
        return self.compare(other) == 0


def exact_decimal(number: Decimal) -> Any:
    """
    Lossless JSON form of a Decimal.

    Integral values become int; anything else becomes fixed-point text, since
    a float would round NUMERIC columns wider than 15 significant digits.
    """
    if not number.is_finite():
        return str(number)
    if number == number.to_integral_value():
        return int(number)
    return format(number, "f")


def to_transport(obj: Any) -> Any:
    """Convert a backend-native cell into a transport-safe value."""
    if isinstance(obj, (timedelta, uuid.UUID)):
        return str(obj)
    if isinstance(obj, time):
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [to_transport(item) for item in obj]
    if isinstance(obj, dict):
        return {key: to_transport(item) for key, item in obj.items()}
    return Value.of(obj).to_transport()


def is_greater(left: Any, right: Any) -> bool:
    return Value.of(left).compare(Value.of(right)) > 0


def max_value(values: Iterable[Any]) -> Any:
    """Largest non-null value under the type-aware ordering, or None."""
    best = None
    for candidate in values:
        if candidate is None:
            continue
        if best is None or is_greater(candidate, best):
            best = candidate
    return best
