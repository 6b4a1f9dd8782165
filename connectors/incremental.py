"""
Continuation tokens and tracking-field bookkeeping for incremental extraction.

Tokens are opaque to callers. Connectors produce them with encode() and only
the connector that produced a token parses it again:

    ContinuationToken   target|trackingField|value
    OffsetToken         target|offset

A token is only meaningful for the target structure it was produced for;
token_matches() guards replays against a different target.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from core.exceptions import IncrementalSyncError
from schemas.values import Value, is_greater

SEPARATOR = "|"


@dataclass(frozen=True)
class ContinuationToken:
    target: str
    tracking_field: str
    value: str

    def encode(self) -> str:
        return SEPARATOR.join((self.target, self.tracking_field, self.value))

    @classmethod
    def decode(cls, token: Optional[str]) -> Optional["ContinuationToken"]:
        """Parse a token; the value part may itself contain the separator"""
        if not token:
            return None
        parts = token.split(SEPARATOR, 2)
        if len(parts) != 3 or not parts[0] or not parts[1]:
            raise IncrementalSyncError(
                "Malformed continuation token",
                context={"token_parts": len(parts)}
            )
        return cls(parts[0], parts[1], parts[2])


@dataclass(frozen=True)
class OffsetToken:
    target: str
    offset: int

    def encode(self) -> str:
        return f"{self.target}{SEPARATOR}{self.offset}"

    @classmethod
    def decode(cls, token: Optional[str]) -> Optional["OffsetToken"]:
        if not token:
            return None
        target, sep, offset = token.rpartition(SEPARATOR)
        if not sep or not target:
            raise IncrementalSyncError("Malformed offset token")
        try:
            value = int(offset)
        except ValueError as e:
            raise IncrementalSyncError("Malformed offset token", original_exception=e)
        if value < 0:
            raise IncrementalSyncError("Offset token cannot be negative")
        return cls(target, value)


def token_target(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return token.split(SEPARATOR, 1)[0]


def token_matches(token: Optional[str], target: str) -> bool:
    """True when `token` was produced for `target` (case-insensitive)"""
    produced_for = token_target(token)
    return produced_for is not None and produced_for.lower() == (target or "").lower()


def trailing_ties(rows: List[Dict[str, Any]], tracking_field: str) -> int:
    """
    Number of rows at the end of `rows` sharing the last row's tracking value.

    Tokens resume strictly after a value, so a page cut inside such a run
    has to be completed before its value may become the new position.
    Returns 0 when the last row has no tracking value.
    """
    if not rows or rows[-1].get(tracking_field) is None:
        return 0
    last = Value.of(rows[-1][tracking_field])
    count = 0
    for row in reversed(rows):
        if not last.equals(Value.of(row.get(tracking_field))):
            break
        count += 1
    return count


class TrackingState:
    """
    Running maximum of a tracking field across extracted rows.

    Starts from the value carried by the incoming token so that an empty
    batch hands back the same position instead of resetting it.
    """

    def __init__(self, target: str, tracking_field: str, last_value: Optional[str] = None):
        self.target = target
        self.tracking_field = tracking_field
        self.last_value = last_value
        self.current_max: Any = last_value
        self.observed = 0

    @classmethod
    def from_token(
        cls,
        token: Optional[str],
        target: str,
        tracking_field: str,
        fallback: Optional[str] = None
    ) -> "TrackingState":
        """
        Resume from a token produced for this target and field.

        A token for another target is ignored; a token for this target with a
        different tracking field is an error, since its value means nothing
        for the requested field.
        """
        decoded = ContinuationToken.decode(token) if token_matches(token, target) else None
        if decoded is None:
            return cls(target, tracking_field, fallback)
        if decoded.tracking_field.lower() != tracking_field.lower():
            raise IncrementalSyncError(
                f"Continuation token tracks '{decoded.tracking_field}', not '{tracking_field}'",
                context={"target": target, "tracking_field": tracking_field}
            )
        return cls(target, tracking_field, decoded.value if decoded.value != "" else fallback)

    @property
    def has_position(self) -> bool:
        return self.last_value is not None and self.last_value != ""

    def is_new(self, value: Any) -> bool:
        """Rows strictly after the stored position are new"""
        if not self.has_position:
            return True
        return is_greater(value, self.last_value)

    def observe(self, row: Dict[str, Any]):
        value = row.get(self.tracking_field)
        if value is None:
            return
        self.observed += 1
        if self.current_max is None or is_greater(value, self.current_max):
            self.current_max = value

    def observe_all(self, rows: Iterable[Dict[str, Any]]):
        for row in rows:
            self.observe(row)

    def token(self) -> Optional[str]:
        if self.current_max is None:
            return None
        return ContinuationToken(
            self.target,
            self.tracking_field,
            Value.of(self.current_max).as_text()
        ).encode()
