"""
Transformation rule definitions and results
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import enum

from pydantic import BaseModel, Field, field_validator


class RuleType(str, enum.Enum):
    MAP = "map"
    FILTER = "filter"
    AGGREGATE = "aggregate"
    JOIN = "join"
    FORMAT = "format"
    ADD = "add"
    REMOVE = "remove"
    RENAME = "rename"
    CUSTOM = "custom"


# Names older job definitions use for the same rule types
RULE_TYPE_ALIASES = {
    "transform": RuleType.FORMAT,
    "compute": RuleType.ADD,
    "delete": RuleType.REMOVE,
}


def resolve_rule_type(name: str) -> Optional[RuleType]:
    key = (name or "").strip().lower()
    if key in RULE_TYPE_ALIASES:
        return RULE_TYPE_ALIASES[key]
    try:
        return RuleType(key)
    except ValueError:
        return None


CONDITION_OPERATORS = (
    "eq", "ne", "gt", "ge", "lt", "le",
    "contains", "startswith", "endswith", "exists", "notexists",
)


class RuleCondition(BaseModel):
    """Per-row guard evaluated before a rule touches the row"""
    field: str
    operator: str = "eq"
    value: Any = None

    @field_validator("operator")
    def known_operator(cls, v):
        op = (v or "eq").strip().lower()
        if op not in CONDITION_OPERATORS:
            raise ValueError(f"Unsupported condition operator: {v}")
        return op


class TransformationRule(BaseModel):
    """
    One step of the rule pipeline.

    `type` is kept as the raw string so that an unknown type fails only that
    rule at execution time instead of rejecting the whole rule set up front.
    """
    id: str
    order: int = 0
    type: str
    condition: Optional[RuleCondition] = None
    source_fields: List[str] = Field(default_factory=list)
    target_fields: List[str] = Field(default_factory=list)
    expression: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""

    @property
    def rule_type(self) -> Optional[RuleType]:
        return resolve_rule_type(self.type)


class TransformationParameters(BaseModel):
    rules: List[TransformationRule] = Field(default_factory=list)
    preserve_original_data: bool = False
    fail_on_error: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)
    # Right-hand row sets for join rules, keyed by the rule's "dataset" parameter
    join_data: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


@dataclass
class RuleExecutionResult:
    rule_id: str
    rule_type: str
    success: bool = True
    elapsed_ms: float = 0.0
    rows_seen: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_message: Optional[str] = None


@dataclass
class TransformationResult:
    success: bool
    data: List[Dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None
    error_details: Optional[str] = None
    execution_time_ms: float = 0.0
    success_count: int = 0
    failure_count: int = 0
    rule_results: List[RuleExecutionResult] = field(default_factory=list)
    is_cancelled: bool = False

    @property
    def record_count(self) -> int:
        return len(self.data)
