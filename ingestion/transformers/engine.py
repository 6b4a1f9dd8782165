"""
Ordered transformation-rule engine.

Rules run one after another in ascending `order` (ties keep list order)
against the working row set. Each rule sees every row, checks its condition,
and applies its type-specific operation. Row-level failures are counted on the
rule's RuleExecutionResult; with fail_on_error the first failure aborts the
whole pipeline.

Cancellation is polled between rows. A cancelled run returns no rows, only
the counters accumulated so far.
"""

from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple
import asyncio
import copy
import logging
import time

from core.config import settings
from core.exceptions import (
    OperationCancelledError,
    RuleExecutionError,
    TransformationError,
    UnknownRuleTypeError,
)
from ingestion.transformers.functions import apply_format, compute, evaluate
from schemas.connector import ProgressUpdate
from schemas.transformation import (
    RuleCondition,
    RuleExecutionResult,
    RuleType,
    TransformationParameters,
    TransformationResult,
    TransformationRule,
)
from schemas.values import Value

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
CustomHandler = Callable[[Row, TransformationRule], Optional[Row]]
ProgressCallback = Callable[[ProgressUpdate], None]

_SKIP = object()


def evaluate_condition(condition: Optional[RuleCondition], row: Row) -> bool:
    """True when the rule should touch this row"""
    if condition is None:
        return True
    return compare(row, condition.field, condition.operator, condition.value)


def compare(row: Row, field: str, operator: str, expected: Any) -> bool:
    operator = (operator or "eq").lower()
    if operator == "exists":
        return field in row
    if operator == "notexists":
        return field not in row
    if field not in row:
        return False

    actual = Value.of(row[field])
    target = Value.of(expected)
    if operator in ("contains", "startswith", "endswith"):
        haystack, needle = actual.as_text().lower(), target.as_text().lower()
        if operator == "contains":
            return needle in haystack
        if operator == "startswith":
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    outcome = actual.compare(target)
    return {
        "eq": outcome == 0,
        "ne": outcome != 0,
        "gt": outcome > 0,
        "ge": outcome >= 0,
        "lt": outcome < 0,
        "le": outcome <= 0,
    }.get(operator, False)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part) for part in value]


class TransformationEngine:
    """Applies TransformationParameters to extracted rows"""

    def __init__(self, progress_interval: Optional[int] = None):
        self.progress_interval = max(1, progress_interval or settings.TRANSFORMATION_PROGRESS_INTERVAL)
        self._custom_handlers: Dict[str, CustomHandler] = {}

    def register_custom(self, name: str, handler: CustomHandler):
        """
        Register a handler for `custom` rules.

        The handler receives a copy of the row and the rule and returns the new
        row, or None to drop the row.
        """
        self._custom_handlers[name.lower()] = handler

    async def apply(
        self,
        rows: List[Row],
        parameters: TransformationParameters,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None
    ) -> TransformationResult:
        if rows is None or parameters is None:
            raise ValueError("rows and parameters are required")

        started = time.perf_counter()
        working = copy.deepcopy(rows) if parameters.preserve_original_data else list(rows)
        ordered = [rule for _, rule in sorted(enumerate(parameters.rules), key=lambda item: (item[1].order, item[0]))]
        rule_results: List[RuleExecutionResult] = []
        processed = 0
        total = len(working) * len(ordered)

        def elapsed() -> float:
            return (time.perf_counter() - started) * 1000

        def tick(rule: TransformationRule):
            nonlocal processed
            processed += 1
            if progress is not None and processed % self.progress_interval == 0:
                try:
                    progress(ProgressUpdate("transform", processed, total, f"Applying rule {rule.id}"))
                except Exception as e:
                    logger.warning(f"Transformation progress callback failed: {e}")

        def check_cancelled():
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Transformation cancelled")

        try:
            for rule in ordered:
                check_cancelled()
                result = RuleExecutionResult(rule_id=rule.id, rule_type=rule.type)
                rule_results.append(result)
                rule_started = time.perf_counter()
                try:
                    working = await self._apply_rule(rule, working, parameters, result, check_cancelled, tick)
                except RuleExecutionError as e:
                    result.success = False
                    result.error_message = e.message
                    if parameters.fail_on_error:
                        raise
                    logger.warning(f"Rule {rule.id} failed: {e.message}")
                finally:
                    result.elapsed_ms = (time.perf_counter() - rule_started) * 1000
                if result.failure_count and result.success:
                    result.success = False
                await asyncio.sleep(0)
        except OperationCancelledError:
            logger.info(f"Transformation cancelled after {processed} row applications")
            return TransformationResult(
                success=False,
                error_message="Transformation was cancelled",
                execution_time_ms=elapsed(),
                success_count=sum(r.success_count for r in rule_results),
                failure_count=sum(r.failure_count for r in rule_results),
                rule_results=rule_results,
                is_cancelled=True,
            )
        except RuleExecutionError as e:
            logger.error(f"Transformation aborted by rule {e.rule_id}", extra={"error_context": e.to_dict()})
            return TransformationResult(
                success=False,
                error_message=e.message,
                error_details=str(e),
                execution_time_ms=elapsed(),
                success_count=sum(r.success_count for r in rule_results),
                failure_count=sum(r.failure_count for r in rule_results),
                rule_results=rule_results,
            )

        success_count = sum(r.success_count for r in rule_results)
        failure_count = sum(r.failure_count for r in rule_results)
        logger.info(
            f"Applied {len(ordered)} rules to {len(rows)} rows -> {len(working)} rows "
            f"({success_count} succeeded, {failure_count} failed)"
        )
        return TransformationResult(
            success=True,
            data=working,
            execution_time_ms=elapsed(),
            success_count=success_count,
            failure_count=failure_count,
            rule_results=rule_results,
        )

    # ------------------------------------------------------------------
    # Rule dispatch
    # ------------------------------------------------------------------

    async def _apply_rule(
        self,
        rule: TransformationRule,
        rows: List[Row],
        parameters: TransformationParameters,
        result: RuleExecutionResult,
        check_cancelled: Callable[[], None],
        tick: Callable[[TransformationRule], None]
    ) -> List[Row]:
        rule_type = rule.rule_type
        if rule_type is None:
            error = UnknownRuleTypeError(f"Unknown rule type: {rule.type}", context={"rule_id": rule.id})
            raise RuleExecutionError(error.message, rule.id, original_exception=error)

        if rule_type is RuleType.AGGREGATE:
            return self._aggregate(rule, rows, result)
        if rule_type is RuleType.JOIN:
            return self._join(rule, rows, parameters, result)

        row_op = {
            RuleType.MAP: self._map,
            RuleType.FILTER: self._filter,
            RuleType.FORMAT: self._format,
            RuleType.ADD: self._add,
            RuleType.REMOVE: self._remove,
            RuleType.RENAME: self._rename,
            RuleType.CUSTOM: self._custom,
        }[rule_type]

        output: List[Row] = []
        for index, row in enumerate(rows):
            if index % self.progress_interval == 0:
                check_cancelled()
                await asyncio.sleep(0)
            result.rows_seen += 1
            tick(rule)

            guard = rule.condition if rule_type is not RuleType.FILTER else None
            if not evaluate_condition(guard, row):
                output.append(row)
                continue

            try:
                updated = row_op(rule, dict(row))
            except (TransformationError, ArithmeticError, ValueError, TypeError, KeyError) as e:
                result.failure_count += 1
                if parameters.fail_on_error:
                    raise RuleExecutionError(
                        f"Rule {rule.id} failed: {getattr(e, 'message', None) or e}",
                        rule.id,
                        context={"rule_type": rule.type, "row_index": index},
                        original_exception=e
                    )
                logger.debug(f"Rule {rule.id} failed on row {index}: {e}")
                output.append(row)
                continue

            if updated is _SKIP:
                output.append(row)
                continue
            result.success_count += 1
            if updated is None:
                continue
            if updated is not row:
                row.clear()
                row.update(updated)
            output.append(row)
        return output

    # ------------------------------------------------------------------
    # Row operations: return the new row, None to drop it, _SKIP to leave it
    # ------------------------------------------------------------------

    def _map(self, rule: TransformationRule, row: Row):
        if not rule.target_fields:
            raise TransformationError("Map rule needs a target field")
        target = rule.target_fields[0]
        if rule.expression:
            row[target] = evaluate(rule.expression, row)
            return row
        if not rule.source_fields:
            raise TransformationError("Map rule needs a source field or an expression")
        source = rule.source_fields[0]
        if source not in row:
            return _SKIP
        row[target] = row[source]
        return row

    def _filter(self, rule: TransformationRule, row: Row):
        """Drop the row when the predicate matches"""
        params = rule.parameters
        field = params.get("field") or (rule.source_fields[0] if rule.source_fields else None)
        if field:
            matches = compare(row, field, params.get("operator", "eq"), params.get("value"))
        elif rule.condition is not None:
            matches = evaluate_condition(rule.condition, row)
        else:
            raise TransformationError("Filter rule needs a field or a condition")
        return None if matches else row

    def _format(self, rule: TransformationRule, row: Row):
        function = rule.parameters.get("function") or rule.expression
        if not function:
            raise TransformationError("Format rule needs a function")
        present = [f for f in rule.source_fields if f in row]
        if not present:
            return _SKIP
        for index, source in enumerate(rule.source_fields):
            if source not in row:
                continue
            target = rule.target_fields[index] if index < len(rule.target_fields) else source
            row[target] = apply_format(function, row[source], rule.parameters)
        return row

    def _add(self, rule: TransformationRule, row: Row):
        if not rule.target_fields:
            raise TransformationError("Add rule needs a target field")
        target = rule.target_fields[0]
        params = rule.parameters
        if params.get("function"):
            row[target] = compute(params["function"], [row.get(f) for f in rule.source_fields], params)
        elif rule.expression:
            row[target] = evaluate(rule.expression, row)
        elif "value" in params:
            row[target] = params["value"]
        else:
            raise TransformationError("Add rule needs a value, an expression or a function")
        return row

    def _remove(self, rule: TransformationRule, row: Row):
        fields = rule.source_fields or rule.target_fields
        if not fields:
            raise TransformationError("Remove rule needs fields to remove")
        for field in fields:
            row.pop(field, None)
        return row

    def _rename(self, rule: TransformationRule, row: Row):
        if not rule.source_fields or len(rule.source_fields) != len(rule.target_fields):
            raise TransformationError("Rename rule needs matching source and target fields")
        renamed = False
        for source, target in zip(rule.source_fields, rule.target_fields):
            if source in row:
                row[target] = row.pop(source)
                renamed = True
        return row if renamed else _SKIP

    def _custom(self, rule: TransformationRule, row: Row):
        handler_name = rule.parameters.get("handler")
        if handler_name:
            handler = self._custom_handlers.get(str(handler_name).lower())
            if handler is None:
                raise TransformationError(f"No custom handler registered as '{handler_name}'")
            return handler(row, rule)
        if rule.expression and rule.target_fields:
            row[rule.target_fields[0]] = evaluate(rule.expression, row)
            return row
        raise TransformationError("Custom rule needs a registered handler or an expression")

    # ------------------------------------------------------------------
    # Set operations
    # ------------------------------------------------------------------

    def _aggregate(self, rule: TransformationRule, rows: List[Row], result: RuleExecutionResult) -> List[Row]:
        """Collapse rows sharing the group_by key into one row per group"""
        params = rule.parameters
        group_by = _as_list(params.get("group_by") or params.get("groupBy"))
        default_function = str(params.get("function", "sum")).lower()
        functions = {k: str(v).lower() for k, v in (params.get("functions") or {}).items()}
        sources = rule.source_fields
        targets = [
            rule.target_fields[i] if i < len(rule.target_fields) else source
            for i, source in enumerate(sources)
        ]
        if not sources and default_function != "count":
            raise RuleExecutionError("Aggregate rule needs source fields", rule.id)

        groups: "OrderedDict[Tuple, List[Row]]" = OrderedDict()
        untouched: List[Row] = []
        for row in rows:
            result.rows_seen += 1
            if not evaluate_condition(rule.condition, row):
                untouched.append(row)
                continue
            key = tuple(Value.of(row.get(field)).as_text() for field in group_by)
            groups.setdefault(key, []).append(row)

        output: List[Row] = []
        for members in groups.values():
            aggregated = {field: members[0].get(field) for field in group_by}
            try:
                if not sources:
                    aggregated[rule.target_fields[0] if rule.target_fields else "count"] = len(members)
                for source, target in zip(sources, targets):
                    function = functions.get(target, default_function)
                    if function == "count":
                        aggregated[target] = sum(1 for m in members if m.get(source) is not None)
                    else:
                        aggregated[target] = compute(function, [m.get(source) for m in members], params)
            except (TransformationError, ArithmeticError, ValueError) as e:
                result.failure_count += len(members)
                raise RuleExecutionError(
                    f"Aggregate rule {rule.id} failed: {getattr(e, 'message', None) or e}",
                    rule.id,
                    original_exception=e
                )
            result.success_count += len(members)
            output.append(aggregated)
        return output + untouched

    def _join(
        self,
        rule: TransformationRule,
        rows: List[Row],
        parameters: TransformationParameters,
        result: RuleExecutionResult
    ) -> List[Row]:
        """Equality join against a row set supplied in parameters.join_data"""
        params = rule.parameters
        dataset = params.get("dataset")
        if not dataset or dataset not in parameters.join_data:
            raise RuleExecutionError(f"Join rule {rule.id} references unknown dataset '{dataset}'", rule.id)
        if not rule.source_fields:
            raise RuleExecutionError(f"Join rule {rule.id} needs source fields", rule.id)

        join_type = str(params.get("type", "inner")).lower()
        if join_type not in ("inner", "left"):
            raise RuleExecutionError(f"Unsupported join type '{join_type}'", rule.id)
        right_fields = _as_list(params.get("right_fields")) or rule.source_fields
        if len(right_fields) != len(rule.source_fields):
            raise RuleExecutionError("Join key field counts do not match", rule.id)
        prefix = rule.target_fields[0] if rule.target_fields else dataset

        index: Dict[Tuple, List[Row]] = {}
        for right in parameters.join_data[dataset]:
            key = tuple(Value.of(right.get(f)).as_text() for f in right_fields)
            index.setdefault(key, []).append(right)

        output: List[Row] = []
        for row in rows:
            result.rows_seen += 1
            if not evaluate_condition(rule.condition, row):
                output.append(row)
                continue
            if any(row.get(f) is None for f in rule.source_fields):
                matches = []
            else:
                matches = index.get(tuple(Value.of(row.get(f)).as_text() for f in rule.source_fields), [])
            if not matches:
                if join_type == "left":
                    output.append(row)
                    result.success_count += 1
                continue
            for right in matches:
                merged = dict(row)
                for key, value in right.items():
                    merged[f"{prefix}_{key}"] = value
                output.append(merged)
            result.success_count += 1
        return output
