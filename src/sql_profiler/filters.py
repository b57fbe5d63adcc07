"""Query feed filters.

A condition is (column, operator, value). Text columns compare
case-insensitively; numeric and datetime columns compare by value, and a
value that cannot be parsed never matches.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

STRING_OPERATORS = ("contains", "not_contains", "equals", "not_equals", "starts_with", "ends_with")
COMPARABLE_OPERATORS = ("equals", "not_equals", "gt", "gte", "lt", "lte")

# column -> "string" | "number" | "datetime"
COLUMN_TYPES = {
    "event_name": "string",
    "start_time": "datetime",
    "session_id": "number",
    "database_name": "string",
    "sql_text": "string",
    "current_statement": "string",
    "elapsed_time": "number",
    "cpu_time": "number",
    "logical_reads": "number",
    "physical_reads": "number",
    "writes": "number",
    "row_count": "number",
    "login_name": "string",
    "host_name": "string",
    "program_name": "string",
    "captured_at": "datetime",
    "event_status": "string",
}

# Longest symbols first so ">=" is not read as ">"
_SYMBOLS = (
    (">=", "gte"),
    ("<=", "lte"),
    ("!=", "not_equals"),
    ("!~", "not_contains"),
    ("^=", "starts_with"),
    ("$=", "ends_with"),
    ("=", "equals"),
    (">", "gt"),
    ("<", "lt"),
    ("~", "contains"),
)

_SYMBOL_PATTERN = re.compile(
    r"^\s*(?P<column>\w+)\s*(?P<op>"
    + "|".join(re.escape(symbol) for symbol, _ in _SYMBOLS)
    + r")\s*(?P<value>.*?)\s*$",
    re.DOTALL,
)

_FRACTION = re.compile(r"(\.\d{6})\d+")


def column_type(column: str) -> str:
    """Return the value type of a column; unknown columns compare as text."""
    return COLUMN_TYPES.get(column, "string")


def operators_for(column: str) -> tuple[str, ...]:
    return STRING_OPERATORS if column_type(column) == "string" else COMPARABLE_OPERATORS


@dataclass(frozen=True)
class FilterCondition:
    column: str
    operator: str
    value: str

    def __post_init__(self) -> None:
        if self.operator not in operators_for(self.column):
            raise ValueError(
                f"Operator {self.operator!r} not valid for {self.column} "
                f"({column_type(self.column)}); use one of {list(operators_for(self.column))}"
            )

    def matches(self, event: dict[str, Any]) -> bool:
        return evaluate(event, self)


def evaluate(event: dict[str, Any], condition: FilterCondition) -> bool:
    """Return True if the event (a query-event payload) satisfies the condition."""
    raw = event.get(condition.column)
    kind = column_type(condition.column)

    if kind == "number":
        return _compare_numbers(_to_number(raw), _to_number(condition.value), condition.operator)
    if kind == "datetime":
        return _compare_numbers(
            _to_timestamp(raw), _to_timestamp(condition.value), condition.operator
        )
    return _compare_strings("" if raw is None else str(raw), condition.value, condition.operator)


def matches_all(event: dict[str, Any], conditions: list[FilterCondition]) -> bool:
    """Conditions are ANDed; an empty list matches everything."""
    return all(evaluate(event, condition) for condition in conditions)


def parse_condition(text: str) -> FilterCondition:
    """Parse a condition from the command line.

    Accepts symbol form ("elapsed_time>=100", "sql_text~orders") or word
    form ("sql_text starts_with select").

    Raises:
        ValueError: If the text is not a condition, or the operator does not
            apply to the column
    """
    words = text.split(None, 2)
    if len(words) == 3 and words[1] in STRING_OPERATORS + COMPARABLE_OPERATORS:
        return FilterCondition(column=words[0], operator=words[1], value=words[2].strip())

    match = _SYMBOL_PATTERN.match(text)
    if match is None:
        raise ValueError(f"Cannot parse filter {text!r}; expected e.g. elapsed_time>=100")
    operator = dict(_SYMBOLS)[match.group("op")]
    return FilterCondition(column=match.group("column"), operator=operator, value=match.group("value"))


def _compare_strings(left: str, right: str, operator: str) -> bool:
    left = left.lower()
    right = right.lower()
    if operator == "contains":
        return right in left
    if operator == "not_contains":
        return right not in left
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "starts_with":
        return left.startswith(right)
    if operator == "ends_with":
        return left.endswith(right)
    return False


def _compare_numbers(left: float, right: float, operator: str) -> bool:
    if math.isnan(left) or math.isnan(right):
        return False
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    return False


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return math.nan


def _to_timestamp(value: Any) -> float:
    """Seconds since the epoch; naive values are taken as UTC."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = _FRACTION.sub(r"\1", value.strip().replace(" ", "T", 1))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return math.nan
    else:
        return math.nan
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
